"""
Storage Package
"""
from smartcomm.infrastructure.storage.supabase_store import SupabaseCommunicationStore

__all__ = ["SupabaseCommunicationStore"]
