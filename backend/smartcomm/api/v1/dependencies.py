"""
API Dependencies
Shared dependencies for Supabase access and the communication engine
"""
from typing import Optional

from fastapi import Depends, Request
from supabase import Client, create_client

from smartcomm.core.config import get_settings
from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.interfaces.llm_provider import LLMProvider
from smartcomm.infrastructure.storage.supabase_store import SupabaseCommunicationStore
from smartcomm.services.communication_engine import CommunicationEngine, build_communication_engine


def get_supabase() -> Client:
    """
    Get Supabase client with validation.

    Raises:
        RuntimeError: If Supabase URL or SERVICE_KEY is not configured
    """
    settings = get_settings()

    if not settings.supabase_url:
        raise RuntimeError(
            "SUPABASE_URL is not configured. "
            "Set SUPABASE_URL environment variable."
        )
    if not settings.supabase_service_key:
        raise RuntimeError(
            "SUPABASE_SERVICE_KEY is not configured. "
            "Set SUPABASE_SERVICE_KEY environment variable."
        )

    return create_client(settings.supabase_url, settings.supabase_service_key)


def get_communication_store(supabase: Client = Depends(get_supabase)) -> CommunicationStore:
    return SupabaseCommunicationStore(supabase)


def get_llm_provider(request: Request) -> Optional[LLMProvider]:
    """LLM provider created at startup (None when not configured)."""
    return getattr(request.app.state, "llm_provider", None)


def get_communication_engine(
    store: CommunicationStore = Depends(get_communication_store),
    llm_provider: Optional[LLMProvider] = Depends(get_llm_provider),
) -> CommunicationEngine:
    return build_communication_engine(store, llm_provider=llm_provider)
