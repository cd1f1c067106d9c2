"""
Workers Package
Background worker for scheduled messages and periodic decision sweeps
"""
from smartcomm.workers.communication_worker import CommunicationWorker

__all__ = ["CommunicationWorker"]
