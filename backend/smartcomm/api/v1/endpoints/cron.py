"""
Cron API Endpoints
Entry point for the external scheduler.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from smartcomm.api.v1.dependencies import get_communication_engine
from smartcomm.core.config import get_settings
from smartcomm.domain.models.communication import SweepSummary
from smartcomm.services.communication_engine import CommunicationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def verify_cron_secret(authorization: Optional[str] = Header(None, alias="Authorization")) -> None:
    """Require `Bearer <CRON_SECRET>` when a secret is configured."""
    secret = get_settings().cron_secret
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.get("/communication-check", response_model=SweepSummary, dependencies=[Depends(verify_cron_secret)])
async def communication_check(
    engine: CommunicationEngine = Depends(get_communication_engine),
) -> SweepSummary:
    """
    Run the decision engine for every tenant that has not disabled
    automation, then send scheduled messages that are due.
    """
    summary = await engine.run_all_tenants()
    try:
        await engine.dispatcher.process_due()
    except Exception as e:
        logger.error(f"Scheduled message processing failed: {e}", exc_info=True)
    logger.info(f"Cron communication check: {summary.businesses} businesses, {summary.total_sent} sent")
    return summary
