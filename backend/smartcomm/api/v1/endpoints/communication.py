"""
Communication API Endpoints
Decision, event, manual-send, settings, statistics and log endpoints
for the outreach engine. All endpoints act on the caller's business.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from smartcomm.api.v1.dependencies import get_communication_engine, get_communication_store
from smartcomm.core.tenant_middleware import get_current_tenant
from smartcomm.domain.interfaces.communication_store import CommunicationStore, CommunicationStoreError
from smartcomm.domain.models.communication import (
    CommunicationSettings,
    Decision,
    EventTriggerResult,
    Tone,
)
from smartcomm.services.communication_engine import (
    CommunicationEngine,
    MissingRecipientError,
    RuleNotFoundError,
)
from smartcomm.services.communication_stats import CommunicationStatsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/communication", tags=["Communication"])


# =============================================================================
# Request/Response Models
# =============================================================================

class EvaluateRequest(BaseModel):
    """Request to evaluate one customer"""
    customer_id: str = Field(..., min_length=1)


class EventRequest(BaseModel):
    """Business event that may trigger a message"""
    event: str = Field(..., min_length=1, description="e.g. booking_created, invoice_paid")
    customer_id: str = Field(..., min_length=1)
    deal_id: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    quote_id: Optional[str] = None
    booking_id: Optional[str] = None
    extra_variables: Dict[str, str] = Field(default_factory=dict)


class SendManualRequest(BaseModel):
    """Send a chosen rule's message now"""
    customer_id: str = Field(..., min_length=1)
    rule_id: str = Field(..., min_length=1)
    extra_variables: Dict[str, str] = Field(default_factory=dict)


class SendManualResponse(BaseModel):
    success: bool
    log_id: Optional[str] = None
    message: str


class SettingsUpdateRequest(BaseModel):
    """Partial settings update; omitted fields are unchanged"""
    auto_enabled: Optional[bool] = None
    tone: Optional[Tone] = None
    max_sms_per_customer_per_week: Optional[int] = Field(None, ge=0)
    send_booking_confirmation: Optional[bool] = None
    send_day_before_reminder: Optional[bool] = None
    send_on_the_way: Optional[bool] = None
    send_quote_followup: Optional[bool] = None
    send_job_completed: Optional[bool] = None
    send_invoice_reminder: Optional[bool] = None
    send_review_request: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: Optional[str] = None


class LogListResponse(BaseModel):
    data: List[Dict[str, Any]]


def _store_unavailable(e: CommunicationStoreError) -> HTTPException:
    logger.error(f"Communication store error: {e.message}")
    return HTTPException(status_code=503, detail=e.message)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/evaluate", response_model=Decision)
async def evaluate_customer(
    request: EvaluateRequest,
    business_id: str = Depends(get_current_tenant),
    engine: CommunicationEngine = Depends(get_communication_engine),
) -> Decision:
    """Decide whether the customer should be contacted now (nothing is sent)."""
    try:
        return await engine.evaluate_customer(business_id, request.customer_id)
    except CommunicationStoreError as e:
        raise _store_unavailable(e)


@router.post("/events", response_model=EventTriggerResult)
async def trigger_event(
    request: EventRequest,
    business_id: str = Depends(get_current_tenant),
    engine: CommunicationEngine = Depends(get_communication_engine),
) -> EventTriggerResult:
    """
    Report a business event.

    Always answers 200: the outcome (sent, scheduled or why not) is in
    the body and never fails the caller's own operation.
    """
    context = request.model_dump(exclude={"event", "customer_id"})
    return await engine.trigger_event_communication(
        business_id, request.event, request.customer_id, context=context
    )


@router.post("/send-manual", response_model=SendManualResponse)
async def send_manual(
    request: SendManualRequest,
    business_id: str = Depends(get_current_tenant),
    engine: CommunicationEngine = Depends(get_communication_engine),
) -> SendManualResponse:
    """Send a rule's message to a customer right away (no gate checks)."""
    try:
        result, message = await engine.send_manual(
            business_id, request.customer_id, request.rule_id, request.extra_variables
        )
    except RuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except MissingRecipientError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except CommunicationStoreError as e:
        raise _store_unavailable(e)

    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Could not send message")

    return SendManualResponse(success=True, log_id=result.log_id, message=message)


@router.get("/settings", response_model=CommunicationSettings)
async def get_communication_settings(
    business_id: str = Depends(get_current_tenant),
    engine: CommunicationEngine = Depends(get_communication_engine),
) -> CommunicationSettings:
    """Current settings (defaults when never saved)."""
    try:
        return await engine.settings_service.get(business_id)
    except CommunicationStoreError as e:
        raise _store_unavailable(e)


@router.patch("/settings", response_model=CommunicationSettings)
async def update_communication_settings(
    request: SettingsUpdateRequest,
    business_id: str = Depends(get_current_tenant),
    engine: CommunicationEngine = Depends(get_communication_engine),
) -> CommunicationSettings:
    """Update some settings; omitted fields keep their value."""
    try:
        return await engine.settings_service.update(
            business_id, request.model_dump(mode="json", exclude_none=True)
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    except CommunicationStoreError as e:
        raise _store_unavailable(e)


@router.get("/stats")
async def get_communication_stats(
    business_id: str = Depends(get_current_tenant),
    engine: CommunicationEngine = Depends(get_communication_engine),
    store: CommunicationStore = Depends(get_communication_store),
) -> Dict[str, Any]:
    """Message counts for today, this week and this month."""
    try:
        settings = await engine.settings_service.get(business_id)
        return await CommunicationStatsService(store).get_stats(business_id, settings.timezone)
    except CommunicationStoreError as e:
        raise _store_unavailable(e)


@router.get("/log", response_model=LogListResponse)
async def list_communication_log(
    limit: int = Query(50, ge=1, le=200),
    business_id: str = Depends(get_current_tenant),
    store: CommunicationStore = Depends(get_communication_store),
) -> LogListResponse:
    """Most recent communication_log rows."""
    try:
        return LogListResponse(data=await store.list_logs(business_id, limit=limit))
    except CommunicationStoreError as e:
        raise _store_unavailable(e)
