import json
import logging
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from transit_shared.webhook_sig import verify_webhook

from ..config import settings
from ..settlement import SettlementProcessor, get_settlement_processor


router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("transit.settlement")

EVENT_COMPLETED = "checkout.session.completed"
EVENT_EXPIRED = "checkout.session.expired"


def _extract(event: dict) -> tuple[str | None, Decimal | None]:
    data = event.get("data") or {}
    obj = data.get("object") or {}
    session_id = data.get("session_id") or obj.get("id")
    amount = data.get("amount_paid")
    if amount is None:
        amount = obj.get("amount_total")
    # Compared against the stored amount as-is
    if isinstance(amount, bool) or not isinstance(amount, (int, float, str)):
        amount = None
    else:
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            amount = None
        if amount is not None and not amount.is_finite():
            amount = None
    return (str(session_id) if session_id else None), amount


@router.post("/checkout")
async def checkout_webhook(
    request: Request,
    ts: str | None = Header(default=None, alias="X-Webhook-Ts"),
    event: str | None = Header(default=None, alias="X-Webhook-Event"),
    sign: str | None = Header(default=None, alias="X-Webhook-Sign"),
    processor: SettlementProcessor = Depends(get_settlement_processor),
):
    raw = await request.body()
    if not verify_webhook(settings.WEBHOOK_SECRET, ts, event, raw, sign, tolerance_secs=settings.WEBHOOK_TOLERANCE_SECS):
        logger.warning("webhook signature rejected (event=%s)", event)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_signature")
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_payload")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_payload")
    if body.get("type") and body.get("type") != event:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="event_mismatch")

    if event not in (EVENT_COMPLETED, EVENT_EXPIRED):
        return {"detail": "ignored", "event": event}
    session_id, amount_paid = _extract(body)
    if not session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing_session_id")
    if event == EVENT_EXPIRED:
        outcome = await run_in_threadpool(processor.process_expired, session_id)
        return outcome.as_dict()
    if amount_paid is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing_amount_paid")
    outcome = await run_in_threadpool(processor.process_completed, session_id, amount_paid)
    return outcome.as_dict()
