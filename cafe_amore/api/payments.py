"""
Cafe Amore — Payment webhook API

POST /payments/webhook is public (authenticated by HMAC signature, not JWT).
Once the signature checks out, the delivery is stored and acknowledged with
200 even when processing fails; failed events are listed and replayable by
staff.
"""
import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.api.deps import DOMAIN_ERRORS, http_error, require_staff
from cafe_amore.core.security import SignatureError, verify_webhook_signature
from cafe_amore.db.database import get_db
from cafe_amore.models.order import WebhookEvent
from cafe_amore.schemas.order import WebhookAck, WebhookEventOut
from cafe_amore.services.reconciler import handle_webhook, replay_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_model=WebhookAck)
async def paymongo_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    raw_body = await request.body()
    header = request.headers.get("Paymongo-Signature") or request.headers.get("X-Paymongo-Signature", "")
    try:
        verify_webhook_signature(header, raw_body)
    except SignatureError as exc:
        logger.warning("Webhook rejected: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signature invalid.")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload.")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload.")

    event, duplicate = await handle_webhook(db, payload, raw_body)
    return WebhookAck(event_id=event.id, status=event.status, duplicate=duplicate, error=event.error)


@router.get("/webhook/events", response_model=list[WebhookEventOut])
async def list_webhook_events(
    status_filter: str | None = Query(None, alias="status"),
    staff: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(WebhookEvent).order_by(WebhookEvent.received_at.desc()).limit(200)
    if status_filter:
        stmt = stmt.where(WebhookEvent.status == status_filter)
    return (await db.execute(stmt)).scalars().all()


@router.post("/webhook/events/{event_id}/replay", response_model=WebhookEventOut)
async def replay_webhook_event(
    event_id: str, staff: dict = Depends(require_staff), db: AsyncSession = Depends(get_db)
):
    try:
        event = await replay_event(db, event_id)
    except (LookupError, *DOMAIN_ERRORS) as exc:
        raise http_error(exc)
    logger.info("Webhook event %s replayed by %s: %s", event_id, staff["uid"], event.status)
    return event
