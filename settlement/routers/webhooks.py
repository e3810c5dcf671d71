# settlement/routers/webhooks.py

import base64
import hashlib
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.dependencies import get_db
from settlement.schemas.webhook import PaymentEvent
from settlement.services import settlement as settlement_service
from settlement.services.rates import RateStore, get_rate_store

logger = logging.getLogger(__name__)

# Mounted in main.py WITHOUT the /api/v1 prefix
payments_router = APIRouter()


def sign_payload(raw_body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()).decode()


# --- Signature check for payment processor callbacks ---
async def verify_payment_signature(
    request: Request,
    x_payment_signature: str | None = Header(None),
):
    raw_body = await request.body()

    if not x_payment_signature:
        logger.warning("Payment webhook without signature header rejected.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")

    expected_signature = sign_payload(raw_body, settings.PAYMENT_WEBHOOK_SECRET)
    if not hmac.compare_digest(expected_signature, x_payment_signature):
        logger.warning("Payment webhook with invalid signature rejected.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    logger.debug("Payment webhook signature verified successfully.")


@payments_router.post("/payments", dependencies=[Depends(verify_payment_signature)])
def payment_webhook(
    event: PaymentEvent,
    db: Session = Depends(get_db),
    rate_store: RateStore = Depends(get_rate_store),
):
    """
    Settles an order or top-up reported by the payment processor.
    Replays are expected and safe; every settlement step is idempotent.
    """
    logger.info(f"Payment event {event.event_id}: {event.source_type} {event.source_id} -> {event.status}.")
    result = settlement_service.handle_payment_event(
        db,
        event.source_type,
        event.source_id,
        event.status,
        rate_store=rate_store,
        captured_amount_cents=event.amount_cents,
    )
    return {"status": "ok", "event_id": event.event_id, "source_status": result.status}
