# settlement/services/settlement.py
"""
Settlement of captured (or failed) payments.

Status changes are conditional UPDATEs, so a replayed or concurrent callback
can never apply the same transition twice. Commission recording runs after the
status commit and is idempotent on its own, so a replay that finds the order
already paid still repairs a commission that failed to write the first time.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.errors import ConflictError, NotFound, ValidationFailed
from settlement.crud import order as crud_order
from settlement.crud import vcash as crud_vcash
from settlement.db.transaction import run_in_transaction
from settlement.models.affiliate import SOURCE_ORDER, SOURCE_TOPUP
from settlement.models.order import (
    Order,
    TopUp,
    ORDER_FAILED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_REFUNDED,
    TOPUP_COMPLETED,
    TOPUP_FAILED,
    TOPUP_PENDING,
)
from settlement.models.user import User
from settlement.models.vcash import REASON_PURCHASE, REASON_REFUND
from settlement.services import affiliate as affiliate_service
from settlement.services import pricing as pricing_service
from settlement.services import vcash as vcash_service
from settlement.services.rates import RateStore

logger = logging.getLogger(__name__)


def _count_promo_use(db: Session, order: Order) -> None:
    if order.discount_source != pricing_service.SOURCE_PROMO or not order.discount_code:
        return
    if not crud_order.increment_promo_usage(db, order.discount_code):
        # The cap was reached after this order applied the code; the payment is already captured
        logger.warning(f"Promo '{order.discount_code}' reached its usage limit before order {order.id} settled.")


def _mark_paid(
    db: Session,
    order: Order,
    rate_store: Optional[RateStore],
    captured_amount_cents: Optional[int] = None,
) -> bool:
    """
    Inside a transaction. Returns False when the order was no longer pending.
    A captured amount that differs from the order's rolls the transition back.
    """
    if not crud_order.transition_order(db, order.id, ORDER_PENDING, ORDER_PAID, paid_at=datetime.now(timezone.utc)):
        return False
    db.refresh(order)
    if captured_amount_cents is not None and captured_amount_cents != order.amount_cents:
        logger.error(
            f"Order {order.id}: processor captured {captured_amount_cents} but the order amount is "
            f"{order.amount_cents} {order.settlement_currency}. Not settled."
        )
        raise ConflictError("Captured amount does not match the order amount.", code="AMOUNT_MISMATCH")
    if rate_store is not None:
        pricing_service.freeze_rate(order, rate_store)
    _count_promo_use(db, order)
    return True


def _record_order_commission(db: Session, order: Order) -> None:
    if order.status not in (ORDER_PAID, ORDER_REFUNDED) or order.amount_cents <= 0:
        return
    affiliate_service.record_commission(
        db,
        source_order_id=order.id,
        source_type=SOURCE_ORDER,
        settled_amount_cents=order.amount_cents,
        settled_currency=order.settlement_currency,
    )


# --- Orders ---

def settle_order_paid(
    db: Session,
    order_id: int,
    rate_store: Optional[RateStore] = None,
    captured_amount_cents: Optional[int] = None,
) -> Order:
    order = crud_order.get_order(db, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found.", code="ORDER_NOT_FOUND")

    if order.status == ORDER_PENDING:
        transitioned = run_in_transaction(
            db, lambda: _mark_paid(db, order, rate_store, captured_amount_cents), name=f"settlement of order {order_id}"
        )
        if transitioned:
            logger.info(f"Order {order_id} settled as paid: {order.amount_cents} {order.settlement_currency}.")
        db.refresh(order)
    elif order.status == ORDER_FAILED:
        logger.warning(f"Paid callback for failed order {order_id} ignored.")
        return order
    else:
        logger.info(f"Order {order_id} already {order.status}; replayed paid callback.")

    _record_order_commission(db, order)
    return order


def settle_order_failed(db: Session, order_id: int) -> Order:
    order = crud_order.get_order(db, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found.", code="ORDER_NOT_FOUND")

    transitioned = run_in_transaction(
        db,
        lambda: crud_order.transition_order(db, order_id, ORDER_PENDING, ORDER_FAILED),
        name=f"failure of order {order_id}",
    )
    db.refresh(order)
    if transitioned:
        logger.info(f"Order {order_id} marked as failed.")
    else:
        logger.info(f"Failed callback for order {order_id} in status {order.status} ignored.")
    return order


# --- Top-ups ---

def settle_topup_completed(db: Session, topup_id: int, captured_amount_cents: Optional[int] = None) -> TopUp:
    topup = crud_order.get_topup(db, topup_id)
    if topup is None:
        raise NotFound(f"Top-up {topup_id} not found.", code="TOPUP_NOT_FOUND")
    if captured_amount_cents is not None and captured_amount_cents != topup.amount_cents:
        logger.error(f"Top-up {topup_id}: processor captured {captured_amount_cents}, expected {topup.amount_cents}.")
        raise ConflictError("Captured amount does not match the top-up amount.", code="AMOUNT_MISMATCH")

    transitioned = run_in_transaction(
        db,
        lambda: crud_order.transition_topup(db, topup_id, TOPUP_PENDING, TOPUP_COMPLETED),
        name=f"settlement of top-up {topup_id}",
    )
    db.refresh(topup)
    if transitioned:
        logger.info(f"Top-up {topup_id} completed: {topup.amount_cents} {topup.currency}.")

    if topup.status == TOPUP_COMPLETED and topup.amount_cents > 0:
        affiliate_service.record_commission(
            db,
            source_order_id=topup.id,
            source_type=SOURCE_TOPUP,
            settled_amount_cents=topup.amount_cents,
            settled_currency=topup.currency,
        )
    return topup


def settle_topup_failed(db: Session, topup_id: int) -> TopUp:
    topup = crud_order.get_topup(db, topup_id)
    if topup is None:
        raise NotFound(f"Top-up {topup_id} not found.", code="TOPUP_NOT_FOUND")

    run_in_transaction(
        db,
        lambda: crud_order.transition_topup(db, topup_id, TOPUP_PENDING, TOPUP_FAILED),
        name=f"failure of top-up {topup_id}",
    )
    db.refresh(topup)
    return topup


def handle_payment_event(
    db: Session,
    source_type: str,
    source_id: int,
    status: str,
    rate_store: Optional[RateStore] = None,
    captured_amount_cents: Optional[int] = None,
):
    """Routes one payment-processor callback to the matching settlement."""
    if source_type == SOURCE_ORDER:
        if status == "paid":
            return settle_order_paid(db, source_id, rate_store, captured_amount_cents)
        return settle_order_failed(db, source_id)
    if source_type == SOURCE_TOPUP:
        if status == "paid":
            return settle_topup_completed(db, source_id, captured_amount_cents)
        return settle_topup_failed(db, source_id)
    raise ValidationFailed(f"Unknown source type '{source_type}'.", code="INVALID_SOURCE_TYPE")


# --- V-Cash purchases and refunds ---

def _require_wallet_currency(order: Order) -> None:
    if order.settlement_currency != settings.FX_BASE_CURRENCY:
        raise ValidationFailed(
            f"V-Cash is held in {settings.FX_BASE_CURRENCY}; order {order.id} settles in {order.settlement_currency}.",
            code="CURRENCY_MISMATCH",
        )


def pay_with_vcash(
    db: Session,
    order_id: int,
    user: User,
    rate_store: RateStore,
    ip_address: Optional[str] = None,
) -> Order:
    """
    Pays a pending order from the wallet. The debit and the paid transition
    commit together; a failed balance check leaves both untouched.
    """
    order = pricing_service.prepare_checkout(db, order_id, user, rate_store)
    _require_wallet_currency(order)
    account = crud_vcash.get_or_create_account(db, user.id)

    def unit_of_work() -> bool:
        locked = crud_order.get_order_for_update(db, order.id)
        if not locked.is_pending:
            raise ConflictError(f"Order is {locked.status}.", code="ORDER_NOT_PENDING")
        if locked.amount_cents > 0:
            vcash_service.post_entry(
                db, account.id, -locked.amount_cents, REASON_PURCHASE,
                meta={"order_id": locked.id}, ip_address=ip_address,
            )
        if not _mark_paid(db, locked, rate_store):
            raise ConflictError("Order was settled by another request.", code="ORDER_NOT_PENDING")
        return True

    run_in_transaction(db, unit_of_work, name=f"V-Cash payment of order {order.id}")
    db.refresh(order)
    logger.info(f"Order {order.id} paid with {order.amount_cents} cents of V-Cash by user {user.id}.")

    _record_order_commission(db, order)
    return order


def refund_order(db: Session, order_id: int, admin_email: str, ip_address: Optional[str] = None) -> Order:
    """
    Refunds a paid order to the buyer's wallet. The commission already earned
    on the order stays as it is.
    """
    order = crud_order.get_order(db, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found.", code="ORDER_NOT_FOUND")
    if order.status != ORDER_PAID:
        raise ConflictError(f"Only paid orders can be refunded; order is {order.status}.", code="ORDER_NOT_REFUNDABLE")
    _require_wallet_currency(order)
    account = crud_vcash.get_or_create_account(db, order.user_id)

    def unit_of_work() -> None:
        if not crud_order.transition_order(db, order.id, ORDER_PAID, ORDER_REFUNDED):
            raise ConflictError("Order was already refunded.", code="ORDER_NOT_REFUNDABLE")
        if order.amount_cents > 0:
            vcash_service.post_entry(
                db, account.id, order.amount_cents, REASON_REFUND,
                meta={"order_id": order.id, "admin": admin_email}, ip_address=ip_address,
            )

    run_in_transaction(db, unit_of_work, name=f"refund of order {order.id}")
    db.refresh(order)
    logger.warning(f"Admin {admin_email} refunded order {order.id}: {order.amount_cents} cents to V-Cash.")
    return order
