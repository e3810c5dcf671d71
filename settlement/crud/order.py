# settlement/crud/order.py

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from settlement.models.order import Order, TopUp, ORDER_PAID, TOPUP_COMPLETED
from settlement.models.promo import PromoCode


def create_order(
    db: Session,
    user_id: int,
    plan_id: str,
    amount_cents: int,
    settlement_currency: str = "USD",
    display_currency: str = "USD",
) -> Order:
    """
    Creates a pending order and adds it to the session.
    Requires an external db.commit().
    """
    order = Order(
        user_id=user_id,
        plan_id=plan_id,
        amount_cents=amount_cents,
        original_amount_cents=amount_cents,
        settlement_currency=settlement_currency,
        display_currency=display_currency,
    )
    db.add(order)
    return order

def get_order(db: Session, order_id: int) -> Order | None:
    return db.query(Order).filter(Order.id == order_id).first()

def get_order_for_update(db: Session, order_id: int) -> Order | None:
    """Loads the order with a row lock (SELECT ... FOR UPDATE) and fresh column values."""
    return db.query(Order).filter(Order.id == order_id).populate_existing().with_for_update().first()

def count_paid_orders(db: Session, user_id: int) -> int:
    return db.query(Order).filter(Order.user_id == user_id, Order.status == ORDER_PAID).count()

def count_purchases_for_users(db: Session, user_ids: list[int]) -> int:
    """Paid orders plus completed top-ups of the given users."""
    if not user_ids:
        return 0
    orders = db.query(Order).filter(Order.user_id.in_(user_ids), Order.status == ORDER_PAID).count()
    topups = db.query(TopUp).filter(TopUp.user_id.in_(user_ids), TopUp.status == TOPUP_COMPLETED).count()
    return orders + topups

def get_topup(db: Session, topup_id: int) -> TopUp | None:
    return db.query(TopUp).filter(TopUp.id == topup_id).first()

# --- Promo codes ---

def get_promo_by_code(db: Session, code: str) -> PromoCode | None:
    """Case-insensitive lookup; codes are stored upper-case."""
    return db.query(PromoCode).filter(PromoCode.code == code.strip().upper()).first()

def increment_promo_usage(db: Session, code: str) -> bool:
    """
    Counts one use of the code without ever passing its cap.
    A single conditional UPDATE, so concurrent settlements cannot overshoot.
    """
    query = db.query(PromoCode).filter(PromoCode.code == code.strip().upper())
    query = query.filter((PromoCode.usage_limit.is_(None)) | (PromoCode.usage_count < PromoCode.usage_limit))
    updated = query.update({PromoCode.usage_count: PromoCode.usage_count + 1}, synchronize_session=False)
    return updated == 1

def is_promo_expired(promo: PromoCode, now: datetime | None = None) -> bool:
    if promo.expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    expires_at = promo.expires_at
    # SQLite hands back naive datetimes
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now

def is_promo_exhausted(promo: PromoCode) -> bool:
    return promo.usage_limit is not None and promo.usage_count >= promo.usage_limit

# --- Status transitions ---

def transition_order(db: Session, order_id: int, from_status: str, to_status: str, **values) -> bool:
    """
    Moves the order between statuses with one conditional UPDATE.
    Returns False when the order was not in `from_status`; a replayed callback loses here.
    """
    updated = db.query(Order).filter(Order.id == order_id, Order.status == from_status).update(
        {Order.status: to_status, **{getattr(Order, key): value for key, value in values.items()}},
        synchronize_session=False,
    )
    return updated == 1

def transition_topup(db: Session, topup_id: int, from_status: str, to_status: str) -> bool:
    updated = db.query(TopUp).filter(TopUp.id == topup_id, TopUp.status == from_status).update(
        {TopUp.status: to_status}, synchronize_session=False
    )
    return updated == 1

def create_topup(
    db: Session,
    user_id: int,
    plan_code: str,
    amount_cents: int,
    currency: str = "USD",
) -> TopUp:
    """Requires an external db.commit()."""
    topup = TopUp(user_id=user_id, plan_code=plan_code, amount_cents=amount_cents, currency=currency)
    db.add(topup)
    return topup
