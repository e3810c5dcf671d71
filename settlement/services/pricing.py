# settlement/services/pricing.py
"""
Chargeable-amount resolution for orders.

Exactly one discount source can be active on an order. The source is a closed
variant (NoDiscount | PromoDiscount | ReferralDiscount) and `resolve_discount`
is the only place that decides between them. Every amount is computed from
the captured `original_amount_cents`, never from an already discounted value.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.errors import ConflictError, NotFound, StoreContention, ValidationFailed
from settlement.core.money import apply_percent_off, convert
from settlement.crud import order as crud_order
from settlement.crud import referral as crud_referral
from settlement.models.order import Order
from settlement.models.user import User
from settlement.services.rates import RateStore

logger = logging.getLogger(__name__)

SOURCE_NONE = "none"
SOURCE_PROMO = "promo"
SOURCE_REFERRAL = "referral"


# --- Discount variant ---

@dataclass(frozen=True)
class NoDiscount:
    source: str = SOURCE_NONE
    percent: int = 0


@dataclass(frozen=True)
class PromoDiscount:
    code: str
    percent: int
    source: str = SOURCE_PROMO


@dataclass(frozen=True)
class ReferralDiscount:
    percent: int
    source: str = SOURCE_REFERRAL


Discount = Union[NoDiscount, PromoDiscount, ReferralDiscount]


def resolve_discount(
    promo: Optional[PromoDiscount] = None,
    referral: Optional[ReferralDiscount] = None,
) -> Discount:
    """An explicit promo always beats automatic referral eligibility."""
    if promo is not None:
        return promo
    if referral is not None:
        return referral
    return NoDiscount()


def discount_of(order: Order) -> Discount:
    """Reads the active discount back from the order's columns."""
    if order.discount_source == SOURCE_PROMO:
        return PromoDiscount(code=order.discount_code, percent=order.discount_percent)
    if order.discount_source == SOURCE_REFERRAL:
        return ReferralDiscount(percent=order.discount_percent)
    return NoDiscount()


@dataclass(frozen=True)
class ChargeQuote:
    amount_cents: int
    display_amount_cents: int
    display_currency: str
    fx_rate: Decimal
    applied_discount: Discount


def _display_rate(order: Order, display_currency: str, rate_store: RateStore) -> Decimal:
    # Once a rate is frozen onto the order it wins over the live table
    if order.fx_rate is not None and display_currency == order.display_currency:
        return Decimal(order.fx_rate)
    return rate_store.get(display_currency)


def compute_charge(
    order: Order,
    discount: Discount,
    rate_store: RateStore,
    display_currency: Optional[str] = None,
) -> ChargeQuote:
    """
    Pure calculation; the order is not modified.
    amount = round_half_up(original × (1 − percent/100)), display = round_half_up(amount × rate).
    """
    original = order.original_amount_cents if order.original_amount_cents is not None else order.amount_cents
    amount = original if isinstance(discount, NoDiscount) else apply_percent_off(original, discount.percent)

    currency = (display_currency or order.display_currency or order.settlement_currency).upper()
    rate = _display_rate(order, currency, rate_store)
    return ChargeQuote(
        amount_cents=amount,
        display_amount_cents=convert(amount, rate),
        display_currency=currency,
        fx_rate=rate,
        applied_discount=discount,
    )


def _write_quote(order: Order, quote: ChargeQuote) -> None:
    discount = quote.applied_discount
    order.amount_cents = quote.amount_cents
    order.display_amount_cents = quote.display_amount_cents
    order.display_currency = quote.display_currency
    order.discount_source = discount.source
    order.discount_code = discount.code if isinstance(discount, PromoDiscount) else None
    order.discount_percent = None if isinstance(discount, NoDiscount) else discount.percent


def _load_pending_order(db: Session, order_id: int, user: Optional[User], discount_change: bool = False) -> Order:
    """
    Locks the order row for the read-modify-write; other users' orders look like missing ones.
    A discount change is refused once a payment attempt has quoted the amount.
    """
    order = crud_order.get_order_for_update(db, order_id)
    if order is None or (user is not None and order.user_id != user.id):
        raise NotFound("Order not found.", code="ORDER_NOT_FOUND")
    if not order.is_pending:
        raise ConflictError(f"Order is {order.status}; its amount can no longer change.", code="ORDER_NOT_PENDING")
    if discount_change and order.checkout_started:
        raise ConflictError(
            "Checkout has already started for this order; its discount can no longer change.",
            code="CHECKOUT_STARTED",
        )
    if order.original_amount_cents is None:
        order.original_amount_cents = order.amount_cents
    return order


def get_user_order(db: Session, order_id: int, user: User) -> Order:
    order = crud_order.get_order(db, order_id)
    if order is None or order.user_id != user.id:
        raise NotFound("Order not found.", code="ORDER_NOT_FOUND")
    return order


# --- Referral eligibility ---

def referral_eligibility(db: Session, user: User) -> Optional[ReferralDiscount]:
    """Referred users get the referral discount until their first paid order."""
    if crud_referral.get_attribution_by_referred_id(db, user.id) is None:
        return None
    if crud_order.count_paid_orders(db, user.id) > 0:
        return None
    return ReferralDiscount(percent=settings.REFERRAL_DISCOUNT_PERCENT)


def preview_referral_discount(db: Session, order_id: int, user: User, rate_store: RateStore) -> dict:
    """Informational only: what checkout would charge if no promo gets applied first."""
    order = get_user_order(db, order_id, user)

    referral = referral_eligibility(db, user)
    current = discount_of(order)
    effective = resolve_discount(current if isinstance(current, PromoDiscount) else None, referral)
    quote = compute_charge(order, effective, rate_store)
    return {
        "eligible": referral is not None,
        "discount_percent": referral.percent if referral else 0,
        "applies_at_checkout": isinstance(effective, ReferralDiscount),
        "amount_cents": quote.amount_cents,
        "display_amount_cents": quote.display_amount_cents,
        "display_currency": quote.display_currency,
    }


# --- Promo codes ---

def apply_promo(db: Session, order_id: int, code: str, rate_store: RateStore, user: Optional[User] = None) -> dict:
    """
    Applies a promo code to a pending order and returns the preview the checkout page shows.
    A second apply without a remove in between is rejected and leaves the order as it was.
    """
    normalized = (code or "").strip().upper()
    logger.info(f"Applying promo '{normalized}' to order {order_id}.")

    try:
        order = _load_pending_order(db, order_id, user, discount_change=True)

        current = discount_of(order)
        if isinstance(current, PromoDiscount):
            raise ConflictError(
                f"Promo code {current.code} is already applied. Remove it first to apply a different code.",
                code="PROMO_ALREADY_APPLIED",
            )

        promo = crud_order.get_promo_by_code(db, normalized) if normalized else None
        if promo is None or not promo.is_active:
            raise ValidationFailed("Promo code not found.", code="PROMO_NOT_FOUND")
        if crud_order.is_promo_expired(promo):
            raise ValidationFailed("Promo code has expired.", code="PROMO_EXPIRED")
        if crud_order.is_promo_exhausted(promo):
            raise ValidationFailed("Promo code has reached its usage limit.", code="PROMO_EXHAUSTED")

        referral = current if isinstance(current, ReferralDiscount) else None
        if referral is not None:
            logger.info(f"Promo '{promo.code}' replaces the referral discount on order {order.id}.")

        discount = resolve_discount(PromoDiscount(code=promo.code, percent=promo.discount_percent), referral)
        undiscounted = compute_charge(order, NoDiscount(), rate_store)
        quote = compute_charge(order, discount, rate_store)
        _write_quote(order, quote)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"Promo '{promo.code}' applied to order {order.id}: "
        f"{order.original_amount_cents} -> {order.amount_cents} {order.settlement_currency}."
    )
    return {
        "valid": True,
        "promo_code": promo.code,
        "discount_percent": promo.discount_percent,
        "original_amount": order.original_amount_cents,
        "original_display_amount": undiscounted.display_amount_cents,
        "discounted_amount": order.amount_cents,
        "display_amount": order.display_amount_cents,
        "display_currency": order.display_currency,
    }


def remove_promo(db: Session, order_id: int, rate_store: RateStore, user: Optional[User] = None) -> Order:
    """
    Restores the captured original amount verbatim.
    Never derived by inverting the percentage; that is lossy.
    """
    try:
        order = _load_pending_order(db, order_id, user, discount_change=True)
        current = discount_of(order)
        if not isinstance(current, PromoDiscount):
            logger.info(f"Order {order.id} has no promo applied; nothing to remove.")
            db.rollback()
            return order

        order.amount_cents = order.original_amount_cents
        order.display_amount_cents = convert(order.amount_cents, _display_rate(order, order.display_currency, rate_store))
        order.discount_source = SOURCE_NONE
        order.discount_code = None
        order.discount_percent = None
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(f"Promo '{current.code}' removed from order {order.id}; amount restored to {order.amount_cents}.")
    return order


# --- Checkout ---

def prepare_checkout(
    db: Session,
    order_id: int,
    user: User,
    rate_store: RateStore,
    display_currency: Optional[str] = None,
) -> Order:
    """
    Settles which discount is active, then freezes the current FX rate and the
    display amount onto the order. The frozen rate is what settlement records.

    The first call starts checkout: from then on the discount, and so the
    chargeable amount, is fixed. A repeated call only re-quotes the display side.
    """
    try:
        order = _load_pending_order(db, order_id, user)

        current = discount_of(order)
        if order.checkout_started:
            discount = current
        else:
            promo = current if isinstance(current, PromoDiscount) else None
            discount = resolve_discount(promo, referral_eligibility(db, user))
            if discount != current:
                logger.info(f"Order {order.id}: active discount {current.source} -> {discount.source} at checkout.")
            order.checkout_started_at = datetime.now(timezone.utc)

        if display_currency:
            order.display_currency = display_currency.upper()
        order.fx_rate = rate_store.get(order.display_currency)

        quote = compute_charge(order, discount, rate_store)
        _write_quote(order, quote)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(
        f"Checkout prepared for order {order.id}: {order.amount_cents} {order.settlement_currency} "
        f"({order.display_amount_cents} {order.display_currency} @ {order.fx_rate})."
    )
    return order


def freeze_rate(order: Order, rate_store: RateStore) -> None:
    """
    Freezes the display conversion onto an order being settled, if checkout never did.
    A missing rate must not block a confirmed payment; the order keeps its last display amount.
    """
    if order.fx_rate is not None:
        return
    try:
        rate = rate_store.get(order.display_currency)
    except (StoreContention, ValidationFailed) as e:
        logger.warning(f"Could not freeze FX rate on order {order.id}: {e.message}")
        return
    order.fx_rate = rate
    order.display_amount_cents = convert(order.amount_cents, rate)
