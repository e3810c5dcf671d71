# settlement/routers/orders.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from settlement.core.rate_limit import client_ip, rate_limit
from settlement.dependencies import get_current_user, get_db
from settlement.models.user import User
from settlement.schemas.order import CheckoutRequest, Order, PromoPreview, PromoValidateRequest, ReferralDiscountPreview
from settlement.services import pricing as pricing_service
from settlement.services import settlement as settlement_service
from settlement.services.rates import RateStore, get_rate_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders")


@router.get("/{order_id}", response_model=Order)
def get_order_endpoint(
    order_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return pricing_service.get_user_order(db, order_id, current_user)


@router.post("/{order_id}/validate-promo", response_model=PromoPreview)
def validate_promo_endpoint(
    order_id: int,
    request_data: PromoValidateRequest,
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("promo_validation")),
    db: Session = Depends(get_db),
    rate_store: RateStore = Depends(get_rate_store),
):
    """
    Validates the promo code and applies it to the pending order.
    Returns the amounts the checkout page should show.
    """
    return pricing_service.apply_promo(db, order_id, request_data.promo_code, rate_store, user=current_user)


@router.post("/{order_id}/remove-promo", response_model=Order)
def remove_promo_endpoint(
    order_id: int,
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("promo_validation")),
    db: Session = Depends(get_db),
    rate_store: RateStore = Depends(get_rate_store),
):
    return pricing_service.remove_promo(db, order_id, rate_store, user=current_user)


@router.get("/{order_id}/referral-discount", response_model=ReferralDiscountPreview)
def referral_discount_endpoint(
    order_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    rate_store: RateStore = Depends(get_rate_store),
):
    """Preview only; the discount is applied at checkout."""
    return pricing_service.preview_referral_discount(db, order_id, current_user, rate_store)


@router.post("/{order_id}/checkout", response_model=Order)
def checkout_endpoint(
    order_id: int,
    request_data: Optional[CheckoutRequest] = None,
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("payment_attempt")),
    db: Session = Depends(get_db),
    rate_store: RateStore = Depends(get_rate_store),
):
    """
    Starts a payment attempt: fixes the discount and freezes the FX rate.
    The returned amount is what the payment processor should capture.
    """
    return pricing_service.prepare_checkout(
        db, order_id, current_user, rate_store, display_currency=request_data.display_currency if request_data else None
    )


@router.post("/{order_id}/pay-with-vcash", response_model=Order)
def pay_with_vcash_endpoint(
    order_id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("payment_attempt")),
    db: Session = Depends(get_db),
    rate_store: RateStore = Depends(get_rate_store),
):
    return settlement_service.pay_with_vcash(db, order_id, current_user, rate_store, ip_address=client_ip(request))
