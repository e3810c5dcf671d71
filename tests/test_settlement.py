# tests/test_settlement.py

import logging
from decimal import Decimal

import pytest

from settlement.core.errors import ConflictError, InsufficientFunds, ValidationFailed
from settlement.crud import affiliate as crud_affiliate
from settlement.models.affiliate import AffiliateCommission, SOURCE_ORDER, SOURCE_TOPUP
from settlement.models.order import ORDER_FAILED, ORDER_PAID, ORDER_PENDING, ORDER_REFUNDED, TOPUP_COMPLETED, TOPUP_FAILED, TOPUP_PENDING
from settlement.models.vcash import REASON_PURCHASE, REASON_REFUND
from settlement.services import affiliate as affiliate_service
from settlement.services import pricing as pricing_service
from settlement.services import settlement as settlement_service
from settlement.services import vcash as vcash_service

logger = logging.getLogger(__name__)


@pytest.fixture
def partner_affiliate(db_session, make_user):
    partner = make_user("partner@example.com")
    return affiliate_service.issue_referral_code(db_session, partner.id)


@pytest.fixture
def referred_buyer(db_session, test_user, partner_affiliate):
    affiliate_service.attribute(db_session, test_user.id, partner_affiliate.referral_code)
    return test_user


def _commission_rows(db_session):
    return db_session.query(AffiliateCommission).all()


# --- Card payments via the processor callback ---

def test_referred_purchase_with_promo_settles_end_to_end(
    db_session, referred_buyer, partner_affiliate, make_order, make_promo, rate_store
):
    """Referral discount is offered, the promo replaces it, callback settles 4000 and pays 400 commission."""
    order = make_order(referred_buyer, 5000)
    promo = make_promo("XYZ", 20)

    assert pricing_service.preview_referral_discount(db_session, order.id, referred_buyer, rate_store)["amount_cents"] == 4500
    pricing_service.apply_promo(db_session, order.id, "XYZ", rate_store, user=referred_buyer)
    assert pricing_service.prepare_checkout(db_session, order.id, referred_buyer, rate_store).amount_cents == 4000

    settled = settlement_service.handle_payment_event(
        db_session, SOURCE_ORDER, order.id, "paid", rate_store, captured_amount_cents=4000
    )

    assert settled.status == ORDER_PAID
    assert settled.paid_at is not None
    assert settled.amount_cents == 4000
    assert settled.original_amount_cents == 5000

    commissions = _commission_rows(db_session)
    assert len(commissions) == 1
    assert commissions[0].affiliate_id == partner_affiliate.id
    assert commissions[0].amount_cents == 400
    assert commissions[0].settled_amount_cents == 4000

    db_session.refresh(promo)
    assert promo.usage_count == 1


def test_discount_is_frozen_once_checkout_quoted(
    db_session, referred_buyer, partner_affiliate, make_order, make_promo, rate_store
):
    order = make_order(referred_buyer, 5000)
    make_promo("LATE20", 20)
    captured = pricing_service.prepare_checkout(db_session, order.id, referred_buyer, rate_store).amount_cents
    assert captured == 4500

    with pytest.raises(ConflictError) as exc_info:
        pricing_service.apply_promo(db_session, order.id, "LATE20", rate_store, user=referred_buyer)
    assert exc_info.value.code == "CHECKOUT_STARTED"
    with pytest.raises(ConflictError):
        pricing_service.remove_promo(db_session, order.id, rate_store, user=referred_buyer)

    # A second attempt in another currency re-quotes the display side only
    requoted = pricing_service.prepare_checkout(db_session, order.id, referred_buyer, rate_store, display_currency="EUR")
    assert requoted.amount_cents == captured
    assert requoted.display_amount_cents == 4140

    paid = settlement_service.settle_order_paid(db_session, order.id, rate_store, captured_amount_cents=captured)

    assert paid.amount_cents == captured
    assert [commission.amount_cents for commission in _commission_rows(db_session)] == [450]


def test_captured_amount_mismatch_is_not_settled(db_session, referred_buyer, make_order, make_promo, rate_store):
    order = make_order(referred_buyer, 5000)
    make_promo("XYZ", 20)
    pricing_service.apply_promo(db_session, order.id, "XYZ", rate_store, user=referred_buyer)

    with pytest.raises(ConflictError) as exc_info:
        settlement_service.handle_payment_event(
            db_session, SOURCE_ORDER, order.id, "paid", rate_store, captured_amount_cents=5000
        )
    assert exc_info.value.code == "AMOUNT_MISMATCH"

    db_session.refresh(order)
    assert order.status == ORDER_PENDING
    assert order.paid_at is None
    assert _commission_rows(db_session) == []

    settled = settlement_service.handle_payment_event(
        db_session, SOURCE_ORDER, order.id, "paid", rate_store, captured_amount_cents=4000
    )
    assert settled.status == ORDER_PAID
    assert [commission.amount_cents for commission in _commission_rows(db_session)] == [400]


def test_replayed_paid_callback_is_idempotent(db_session, referred_buyer, make_order, make_promo, rate_store):
    order = make_order(referred_buyer, 5000)
    promo = make_promo("XYZ", 20)
    pricing_service.apply_promo(db_session, order.id, "XYZ", rate_store, user=referred_buyer)

    for _ in range(3):
        settlement_service.settle_order_paid(db_session, order.id, rate_store)

    assert len(_commission_rows(db_session)) == 1
    db_session.refresh(promo)
    assert promo.usage_count == 1


def test_replay_repairs_missing_commission(db_session, referred_buyer, make_order, rate_store, mocker):
    order = make_order(referred_buyer, 3000)

    mocker.patch.object(affiliate_service, "record_commission", side_effect=RuntimeError("store hiccup"))
    with pytest.raises(RuntimeError):
        settlement_service.settle_order_paid(db_session, order.id, rate_store)
    mocker.stopall()

    db_session.refresh(order)
    assert order.status == ORDER_PAID
    assert _commission_rows(db_session) == []

    settlement_service.settle_order_paid(db_session, order.id, rate_store)
    assert [commission.amount_cents for commission in _commission_rows(db_session)] == [300]


def test_promo_usage_never_passes_its_limit(db_session, make_user, make_order, make_promo, rate_store):
    promo = make_promo("ONCE", 10, usage_limit=1)
    first_buyer = make_user("first@example.com")
    second_buyer = make_user("second@example.com")
    first = make_order(first_buyer, 1000)
    second = make_order(second_buyer, 1000)

    # Both orders apply the code while it still has a use left
    pricing_service.apply_promo(db_session, first.id, "ONCE", rate_store, user=first_buyer)
    pricing_service.apply_promo(db_session, second.id, "ONCE", rate_store, user=second_buyer)

    settlement_service.settle_order_paid(db_session, first.id, rate_store)
    settlement_service.settle_order_paid(db_session, second.id, rate_store)

    db_session.refresh(promo)
    assert promo.usage_count == 1
    db_session.refresh(second)
    assert second.status == ORDER_PAID


def test_settlement_freezes_rate_when_checkout_did_not(db_session, test_user, make_order, rate_store):
    order = make_order(test_user, 2000, display_currency="EUR")

    settled = settlement_service.settle_order_paid(db_session, order.id, rate_store)

    assert settled.fx_rate == Decimal("0.92")
    assert settled.display_amount_cents == 1840


def test_failed_order_ignores_late_paid_callback(db_session, referred_buyer, make_order, rate_store):
    order = make_order(referred_buyer, 2000)

    assert settlement_service.handle_payment_event(db_session, SOURCE_ORDER, order.id, "failed").status == ORDER_FAILED
    assert settlement_service.handle_payment_event(db_session, SOURCE_ORDER, order.id, "paid", rate_store).status == ORDER_FAILED
    assert _commission_rows(db_session) == []


def test_failed_callback_does_not_undo_payment(db_session, test_user, make_order, rate_store):
    order = make_order(test_user, 2000)
    settlement_service.settle_order_paid(db_session, order.id, rate_store)

    assert settlement_service.settle_order_failed(db_session, order.id).status == ORDER_PAID


def test_unknown_source_type_is_rejected(db_session):
    with pytest.raises(ValidationFailed) as exc_info:
        settlement_service.handle_payment_event(db_session, "gift_card", 1, "paid")
    assert exc_info.value.code == "INVALID_SOURCE_TYPE"


# --- Top-ups ---

def test_completed_topup_pays_commission_once(db_session, referred_buyer, partner_affiliate, make_topup):
    topup = make_topup(referred_buyer, 1500)

    for _ in range(2):
        settled = settlement_service.handle_payment_event(db_session, SOURCE_TOPUP, topup.id, "paid")
    assert settled.status == TOPUP_COMPLETED

    commissions = _commission_rows(db_session)
    assert len(commissions) == 1
    assert commissions[0].source_type == SOURCE_TOPUP
    assert commissions[0].amount_cents == 150
    assert crud_affiliate.sum_commissions(db_session, partner_affiliate.id) == 150


def test_topup_with_wrong_captured_amount_stays_pending(db_session, referred_buyer, make_topup):
    topup = make_topup(referred_buyer, 1500)

    with pytest.raises(ConflictError) as exc_info:
        settlement_service.handle_payment_event(db_session, SOURCE_TOPUP, topup.id, "paid", captured_amount_cents=1000)
    assert exc_info.value.code == "AMOUNT_MISMATCH"

    db_session.refresh(topup)
    assert topup.status == TOPUP_PENDING
    assert _commission_rows(db_session) == []


def test_failed_topup_earns_nothing(db_session, referred_buyer, make_topup):
    topup = make_topup(referred_buyer, 1500)

    settlement_service.handle_payment_event(db_session, SOURCE_TOPUP, topup.id, "failed")
    late = settlement_service.handle_payment_event(db_session, SOURCE_TOPUP, topup.id, "paid")

    assert late.status == TOPUP_FAILED
    assert _commission_rows(db_session) == []


# --- V-Cash purchases ---

def test_pay_with_vcash_debits_wallet_and_settles(db_session, referred_buyer, make_order, rate_store):
    vcash_service.credit(db_session, referred_buyer.id, 5000, REASON_REFUND)
    order = make_order(referred_buyer, 5000)

    paid = settlement_service.pay_with_vcash(db_session, order.id, referred_buyer, rate_store, ip_address="192.0.2.10")

    assert paid.status == ORDER_PAID
    assert paid.amount_cents == 4500
    assert vcash_service.get_balance(db_session, referred_buyer.id) == 500

    purchase = vcash_service.get_history(db_session, referred_buyer.id)["transactions"][0]
    assert purchase.reason == REASON_PURCHASE
    assert purchase.amount_cents == -4500
    assert purchase.meta == {"order_id": order.id}
    assert purchase.ip_address == "192.0.2.10"

    assert [commission.amount_cents for commission in _commission_rows(db_session)] == [450]


def test_pay_with_vcash_short_balance_leaves_order_pending(db_session, test_user, make_order, rate_store):
    vcash_service.credit(db_session, test_user.id, 100, REASON_REFUND)
    order = make_order(test_user, 2000)

    with pytest.raises(InsufficientFunds):
        settlement_service.pay_with_vcash(db_session, order.id, test_user, rate_store)

    db_session.refresh(order)
    assert order.status == ORDER_PENDING
    assert order.paid_at is None
    assert vcash_service.get_balance(db_session, test_user.id) == 100


def test_pay_with_vcash_twice_is_rejected(db_session, test_user, make_order, rate_store):
    vcash_service.credit(db_session, test_user.id, 5000, REASON_REFUND)
    order = make_order(test_user, 2000)
    settlement_service.pay_with_vcash(db_session, order.id, test_user, rate_store)

    with pytest.raises(ConflictError) as exc_info:
        settlement_service.pay_with_vcash(db_session, order.id, test_user, rate_store)
    assert exc_info.value.code == "ORDER_NOT_PENDING"
    assert vcash_service.get_balance(db_session, test_user.id) == 3000


# --- Refunds ---

def test_refund_credits_wallet_and_keeps_commission(db_session, referred_buyer, make_order, rate_store):
    order = make_order(referred_buyer, 2000)
    settlement_service.settle_order_paid(db_session, order.id, rate_store)
    commission_before = [commission.amount_cents for commission in _commission_rows(db_session)]
    assert commission_before == [200]

    refunded = settlement_service.refund_order(db_session, order.id, admin_email="admin@example.com")

    assert refunded.status == ORDER_REFUNDED
    assert vcash_service.get_balance(db_session, referred_buyer.id) == 2000
    refund_entry = vcash_service.get_history(db_session, referred_buyer.id)["transactions"][0]
    assert refund_entry.reason == REASON_REFUND
    assert refund_entry.meta == {"order_id": order.id, "admin": "admin@example.com"}
    assert [commission.amount_cents for commission in _commission_rows(db_session)] == commission_before

    with pytest.raises(ConflictError) as exc_info:
        settlement_service.refund_order(db_session, order.id, admin_email="admin@example.com")
    assert exc_info.value.code == "ORDER_NOT_REFUNDABLE"
    assert vcash_service.get_balance(db_session, referred_buyer.id) == 2000


def test_pending_order_cannot_be_refunded(db_session, test_user, make_order):
    order = make_order(test_user, 2000)

    with pytest.raises(ConflictError) as exc_info:
        settlement_service.refund_order(db_session, order.id, admin_email="admin@example.com")
    assert exc_info.value.code == "ORDER_NOT_REFUNDABLE"
