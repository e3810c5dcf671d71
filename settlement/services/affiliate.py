# settlement/services/affiliate.py

import logging
import math
import secrets
import string
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.errors import ConflictError, Forbidden, InsufficientFunds, NotFound, ValidationFailed
from settlement.core.money import percent_of, require_positive_cents
from settlement.crud import affiliate as crud_affiliate
from settlement.crud import order as crud_order
from settlement.crud import referral as crud_referral
from settlement.crud import vcash as crud_vcash
from settlement.db.transaction import run_in_transaction
from settlement.models.affiliate import Affiliate, AffiliateCommission, COMMISSION_SOURCES, SOURCE_ORDER
from settlement.models.referral import ReferralAttribution
from settlement.models.vcash import REASON_AFFILIATE_CONVERSION
from settlement.services import vcash as vcash_service

logger = logging.getLogger(__name__)

REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_ATTEMPTS = 10


def _generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


# --- Referral codes ---

def issue_referral_code(db: Session, user_id: int) -> Affiliate:
    """Returns the user's affiliate record, creating it with a fresh code on first call."""
    affiliate = crud_affiliate.get_affiliate_by_user_id(db, user_id)
    if affiliate:
        return affiliate

    for attempt in range(1, REFERRAL_CODE_ATTEMPTS + 1):
        code = _generate_referral_code()
        if crud_affiliate.get_affiliate_by_code(db, code):
            logger.info(f"Referral code collision on attempt {attempt}, generating another.")
            continue

        affiliate = Affiliate(user_id=user_id, referral_code=code)
        db.add(affiliate)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            # Either the user got an affiliate from a parallel request or the code was just taken
            existing = crud_affiliate.get_affiliate_by_user_id(db, user_id)
            if existing:
                return existing
            continue

        db.refresh(affiliate)
        logger.info(f"Assigned referral code '{code}' to user {user_id}.")
        return affiliate

    logger.error(f"Could not generate a unique referral code for user {user_id} in {REFERRAL_CODE_ATTEMPTS} attempts.")
    raise ConflictError("Could not issue a referral code, please retry.", code="REFERRAL_CODE_UNAVAILABLE")


def find_affiliate_by_code(db: Session, code: str) -> Optional[Affiliate]:
    if not code or not code.strip():
        return None
    return crud_affiliate.get_affiliate_by_code(db, code)


def verify_referral_code(db: Session, code: str) -> dict:
    affiliate = find_affiliate_by_code(db, code)
    return {
        "valid": affiliate is not None,
        "referral_code": affiliate.referral_code if affiliate else None,
    }


# --- Attribution ---

def attribute(
    db: Session,
    referred_user_id: int,
    referral_code: str,
    ip_address: Optional[str] = None,
) -> Optional[ReferralAttribution]:
    """
    First touch wins: a user attributed once stays with that affiliate, and any
    later call returns the original attribution unchanged.
    """
    existing = crud_referral.get_attribution_by_referred_id(db, referred_user_id)
    if existing:
        logger.info(f"User {referred_user_id} is already attributed to affiliate {existing.affiliate_id}.")
        return existing

    affiliate = find_affiliate_by_code(db, referral_code)
    if affiliate is None:
        raise NotFound("Referral code not found.", code="REFERRAL_CODE_NOT_FOUND")

    if affiliate.user_id == referred_user_id:
        logger.warning(f"User {referred_user_id} tried to refer themselves with code '{affiliate.referral_code}'.")
        return None

    attribution = crud_referral.create_attribution(
        db, affiliate_id=affiliate.id, referred_user_id=referred_user_id, ip_address=ip_address
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = crud_referral.get_attribution_by_referred_id(db, referred_user_id)
        if existing is None:
            raise
        logger.info(f"Concurrent attribution for user {referred_user_id}; keeping affiliate {existing.affiliate_id}.")
        return existing

    db.refresh(attribution)
    logger.info(f"User {referred_user_id} attributed to affiliate {affiliate.id} (ip: {ip_address}).")
    return attribution


# --- Commission ledger ---

def _purchaser_of(db: Session, source_id: int, source_type: str) -> Optional[int]:
    if source_type == SOURCE_ORDER:
        source = crud_order.get_order(db, source_id)
    else:
        source = crud_order.get_topup(db, source_id)
    return source.user_id if source else None


def record_commission(
    db: Session,
    source_order_id: int,
    source_type: str,
    settled_amount_cents: int,
    settled_currency: str,
) -> Optional[AffiliateCommission]:
    """
    Writes the commission for one settled purchase, at most once.

    Safe to call any number of times, concurrently included: the unique key on
    (source_order_id, source_type) decides, and every loser gets the existing row.
    Returns None when the purchaser was not referred or the commission rounds to zero.
    """
    if source_type not in COMMISSION_SOURCES:
        raise ValidationFailed(f"Unknown commission source '{source_type}'.", code="INVALID_SOURCE_TYPE")

    existing = crud_affiliate.get_commission_by_source(db, source_order_id, source_type)
    if existing:
        logger.info(f"Commission for {source_type} {source_order_id} already recorded (id {existing.id}).")
        return existing

    purchaser_id = _purchaser_of(db, source_order_id, source_type)
    if purchaser_id is None:
        raise NotFound(f"{source_type.capitalize()} {source_order_id} not found.", code="SOURCE_NOT_FOUND")

    attribution = crud_referral.get_attribution_by_referred_id(db, purchaser_id)
    if attribution is None:
        return None

    amount = percent_of(settled_amount_cents, settings.COMMISSION_PERCENT)
    if amount <= 0:
        logger.info(f"Commission for {source_type} {source_order_id} rounds to {amount}; skipped.")
        return None

    commission = crud_affiliate.create_commission(
        db,
        affiliate_id=attribution.affiliate_id,
        source_order_id=source_order_id,
        source_type=source_type,
        amount_cents=amount,
        settled_amount_cents=settled_amount_cents,
        settled_currency=settled_currency,
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = crud_affiliate.get_commission_by_source(db, source_order_id, source_type)
        if existing is None:
            raise
        logger.info(f"Duplicate commission for {source_type} {source_order_id} ignored; keeping id {existing.id}.")
        return existing

    db.refresh(commission)
    logger.info(
        f"Commission {commission.amount_cents} recorded for affiliate {attribution.affiliate_id} "
        f"from {source_type} {source_order_id} ({settled_amount_cents} {settled_currency})."
    )
    return commission


def remaining_commission(db: Session, affiliate_id: int) -> int:
    return crud_affiliate.sum_commissions(db, affiliate_id) - crud_affiliate.sum_payouts(db, affiliate_id)


def get_dashboard(db: Session, user_id: int) -> dict:
    """Every total comes from the ledgers, never from a stored counter."""
    affiliate = issue_referral_code(db, user_id)

    total_commission = crud_affiliate.sum_commissions(db, affiliate.id)
    total_paid_out = crud_affiliate.sum_payouts(db, affiliate.id)
    referred_ids = crud_referral.get_referred_user_ids(db, affiliate.id)

    return {
        "referral_code": affiliate.referral_code,
        "is_frozen": affiliate.is_frozen,
        "total_commission_cents": total_commission,
        "total_paid_out_cents": total_paid_out,
        "remaining_commission_cents": total_commission - total_paid_out,
        "total_referrals": len(referred_ids),
        "total_purchases": crud_order.count_purchases_for_users(db, referred_ids),
        "total_commissions": crud_affiliate.count_commissions(db, affiliate.id),
        "recent_commissions": crud_affiliate.get_commissions(db, affiliate.id, limit=50),
        "referrals": crud_referral.get_referrals(db, affiliate.id, limit=100),
        "payouts": crud_affiliate.get_payouts(db, affiliate.id, limit=10),
    }


def convert_commission_to_vcash(
    db: Session,
    user_id: int,
    amount_cents: int,
    ip_address: Optional[str] = None,
) -> dict:
    """Moves earned commission into the affiliate's own V-Cash wallet, payout row and credit together."""
    require_positive_cents(amount_cents)

    affiliate = crud_affiliate.get_affiliate_by_user_id(db, user_id)
    if affiliate is None:
        raise NotFound("You are not an affiliate yet.", code="AFFILIATE_NOT_FOUND")
    if affiliate.is_frozen:
        raise Forbidden("Affiliate account is frozen.", code="AFFILIATE_FROZEN")

    account = crud_vcash.get_or_create_account(db, user_id)

    def unit_of_work() -> dict:
        # The wallet lock also serializes conversions of the same affiliate
        crud_vcash.lock_account(db, account.id)
        locked = crud_affiliate.get_affiliate_for_update(db, affiliate.id)
        if locked.is_frozen:
            raise Forbidden("Affiliate account is frozen.", code="AFFILIATE_FROZEN")

        remaining = remaining_commission(db, affiliate.id)
        if amount_cents > remaining:
            raise InsufficientFunds(
                f"Only {remaining} cents of commission are available to convert.",
                code="INSUFFICIENT_COMMISSION",
            )

        crud_affiliate.create_payout(db, affiliate_id=affiliate.id, amount_cents=amount_cents)
        vcash_service.post_entry(
            db,
            account.id,
            amount_cents,
            REASON_AFFILIATE_CONVERSION,
            meta={"affiliate_id": affiliate.id},
            ip_address=ip_address,
        )
        return {
            "converted_cents": amount_cents,
            "remaining_commission_cents": remaining - amount_cents,
            "vcash_balance_cents": account.balance_cents,
        }

    result = run_in_transaction(db, unit_of_work, name=f"commission conversion for affiliate {affiliate.id}")
    logger.info(f"Affiliate {affiliate.id} converted {amount_cents} cents of commission to V-Cash.")
    return result


# --- Admin ---

def _admin_row(affiliate: Affiliate, stats: dict) -> dict:
    return {
        "id": affiliate.id,
        "user_id": affiliate.user_id,
        "email": affiliate.user.email if affiliate.user else None,
        "referral_code": affiliate.referral_code,
        "is_frozen": affiliate.is_frozen,
        "created_at": affiliate.created_at,
        "total_referrals": stats.get("referrals", 0),
        "total_commissions": stats.get("commissions", 0),
        "total_commission_cents": stats.get("total_commission_cents", 0),
    }


def affiliate_summary(db: Session, affiliate: Affiliate) -> dict:
    counts = crud_affiliate.get_affiliate_counts(db, [affiliate.id])
    return _admin_row(affiliate, counts.get(affiliate.id, {}))


def list_affiliates(db: Session, page: int = 1, page_size: int = 50) -> dict:
    affiliates = crud_affiliate.get_affiliates(db, skip=(page - 1) * page_size, limit=page_size)
    counts = crud_affiliate.get_affiliate_counts(db, [affiliate.id for affiliate in affiliates])
    total = crud_affiliate.count_affiliates(db)

    items = [_admin_row(affiliate, counts.get(affiliate.id, {})) for affiliate in affiliates]
    return {
        "total_items": total,
        "total_pages": math.ceil(total / page_size) if total else 0,
        "current_page": page,
        "size": page_size,
        "items": items,
    }


def list_commissions(db: Session, page: int = 1, page_size: int = 50) -> dict:
    total = crud_affiliate.count_all_commissions(db)
    return {
        "total_items": total,
        "total_pages": math.ceil(total / page_size) if total else 0,
        "current_page": page,
        "size": page_size,
        "items": crud_affiliate.get_all_commissions(db, skip=(page - 1) * page_size, limit=page_size),
    }


def set_frozen(db: Session, affiliate_id: int, frozen: bool, admin_email: str) -> Affiliate:
    affiliate = crud_affiliate.get_affiliate(db, affiliate_id)
    if affiliate is None:
        raise NotFound("Affiliate not found.", code="AFFILIATE_NOT_FOUND")
    affiliate.is_frozen = frozen
    db.commit()
    db.refresh(affiliate)
    logger.warning(f"Admin {admin_email} set is_frozen={frozen} on affiliate {affiliate_id}.")
    return affiliate
