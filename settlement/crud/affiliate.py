# settlement/crud/affiliate.py

from datetime import datetime
from typing import List

from sqlalchemy import func
from sqlalchemy.orm import Session

from settlement.models.affiliate import Affiliate, AffiliateCommission, AffiliatePayout, PAYOUT_VCASH
from settlement.models.referral import ReferralAttribution

# --- Affiliates ---

def get_affiliate(db: Session, affiliate_id: int) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()

def get_affiliate_by_user_id(db: Session, user_id: int) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.user_id == user_id).first()

def get_affiliate_by_code(db: Session, code: str) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.referral_code == code.strip().upper()).first()

def get_affiliate_for_update(db: Session, affiliate_id: int) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.id == affiliate_id).populate_existing().with_for_update().first()

def get_affiliates(db: Session, skip: int = 0, limit: int = 50) -> List[Affiliate]:
    return db.query(Affiliate).order_by(Affiliate.created_at.desc(), Affiliate.id.desc()).offset(skip).limit(limit).all()

def count_affiliates(db: Session) -> int:
    return db.query(Affiliate).count()

# --- Commission ledger ---

def get_commission_by_source(db: Session, source_order_id: int, source_type: str) -> AffiliateCommission | None:
    return db.query(AffiliateCommission).filter(
        AffiliateCommission.source_order_id == source_order_id,
        AffiliateCommission.source_type == source_type,
    ).first()

def create_commission(
    db: Session,
    affiliate_id: int,
    source_order_id: int,
    source_type: str,
    amount_cents: int,
    settled_amount_cents: int,
    settled_currency: str,
) -> AffiliateCommission:
    """
    Adds the commission row to the session.
    Requires an external db.commit(); (source_order_id, source_type) is unique.
    """
    commission = AffiliateCommission(
        affiliate_id=affiliate_id,
        source_order_id=source_order_id,
        source_type=source_type,
        amount_cents=amount_cents,
        settled_amount_cents=settled_amount_cents,
        settled_currency=settled_currency,
    )
    db.add(commission)
    return commission

def sum_commissions(db: Session, affiliate_id: int) -> int:
    total = db.query(func.coalesce(func.sum(AffiliateCommission.amount_cents), 0)).filter(
        AffiliateCommission.affiliate_id == affiliate_id
    ).scalar()
    return int(total or 0)

def count_commissions(db: Session, affiliate_id: int) -> int:
    return db.query(AffiliateCommission).filter(AffiliateCommission.affiliate_id == affiliate_id).count()

def get_commissions(db: Session, affiliate_id: int, limit: int = 50) -> List[AffiliateCommission]:
    return db.query(AffiliateCommission).filter(
        AffiliateCommission.affiliate_id == affiliate_id
    ).order_by(AffiliateCommission.created_at.desc(), AffiliateCommission.id.desc()).limit(limit).all()

def get_all_commissions(db: Session, skip: int = 0, limit: int = 50) -> List[AffiliateCommission]:
    return db.query(AffiliateCommission).order_by(
        AffiliateCommission.created_at.desc(), AffiliateCommission.id.desc()
    ).offset(skip).limit(limit).all()

def count_all_commissions(db: Session) -> int:
    return db.query(AffiliateCommission).count()

def count_commissions_by_affiliate_since(db: Session, since: datetime) -> list[tuple[int, int]]:
    return db.query(
        AffiliateCommission.affiliate_id, func.count(AffiliateCommission.id)
    ).filter(AffiliateCommission.created_at >= since).group_by(AffiliateCommission.affiliate_id).all()

# --- Payouts ---

def create_payout(db: Session, affiliate_id: int, amount_cents: int, payout_type: str = PAYOUT_VCASH) -> AffiliatePayout:
    payout = AffiliatePayout(affiliate_id=affiliate_id, amount_cents=amount_cents, payout_type=payout_type)
    db.add(payout)
    return payout

def sum_payouts(db: Session, affiliate_id: int) -> int:
    total = db.query(func.coalesce(func.sum(AffiliatePayout.amount_cents), 0)).filter(
        AffiliatePayout.affiliate_id == affiliate_id
    ).scalar()
    return int(total or 0)

def get_payouts(db: Session, affiliate_id: int, limit: int = 10) -> List[AffiliatePayout]:
    return db.query(AffiliatePayout).filter(
        AffiliatePayout.affiliate_id == affiliate_id
    ).order_by(AffiliatePayout.created_at.desc(), AffiliatePayout.id.desc()).limit(limit).all()

# --- Admin aggregates ---

def get_affiliate_counts(db: Session, affiliate_ids: list[int]) -> dict[int, dict]:
    """Referral count, commission count and commission total per affiliate, all ledger-derived."""
    if not affiliate_ids:
        return {}
    counts = {affiliate_id: {"referrals": 0, "commissions": 0, "total_commission_cents": 0} for affiliate_id in affiliate_ids}

    referral_rows = db.query(
        ReferralAttribution.affiliate_id, func.count(ReferralAttribution.id)
    ).filter(ReferralAttribution.affiliate_id.in_(affiliate_ids)).group_by(ReferralAttribution.affiliate_id).all()
    for affiliate_id, count in referral_rows:
        counts[affiliate_id]["referrals"] = count

    commission_rows = db.query(
        AffiliateCommission.affiliate_id,
        func.count(AffiliateCommission.id),
        func.coalesce(func.sum(AffiliateCommission.amount_cents), 0),
    ).filter(AffiliateCommission.affiliate_id.in_(affiliate_ids)).group_by(AffiliateCommission.affiliate_id).all()
    for affiliate_id, count, total in commission_rows:
        counts[affiliate_id]["commissions"] = count
        counts[affiliate_id]["total_commission_cents"] = int(total or 0)

    return counts
