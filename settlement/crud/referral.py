# settlement/crud/referral.py
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session
from settlement.models.referral import ReferralAttribution

def create_attribution(db: Session, affiliate_id: int, referred_user_id: int, ip_address: str | None = None) -> ReferralAttribution:
    """
    Adds the attribution to the session.
    Requires an external db.commit(); the unique referred_user_id decides races.
    """
    attribution = ReferralAttribution(
        affiliate_id=affiliate_id,
        referred_user_id=referred_user_id,
        ip_address=ip_address,
    )
    db.add(attribution)
    return attribution

def get_attribution_by_referred_id(db: Session, referred_user_id: int) -> ReferralAttribution | None:
    """Finds who referred the given user."""
    return db.query(ReferralAttribution).filter(ReferralAttribution.referred_user_id == referred_user_id).first()

def get_referrals(db: Session, affiliate_id: int, limit: int = 100) -> list[ReferralAttribution]:
    return db.query(ReferralAttribution).filter(
        ReferralAttribution.affiliate_id == affiliate_id
    ).order_by(ReferralAttribution.created_at.desc(), ReferralAttribution.id.desc()).limit(limit).all()

def get_referred_user_ids(db: Session, affiliate_id: int) -> list[int]:
    rows = db.query(ReferralAttribution.referred_user_id).filter(ReferralAttribution.affiliate_id == affiliate_id).all()
    return [row[0] for row in rows]

# --- Velocity queries for fraud review ---

def count_attributions_by_affiliate_since(db: Session, since: datetime) -> list[tuple[int, int]]:
    """(affiliate_id, count) of attributions created after `since`."""
    return db.query(
        ReferralAttribution.affiliate_id, func.count(ReferralAttribution.id)
    ).filter(ReferralAttribution.created_at >= since).group_by(ReferralAttribution.affiliate_id).all()

def count_attributions_by_ip_since(db: Session, since: datetime) -> list[tuple[str, int, int]]:
    """(ip_address, count, distinct affiliates) of attributions created after `since`."""
    return db.query(
        ReferralAttribution.ip_address,
        func.count(ReferralAttribution.id),
        func.count(func.distinct(ReferralAttribution.affiliate_id)),
    ).filter(
        ReferralAttribution.created_at >= since,
        ReferralAttribution.ip_address.isnot(None),
    ).group_by(ReferralAttribution.ip_address).all()
