# settlement/models/affiliate.py
from sqlalchemy import Boolean, Column, Integer, String, ForeignKey, DateTime, UniqueConstraint, func
from sqlalchemy.orm import relationship

from settlement.db.session import Base

SOURCE_ORDER = "order"
SOURCE_TOPUP = "topup"
COMMISSION_SOURCES = (SOURCE_ORDER, SOURCE_TOPUP)

PAYOUT_VCASH = "vcash"


class Affiliate(Base):
    __tablename__ = "affiliates"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    # Issued once, never changes
    referral_code = Column(String, unique=True, index=True, nullable=False)
    is_frozen = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="affiliate")
    referrals = relationship("ReferralAttribution", back_populates="affiliate", lazy="dynamic")
    commissions = relationship("AffiliateCommission", back_populates="affiliate", lazy="dynamic")


class AffiliateCommission(Base):
    __tablename__ = "affiliate_commissions"
    __table_args__ = (
        # One commission per purchase, however many times settlement is replayed
        UniqueConstraint("source_order_id", "source_type", name="uq_commission_source"),
    )
    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)
    source_order_id = Column(Integer, nullable=False)
    # 'order', 'topup'
    source_type = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    settled_amount_cents = Column(Integer, nullable=False)
    settled_currency = Column(String(3), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    affiliate = relationship("Affiliate", back_populates="commissions")


class AffiliatePayout(Base):
    __tablename__ = "affiliate_payouts"
    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)
    # 'vcash'
    payout_type = Column(String, nullable=False, default=PAYOUT_VCASH)
    amount_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
