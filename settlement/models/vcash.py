# settlement/models/vcash.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON, Index, func
from sqlalchemy.orm import relationship

from settlement.db.session import Base
from .user import User

REASON_REFUND = "refund"
REASON_AFFILIATE_CONVERSION = "affiliate_conversion"
REASON_MANUAL_ADJUSTMENT = "manual_adjustment"
REASON_PURCHASE = "purchase"

VCASH_REASONS = (REASON_REFUND, REASON_AFFILIATE_CONVERSION, REASON_MANUAL_ADJUSTMENT, REASON_PURCHASE)


class VCashAccount(Base):
    __tablename__ = "vcash_accounts"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    # Denormalized. Reconciled against the ledger inside every mutation, never trusted on its own
    balance_cents = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User")
    transactions = relationship("VCashTransaction", back_populates="account", lazy="dynamic")


class VCashTransaction(Base):
    __tablename__ = "vcash_transactions"
    __table_args__ = (
        Index("ix_vcash_transactions_account_created_id", "account_id", "created_at", "id"),
    )
    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("vcash_accounts.id"), nullable=False)

    # Positive - credit, negative - debit
    amount_cents = Column(Integer, nullable=False)

    # 'refund', 'affiliate_conversion', 'manual_adjustment', 'purchase'
    reason = Column(String, nullable=False)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("VCashAccount", back_populates="transactions")

    @property
    def type(self) -> str:
        return "credit" if self.amount_cents > 0 else "debit"
