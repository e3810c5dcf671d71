# settlement/models/order.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric, func
from sqlalchemy.orm import relationship

from settlement.db.session import Base
from .user import User

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_REFUNDED = "refunded"

TOPUP_PENDING = "pending"
TOPUP_COMPLETED = "completed"
TOPUP_FAILED = "failed"


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=False)

    settlement_currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    # Current chargeable amount; the only field discounts rewrite
    amount_cents = Column(Integer, nullable=False)
    # Pre-discount amount, captured once and never recomputed
    original_amount_cents = Column(Integer, nullable=True)

    display_currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    display_amount_cents = Column(Integer, nullable=True)
    # Set at checkout/settlement; later rate changes never touch a frozen order
    fx_rate = Column(Numeric(18, 8), nullable=True)

    # 'pending', 'paid', 'failed', 'refunded'
    status = Column(String, nullable=False, default=ORDER_PENDING, server_default=ORDER_PENDING, index=True)

    # 'none', 'promo', 'referral'
    discount_source = Column(String, nullable=False, default="none", server_default="none")
    discount_code = Column(String, nullable=True)
    discount_percent = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    # Set by the first payment attempt; the discount is frozen from then on
    checkout_started_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User")

    @property
    def is_pending(self) -> bool:
        return self.status == ORDER_PENDING

    @property
    def checkout_started(self) -> bool:
        return self.checkout_started_at is not None


class TopUp(Base):
    __tablename__ = "topups"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_code = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    display_currency = Column(String(3), nullable=True)
    display_amount_cents = Column(Integer, nullable=True)
    # 'pending', 'completed', 'failed'
    status = Column(String, nullable=False, default=TOPUP_PENDING, server_default=TOPUP_PENDING, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User")
