# settlement/models/promo.py
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, func

from settlement.db.session import Base


class PromoCode(Base):
    """Owned by the admin surface. The resolver only reads it and bumps usage on settlement."""
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("discount_percent > 0 AND discount_percent <= 100", name="ck_promo_percent_range"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # Stored upper-case so lookups are case-insensitive
    code = Column(String, unique=True, index=True, nullable=False)
    discount_percent = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
