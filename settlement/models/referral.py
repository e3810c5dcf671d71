# settlement/models/referral.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, func
from sqlalchemy.orm import relationship
from settlement.db.session import Base

class ReferralAttribution(Base):
    __tablename__ = "referral_attributions"
    id = Column(Integer, primary_key=True, index=True)

    # The affiliate credited with the user
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)
    # The referred user; unique, so the first touch is the only touch
    referred_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    ip_address = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    affiliate = relationship("Affiliate", back_populates="referrals")
    referred = relationship("User", foreign_keys=[referred_user_id])
