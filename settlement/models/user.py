# settlement/models/user.py

from sqlalchemy import Column, Integer, String, DateTime, func
from sqlalchemy.orm import relationship
from .referral import ReferralAttribution
from .affiliate import Affiliate
from settlement.db.session import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Subject claim from the identity provider
    external_id = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Who referred this user (first touch)
    referrer_link = relationship("ReferralAttribution", foreign_keys="ReferralAttribution.referred_user_id", uselist=False, viewonly=True)
    affiliate = relationship("Affiliate", back_populates="user", uselist=False)
