# settlement/routers/affiliate.py

import logging
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.rate_limit import client_ip, rate_limit
from settlement.dependencies import get_current_user, get_db
from settlement.models.user import User
from settlement.schemas.affiliate import (
    AffiliateDashboard,
    AttributionRequest,
    AttributionResult,
    ConvertRequest,
    ConvertResult,
    ReferralCode,
    ReferralCodeVerification,
)
from settlement.services import affiliate as affiliate_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/affiliate")


@router.get("/dashboard", response_model=AffiliateDashboard)
def get_dashboard_endpoint(
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("affiliate_read")),
    db: Session = Depends(get_db),
):
    return affiliate_service.get_dashboard(db, current_user.id)


@router.get("/referral-code", response_model=ReferralCode)
def get_referral_code_endpoint(
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("affiliate_read")),
    db: Session = Depends(get_db),
):
    affiliate = affiliate_service.issue_referral_code(db, current_user.id)
    return ReferralCode(
        referral_code=affiliate.referral_code,
        referral_link=f"{settings.WEB_URL}/?ref={affiliate.referral_code}",
    )


@router.get("/verify", response_model=ReferralCodeVerification)
def verify_referral_code_endpoint(
    code: str = Query(..., min_length=1, max_length=32),
    _: None = Depends(rate_limit("affiliate_read")),
    db: Session = Depends(get_db),
):
    """Public: lets the landing page check a ?ref= code before sign-up."""
    return affiliate_service.verify_referral_code(db, code)


@router.post("/attribution", response_model=AttributionResult)
def attribution_endpoint(
    request_data: AttributionRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("affiliate_write")),
    db: Session = Depends(get_db),
):
    attribution = affiliate_service.attribute(
        db, current_user.id, request_data.referral_code, ip_address=client_ip(request)
    )
    return AttributionResult(attributed=attribution is not None, attribution=attribution)


@router.post("/vcash/convert", response_model=ConvertResult)
def convert_endpoint(
    request_data: ConvertRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("affiliate_write")),
    db: Session = Depends(get_db),
):
    return affiliate_service.convert_commission_to_vcash(
        db, current_user.id, request_data.amount_cents, ip_address=client_ip(request)
    )
