# settlement/routers/admin.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from settlement.core.rate_limit import client_ip
from settlement.dependencies import get_admin_user, get_db
from settlement.models.user import User
from settlement.schemas.admin import (
    AdjustmentResult,
    AffiliateFreezeUpdate,
    AdminAffiliateListItem,
    PaginatedAdminAffiliates,
    PaginatedAdminCommissions,
    VelocityReport,
)
from settlement.schemas.order import Order
from settlement.schemas.vcash import VCashAdjustment
from settlement.services import affiliate as affiliate_service
from settlement.services import fraud as fraud_service
from settlement.services import settlement as settlement_service
from settlement.services import vcash as vcash_service

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(get_admin_user)])


# --- Affiliates ---

@router.get("/affiliates", response_model=PaginatedAdminAffiliates)
def list_affiliates_endpoint(
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return affiliate_service.list_affiliates(db, page=page, page_size=size)


@router.post("/affiliates/{affiliate_id}/freeze", response_model=AdminAffiliateListItem)
def freeze_affiliate_endpoint(
    affiliate_id: int,
    update_data: AffiliateFreezeUpdate,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    affiliate = affiliate_service.set_frozen(db, affiliate_id, update_data.is_frozen, admin_email=admin.email)
    return affiliate_service.affiliate_summary(db, affiliate)


@router.get("/commissions", response_model=PaginatedAdminCommissions)
def list_commissions_endpoint(
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return affiliate_service.list_commissions(db, page=page, page_size=size)


@router.get("/fraud/velocity", response_model=VelocityReport)
def fraud_velocity_endpoint(
    window_minutes: Optional[int] = Query(None, ge=1, le=60 * 24 * 30),
    db: Session = Depends(get_db),
):
    """Candidates for manual review. Nothing is voided or frozen automatically."""
    return fraud_service.find_velocity_candidates(db, window_minutes=window_minutes)


# --- V-Cash and refunds ---

@router.post("/vcash/adjust", response_model=AdjustmentResult)
def adjust_vcash_endpoint(
    adjustment: VCashAdjustment,
    request: Request,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    balance = vcash_service.manual_adjustment(
        db,
        user_id=adjustment.user_id,
        amount_cents=adjustment.amount_cents,
        admin_email=admin.email,
        note=adjustment.note,
        ip_address=client_ip(request),
    )
    return AdjustmentResult(user_id=adjustment.user_id, balance_cents=balance)


@router.post("/orders/{order_id}/refund", response_model=Order)
def refund_order_endpoint(
    order_id: int,
    request: Request,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    return settlement_service.refund_order(db, order_id, admin_email=admin.email, ip_address=client_ip(request))
