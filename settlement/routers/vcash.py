# settlement/routers/vcash.py

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.rate_limit import rate_limit
from settlement.dependencies import get_current_user, get_db
from settlement.models.user import User
from settlement.schemas.vcash import VCashBalance, VCashHistory
from settlement.services import vcash as vcash_service

router = APIRouter(prefix="/vcash")


@router.get("", response_model=VCashBalance)
def get_balance_endpoint(
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("vcash_read")),
    db: Session = Depends(get_db),
):
    return VCashBalance(
        balance_cents=vcash_service.get_balance(db, current_user.id),
        currency=settings.FX_BASE_CURRENCY,
    )


@router.get("/transactions", response_model=VCashHistory)
def get_transactions_endpoint(
    page_size: int = Query(20, ge=1, le=vcash_service.MAX_PAGE_SIZE),
    before_id: Optional[int] = Query(None, ge=1),
    current_user: User = Depends(get_current_user),
    _: None = Depends(rate_limit("vcash_read")),
    db: Session = Depends(get_db),
):
    """Newest first. Send `next_cursor` back as `before_id` for the following page."""
    return vcash_service.get_history(db, current_user.id, page_size=page_size, before_id=before_id)
