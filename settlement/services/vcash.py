# settlement/services/vcash.py

import logging
from typing import Optional

from sqlalchemy.orm import Session

from settlement.core.errors import InsufficientFunds, InvalidAmount, NotFound, ValidationFailed
from settlement.core.money import require_positive_cents
from settlement.crud import user as crud_user
from settlement.crud import vcash as crud_vcash
from settlement.db.transaction import run_in_transaction
from settlement.models.vcash import VCashTransaction, REASON_MANUAL_ADJUSTMENT, VCASH_REASONS

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _require_reason(reason: str) -> str:
    if reason not in VCASH_REASONS:
        raise ValidationFailed(f"Unknown V-Cash reason '{reason}'.", code="INVALID_REASON")
    return reason


def post_entry(
    db: Session,
    account_id: int,
    amount_cents: int,
    reason: str,
    meta: Optional[dict] = None,
    ip_address: Optional[str] = None,
) -> VCashTransaction:
    """
    Appends one signed entry to the account's ledger.

    Must run inside `run_in_transaction`: the account row is locked first, the
    balance is re-derived from the ledger under that lock, and the entry plus
    the refreshed cache commit together or not at all.
    """
    account = crud_vcash.lock_account(db, account_id)

    ledger_balance = crud_vcash.sum_transactions(db, account.id)
    if account.balance_cents != ledger_balance:
        logger.warning(
            f"V-Cash account {account.id}: cached balance {account.balance_cents} drifted from "
            f"ledger {ledger_balance}. Ledger wins."
        )

    new_balance = ledger_balance + amount_cents
    if new_balance < 0:
        raise InsufficientFunds(
            f"Insufficient V-Cash balance: {ledger_balance} available, {-amount_cents} requested."
        )

    transaction = crud_vcash.create_transaction(
        db=db,
        account_id=account.id,
        amount_cents=amount_cents,
        reason=reason,
        meta=meta,
        ip_address=ip_address,
    )
    account.balance_cents = new_balance
    db.flush()

    logger.info(
        f"V-Cash account {account.id}: {reason} {amount_cents:+d}. "
        f"Balance before: {ledger_balance}, after (uncommitted): {new_balance}"
    )
    return transaction


def _mutate(
    db: Session,
    user_id: int,
    amount_cents: int,
    reason: str,
    meta: Optional[dict],
    ip_address: Optional[str],
) -> int:
    account = crud_vcash.get_or_create_account(db, user_id)

    def unit_of_work() -> int:
        post_entry(db, account.id, amount_cents, reason, meta=meta, ip_address=ip_address)
        return account.balance_cents

    return run_in_transaction(db, unit_of_work, name=f"V-Cash {reason} for user {user_id}")


def credit(
    db: Session,
    user_id: int,
    amount_cents: int,
    reason: str,
    meta: Optional[dict] = None,
    ip_address: Optional[str] = None,
) -> int:
    """Adds funds. Returns the balance after the credit."""
    require_positive_cents(amount_cents)
    _require_reason(reason)
    return _mutate(db, user_id, amount_cents, reason, meta, ip_address)


def debit(
    db: Session,
    user_id: int,
    amount_cents: int,
    reason: str,
    meta: Optional[dict] = None,
    ip_address: Optional[str] = None,
) -> int:
    """Removes funds; never takes the balance below zero. Returns the balance after the debit."""
    require_positive_cents(amount_cents)
    _require_reason(reason)
    return _mutate(db, user_id, -amount_cents, reason, meta, ip_address)


def get_balance(db: Session, user_id: int) -> int:
    """The balance is the plain sum of the ledger; the cached column is not read here."""
    account = crud_vcash.get_account(db, user_id)
    if account is None:
        return 0
    return crud_vcash.sum_transactions(db, account.id)


def get_history(
    db: Session,
    user_id: int,
    page_size: int = 20,
    before_id: Optional[int] = None,
) -> dict:
    """
    One page of the user's ledger, newest first.

    Pages are keyed on the last row seen: pass `next_cursor` back as `before_id`
    to continue. New entries land before the cursor and never shift later pages.
    """
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationFailed(f"page_size must be between 1 and {MAX_PAGE_SIZE}.", code="INVALID_PAGINATION")

    account = crud_vcash.get_account(db, user_id)
    if account is None:
        if before_id is not None:
            raise ValidationFailed("Unknown pagination cursor.", code="INVALID_PAGINATION")
        return {"transactions": [], "total": 0, "page_size": page_size, "next_cursor": None}

    if before_id is not None and not crud_vcash.transaction_belongs_to(db, account.id, before_id):
        raise ValidationFailed("Unknown pagination cursor.", code="INVALID_PAGINATION")

    # One extra row tells whether another page follows
    rows = crud_vcash.get_transactions_page(db, account.id, limit=page_size + 1, before_id=before_id)
    transactions = rows[:page_size]
    return {
        "transactions": transactions,
        "total": crud_vcash.count_transactions(db, account.id),
        "page_size": page_size,
        "next_cursor": transactions[-1].id if len(rows) > page_size else None,
    }


def manual_adjustment(
    db: Session,
    user_id: int,
    amount_cents: int,
    admin_email: str,
    note: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> int:
    """Admin correction: positive credits, negative debits. Zero is rejected."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents == 0:
        raise InvalidAmount("Adjustment must be a non-zero whole number of cents.")
    if crud_user.get_user_by_id(db, user_id) is None:
        raise NotFound(f"User {user_id} not found.", code="USER_NOT_FOUND")

    meta = {"admin": admin_email, "note": note}
    logger.info(f"Admin {admin_email} adjusting V-Cash of user {user_id} by {amount_cents:+d}.")
    if amount_cents > 0:
        return credit(db, user_id, amount_cents, REASON_MANUAL_ADJUSTMENT, meta=meta, ip_address=ip_address)
    return debit(db, user_id, -amount_cents, REASON_MANUAL_ADJUSTMENT, meta=meta, ip_address=ip_address)
