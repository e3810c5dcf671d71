# settlement/crud/vcash.py

from typing import List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.models.vcash import VCashAccount, VCashTransaction

# --- Accounts ---

def get_account(db: Session, user_id: int) -> VCashAccount | None:
    return db.query(VCashAccount).filter(VCashAccount.user_id == user_id).first()

def get_or_create_account(db: Session, user_id: int) -> VCashAccount:
    """
    Accounts are created lazily on the first transaction.
    Commits the new row on its own so the account exists before any lock is taken on it.
    """
    account = get_account(db, user_id)
    if account:
        return account

    account = VCashAccount(user_id=user_id, balance_cents=0)
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        # Another request created it first
        db.rollback()
        account = get_account(db, user_id)
        if account is None:
            raise
    return account

def lock_account(db: Session, account_id: int) -> VCashAccount:
    """
    Takes the per-account write lock by writing to the row first.
    On PostgreSQL this holds the row lock until commit; on SQLite it takes the
    database write lock. Either way nothing is read before the lock is held.
    """
    db.query(VCashAccount).filter(VCashAccount.id == account_id).update(
        {VCashAccount.updated_at: func.now()}, synchronize_session=False
    )
    return db.query(VCashAccount).filter(VCashAccount.id == account_id).populate_existing().one()

# --- Transactions ---

def create_transaction(
    db: Session,
    account_id: int,
    amount_cents: int,
    reason: str,
    meta: Optional[dict] = None,
    ip_address: Optional[str] = None,
) -> VCashTransaction:
    """
    Creates the ledger row and adds it to the session.
    Requires an external db.commit().
    """
    transaction = VCashTransaction(
        account_id=account_id,
        amount_cents=amount_cents,
        reason=reason,
        meta=meta,
        ip_address=ip_address,
    )
    db.add(transaction)
    return transaction

def sum_transactions(db: Session, account_id: int) -> int:
    """The ledger balance: the plain sum of every transaction on the account."""
    total = db.query(func.coalesce(func.sum(VCashTransaction.amount_cents), 0)).filter(
        VCashTransaction.account_id == account_id
    ).scalar()
    return int(total or 0)

def get_transactions_page(
    db: Session,
    account_id: int,
    limit: int = 20,
    before_id: int | None = None,
) -> List[VCashTransaction]:
    """
    Newest first by (created_at, id). With `before_id`, only rows strictly
    after that row in this order are returned, so each page continues from the
    last row the caller saw rather than from an offset.
    """
    query = db.query(VCashTransaction).filter(VCashTransaction.account_id == account_id)
    if before_id is not None:
        # Compared inside the database so the stored timestamp is never round-tripped
        cursor_created_at = (
            select(VCashTransaction.created_at).where(VCashTransaction.id == before_id).scalar_subquery()
        )
        query = query.filter(
            or_(
                VCashTransaction.created_at < cursor_created_at,
                and_(VCashTransaction.created_at == cursor_created_at, VCashTransaction.id < before_id),
            )
        )
    return query.order_by(
        VCashTransaction.created_at.desc(), VCashTransaction.id.desc()
    ).limit(limit).all()

def transaction_belongs_to(db: Session, account_id: int, transaction_id: int) -> bool:
    return db.query(VCashTransaction.id).filter(
        VCashTransaction.id == transaction_id, VCashTransaction.account_id == account_id
    ).first() is not None

def count_transactions(db: Session, account_id: int) -> int:
    return db.query(VCashTransaction).filter(VCashTransaction.account_id == account_id).count()
