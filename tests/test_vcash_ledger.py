# tests/test_vcash_ledger.py

import logging
import random
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import OperationalError

from settlement.core.errors import InsufficientFunds, InvalidAmount, StoreContention, ValidationFailed
from settlement.crud import vcash as crud_vcash
from settlement.db.transaction import run_in_transaction
from settlement.models.user import User
from settlement.models.vcash import REASON_MANUAL_ADJUSTMENT, REASON_PURCHASE, REASON_REFUND, VCashTransaction
from settlement.services import vcash as vcash_service

logger = logging.getLogger(__name__)


def test_balance_of_user_without_account(db_session, test_user):
    assert vcash_service.get_balance(db_session, test_user.id) == 0
    assert crud_vcash.get_account(db_session, test_user.id) is None


def test_credit_then_debit_to_zero_then_reject(db_session, test_user):
    """Balance 500, debit 500 -> 0, debit 1 -> INSUFFICIENT_BALANCE, balance stays 0."""
    assert vcash_service.credit(db_session, test_user.id, 500, REASON_REFUND, meta={"order_id": 1}) == 500
    assert vcash_service.debit(db_session, test_user.id, 500, REASON_PURCHASE) == 0

    with pytest.raises(InsufficientFunds) as exc_info:
        vcash_service.debit(db_session, test_user.id, 1, REASON_PURCHASE)
    assert exc_info.value.code == "INSUFFICIENT_BALANCE"
    assert exc_info.value.status_code == 402

    assert vcash_service.get_balance(db_session, test_user.id) == 0


def test_rejected_debit_writes_no_row(db_session, test_user):
    vcash_service.credit(db_session, test_user.id, 100, REASON_REFUND)
    account = crud_vcash.get_account(db_session, test_user.id)
    rows_before = crud_vcash.count_transactions(db_session, account.id)

    with pytest.raises(InsufficientFunds):
        vcash_service.debit(db_session, test_user.id, 101, REASON_PURCHASE)

    assert crud_vcash.count_transactions(db_session, account.id) == rows_before
    db_session.refresh(account)
    assert account.balance_cents == 100


@pytest.mark.parametrize("amount", [0, -5, 1.5, "100", True])
def test_invalid_amounts_are_rejected(db_session, test_user, amount):
    with pytest.raises(InvalidAmount) as exc_info:
        vcash_service.credit(db_session, test_user.id, amount, REASON_REFUND)
    assert exc_info.value.code == "INVALID_AMOUNT"
    assert vcash_service.get_balance(db_session, test_user.id) == 0


def test_unknown_reason_is_rejected(db_session, test_user):
    with pytest.raises(ValidationFailed) as exc_info:
        vcash_service.credit(db_session, test_user.id, 100, "birthday_gift")
    assert exc_info.value.code == "INVALID_REASON"


def test_drifted_cache_is_repaired_from_ledger(db_session, test_user):
    vcash_service.credit(db_session, test_user.id, 300, REASON_REFUND)
    account = crud_vcash.get_account(db_session, test_user.id)
    account.balance_cents = 9999
    db_session.commit()

    # The ledger says 300, so a 301 debit must still fail
    with pytest.raises(InsufficientFunds):
        vcash_service.debit(db_session, test_user.id, 301, REASON_PURCHASE)

    assert vcash_service.debit(db_session, test_user.id, 100, REASON_PURCHASE) == 200
    db_session.refresh(account)
    assert account.balance_cents == 200


def test_manual_adjustment_signs(db_session, test_user):
    assert vcash_service.manual_adjustment(db_session, test_user.id, 250, admin_email="admin@example.com") == 250
    assert vcash_service.manual_adjustment(db_session, test_user.id, -50, admin_email="admin@example.com", note="typo") == 200

    with pytest.raises(InvalidAmount):
        vcash_service.manual_adjustment(db_session, test_user.id, 0, admin_email="admin@example.com")

    history = vcash_service.get_history(db_session, test_user.id)
    assert [tx.reason for tx in history["transactions"]] == [REASON_MANUAL_ADJUSTMENT, REASON_MANUAL_ADJUSTMENT]
    assert history["transactions"][0].meta == {"admin": "admin@example.com", "note": "typo"}


# --- History ---

def test_history_is_newest_first_and_keyed_on_last_row(db_session, test_user):
    for amount in range(1, 6):
        vcash_service.credit(db_session, test_user.id, amount * 100, REASON_REFUND)

    first_page = vcash_service.get_history(db_session, test_user.id, page_size=2)
    assert first_page["total"] == 5
    assert [tx.amount_cents for tx in first_page["transactions"]] == [500, 400]
    assert first_page["next_cursor"] == first_page["transactions"][-1].id

    # A new entry sorts before the cursor and must not shift the following pages
    vcash_service.credit(db_session, test_user.id, 999, REASON_REFUND)

    second_page = vcash_service.get_history(db_session, test_user.id, page_size=2, before_id=first_page["next_cursor"])
    assert [tx.amount_cents for tx in second_page["transactions"]] == [300, 200]

    last_page = vcash_service.get_history(db_session, test_user.id, page_size=2, before_id=second_page["next_cursor"])
    assert [tx.amount_cents for tx in last_page["transactions"]] == [100]
    assert last_page["next_cursor"] is None

    fresh = vcash_service.get_history(db_session, test_user.id, page_size=2)
    assert fresh["total"] == 6
    assert fresh["transactions"][0].amount_cents == 999


def test_history_pagination_bounds(db_session, test_user, make_user):
    with pytest.raises(ValidationFailed) as exc_info:
        vcash_service.get_history(db_session, test_user.id, page_size=0)
    assert exc_info.value.code == "INVALID_PAGINATION"

    empty = vcash_service.get_history(db_session, test_user.id)
    assert empty["transactions"] == []
    assert empty["next_cursor"] is None

    # A cursor from another user's ledger is rejected
    other = make_user("other@example.com")
    vcash_service.credit(db_session, other.id, 100, REASON_REFUND)
    vcash_service.credit(db_session, test_user.id, 100, REASON_REFUND)
    foreign_id = vcash_service.get_history(db_session, other.id)["transactions"][0].id
    with pytest.raises(ValidationFailed) as exc_info:
        vcash_service.get_history(db_session, test_user.id, before_id=foreign_id)
    assert exc_info.value.code == "INVALID_PAGINATION"


# --- Store contention ---

def test_contention_is_retried(db_session):
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise OperationalError("UPDATE vcash_accounts", {}, Exception("database is locked"))
        return "done"

    assert run_in_transaction(db_session, flaky) == "done"
    assert calls["n"] == 3


def test_contention_gives_up_with_503(db_session):
    def always_locked():
        raise OperationalError("UPDATE vcash_accounts", {}, Exception("database is locked"))

    with pytest.raises(StoreContention) as exc_info:
        run_in_transaction(db_session, always_locked)
    assert exc_info.value.status_code == 503
    assert exc_info.value.code == "STORE_CONTENTION"


# --- Concurrency ---

def _run_in_own_session(session_factory, fn, *args):
    db = session_factory()
    try:
        return fn(db, *args)
    except InsufficientFunds:
        return None
    finally:
        db.close()


def test_concurrent_credits_and_debits_keep_ledger_consistent(file_session_factory):
    with file_session_factory() as db:
        user = User(external_id="idp|concurrent", email="concurrent@example.com")
        db.add(user)
        db.commit()
        user_id = user.id
        vcash_service.credit(db, user_id, 1000, REASON_REFUND)

    rng = random.Random(7)
    operations = []
    for _ in range(40):
        amount = rng.randint(1, 300)
        if rng.random() < 0.5:
            operations.append((vcash_service.credit, user_id, amount, REASON_REFUND))
        else:
            operations.append((vcash_service.debit, user_id, amount, REASON_PURCHASE))

    with ThreadPoolExecutor(max_workers=8) as executor:
        futures = [
            executor.submit(_run_in_own_session, file_session_factory, fn, uid, amount, reason)
            for fn, uid, amount, reason in operations
        ]
        results = [future.result() for future in futures]

    logger.info(f"Concurrent results: {results}")

    with file_session_factory() as db:
        account = crud_vcash.get_account(db, user_id)
        ledger = crud_vcash.sum_transactions(db, account.id)
        assert account.balance_cents == ledger
        assert ledger >= 0

        # Replaying the ledger in commit order never dips below zero
        running = 0
        for tx in db.query(VCashTransaction).filter(VCashTransaction.account_id == account.id).order_by(VCashTransaction.id):
            running += tx.amount_cents
            assert running >= 0


def test_concurrent_debits_cannot_overdraw(file_session_factory):
    with file_session_factory() as db:
        user = User(external_id="idp|overdraw", email="overdraw@example.com")
        db.add(user)
        db.commit()
        user_id = user.id
        vcash_service.credit(db, user_id, 500, REASON_REFUND)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [
            executor.submit(_run_in_own_session, file_session_factory, vcash_service.debit, user_id, 100, REASON_PURCHASE)
            for _ in range(10)
        ]
        results = [future.result() for future in futures]

    successful = [result for result in results if result is not None]
    assert len(successful) == 5

    with file_session_factory() as db:
        assert vcash_service.get_balance(db, user_id) == 0
