# settlement/db/transaction.py

import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from settlement.core.errors import StoreContention

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 5


def _log_retry(retry_state) -> None:
    logger.warning(
        f"Store contention on attempt {retry_state.attempt_number}, retrying: "
        f"{retry_state.outcome.exception()!r}"
    )


def run_in_transaction(db: Session, unit_of_work: Callable[[], T], name: str = "transaction") -> T:
    """
    Runs `unit_of_work` and commits, as one database transaction.

    Any error rolls the whole unit back. Lock timeouts and serialization
    failures (OperationalError) re-run the unit from the start with
    exponential backoff; when the retries run out the caller gets a 503.
    """

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        before_sleep=_log_retry,
        reraise=True,
    )
    def attempt() -> T:
        try:
            result = unit_of_work()
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise

    try:
        return attempt()
    except OperationalError as e:
        logger.error(f"{name} gave up after {MAX_ATTEMPTS} attempts: {e!r}")
        raise StoreContention("The store is busy, please retry shortly.")
