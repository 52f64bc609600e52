# Overview: Locking and retry helpers for per-customer write units.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import ConflictExhausted


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id columns on
    customers and transactions still reject a stale write-back.
    """
    return query.with_for_update()


def run_with_retry(
    func,
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    customer_id: str | None = None,
):
    """
    Execute one atomic unit of work, retrying the whole unit on contention.

    Retries on OperationalError (locks, deadlocks) and StaleDataError
    (optimistic version conflicts) with exponential backoff. Any other
    failure rolls the session back and propagates unchanged. When the retry
    budget is spent, ConflictExhausted is raised.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF_BASE", 0.1)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConflictExhausted(
                    f"Gave up after {attempts} attempts due to concurrent writes",
                    customer_id=customer_id,
                ) from exc
            current_app.logger.warning(
                "Ledger write conflict (customer=%s, attempt %d/%d): %s",
                customer_id, attempt + 1, attempts, exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    raise ConflictExhausted("No attempts were made", customer_id=customer_id)
