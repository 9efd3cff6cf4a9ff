# Overview: Retry wrapper for write paths that can hit transient datastore lock errors.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError

from ..extensions import db


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Execute a unit of work, retrying only on datastore lock/deadlock errors.

    Domain conflicts (a lost claim, a stale status) are never retried here:
    they surface as OrderflowError subclasses and propagate on the first
    attempt. A retried unit re-reads state from scratch, so a claim retried
    after losing a lock wait reports AlreadyClaimedError rather than
    overwriting the winner.
    """
    for attempt in range(attempts):
        try:
            return func()
        except OperationalError:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
