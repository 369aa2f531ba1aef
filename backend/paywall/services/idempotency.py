"""Idempotency guard over the audit ledger."""
from __future__ import annotations

import logging

from sqlmodel import Session

from paywall import crud

logger = logging.getLogger(__name__)


def check_and_reserve(*, session: Session, key: str) -> bool:
    """
    Atomically reserve ``key``; returns True when it was already processed.

    Must be the first write of the unit of work: the reservation lives in the
    caller's transaction and is released by its rollback.
    """
    already_processed = crud.reserve_audit_key(session=session, key=key)
    if already_processed:
        logger.info(f"Idempotency key {key} already processed, skipping")
    return already_processed
