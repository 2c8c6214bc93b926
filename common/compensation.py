"""Two-step writes without a spanning transaction.

Step one has already been committed by the caller. ``run_compensated`` tries
step two; if the store rejects it, the caller's compensating action undoes step
one. A compensation that itself fails leaves orphaned data behind, so it is
logged at CRITICAL for an operator to clean up by hand.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import BadRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_compensated(
    db: Session,
    step: Callable[[], T],
    compensate: Callable[[], None],
    *,
    failure_message: str,
    description: str,
) -> T:
    try:
        return step()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("%s failed: %s", description, exc)
        try:
            compensate()
        except SQLAlchemyError as rollback_exc:
            db.rollback()
            logger.critical(
                "Compensating rollback for '%s' failed; manual remediation required: %s",
                description,
                rollback_exc,
            )
        raise BadRequest(failure_message) from exc
