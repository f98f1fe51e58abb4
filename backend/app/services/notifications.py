"""Lifecycle notifications delivered after the surrounding transaction commits.

Services call ``enqueue`` while mutating state; the queue lives on the session
and is flushed by the ``after_commit`` listener. A rollback discards it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_PENDING_KEY = "entitlements.pending_notifications"


def enqueue(db: Session, callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    db.info.setdefault(_PENDING_KEY, []).append((callback, args))


def pending(db: Session) -> list[tuple[Callable[..., Any], tuple]]:
    return list(db.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _deliver_after_commit(session: Session) -> None:
    queued = session.info.pop(_PENDING_KEY, [])
    for callback, args in queued:
        try:
            callback(*args)
        except Exception:
            logger.exception("Lifecycle callback %s failed", getattr(callback, "__name__", callback))


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)
