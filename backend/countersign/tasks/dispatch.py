"""
Deferred work that must only start once the enclosing transaction commits.

``defer_task`` queues a Celery task on the session; ``on_commit`` queues a
plain callable. Both run from the session's ``after_commit`` hook and are
discarded on rollback, so a worker never observes uncommitted state.
"""

import logging
from typing import Any, Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from countersign.config import settings

logger = logging.getLogger(__name__)

_TASKS_KEY = "countersign.deferred_tasks"
_CALLBACKS_KEY = "countersign.after_commit"


def _session(db) -> Session:
    return db.sync_session if isinstance(db, AsyncSession) else db


def defer_task(db, name: str, *args: Any) -> None:
    _session(db).info.setdefault(_TASKS_KEY, []).append((name, args))


def on_commit(db, callback: Callable[[], None]) -> None:
    _session(db).info.setdefault(_CALLBACKS_KEY, []).append(callback)


def pending_tasks(db) -> list[tuple[str, tuple]]:
    return list(_session(db).info.get(_TASKS_KEY, []))


def enqueue(name: str, *args: Any) -> None:
    from countersign.celery_app import celery

    celery.send_task(f"countersign.{name}", args=list(args))


@event.listens_for(Session, "after_commit")
def _run_after_commit(session: Session) -> None:
    tasks = session.info.pop(_TASKS_KEY, [])
    callbacks = session.info.pop(_CALLBACKS_KEY, [])

    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("After-commit callback %r failed", callback)

    for name, args in tasks:
        if not settings.background_tasks_enabled:
            logger.debug("Background tasks disabled, skipping %s%r", name, args)
            continue
        try:
            enqueue(name, *args)
        except Exception:
            logger.exception("Failed to enqueue background task %s", name)


@event.listens_for(Session, "after_soft_rollback")
def _discard_on_rollback(session: Session, previous_transaction) -> None:
    session.info.pop(_TASKS_KEY, None)
    session.info.pop(_CALLBACKS_KEY, None)
