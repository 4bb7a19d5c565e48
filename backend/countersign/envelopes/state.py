"""Envelope state machine.

    draft -> sent -> in_progress -> completed
    sent | in_progress -> expired
    draft | sent | in_progress -> voided

``completed``, ``voided`` and ``expired`` are terminal.
"""

from datetime import datetime
from typing import Optional

from countersign.common.base_models import as_utc
from countersign.common.errors import InvalidState
from countersign.envelopes.models import Envelope, EnvelopeStatus

S = EnvelopeStatus

TRANSITIONS: dict[EnvelopeStatus, frozenset[EnvelopeStatus]] = {
    S.draft: frozenset({S.sent, S.voided}),
    S.sent: frozenset({S.in_progress, S.expired, S.voided}),
    S.in_progress: frozenset({S.completed, S.expired, S.voided}),
    S.completed: frozenset(),
    S.voided: frozenset(),
    S.expired: frozenset(),
}


def can_transition(current: EnvelopeStatus, target: EnvelopeStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(envelope: Envelope, target: EnvelopeStatus) -> None:
    if not can_transition(envelope.status, target):
        raise InvalidState(
            f"cannot move envelope from {envelope.status.value} to {target.value}",
            envelope=str(envelope.uuid),
        )
    envelope.status = target


def require_draft(envelope: Envelope) -> None:
    if envelope.status != S.draft:
        raise InvalidState()


def is_overdue(envelope: Envelope, now: datetime) -> bool:
    expires_at: Optional[datetime] = as_utc(envelope.expires_at)
    return (
        expires_at is not None
        and envelope.status in (S.sent, S.in_progress)
        and expires_at <= now
    )
