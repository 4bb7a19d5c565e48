"""
Routing-order rule.

A recipient is *next* iff no acting recipient with a strictly lower routing
order is still open (pending, sent or viewed). Equal orders share a slot and
are next together. Viewers never hold a turn.
"""

from collections.abc import Iterable

from countersign.envelopes.models import (
    ACTING_ROLES,
    COMPLETING_ROLES,
    OPEN_RECIPIENT_STATUSES,
    Recipient,
    RecipientStatus,
)


def acting(recipients: Iterable[Recipient]) -> list[Recipient]:
    return [r for r in recipients if r.role in ACTING_ROLES]


def lowest_open_order(recipients: Iterable[Recipient]):
    orders = [r.routing_order for r in acting(recipients) if r.status in OPEN_RECIPIENT_STATUSES]
    return min(orders) if orders else None


def is_next(recipient: Recipient, recipients: Iterable[Recipient]) -> bool:
    if recipient.role not in ACTING_ROLES:
        return False
    for other in acting(recipients):
        if other.routing_order < recipient.routing_order and other.status in OPEN_RECIPIENT_STATUSES:
            return False
    return True


def next_recipients(recipients: Iterable[Recipient]) -> list[Recipient]:
    """Open acting recipients whose turn it is."""
    recipients = list(recipients)
    order = lowest_open_order(recipients)
    if order is None:
        return []
    return [r for r in acting(recipients) if r.routing_order == order and r.status in OPEN_RECIPIENT_STATUSES]


def to_activate(recipients: Iterable[Recipient]) -> list[Recipient]:
    """Pending recipients that have become next and should move to ``sent``."""
    return [r for r in next_recipients(recipients) if r.status == RecipientStatus.pending]


def all_required_signed(recipients: Iterable[Recipient]) -> bool:
    """Every signer/approver signed and no acting recipient left open."""
    recipients = list(recipients)
    completing = [r for r in recipients if r.role in COMPLETING_ROLES]
    if not completing:
        return False
    if any(r.status != RecipientStatus.signed for r in completing):
        return False
    return not any(r.status in OPEN_RECIPIENT_STATUSES for r in acting(recipients))
