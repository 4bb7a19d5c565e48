from collections.abc import Iterable

from countersign.envelopes.fields import is_filled
from countersign.envelopes.models import Field, Recipient, RecipientStatus
from countersign.envelopes.schemas import ProgressResponse, RecipientProgress


def field_completed(field: Field) -> bool:
    return field.signed_at is not None and is_filled(field.field_type, field.value)


def _percent(done: int, total: int) -> float:
    if total == 0:
        return 100.0
    return round(done / total * 100, 2)


def compute_progress(recipients: Iterable[Recipient], fields: Iterable[Field]) -> ProgressResponse:
    """Share of required fields completed, overall and per recipient (0/0 counts as 100%)."""
    fields = list(fields)
    required = [f for f in fields if f.required]
    done = [f for f in required if field_completed(f)]

    per_recipient = []
    for recipient in recipients:
        own = [f for f in required if f.recipient_id == recipient.id]
        own_done = [f for f in own if field_completed(f)]
        if recipient.status == RecipientStatus.signed:
            status = "completed"
        elif recipient.status == RecipientStatus.viewed or own_done:
            status = "in_progress"
        else:
            status = "pending"
        per_recipient.append(
            RecipientProgress(
                recipient_id=recipient.uuid,
                email=recipient.email,
                status=status,
                required_fields=len(own),
                completed_fields=len(own_done),
                percent=_percent(len(own_done), len(own)),
            )
        )

    return ProgressResponse(
        overall_percent=_percent(len(done), len(required)),
        required_fields=len(required),
        completed_fields=len(done),
        recipients=per_recipient,
    )
