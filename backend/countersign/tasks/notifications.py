"""
Hand-off of recipient notifications to the external email module.

Payloads are queued with ``defer_task`` and posted by the
``deliver_notification`` task. Outbound bodies are signed the same way as
workflow webhooks: ``HMAC-SHA256(secret, timestamp + "." + body)``.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

from countersign.envelopes.models import Envelope, Recipient
from countersign.tasks.dispatch import defer_task

SIGNATURE_HEADER = "X-Countersign-Signature"
TIMESTAMP_HEADER = "X-Countersign-Timestamp"


def encode_payload(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, default=str).encode("utf-8")


def signed_headers(payload_bytes: bytes, secret: Optional[str], timestamp: Optional[str] = None) -> dict:
    timestamp = timestamp or str(int(time.time()))
    headers = {"Content-Type": "application/json", TIMESTAMP_HEADER: timestamp}
    if secret:
        signature = hmac.new(
            secret.encode("utf-8"), timestamp.encode("utf-8") + b"." + payload_bytes, hashlib.sha256
        ).hexdigest()
        headers[SIGNATURE_HEADER] = f"sha256={signature}"
    return headers


def notification_payload(kind: str, envelope: Envelope, recipient: Recipient, **extra: Any) -> dict:
    payload = {
        "kind": kind,
        "envelope_id": str(envelope.uuid),
        "envelope_title": envelope.title,
        "subject": envelope.subject,
        "sender_email": envelope.sender_email,
        "sender_name": envelope.sender_name,
        "recipient_id": str(recipient.uuid),
        "recipient_email": recipient.email,
        "recipient_name": recipient.name,
        "custom_message": recipient.custom_message or envelope.message,
    }
    payload.update(extra)
    return payload


def notify(db, kind: str, envelope: Envelope, recipient: Recipient, **extra: Any) -> None:
    defer_task(db, "deliver_notification", notification_payload(kind, envelope, recipient, **extra))
