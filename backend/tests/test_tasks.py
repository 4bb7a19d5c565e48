"""
Tests for the Celery task layer: task registration, enqueueing by name and
the notification hand-off to the email module.
"""

import hashlib
import hmac
import json
import uuid

import httpx
import pytest

from countersign.celery_app import celery
from countersign.config import settings
from countersign.envelopes.models import Envelope, Recipient
from countersign.tasks import celery_tasks, dispatch
from countersign.tasks.notifications import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    encode_payload,
    notification_payload,
    signed_headers,
)

PAYLOAD = {"kind": "invitation", "recipient_email": "alice@example.com", "envelope_id": "abc"}


class TestRegistration:
    def test_tasks_registered_by_name(self):
        for name in (
            "countersign.build_certificate",
            "countersign.run_workflows",
            "countersign.deliver_notification",
            "countersign.send_due_reminders",
            "countersign.expire_overdue_envelopes",
        ):
            assert name in celery.tasks

    def test_beat_schedule(self):
        schedule = celery.conf.beat_schedule
        assert schedule["send-due-reminders"]["task"] == "countersign.send_due_reminders"
        assert schedule["expire-overdue-envelopes"]["task"] == "countersign.expire_overdue_envelopes"

    def test_enqueue_sends_by_registered_name(self, monkeypatch):
        sent = []
        monkeypatch.setattr(celery, "send_task", lambda name, args=None, **kw: sent.append((name, args)))
        dispatch.enqueue("run_workflows", 3, "on_void", {"reason": "typo"})
        assert sent == [("countersign.run_workflows", [3, "on_void", {"reason": "typo"}])]


# ---------------------------------------------------------------------------
# Signed payloads
# ---------------------------------------------------------------------------
class TestSignedHeaders:
    def test_signature_covers_timestamp_and_body(self):
        body = encode_payload(PAYLOAD)
        headers = signed_headers(body, "s3cret", timestamp="1700000000")
        expected = hmac.new(b"s3cret", b"1700000000." + body, hashlib.sha256).hexdigest()
        assert headers[SIGNATURE_HEADER] == f"sha256={expected}"
        assert headers[TIMESTAMP_HEADER] == "1700000000"
        assert headers["Content-Type"] == "application/json"

    def test_no_secret_no_signature(self):
        headers = signed_headers(b"{}", None)
        assert SIGNATURE_HEADER not in headers
        assert headers[TIMESTAMP_HEADER].isdigit()

    def test_encoding_is_key_sorted(self):
        assert encode_payload({"b": 1, "a": uuid.UUID(int=0)}) == (
            b'{"a": "00000000-0000-0000-0000-000000000000", "b": 1}'
        )

    def test_notification_payload_prefers_recipient_message(self):
        envelope = Envelope(uuid=uuid.UUID(int=5), title="Lease", message="Envelope note", sender_email="s@x.com")
        recipient = Recipient(uuid=uuid.UUID(int=6), email="alice@example.com", name="Alice")
        payload = notification_payload("reminder", envelope, recipient, access_token="tok")
        assert payload["custom_message"] == "Envelope note"
        assert payload["access_token"] == "tok"
        assert payload["envelope_id"] == str(uuid.UUID(int=5))

        recipient.custom_message = "Just for you"
        assert notification_payload("reminder", envelope, recipient)["custom_message"] == "Just for you"


# ---------------------------------------------------------------------------
# deliver_notification
# ---------------------------------------------------------------------------
class TestDeliverNotification:
    def test_dropped_without_webhook(self, monkeypatch):
        monkeypatch.setattr(settings, "notification_webhook_url", "")
        assert celery_tasks.deliver_notification.run(PAYLOAD) == {"delivered": False}

    def test_posts_signed_payload(self, monkeypatch):
        calls = []

        def fake_post(url, content=None, headers=None, timeout=None):
            calls.append((url, content, headers))
            return httpx.Response(202, request=httpx.Request("POST", url))

        monkeypatch.setattr(settings, "notification_webhook_url", "https://mail.example.com/hooks/countersign")
        monkeypatch.setattr(settings, "notification_webhook_secret", "mail-secret")
        monkeypatch.setattr(celery_tasks.httpx, "post", fake_post)

        result = celery_tasks.deliver_notification.run(PAYLOAD)
        assert result == {"delivered": True, "status_code": 202}

        [(url, content, headers)] = calls
        assert url == "https://mail.example.com/hooks/countersign"
        assert json.loads(content) == PAYLOAD
        expected = hmac.new(
            b"mail-secret", headers[TIMESTAMP_HEADER].encode() + b"." + content, hashlib.sha256
        ).hexdigest()
        assert headers[SIGNATURE_HEADER] == f"sha256={expected}"

    def test_http_failure_is_retried(self, monkeypatch):
        def fake_post(url, content=None, headers=None, timeout=None):
            return httpx.Response(503, request=httpx.Request("POST", url))

        monkeypatch.setattr(settings, "notification_webhook_url", "https://mail.example.com/hooks/countersign")
        monkeypatch.setattr(celery_tasks.httpx, "post", fake_post)

        # Called directly, Celery's retry re-raises the original error.
        with pytest.raises(httpx.HTTPStatusError):
            celery_tasks.deliver_notification.run(PAYLOAD)
