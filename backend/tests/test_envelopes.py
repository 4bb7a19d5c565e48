"""
Tests for the envelope sender API.

Covers draft editing, attaching documents, recipients and fields, sending,
voiding, deletion rules, access link reissue and the audit trail.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient

from countersign.common.base_models import utcnow
from countersign.config import settings
from countersign.tasks import dispatch


# ---------------------------------------------------------------------------
# Draft CRUD
# ---------------------------------------------------------------------------

class TestEnvelopeCrud:
    async def test_create_starts_as_draft(self, api, sender):
        envelope = await api.create_envelope(title="Lease", metadata={"matter": "A-17"})
        assert envelope["status"] == "draft"
        assert envelope["title"] == "Lease"
        assert envelope["sender_email"] == sender["email"]
        assert envelope["metadata"] == {"matter": "A-17"}
        assert envelope["documents"] == []
        assert envelope["progress"]["overall_percent"] == 100.0

    async def test_list_filters_by_status(self, api, sender_client: AsyncClient):
        await api.create_envelope()
        await api.prepare_and_send([("a@example.com", 1)])

        resp = await sender_client.get("/api/envelopes", params={"envelope_status": "draft"})
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 1
        assert page["items"][0]["status"] == "draft"

        resp = await sender_client.get("/api/envelopes")
        assert resp.json()["total"] == 2

    async def test_update_draft(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        resp = await sender_client.patch(
            f"/api/envelopes/{envelope['id']}", json={"title": "Renamed", "priority": "high"}
        )
        assert resp.status_code == 200
        assert resp.json()["title"] == "Renamed"
        assert resp.json()["priority"] == "high"
        assert "envelope_updated" in await api.audit_types(envelope["id"])

    async def test_update_rejects_null_title(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        resp = await sender_client.patch(f"/api/envelopes/{envelope['id']}", json={"title": None})
        assert resp.status_code == 422

    async def test_other_sender_sees_nothing(self, api, other_sender_client: AsyncClient):
        envelope = await api.create_envelope()
        resp = await other_sender_client.get(f"/api/envelopes/{envelope['id']}")
        assert resp.status_code == 404
        resp = await other_sender_client.patch(f"/api/envelopes/{envelope['id']}", json={"title": "Mine"})
        assert resp.status_code == 404

    async def test_oversized_metadata_rejected(self, sender_client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "payload_size_limit", 64)
        resp = await sender_client.post("/api/envelopes", json={"title": "Big", "metadata": {"blob": "x" * 100}})
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation_error"


class TestBulkUpdate:
    async def test_drafts_update_and_the_rest_report_errors(
        self, api, sender_client: AsyncClient, other_sender_client: AsyncClient
    ):
        first = await api.create_envelope()
        second = await api.create_envelope()
        sent = (await api.prepare_and_send([("a@example.com", 1)]))["envelope"]
        resp = await other_sender_client.post("/api/envelopes", json={"title": "Not yours"})
        foreign = resp.json()
        unknown = str(uuid.uuid4())

        resp = await sender_client.post(
            "/api/envelopes/bulk/update",
            json={
                "envelope_ids": [first["id"], sent["id"], second["id"], foreign["id"], unknown, first["id"]],
                "updates": {"priority": "urgent"},
            },
        )
        assert resp.status_code == 200, resp.text
        result = resp.json()
        assert result["updated"] == [first["id"], second["id"]]
        assert {(e["envelope_id"], e["code"]) for e in result["errors"]} == {
            (sent["id"], "invalid_state"),
            (foreign["id"], "not_found"),
            (unknown, "not_found"),
        }

        for envelope_id in (first["id"], second["id"]):
            assert (await sender_client.get(f"/api/envelopes/{envelope_id}")).json()["priority"] == "urgent"
            assert (await api.audit_types(envelope_id)).count("envelope_updated") == 1
        assert (await sender_client.get(f"/api/envelopes/{sent['id']}")).json()["priority"] != "urgent"
        assert (await other_sender_client.get(f"/api/envelopes/{foreign['id']}")).json()["priority"] != "urgent"

    async def test_needs_at_least_one_envelope(self, sender_client: AsyncClient):
        resp = await sender_client.post("/api/envelopes/bulk/update", json={"envelope_ids": [], "updates": {}})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Documents, recipients and fields
# ---------------------------------------------------------------------------

class TestDraftContents:
    async def test_attach_orders_documents(self, api):
        envelope = await api.create_envelope()
        first, second = await api.upload(), await api.upload()
        await api.attach(envelope["id"], first["id"])
        view = await api.attach(envelope["id"], second["id"])
        assert [(d["id"], d["order"]) for d in view["documents"]] == [(first["id"], 1), (second["id"], 2)]

    async def test_document_binds_to_one_envelope(self, api, sender_client: AsyncClient):
        first, second = await api.create_envelope(), await api.create_envelope()
        doc = await api.upload()
        await api.attach(first["id"], doc["id"])
        resp = await sender_client.post(f"/api/envelopes/{second['id']}/documents", json={"document_id": doc["id"]})
        assert resp.status_code == 409
        assert resp.json()["code"] == "store_conflict"

    async def test_detach_removes_fields(self, api, sender_client: AsyncClient):
        draft = await api.prepare([("a@example.com", 1)])
        envelope_id, doc_id = draft["envelope"]["id"], draft["document"]["id"]
        resp = await sender_client.delete(f"/api/envelopes/{envelope_id}/documents/{doc_id}")
        assert resp.status_code == 204
        view = (await sender_client.get(f"/api/envelopes/{envelope_id}")).json()
        assert view["documents"] == []
        assert view["fields"] == []
        listed = (await sender_client.get("/api/documents", params={"unbound_only": True})).json()
        assert [d["id"] for d in listed["items"]] == [doc_id]

    async def test_duplicate_recipient_email_conflicts(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        await api.add_recipient(envelope["id"], email="dup@example.com")
        resp = await sender_client.post(
            f"/api/envelopes/{envelope['id']}/recipients", json={"email": "DUP@example.com", "name": "Again"}
        )
        assert resp.status_code == 409

    async def test_remove_recipient_drops_their_fields(self, api, sender_client: AsyncClient):
        draft = await api.prepare([("a@example.com", 1), ("b@example.com", 2)])
        envelope_id = draft["envelope"]["id"]
        bob = draft["recipients"]["b@example.com"]
        resp = await sender_client.delete(f"/api/envelopes/{envelope_id}/recipients/{bob['id']}")
        assert resp.status_code == 204
        view = (await sender_client.get(f"/api/envelopes/{envelope_id}")).json()
        assert [r["email"] for r in view["recipients"]] == ["a@example.com"]
        assert {f["recipient_id"] for f in view["fields"]} == {draft["recipients"]["a@example.com"]["id"]}

    async def test_field_requires_attached_document(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        loose = await api.upload()
        recipient = await api.add_recipient(envelope["id"])
        body = {"document_id": loose["id"], "recipient_id": recipient["id"], "type": "signature",
                "page": 1, "x": 0.1, "y": 0.1, "width": 0.2, "height": 0.05}
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/fields", json=body)
        assert resp.status_code == 422

    async def test_viewer_cannot_hold_fields(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        doc = await api.upload()
        await api.attach(envelope["id"], doc["id"])
        viewer = await api.add_recipient(envelope["id"], role="viewer")
        body = {"document_id": doc["id"], "recipient_id": viewer["id"], "type": "signature",
                "page": 1, "x": 0.1, "y": 0.1, "width": 0.2, "height": 0.05}
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/fields", json=body)
        assert resp.status_code == 422
        assert "viewers" in resp.json()["message"]

    async def test_field_page_must_exist(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        doc = await api.upload()
        await api.attach(envelope["id"], doc["id"])
        recipient = await api.add_recipient(envelope["id"])
        body = {"document_id": doc["id"], "recipient_id": recipient["id"], "type": "signature",
                "page": 2, "x": 0.1, "y": 0.1, "width": 0.2, "height": 0.05}
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/fields", json=body)
        assert resp.status_code == 422

    async def test_field_geometry_must_fit_page(self, api, sender_client: AsyncClient):
        draft = await api.prepare([("a@example.com", 1)])
        body = {"document_id": draft["document"]["id"], "recipient_id": draft["recipients"]["a@example.com"]["id"],
                "type": "text", "page": 1, "x": 0.9, "y": 0.1, "width": 0.2, "height": 0.05}
        resp = await sender_client.post(f"/api/envelopes/{draft['envelope']['id']}/fields", json=body)
        assert resp.status_code == 422

    async def test_update_and_remove_field(self, api, sender_client: AsyncClient):
        draft = await api.prepare([("a@example.com", 1)])
        envelope_id, field = draft["envelope"]["id"], draft["fields"]["a@example.com"]
        resp = await sender_client.patch(
            f"/api/envelopes/{envelope_id}/fields/{field['id']}", json={"x": 0.5, "required": False}
        )
        assert resp.status_code == 200
        assert resp.json()["x"] == 0.5
        assert resp.json()["required"] is False

        resp = await sender_client.patch(f"/api/envelopes/{envelope_id}/fields/{field['id']}", json={"width": 0.9})
        assert resp.status_code == 422

        resp = await sender_client.delete(f"/api/envelopes/{envelope_id}/fields/{field['id']}")
        assert resp.status_code == 204
        types = await api.audit_types(envelope_id)
        assert "field_updated" in types and types[-1] == "field_removed"

    async def test_recipient_cap(self, api, sender_client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "max_recipients", 1)
        envelope = await api.create_envelope()
        await api.add_recipient(envelope["id"])
        resp = await sender_client.post(
            f"/api/envelopes/{envelope['id']}/recipients", json={"email": "second@example.com", "name": "Second"}
        )
        assert resp.status_code == 422

    async def test_document_cap(self, api, sender_client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "max_documents_per_envelope", 1)
        envelope = await api.create_envelope()
        await api.attach(envelope["id"], (await api.upload())["id"])
        extra = await api.upload()
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/documents", json={"document_id": extra["id"]})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

class TestSend:
    async def test_send_issues_tokens_and_activates_first_slot(self, api):
        draft = await api.prepare_and_send([("a@example.com", 1), ("b@example.com", 2)])
        envelope = draft["sent"]["envelope"]
        assert envelope["status"] == "sent"
        assert envelope["sent_at"] is not None
        assert set(draft["tokens"]) == {"a@example.com", "b@example.com"}
        statuses = {r["email"]: r["status"] for r in envelope["recipients"]}
        assert statuses == {"a@example.com": "sent", "b@example.com": "pending"}
        assert (await api.audit_types(envelope["id"]))[-1] == "envelope_sent"

    async def test_viewers_get_no_link(self, api):
        draft = await api.prepare([("a@example.com", 1)])
        await api.add_recipient(draft["envelope"]["id"], email="cc@example.com", role="viewer", routing_order=2)
        sent = await api.send(draft["envelope"]["id"])
        assert [t["email"] for t in sent["tokens"]] == ["a@example.com"]

    async def test_invitations_flag_recipients_waiting_for_their_slot(self, api, monkeypatch):
        enqueued = []
        monkeypatch.setattr(settings, "background_tasks_enabled", True)
        monkeypatch.setattr(dispatch, "enqueue", lambda name, *args: enqueued.append((name, args)))
        draft = await api.prepare_and_send([("first@example.com", 1), ("second@example.com", 2)])

        invitations = {
            args[0]["recipient_email"]: args[0]
            for name, args in enqueued
            if name == "deliver_notification" and args[0]["kind"] == "invitation"
        }
        assert invitations["first@example.com"]["awaiting_turn"] is False
        assert invitations["second@example.com"]["awaiting_turn"] is True
        assert invitations["second@example.com"]["routing_order"] == 2
        assert invitations["second@example.com"]["access_token"] == draft["tokens"]["second@example.com"]

    async def test_send_requires_documents(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        await api.add_recipient(envelope["id"])
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/send")
        assert resp.status_code == 422
        assert resp.json()["message"] == "envelope has no documents"

    async def test_send_requires_a_signer(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        await api.attach(envelope["id"], (await api.upload())["id"])
        await api.add_recipient(envelope["id"], role="viewer")
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/send")
        assert resp.status_code == 422

    async def test_send_rejects_past_expiry(self, api, sender_client: AsyncClient):
        draft = await api.prepare([("a@example.com", 1)])
        envelope_id = draft["envelope"]["id"]
        past = (utcnow() - timedelta(hours=1)).isoformat()
        resp = await sender_client.patch(f"/api/envelopes/{envelope_id}", json={"expires_at": past})
        assert resp.status_code == 200
        resp = await sender_client.post(f"/api/envelopes/{envelope_id}/send")
        assert resp.status_code == 422

    async def test_send_twice_is_invalid_state(self, api, sender_client: AsyncClient):
        draft = await api.prepare_and_send([("a@example.com", 1)])
        resp = await sender_client.post(f"/api/envelopes/{draft['envelope']['id']}/send")
        assert resp.status_code == 409
        assert resp.json()["code"] == "invalid_state"


class TestFrozenAfterSend:
    """Once sent, documents, fields, recipients and metadata are immutable."""

    @pytest.fixture
    async def sent(self, api):
        return await api.prepare_and_send([("a@example.com", 1)])

    async def _snapshot(self, http: AsyncClient, envelope_id: str) -> dict:
        view = (await http.get(f"/api/envelopes/{envelope_id}")).json()
        view.pop("progress")
        view.pop("updated_at")
        return view

    async def test_every_mutation_is_rejected(self, api, sent, sender_client: AsyncClient):
        envelope_id = sent["envelope"]["id"]
        doc_id = sent["document"]["id"]
        recipient_id = sent["recipients"]["a@example.com"]["id"]
        field_id = sent["fields"]["a@example.com"]["id"]
        before = await self._snapshot(sender_client, envelope_id)
        audit_before = await api.audit_types(envelope_id)
        extra = await api.upload()

        attempts = [
            sender_client.patch(f"/api/envelopes/{envelope_id}", json={"title": "Changed"}),
            sender_client.post(f"/api/envelopes/{envelope_id}/documents", json={"document_id": extra["id"]}),
            sender_client.delete(f"/api/envelopes/{envelope_id}/documents/{doc_id}"),
            sender_client.post(
                f"/api/envelopes/{envelope_id}/recipients", json={"email": "late@example.com", "name": "Late"}
            ),
            sender_client.delete(f"/api/envelopes/{envelope_id}/recipients/{recipient_id}"),
            sender_client.patch(f"/api/envelopes/{envelope_id}/fields/{field_id}", json={"x": 0.5}),
            sender_client.delete(f"/api/envelopes/{envelope_id}/fields/{field_id}"),
        ]
        for attempt in attempts:
            resp = await attempt
            assert resp.status_code == 409, resp.text
            assert resp.json() == {"code": "invalid_state", "message": "envelope is no longer editable"}

        assert await self._snapshot(sender_client, envelope_id) == before
        assert await api.audit_types(envelope_id) == audit_before


# ---------------------------------------------------------------------------
# Voiding and deletion
# ---------------------------------------------------------------------------

class TestVoidAndDelete:
    async def test_void_sent_envelope(self, api, sender_client: AsyncClient):
        draft = await api.prepare_and_send([("a@example.com", 1)])
        envelope_id = draft["envelope"]["id"]
        resp = await sender_client.post(f"/api/envelopes/{envelope_id}/void", json={"reason": "wrong terms"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "voided"
        assert resp.json()["void_reason"] == "wrong terms"
        assert (await api.audit_types(envelope_id))[-1] == "envelope_voided"

    async def test_void_requires_reason(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/void", json={"reason": ""})
        assert resp.status_code == 422

    async def test_voided_is_terminal(self, api, sender_client: AsyncClient):
        envelope = await api.create_envelope()
        await sender_client.post(f"/api/envelopes/{envelope['id']}/void", json={"reason": "no"})
        resp = await sender_client.post(f"/api/envelopes/{envelope['id']}/void", json={"reason": "again"})
        assert resp.status_code == 409

    async def test_deleting_draft_destroys_its_documents(self, api, sender_client: AsyncClient, blob_store):
        draft = await api.prepare([("a@example.com", 1)])
        envelope_id, doc_id = draft["envelope"]["id"], draft["document"]["id"]
        resp = await sender_client.delete(f"/api/envelopes/{envelope_id}")
        assert resp.status_code == 204
        assert (await sender_client.get(f"/api/envelopes/{envelope_id}")).status_code == 404
        assert (await sender_client.get(f"/api/documents/{doc_id}")).status_code == 404
        assert not blob_store.exists(f"documents/{doc_id}")

    async def test_deleting_voided_releases_documents(self, api, sender_client: AsyncClient, blob_store):
        draft = await api.prepare_and_send([("a@example.com", 1)])
        envelope_id, doc_id = draft["envelope"]["id"], draft["document"]["id"]
        await sender_client.post(f"/api/envelopes/{envelope_id}/void", json={"reason": "cancelled"})
        resp = await sender_client.delete(f"/api/envelopes/{envelope_id}")
        assert resp.status_code == 204
        assert (await sender_client.get(f"/api/documents/{doc_id}")).status_code == 200
        assert blob_store.exists(f"documents/{doc_id}")

    async def test_active_envelope_cannot_be_deleted(self, api, sender_client: AsyncClient):
        draft = await api.prepare_and_send([("a@example.com", 1)])
        resp = await sender_client.delete(f"/api/envelopes/{draft['envelope']['id']}")
        assert resp.status_code == 409


# ---------------------------------------------------------------------------
# Access link reissue
# ---------------------------------------------------------------------------

class TestReissueToken:
    async def test_reissue_invalidates_previous_link(self, api, client: AsyncClient, sender_client: AsyncClient):
        draft = await api.prepare_and_send([("a@example.com", 1)])
        envelope_id = draft["envelope"]["id"]
        recipient_id = draft["recipients"]["a@example.com"]["id"]
        old = draft["tokens"]["a@example.com"]

        resp = await sender_client.post(f"/api/envelopes/{envelope_id}/recipients/{recipient_id}/token")
        assert resp.status_code == 200
        new = resp.json()["access_token"]
        assert new != old

        assert (await client.get(f"/api/sign/{envelope_id}/{old}")).status_code == 403
        assert (await client.get(f"/api/sign/{envelope_id}/{new}")).status_code == 200

    async def test_reissue_needs_active_envelope(self, api, sender_client: AsyncClient):
        draft = await api.prepare([("a@example.com", 1)])
        recipient_id = draft["recipients"]["a@example.com"]["id"]
        resp = await sender_client.post(
            f"/api/envelopes/{draft['envelope']['id']}/recipients/{recipient_id}/token"
        )
        assert resp.status_code == 409


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class TestAuditTrail:
    async def test_events_are_sequenced_and_chained(self, api, sender_client: AsyncClient):
        draft = await api.prepare_and_send([("a@example.com", 1)])
        resp = await sender_client.get(f"/api/envelopes/{draft['envelope']['id']}/audit")
        events = resp.json()
        assert [e["sequence"] for e in events] == list(range(1, len(events) + 1))
        assert events[0]["event_type"] == "envelope_created"
        for prev, event in zip(events, events[1:]):
            assert event["prev_event_hash"] == prev["event_hash"]

    async def test_verify_is_deterministic(self, api, sender_client: AsyncClient):
        draft = await api.prepare_and_send([("a@example.com", 1)])
        url = f"/api/envelopes/{draft['envelope']['id']}/audit/verify"
        first = (await sender_client.get(url)).json()
        second = (await sender_client.get(url)).json()
        assert first == second
        assert first["ok"] is True
        assert first["break_at"] is None
        assert first["checked"] == len(await api.audit_types(draft["envelope"]["id"]))
