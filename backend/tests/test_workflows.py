"""
Tests for envelope workflows: condition evaluation, action execution and the
draft-only workflow routes.
"""

import hashlib
import hmac
import json
import uuid
from datetime import timedelta

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from countersign.common.base_models import as_utc, utcnow
from countersign.config import settings
from countersign.envelopes.models import Envelope, EnvelopeStatus, EnvelopeWorkflow, WorkflowTrigger
from countersign.envelopes.workflows import condition_holds, conditions_hold, execute_workflows, run_workflows
from countersign.tasks import dispatch
from countersign.tasks.dispatch import pending_tasks
from countersign.tasks.notifications import SIGNATURE_HEADER, TIMESTAMP_HEADER

ALICE = "alice@example.com"
BOB = "bob@example.com"
HOOK_URL = "https://hooks.example.com/countersign"


async def _add_workflow(http: AsyncClient, envelope_id: str, **body) -> dict:
    body.setdefault("name", "Notify CRM")
    body.setdefault("trigger", "on_send")
    body.setdefault("actions", [{"type": "webhook", "url": HOOK_URL, "secret": "s3cret"}])
    resp = await http.post(f"/api/envelopes/{envelope_id}/workflows", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _envelope_row(db_session, envelope_id: str) -> Envelope:
    result = await db_session.execute(select(Envelope).where(Envelope.uuid == uuid.UUID(envelope_id)))
    return result.scalar_one()


def _recording_client(captured: list, status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------
class TestConditions:
    @pytest.fixture(autouse=True)
    def _envelope(self):
        self.envelope = Envelope(title="Conditions", status=EnvelopeStatus.sent)

    def test_always(self):
        assert condition_holds({"type": "always"}, self.envelope, {}) is True

    def test_status_equals(self):
        assert condition_holds({"type": "status_equals", "value": "sent"}, self.envelope, {}) is True
        assert condition_holds({"type": "status_equals", "value": "completed"}, self.envelope, {}) is False

    @pytest.mark.parametrize(
        "condition,data,expected",
        [
            ({"type": "equals", "key": "reason", "value": "duplicated"}, {"reason": "duplicated"}, True),
            ({"type": "equals", "key": "reason", "value": "duplicated"}, {"reason": "typo"}, False),
            ({"type": "gt", "key": "recipient_count", "value": 1}, {"recipient_count": 2}, True),
            ({"type": "gt", "key": "recipient_count", "value": "1"}, {"recipient_count": "2"}, True),
            ({"type": "lt", "key": "recipient_count", "value": 2}, {"recipient_count": 2}, False),
            ({"type": "gt", "key": "recipient_count", "value": 0}, {"recipient_count": True}, False),
            ({"type": "gt", "key": "recipient_count", "value": 0}, {"recipient_count": "many"}, False),
            ({"type": "gt", "key": "recipient_count", "value": 0}, {}, False),
        ],
    )
    def test_comparisons(self, condition, data, expected):
        assert condition_holds(condition, self.envelope, data) is expected

    def test_unknown_condition_never_holds(self):
        assert condition_holds({"type": "regex", "key": "reason", "value": ".*"}, self.envelope, {"reason": "x"}) is False

    def test_all_conditions_must_hold(self):
        conditions = [{"type": "always"}, {"type": "gt", "key": "recipient_count", "value": 3}]
        assert conditions_hold(conditions, self.envelope, {"recipient_count": 2}) is False
        assert conditions_hold([], self.envelope, {}) is True


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
class TestWorkflowRoutes:
    async def test_create_and_list(self, api, sender_client: AsyncClient):
        draft = await api.prepare([(ALICE, 1)])
        envelope_id = draft["envelope"]["id"]
        created = await _add_workflow(
            sender_client,
            envelope_id,
            conditions=[{"type": "gt", "key": "recipient_count", "value": 0}],
        )
        assert created["trigger"] == "on_send"
        assert created["execution_count"] == 0
        assert created["actions"][0]["url"] == HOOK_URL

        listed = (await sender_client.get(f"/api/envelopes/{envelope_id}/workflows")).json()
        assert [w["id"] for w in listed] == [created["id"]]

    async def test_actions_are_required(self, api, sender_client: AsyncClient):
        draft = await api.prepare([(ALICE, 1)])
        resp = await sender_client.post(
            f"/api/envelopes/{draft['envelope']['id']}/workflows",
            json={"name": "Empty", "trigger": "on_send", "actions": []},
        )
        assert resp.status_code == 422

    async def test_unknown_action_type_rejected(self, api, sender_client: AsyncClient):
        draft = await api.prepare([(ALICE, 1)])
        resp = await sender_client.post(
            f"/api/envelopes/{draft['envelope']['id']}/workflows",
            json={"name": "Bad", "trigger": "on_send", "actions": [{"type": "sms", "to": "+100"}]},
        )
        assert resp.status_code == 422

    async def test_workflows_frozen_after_send(self, api, sender_client: AsyncClient):
        draft = await api.prepare_and_send([(ALICE, 1)])
        resp = await sender_client.post(
            f"/api/envelopes/{draft['envelope']['id']}/workflows",
            json={"name": "Late", "trigger": "on_complete", "actions": [{"type": "add_reminder"}]},
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "invalid_state"

    async def test_other_sender_gets_not_found(self, api, other_sender_client: AsyncClient):
        draft = await api.prepare([(ALICE, 1)])
        resp = await other_sender_client.get(f"/api/envelopes/{draft['envelope']['id']}/workflows")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
class TestRunWorkflows:
    async def test_webhook_is_signed_and_recorded(self, api, sender_client: AsyncClient, db_session):
        draft = await api.prepare([(ALICE, 1), (BOB, 2)])
        envelope_id = draft["envelope"]["id"]
        await _add_workflow(sender_client, envelope_id)
        await api.send(envelope_id)

        envelope = await _envelope_row(db_session, envelope_id)
        captured = []
        async with _recording_client(captured) as http:
            fired = await run_workflows(
                db_session, envelope, WorkflowTrigger.on_send, {"recipient_count": 2}, http_client=http
            )
        await db_session.commit()
        assert fired == 1

        [request] = captured
        assert str(request.url) == HOOK_URL
        body = json.loads(request.content)
        assert body == {
            "event": "on_send",
            "workflow": "Notify CRM",
            "envelope_id": envelope_id,
            "status": "sent",
            "data": {"recipient_count": 2},
        }
        timestamp = request.headers[TIMESTAMP_HEADER]
        expected = hmac.new(b"s3cret", timestamp.encode() + b"." + request.content, hashlib.sha256).hexdigest()
        assert request.headers[SIGNATURE_HEADER] == f"sha256={expected}"

        events = (await sender_client.get(f"/api/envelopes/{envelope_id}/audit")).json()
        assert events[-1]["event_type"] == "workflow_executed"
        assert events[-1]["metadata"]["name"] == "Notify CRM"
        assert events[-1]["metadata"]["actions"] == [{"type": "webhook", "ok": True, "status_code": 200}]

        listed = (await sender_client.get(f"/api/envelopes/{envelope_id}/workflows")).json()
        assert listed[0]["execution_count"] == 1
        assert listed[0]["last_executed_at"] is not None

    async def test_unsigned_webhook_without_secret(self, api, sender_client: AsyncClient, db_session):
        draft = await api.prepare([(ALICE, 1)])
        envelope_id = draft["envelope"]["id"]
        await _add_workflow(sender_client, envelope_id, actions=[{"type": "webhook", "url": HOOK_URL}])
        await api.send(envelope_id)

        envelope = await _envelope_row(db_session, envelope_id)
        captured = []
        async with _recording_client(captured) as http:
            await run_workflows(db_session, envelope, WorkflowTrigger.on_send, {}, http_client=http)
        await db_session.commit()
        assert SIGNATURE_HEADER not in captured[0].headers
        assert TIMESTAMP_HEADER in captured[0].headers

    async def test_failed_action_does_not_stop_the_rest(self, api, sender_client: AsyncClient, db_session):
        draft = await api.prepare([(ALICE, 1), (BOB, 2)])
        envelope_id = draft["envelope"]["id"]
        await _add_workflow(
            sender_client,
            envelope_id,
            actions=[
                {"type": "webhook", "url": HOOK_URL},
                {"type": "notify_recipients", "message": "Please take a look"},
            ],
        )
        await api.send(envelope_id)

        envelope = await _envelope_row(db_session, envelope_id)
        async with _recording_client([], status_code=500) as http:
            fired = await run_workflows(db_session, envelope, WorkflowTrigger.on_send, {}, http_client=http)
        assert fired == 1

        notifications = [args[0] for name, args in pending_tasks(db_session) if name == "deliver_notification"]
        assert sorted(n["recipient_email"] for n in notifications) == [ALICE, BOB]
        assert {n["kind"] for n in notifications} == {"workflow"}
        assert notifications[0]["message"] == "Please take a look"
        await db_session.commit()

        events = (await sender_client.get(f"/api/envelopes/{envelope_id}/audit")).json()
        assert events[-1]["metadata"]["actions"] == [
            {"type": "webhook", "ok": False, "error": "HTTPStatusError"},
            {"type": "notify_recipients", "ok": True, "notified": 2},
        ]

    async def test_add_reminder_schedules_next_reminder(self, api, sender_client: AsyncClient, db_session):
        draft = await api.prepare([(ALICE, 1)])
        envelope_id = draft["envelope"]["id"]
        await _add_workflow(sender_client, envelope_id, actions=[{"type": "add_reminder", "delay_hours": 48}])
        await api.send(envelope_id)

        envelope = await _envelope_row(db_session, envelope_id)
        before = utcnow()
        assert await run_workflows(db_session, envelope, WorkflowTrigger.on_send) == 1
        await db_session.commit()

        scheduled = as_utc(envelope.next_reminder_at)
        assert before + timedelta(hours=48) <= scheduled <= utcnow() + timedelta(hours=48)

    async def test_conditions_and_trigger_filter_workflows(self, api, sender_client: AsyncClient, db_session):
        draft = await api.prepare([(ALICE, 1)])
        envelope_id = draft["envelope"]["id"]
        await _add_workflow(
            sender_client,
            envelope_id,
            name="Big envelopes only",
            conditions=[{"type": "gt", "key": "recipient_count", "value": 5}],
            actions=[{"type": "add_reminder"}],
        )
        await _add_workflow(
            sender_client, envelope_id, name="On void", trigger="on_void", actions=[{"type": "add_reminder"}]
        )
        await _add_workflow(
            sender_client, envelope_id, name="Paused", is_active=False, actions=[{"type": "add_reminder"}]
        )
        await api.send(envelope_id)

        envelope = await _envelope_row(db_session, envelope_id)
        assert await run_workflows(db_session, envelope, WorkflowTrigger.on_send, {"recipient_count": 1}) == 0
        assert await run_workflows(db_session, envelope, "on_void", {"reason": "typo"}) == 1
        await db_session.commit()

        counts = (
            await db_session.execute(select(EnvelopeWorkflow.name, EnvelopeWorkflow.execution_count))
        ).all()
        assert dict(counts) == {"Big envelopes only": 0, "On void": 1, "Paused": 0}

    async def test_send_defers_workflow_run(self, api, db_session, monkeypatch):
        enqueued = []
        monkeypatch.setattr(settings, "background_tasks_enabled", True)
        monkeypatch.setattr(dispatch, "enqueue", lambda name, *args: enqueued.append((name, args)))
        draft = await api.prepare_and_send([(ALICE, 1), (BOB, 2)])

        envelope = await _envelope_row(db_session, draft["envelope"]["id"])
        runs = [args for name, args in enqueued if name == "run_workflows"]
        assert runs == [(envelope.id, "on_send", {"recipient_count": 2})]
        assert [args[0]["kind"] for name, args in enqueued if name == "deliver_notification"] == ["invitation", "invitation"]


class TestExecuteWorkflows:
    async def test_no_transaction_open_while_webhook_in_flight(
        self, api, sender_client: AsyncClient, session_factory, db_session
    ):
        draft = await api.prepare([(ALICE, 1)])
        envelope_id = draft["envelope"]["id"]
        await _add_workflow(
            sender_client,
            envelope_id,
            actions=[{"type": "add_reminder", "delay_hours": 6}, {"type": "webhook", "url": HOOK_URL}],
        )
        await api.send(envelope_id)
        envelope = await _envelope_row(db_session, envelope_id)

        sessions = []

        def tracking_factory():
            session = session_factory()
            sessions.append(session)
            return session

        in_transaction = []

        def handler(request: httpx.Request) -> httpx.Response:
            in_transaction.append([s.in_transaction() for s in sessions])
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            fired = await execute_workflows(
                tracking_factory, envelope.id, WorkflowTrigger.on_send, {"recipient_count": 1}, http_client=http
            )
        assert fired == 1
        assert in_transaction == [[False]]
        assert len(sessions) == 2

        events = (await sender_client.get(f"/api/envelopes/{envelope_id}/audit")).json()
        assert events[-1]["event_type"] == "workflow_executed"
        actions = events[-1]["metadata"]["actions"]
        assert [a["type"] for a in actions] == ["add_reminder", "webhook"]
        assert actions[1] == {"type": "webhook", "ok": True, "status_code": 204}

        listed = (await sender_client.get(f"/api/envelopes/{envelope_id}/workflows")).json()
        assert listed[0]["execution_count"] == 1

    async def test_nothing_to_run_skips_the_second_transaction(self, api, session_factory, db_session):
        draft = await api.prepare_and_send([(ALICE, 1)])
        envelope = await _envelope_row(db_session, draft["envelope"]["id"])

        sessions = []

        def tracking_factory():
            session = session_factory()
            sessions.append(session)
            return session

        assert await execute_workflows(tracking_factory, envelope.id, WorkflowTrigger.on_send) == 0
        assert len(sessions) == 1

    async def test_missing_envelope(self, session_factory):
        assert await execute_workflows(session_factory, 987654, WorkflowTrigger.on_void, {"reason": "typo"}) == 0
