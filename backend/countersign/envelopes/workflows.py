"""
Envelope workflows: trigger -> conditions -> actions.

A workflow fires when its trigger occurs and every condition holds over the
envelope and the event data. Action failures are logged and recorded in the
``workflow_executed`` audit event; they never fail the caller. Webhooks are
posted between planning and recording so no envelope lock is held while they
are in flight.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from countersign.audit.chain import Actor, append_event, lock_envelope_row
from countersign.audit.models import AuditEventType
from countersign.common.base_models import utcnow
from countersign.common.context import RequestContext
from countersign.envelopes.models import (
    ACTING_ROLES,
    OPEN_RECIPIENT_STATUSES,
    Envelope,
    EnvelopeWorkflow,
    WorkflowTrigger,
)
from countersign.envelopes.queries import load_recipients, load_workflows
from countersign.store.transaction import flush, store_errors, transaction
from countersign.tasks.notifications import encode_payload, notify, signed_headers

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10.0


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def condition_holds(condition: dict, envelope: Envelope, event_data: dict) -> bool:
    kind = condition.get("type")
    if kind == "always":
        return True
    if kind == "status_equals":
        return envelope.status.value == condition.get("value")

    key = condition.get("key")
    if key not in event_data:
        return False
    actual, expected = event_data[key], condition.get("value")
    if kind == "equals":
        return actual == expected
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    if kind == "gt":
        return left > right
    if kind == "lt":
        return left < right
    return False


def conditions_hold(conditions: list[dict], envelope: Envelope, event_data: dict) -> bool:
    return all(condition_holds(c, envelope, event_data) for c in conditions)


async def _post_webhook(action: dict, body: dict, http_client: Optional[httpx.AsyncClient]) -> int:
    payload_bytes = encode_payload(body)
    headers = signed_headers(payload_bytes, action.get("secret"))
    if http_client is not None:
        response = await http_client.post(action["url"], content=payload_bytes, headers=headers)
    else:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
            response = await client.post(action["url"], content=payload_bytes, headers=headers)
    response.raise_for_status()
    return response.status_code


async def _run_action(db, envelope: Envelope, action: dict) -> dict:
    kind = action.get("type")
    if kind == "add_reminder":
        envelope.next_reminder_at = utcnow() + timedelta(hours=int(action.get("delay_hours", 24)))
        return {"type": kind, "ok": True, "next_reminder_at": envelope.next_reminder_at.isoformat()}

    if kind == "notify_recipients":
        notified = 0
        for recipient in await load_recipients(db, envelope.id):
            if recipient.role in ACTING_ROLES and recipient.status in OPEN_RECIPIENT_STATUSES:
                notify(db, "workflow", envelope, recipient, message=action.get("message"))
                notified += 1
        return {"type": kind, "ok": True, "notified": notified}

    raise ValueError(f"unknown workflow action {kind!r}")


@dataclass
class PlannedWorkflow:
    """A workflow whose conditions held, with its webhook outcomes once posted."""

    workflow_id: int
    name: str
    trigger: WorkflowTrigger
    actions: list[dict]
    webhook_body: dict
    outcomes: dict[int, dict] = field(default_factory=dict)


async def plan_workflows(db, envelope: Envelope, trigger: WorkflowTrigger, event_data: dict) -> list[PlannedWorkflow]:
    plans = []
    for workflow in await load_workflows(db, envelope.id, trigger=WorkflowTrigger(trigger), active_only=True):
        if not conditions_hold(workflow.conditions or [], envelope, event_data):
            continue
        plans.append(
            PlannedWorkflow(
                workflow_id=workflow.id,
                name=workflow.name,
                trigger=workflow.trigger,
                actions=list(workflow.actions or []),
                webhook_body={
                    "event": workflow.trigger.value,
                    "workflow": workflow.name,
                    "envelope_id": str(envelope.uuid),
                    "status": envelope.status.value,
                    "data": event_data,
                },
            )
        )
    return plans


async def post_webhooks(
    plans: list[PlannedWorkflow], envelope_uuid, http_client: Optional[httpx.AsyncClient] = None
) -> None:
    """Post every webhook action; runs outside any transaction."""
    for plan in plans:
        for index, action in enumerate(plan.actions):
            if action.get("type") != "webhook":
                continue
            try:
                status_code = await _post_webhook(action, plan.webhook_body, http_client)
            except Exception as exc:
                logger.exception("Workflow %s webhook failed for envelope %s", plan.name, envelope_uuid)
                plan.outcomes[index] = {"type": "webhook", "ok": False, "error": type(exc).__name__}
                continue
            logger.info("Workflow webhook for envelope %s sent to %s (status %d)", envelope_uuid, action["url"], status_code)
            plan.outcomes[index] = {"type": "webhook", "ok": True, "status_code": status_code}


async def record_workflows(db, envelope: Envelope, plans: list[PlannedWorkflow]) -> int:
    """Run the store-side actions and append one ``workflow_executed`` event per plan."""
    fired = 0
    for plan in plans:
        async with store_errors():
            workflow = await db.get(EnvelopeWorkflow, plan.workflow_id)
        if workflow is None:
            continue

        outcomes = []
        for index, action in enumerate(plan.actions):
            if index in plan.outcomes:
                outcomes.append(plan.outcomes[index])
                continue
            try:
                outcomes.append(await _run_action(db, envelope, action))
            except Exception as exc:
                logger.exception("Workflow %s action %s failed for envelope %s", plan.name, action.get("type"), envelope.uuid)
                outcomes.append({"type": action.get("type"), "ok": False, "error": type(exc).__name__})

        workflow.execution_count = (workflow.execution_count or 0) + 1
        workflow.last_executed_at = utcnow()
        await append_event(
            db,
            envelope.id,
            AuditEventType.workflow_executed,
            {
                "workflow_id": str(workflow.uuid),
                "name": plan.name,
                "trigger": plan.trigger.value,
                "actions": outcomes,
            },
            actor=Actor.system(),
        )
        fired += 1

    if fired:
        await flush(db)
    return fired


async def run_workflows(
    db,
    envelope: Envelope,
    trigger: WorkflowTrigger,
    event_data: Optional[dict] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> int:
    """Execute every active workflow on ``trigger`` in one session; returns how many fired."""
    event_data = event_data or {}
    plans = await plan_workflows(db, envelope, trigger, event_data)
    await post_webhooks(plans, envelope.uuid, http_client)
    return await record_workflows(db, envelope, plans)


async def execute_workflows(
    session_factory: async_sessionmaker[AsyncSession],
    envelope_id: int,
    trigger: WorkflowTrigger,
    event_data: Optional[dict] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    ctx: Optional[RequestContext] = None,
) -> int:
    """Background entry point; no envelope lock is held while webhooks are in flight.

    Conditions are evaluated in a short read transaction, webhooks are posted
    with no transaction open, and the outcomes are recorded in a second
    transaction under the envelope lock.
    """
    event_data = event_data or {}
    async with transaction(session_factory, ctx) as db:
        async with store_errors():
            envelope = await db.get(Envelope, envelope_id)
        if envelope is None:
            logger.warning("Envelope %s vanished before %s workflows ran", envelope_id, trigger)
            return 0
        envelope_uuid = envelope.uuid
        plans = await plan_workflows(db, envelope, trigger, event_data)
    if not plans:
        return 0

    await post_webhooks(plans, envelope_uuid, http_client)

    async with transaction(session_factory, ctx) as db:
        envelope = await lock_envelope_row(db, envelope_id)
        if envelope is None:
            logger.warning("Envelope %s vanished while %s workflows ran", envelope_id, trigger)
            return 0
        return await record_workflows(db, envelope, plans)
