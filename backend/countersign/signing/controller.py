"""
Per-recipient signing transaction.

A signing attempt runs in three phases:

1. Under the envelope lock and inside one transaction: resolve the envelope
   and recipient, enforce the routing order, hash every bound document,
   validate the submitted field values, build the canonical payload and
   stage an evidence row.
2. Outside any lock or transaction: call the signing provider, retrying
   transient failures. The payload hash is the idempotency key.
3. Under the envelope lock again and inside one transaction: re-check the
   envelope, commit the evidence, write field values, append
   ``recipient_signed`` and advance the envelope (activating the next slot or
   completing it).

Any failure after the evidence is staged marks it ``orphan_unsigned``; the
row is kept and the recipient does not advance.
"""

import asyncio
import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from countersign.audit.chain import Actor, append_event, lock_envelope_row
from countersign.audit.models import AuditEventType
from countersign.blobs.base import BlobStore
from countersign.common.base_models import as_utc, rfc3339, utcnow
from countersign.common.canonical import canonical_json, sha256_hex
from countersign.common.context import RequestContext
from countersign.common.errors import (
    ACCESS_LINK_INVALID,
    CountersignError,
    Forbidden,
    InvalidState,
    OutOfTurn,
    ValidationError,
)
from countersign.common.locks import EnvelopeLocks
from countersign.common.retry import RetryPolicy, retry_provider_call
from countersign.config import settings as default_settings
from countersign.documents.hasher import DocumentHash, DocumentHasher
from countersign.envelopes.expiry import expire_if_overdue
from countersign.envelopes.fields import dump_properties, is_filled, validate_field_value
from countersign.envelopes.models import (
    ACTING_ROLES,
    TERMINAL_STATUSES,
    Envelope,
    EnvelopeStatus,
    Field,
    Recipient,
    RecipientStatus,
    WorkflowTrigger,
)
from countersign.envelopes.queries import find_envelope, load_documents, load_fields, load_recipients
from countersign.envelopes.routing import all_required_signed, is_next, to_activate
from countersign.envelopes.schemas import EnvelopeDocumentResponse
from countersign.envelopes.service import complete_envelope, field_response
from countersign.envelopes.state import transition
from countersign.envelopes.tokens import AccessTokenCache, hash_token, token_matches
from countersign.signing.models import EvidenceStatus, SignatureEvidence
from countersign.signing.providers.base import SigningProvider, SignResult
from countersign.signing.schemas import (
    DeclineResponse,
    DocHash,
    RecipientView,
    SignRequest,
    SigningRecipient,
    SignResponse,
)
from countersign.store.transaction import flush, store_errors, transaction
from countersign.tasks.dispatch import defer_task
from countersign.tasks.notifications import notify

logger = logging.getLogger(__name__)

SIGNING_INTENT = "approve_and_sign"


@dataclass
class StagedSignature:
    envelope_id: int
    recipient_id: int
    evidence_id: int
    token_hash: str
    payload: bytes
    payload_hash: str
    doc_hashes: list[DocumentHash]
    values: dict[int, str] = field(default_factory=dict)
    new_fields: list[dict] = field(default_factory=list)


class SigningController:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blobs: BlobStore,
        provider: SigningProvider,
        settings=default_settings,
        token_cache: Optional[AccessTokenCache] = None,
        locks: Optional[EnvelopeLocks] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.settings = settings
        self.hasher = DocumentHasher.from_settings(blobs, settings)
        self.token_cache = token_cache or AccessTokenCache.from_settings(settings)
        self.locks = locks or EnvelopeLocks()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._sleep = sleep

    # ── Resolution ─────────────────────────────────────────────────────────────

    async def _resolve(self, db: AsyncSession, envelope_uuid: uuid.UUID, token: str) -> tuple[Envelope, Recipient]:
        """Envelope (row-locked) and the recipient the token belongs to.

        Unknown envelopes and bad tokens raise the same Forbidden error.
        """
        envelope = await find_envelope(db, envelope_uuid, for_update=True)
        if envelope is None or not token:
            raise Forbidden(ACCESS_LINK_INVALID)

        token_hash = hash_token(token)
        recipient = None
        cached_id = self.token_cache.get(envelope.id, token_hash)
        if cached_id is not None:
            recipient = await db.get(Recipient, cached_id)
            if recipient is None or recipient.envelope_id != envelope.id or not token_matches(recipient, token):
                self.token_cache.discard(envelope.id, token_hash)
                recipient = None

        if recipient is None:
            async with store_errors():
                result = await db.execute(
                    select(Recipient).where(
                        Recipient.envelope_id == envelope.id,
                        Recipient.access_token_hash.is_not(None),
                    )
                )
            # Compare against every candidate so timing does not depend on position.
            for candidate in result.scalars().all():
                if token_matches(candidate, token) and recipient is None:
                    recipient = candidate
            if recipient is not None:
                self.token_cache.put(envelope.id, token_hash, recipient.id)

        if recipient is None or recipient.role not in ACTING_ROLES:
            raise Forbidden(ACCESS_LINK_INVALID)
        return envelope, recipient

    async def _expire_or_reject(self, db: AsyncSession, envelope: Envelope) -> None:
        if await expire_if_overdue(db, envelope):
            await db.commit()
            raise InvalidState("envelope has expired")
        if envelope.status in TERMINAL_STATUSES:
            raise InvalidState(f"envelope is {envelope.status.value}")

    # ── View ───────────────────────────────────────────────────────────────────

    async def view(self, envelope_uuid: uuid.UUID, token: str, ctx: RequestContext) -> RecipientView:
        async with self.locks.hold(envelope_uuid):
            async with transaction(self.session_factory, ctx) as db:
                envelope, recipient = await self._resolve(db, envelope_uuid, token)
                if envelope.status != EnvelopeStatus.completed:
                    await self._expire_or_reject(db, envelope)

                recipients = await load_recipients(db, envelope.id)
                turn = is_next(recipient, recipients)
                if recipient.status == RecipientStatus.sent and envelope.status in (
                    EnvelopeStatus.sent,
                    EnvelopeStatus.in_progress,
                ):
                    now = utcnow()
                    recipient.status = RecipientStatus.viewed
                    recipient.viewed_at = now
                    if envelope.status == EnvelopeStatus.sent:
                        transition(envelope, EnvelopeStatus.in_progress)
                    await flush(db)
                    await append_event(
                        db,
                        envelope.id,
                        AuditEventType.recipient_viewed,
                        {"recipient_id": str(recipient.uuid), "email": recipient.email},
                        actor=Actor.recipient(recipient.uuid),
                        ctx=ctx,
                        created_at=now,
                    )
                    defer_task(
                        db, "run_workflows", envelope.id, WorkflowTrigger.on_view.value, {"recipient_email": recipient.email}
                    )

                documents = await load_documents(db, envelope.id)
                fields = await load_fields(db, envelope.id, recipient_id=recipient.id)
                document_uuids = {doc.id: doc.uuid for doc, _ in documents}
                return RecipientView(
                    envelope_id=envelope.uuid,
                    title=envelope.title,
                    subject=envelope.subject,
                    message=recipient.custom_message or envelope.message,
                    sender_name=envelope.sender_name,
                    sender_email=envelope.sender_email,
                    envelope_status=envelope.status.value,
                    expires_at=as_utc(envelope.expires_at),
                    is_next=turn,
                    recipient=self._recipient_info(recipient),
                    documents=[
                        EnvelopeDocumentResponse(
                            id=doc.uuid,
                            filename=doc.filename,
                            order=order,
                            page_count=doc.page_count,
                            size_bytes=doc.size_bytes,
                            sha256=doc.sha256,
                        )
                        for doc, order in documents
                    ],
                    fields=[field_response(f, document_uuids, {recipient.id: recipient.uuid}) for f in fields],
                )

    @staticmethod
    def _recipient_info(recipient: Recipient) -> SigningRecipient:
        return SigningRecipient(
            id=recipient.uuid,
            name=recipient.name,
            email=recipient.email,
            role=recipient.role,
            status=recipient.status.value,
            routing_order=recipient.routing_order,
        )

    # ── Decline ────────────────────────────────────────────────────────────────

    async def decline(self, envelope_uuid: uuid.UUID, token: str, reason: str, ctx: RequestContext) -> DeclineResponse:
        async with self.locks.hold(envelope_uuid):
            async with transaction(self.session_factory, ctx) as db:
                envelope, recipient = await self._resolve(db, envelope_uuid, token)
                await self._expire_or_reject(db, envelope)

                if recipient.status == RecipientStatus.signed:
                    raise InvalidState("recipient has already signed")
                if recipient.status == RecipientStatus.declined:
                    raise InvalidState("recipient has already declined")
                recipients = await load_recipients(db, envelope.id)
                if not is_next(recipient, recipients):
                    raise OutOfTurn()

                now = utcnow()
                recipient.status = RecipientStatus.declined
                recipient.declined_at = now
                recipient.decline_reason = reason
                if envelope.status == EnvelopeStatus.sent:
                    transition(envelope, EnvelopeStatus.in_progress)
                await flush(db)
                await append_event(
                    db,
                    envelope.id,
                    AuditEventType.recipient_declined,
                    {"recipient_id": str(recipient.uuid), "email": recipient.email, "reason": reason},
                    actor=Actor.recipient(recipient.uuid),
                    ctx=ctx,
                    created_at=now,
                )
                self._activate_next(db, envelope, recipients, now)
                await flush(db)
                logger.info("Recipient %s declined envelope %s", recipient.uuid, envelope.uuid)
                return DeclineResponse(
                    recipient_id=recipient.uuid,
                    status=recipient.status.value,
                    declined_at=now,
                    envelope_status=envelope.status.value,
                )

    # ── Sign ───────────────────────────────────────────────────────────────────

    async def sign(
        self, envelope_uuid: uuid.UUID, token: str, request: SignRequest, ctx: RequestContext
    ) -> SignResponse:
        async with self.locks.hold(envelope_uuid):
            staged = await self._stage(envelope_uuid, token, request, ctx)
        if isinstance(staged, SignResponse):
            return staged

        committed = False
        try:
            result = await retry_provider_call(
                lambda: self.provider.sign(staged.payload, ctx, idempotency_key=staged.payload_hash),
                self.retry_policy,
                ctx,
                sleep=self._sleep,
            )
            async with self.locks.hold(envelope_uuid):
                response = await self._commit(staged, result, request, ctx)
            committed = True
            return response
        except CountersignError as exc:
            if not committed:
                await self._orphan(staged.evidence_id, exc.code.value)
            raise
        except BaseException as exc:
            if not committed:
                await self._orphan(staged.evidence_id, type(exc).__name__)
            raise

    async def _stage(self, envelope_uuid: uuid.UUID, token: str, request: SignRequest, ctx: RequestContext):
        async with transaction(self.session_factory, ctx) as db:
            envelope, recipient = await self._resolve(db, envelope_uuid, token)

            if recipient.status == RecipientStatus.signed:
                replay = await self._replay(db, envelope, recipient, request)
                if replay is None:
                    raise InvalidState("recipient has already signed")
                return replay

            await self._expire_or_reject(db, envelope)
            recipients = await load_recipients(db, envelope.id)
            if not is_next(recipient, recipients):
                raise OutOfTurn()

            documents = [doc for doc, _ in await load_documents(db, envelope.id)]
            doc_hashes = await self.hasher.hash_documents(documents, ctx)

            values, new_fields = await self._validate_values(db, envelope, recipient, request, documents)

            now = utcnow()
            payload = {
                "envelope_id": envelope.id,
                "envelope_uuid": str(envelope.uuid),
                "recipient_id": recipient.id,
                "recipient_email": recipient.email,
                "intent": SIGNING_INTENT,
                "doc_hashes": [h.to_payload() for h in doc_hashes],
                "timestamp": rfc3339(now),
                "ip": ctx.ip_address,
                "user_agent": ctx.user_agent,
                "nonce": secrets.token_hex(16),
            }
            payload_json = canonical_json(payload)
            payload_bytes = payload_json.encode("utf-8")
            if len(payload_bytes) > self.settings.payload_size_limit:
                raise ValidationError("signing payload exceeds the payload size limit")
            payload_hash = sha256_hex(payload_bytes)

            async with store_errors():
                last_sequence = (
                    await db.execute(
                        select(func.max(SignatureEvidence.sequence)).where(
                            SignatureEvidence.envelope_id == envelope.id,
                            SignatureEvidence.recipient_id == recipient.id,
                        )
                    )
                ).scalar_one_or_none()
            evidence = SignatureEvidence(
                envelope_id=envelope.id,
                recipient_id=recipient.id,
                sequence=(last_sequence or 0) + 1,
                status=EvidenceStatus.staged,
                payload_json=payload_json,
                payload_hash=payload_hash,
                certificate_chain=[],
                created_at=now,
            )
            db.add(evidence)
            await flush(db)

            return StagedSignature(
                envelope_id=envelope.id,
                recipient_id=recipient.id,
                evidence_id=evidence.id,
                token_hash=recipient.access_token_hash,
                payload=payload_bytes,
                payload_hash=payload_hash,
                doc_hashes=doc_hashes,
                values=values,
                new_fields=new_fields,
            )

    async def _validate_values(self, db, envelope, recipient, request: SignRequest, documents) -> tuple[dict, list]:
        fields = await load_fields(db, envelope.id)
        by_uuid = {f.uuid: f for f in fields}

        values: dict[int, str] = {}
        for item in request.field_values:
            target = by_uuid.get(item.field_id)
            if target is None:
                raise ValidationError("unknown field")
            if target.recipient_id != recipient.id:
                raise Forbidden("field is assigned to another recipient")
            values[target.id] = validate_field_value(target.field_type, target.properties, item.value)

        for own in (f for f in fields if f.recipient_id == recipient.id and f.required):
            value = values.get(own.id, own.value if own.value is not None else own.default_value)
            if not is_filled(own.field_type, value):
                raise ValidationError(f"required field {own.name or own.uuid} has no value")

        bound = {doc.uuid: doc for doc in documents}
        new_fields = []
        for item in request.new_fields:
            document = bound.get(item.document_id)
            if document is None:
                raise ValidationError("document is not attached to this envelope")
            if item.page > document.page_count:
                raise ValidationError(f"page {item.page} is outside the document")
            properties = dump_properties(item.type, {})
            new_fields.append(
                {
                    "document_id": document.id,
                    "field_type": item.type,
                    "name": item.name,
                    "page": item.page,
                    "x": item.x,
                    "y": item.y,
                    "width": item.width,
                    "height": item.height,
                    "properties": properties,
                    "value": validate_field_value(item.type, properties, item.value),
                }
            )
        return values, new_fields

    async def _replay(self, db, envelope: Envelope, recipient: Recipient, request: SignRequest) -> Optional[SignResponse]:
        """Stable success for a repeated submission of an already committed signature."""
        async with store_errors():
            evidence = (
                await db.execute(
                    select(SignatureEvidence)
                    .where(
                        SignatureEvidence.envelope_id == envelope.id,
                        SignatureEvidence.recipient_id == recipient.id,
                        SignatureEvidence.status == EvidenceStatus.committed,
                    )
                    .order_by(SignatureEvidence.sequence.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        if evidence is None:
            return None

        fields = await load_fields(db, envelope.id, recipient_id=recipient.id)
        by_uuid = {f.uuid: f for f in fields}
        for item in request.field_values:
            target = by_uuid.get(item.field_id)
            if target is None or not _same_value(target, item.value):
                return None

        documents = {doc.id: doc.uuid for doc, _ in await load_documents(db, envelope.id)}
        for item in request.new_fields:
            matched = any(
                documents.get(f.document_id) == item.document_id
                and f.field_type == item.type
                and f.page == item.page
                and (f.x, f.y, f.width, f.height) == (item.x, item.y, item.width, item.height)
                and _same_value(f, item.value)
                for f in fields
            )
            if not matched:
                return None

        return self._response(envelope, recipient, evidence, replayed=True)

    @staticmethod
    def _response(envelope: Envelope, recipient: Recipient, evidence: SignatureEvidence, replayed: bool = False) -> SignResponse:
        payload = json.loads(evidence.payload_json)
        return SignResponse(
            recipient_id=recipient.uuid,
            recipient_status=recipient.status.value,
            envelope_status=envelope.status.value,
            evidence_id=evidence.uuid,
            sequence=evidence.sequence,
            signed_at=as_utc(recipient.signed_at),
            hashes=[DocHash(document_id=h["document_uuid"], sha256=h["sha256"]) for h in payload["doc_hashes"]],
            replayed=replayed,
        )

    async def _commit(
        self, staged: StagedSignature, result: SignResult, request: SignRequest, ctx: RequestContext
    ) -> SignResponse:
        async with transaction(self.session_factory, ctx) as db:
            envelope = await lock_envelope_row(db, staged.envelope_id)
            recipient = await db.get(Recipient, staged.recipient_id)
            evidence = await db.get(SignatureEvidence, staged.evidence_id)
            if envelope is None or recipient is None or evidence is None:
                raise InvalidState("envelope changed while signing")

            if envelope.status in TERMINAL_STATUSES:
                raise InvalidState(f"envelope is {envelope.status.value}")
            if recipient.access_token_hash != staged.token_hash:
                raise Forbidden(ACCESS_LINK_INVALID)
            if recipient.status == RecipientStatus.signed:
                replay = await self._replay(db, envelope, recipient, request)
                if replay is None:
                    raise InvalidState("recipient has already signed")
                evidence.status = EvidenceStatus.orphan_unsigned
                evidence.failure_reason = "superseded"
                return replay
            recipients = await load_recipients(db, envelope.id)
            if not is_next(recipient, recipients):
                raise OutOfTurn()

            now = utcnow()
            evidence.status = EvidenceStatus.committed
            evidence.provider = result.provider_id
            evidence.signature = result.signature
            evidence.tsa_token = result.tsa_token
            evidence.certificate_chain = list(result.certificate_chain)
            evidence.committed_at = now

            for own in await load_fields(db, envelope.id, recipient_id=recipient.id):
                if own.id in staged.values:
                    own.value = staged.values[own.id]
                elif own.value is None and own.default_value is not None:
                    own.value = own.default_value
                if own.value is not None:
                    own.signed_at = now
            for spec in staged.new_fields:
                db.add(Field(envelope_id=envelope.id, recipient_id=recipient.id, required=False, signed_at=now, **spec))

            recipient.status = RecipientStatus.signed
            recipient.signed_at = now
            recipient.signed_ip = ctx.ip_address
            recipient.signed_user_agent = (ctx.user_agent or "")[:500] or None
            if envelope.status == EnvelopeStatus.sent:
                transition(envelope, EnvelopeStatus.in_progress)
            await flush(db)

            await append_event(
                db,
                envelope.id,
                AuditEventType.recipient_signed,
                {
                    "recipient_id": str(recipient.uuid),
                    "email": recipient.email,
                    "evidence_id": str(evidence.uuid),
                    "sequence": evidence.sequence,
                    "doc_hashes": [{"document_id": h.document_uuid, "sha256": h.sha256} for h in staged.doc_hashes],
                },
                actor=Actor.recipient(recipient.uuid),
                ctx=ctx,
                created_at=now,
            )
            defer_task(
                db,
                "run_workflows",
                envelope.id,
                WorkflowTrigger.on_sign.value,
                {"recipient_email": recipient.email, "routing_order": recipient.routing_order, "sequence": evidence.sequence},
            )

            if all_required_signed(recipients):
                await complete_envelope(db, envelope, ctx=ctx)
            else:
                self._activate_next(db, envelope, recipients, now)
                await flush(db)

            logger.info("Recipient %s signed envelope %s (evidence %s)", recipient.uuid, envelope.uuid, evidence.uuid)
            return self._response(envelope, recipient, evidence)

    def _activate_next(self, db, envelope: Envelope, recipients: list[Recipient], now: datetime) -> None:
        for upcoming in to_activate(recipients):
            upcoming.status = RecipientStatus.sent
            upcoming.sent_at = now
            notify(db, "your_turn", envelope, upcoming)

    async def _orphan(self, evidence_id: int, reason: str) -> None:
        try:
            async with transaction(self.session_factory) as db:
                evidence = await db.get(SignatureEvidence, evidence_id)
                if evidence is not None and evidence.status == EvidenceStatus.staged:
                    evidence.status = EvidenceStatus.orphan_unsigned
                    evidence.failure_reason = reason[:100]
            logger.warning("Signature evidence %s left unsigned: %s", evidence_id, reason)
        except Exception:
            logger.exception("Could not mark signature evidence %s as orphaned", evidence_id)


def _same_value(target: Field, submitted) -> bool:
    try:
        return validate_field_value(target.field_type, target.properties, submitted) == target.value
    except ValidationError:
        return False
