"""
Envelope integrity report.

Re-hashes every bound document and compares the result with the hash taken
at upload and with the hashes recorded in each committed signature evidence.
Evidence signatures are verified against the certificate chain stored with
them.
"""

import json
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.audit.chain import verify_chain
from countersign.common.base_models import as_utc
from countersign.common.context import RequestContext
from countersign.common.errors import IntegrityError
from countersign.documents.hasher import DocumentHasher
from countersign.envelopes.models import Envelope, Recipient
from countersign.envelopes.queries import load_documents
from countersign.envelopes.schemas import ChainVerifyResponse, DocumentIntegrity, EvidenceCheck, IntegrityReport
from countersign.signing.models import EvidenceStatus, SignatureEvidence
from countersign.signing.schemas import EvidenceResponse
from countersign.signing.verify import verify_signature
from countersign.store.transaction import store_errors

logger = logging.getLogger(__name__)


async def list_evidences(
    db: AsyncSession, envelope: Envelope, status: Optional[EvidenceStatus] = None
) -> list[SignatureEvidence]:
    query = select(SignatureEvidence).where(SignatureEvidence.envelope_id == envelope.id)
    if status is not None:
        query = query.where(SignatureEvidence.status == status)
    async with store_errors():
        result = await db.execute(query.order_by(SignatureEvidence.id))
    return list(result.scalars().all())


async def evidence_responses(db: AsyncSession, envelope: Envelope) -> list[EvidenceResponse]:
    evidences = await list_evidences(db, envelope)
    async with store_errors():
        result = await db.execute(select(Recipient.id, Recipient.uuid).where(Recipient.envelope_id == envelope.id))
    recipient_uuids = dict(result.all())
    return [
        EvidenceResponse(
            id=ev.uuid,
            recipient_id=recipient_uuids[ev.recipient_id],
            sequence=ev.sequence,
            status=ev.status.value,
            provider=ev.provider,
            payload=json.loads(ev.payload_json),
            payload_hash=ev.payload_hash,
            tsa_present=ev.tsa_token is not None,
            failure_reason=ev.failure_reason,
            created_at=as_utc(ev.created_at),
            committed_at=as_utc(ev.committed_at),
        )
        for ev in evidences
    ]


async def check_envelope_integrity(
    db: AsyncSession, envelope: Envelope, hasher: DocumentHasher, ctx: Optional[RequestContext] = None
) -> IntegrityReport:
    chain = await verify_chain(db, envelope.id)
    documents = [doc for doc, _ in await load_documents(db, envelope.id)]
    evidences = await list_evidences(db, envelope, status=EvidenceStatus.committed)

    async with store_errors():
        result = await db.execute(select(Recipient.id, Recipient.uuid).where(Recipient.envelope_id == envelope.id))
    recipient_uuids = dict(result.all())

    recorded: dict[str, list[str]] = {}
    checks = []
    for evidence in evidences:
        payload = json.loads(evidence.payload_json)
        for entry in payload.get("doc_hashes", []):
            recorded.setdefault(entry["document_uuid"], []).append(entry["sha256"])
        checks.append(
            EvidenceCheck(
                evidence_id=evidence.uuid,
                recipient_id=recipient_uuids[evidence.recipient_id],
                provider=evidence.provider,
                signature_valid=verify_signature(
                    evidence.payload_json.encode("utf-8"), evidence.signature, evidence.certificate_chain or []
                ),
            )
        )

    reports = []
    divergent = []
    tampered = []
    for doc in documents:
        try:
            current = await hasher.hash_key(doc.storage_key, ctx)
        except IntegrityError:
            current = None
        evidence_hashes = recorded.get(str(doc.uuid), [])
        agree = len(set(evidence_hashes)) <= 1
        matches = current == doc.sha256 and all(h == doc.sha256 for h in evidence_hashes)
        if not agree:
            divergent.append(doc.uuid)
        if not matches:
            tampered.append(doc.uuid)
        reports.append(
            DocumentIntegrity(
                document_id=doc.uuid,
                filename=doc.filename,
                upload_sha256=doc.sha256,
                current_sha256=current,
                evidence_sha256=evidence_hashes,
                matches_upload=matches,
                evidences_agree=agree,
            )
        )

    ok = chain.ok and not divergent and not tampered and all(c.signature_valid for c in checks)
    if not ok:
        logger.error(
            "Integrity check failed for envelope %s (chain ok=%s, divergent=%d, tampered=%d)",
            envelope.uuid,
            chain.ok,
            len(divergent),
            len(tampered),
        )
    return IntegrityReport(
        ok=ok,
        chain=ChainVerifyResponse(**chain.to_dict()),
        documents=reports,
        evidences=checks,
        divergent_documents=divergent,
        tampered_documents=tampered,
    )
