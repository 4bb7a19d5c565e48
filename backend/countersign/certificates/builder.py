"""
Certificate of completion data.

The certificate is a pure function of the stored envelope: documents with
their upload-time hashes, recipients with their final field values, the full
audit chain, evidence summaries and constant compliance strings. ``generatedAt``
is pinned to the envelope's completion time so that two builds over the same
rows are identical.
"""

import json
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from countersign.audit.chain import list_events
from countersign.common.base_models import as_utc, rfc3339
from countersign.common.canonical import canonical_json
from countersign.envelopes.models import COMPLETING_ROLES, Envelope
from countersign.envelopes.progress import field_completed
from countersign.envelopes.queries import load_documents, load_fields, load_recipients
from countersign.signing.models import EvidenceStatus, SignatureEvidence
from countersign.store.transaction import store_errors


def compliance_block(settings) -> dict:
    return {
        "electronicSignatureAct": settings.compliance_signature_act,
        "timeStampAuthority": settings.compliance_timestamp_authority,
        "encryptionStandard": settings.compliance_encryption_standard,
        "documentIntegrity": settings.compliance_document_integrity,
    }


async def build_certificate_data(
    db: AsyncSession,
    envelope: Envelope,
    certificate_id: uuid.UUID,
    settings,
    generated_at: Optional[datetime] = None,
) -> dict:
    documents = await load_documents(db, envelope.id)
    recipients = await load_recipients(db, envelope.id)
    fields = await load_fields(db, envelope.id)
    events = await list_events(db, envelope.id)
    async with store_errors():
        result = await db.execute(
            select(SignatureEvidence)
            .where(
                SignatureEvidence.envelope_id == envelope.id,
                SignatureEvidence.status == EvidenceStatus.committed,
            )
            .order_by(SignatureEvidence.id)
        )
    evidences = list(result.scalars().all())

    recipients_by_id = {r.id: r for r in recipients}
    document_uuids = {doc.id: doc.uuid for doc, _ in documents}
    required = [f for f in fields if f.required]
    generated_at = generated_at or envelope.completed_at

    data = {
        "certificateVersion": settings.certificate_version,
        "certificateId": str(certificate_id),
        "envelope": {
            "id": str(envelope.uuid),
            "title": envelope.title,
            "subject": envelope.subject,
            "status": envelope.status.value,
            "priority": envelope.priority.value,
            "createdAt": rfc3339(as_utc(envelope.created_at)),
            "sentAt": rfc3339(as_utc(envelope.sent_at)),
            "completedAt": rfc3339(as_utc(envelope.completed_at)),
        },
        "sender": {
            "id": str(envelope.sender_id),
            "name": envelope.sender_name or envelope.sender_email,
            "email": envelope.sender_email,
        },
        "documents": [
            {
                "id": str(doc.uuid),
                "name": doc.filename,
                "order": order,
                "pages": doc.page_count,
                "fileSize": doc.size_bytes,
                "sha256": doc.sha256,
            }
            for doc, order in documents
        ],
        "recipients": [
            {
                "id": str(r.uuid),
                "email": r.email,
                "name": r.name,
                "role": r.role.value,
                "routingOrder": r.routing_order,
                "status": r.status.value,
                "signedAt": rfc3339(as_utc(r.signed_at)),
                "viewedAt": rfc3339(as_utc(r.viewed_at)),
                "signedIp": r.signed_ip,
                "fields": [
                    {
                        "id": str(f.uuid),
                        "documentId": str(document_uuids.get(f.document_id)),
                        "type": f.field_type.value,
                        "page": f.page,
                        "bounds": {"x": f.x, "y": f.y, "width": f.width, "height": f.height},
                        "required": f.required,
                        "value": f.value,
                        "signedAt": rfc3339(as_utc(f.signed_at)),
                    }
                    for f in sorted(fields, key=lambda f: (f.page, f.y, f.x, f.id))
                    if f.recipient_id == r.id
                ],
            }
            for r in recipients
        ],
        "auditTrail": [
            {
                "sequence": e.sequence,
                "eventId": str(e.uuid),
                "type": e.event_type.value,
                "category": e.category,
                "actorType": e.actor_type.value,
                "actorId": e.actor_id,
                "ipAddress": e.ip_address,
                "metadata": e.metadata_json or {},
                "createdAt": rfc3339(as_utc(e.created_at)),
                "prevEventHash": e.prev_event_hash,
                "eventHash": e.event_hash,
            }
            for e in events
        ],
        "security": {
            "generatedAt": rfc3339(as_utc(generated_at)),
            "certificateVersion": settings.certificate_version,
            "integrity": {
                "totalRequired": len(required),
                "totalSigned": sum(1 for f in required if field_completed(f)),
                "completingRecipients": sum(1 for r in recipients if r.role in COMPLETING_ROLES),
                "documentCount": len(documents),
                "recipientCount": len(recipients),
            },
            "evidences": [
                {
                    "id": str(ev.uuid),
                    "provider": ev.provider,
                    "recipient": {
                        "id": str(recipients_by_id[ev.recipient_id].uuid),
                        "email": recipients_by_id[ev.recipient_id].email,
                        "name": recipients_by_id[ev.recipient_id].name,
                    },
                    "sequence": ev.sequence,
                    "payloadHash": ev.payload_hash,
                    "tsaPresent": ev.tsa_token is not None,
                    "createdAt": rfc3339(as_utc(ev.created_at)),
                }
                for ev in evidences
            ],
        },
        "compliance": compliance_block(settings),
    }
    # Normalise through canonical JSON so the stored form equals the rendered one.
    return json.loads(canonical_json(data))
