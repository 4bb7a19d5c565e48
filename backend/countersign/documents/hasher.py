"""
Streaming SHA-256 over documents held in the blob store.

Blob reads are synchronous and run in a worker thread; each document is hashed
in a single pass over fixed-size chunks. With ``verify_reads`` enabled the
blob is read a second time and a differing digest is a fatal IntegrityError.
"""

import asyncio
import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

from countersign.blobs.base import BlobNotFound, BlobStore
from countersign.common.context import RequestContext
from countersign.common.errors import IntegrityError
from countersign.documents.models import Document

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class DocumentHash:
    document_id: int
    document_uuid: str
    sha256: str

    def to_payload(self) -> dict:
        return {"document_id": self.document_id, "document_uuid": self.document_uuid, "sha256": self.sha256}


class DocumentHasher:
    def __init__(self, blobs: BlobStore, chunk_size: int = DEFAULT_CHUNK_SIZE, verify_reads: bool = False):
        self.blobs = blobs
        self.chunk_size = chunk_size
        self.verify_reads = verify_reads

    @classmethod
    def from_settings(cls, blobs: BlobStore, settings) -> "DocumentHasher":
        return cls(blobs, chunk_size=settings.hasher_chunk_size, verify_reads=settings.hasher_verify_reads)

    def digest_key(self, key: str) -> str:
        digest = hashlib.sha256()
        stream = self.blobs.get(key)
        try:
            while True:
                chunk = stream.read(self.chunk_size)
                if not chunk:
                    break
                digest.update(chunk)
        finally:
            stream.close()
        return digest.hexdigest()

    def _hash_key_checked(self, key: str) -> str:
        first = self.digest_key(key)
        if self.verify_reads:
            second = self.digest_key(key)
            if first != second:
                logger.error("Hash mismatch between two reads of blob %s: %s != %s", key, first, second)
                raise IntegrityError(key=key)
        return first

    async def hash_key(self, key: str, ctx: Optional[RequestContext] = None) -> str:
        if ctx is not None:
            ctx.ensure_active()
        try:
            return await asyncio.to_thread(self._hash_key_checked, key)
        except BlobNotFound as exc:
            logger.error("Blob %s missing for a bound document", key)
            raise IntegrityError(key=key) from exc

    async def hash_documents(
        self, documents: Iterable[Document], ctx: Optional[RequestContext] = None
    ) -> list[DocumentHash]:
        """Hashes sorted by document id; a key shared by two rows is read once."""
        by_key: dict[str, str] = {}
        hashes = []
        for doc in sorted(documents, key=lambda d: d.id):
            if doc.storage_key not in by_key:
                by_key[doc.storage_key] = await self.hash_key(doc.storage_key, ctx)
            hashes.append(DocumentHash(document_id=doc.id, document_uuid=str(doc.uuid), sha256=by_key[doc.storage_key]))
        return hashes
