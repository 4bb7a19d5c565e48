"""
Tests for the blob store, the streaming document hasher and post-commit
dispatch of deferred work.
"""

import hashlib
from io import BytesIO

import pytest
from sqlalchemy import text

from countersign.blobs.base import BlobNotFound, document_key
from countersign.blobs.local import LocalBlobStore
from countersign.common.errors import IntegrityError
from countersign.config import settings
from countersign.documents.hasher import DocumentHasher
from countersign.documents.models import Document
from countersign.tasks import dispatch
from countersign.tasks.dispatch import defer_task, on_commit, pending_tasks


class ExplodingReader:
    """Yields some bytes and then fails, like a dropped upload."""

    def __init__(self, head: bytes):
        self.head = head
        self.sent = False

    def read(self, _size=-1):
        if not self.sent:
            self.sent = True
            return self.head
        raise ConnectionError("client went away")


# ---------------------------------------------------------------------------
# Local blob store
# ---------------------------------------------------------------------------

class TestLocalBlobStore:
    def test_put_get_exists_delete(self, blob_store: LocalBlobStore):
        blob_store.put("documents/a", BytesIO(b"hello"))
        assert blob_store.exists("documents/a")
        stream = blob_store.get("documents/a")
        try:
            assert stream.read() == b"hello"
        finally:
            stream.close()
        blob_store.delete("documents/a")
        assert not blob_store.exists("documents/a")

    def test_delete_is_idempotent(self, blob_store: LocalBlobStore):
        blob_store.delete("documents/never-written")
        blob_store.delete("documents/never-written")

    def test_get_missing_raises_blob_not_found(self, blob_store: LocalBlobStore):
        with pytest.raises(BlobNotFound):
            blob_store.get("documents/missing")

    def test_failed_put_leaves_nothing_behind(self, blob_store: LocalBlobStore):
        with pytest.raises(ConnectionError):
            blob_store.put("documents/partial", ExplodingReader(b"%PDF-1.4 half"))
        assert not blob_store.exists("documents/partial")
        assert list((blob_store.root / "documents").iterdir()) == []

    def test_failed_put_keeps_previous_contents(self, blob_store: LocalBlobStore):
        blob_store.put("documents/b", BytesIO(b"original"))
        with pytest.raises(ConnectionError):
            blob_store.put("documents/b", ExplodingReader(b"replacement"))
        assert blob_store.get("documents/b").read() == b"original"

    def test_keys_cannot_escape_the_root(self, blob_store: LocalBlobStore):
        with pytest.raises(ValueError):
            blob_store.put("../outside", BytesIO(b"x"))


# ---------------------------------------------------------------------------
# Document hasher
# ---------------------------------------------------------------------------

def _document(doc_id: int, key: str) -> Document:
    return Document(id=doc_id, storage_key=key)


class TestDocumentHasher:
    async def test_streaming_hash_matches_sha256(self, blob_store: LocalBlobStore):
        content = b"x" * 200_000
        blob_store.put("documents/big", BytesIO(content))
        hasher = DocumentHasher(blob_store, chunk_size=4096)
        assert await hasher.hash_key("documents/big") == hashlib.sha256(content).hexdigest()

    async def test_missing_blob_is_an_integrity_error(self, blob_store: LocalBlobStore):
        with pytest.raises(IntegrityError):
            await DocumentHasher(blob_store).hash_key("documents/gone")

    async def test_hashes_sorted_by_document_id(self, blob_store: LocalBlobStore):
        blob_store.put("documents/one", BytesIO(b"one"))
        blob_store.put("documents/two", BytesIO(b"two"))
        docs = [_document(9, "documents/two"), _document(3, "documents/one")]
        hashes = await DocumentHasher(blob_store).hash_documents(docs)
        assert [h.document_id for h in hashes] == [3, 9]
        assert hashes[0].sha256 == hashlib.sha256(b"one").hexdigest()

    async def test_shared_key_read_once(self, blob_store: LocalBlobStore):
        blob_store.put("documents/shared", BytesIO(b"same"))
        hasher = DocumentHasher(blob_store)
        reads = []
        original = hasher.digest_key

        def counting(key):
            reads.append(key)
            return original(key)

        hasher.digest_key = counting
        hashes = await hasher.hash_documents([_document(1, "documents/shared"), _document(2, "documents/shared")])
        assert len(reads) == 1
        assert hashes[0].sha256 == hashes[1].sha256

    async def test_verify_reads_detects_changing_content(self, blob_store: LocalBlobStore):
        blob_store.put("documents/flaky", BytesIO(b"first"))
        hasher = DocumentHasher(blob_store, verify_reads=True)
        original = hasher.digest_key
        calls = []

        def swapping(key):
            calls.append(key)
            if len(calls) == 2:
                blob_store.put(key, BytesIO(b"second"))
            return original(key)

        hasher.digest_key = swapping
        with pytest.raises(IntegrityError):
            await hasher.hash_key("documents/flaky")

    def test_document_keys_are_opaque(self):
        import uuid

        key = document_key(uuid.UUID(int=1))
        assert key == "documents/00000000-0000-0000-0000-000000000001"


# ---------------------------------------------------------------------------
# Post-commit dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    async def test_callbacks_run_only_after_commit(self, db_session):
        await db_session.execute(text("SELECT 1"))
        ran = []
        on_commit(db_session, lambda: ran.append("done"))
        assert ran == []
        await db_session.commit()
        assert ran == ["done"]

    async def test_rollback_discards_deferred_work(self, db_session, monkeypatch):
        await db_session.execute(text("SELECT 1"))
        enqueued = []
        monkeypatch.setattr(settings, "background_tasks_enabled", True)
        monkeypatch.setattr(dispatch, "enqueue", lambda name, *args: enqueued.append((name, args)))
        ran = []
        defer_task(db_session, "build_certificate", 1)
        on_commit(db_session, lambda: ran.append("done"))
        assert pending_tasks(db_session) == [("build_certificate", (1,))]
        await db_session.rollback()
        await db_session.commit()
        assert ran == []
        assert enqueued == []

    async def test_tasks_enqueued_on_commit_when_enabled(self, db_session, monkeypatch):
        await db_session.execute(text("SELECT 1"))
        enqueued = []
        monkeypatch.setattr(settings, "background_tasks_enabled", True)
        monkeypatch.setattr(dispatch, "enqueue", lambda name, *args: enqueued.append((name, args)))
        defer_task(db_session, "run_workflows", 7, "on_send", {"recipient_count": 2})
        await db_session.commit()
        assert enqueued == [("run_workflows", (7, "on_send", {"recipient_count": 2}))]

    async def test_tasks_skipped_when_disabled(self, db_session, monkeypatch):
        await db_session.execute(text("SELECT 1"))
        enqueued = []
        monkeypatch.setattr(dispatch, "enqueue", lambda name, *args: enqueued.append((name, args)))
        defer_task(db_session, "build_certificate", 1)
        await db_session.commit()
        assert enqueued == []
        assert pending_tasks(db_session) == []
