"""
Shared test fixtures for the Countersign backend test suite.

Sets up an async SQLite in-memory database per test, a throwaway local blob
store and a software signing key, overrides the FastAPI dependencies, and
provides a sender-authenticated HTTP client plus an ``api`` helper that
drives envelopes through the public routes.
"""

import os
import tempfile
import uuid
from io import BytesIO

import factory
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# ---- Environment overrides MUST come before any app imports ----
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["IDENTITY_SECRET_KEY"] = "test-identity-secret-for-unit-tests"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["ENVIRONMENT"] = "test"
os.environ["BACKGROUND_TASKS_ENABLED"] = "false"
os.environ["SIGNING_PROVIDER"] = "software-dev"
os.environ["TSA_MODE"] = "internal_dev"
os.environ["BLOB_BACKEND"] = "local-fs"
os.environ["BLOB_LOCAL_ROOT"] = tempfile.mkdtemp(prefix="countersign-test-blobs-")

from countersign.blobs.local import LocalBlobStore  # noqa: E402
from countersign.config import settings  # noqa: E402
from countersign.database import Base, get_db, get_session_factory  # noqa: E402
from countersign.dependencies import get_blob_store, get_signing_controller, get_signing_provider  # noqa: E402
from countersign.main import app  # noqa: E402
from countersign.signing.controller import SigningController  # noqa: E402
from countersign.store.transaction import store_errors  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite://"


# SQLite does not enforce FK constraints by default, so enable them.
def _enable_sqlite_fk(dbapi_conn, _connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def _no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Database lifecycle
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture(autouse=True)
async def session_factory() -> async_sessionmaker[AsyncSession]:
    """Fresh in-memory database per test, wired into the app's dependencies."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    event.listen(engine.sync_engine, "connect", _enable_sqlite_fk)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory_ = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db():
        async with store_errors():
            async with factory_() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: factory_
    yield factory_
    app.dependency_overrides.clear()
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    """Provide a DB session for direct service-layer tests."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Blob store and signing
# ---------------------------------------------------------------------------
@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    store = LocalBlobStore(str(tmp_path / "blobs"))
    app.dependency_overrides[get_blob_store] = lambda: store
    return store


@pytest.fixture
def signing_provider():
    return get_signing_provider()


@pytest.fixture(autouse=True)
def signing_controller(session_factory, blob_store, signing_provider) -> SigningController:
    controller = SigningController(session_factory, blob_store, signing_provider, settings=settings, sleep=_no_sleep)
    app.dependency_overrides[get_signing_controller] = lambda: controller
    return controller


# ---------------------------------------------------------------------------
# HTTP client fixtures
# ---------------------------------------------------------------------------
def _sender_token(sender_id: uuid.UUID, email: str, name: str = None) -> str:
    claims = {"sub": str(sender_id), "type": "access", "email": email}
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.identity_secret_key, algorithm=settings.identity_jwt_algorithm)


def _auth_header(sender: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {_sender_token(sender['id'], sender['email'], sender.get('name'))}"}


@pytest.fixture
def sender() -> dict:
    return {"id": uuid.uuid4(), "email": "sam@countersign-test.com", "name": "Sam Sender"}


@pytest.fixture
def other_sender() -> dict:
    return {"id": uuid.uuid4(), "email": "olga@countersign-test.com", "name": "Olga Other"}


@pytest_asyncio.fixture
async def client() -> AsyncClient:
    """Unauthenticated httpx async client wired to the FastAPI app (recipients use this)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def sender_client(sender: dict) -> AsyncClient:
    """AsyncClient authenticated as the envelope owner."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.headers.update(_auth_header(sender))
        yield ac


@pytest_asyncio.fixture
async def other_sender_client(other_sender: dict) -> AsyncClient:
    """AsyncClient authenticated as a sender who owns nothing in the test."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.headers.update(_auth_header(other_sender))
        yield ac


# ---------------------------------------------------------------------------
# PDF fixtures
# ---------------------------------------------------------------------------
def make_pdf(pages: int = 1, text: str = "Countersign test document") -> bytes:
    buf = BytesIO()
    pdf = canvas.Canvas(buf, pagesize=A4, invariant=1)
    for number in range(pages):
        pdf.drawString(72, 760, f"{text} - page {number + 1}")
        pdf.showPage()
    pdf.save()
    return buf.getvalue()


@pytest.fixture
def pdf_factory():
    return make_pdf


@pytest.fixture
def pdf_bytes() -> bytes:
    return make_pdf()


# ---------------------------------------------------------------------------
# Factory Boy factories
# ---------------------------------------------------------------------------
class EnvelopeFactory(factory.Factory):
    class Meta:
        model = dict

    title = factory.Sequence(lambda n: f"Envelope {n}")
    subject = "Please sign"
    message = factory.Faker("sentence")


class RecipientFactory(factory.Factory):
    class Meta:
        model = dict

    email = factory.LazyFunction(lambda: f"recipient-{uuid.uuid4().hex[:8]}@example.com")
    name = factory.Faker("name")
    role = "signer"
    routing_order = 1


class SignatureFieldFactory(factory.Factory):
    class Meta:
        model = dict

    type = "signature"
    page = 1
    x = 0.2
    y = 0.8
    width = 0.3
    height = 0.08


# ---------------------------------------------------------------------------
# API helper
# ---------------------------------------------------------------------------
class EnvelopeApi:
    """Thin wrapper over the sender routes that asserts each step succeeded."""

    def __init__(self, http: AsyncClient, recipient_http: AsyncClient):
        self.http = http
        self.recipient_http = recipient_http

    async def upload(self, content: bytes = None, filename: str = "contract.pdf") -> dict:
        content = content if content is not None else make_pdf()
        resp = await self.http.post("/api/documents", files={"file": (filename, content, "application/pdf")})
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def create_envelope(self, **overrides) -> dict:
        resp = await self.http.post("/api/envelopes", json=EnvelopeFactory(**overrides))
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def attach(self, envelope_id: str, document_id: str, order: int = None) -> dict:
        body = {"document_id": document_id}
        if order is not None:
            body["order"] = order
        resp = await self.http.post(f"/api/envelopes/{envelope_id}/documents", json=body)
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def add_recipient(self, envelope_id: str, **overrides) -> dict:
        resp = await self.http.post(f"/api/envelopes/{envelope_id}/recipients", json=RecipientFactory(**overrides))
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def add_field(self, envelope_id: str, document_id: str, recipient_id: str, **overrides) -> dict:
        body = SignatureFieldFactory(**overrides)
        body.update(document_id=document_id, recipient_id=recipient_id)
        resp = await self.http.post(f"/api/envelopes/{envelope_id}/fields", json=body)
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def send(self, envelope_id: str) -> dict:
        resp = await self.http.post(f"/api/envelopes/{envelope_id}/send")
        assert resp.status_code == 200, resp.text
        return resp.json()

    async def prepare(self, recipients: list[tuple[str, int]], title: str = "Test-1", content: bytes = None) -> dict:
        """Draft with one document and one signature field per (email, routing order)."""
        envelope = await self.create_envelope(title=title)
        document = await self.upload(content)
        await self.attach(envelope["id"], document["id"])
        added, fields = {}, {}
        for email, order in recipients:
            recipient = await self.add_recipient(envelope["id"], email=email, routing_order=order)
            added[email] = recipient
            fields[email] = await self.add_field(envelope["id"], document["id"], recipient["id"])
        return {"envelope": envelope, "document": document, "recipients": added, "fields": fields}

    async def prepare_and_send(self, recipients: list[tuple[str, int]], **kwargs) -> dict:
        draft = await self.prepare(recipients, **kwargs)
        sent = await self.send(draft["envelope"]["id"])
        draft["tokens"] = {t["email"]: t["access_token"] for t in sent["tokens"]}
        draft["sent"] = sent
        return draft

    async def sign(self, envelope_id: str, token: str, field_values: list[dict] = None, new_fields: list[dict] = None):
        body = {"field_values": field_values or [], "new_fields": new_fields or []}
        return await self.recipient_http.post(f"/api/sign/{envelope_id}/{token}", json=body)

    async def sign_field(self, draft: dict, email: str, value: str = "A.S."):
        return await self.sign(
            draft["envelope"]["id"],
            draft["tokens"][email],
            [{"field_id": draft["fields"][email]["id"], "value": value}],
        )

    async def audit_types(self, envelope_id: str) -> list[str]:
        resp = await self.http.get(f"/api/envelopes/{envelope_id}/audit")
        assert resp.status_code == 200, resp.text
        return [e["event_type"] for e in resp.json()]


@pytest_asyncio.fixture
async def api(sender_client: AsyncClient, client: AsyncClient) -> EnvelopeApi:
    return EnvelopeApi(sender_client, client)
