import uuid
from abc import ABC, abstractmethod
from typing import BinaryIO


class BlobStore(ABC):
    """Opaque-key byte storage.

    ``put`` is atomic: either the complete contents become visible under the
    key or nothing does. ``delete`` is idempotent. Implementations must be
    safe to share across concurrent requests.
    """

    @abstractmethod
    def put(self, key: str, reader: BinaryIO, length: int = -1, content_type: str = "application/octet-stream") -> None:
        ...

    @abstractmethod
    def get(self, key: str) -> BinaryIO:
        """Return a readable stream; the caller closes it."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...


class BlobNotFound(KeyError):
    pass


def document_key(document_uuid: uuid.UUID) -> str:
    return f"documents/{document_uuid}"


def certificate_key() -> str:
    return f"certificates/{uuid.uuid4()}.pdf"
