from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from countersign.common.context import RequestContext
from countersign.common.errors import ProviderTimeout


@dataclass(frozen=True)
class SignResult:
    provider_id: str
    signature: bytes
    tsa_token: Optional[bytes] = None
    certificate_chain: list[str] = field(default_factory=list)  # PEM, leaf first


class SigningProvider(ABC):
    """Detached signature (plus optional timestamp token) over a canonical payload.

    Two calls with the same payload may return different signatures, but both
    must verify under the returned chain. Implementations are shared across
    requests and must be safe to call concurrently.
    """

    provider_id: str = "abstract"

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    def call_timeout(self, ctx: Optional[RequestContext]) -> float:
        """Provider budget for one call, clipped to the request deadline."""
        if ctx is None:
            return self.timeout_seconds
        remaining = ctx.remaining()
        if remaining is None:
            return self.timeout_seconds
        if remaining <= 0:
            raise ProviderTimeout("request deadline exceeded before signing")
        return min(self.timeout_seconds, remaining)

    @abstractmethod
    async def sign(
        self, payload: bytes, ctx: Optional[RequestContext] = None, idempotency_key: Optional[str] = None
    ) -> SignResult:
        ...

    async def aclose(self) -> None:
        return None
