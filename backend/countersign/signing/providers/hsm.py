import base64
import hashlib
import logging
from typing import Optional

import httpx

from countersign.common.context import RequestContext
from countersign.common.errors import ProviderReject, ProviderTimeout, ProviderUnavailable
from countersign.signing.providers.base import SigningProvider, SignResult

logger = logging.getLogger(__name__)


class HsmProvider(SigningProvider):
    """Network HSM gateway reached over HTTPS.

    The gateway signs a SHA-256 digest with the configured key and may attach
    an RFC 3161 token. The idempotency key lets the gateway collapse retries
    of the same payload into one operation.
    """

    provider_id = "hsm"

    def __init__(
        self,
        base_url: str,
        key_id: str,
        api_token: str = "",
        max_connections: int = 10,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout_seconds)
        self.key_id = key_id
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections),
            transport=transport,
        )

    async def sign(
        self, payload: bytes, ctx: Optional[RequestContext] = None, idempotency_key: Optional[str] = None
    ) -> SignResult:
        timeout = self.call_timeout(ctx)
        body = {
            "digest": base64.b64encode(hashlib.sha256(payload).digest()).decode("ascii"),
            "digest_algorithm": "sha256",
            "timestamp": True,
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        try:
            resp = await self._client.post(f"/v1/keys/{self.key_id}/sign", json=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(key=idempotency_key) from exc
        except httpx.TransportError as exc:
            logger.warning("HSM gateway unreachable: %s", type(exc).__name__)
            raise ProviderUnavailable() from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            logger.warning("HSM gateway returned %d", resp.status_code)
            raise ProviderUnavailable(status=resp.status_code)
        if resp.status_code >= 400:
            logger.error("HSM gateway rejected sign request with %d", resp.status_code)
            raise ProviderReject(status=resp.status_code)

        try:
            data = resp.json()
            signature = base64.b64decode(data["signature"])
            tsa_token = base64.b64decode(data["tsa_token"]) if data.get("tsa_token") else None
            chain = list(data.get("certificate_chain") or [])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderReject("malformed response from signing provider") from exc

        return SignResult(
            provider_id=data.get("provider_id") or self.provider_id,
            signature=signature,
            tsa_token=tsa_token,
            certificate_chain=chain,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
