import asyncio
import hashlib
import logging
import re
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from countersign.common.context import RequestContext
from countersign.common.errors import ProviderReject, ProviderTimeout, ProviderUnavailable
from countersign.signing.providers.base import SigningProvider, SignResult

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "RSASSA_PKCS1_V1_5_SHA_256"

RETRYABLE_KMS_CODES = frozenset(
    {
        "ThrottlingException",
        "KMSInternalException",
        "DependencyTimeoutException",
        "KeyUnavailableException",
        "ServiceUnavailableException",
    }
)

_PEM_BLOCK = re.compile(r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL)


def split_pem_chain(pem: str) -> list[str]:
    return [block + "\n" for block in _PEM_BLOCK.findall(pem or "")]


class KmsProvider(SigningProvider):
    """AWS KMS asymmetric key; the certificate chain for the key is configured alongside it."""

    provider_id = "kms"

    def __init__(
        self,
        key_id: str,
        region: str,
        certificate_chain_pem: str = "",
        timeout_seconds: float = 10.0,
        client=None,
    ):
        super().__init__(timeout_seconds)
        self.key_id = key_id
        self.certificate_chain = split_pem_chain(certificate_chain_pem)
        self._client = client or boto3.client(
            "kms",
            region_name=region,
            config=Config(
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": 1},
                max_pool_connections=10,
            ),
        )

    def _sign_digest(self, digest: bytes) -> bytes:
        response = self._client.sign(
            KeyId=self.key_id,
            Message=digest,
            MessageType="DIGEST",
            SigningAlgorithm=SIGNING_ALGORITHM,
        )
        return response["Signature"]

    async def sign(
        self, payload: bytes, ctx: Optional[RequestContext] = None, idempotency_key: Optional[str] = None
    ) -> SignResult:
        timeout = self.call_timeout(ctx)
        digest = hashlib.sha256(payload).digest()
        try:
            signature = await asyncio.wait_for(asyncio.to_thread(self._sign_digest, digest), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(key=idempotency_key) from exc
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in RETRYABLE_KMS_CODES:
                logger.warning("KMS sign unavailable: %s", code)
                raise ProviderUnavailable(code=code) from exc
            logger.error("KMS rejected sign request: %s", code)
            raise ProviderReject(code=code) from exc
        except ReadTimeoutError as exc:
            raise ProviderTimeout(key=idempotency_key) from exc
        except (EndpointConnectionError, ConnectTimeoutError) as exc:
            raise ProviderUnavailable() from exc
        except BotoCoreError as exc:
            logger.error("KMS client error: %s", type(exc).__name__)
            raise ProviderUnavailable() from exc

        return SignResult(provider_id=self.provider_id, signature=signature, certificate_chain=list(self.certificate_chain))
