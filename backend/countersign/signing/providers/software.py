"""
Software-key signing provider, for development and tests only.

RSA-2048 PKCS#1 v1.5 over SHA-256, with a self-signed certificate generated
at start-up unless a PEM key is configured. With ``tsa_mode=internal_dev``
it also issues a JSON timestamp token signed by the same key; this stands in
for a TSA and carries no RFC 3161 guarantees.
"""

import base64
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from countersign.common.base_models import rfc3339, utcnow
from countersign.common.canonical import canonical_bytes
from countersign.common.context import RequestContext
from countersign.signing.providers.base import SigningProvider, SignResult

logger = logging.getLogger(__name__)


def _self_signed_certificate(key: rsa.RSAPrivateKey, common_name: str) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = utcnow()
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )


class SoftwareDevProvider(SigningProvider):
    provider_id = "software-dev"

    def __init__(
        self,
        private_key_pem: str = "",
        tsa_mode: str = "none",
        tsa_policy_oid: str = "1.2.3.4.5.777",
        timeout_seconds: float = 10.0,
    ):
        super().__init__(timeout_seconds)
        if private_key_pem:
            self._key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
        else:
            logger.warning("Software signing provider is using an ephemeral key; do not use in production")
            self._key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self._certificate = _self_signed_certificate(self._key, "Countersign Development Signer")
        self._chain = [self._certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")]
        self.tsa_mode = tsa_mode
        self.tsa_policy_oid = tsa_policy_oid

    @property
    def certificate_chain(self) -> list[str]:
        return list(self._chain)

    def _sign_bytes(self, data: bytes) -> bytes:
        return self._key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    def _timestamp_token(self, signature: bytes) -> bytes:
        info = {
            "policy": self.tsa_policy_oid,
            "gen_time": rfc3339(utcnow()),
            "serial": secrets.token_hex(8),
            "hash_algorithm": "sha256",
            "message_imprint": hashlib.sha256(signature).hexdigest(),
        }
        body = canonical_bytes(info)
        info["signature"] = base64.b64encode(self._sign_bytes(body)).decode("ascii")
        return canonical_bytes(info)

    async def sign(
        self, payload: bytes, ctx: Optional[RequestContext] = None, idempotency_key: Optional[str] = None
    ) -> SignResult:
        self.call_timeout(ctx)
        signature = self._sign_bytes(payload)
        tsa_token = self._timestamp_token(signature) if self.tsa_mode == "internal_dev" else None
        return SignResult(
            provider_id=self.provider_id,
            signature=signature,
            tsa_token=tsa_token,
            certificate_chain=self.certificate_chain,
        )
