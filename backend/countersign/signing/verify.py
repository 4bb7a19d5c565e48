import logging

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

logger = logging.getLogger(__name__)


def verify_signature(payload: bytes, signature: bytes, certificate_chain: list[str]) -> bool:
    """Check a detached signature against the leaf certificate of its chain."""
    if not signature or not certificate_chain:
        return False
    try:
        leaf = x509.load_pem_x509_certificate(certificate_chain[0].encode("ascii"))
    except ValueError:
        logger.warning("Evidence carries an unreadable certificate")
        return False

    public_key = leaf.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
        else:
            logger.warning("Unsupported evidence key type %s", type(public_key).__name__)
            return False
    except InvalidSignature:
        return False
    return True
