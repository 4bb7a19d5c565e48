from countersign.signing.providers.base import SigningProvider, SignResult
from countersign.signing.providers.hsm import HsmProvider
from countersign.signing.providers.kms import KmsProvider
from countersign.signing.providers.software import SoftwareDevProvider


def get_provider(settings) -> SigningProvider:
    name = settings.signing_provider
    if name == "software-dev":
        return SoftwareDevProvider(
            private_key_pem=settings.software_signing_key_pem,
            tsa_mode=settings.tsa_mode,
            tsa_policy_oid=settings.tsa_policy_oid,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    if name == "kms":
        return KmsProvider(
            key_id=settings.kms_key_id,
            region=settings.kms_region,
            certificate_chain_pem=settings.kms_certificate_chain_pem,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    if name == "hsm":
        return HsmProvider(
            base_url=settings.hsm_url,
            key_id=settings.hsm_key_id,
            api_token=settings.hsm_api_token,
            max_connections=settings.hsm_max_connections,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unknown signing provider: {name}")


__all__ = ["SigningProvider", "SignResult", "get_provider"]
