from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "Countersign"
    app_version: str = "1.0.0"
    environment: str = "production"
    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://countersign:countersign@db:5432/countersign"

    # Sender bearer tokens (issued by the external identity module)
    identity_secret_key: str = "CHANGE_ME"
    identity_jwt_algorithm: str = "HS256"

    # Envelope caps
    max_documents_per_envelope: int = 50
    max_recipients: int = 200
    max_fields: int = 5000
    payload_size_limit: int = 1024 * 1024
    max_document_bytes: int = 25 * 1024 * 1024

    # Blob storage
    blob_backend: str = "local-fs"  # local-fs | s3-compatible
    blob_local_root: str = "/var/lib/countersign/blobs"
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "countersign"
    minio_secret_key: str = "CHANGE_ME"
    minio_bucket: str = "countersign-blobs"
    minio_use_ssl: bool = False

    # Document hashing
    hasher_chunk_size: int = 64 * 1024
    hasher_verify_reads: bool = False

    # Signing provider
    signing_provider: str = "software-dev"  # hsm | kms | software-dev
    software_signing_key_pem: str = ""
    tsa_mode: str = "none"  # none | internal_dev
    tsa_policy_oid: str = "1.2.3.4.5.777"
    kms_key_id: str = ""
    kms_region: str = "us-east-1"
    kms_certificate_chain_pem: str = ""
    hsm_url: str = "http://hsm-gateway:8443"
    hsm_key_id: str = ""
    hsm_api_token: str = ""
    hsm_max_connections: int = 10
    provider_timeout_seconds: float = 10.0

    # Signing retries
    send_retry_attempts: int = 3
    send_retry_base_ms: int = 200
    send_retry_factor: float = 2.0
    send_retry_jitter: float = 0.25

    # Access tokens
    access_token_bytes: int = 16
    access_token_ttl_days: int = 30
    access_token_cache_size: int = 1024
    access_token_cache_ttl_seconds: int = 300

    # Requests
    request_timeout_seconds: float = 30.0

    # Background work
    redis_url: str = "redis://redis:6379/0"
    background_tasks_enabled: bool = True
    notification_webhook_url: str = ""
    notification_webhook_secret: str = ""

    # Certificate of completion
    certificate_version: str = "1.1"
    compliance_signature_act: str = "ESIGN Act 2000 / UETA Compliant"
    compliance_timestamp_authority: str = "RFC 3161 Time-Stamp Authority"
    compliance_encryption_standard: str = "AES-256"
    compliance_document_integrity: str = "SHA-256 Hash Verified"

    # CORS
    backend_cors_origins: list[str] = ["http://localhost", "http://localhost:5173"]

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
