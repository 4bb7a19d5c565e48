from countersign.blobs.base import BlobStore
from countersign.blobs.local import LocalBlobStore
from countersign.blobs.minio_store import MinioBlobStore


def create_blob_store(settings) -> BlobStore:
    if settings.blob_backend == "local-fs":
        return LocalBlobStore(settings.blob_local_root)
    if settings.blob_backend == "s3-compatible":
        return MinioBlobStore(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            bucket=settings.minio_bucket,
            secure=settings.minio_use_ssl,
        )
    raise ValueError(f"Unknown blob backend: {settings.blob_backend}")
