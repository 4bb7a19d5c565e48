import io
from typing import BinaryIO

from minio import Minio
from minio.error import S3Error

from countersign.blobs.base import BlobNotFound, BlobStore

_MISSING_CODES = ("NoSuchKey", "NoSuchObject", "NoSuchBucket")


class MinioBlobStore(BlobStore):
    """S3-compatible storage; S3 PUT is atomic per object."""

    def __init__(self, endpoint: str, access_key: str, secret_key: str, bucket: str, secure: bool = False):
        self.bucket = bucket
        self.client = Minio(endpoint, access_key=access_key, secret_key=secret_key, secure=secure)
        self._bucket_ready = False

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
        self._bucket_ready = True

    def put(self, key: str, reader: BinaryIO, length: int = -1, content_type: str = "application/octet-stream") -> None:
        self._ensure_bucket()
        if length < 0:
            # Unknown length: multipart upload with 10 MiB parts.
            self.client.put_object(self.bucket, key, reader, length=-1, part_size=10 * 1024 * 1024, content_type=content_type)
        else:
            self.client.put_object(self.bucket, key, reader, length=length, content_type=content_type)

    def get(self, key: str) -> BinaryIO:
        try:
            response = self.client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                raise BlobNotFound(key) from None
            raise
        return _ResponseReader(response)

    def delete(self, key: str) -> None:
        try:
            self.client.remove_object(self.bucket, key)
        except S3Error as exc:
            if exc.code not in _MISSING_CODES:
                raise

    def exists(self, key: str) -> bool:
        try:
            self.client.stat_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return False
            raise
        return True


class _ResponseReader(io.RawIOBase):
    """File-like wrapper that releases the pooled HTTP connection on close."""

    def __init__(self, response):
        self._response = response

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        chunk = self._response.read(len(buffer))
        n = len(chunk)
        buffer[:n] = chunk
        return n

    def close(self) -> None:
        if not self.closed:
            self._response.close()
            self._response.release_conn()
        super().close()
