
import io
import logging
from typing import Protocol
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET
from .errors import ArtifactStoreError

logger = logging.getLogger(__name__)

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=False
)

def ensure_bucket():
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)

def put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
    ensure_bucket()
    _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)

def get_bytes(key: str) -> bytes:
    resp = _client.get_object(MINIO_BUCKET, key)
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()


def document_key(document_id: str) -> str:
    return f"documents/{document_id}"

def final_key(request_id: str) -> str:
    return f"final/requests/{request_id}.pdf"


class ArtifactStore(Protocol):
    def get_artifact(self, document_id: str) -> bytes: ...
    def put_artifact(self, document_id: str, data: bytes, content_type: str) -> str: ...
    def put_final_artifact(self, request_id: str, data: bytes) -> str: ...
    def get_final_artifact(self, request_id: str) -> bytes: ...


class MinioArtifactStore:
    """Artifact Store backed by the MinIO bucket."""

    def get_artifact(self, document_id: str) -> bytes:
        key = document_key(document_id)
        try:
            return get_bytes(key)
        except (S3Error, HTTPError) as exc:
            raise ArtifactStoreError(f"cannot read {key}", {"key": key, "cause": str(exc)}) from exc

    def put_artifact(self, document_id: str, data: bytes, content_type: str = "application/pdf") -> str:
        key = document_key(document_id)
        try:
            put_bytes(key, data, content_type=content_type)
        except (S3Error, HTTPError) as exc:
            raise ArtifactStoreError(f"cannot write {key}", {"key": key, "cause": str(exc)}) from exc
        return key

    def put_final_artifact(self, request_id: str, data: bytes) -> str:
        key = final_key(request_id)
        try:
            put_bytes(key, data, content_type="application/pdf")
        except (S3Error, HTTPError) as exc:
            raise ArtifactStoreError(f"cannot write {key}", {"key": key, "cause": str(exc)}) from exc
        logger.info("stored final artifact %s (%d bytes)", key, len(data))
        return key

    def get_final_artifact(self, request_id: str) -> bytes:
        key = final_key(request_id)
        try:
            return get_bytes(key)
        except (S3Error, HTTPError) as exc:
            raise ArtifactStoreError(f"cannot read {key}", {"key": key, "cause": str(exc)}) from exc
