"""Integrity Service: seals the finished artifact and verifies copies of it.

``finalize`` runs inside the transaction that moves a request to
``completed``; if the store call fails the exception propagates and the
caller's rollback leaves the request in its prior state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List

from sqlmodel import Session, select

from . import sealing
from .errors import RecordNotFound
from .models import SignatureRequest, Signer, VerificationRecord
from .storage import ArtifactStore
from .utils import new_lookup_token, sha256_bytes

logger = logging.getLogger(__name__)


@dataclass
class ArtifactVerification:
    match: bool
    expected_hash: str
    actual_hash: str
    request_id: str
    sealed_at: datetime


def compute_digest(data: bytes) -> str:
    return sha256_bytes(data)


def finalize(session: Session, request: SignatureRequest, signers: List[Signer],
             store: ArtifactStore, now: datetime) -> VerificationRecord:
    original = store.get_artifact(request.document_id)
    certificate = sealing.build_certificate(request, signers, now, compute_digest(original))
    final_bytes = sealing.seal(original, certificate)
    digest = compute_digest(final_bytes)
    key = store.put_final_artifact(request.id, final_bytes)

    record = VerificationRecord(
        request_id=request.id,
        artifact_hash=digest,
        lookup_token=new_lookup_token(),
        artifact_key=key,
        created_at=now,
    )
    session.add(record)
    logger.info("finalized request %s sha256=%s", request.id, digest)
    return record


def find_record(session: Session, lookup_token: str) -> VerificationRecord:
    record = session.exec(
        select(VerificationRecord).where(VerificationRecord.lookup_token == lookup_token)
    ).first()
    if not record:
        raise RecordNotFound("no verification record for this token")
    return record


def verify(session: Session, lookup_token: str, artifact_bytes: bytes) -> ArtifactVerification:
    record = find_record(session, lookup_token)
    actual = compute_digest(artifact_bytes)
    return ArtifactVerification(
        match=actual == record.artifact_hash,
        expected_hash=record.artifact_hash,
        actual_hash=actual,
        request_id=record.request_id,
        sealed_at=record.created_at,
    )


def record_for_request(session: Session, request_id: str) -> VerificationRecord:
    record = session.exec(
        select(VerificationRecord).where(VerificationRecord.request_id == request_id)
    ).first()
    if not record:
        raise RecordNotFound("request has not been finalized", {"request_id": request_id})
    return record
