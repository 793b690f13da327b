
from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field as ORMField
from .utils import new_id, utcnow


class SigningMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class RequestStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in REQUEST_TERMINAL


class SignerStatus(str, Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in SIGNER_TERMINAL


REQUEST_TERMINAL = frozenset({
    RequestStatus.COMPLETED, RequestStatus.DECLINED, RequestStatus.EXPIRED, RequestStatus.CANCELLED,
})
SIGNER_TERMINAL = frozenset({
    SignerStatus.SIGNED, SignerStatus.DECLINED, SignerStatus.EXPIRED, SignerStatus.CANCELLED,
})
# forward-only rank for the non-terminal part of the signer lifecycle
SIGNER_PROGRESS = {SignerStatus.PENDING: 0, SignerStatus.NOTIFIED: 1, SignerStatus.VIEWED: 2}


class SignatureRequest(SQLModel, table=True):
    __tablename__ = "signature_request"

    id: str = ORMField(default_factory=new_id, primary_key=True)
    title: str
    message: str = ""
    document_id: str
    mode: SigningMode = SigningMode.SEQUENTIAL
    status: RequestStatus = RequestStatus.DRAFT
    due_at: Optional[datetime] = None
    requires_verification: bool = False
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    final_artifact_key: Optional[str] = None
    artifact_hash: Optional[str] = None
    version: int = 1


class Signer(SQLModel, table=True):
    __tablename__ = "signer"
    __table_args__ = (
        UniqueConstraint("request_id", "email_normalized", name="uq_signer_request_email"),
        UniqueConstraint("request_id", "position", name="uq_signer_request_position"),
    )

    id: str = ORMField(default_factory=new_id, primary_key=True)
    request_id: str = ORMField(foreign_key="signature_request.id", index=True)
    name: str
    email: str
    email_normalized: str
    position: Optional[int] = None  # sequential mode only
    status: SignerStatus = SignerStatus.PENDING
    artifact_ref: Optional[str] = None
    verification_satisfied: bool = False
    dispatched_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    signed_ip: Optional[str] = None
    signed_user_agent: Optional[str] = None
    otp_secret: Optional[str] = None
    otp_issued_at: Optional[datetime] = None
    otp_failures: int = 0
    otp_locked_until: Optional[datetime] = None
    otp_grant_nonce: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    version: int = 1


class VerificationRecord(SQLModel, table=True):
    __tablename__ = "verification_record"

    id: str = ORMField(default_factory=new_id, primary_key=True)
    request_id: str = ORMField(foreign_key="signature_request.id", unique=True)
    artifact_hash: str
    lookup_token: str = ORMField(unique=True, index=True)
    artifact_key: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)


class ReminderSchedule(SQLModel, table=True):
    __tablename__ = "reminder_schedule"

    signer_id: str = ORMField(foreign_key="signer.id", primary_key=True)
    request_id: str = ORMField(index=True)
    next_fire_at: Optional[datetime] = ORMField(default=None, index=True)  # None once exhausted
    attempt_count: int = 0
    last_sent_at: Optional[datetime] = None
    version: int = 1


class OutboundMessage(SQLModel, table=True):
    __tablename__ = "outbound_message"

    id: str = ORMField(default_factory=new_id, primary_key=True)
    request_id: str = ORMField(index=True)
    signer_id: Optional[str] = None
    recipient: str
    template: str  # invite|reminder|verification_code|completed|declined|expired|cancelled
    payload_json: str = "{}"
    status: str = ORMField(default="queued", index=True)  # queued|sent|failed
    attempts: int = 0
    next_attempt_at: datetime = ORMField(default_factory=utcnow)
    last_error: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    sent_at: Optional[datetime] = None


class Event(SQLModel, table=True):
    __tablename__ = "event"

    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: str = ORMField(index=True)
    actor: str  # system|signer:<id>|admin
    type: str   # created|signer_added|activated|viewed|signed|declined|code_*|completed|...
    meta_json: str = "{}"
    ip: Optional[str] = None
    ua: Optional[str] = None
    at: datetime = ORMField(default_factory=utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
