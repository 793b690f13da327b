
from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional
from .models import RequestStatus, SignerStatus, SigningMode

class SignerInput(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: str
    position: Optional[int] = Field(default=None, ge=1)

class RequestCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    document_id: str
    message: str = Field(default="", max_length=2000)
    mode: SigningMode = SigningMode.SEQUENTIAL
    due_at: Optional[datetime] = None
    requires_verification: bool = False
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    signers: List[SignerInput] = []

class CancelInput(BaseModel):
    reason: Optional[str] = None

class ExtendInput(BaseModel):
    days: int

class SignatureSubmit(BaseModel):
    artifact_ref: Optional[str] = None
    verification_token: Optional[str] = None

class DeclineInput(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)

class CodeSubmit(BaseModel):
    code: str

class SignerView(BaseModel):
    id: str
    name: str
    email: str
    position: Optional[int] = None
    status: SignerStatus
    active: bool = False
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

class RequestView(BaseModel):
    id: str
    title: str
    document_id: str
    mode: SigningMode
    status: RequestStatus
    requires_verification: bool
    due_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    artifact_hash: Optional[str] = None
    signers: List[SignerView] = []

class ArtifactCheck(BaseModel):
    valid: bool
    found: bool
    request_id: Optional[str] = None
    expected_hash: Optional[str] = None
    actual_hash: Optional[str] = None
    sealed_at: Optional[datetime] = None
