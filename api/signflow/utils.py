
import hashlib, json, secrets, uuid
from datetime import datetime, timezone
from itsdangerous import URLSafeSerializer
from .config import SECRET_KEY

def utcnow() -> datetime:
    # naive UTC, matching what the database columns hold
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return uuid.uuid4().hex

def new_lookup_token() -> str:
    return secrets.token_urlsafe(24)

def normalize_email(email: str) -> str:
    return (email or "").strip().lower()

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)

def make_token(payload: dict) -> str:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    return s.dumps(payload)

def read_token(token: str) -> dict:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    return s.loads(token)

def signing_link(signer_id: str, request_id: str, base_url: str) -> str:
    token = make_token({"signer_id": signer_id, "request_id": request_id})
    return f"{base_url.rstrip('/')}/sign/{token}"

def as_naive_utc(moment):
    # API callers may send offsets; storage is naive UTC
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
