"""Error taxonomy for the signing engine.

Every error carries a stable ``code`` and the HTTP status the API layer
answers with, so routers never need to translate them by hand.
"""

from typing import Any, Dict, Optional


class SigningError(Exception):
    code = "signing_error"
    http_status = 400

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidConfiguration(SigningError):
    code = "invalid_configuration"
    http_status = 422


class IllegalTransition(SigningError):
    code = "illegal_transition"
    http_status = 409


class DuplicateSigner(SigningError):
    code = "duplicate_signer"
    http_status = 409


class DuplicatePosition(SigningError):
    code = "duplicate_position"
    http_status = 409


class InvalidEmail(SigningError):
    code = "invalid_email"
    http_status = 422


class VerificationRequired(SigningError):
    code = "verification_required"
    http_status = 403


class InvalidCode(SigningError):
    code = "invalid_code"
    http_status = 401


class LockedOut(SigningError):
    code = "locked_out"
    http_status = 423


class NotActive(SigningError):
    code = "not_active"
    http_status = 409


class AlreadyTerminal(SigningError):
    code = "already_terminal"
    http_status = 409


class ConcurrentModification(SigningError):
    code = "concurrent_modification"
    http_status = 409


class RecordNotFound(SigningError):
    code = "record_not_found"
    http_status = 404


class NotFound(SigningError):
    code = "not_found"
    http_status = 404


class ArtifactStoreError(SigningError):
    code = "artifact_store_error"
    http_status = 502
