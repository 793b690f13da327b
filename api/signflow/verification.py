"""Verification Gate: one-time codes in front of signature submission.

Codes are TOTP values (``pyotp``) over a secret minted per (request, signer)
pair when a code is issued. The failure counter and lockout deadline live on
the signer row. A successful check does not leave a standing permission
behind: it returns a grant token tied to a nonce on the signer, and the
signing transaction clears that nonce.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import pyotp
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlmodel import Session

from . import notifier
from .audit import append_event
from .context import EngineContext
from .errors import AlreadyTerminal, InvalidCode, InvalidConfiguration, LockedOut, NotActive, VerificationRequired
from .models import RequestStatus, Signer
from .repository import compare_and_set, get_request, get_signer, transactional

logger = logging.getLogger(__name__)

GRANT_SALT = "verification-grant"


@dataclass
class IssuedCode:
    signer_id: str
    secret: str
    code: str
    expires_at: datetime


@dataclass
class CodeAccepted:
    signer_id: str
    grant_token: str


def _epoch(moment: datetime) -> int:
    return int(moment.replace(tzinfo=timezone.utc).timestamp())


def _totp(secret: str, ctx: EngineContext) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=ctx.settings.otp_digits, interval=ctx.settings.otp_interval_seconds)


def _serializer(ctx: EngineContext) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(ctx.settings.secret_key, salt=GRANT_SALT)


def _locked(signer: Signer, now: datetime) -> bool:
    return signer.otp_locked_until is not None and signer.otp_locked_until > now


def _locked_out(signer: Signer) -> LockedOut:
    return LockedOut(
        "too many failed codes, try again later",
        {"signer_id": signer.id, "locked_until": signer.otp_locked_until.isoformat()},
    )


def issue_code(session: Session, signer_id: str, ctx: EngineContext) -> IssuedCode:
    def work():
        now = ctx.now()
        signer = get_signer(session, signer_id)
        request = get_request(session, signer.request_id)
        if not request.requires_verification:
            raise InvalidConfiguration("this request does not use verification codes")
        if signer.status.is_terminal:
            raise AlreadyTerminal(f"signer already {signer.status.value}")
        if request.status not in (RequestStatus.PENDING, RequestStatus.IN_PROGRESS):
            raise NotActive(f"request is {request.status.value}")
        if _locked(signer, now):
            raise _locked_out(signer)

        secret = pyotp.random_base32()
        compare_and_set(session, signer, otp_secret=secret, otp_issued_at=now, otp_grant_nonce=None)
        interval = ctx.settings.otp_interval_seconds
        window_start = _epoch(now) - _epoch(now) % interval
        expires_at = datetime.fromtimestamp(
            window_start + interval * (1 + ctx.settings.otp_skew_windows), tz=timezone.utc
        ).replace(tzinfo=None)
        code = _totp(secret, ctx).at(_epoch(now))
        notifier.enqueue(session, request, signer, "verification_code", notifier.request_payload(
            request, signer_id=signer.id, code=code, expires_at=expires_at.isoformat() + "Z"), now)
        append_event(session, request.id, "system", "code_issued", {"signer_id": signer.id})
        return IssuedCode(signer.id, secret, code, expires_at)

    return transactional(session, work, ctx.settings.concurrency_retries)


def verify_code(session: Session, signer_id: str, code: str, ctx: EngineContext,
                client_ip: Optional[str] = None) -> CodeAccepted:
    max_failures = ctx.settings.otp_max_failures

    def work():
        now = ctx.now()
        signer = get_signer(session, signer_id)
        request = get_request(session, signer.request_id)
        if signer.status.is_terminal:
            raise AlreadyTerminal(f"signer already {signer.status.value}")
        if _locked(signer, now):
            append_event(session, request.id, f"signer:{signer.id}", "code_locked", {}, ip=client_ip)
            return "locked", signer
        if not signer.otp_secret:
            raise VerificationRequired("request a verification code first")

        submitted = (code or "").strip()
        if _totp(signer.otp_secret, ctx).verify(submitted, for_time=_epoch(now),
                                                valid_window=ctx.settings.otp_skew_windows):
            nonce = secrets.token_hex(16)
            # the code is spent; the next submission needs a new one
            compare_and_set(session, signer, otp_failures=0, otp_locked_until=None,
                            otp_secret=None, otp_grant_nonce=nonce)
            append_event(session, request.id, f"signer:{signer.id}", "code_verified", {}, ip=client_ip)
            token = _serializer(ctx).dumps({"r": request.id, "s": signer.id, "n": nonce})
            return "ok", token

        failures = signer.otp_failures + 1
        if failures >= max_failures:
            until = now + timedelta(minutes=ctx.settings.otp_lockout_minutes)
            compare_and_set(session, signer, otp_failures=0, otp_locked_until=until)
            append_event(session, request.id, f"signer:{signer.id}", "code_lockout",
                         {"locked_until": until.isoformat()}, ip=client_ip)
            logger.warning("signer %s locked out of verification until %s", signer.id, until)
            return "locked", signer
        compare_and_set(session, signer, otp_failures=failures)
        append_event(session, request.id, f"signer:{signer.id}", "code_rejected",
                     {"failures": failures}, ip=client_ip)
        return "invalid", max_failures - failures

    # counter updates are committed before the outcome is raised
    outcome, value = transactional(session, work, ctx.settings.concurrency_retries)
    if outcome == "locked":
        raise _locked_out(value)
    if outcome == "invalid":
        raise InvalidCode("verification code did not match", {"attempts_remaining": value})
    return CodeAccepted(signer_id, value)


def grant_is_valid(signer: Signer, token: Optional[str], ctx: EngineContext) -> bool:
    """True when ``token`` is an unexpired grant matching the signer's live nonce."""
    if not token or not signer.otp_grant_nonce:
        return False
    try:
        data = _serializer(ctx).loads(token, max_age=ctx.settings.otp_grant_ttl_seconds)
    except SignatureExpired:
        logger.info("expired verification grant for signer %s", signer.id)
        return False
    except BadSignature:
        logger.warning("tampered verification grant for signer %s", signer.id)
        return False
    return (
        data.get("s") == signer.id
        and data.get("r") == signer.request_id
        and secrets.compare_digest(str(data.get("n", "")), signer.otp_grant_nonce)
    )
