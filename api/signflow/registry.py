"""Signer Registry: creation of signers and every per-signer transition.

Public operations run in their own transaction through
:func:`signflow.repository.transactional`, so a version conflict on the
signer or its request is retried from a fresh read a bounded number of
times before :class:`ConcurrentModification` reaches the caller.
"""

import logging
from typing import Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import ordering, state_machine, verification
from .audit import append_event
from .context import EngineContext
from .errors import (
    AlreadyTerminal,
    DuplicatePosition,
    DuplicateSigner,
    IllegalTransition,
    InvalidConfiguration,
    InvalidEmail,
    NotActive,
    VerificationRequired,
)
from .models import SIGNER_PROGRESS, RequestStatus, SignatureRequest, SigningMode, Signer, SignerStatus
from .repository import compare_and_set, delete_schedules, get_request, get_signer, list_signers, transactional
from .schemas import SignerInput
from .utils import normalize_email

logger = logging.getLogger(__name__)


def _check_email(email: str) -> str:
    email = (email or "").strip()
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as exc:
        raise InvalidEmail(str(exc), {"email": email}) from exc
    return normalize_email(email)


def add_signer(session: Session, request: SignatureRequest, data: SignerInput, ctx: EngineContext) -> Signer:
    """Insert one signer into a draft request inside the caller's transaction."""
    normalized = _check_email(data.email)
    if request.status != RequestStatus.DRAFT:
        raise IllegalTransition("signers can only be added while the request is a draft")
    existing = list_signers(session, request.id)
    if len(existing) >= ctx.settings.max_signers_per_request:
        raise InvalidConfiguration(
            f"a request takes at most {ctx.settings.max_signers_per_request} signers")
    if any(s.email_normalized == normalized for s in existing):
        raise DuplicateSigner("signer already registered for this request", {"email": data.email})

    position = None
    if request.mode == SigningMode.SEQUENTIAL:
        position = data.position if data.position is not None else ordering.next_position(existing)
        if any(s.position == position for s in existing):
            raise DuplicatePosition(f"position {position} is already taken", {"position": position})

    signer = Signer(
        request_id=request.id,
        name=data.name.strip(),
        email=data.email.strip(),
        email_normalized=normalized,
        position=position,
    )
    session.add(signer)
    try:
        session.flush()
    except IntegrityError as exc:
        # lost a race with a concurrent register on the same request
        session.rollback()
        raise DuplicateSigner("signer email or position already taken", {"email": data.email}) from exc
    # registering changes the request's signer set
    compare_and_set(session, request, updated_at=ctx.now())
    append_event(session, request.id, "admin", "signer_added",
                 {"signer_id": signer.id, "email": normalized, "position": position})
    return signer


def register(session: Session, request_id: str, data: SignerInput, ctx: EngineContext) -> Signer:
    def work():
        return add_signer(session, get_request(session, request_id), data, ctx)
    return transactional(session, work, ctx.settings.concurrency_retries)


def _advance(session: Session, signer: Signer, target: SignerStatus, ctx: EngineContext, **stamps) -> bool:
    """Forward-only promotion along pending -> notified -> viewed."""
    if signer.status.is_terminal:
        return False
    if SIGNER_PROGRESS[signer.status] >= SIGNER_PROGRESS[target]:
        return False
    compare_and_set(session, signer, status=target, **stamps)
    return True


def mark_notified(session: Session, signer_id: str, ctx: EngineContext) -> Signer:
    def work():
        now = ctx.now()
        signer = get_signer(session, signer_id)
        request = get_request(session, signer.request_id)
        if _advance(session, signer, SignerStatus.NOTIFIED, ctx, notified_at=signer.notified_at or now):
            append_event(session, request.id, "system", "notified", {"signer_id": signer.id})
            state_machine.recompute(session, request, ctx)
        return signer
    return transactional(session, work, ctx.settings.concurrency_retries)


def mark_viewed(session: Session, signer_id: str, ctx: EngineContext,
                client_ip: Optional[str] = None, user_agent: Optional[str] = None) -> Signer:
    def work():
        now = ctx.now()
        signer = get_signer(session, signer_id)
        request = get_request(session, signer.request_id)
        stamps = {"viewed_at": signer.viewed_at or now}
        if signer.notified_at is None:
            # the view beat the delivery acknowledgement
            stamps["notified_at"] = now
        if _advance(session, signer, SignerStatus.VIEWED, ctx, **stamps):
            append_event(session, request.id, f"signer:{signer.id}", "viewed", {}, ip=client_ip, ua=user_agent)
            state_machine.recompute(session, request, ctx)
        return signer
    return transactional(session, work, ctx.settings.concurrency_retries)


def _require_actionable(session: Session, signer: Signer, request) -> list:
    if signer.status.is_terminal:
        raise AlreadyTerminal(f"signer already {signer.status.value}", {"signer_id": signer.id})
    if request.status.is_terminal or request.status == RequestStatus.DRAFT:
        raise NotActive(f"request is {request.status.value}", {"request_id": request.id})
    return list_signers(session, request.id)


def _overdue(request: SignatureRequest, ctx: EngineContext) -> bool:
    return request.due_at is not None and request.due_at <= ctx.now()


def _past_due(request_id: str) -> NotActive:
    return NotActive("request is past its due date", {"request_id": request_id})


def submit_signature(session: Session, signer_id: str, artifact_ref: Optional[str],
                     verification_token: Optional[str], ctx: EngineContext,
                     client_ip: Optional[str] = None, user_agent: Optional[str] = None) -> Signer:
    """Record a signature, checking the grant against the signer row read here.

    A request found past its due date is expired in this transaction and the
    signature is refused with ``NotActive``.
    """
    def work():
        now = ctx.now()
        signer = get_signer(session, signer_id)
        request = get_request(session, signer.request_id)
        if signer.status.is_terminal:
            raise AlreadyTerminal(f"signer already {signer.status.value}", {"signer_id": signer.id})
        satisfied = verification.grant_is_valid(signer, verification_token, ctx)
        if request.requires_verification and not satisfied:
            raise VerificationRequired("a verified one-time code is required before signing")
        signers = _require_actionable(session, signer, request)
        if _overdue(request, ctx):
            state_machine.recompute(session, request, ctx, signers)
            return "expired", request.id
        if not ordering.is_active(request.mode, signers, signer.id):
            raise NotActive("it is not this signer's turn", {"signer_id": signer.id})

        compare_and_set(
            session, signer,
            status=SignerStatus.SIGNED,
            signed_at=now,
            artifact_ref=artifact_ref,
            verification_satisfied=satisfied,
            signed_ip=client_ip,
            signed_user_agent=user_agent,
            viewed_at=signer.viewed_at or now,
            notified_at=signer.notified_at or now,
            otp_grant_nonce=None,
        )
        delete_schedules(session, signer_id=signer.id)
        append_event(session, request.id, f"signer:{signer.id}", "signed",
                     {"signer_id": signer.id, "artifact_ref": artifact_ref,
                      "verification_satisfied": satisfied},
                     ip=client_ip, ua=user_agent)
        state_machine.recompute(session, request, ctx, signers)
        logger.info("signer %s signed request %s", signer.id, request.id)
        return "signed", signer

    # the expiry is committed before the refusal is raised
    outcome, value = transactional(session, work, ctx.settings.concurrency_retries)
    if outcome == "expired":
        raise _past_due(value)
    return value


def decline(session: Session, signer_id: str, reason: Optional[str], ctx: EngineContext,
            client_ip: Optional[str] = None, user_agent: Optional[str] = None) -> Signer:
    def work():
        now = ctx.now()
        signer = get_signer(session, signer_id)
        request = get_request(session, signer.request_id)
        signers = _require_actionable(session, signer, request)
        if _overdue(request, ctx):
            state_machine.recompute(session, request, ctx, signers)
            return "expired", request.id
        if not ordering.is_active(request.mode, signers, signer.id):
            raise NotActive("it is not this signer's turn", {"signer_id": signer.id})
        compare_and_set(session, signer, status=SignerStatus.DECLINED, declined_at=now,
                        decline_reason=reason)
        delete_schedules(session, signer_id=signer.id)
        append_event(session, request.id, f"signer:{signer.id}", "declined",
                     {"signer_id": signer.id, "reason": reason}, ip=client_ip, ua=user_agent)
        state_machine.recompute(session, request, ctx, signers)
        logger.info("signer %s declined request %s", signer.id, request.id)
        return "declined", signer

    outcome, value = transactional(session, work, ctx.settings.concurrency_retries)
    if outcome == "expired":
        raise _past_due(value)
    return value
