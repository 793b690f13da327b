"""Request State Machine.

The aggregate status of a request is derived from its signers by
:func:`derive_status`. :func:`recompute` applies that derivation inside the
caller's transaction and fires side effects (events, notices, sealing) only
when the status actually changes. A pass over a steady state still touches
``updated_at`` and the version stamp, and invites any active signer that has
not been invited yet, but emits nothing else.

:func:`cancel` is the one transition not derived from signer state: it is an
explicit command that writes ``cancelled`` itself, forces the open signers
and carries the requester's reason into the notices. A later recompute of
a cancelled request only touches the bookkeeping stamps, since terminal
statuses never derive.

Every recompute bumps the request version. Two transactions that each
update a different signer of the same request therefore conflict on the
request row, and only one of them gets to observe (and act on) the combined
signer state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlmodel import Session

from . import integrity, notifier, ordering
from .audit import append_event
from .context import EngineContext
from .errors import IllegalTransition, InvalidConfiguration
from .models import (
    ReminderSchedule,
    RequestStatus,
    SignatureRequest,
    Signer,
    SignerStatus,
)
from .repository import compare_and_set, delete_schedules, get_request, get_schedule, list_signers, transactional

logger = logging.getLogger(__name__)

CANCELLABLE = (RequestStatus.DRAFT, RequestStatus.PENDING, RequestStatus.IN_PROGRESS)
PAST_PENDING = (SignerStatus.NOTIFIED, SignerStatus.VIEWED, SignerStatus.SIGNED)


@dataclass
class Transition:
    request_id: str
    previous: RequestStatus
    current: RequestStatus

    @property
    def changed(self) -> bool:
        return self.previous != self.current


def derive_status(current: RequestStatus, signer_statuses: Iterable[SignerStatus],
                  due_at: Optional[datetime], now: datetime) -> RequestStatus:
    statuses = list(signer_statuses)
    if current == RequestStatus.DRAFT or current.is_terminal:
        return current
    if any(s == SignerStatus.DECLINED for s in statuses):
        return RequestStatus.DECLINED
    if statuses and all(s == SignerStatus.SIGNED for s in statuses):
        return RequestStatus.COMPLETED
    if any(s == SignerStatus.CANCELLED for s in statuses):
        return RequestStatus.CANCELLED
    if any(s == SignerStatus.EXPIRED for s in statuses) or (due_at is not None and due_at <= now):
        return RequestStatus.EXPIRED
    if any(s in PAST_PENDING for s in statuses):
        return RequestStatus.IN_PROGRESS
    return RequestStatus.PENDING


def _force_signers(session: Session, signers: List[Signer], status: SignerStatus) -> List[Signer]:
    forced = []
    for s in signers:
        if s.status.is_terminal:
            continue
        compare_and_set(session, s, status=status)
        forced.append(s)
    return forced


def _notify_parties(session: Session, request: SignatureRequest, signers: List[Signer], template: str,
                    now: datetime, **extra):
    payload = notifier.request_payload(request, **extra)
    for s in signers:
        if s.dispatched_at is None:
            continue
        notifier.enqueue(session, request, s, template, {**payload, "signer_id": s.id}, now)
    if request.requester_email:
        notifier.enqueue(session, request, None, template, payload, now, recipient=request.requester_email)


def _dispatch(session: Session, request: SignatureRequest, signers: List[Signer], ctx: EngineContext, now: datetime):
    """Invite every active signer that has not been invited yet."""
    first_fire = now + timedelta(hours=ctx.settings.reminder_base_hours)
    for s in ordering.undispatched(request.mode, signers):
        compare_and_set(session, s, dispatched_at=now)
        notifier.enqueue(session, request, s, "invite", notifier.request_payload(request, signer_id=s.id), now)
        if get_schedule(session, s.id) is None:
            session.add(ReminderSchedule(signer_id=s.id, request_id=request.id, next_fire_at=first_fire))
        append_event(session, request.id, "system", "dispatched", {"signer_id": s.id, "position": s.position})
        logger.info("request %s: signer %s is now active", request.id, s.id)


def recompute(session: Session, request: SignatureRequest, ctx: EngineContext,
              signers: Optional[List[Signer]] = None) -> Transition:
    now = ctx.now()
    if signers is None:
        signers = list_signers(session, request.id)
    if not signers:
        raise InvalidConfiguration("request has no signers", {"request_id": request.id})

    previous = request.status
    derived = derive_status(previous, [s.status for s in signers], request.due_at, now)
    transition = Transition(request.id, previous, derived)

    if not transition.changed:
        compare_and_set(session, request, updated_at=now)
        if derived != RequestStatus.DRAFT and not derived.is_terminal:
            _dispatch(session, request, signers, ctx, now)
        return transition

    values = {"status": derived, "updated_at": now}
    if derived == RequestStatus.COMPLETED:
        values["completed_at"] = now
    # claim the transition before any side effect
    compare_and_set(session, request, **values)
    logger.info("request %s: %s -> %s", request.id, previous.value, derived.value)
    append_event(session, request.id, "system", "status_changed", {"from": previous.value, "to": derived.value})

    if not derived.is_terminal:
        _dispatch(session, request, signers, ctx, now)
        return transition

    delete_schedules(session, request_id=request.id)
    if derived == RequestStatus.COMPLETED:
        record = integrity.finalize(session, request, signers, ctx.store, now)
        compare_and_set(session, request, artifact_hash=record.artifact_hash,
                        final_artifact_key=record.artifact_key)
        _notify_parties(session, request, signers, "completed", now,
                        artifact_hash=record.artifact_hash, lookup_token=record.lookup_token)
    elif derived == RequestStatus.DECLINED:
        _force_signers(session, signers, SignerStatus.CANCELLED)
        decliner = next((s for s in signers if s.status == SignerStatus.DECLINED), None)
        _notify_parties(session, request, signers, "declined", now,
                        reason=decliner.decline_reason if decliner else None)
    elif derived == RequestStatus.EXPIRED:
        _force_signers(session, signers, SignerStatus.EXPIRED)
        _notify_parties(session, request, signers, "expired", now)
    elif derived == RequestStatus.CANCELLED:
        _force_signers(session, signers, SignerStatus.CANCELLED)
        _notify_parties(session, request, signers, "cancelled", now)
    return transition


def activate(session: Session, request_id: str, ctx: EngineContext) -> Transition:
    def work():
        now = ctx.now()
        request = get_request(session, request_id)
        if request.status != RequestStatus.DRAFT:
            raise IllegalTransition(f"cannot activate a {request.status.value} request")
        signers = list_signers(session, request.id)
        if not signers:
            raise InvalidConfiguration("add at least one signer before activating")
        due_at = request.due_at or now + timedelta(days=ctx.settings.default_due_days)
        if due_at <= now:
            raise InvalidConfiguration("due date is already in the past", {"due_at": due_at.isoformat()})
        compare_and_set(session, request, status=RequestStatus.PENDING, activated_at=now,
                        due_at=due_at, updated_at=now)
        append_event(session, request.id, "admin", "activated", {"mode": request.mode.value})
        recompute(session, request, ctx, signers)
        return Transition(request.id, RequestStatus.DRAFT, request.status)
    return transactional(session, work, ctx.settings.concurrency_retries)


def cancel(session: Session, request_id: str, ctx: EngineContext, reason: Optional[str] = None) -> Transition:
    def work():
        now = ctx.now()
        request = get_request(session, request_id)
        if request.status not in CANCELLABLE:
            raise IllegalTransition(f"cannot cancel a {request.status.value} request")
        previous = request.status
        signers = list_signers(session, request.id)
        _force_signers(session, signers, SignerStatus.CANCELLED)
        delete_schedules(session, request_id=request.id)
        compare_and_set(session, request, status=RequestStatus.CANCELLED, updated_at=now)
        append_event(session, request.id, "admin", "cancelled", {"reason": reason, "from": previous.value})
        if previous != RequestStatus.DRAFT:
            _notify_parties(session, request, signers, "cancelled", now, reason=reason)
        logger.info("request %s: %s -> cancelled", request.id, previous.value)
        return Transition(request.id, previous, RequestStatus.CANCELLED)
    return transactional(session, work, ctx.settings.concurrency_retries)


def extend_due_date(session: Session, request_id: str, days: int, ctx: EngineContext) -> SignatureRequest:
    max_days = ctx.settings.max_due_days
    if days < 1 or days > max_days:
        raise InvalidConfiguration(f"days must be between 1 and {max_days}", {"days": days})

    def work():
        now = ctx.now()
        request = get_request(session, request_id)
        if request.status.is_terminal:
            raise IllegalTransition(f"cannot extend a {request.status.value} request")
        base = request.due_at or now
        new_due = base + timedelta(days=days)
        if (new_due - request.created_at).days > max_days:
            raise InvalidConfiguration(f"total lifetime cannot exceed {max_days} days", {"days": days})
        old_due = request.due_at
        compare_and_set(session, request, due_at=new_due, updated_at=now)
        append_event(session, request.id, "admin", "due_extended", {
            "days": days,
            "old_due_at": old_due.isoformat() if old_due else None,
            "new_due_at": new_due.isoformat(),
        })
        return request
    return transactional(session, work, ctx.settings.concurrency_retries)


def refresh(session: Session, request_id: str, ctx: EngineContext) -> Transition:
    """Standalone recompute in its own transaction (used by the sweep)."""
    def work():
        request = get_request(session, request_id)
        return recompute(session, request, ctx)
    return transactional(session, work, ctx.settings.concurrency_retries)
