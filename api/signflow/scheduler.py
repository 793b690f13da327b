"""Periodic sweep: expirations, reminders and outbox delivery.

Nothing here keeps state between runs; every decision is re-derived from
the database, so a crashed sweep can simply run again and several replicas
can sweep at once. Each request, reminder and message is handled in its own
transaction and a failure on one is logged without stopping the rest.
"""

import json
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import update
from sqlmodel import Session, select

from . import notifier, ordering, registry, state_machine
from .audit import append_event
from .context import EngineContext
from .errors import ConcurrentModification
from .models import OutboundMessage, ReminderSchedule, RequestStatus, SignatureRequest
from .notifier import Contact, NotifierGateway
from .repository import compare_and_set, delete_schedules, get_request, get_schedule, get_signer, list_signers

logger = logging.getLogger(__name__)

OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.IN_PROGRESS)


@dataclass
class SweepReport:
    expired: int = 0
    reminders_sent: int = 0
    reminders_failed: int = 0
    reminders_dropped: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    errors: int = 0


def reminder_delay(attempts: int, ctx: EngineContext) -> timedelta:
    s = ctx.settings
    return timedelta(hours=s.reminder_base_hours * s.reminder_backoff_factor ** attempts)


def expire_overdue(session: Session, ctx: EngineContext, report: SweepReport) -> None:
    now = ctx.now()
    request_ids = session.exec(
        select(SignatureRequest.id)
        .where(SignatureRequest.status.in_(OPEN_STATUSES), SignatureRequest.due_at <= now)
        .limit(ctx.settings.sweep_batch_size)
    ).all()
    session.rollback()
    for request_id in request_ids:
        try:
            transition = state_machine.refresh(session, request_id, ctx)
        except Exception as exc:
            report.errors += 1
            logger.error("expiration check failed for request %s: %s", request_id, exc, exc_info=True)
            continue
        if transition.changed and transition.current == RequestStatus.EXPIRED:
            report.expired += 1


def _fire_reminder(session: Session, gateway: NotifierGateway, signer_id: str,
                   ctx: EngineContext, report: SweepReport) -> None:
    now = ctx.now()
    schedule = get_schedule(session, signer_id)
    if schedule is None or schedule.next_fire_at is None or schedule.next_fire_at > now:
        session.rollback()
        return
    signer = get_signer(session, signer_id)
    request = get_request(session, signer.request_id)
    signers = list_signers(session, request.id)
    if (request.status not in OPEN_STATUSES or signer.status.is_terminal
            or not ordering.is_active(request.mode, signers, signer.id)):
        delete_schedules(session, signer_id=signer_id)
        session.commit()
        report.reminders_dropped += 1
        return

    seen_version = schedule.version
    attempts = schedule.attempt_count + 1
    contact = Contact(signer.name, signer.email)
    payload = notifier.request_payload(request, signer_id=signer.id, attempt=attempts)
    session.rollback()

    result = notifier.safe_send(gateway, contact, "reminder", payload)
    if not result.ok:
        report.reminders_failed += 1
        return

    # only a delivered reminder moves the schedule forward
    schedule = get_schedule(session, signer_id)
    if schedule is None:
        # signer finished while we were sending; the stale reminder is tolerated
        session.rollback()
        report.reminders_sent += 1
        return
    exhausted = attempts >= ctx.settings.reminder_max_count
    next_fire = None if exhausted else now + reminder_delay(attempts, ctx)
    try:
        compare_and_set(session, schedule, expected_version=seen_version,
                        attempt_count=attempts, last_sent_at=now, next_fire_at=next_fire)
        append_event(session, payload["request_id"], "system", "reminder_sent",
                     {"signer_id": signer_id, "attempt": attempts, "exhausted": exhausted})
        session.commit()
    except ConcurrentModification:
        session.rollback()
        logger.info("reminder for signer %s was rescheduled by another sweep", signer_id)
    report.reminders_sent += 1
    if exhausted:
        logger.info("signer %s reached the reminder limit (%d)", signer_id, attempts)


def send_due_reminders(session: Session, gateway: NotifierGateway, ctx: EngineContext,
                       report: SweepReport) -> None:
    now = ctx.now()
    signer_ids = session.exec(
        select(ReminderSchedule.signer_id)
        .where(ReminderSchedule.next_fire_at.is_not(None), ReminderSchedule.next_fire_at <= now)
        .order_by(ReminderSchedule.next_fire_at)
        .limit(ctx.settings.sweep_batch_size)
    ).all()
    session.rollback()
    for signer_id in signer_ids:
        try:
            _fire_reminder(session, gateway, signer_id, ctx, report)
        except Exception as exc:
            session.rollback()
            report.errors += 1
            logger.error("reminder for signer %s failed: %s", signer_id, exc, exc_info=True)


def _claim(session: Session, message_id: str, ctx: EngineContext) -> bool:
    # lease the message so a concurrent sweep skips it while we send
    now = ctx.now()
    lease = now + timedelta(seconds=ctx.settings.outbox_retry_seconds)
    result = session.exec(
        update(OutboundMessage)
        .where(OutboundMessage.id == message_id, OutboundMessage.status == "queued",
               OutboundMessage.next_attempt_at <= now)
        .values(next_attempt_at=lease)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def _deliver(session: Session, gateway: NotifierGateway, message_id: str,
             ctx: EngineContext, report: SweepReport) -> None:
    if not _claim(session, message_id, ctx):
        return
    message = session.get(OutboundMessage, message_id)
    name = message.recipient
    if message.signer_id:
        name = get_signer(session, message.signer_id).name
    contact = Contact(name, message.recipient)
    template, signer_id = message.template, message.signer_id
    payload = json.loads(message.payload_json or "{}")
    session.rollback()

    result = notifier.safe_send(gateway, contact, template, payload)

    now = ctx.now()
    message = session.get(OutboundMessage, message_id)
    message.attempts += 1
    if result.ok:
        message.status = "sent"
        message.sent_at = now
        message.last_error = None
        report.messages_sent += 1
    else:
        message.last_error = result.detail
        if message.attempts >= ctx.settings.outbox_max_attempts:
            message.status = "failed"
            logger.error("giving up on %s message %s after %d attempts", template, message_id, message.attempts)
        else:
            message.next_attempt_at = now + timedelta(
                seconds=ctx.settings.outbox_retry_seconds * 2 ** (message.attempts - 1))
        report.messages_failed += 1
    session.add(message)
    session.commit()

    if result.ok and template == "invite" and signer_id:
        registry.mark_notified(session, signer_id, ctx)


def deliver_pending(session: Session, gateway: NotifierGateway, ctx: EngineContext,
                    report: SweepReport) -> None:
    now = ctx.now()
    message_ids = session.exec(
        select(OutboundMessage.id)
        .where(OutboundMessage.status == "queued", OutboundMessage.next_attempt_at <= now)
        .order_by(OutboundMessage.created_at)
        .limit(ctx.settings.sweep_batch_size)
    ).all()
    session.rollback()
    for message_id in message_ids:
        try:
            _deliver(session, gateway, message_id, ctx, report)
        except Exception as exc:
            session.rollback()
            report.errors += 1
            logger.error("delivery of message %s failed: %s", message_id, exc, exc_info=True)


def sweep(session: Session, gateway: NotifierGateway, ctx: EngineContext) -> SweepReport:
    report = SweepReport()
    expire_overdue(session, ctx, report)
    send_due_reminders(session, gateway, ctx, report)
    deliver_pending(session, gateway, ctx, report)
    logger.info(
        "sweep done: expired=%d reminders=%d/%d failed, dropped=%d messages=%d/%d failed, errors=%d",
        report.expired, report.reminders_sent, report.reminders_failed, report.reminders_dropped,
        report.messages_sent, report.messages_failed, report.errors,
    )
    return report
