"""Outbound notifications as queued command objects.

State changes never call the transport directly. They write an
:class:`OutboundMessage` row in the same transaction; the outbox worker
(:func:`signflow.scheduler.deliver_pending`) hands it to a
:class:`NotifierGateway` later.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlmodel import Session

from .models import OutboundMessage, SignatureRequest, Signer
from .utils import canonical_json

logger = logging.getLogger(__name__)

TEMPLATES = ("invite", "reminder", "verification_code", "completed", "declined", "expired", "cancelled")


@dataclass
class Contact:
    name: str
    email: str


@dataclass
class DeliveryResult:
    ok: bool
    detail: str = ""


class NotifierGateway(Protocol):
    def send(self, contact: Contact, template: str, payload: dict) -> DeliveryResult:
        ...


def request_payload(request: SignatureRequest, **extra) -> dict:
    payload = {
        "request_id": request.id,
        "title": request.title,
        "message": request.message,
        "requester_name": request.requester_name,
        "requester_email": request.requester_email,
        "due_at": request.due_at.isoformat() if request.due_at else None,
    }
    payload.update(extra)
    return payload


def enqueue(session: Session, request: SignatureRequest, signer: Optional[Signer], template: str,
            payload: dict, now: datetime, recipient: Optional[str] = None) -> OutboundMessage:
    if template not in TEMPLATES:
        raise ValueError(f"unknown template {template!r}")
    message = OutboundMessage(
        request_id=request.id,
        signer_id=signer.id if signer else None,
        recipient=recipient or (signer.email if signer else ""),
        template=template,
        payload_json=canonical_json(payload),
        next_attempt_at=now,
    )
    session.add(message)
    logger.debug("queued %s for request %s -> %s", template, request.id, message.recipient)
    return message


def safe_send(gateway: NotifierGateway, contact: Contact, template: str, payload: dict) -> DeliveryResult:
    """Transport errors become a failed result; callers retry on their own schedule."""
    try:
        result = gateway.send(contact, template, payload)
    except Exception as exc:
        logger.warning("notifier raised for %s (%s): %s", contact.email, template, exc, exc_info=True)
        return DeliveryResult(ok=False, detail=str(exc))
    if not result.ok:
        logger.warning("notifier rejected %s (%s): %s", contact.email, template, result.detail)
    return result
