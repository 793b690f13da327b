"""Caller-facing operations over one database session.

Routers, the Celery worker and tests all go through :class:`SigningEngine`;
it only wires the component modules together and never holds state of its
own beyond the session and the :class:`EngineContext`.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from fastapi import Depends
from sqlmodel import Session

from . import integrity, ordering, registry, scheduler, state_machine, verification
from .audit import append_event, list_events, verify_chain
from .context import EngineContext, get_context
from .db import get_session
from .errors import InvalidConfiguration
from .models import Event, SignatureRequest, Signer
from .notifier import NotifierGateway
from .repository import get_request, list_signers, transactional
from .schemas import RequestCreate, RequestView, SignerInput, SignerView
from .utils import as_naive_utc, new_id

logger = logging.getLogger(__name__)


@dataclass
class AuditTrail:
    request_id: str
    events: List[Event]
    intact: bool


class SigningEngine:
    def __init__(self, session: Session, ctx: EngineContext):
        self.session = session
        self.ctx = ctx

    # ---------- requester side ----------

    def upload_document(self, data: bytes, content_type: str = "application/pdf") -> str:
        if not data:
            raise InvalidConfiguration("document is empty")
        document_id = new_id()
        self.ctx.store.put_artifact(document_id, data, content_type)
        logger.info("stored document %s (%d bytes)", document_id, len(data))
        return document_id

    def create_request(self, data: RequestCreate) -> SignatureRequest:
        now = self.ctx.now()
        due_at = as_naive_utc(data.due_at)
        if due_at is not None:
            if due_at <= now:
                raise InvalidConfiguration("due date is already in the past", {"due_at": due_at.isoformat()})
            if due_at > now + timedelta(days=self.ctx.settings.max_due_days):
                raise InvalidConfiguration(
                    f"due date must be within {self.ctx.settings.max_due_days} days",
                    {"due_at": due_at.isoformat()})

        def work():
            request = SignatureRequest(
                title=data.title.strip(),
                message=data.message,
                document_id=data.document_id,
                mode=data.mode,
                due_at=due_at,
                requires_verification=data.requires_verification,
                requester_name=data.requester_name,
                requester_email=data.requester_email,
                created_at=now,
                updated_at=now,
            )
            self.session.add(request)
            self.session.flush()
            append_event(self.session, request.id, "admin", "created",
                         {"title": request.title, "mode": request.mode.value,
                          "requires_verification": request.requires_verification})
            for signer in data.signers:
                registry.add_signer(self.session, request, signer, self.ctx)
            return request

        request = transactional(self.session, work, self.ctx.settings.concurrency_retries)
        logger.info("created request %s with %d signers", request.id, len(data.signers))
        return request

    def add_signer(self, request_id: str, data: SignerInput) -> Signer:
        return registry.register(self.session, request_id, data, self.ctx)

    def activate(self, request_id: str) -> state_machine.Transition:
        return state_machine.activate(self.session, request_id, self.ctx)

    def cancel_request(self, request_id: str, reason: Optional[str] = None) -> state_machine.Transition:
        return state_machine.cancel(self.session, request_id, self.ctx, reason)

    def extend_due_date(self, request_id: str, days: int) -> SignatureRequest:
        return state_machine.extend_due_date(self.session, request_id, days, self.ctx)

    def get_status(self, request_id: str) -> RequestView:
        request = get_request(self.session, request_id)
        signers = list_signers(self.session, request_id)
        active = {s.id for s in ordering.active_signers(request.mode, signers)}
        views = []
        for s in signers:
            view = SignerView.model_validate(s)
            view.active = s.id in active
            views.append(view)
        return RequestView(
            id=request.id,
            title=request.title,
            document_id=request.document_id,
            mode=request.mode,
            status=request.status,
            requires_verification=request.requires_verification,
            due_at=request.due_at,
            created_at=request.created_at,
            updated_at=request.updated_at,
            completed_at=request.completed_at,
            artifact_hash=request.artifact_hash,
            signers=views,
        )

    def audit_trail(self, request_id: str) -> AuditTrail:
        get_request(self.session, request_id)
        events = list_events(self.session, request_id)
        return AuditTrail(request_id, events, verify_chain(events))

    # ---------- signer side ----------

    def mark_viewed(self, signer_id: str, client_ip: Optional[str] = None,
                    user_agent: Optional[str] = None) -> Signer:
        return registry.mark_viewed(self.session, signer_id, self.ctx, client_ip, user_agent)

    def issue_verification_code(self, signer_id: str) -> verification.IssuedCode:
        return verification.issue_code(self.session, signer_id, self.ctx)

    def verify_code(self, signer_id: str, code: str,
                    client_ip: Optional[str] = None) -> verification.CodeAccepted:
        return verification.verify_code(self.session, signer_id, code, self.ctx, client_ip)

    def submit_signature(self, signer_id: str, artifact_ref: Optional[str] = None,
                         verification_token: Optional[str] = None, client_ip: Optional[str] = None,
                         user_agent: Optional[str] = None) -> Signer:
        return registry.submit_signature(self.session, signer_id, artifact_ref, verification_token, self.ctx,
                                         client_ip, user_agent)

    def decline_signature(self, signer_id: str, reason: Optional[str] = None,
                          client_ip: Optional[str] = None, user_agent: Optional[str] = None) -> Signer:
        return registry.decline(self.session, signer_id, reason, self.ctx, client_ip, user_agent)

    # ---------- public ----------

    def verify_artifact(self, lookup_token: str, artifact_bytes: bytes) -> integrity.ArtifactVerification:
        return integrity.verify(self.session, lookup_token, artifact_bytes)

    def run_sweep(self, gateway: NotifierGateway) -> scheduler.SweepReport:
        return scheduler.sweep(self.session, gateway, self.ctx)


def get_engine(session: Session = Depends(get_session),
               ctx: EngineContext = Depends(get_context)) -> SigningEngine:
    return SigningEngine(session, ctx)
