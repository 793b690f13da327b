from typing import Optional
from fastapi import APIRouter, Depends, Request, Response
from ..auth import SignerLink, resolve_signer_link
from ..engine import SigningEngine, get_engine
from ..schemas import CodeSubmit, DeclineInput, SignatureSubmit, SignerView

router = APIRouter()

def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None

def _signer_state(engine: SigningEngine, link: SignerLink) -> dict:
    view = engine.get_status(link.request_id)
    me = next(s for s in view.signers if s.id == link.signer_id)
    waiting_on = len([s for s in view.signers if s.id != me.id and s.signed_at is None])
    return {
        "request": view.model_dump(exclude={"signers"}),
        "signer": me,
        "waiting_on": waiting_on,
    }

@router.get("/{token}")
def load_signing_session(
    request: Request,
    link: SignerLink = Depends(resolve_signer_link),
    engine: SigningEngine = Depends(get_engine),
):
    engine.mark_viewed(link.signer_id, _client_ip(request), request.headers.get("user-agent"))
    return _signer_state(engine, link)

@router.get("/{token}/document")
def get_document(
    link: SignerLink = Depends(resolve_signer_link),
    engine: SigningEngine = Depends(get_engine),
):
    view = engine.get_status(link.request_id)
    data = engine.ctx.store.get_artifact(view.document_id)
    return Response(content=data, media_type="application/pdf")

@router.post("/{token}/code")
def issue_code(
    link: SignerLink = Depends(resolve_signer_link),
    engine: SigningEngine = Depends(get_engine),
):
    issued = engine.issue_verification_code(link.signer_id)
    # the code itself only travels through the notifier
    return {"sent": True, "expires_at": issued.expires_at}

@router.post("/{token}/code/verify")
def verify_code(
    payload: CodeSubmit,
    request: Request,
    link: SignerLink = Depends(resolve_signer_link),
    engine: SigningEngine = Depends(get_engine),
):
    accepted = engine.verify_code(link.signer_id, payload.code, _client_ip(request))
    return {"verified": True, "verification_token": accepted.grant_token}

@router.post("/{token}/submit")
def submit_signature(
    payload: SignatureSubmit,
    request: Request,
    link: SignerLink = Depends(resolve_signer_link),
    engine: SigningEngine = Depends(get_engine),
):
    engine.submit_signature(
        link.signer_id,
        artifact_ref=payload.artifact_ref,
        verification_token=payload.verification_token,
        client_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _signer_state(engine, link)

@router.post("/{token}/decline")
def decline_signature(
    payload: DeclineInput,
    request: Request,
    link: SignerLink = Depends(resolve_signer_link),
    engine: SigningEngine = Depends(get_engine),
):
    engine.decline_signature(
        link.signer_id,
        reason=payload.reason,
        client_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _signer_state(engine, link)
