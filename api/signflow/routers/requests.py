from fastapi import APIRouter, Depends, Response, status
from ..auth import require_admin_access
from ..engine import SigningEngine, get_engine
from ..errors import IllegalTransition
from ..integrity import record_for_request
from ..models import RequestStatus
from ..schemas import CancelInput, ExtendInput, RequestCreate, RequestView, SignerInput, SignerView
from ..utils import signing_link
from ..config import APP_BASE_URL

router = APIRouter()

@router.post("", response_model=RequestView, status_code=status.HTTP_201_CREATED)
def create_request(
    data: RequestCreate,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    request = engine.create_request(data)
    return engine.get_status(request.id)

@router.get("/{request_id}", response_model=RequestView)
def get_request_status(
    request_id: str,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    return engine.get_status(request_id)

@router.post("/{request_id}/signers", response_model=SignerView, status_code=status.HTTP_201_CREATED)
def add_signer(
    request_id: str,
    data: SignerInput,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    signer = engine.add_signer(request_id, data)
    return SignerView.model_validate(signer)

@router.get("/{request_id}/links")
def signing_links(
    request_id: str,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    view = engine.get_status(request_id)
    return [
        {"signer_id": s.id, "email": s.email, "link": signing_link(s.id, request_id, APP_BASE_URL)}
        for s in view.signers
    ]

@router.post("/{request_id}/activate", response_model=RequestView)
def activate_request(
    request_id: str,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    engine.activate(request_id)
    return engine.get_status(request_id)

@router.post("/{request_id}/cancel", response_model=RequestView)
def cancel_request(
    request_id: str,
    data: CancelInput,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    engine.cancel_request(request_id, data.reason)
    return engine.get_status(request_id)

@router.post("/{request_id}/extend", response_model=RequestView)
def extend_request(
    request_id: str,
    data: ExtendInput,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    engine.extend_due_date(request_id, data.days)
    return engine.get_status(request_id)

@router.get("/{request_id}/events")
def audit_trail(
    request_id: str,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    trail = engine.audit_trail(request_id)
    return {
        "request_id": trail.request_id,
        "intact": trail.intact,
        "events": [
            {"id": e.id, "actor": e.actor, "type": e.type, "at": e.at, "ip": e.ip, "hash": e.hash}
            for e in trail.events
        ],
    }

@router.get("/{request_id}/verification")
def verification_record(
    request_id: str,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    record = record_for_request(engine.session, request_id)
    return {
        "request_id": record.request_id,
        "artifact_hash": record.artifact_hash,
        "lookup_token": record.lookup_token,
        "created_at": record.created_at,
    }

@router.get("/{request_id}/final")
def final_artifact(
    request_id: str,
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    view = engine.get_status(request_id)
    if view.status != RequestStatus.COMPLETED:
        raise IllegalTransition("final artifact not ready", {"status": view.status.value})
    data = engine.ctx.store.get_final_artifact(request_id)
    return Response(content=data, media_type="application/pdf")
