from fastapi import APIRouter, Depends, File, UploadFile
from ..engine import SigningEngine, get_engine
from ..errors import RecordNotFound
from ..schemas import ArtifactCheck
from ..utils import sha256_bytes

router = APIRouter()

@router.post("/{lookup_token}", response_model=ArtifactCheck)
async def verify_artifact(
    lookup_token: str,
    file: UploadFile = File(...),
    engine: SigningEngine = Depends(get_engine),
):
    data = await file.read()
    try:
        result = engine.verify_artifact(lookup_token, data)
    except RecordNotFound:
        # an unknown token is a failed verification, not a client error
        return ArtifactCheck(valid=False, found=False, actual_hash=sha256_bytes(data))
    return ArtifactCheck(
        valid=result.match,
        found=True,
        request_id=result.request_id,
        expected_hash=result.expected_hash,
        actual_hash=result.actual_hash,
        sealed_at=result.sealed_at,
    )
