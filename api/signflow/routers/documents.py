from fastapi import APIRouter, Depends, File, UploadFile, status
from ..auth import require_admin_access
from ..engine import SigningEngine, get_engine
from ..utils import sha256_bytes

router = APIRouter()

@router.post("", status_code=status.HTTP_201_CREATED)
async def upload_document(
    file: UploadFile = File(...),
    engine: SigningEngine = Depends(get_engine),
    admin=Depends(require_admin_access),
):
    data = await file.read()
    document_id = engine.upload_document(data, file.content_type or "application/pdf")
    return {"document_id": document_id, "filename": file.filename, "sha256": sha256_bytes(data)}
