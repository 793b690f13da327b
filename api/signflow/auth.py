from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status
from itsdangerous import BadSignature
from sqlmodel import Session

from .config import ADMIN_ACCESS_TOKEN
from .db import get_session
from .models import Signer
from .utils import read_token


@dataclass
class SignerLink:
    signer_id: str
    request_id: str


def require_admin_access(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
) -> str:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    if ADMIN_ACCESS_TOKEN and candidate == ADMIN_ACCESS_TOKEN:
        return "admin"
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")


def resolve_signer_link(token: str, session: Session = Depends(get_session)) -> SignerLink:
    """Decode the emailed signing link and check it still points at a real signer."""
    try:
        data = read_token(token)
    except BadSignature:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    signer = session.get(Signer, data.get("signer_id"))
    if not signer or signer.request_id != data.get("request_id"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return SignerLink(signer_id=signer.id, request_id=signer.request_id)
