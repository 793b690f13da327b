
from typing import List, Optional
from sqlmodel import Session, select
from .models import Event
from .utils import canonical_json, sha256_bytes

GENESIS_HASH = "0" * 64

def append_event(session: Session, request_id: str, actor: str, type_: str, meta: dict,
                 ip: Optional[str] = None, ua: Optional[str] = None) -> Event:
    last = session.exec(
        select(Event).where(Event.request_id == request_id).order_by(Event.id.desc())
    ).first()
    prev_hash = last.hash if last else GENESIS_HASH
    payload = {"actor": actor, "type": type_, "meta": meta}
    event = Event(
        request_id=request_id,
        actor=actor,
        type=type_,
        meta_json=canonical_json(payload),
        prev_hash=prev_hash,
        ip=ip,
        ua=ua,
    )
    event.hash = sha256_bytes((prev_hash + event.meta_json).encode())
    session.add(event)
    # flush so the next append in this transaction chains onto this one
    session.flush()
    return event

def list_events(session: Session, request_id: str) -> List[Event]:
    return list(session.exec(
        select(Event).where(Event.request_id == request_id).order_by(Event.id)
    ).all())

def verify_chain(events: List[Event]) -> bool:
    prev_hash = GENESIS_HASH
    for event in events:
        if event.prev_hash != prev_hash:
            return False
        if sha256_bytes((prev_hash + event.meta_json).encode()) != event.hash:
            return False
        prev_hash = event.hash
    return True
