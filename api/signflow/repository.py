"""Row access shared by the registry, the state machine and the scheduler.

Every write to a version-stamped row goes through :func:`compare_and_set`,
which issues ``UPDATE ... WHERE pk = :pk AND version = :seen`` and bumps the
stamp. A miss means another worker got there first.
"""

import logging
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select

from .errors import ConcurrentModification, NotFound
from .models import ReminderSchedule, SignatureRequest, Signer

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_request(session: Session, request_id: str) -> SignatureRequest:
    request = session.get(SignatureRequest, request_id)
    if not request:
        raise NotFound("signature request not found", {"request_id": request_id})
    return request


def get_signer(session: Session, signer_id: str) -> Signer:
    signer = session.get(Signer, signer_id)
    if not signer:
        raise NotFound("signer not found", {"signer_id": signer_id})
    return signer


def list_signers(session: Session, request_id: str) -> List[Signer]:
    return list(session.exec(
        select(Signer).where(Signer.request_id == request_id).order_by(Signer.position, Signer.created_at)
    ).all())


def get_schedule(session: Session, signer_id: str) -> Optional[ReminderSchedule]:
    return session.get(ReminderSchedule, signer_id)


def compare_and_set(session: Session, obj, expected_version: Optional[int] = None, **values) -> None:
    """Version-checked update of ``obj``; the in-memory copy is synced on success.

    ``expected_version`` overrides the stamp read from ``obj``, for callers that
    released their transaction between reading and writing.
    """
    model = type(obj)
    pk_col = sa_inspect(model).primary_key[0]
    pk_val = getattr(obj, pk_col.key)
    seen = obj.version if expected_version is None else expected_version
    stmt = (
        update(model)
        .where(pk_col == pk_val, model.version == seen)
        .values(version=seen + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)
    if result.rowcount != 1:
        raise ConcurrentModification(
            f"{model.__tablename__} {pk_val} changed concurrently",
            {"table": model.__tablename__, "id": pk_val, "seen_version": seen},
        )
    for key, value in values.items():
        set_committed_value(obj, key, value)
    set_committed_value(obj, "version", seen + 1)


def delete_schedules(session: Session, request_id: str = None, signer_id: str = None) -> None:
    stmt = delete(ReminderSchedule)
    if signer_id is not None:
        stmt = stmt.where(ReminderSchedule.signer_id == signer_id)
    elif request_id is not None:
        stmt = stmt.where(ReminderSchedule.request_id == request_id)
    else:
        raise ValueError("request_id or signer_id required")
    session.exec(stmt.execution_options(synchronize_session=False))


def transactional(session: Session, work: Callable[[], T], retries: int = 3) -> T:
    """Run ``work`` and commit, retrying on version conflicts.

    Each retry starts from a rolled-back session, so ``work`` must re-read
    everything it touches.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = work()
            session.commit()
            return result
        except ConcurrentModification as exc:
            session.rollback()
            if attempt >= retries:
                logger.warning("giving up after %d conflicting attempts: %s", attempt, exc.message)
                raise
            logger.info("version conflict (attempt %d/%d), retrying: %s", attempt, retries, exc.message)
        except Exception:
            session.rollback()
            raise
