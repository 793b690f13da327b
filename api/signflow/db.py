
import logging
from sqlmodel import SQLModel, create_engine, Session
from .config import DATABASE_URL

logger = logging.getLogger(__name__)

def _connect_args(url: str) -> dict:
    # worker threads share the sqlite file
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}

engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=_connect_args(DATABASE_URL))

def init_db(bind=None):
    from .models import SignatureRequest, Signer, VerificationRecord, ReminderSchedule, OutboundMessage, Event
    target = bind or engine
    SQLModel.metadata.create_all(target)
    logger.info("database schema ready (%s)", target.url.render_as_string(hide_password=True))

def get_session():
    with Session(engine) as session:
        yield session
