import logging
from dataclasses import asdict
from celery import Celery
from sqlmodel import Session
from .config import REDIS_URL, SWEEP_INTERVAL_SECONDS, WORKER_QUEUE
from .context import get_context
from .db import engine
from .email import EmailNotifier
from .scheduler import SweepReport, deliver_pending, sweep

logger = logging.getLogger(__name__)

cel = Celery("signflow", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.task_default_queue = WORKER_QUEUE
cel.conf.beat_schedule = {
    "signflow-sweep": {
        "task": "signflow.sweep",
        "schedule": float(SWEEP_INTERVAL_SECONDS),
        "options": {"queue": WORKER_QUEUE},
    },
}

@cel.task(name="signflow.sweep", queue=WORKER_QUEUE)
def run_sweep():
    with Session(engine) as session:
        report = sweep(session, EmailNotifier(), get_context())
    return asdict(report)

@cel.task(name="signflow.deliver_outbox", queue=WORKER_QUEUE)
def deliver_outbox():
    """Flush queued notifications without waiting for the next sweep."""
    report = SweepReport()
    with Session(engine) as session:
        deliver_pending(session, EmailNotifier(), get_context(), report)
    logger.info("outbox flush: sent=%d failed=%d", report.messages_sent, report.messages_failed)
    return asdict(report)
