
import os
from dataclasses import dataclass, field

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./signflow.db")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "signing")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN", "admin-test-token")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signing")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# one-time codes
OTP_DIGITS = int(os.getenv("OTP_DIGITS", "6"))
OTP_INTERVAL_SECONDS = int(os.getenv("OTP_INTERVAL_SECONDS", "300"))
OTP_SKEW_WINDOWS = int(os.getenv("OTP_SKEW_WINDOWS", "1"))
OTP_MAX_FAILURES = int(os.getenv("OTP_MAX_FAILURES", "5"))
OTP_LOCKOUT_MINUTES = int(os.getenv("OTP_LOCKOUT_MINUTES", "15"))
OTP_GRANT_TTL_SECONDS = int(os.getenv("OTP_GRANT_TTL_SECONDS", "600"))

# reminders / expiration
REMINDER_BASE_HOURS = float(os.getenv("REMINDER_BASE_HOURS", "24"))
REMINDER_BACKOFF_FACTOR = float(os.getenv("REMINDER_BACKOFF_FACTOR", "2"))
REMINDER_MAX_COUNT = int(os.getenv("REMINDER_MAX_COUNT", "5"))
DEFAULT_DUE_DAYS = int(os.getenv("DEFAULT_DUE_DAYS", "30"))
MAX_DUE_DAYS = int(os.getenv("MAX_DUE_DAYS", "365"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "100"))

# outbox delivery
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_RETRY_SECONDS = int(os.getenv("OUTBOX_RETRY_SECONDS", "60"))

MAX_SIGNERS_PER_REQUEST = int(os.getenv("MAX_SIGNERS_PER_REQUEST", "50"))
CONCURRENCY_RETRIES = int(os.getenv("CONCURRENCY_RETRIES", "3"))


@dataclass
class Settings:
    """Engine tunables. Defaults come from the environment constants above."""

    otp_digits: int = OTP_DIGITS
    otp_interval_seconds: int = OTP_INTERVAL_SECONDS
    otp_skew_windows: int = OTP_SKEW_WINDOWS
    otp_max_failures: int = OTP_MAX_FAILURES
    otp_lockout_minutes: int = OTP_LOCKOUT_MINUTES
    otp_grant_ttl_seconds: int = OTP_GRANT_TTL_SECONDS
    reminder_base_hours: float = REMINDER_BASE_HOURS
    reminder_backoff_factor: float = REMINDER_BACKOFF_FACTOR
    reminder_max_count: int = REMINDER_MAX_COUNT
    default_due_days: int = DEFAULT_DUE_DAYS
    max_due_days: int = MAX_DUE_DAYS
    sweep_batch_size: int = SWEEP_BATCH_SIZE
    outbox_max_attempts: int = OUTBOX_MAX_ATTEMPTS
    outbox_retry_seconds: int = OUTBOX_RETRY_SECONDS
    max_signers_per_request: int = MAX_SIGNERS_PER_REQUEST
    concurrency_retries: int = CONCURRENCY_RETRIES
    secret_key: str = field(default=SECRET_KEY, repr=False)

    def __post_init__(self):
        from .errors import InvalidConfiguration

        if self.otp_digits < 6:
            raise InvalidConfiguration("one-time codes need at least 6 digits")
        if self.otp_max_failures < 1:
            raise InvalidConfiguration("otp_max_failures must be positive")
        if self.concurrency_retries < 1:
            raise InvalidConfiguration("concurrency_retries must be positive")
