# backend/reportflow/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


PERSISTENCE_TIMEOUT_SECONDS = float(os.environ.get("PERSISTENCE_TIMEOUT_SECONDS", "5"))


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///reportflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Waiting for a pooled connection is bounded; callers get a timeout, not a hang.
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_timeout": PERSISTENCE_TIMEOUT_SECONDS}
    PERSISTENCE_TIMEOUT_SECONDS = PERSISTENCE_TIMEOUT_SECONDS

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Audit integrity hash key; falls back to SECRET_KEY when unset
    AUDIT_INTEGRITY_SECRET = os.environ.get("AUDIT_INTEGRITY_SECRET")

    # Notification delivery
    NOTIFY_MAX_ATTEMPTS = int(os.environ.get("NOTIFY_MAX_ATTEMPTS", "3"))
    NOTIFY_PUBLISH_TIMEOUT_SECONDS = float(os.environ.get("NOTIFY_PUBLISH_TIMEOUT_SECONDS", "5"))
    NOTIFY_RETRY_BACKEND = os.environ.get("NOTIFY_RETRY_BACKEND", "memory")  # memory | database
    NOTIFY_RETRY_INTERVAL_SECONDS = float(os.environ.get("NOTIFY_RETRY_INTERVAL_SECONDS", "30"))
    # A claimed (IN_FLIGHT) database retry row older than this is swept again
    NOTIFY_RETRY_CLAIM_TIMEOUT_SECONDS = float(os.environ.get("NOTIFY_RETRY_CLAIM_TIMEOUT_SECONDS", "300"))
    NOTIFY_RETRY_WORKER_ENABLED = _env_bool("NOTIFY_RETRY_WORKER_ENABLED", True)
    NOTIFICATION_LIST_LIMIT = int(os.environ.get("NOTIFICATION_LIST_LIMIT", "100"))

    # Live channel reconnect policy (bounded exponential backoff)
    LIVE_RESUBSCRIBE_BASE_DELAY_SECONDS = float(os.environ.get("LIVE_RESUBSCRIBE_BASE_DELAY_SECONDS", "5"))
    LIVE_RESUBSCRIBE_MAX_DELAY_SECONDS = float(os.environ.get("LIVE_RESUBSCRIBE_MAX_DELAY_SECONDS", "60"))

    # Domain fields that must be filled before a draft can be submitted
    REPORT_REQUIRED_FIELDS = _env_list(
        "REPORT_REQUIRED_FIELDS",
        "complaint_no,complaint_type,project_phase,system_type,date,zone,"
        "location,nature_of_complaint,field_team_remarks",
    )
