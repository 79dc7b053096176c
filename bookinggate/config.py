import os
from dotenv import load_dotenv

# Load params from .env file
load_dotenv()

# Data storage
DB_PATH = os.getenv("BOOKINGGATE_DB_PATH", os.getenv("DB_PATH", "data/bookinggate.db"))

# Audit query paging
AUDIT_PAGE_DEFAULT = 50
AUDIT_PAGE_MAX = int(os.getenv("BOOKINGGATE_AUDIT_PAGE_MAX", "200"))

# Roles recorded on audit entries when the caller does not supply one
DEFAULT_ACTOR_ROLE = "admin"

# Applied when no policy version exists at any enclosing scope
ENGINE_DEFAULT_SETTINGS = {
    "deposit_type": "fixed",
    "deposit_percent": 30,
    "deposit_fixed": 150,
    "cancellation_window_hours": 72,
    "reschedule_window_hours": 72,
    "late_threshold_minutes": 30,
    "no_show_rule": "deposit forfeited",
    "cancellation_rule": "deposit forfeited",
    "deposit_refund_option": "non_refundable",
}


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "true" if default else "false")).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def get_db_path() -> str:
    """
    Resolve the database path at call time so tests and CLI flags can
    repoint storage through the environment.
    """
    return os.getenv("BOOKINGGATE_DB_PATH", DB_PATH)


def get_db_busy_timeout() -> float:
    """Seconds a writer waits for another writer's lock before giving up."""
    try:
        return max(0.0, float(os.getenv("BOOKINGGATE_DB_BUSY_TIMEOUT", "30")))
    except ValueError:
        return 30.0


def is_decision_recording_enabled() -> bool:
    """
    Controls whether resolved decisions are appended to the decision log.
    Defaults to enabled.
    """
    return _env_bool("BOOKINGGATE_RECORD_DECISIONS", True)
