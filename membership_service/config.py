import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

CASHFREE_SANDBOX_URL = "https://sandbox.cashfree.com/pg"
CASHFREE_PRODUCTION_URL = "https://api.cashfree.com/pg"

PLAN_AMOUNT_ENV = {
    "premium": ("PREMIUM_AMOUNT", "1"),
    "premium-plus": ("PREMIUM_PLUS_AMOUNT", "2"),
}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def database_url() -> str:
    return os.getenv("DATABASE_URL") or "sqlite:///./membership.db"


def db_pool_timeout() -> float:
    return _float_env("DB_POOL_TIMEOUT", 10.0)


def cashfree_base_url() -> str:
    if os.getenv("CASHFREE_MODE", "").upper() == "LIVE":
        return CASHFREE_PRODUCTION_URL
    return CASHFREE_SANDBOX_URL


def cashfree_credentials() -> tuple[str, str]:
    return os.getenv("CASHFREE_APP_ID", ""), os.getenv("CASHFREE_SECRET_KEY", "")


def cashfree_api_version() -> str:
    return os.getenv("CASHFREE_API_VERSION") or "2023-08-01"


def cashfree_timeout() -> float:
    return _float_env("CASHFREE_TIMEOUT", 10.0)


def webhook_secret() -> str | None:
    return os.getenv("CASHFREE_WEBHOOK_SECRET") or None


def webhook_tolerance() -> int:
    """Seconds a signed webhook timestamp may drift from now; 0 disables the check."""
    return max(_int_env("WEBHOOK_TOLERANCE_SECONDS", 300), 0)


def app_url() -> str:
    return (os.getenv("APP_URL") or "http://localhost:3000").rstrip("/")


def currency() -> str:
    return os.getenv("CURRENCY") or "INR"


def plan_amount(plan: str) -> float:
    """Resolve a plan type to its configured order amount.

    Raises KeyError for plans that are not configured.
    """
    env_name, default = PLAN_AMOUNT_ENV[plan]
    return _float_env(env_name, float(default))


def jwt_secret() -> str | None:
    return os.getenv("JWT_SECRET") or None


def rate_limit() -> tuple[int, int]:
    """Return (max requests, window seconds) for the user details endpoint."""
    return (
        _int_env("RATE_LIMIT_MAX_REQUESTS", 30),
        max(_int_env("RATE_LIMIT_WINDOW_SECONDS", 60), 1),
    )


def log_level() -> str:
    return (os.getenv("LOG_LEVEL") or "INFO").upper()


def json_logs() -> bool:
    return (os.getenv("LOG_JSON") or "true").lower() not in {"0", "false", "no"}
