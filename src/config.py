import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# .env is read from the working directory the process was started in.
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


@dataclass(frozen=True)
class Config:
    # HTTP API
    api_host: str
    api_port: int
    api_key: str  # Shared secret for public claim/lead endpoints
    admin_api_key: str  # Shared secret for admin endpoints
    # SQLite
    sqlite_busy_timeout_ms: int
    # Claims
    claim_code_ttl_hours: int
    claim_max_code_attempts: int
    claim_expiry_sweep_interval_sec: int
    # Lead billing
    billing_max_attempts: int
    billing_retry_delay_ms: int
    billing_deliver_on_insufficient_funds: bool
    default_lead_price_cents: int
    ledger_reconcile_interval_sec: int
    # Notification outbox
    notify_webhook_url: str
    notify_webhook_timeout_sec: float
    notify_poll_interval_sec: float


def clean_env_str(value: str | None, default: str = "") -> str:
    """Strip whitespace and wrapping quotes from an env value."""
    if value is None:
        return default
    return value.strip().strip('"').strip("'")


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean env value."""
    if value is None:
        return default
    value = clean_env_str(value).lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None, default: int) -> int:
    """Parse an int env value, falling back to default on empty/invalid input."""
    if value is None:
        return default
    value = clean_env_str(value)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    value = clean_env_str(value)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


CFG = Config(
    api_host=clean_env_str(os.getenv("API_HOST"), "0.0.0.0") or "0.0.0.0",
    api_port=parse_int(os.getenv("API_PORT"), 8080),
    api_key=clean_env_str(os.getenv("API_KEY")),
    admin_api_key=clean_env_str(os.getenv("ADMIN_API_KEY")),
    sqlite_busy_timeout_ms=max(100, parse_int(os.getenv("SQLITE_BUSY_TIMEOUT_MS"), 5000)),
    claim_code_ttl_hours=max(1, parse_int(os.getenv("CLAIM_CODE_TTL_HOURS"), 24)),
    claim_max_code_attempts=max(1, parse_int(os.getenv("CLAIM_MAX_CODE_ATTEMPTS"), 5)),
    claim_expiry_sweep_interval_sec=max(30, parse_int(os.getenv("CLAIM_EXPIRY_SWEEP_INTERVAL_SEC"), 300)),
    billing_max_attempts=max(1, parse_int(os.getenv("BILLING_MAX_ATTEMPTS"), 3)),
    billing_retry_delay_ms=max(0, parse_int(os.getenv("BILLING_RETRY_DELAY_MS"), 5)),
    billing_deliver_on_insufficient_funds=parse_bool(
        os.getenv("BILLING_DELIVER_ON_INSUFFICIENT_FUNDS"), True
    ),
    default_lead_price_cents=max(0, parse_int(os.getenv("DEFAULT_LEAD_PRICE_CENTS"), 500)),
    ledger_reconcile_interval_sec=max(60, parse_int(os.getenv("LEDGER_RECONCILE_INTERVAL_SEC"), 3600)),
    notify_webhook_url=clean_env_str(os.getenv("NOTIFY_WEBHOOK_URL")),
    notify_webhook_timeout_sec=max(0.5, parse_float(os.getenv("NOTIFY_WEBHOOK_TIMEOUT_SEC"), 5.0)),
    notify_poll_interval_sec=max(0.2, parse_float(os.getenv("NOTIFY_POLL_INTERVAL_SEC"), 1.0)),
)

# DB path: from env or relative to the working directory.
DB_PATH = clean_env_str(os.getenv("DB_PATH")) or str(Path.cwd() / "listings.db")


def is_api_auth_enabled() -> bool:
    """Public endpoints require a key only when API_KEY is configured."""
    return bool(CFG.api_key)


def is_webhook_delivery_enabled() -> bool:
    """Outbox jobs are posted to a webhook only when a URL is configured."""
    return bool(CFG.notify_webhook_url)
