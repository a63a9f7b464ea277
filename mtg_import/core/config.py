"""Application configuration. Load from environment."""

import os

from dotenv import load_dotenv

load_dotenv()

SCRYFALL_API_URL = "https://api.scryfall.com"


def _get_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def get_database_url() -> str:
    """Return DATABASE_URL from environment. Raises if missing."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    return url


def get_log_level() -> str:
    return os.environ.get("LOG_LEVEL", "INFO").upper()


# --- Scryfall (upstream) ---


def get_scryfall_api_url() -> str:
    return os.environ.get("SCRYFALL_API_URL", SCRYFALL_API_URL).rstrip("/")


def get_scryfall_contact_email() -> str | None:
    """Contact email for the User-Agent header (requested by Scryfall TOS)."""
    return os.environ.get("SCRYFALL_CONTACT_EMAIL") or None


def get_scryfall_rate_limit() -> tuple[int, int]:
    """Return (max_per_second, min_interval_ms)."""
    return (
        _get_int("SCRYFALL_MAX_PER_SECOND", 10),
        _get_int("SCRYFALL_MIN_INTERVAL_MS", 100),
    )


def get_bulk_cache_dir() -> str:
    return os.environ.get("BULK_CACHE_DIR", "data/bulk")


def get_mtgjson_cache_dir() -> str:
    return os.environ.get("MTGJSON_CACHE_DIR", "data/mtgjson")


def get_bulk_cache_ttl_seconds() -> int:
    return _get_int("BULK_CACHE_TTL_HOURS", 24) * 3600


# --- Saleor (downstream) ---


def get_saleor_api_url() -> str:
    """Return SALEOR_API_URL. Raises if missing."""
    url = os.environ.get("SALEOR_API_URL")
    if not url:
        raise RuntimeError("SALEOR_API_URL environment variable is required for imports")
    return url


def get_saleor_app_token() -> str | None:
    return os.environ.get("SALEOR_APP_TOKEN") or None


# --- Import tuning ---


def get_import_batch_size() -> int:
    return _get_int("IMPORT_BATCH_SIZE", 25)


def get_import_concurrency() -> int:
    return _get_int("IMPORT_CONCURRENCY", 3)


def get_import_workers() -> int:
    return _get_int("IMPORT_WORKERS", 1)


def get_circuit_breaker_settings() -> tuple[int, float, int]:
    """Return (threshold, cooldown_seconds, max_retries)."""
    return (
        _get_int("CIRCUIT_BREAKER_THRESHOLD", 5),
        _get_int("CIRCUIT_BREAKER_COOLDOWN_MS", 30000) / 1000.0,
        _get_int("CIRCUIT_BREAKER_MAX_RETRIES", 3),
    )


# --- Orphan recovery ---


def get_orphan_threshold_minutes() -> int:
    return _get_int("ORPHAN_JOB_THRESHOLD_MINUTES", 10)


def get_orphan_recovery_interval_minutes() -> int:
    """0 disabilita il controllo periodico (resta quello all'avvio)."""
    return _get_int("ORPHAN_RECOVERY_INTERVAL_MINUTES", 0)


def get_cron_secret() -> str | None:
    return os.environ.get("CRON_SECRET") or None
