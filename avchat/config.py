"""Configuration for the AVChat credits service."""

import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Runtime environment (development | production)
DEVELOPMENT_ENV_NAMES = {"development", "dev", "local"}


def _strip_wrapping_quotes(raw_value: str) -> str:
    """Trim whitespace and optional matching single/double quotes."""
    normalized_value = raw_value.strip()
    while (
        len(normalized_value) >= 2
        and normalized_value[0] == normalized_value[-1]
        and normalized_value[0] in {"'", '"'}
    ):
        normalized_value = normalized_value[1:-1].strip()
    return normalized_value


def _optional_setting(*raw_values: str | None) -> str | None:
    """Return the first non-empty value after quote stripping."""
    for raw_value in raw_values:
        if not raw_value:
            continue
        normalized_value = _strip_wrapping_quotes(raw_value)
        if normalized_value:
            return normalized_value
    return None


def _parse_int_setting(
    raw_value: str | None,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """Parse an integer setting, falling back to default and clamping to bounds."""
    parsed = default
    if raw_value:
        try:
            parsed = int(_strip_wrapping_quotes(raw_value))
        except ValueError:
            parsed = default

    if minimum is not None:
        parsed = max(minimum, parsed)
    if maximum is not None:
        parsed = min(maximum, parsed)
    return parsed


def resolve_app_env(
    raw_avchat_env: str | None,
    raw_app_env: str | None,
    raw_environment: str | None,
) -> str:
    """Resolve runtime environment from supported env var fallbacks."""
    raw_value = raw_avchat_env or raw_app_env or raw_environment or "production"
    return _strip_wrapping_quotes(raw_value).lower()


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    """Parse a comma-separated list of CORS origins."""
    if not raw_origins:
        return []

    normalized_origins_value = _strip_wrapping_quotes(raw_origins)
    if not normalized_origins_value:
        return []

    parsed_origins: list[str] = []
    seen_origins: set[str] = set()
    for origin in normalized_origins_value.split(","):
        normalized_origin = _strip_wrapping_quotes(origin).rstrip("/")
        if not normalized_origin:
            continue
        if normalized_origin == "*":
            raise ValueError(
                "CORS_ALLOW_ORIGINS does not support '*' when credentials are enabled."
            )
        if normalized_origin not in seen_origins:
            parsed_origins.append(normalized_origin)
            seen_origins.add(normalized_origin)
    return parsed_origins


def resolve_cors_allow_origins(
    raw_origins: str | None,
    environment: str,
) -> list[str]:
    """
    Resolve CORS origins using env overrides and environment-aware defaults.

    Development defaults to localhost origins for convenience.
    Production defaults to no cross-origin access unless explicitly configured.
    """
    parsed_origins = _parse_cors_origins(raw_origins)
    if parsed_origins:
        return parsed_origins
    if environment in DEVELOPMENT_ENV_NAMES:
        return ["http://localhost:3000"]
    return []


def configure_logging(level_name: str | None = None) -> None:
    """Install a single stream handler on the package logger."""
    resolved_name = (level_name or LOG_LEVEL).upper()
    level = getattr(logging, resolved_name, logging.INFO)

    logger = logging.getLogger("avchat")
    logger.setLevel(level)
    if logger.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    logger.addHandler(handler)


AVCHAT_ENV = resolve_app_env(
    os.getenv("AVCHAT_ENV"),
    os.getenv("APP_ENV"),
    os.getenv("ENVIRONMENT"),
)
IS_DEVELOPMENT = AVCHAT_ENV in DEVELOPMENT_ENV_NAMES

LOG_LEVEL = _optional_setting(os.getenv("LOG_LEVEL")) or "INFO"

# Appwrite configuration
APPWRITE_ENDPOINT = _optional_setting(
    os.getenv("APPWRITE_ENDPOINT"),
    os.getenv("NEXT_PUBLIC_APPWRITE_ENDPOINT"),
)
APPWRITE_PROJECT_ID = _optional_setting(
    os.getenv("APPWRITE_PROJECT_ID"),
    os.getenv("NEXT_PUBLIC_APPWRITE_PROJECT_ID"),
)
APPWRITE_API_KEY = _optional_setting(os.getenv("APPWRITE_API_KEY"))

# Shared secret for admin actions and the scheduled reset trigger
ADMIN_SECRET_KEY = _optional_setting(os.getenv("ADMIN_SECRET_KEY"))

# Dodo Payments webhook signing secret (whsec_...)
DODO_WEBHOOK_SECRET = _optional_setting(
    os.getenv("DODO_PAYMENTS_WEBHOOK_KEY"),
    os.getenv("DODO_WEBHOOK_SECRET"),
)

CORS_ALLOW_ORIGINS = resolve_cors_allow_origins(
    os.getenv("CORS_ALLOW_ORIGINS"),
    AVCHAT_ENV,
)

# Credits are reset to the tier allotment once this many days have passed
CREDIT_RESET_PERIOD_DAYS = _parse_int_setting(
    os.getenv("CREDIT_RESET_PERIOD_DAYS"), 30, minimum=1
)

# Scheduled sweep paging and wall-clock budget
RESET_BATCH_SIZE = _parse_int_setting(
    os.getenv("RESET_BATCH_SIZE"), 50, minimum=1, maximum=100
)
RESET_MAX_TIME_SECONDS = _parse_int_setting(
    os.getenv("RESET_MAX_TIME_SECONDS"), 50, minimum=1
)
SWEEP_USER_TIMEOUT_SECONDS = _parse_int_setting(
    os.getenv("SWEEP_USER_TIMEOUT_SECONDS"), 10, minimum=1
)

# Admin bulk-operations bounds (batch size in users, time budget in ms)
BULK_DEFAULT_BATCH_SIZE = 25
BULK_MIN_BATCH_SIZE = 5
BULK_MAX_BATCH_SIZE = 50
BULK_DEFAULT_MAX_TIME_MS = 25000
BULK_MIN_MAX_TIME_MS = 10000
BULK_MAX_MAX_TIME_MS = 30000

# Consecutive failed subscription charges before the account is expired
SUBSCRIPTION_MAX_RETRY_COUNT = _parse_int_setting(
    os.getenv("SUBSCRIPTION_MAX_RETRY_COUNT"), 3, minimum=1
)

# Standard Webhooks timestamp tolerance
WEBHOOK_TOLERANCE_SECONDS = 300
