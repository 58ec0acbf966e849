import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./salonqueue.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    BROADCAST_BACKEND = os.getenv("BROADCAST_BACKEND", "memory").strip().lower()
    BROADCAST_CHANNEL_PREFIX = os.getenv("BROADCAST_CHANNEL_PREFIX", "salonqueue").strip()

    PUSH_GATEWAY_URL = os.getenv("PUSH_GATEWAY_URL", "").strip()
    PUSH_GATEWAY_KEY = os.getenv("PUSH_GATEWAY_KEY", "").strip()
    PUSH_TIMEOUT_SECONDS = _get_float("PUSH_TIMEOUT_SECONDS", 5.0)

    AUTH_REQUIRED = _get_bool("AUTH_REQUIRED", False)
    AUTH_SECRET_KEY = os.getenv("AUTH_SECRET_KEY", "change-this-in-prod").strip()
    AUTH_ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256").strip()
    AUTH_ISSUER = os.getenv("AUTH_ISSUER", "salonqueue").strip()
    AUTH_AUDIENCE = os.getenv("AUTH_AUDIENCE", "salonqueue-api").strip()

    WALK_IN_TOKEN_MAX_ATTEMPTS = _get_int("WALK_IN_TOKEN_MAX_ATTEMPTS", 30)
    WALK_IN_PHONE_MIN_LENGTH = _get_int("WALK_IN_PHONE_MIN_LENGTH", 10)
    DEFAULT_SERVICE_MINUTES = _get_int("DEFAULT_SERVICE_MINUTES", 30)
    DEFAULT_PRIORITY_LIMIT_PER_DAY = _get_int("DEFAULT_PRIORITY_LIMIT_PER_DAY", 5)
    QUEUE_FULL_HEADROOM = _get_int("QUEUE_FULL_HEADROOM", 10)
    WAIT_TIME_REFRESH_SECONDS = _get_int("WAIT_TIME_REFRESH_SECONDS", 30)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
