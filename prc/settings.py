from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int_list(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    """Parse a comma separated list such as "10,25,50,75,100"."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        values = tuple(int(x) for x in raw.split(",") if x.strip())
    except ValueError:
        return default
    return values or default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("PRC_DB_PATH", "prc.db")
    docker_network: str = os.getenv("PRC_DOCKER_NETWORK", "prc")
    service_port: int = _env_int("PRC_SERVICE_PORT", 8080)

    # Builds
    source_root: str = os.getenv("PRC_SOURCE_ROOT", ".")
    dependencies_file: str | None = os.getenv("PRC_DEPENDENCIES_FILE")
    image_prefix: str = os.getenv("PRC_IMAGE_PREFIX", "")
    max_build_workers: int = _env_int("PRC_MAX_BUILD_WORKERS", 4)

    # Health gating
    health_timeout_s: int = _env_int("PRC_HEALTH_TIMEOUT_S", 60)
    health_poll_s: float = _env_float("PRC_HEALTH_POLL_S", 2.0)
    max_cpu_percent: float = _env_float("PRC_MAX_CPU_PERCENT", 90.0)
    max_memory_percent: float = _env_float("PRC_MAX_MEMORY_PERCENT", 90.0)

    # Traffic switching
    error_rate_threshold: float = _env_float("PRC_ERROR_RATE_THRESHOLD", 0.10)
    traffic_steps: tuple[int, ...] = _env_int_list("PRC_TRAFFIC_STEPS", (10, 25, 50, 75, 100))
    observation_window_s: int = _env_int("PRC_OBSERVATION_WINDOW_S", 30)
    step_settle_s: float = _env_float("PRC_STEP_SETTLE_S", 0.0)

    # Email alerting (optional)
    enable_email: bool = _env_bool("PRC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("PRC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("PRC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("PRC_SMTP_USER")
    smtp_password: str | None = os.getenv("PRC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("PRC_EMAIL_FROM")
    email_to: str | None = os.getenv("PRC_EMAIL_TO")


settings = Settings()
