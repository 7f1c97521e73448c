from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class BuildStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class Environment(str, Enum):
    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "Environment":
        return Environment.GREEN if self is Environment.BLUE else Environment.BLUE

    def environment_id(self, service: str) -> str:
        return f"{service}-{self.value}"

    @classmethod
    def of(cls, environment_id: str) -> "Environment":
        """Colour of an environment id such as ``billing-green``."""
        color = environment_id.rsplit("-", 1)[-1]
        try:
            return cls(color)
        except ValueError:
            raise ValueError(f"'{environment_id}' is not a blue/green environment id.") from None


class SwitchStrategy(str, Enum):
    GRADUAL = "gradual"
    INSTANT = "instant"


class DeploymentStatus(str, Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    HEALTH_CHECKING = "health_checking"
    SWITCHING = "switching"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {DeploymentStatus.COMPLETED, DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED}


@dataclass(frozen=True)
class ServiceNode:
    name: str
    dependencies: frozenset[str] = frozenset()


@dataclass(frozen=True)
class BuildResult:
    service: str
    status: BuildStatus
    image_id: str | None = None
    build_time_seconds: float | None = None
    size_mb: float | None = None
    error: str | None = None
    skip_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is BuildStatus.SUCCESS

    @classmethod
    def skipped(cls, service: str, reason: str) -> "BuildResult":
        return cls(service=service, status=BuildStatus.SKIPPED, skip_reason=reason)

    @classmethod
    def failed(cls, service: str, error: str) -> "BuildResult":
        return cls(service=service, status=BuildStatus.FAILED, error=error)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class HealthCheckConfig:
    path: str = "/health"
    timeout: int = field(default_factory=lambda: settings.health_timeout_s)
    retries: int = 3
    port: int | None = None


@dataclass(frozen=True)
class DeploymentConfig:
    image: str
    service: str
    replicas: int = 1
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    traffic_switch_strategy: SwitchStrategy = SwitchStrategy.GRADUAL
    rollback_on_failure: bool = True
    switch_traffic: bool = False
    version: str | None = None
    environment: Mapping[str, str] = field(default_factory=dict)

    @property
    def version_label(self) -> str:
        if self.version:
            return self.version
        # "registry:5000/app:1.2" -> "1.2"; untagged images are "latest".
        name = self.image.rsplit("/", 1)[-1]
        return name.split(":", 1)[1] if ":" in name else "latest"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DeploymentConfig":
        """Build a typed config from a loose mapping.

        Raises ValueError for malformed input (missing keys, unknown strategy).
        Semantic checks (image format, replica bounds) belong to the validator.
        """
        if not isinstance(raw, Mapping):
            raise ValueError("Deployment config must be a mapping.")
        missing = [k for k in ("image", "service") if not raw.get(k)]
        if missing:
            raise ValueError(f"Deployment config is missing: {', '.join(missing)}")

        hc_raw = raw.get("health_check") or {}
        if not isinstance(hc_raw, Mapping):
            raise ValueError("health_check must be a mapping.")
        health_check = HealthCheckConfig(
            path=str(hc_raw.get("path", "/health")),
            timeout=int(hc_raw.get("timeout", raw.get("health_check_timeout", settings.health_timeout_s))),
            retries=int(hc_raw.get("retries", 3)),
            port=int(hc_raw["port"]) if hc_raw.get("port") is not None else None,
        )

        strategy = raw.get("traffic_switch_strategy", SwitchStrategy.GRADUAL.value)
        try:
            strategy = SwitchStrategy(strategy)
        except ValueError:
            raise ValueError(f"Unknown traffic switch strategy: {strategy}") from None

        return cls(
            image=str(raw["image"]),
            service=str(raw["service"]),
            replicas=int(raw.get("replicas", 1)),
            health_check=health_check,
            traffic_switch_strategy=strategy,
            rollback_on_failure=bool(raw.get("rollback_on_failure", True)),
            switch_traffic=bool(raw.get("switch_traffic", False)),
            version=raw.get("version"),
            environment=dict(raw.get("environment") or {}),
        )


@dataclass
class DeploymentRecord:
    id: str
    service: str
    green_environment_id: str
    image: str
    version: str
    traffic_percentage: int = 0
    status: DeploymentStatus = DeploymentStatus.IDLE
    message: str = ""
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass(frozen=True)
class RollbackEvent:
    service: str
    reason: str
    initiated_by: str  # automatic|manual
    target_version: str | None = None
    timestamp: str = field(default_factory=utc_now)
