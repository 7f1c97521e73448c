"""Collaborator contracts consumed by the scheduler and the deployer.

Production adapters live in docker_ops, gateway and health; tests pass
their own fakes. Anything with matching methods satisfies these protocols.
"""
from __future__ import annotations

from typing import Any, Mapping, Protocol

from .models import BuildResult, DeploymentConfig


class ServiceCatalog(Protocol):
    def status(self, name: str) -> dict[str, Any]:
        """Return {"exists": bool, "path": str | None}."""
        ...


class ContainerBuilder(Protocol):
    def build(self, name: str) -> BuildResult:
        ...

    def inspect(self, name: str) -> dict[str, Any] | None:
        """Return {"image_id", "created" (datetime), "size_mb"} or None if never built."""
        ...


class ContainerRuntime(Protocol):
    def provision(
        self,
        service: str,
        image: str,
        environment_id: str,
        env: Mapping[str, str] | None = None,
        health_path: str = "/health",
        port: int | None = None,
    ) -> dict[str, Any]:
        """Start ``image`` as ``environment_id``; returns {"status", "environment_id"}."""
        ...

    def wait_healthy(self, environment_id: str, timeout: float) -> dict[str, Any]:
        ...

    def restart(self, environment_id: str) -> dict[str, Any]:
        ...

    def remove(self, environment_id: str) -> None:
        ...

    def get_previous_deployment(self, service: str) -> dict[str, Any]:
        ...

    def get_deployment_history(self, service: str) -> dict[str, dict[str, Any]]:
        """Map version label -> {"environment_id", "image", ...}."""
        ...

    def get_service_status(self, service: str) -> dict[str, dict[str, Any]]:
        """Return {"blue": {"status": ...}, "green": {"status": ...}}."""
        ...


class LoadBalancer(Protocol):
    def set_traffic_percentage(self, service: str, environment_id: str, percentage: int) -> dict[str, Any]:
        ...

    def switch_traffic(self, service: str, from_env: str | None, to_env: str) -> dict[str, Any]:
        ...

    def switch_traffic_instant(self, service: str, from_env: str | None, to_env: str) -> dict[str, Any]:
        ...

    def revert_traffic(self, service: str, to: str) -> dict[str, Any]:
        ...

    def get_current_target(self, service: str) -> str | None:
        ...

    def get_traffic_distribution(self, service: str) -> dict[str, int]:
        ...


class HealthMonitor(Protocol):
    def check_service_health(self, environment_id: str) -> dict[str, Any]:
        ...

    def monitor_traffic_metrics(self, environment_id: str, duration: float) -> dict[str, Any]:
        """Return {"error_rate": float, "response_time": float} observed over ``duration`` seconds."""
        ...

    def validate_service_metrics(self, environment_id: str) -> dict[str, Any]:
        """Return {"healthy": bool, ...} from CPU/memory/error indicators."""
        ...


class DeploymentValidator(Protocol):
    def validate_deployment_config(self, config: DeploymentConfig) -> dict[str, Any]:
        """Return {"valid": bool, "errors": [str, ...]}."""
        ...
