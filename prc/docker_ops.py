from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import docker
from docker.errors import APIError, BuildError as DockerBuildError, DockerException, ImageNotFound, NotFound

from . import db
from .db import log_event
from .errors import BuildError, ContainerRuntimeError, ContainerStartupError
from .health import check_health
from .interfaces import ServiceCatalog
from .models import BuildResult, BuildStatus, Environment
from .settings import settings
from .validation import validate_service_name


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available(client_factory: Callable[[], Any] = _client) -> bool:
    try:
        c = client_factory()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network(client: Any) -> None:
    try:
        client.networks.get(settings.docker_network)
    except NotFound:
        client.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.")


def container_name(environment_id: str) -> str:
    return f"prc-{environment_id}"


def container_http_base(name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{name}:{int(internal_port)}"


def image_tag(service: str) -> str:
    return f"{settings.image_prefix}{service}:latest"


def _parse_created(raw: str) -> datetime:
    # Docker reports nanosecond precision ("2024-05-01T10:00:00.123456789Z").
    return datetime.strptime(raw[:19], "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)


class DockerBuilder:
    """Builds one image per service from its source directory."""

    def __init__(self, catalog: ServiceCatalog, client_factory: Callable[[], Any] = _client):
        self.catalog = catalog
        self._client = client_factory

    def build(self, name: str) -> BuildResult:
        repo = self.catalog.status(name)
        if not repo.get("exists"):
            raise BuildError(f"No build context for '{name}'")
        tag = image_tag(name)
        t0 = time.time()
        try:
            image, _logs = self._client().images.build(path=repo["path"], tag=tag, rm=True)
        except DockerBuildError as e:
            return BuildResult.failed(name, f"docker build failed: {e.msg}")
        except APIError as e:
            raise BuildError(f"Docker daemon rejected build of '{name}': {e}") from e

        return BuildResult(
            service=name,
            status=BuildStatus.SUCCESS,
            image_id=image.id,
            build_time_seconds=round(time.time() - t0, 2),
            size_mb=round(image.attrs.get("Size", 0) / (1024 * 1024), 2),
        )

    def inspect(self, name: str) -> dict[str, Any] | None:
        try:
            image = self._client().images.get(image_tag(name))
        except ImageNotFound:
            return None
        return {
            "image_id": image.id,
            "created": _parse_created(image.attrs["Created"]),
            "size_mb": round(image.attrs.get("Size", 0) / (1024 * 1024), 2),
        }


class DockerRuntime:
    """Blue/green environments as labelled containers on the PRC network.

    Containers are named ``prc-<service>-<color>`` so the traffic table's
    environment ids map directly onto container DNS names.
    """

    def __init__(self, client_factory: Callable[[], Any] = _client):
        self._client = client_factory
        self._endpoints: dict[str, tuple[int, str]] = {}  # environment_id -> (port, health_path)

    def provision(
        self,
        service: str,
        image: str,
        environment_id: str,
        env: Mapping[str, str] | None = None,
        health_path: str = "/health",
        port: int | None = None,
    ) -> dict[str, Any]:
        validate_service_name(service)
        if not docker_available(self._client):
            raise ContainerStartupError("Docker is not available. Start the docker daemon and try again.")

        c = self._client()
        name = container_name(environment_id)
        try:
            ensure_network(c)
            self._remove_quietly(c, name)
            container = c.containers.run(
                image,
                detach=True,
                name=name,
                environment=dict(env or {}),
                network=settings.docker_network,
                labels={"prc.service": service, "prc.environment": environment_id},
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise ContainerStartupError(f"Failed to start {name} from {image}: {e}") from e

        self._endpoints[environment_id] = (port or settings.service_port, health_path)
        log_event("INFO", f"Started container {name} from image {image}", service_name=service)
        return {"status": "running", "environment_id": environment_id, "container_id": container.id}

    def health_url(self, environment_id: str) -> str:
        port, path = self._endpoints.get(environment_id, (settings.service_port, "/health"))
        return f"{container_http_base(container_name(environment_id), port)}{path}"

    def wait_healthy(self, environment_id: str, timeout: float) -> dict[str, Any]:
        t0 = time.time()
        detail = "Timed out waiting for health"
        while time.time() - t0 < timeout:
            if self._status(environment_id) not in {"running", "created", "restarting"}:
                return {"healthy": False, "detail": "Container is not running"}
            ok, msg, _ = check_health(self.health_url(environment_id))
            if ok:
                return {"healthy": True, "detail": msg}
            detail = msg
            time.sleep(settings.health_poll_s)
        return {"healthy": False, "detail": detail}

    def restart(self, environment_id: str) -> dict[str, Any]:
        try:
            cont = self._client().containers.get(container_name(environment_id))
            cont.restart()
        except NotFound as e:
            raise ContainerRuntimeError(f"No container for environment {environment_id}") from e
        except APIError as e:
            raise ContainerRuntimeError(f"Restart of {environment_id} failed: {e}") from e
        return {"status": "restarted", "environment_id": environment_id}

    def remove(self, environment_id: str) -> None:
        try:
            self._remove_quietly(self._client(), container_name(environment_id))
        except APIError as e:
            raise ContainerRuntimeError(f"Removal of {environment_id} failed: {e}") from e
        self._endpoints.pop(environment_id, None)

    def container_stats(self, environment_id: str) -> dict[str, float] | None:
        try:
            cont = self._client().containers.get(container_name(environment_id))
            raw = cont.stats(stream=False)
        except (NotFound, APIError):
            return None
        cpu = raw.get("cpu_stats", {})
        pre = raw.get("precpu_stats", {})
        cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - pre.get("cpu_usage", {}).get("total_usage", 0)
        sys_delta = cpu.get("system_cpu_usage", 0) - pre.get("system_cpu_usage", 0)
        cpus = cpu.get("online_cpus") or len(cpu.get("cpu_usage", {}).get("percpu_usage") or []) or 1
        mem = raw.get("memory_stats", {})
        limit = mem.get("limit") or 0
        return {
            "cpu_percent": round(cpu_delta / sys_delta * cpus * 100.0, 2) if sys_delta > 0 else 0.0,
            "memory_percent": round(mem.get("usage", 0) / limit * 100.0, 2) if limit else 0.0,
        }

    def get_deployment_history(self, service: str) -> dict[str, dict[str, Any]]:
        history: dict[str, dict[str, Any]] = {}
        for row in db.list_deployments(service, status="completed"):
            # Newest first: keep the most recent deployment of each version.
            history.setdefault(
                row.version,
                {"environment_id": row.environment_id, "image": row.image, "deployed_at": row.started_at},
            )
        return history

    def get_previous_deployment(self, service: str) -> dict[str, Any]:
        rows = db.list_deployments(service, status="completed")
        if len(rows) < 2:
            return {"status": "not_found"}
        prev = rows[1]
        return {
            "status": "found",
            "version": prev.version,
            "image": prev.image,
            "environment_id": prev.environment_id,
        }

    def get_service_status(self, service: str) -> dict[str, dict[str, Any]]:
        return {color.value: {"status": self._status(color.environment_id(service))} for color in Environment}

    def _status(self, environment_id: str) -> str:
        if not docker_available(self._client):
            return "unknown"
        try:
            cont = self._client().containers.get(container_name(environment_id))
            cont.reload()
            return cont.status
        except NotFound:
            return "not_found"

    @staticmethod
    def _remove_quietly(client: Any, name: str) -> None:
        try:
            client.containers.get(name).remove(force=True)
        except NotFound:
            return
