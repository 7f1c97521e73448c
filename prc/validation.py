from __future__ import annotations

import re
from typing import Any

from .models import DeploymentConfig

SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
VERSION_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,63}$", re.IGNORECASE)
IMAGE_RE = re.compile(
    r"^([a-z0-9.\-]+(:\d+)?/)?"  # optional registry[:port]/
    r"[a-z0-9][a-z0-9._\-/]*"  # repository path
    r"(:[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127})?"  # tag
    r"(@sha256:[a-f0-9]{64})?$"  # digest
)
MAX_REPLICAS = 50


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_version(version: str) -> None:
    if not VERSION_RE.match(version):
        raise ValueError("Invalid version string. Use letters/numbers and -._ (max 64 chars).")


def validate_image(image: str) -> None:
    if not IMAGE_RE.match(image) or ".." in image:
        raise ValueError(f"Invalid image reference '{image}'. Expected [registry/]name[:tag][@sha256:digest].")


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so health probes cannot be pointed at arbitrary hosts.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


class ConfigValidator:
    """Checks a DeploymentConfig before anything is provisioned."""

    def validate_deployment_config(self, config: DeploymentConfig) -> dict[str, Any]:
        errors: list[str] = []

        for check, value in (
            (validate_service_name, config.service),
            (validate_image, config.image),
            (validate_health_path, config.health_check.path),
        ):
            try:
                check(value)
            except ValueError as e:
                errors.append(str(e))

        if config.version is not None:
            try:
                validate_version(config.version)
            except ValueError as e:
                errors.append(str(e))

        if not 1 <= config.replicas <= MAX_REPLICAS:
            errors.append(f"Invalid replica count: must be between 1 and {MAX_REPLICAS}")
        if config.health_check.timeout <= 0:
            errors.append("Invalid timeout value: must be positive")
        if config.health_check.retries <= 0:
            errors.append("Invalid retry count: must be greater than 0")
        if config.health_check.port is not None and not 1 <= config.health_check.port <= 65535:
            errors.append("Invalid health check port: must be between 1 and 65535")

        return {"valid": not errors, "errors": errors}
