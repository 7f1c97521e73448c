from __future__ import annotations

import time
from typing import Any, Callable

import httpx

from .settings import settings


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class HttpHealthMonitor:
    """Live health signals for blue/green environments.

    ``resolve_url`` maps an environment id to its health URL; ``stats``
    returns {"cpu_percent", "memory_percent"} for an environment or None
    when the container is gone.
    """

    def __init__(
        self,
        resolve_url: Callable[[str], str],
        stats: Callable[[str], dict[str, float] | None],
        sample_interval_s: float = 1.0,
        probe: Callable[[str], tuple[bool, str, float | None]] = check_health,
    ):
        self.resolve_url = resolve_url
        self.stats = stats
        self.sample_interval_s = max(0.0, float(sample_interval_s))
        self.probe = probe

    def check_service_health(self, environment_id: str) -> dict[str, Any]:
        ok, msg, latency = self.probe(self.resolve_url(environment_id))
        return {"healthy": ok, "message": msg, "latency_ms": latency}

    def monitor_traffic_metrics(self, environment_id: str, duration: float) -> dict[str, Any]:
        url = self.resolve_url(environment_id)
        deadline = time.time() + max(0.0, float(duration))
        samples = 0
        errors = 0
        latencies: list[float] = []
        while True:
            ok, _, latency = self.probe(url)
            samples += 1
            if not ok:
                errors += 1
            if latency is not None:
                latencies.append(latency)
            if time.time() >= deadline:
                break
            time.sleep(self.sample_interval_s)

        return {
            "error_rate": round(errors / samples, 4),
            "response_time": round(sum(latencies) / len(latencies), 2) if latencies else None,
            "samples": samples,
        }

    def validate_service_metrics(self, environment_id: str) -> dict[str, Any]:
        issues: list[str] = []
        usage = self.stats(environment_id)
        if usage is None:
            issues.append("No resource metrics available")
            usage = {}
        else:
            if usage.get("cpu_percent", 0.0) > settings.max_cpu_percent:
                issues.append(f"CPU usage {usage['cpu_percent']:.1f}% above {settings.max_cpu_percent:.0f}%")
            if usage.get("memory_percent", 0.0) > settings.max_memory_percent:
                issues.append(
                    f"Memory usage {usage['memory_percent']:.1f}% above {settings.max_memory_percent:.0f}%"
                )

        ok, msg, _ = self.probe(self.resolve_url(environment_id))
        if not ok:
            issues.append(f"Health endpoint failing: {msg}")

        return {"healthy": not issues, "issues": issues, **usage}
