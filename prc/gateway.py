from __future__ import annotations

import time
from typing import Any

from .errors import LoadBalancerError, TrafficSwitchError
from .models import Environment
from .runtime import RuntimeState


class TrafficTable:
    """In-process load balancer: per-service blue/green traffic weights.

    The table is the routing source of truth for this process; an edge proxy
    (or the container network alias) reads it to pick the live environment.
    Weights for a service always sum to 100 once traffic has been assigned.
    """

    def __init__(self, runtime: RuntimeState):
        self.runtime = runtime

    def set_traffic_percentage(self, service: str, environment_id: str, percentage: int) -> dict[str, Any]:
        if not 0 <= int(percentage) <= 100:
            raise TrafficSwitchError(f"Traffic percentage out of range: {percentage}")
        color = self._color(service, environment_id)
        pct = int(percentage)
        self.runtime.set_distribution(
            service,
            {
                environment_id: pct,
                color.other.environment_id(service): 100 - pct,
            },
        )
        return {"status": "success", "current_percentage": pct}

    def switch_traffic(self, service: str, from_env: str | None, to_env: str) -> dict[str, Any]:
        t0 = time.time()
        if from_env is not None:
            self._color(service, from_env)
        self.set_traffic_percentage(service, to_env, 100)
        return {"status": "success", "switch_time": round(time.time() - t0, 3)}

    def switch_traffic_instant(self, service: str, from_env: str | None, to_env: str) -> dict[str, Any]:
        return self.switch_traffic(service, from_env, to_env)

    def revert_traffic(self, service: str, to: str) -> dict[str, Any]:
        self.set_traffic_percentage(service, to, 100)
        return {"status": "success", "reverted_to": to}

    def get_current_target(self, service: str) -> str | None:
        dist = self.runtime.get_distribution(service)
        if not dist:
            return None
        green = Environment.GREEN.environment_id(service)
        if dist.get(green, 0) > 50:
            return green
        return Environment.BLUE.environment_id(service)

    def get_traffic_distribution(self, service: str) -> dict[str, int]:
        dist = self.runtime.get_distribution(service)
        return {
            Environment.BLUE.environment_id(service): dist.get(Environment.BLUE.environment_id(service), 0),
            Environment.GREEN.environment_id(service): dist.get(Environment.GREEN.environment_id(service), 0),
        }

    def _color(self, service: str, environment_id: str) -> Environment:
        for color in Environment:
            if color.environment_id(service) == environment_id:
                return color
        raise LoadBalancerError(f"'{environment_id}' is not an environment of service '{service}'.")
