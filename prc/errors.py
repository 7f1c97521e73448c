from __future__ import annotations


class PlatformError(Exception):
    pass


class CircularDependencyError(PlatformError):
    """Raised when the build dependency relation contains a cycle.

    ``cycle`` lists every service on the cycle in traversal order.
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Circular dependency detected: {path}")


class UnknownServiceError(PlatformError, KeyError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(service)

    def __str__(self) -> str:
        return f"Unknown service '{self.service}'."


class BuildError(PlatformError):
    pass


class LoadBalancerError(PlatformError):
    pass


class TrafficSwitchError(LoadBalancerError):
    pass


class ContainerRuntimeError(PlatformError):
    pass


class ContainerStartupError(ContainerRuntimeError):
    pass
