from __future__ import annotations

from threading import Event, Lock, RLock

from .models import DeploymentRecord, utc_now


class RuntimeState:
    """In-memory state shared by the deployer and the in-process traffic table."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.traffic: dict[str, dict[str, int]] = {}  # service -> {environment_id: percentage}
        self.deployments: dict[str, DeploymentRecord] = {}  # service -> latest record
        self._service_locks: dict[str, RLock] = {}
        self._aborts: dict[str, Event] = {}
        self._abort_reasons: dict[str, str] = {}

    def service_lock(self, service: str) -> RLock:
        """Lock serialising deploy/switch/rollback for one service.

        Re-entrant so an automatic rollback can run inside a deploy.
        """
        with self.lock:
            lk = self._service_locks.get(service)
            if lk is None:
                lk = self._service_locks[service] = RLock()
            return lk

    def set_distribution(self, service: str, distribution: dict[str, int]) -> None:
        with self.lock:
            self.traffic[service] = dict(distribution)

    def get_distribution(self, service: str) -> dict[str, int]:
        with self.lock:
            return dict(self.traffic.get(service, {}))

    def upsert_deployment(self, record: DeploymentRecord) -> None:
        with self.lock:
            record.updated_at = utc_now()
            self.deployments[record.service] = record

    def get_deployment(self, service: str) -> DeploymentRecord | None:
        with self.lock:
            return self.deployments.get(service)

    def abort_event(self, service: str) -> Event:
        with self.lock:
            ev = self._aborts.get(service)
            if ev is None:
                ev = self._aborts[service] = Event()
            return ev

    def request_abort(self, service: str, reason: str) -> None:
        with self.lock:
            self._abort_reasons[service] = reason
        self.abort_event(service).set()

    def abort_reason(self, service: str) -> str | None:
        with self.lock:
            return self._abort_reasons.get(service)

    def clear_abort(self, service: str) -> None:
        with self.lock:
            self._abort_reasons.pop(service, None)
        self.abort_event(service).clear()
