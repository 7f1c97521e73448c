from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Iterable

from . import db
from .graph import DependencyGraph
from .interfaces import ContainerBuilder, ServiceCatalog
from .models import BuildResult, BuildStatus
from .settings import settings

REPOSITORY_NOT_FOUND = "repository not found"


class BuildScheduler:
    """Builds services in dependency order.

    Per-service failures never abort the batch: a failed or skipped service
    turns every dependent into a skip, and independent branches carry on.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        catalog: ServiceCatalog,
        builder: ContainerBuilder,
        max_workers: int | None = None,
    ):
        self.graph = graph
        self.catalog = catalog
        self.builder = builder
        self.max_workers = max(1, int(max_workers or settings.max_build_workers))

    def build_order(self, services: Iterable[str] | None = None) -> list[str]:
        return self.graph.topological_order(services)

    def build(self, services: Iterable[str] | None = None) -> dict[str, BuildResult]:
        order = self.graph.topological_order(services)
        db.log_event("INFO", f"Build started: {', '.join(order) or '(nothing to build)'}")

        results: dict[str, BuildResult] = {}
        for name in order:
            result = self._build_in_order(name, results)
            results[name] = result
            self._record(result)
            if result.status is BuildStatus.FAILED or result.skip_reason == REPOSITORY_NOT_FOUND:
                blocked = [d for d in self.graph.dependents_of(name) if d in order]
                if blocked:
                    db.log_event("WARN", f"Dependents will be skipped: {', '.join(blocked)}", service_name=name)

        ok = sum(1 for r in results.values() if r.ok)
        db.log_event("INFO", f"Build finished: {ok}/{len(results)} succeeded")
        return results

    def parallel_build(self, services: Iterable[str], max_workers: int | None = None) -> dict[str, BuildResult]:
        """Build services that have no dependencies concurrently.

        Raises ValueError if any requested service has dependencies; callers
        pick the set from DependencyGraph.independent_services().
        """
        names = list(dict.fromkeys(services))
        blocked = [n for n in names if self.graph.dependencies_of(n)]
        if blocked:
            raise ValueError(f"parallel_build only accepts independent services; has dependencies: {', '.join(blocked)}")
        if not names:
            return {}

        workers = min(len(names), max(1, int(max_workers or self.max_workers)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prc-build") as pool:
            futures = {name: pool.submit(self._build_checked, name) for name in names}
            results = {name: fut.result() for name, fut in futures.items()}

        for result in results.values():
            self._record(result)
        return results

    def build_status(self, services: Iterable[str] | None = None) -> dict[str, dict[str, Any]]:
        names = self.graph.services if services is None else list(dict.fromkeys(services))
        now = datetime.now(timezone.utc)
        status: dict[str, dict[str, Any]] = {}
        for name in names:
            info = self.builder.inspect(name)
            if info is None:
                status[name] = {
                    "status": "not_built",
                    "image_id": None,
                    "created": None,
                    "size_mb": None,
                    "age_hours": None,
                }
                continue
            created: datetime = info["created"]
            status[name] = {
                "status": "built",
                "image_id": info["image_id"],
                "created": created.isoformat(),
                "size_mb": info.get("size_mb"),
                "age_hours": round((now - created).total_seconds() / 3600.0, 2),
            }
        return status

    def _build_in_order(self, name: str, results: dict[str, BuildResult]) -> BuildResult:
        if not self.catalog.status(name).get("exists"):
            return BuildResult.skipped(name, REPOSITORY_NOT_FOUND)

        for dep in self.graph.dependencies_of(name):
            dep_result = results.get(dep)
            if dep_result is None or dep_result.status is not BuildStatus.SUCCESS:
                return BuildResult.skipped(name, f"dependency failed: {dep}")

        return self._attempt(name)

    def _build_checked(self, name: str) -> BuildResult:
        if not self.catalog.status(name).get("exists"):
            return BuildResult.skipped(name, REPOSITORY_NOT_FOUND)
        return self._attempt(name)

    def _attempt(self, name: str) -> BuildResult:
        try:
            return self.builder.build(name)
        except Exception as e:
            # Any builder/infrastructure error fails this service only.
            return BuildResult.failed(name, f"{type(e).__name__}: {e}")

    def _record(self, result: BuildResult) -> None:
        db.record_build(result)
        if result.status is BuildStatus.SUCCESS:
            db.log_event("INFO", f"Built image {result.image_id}", service_name=result.service)
        elif result.status is BuildStatus.FAILED:
            db.log_event("ERROR", f"Build failed: {result.error}", service_name=result.service)
        else:
            db.log_event("WARN", f"Build skipped: {result.skip_reason}", service_name=result.service)
