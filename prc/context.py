from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from . import db
from .builds import BuildScheduler
from .catalog import FilesystemCatalog, load_dependencies
from .deployer import BlueGreenDeployer
from .docker_ops import DockerBuilder, DockerRuntime
from .gateway import TrafficTable
from .graph import DependencyGraph
from .health import HttpHealthMonitor
from .runtime import RuntimeState
from .validation import ConfigValidator


@dataclass
class Platform:
    """Everything one process needs, wired once and passed down explicitly."""

    runtime: RuntimeState
    graph: DependencyGraph
    scheduler: BuildScheduler
    deployer: BlueGreenDeployer


def build_platform(confirm: Callable[[str], bool] | None = None) -> Platform:
    """Wire the production adapters (docker, httpx probes, in-process traffic table)."""
    db.init_db()
    runtime = RuntimeState()
    graph = DependencyGraph(load_dependencies())
    catalog = FilesystemCatalog()
    containers = DockerRuntime()

    scheduler = BuildScheduler(graph, catalog, DockerBuilder(catalog))
    deployer = BlueGreenDeployer(
        runtime=runtime,
        containers=containers,
        load_balancer=TrafficTable(runtime),
        monitor=HttpHealthMonitor(resolve_url=containers.health_url, stats=containers.container_stats),
        validator=ConfigValidator(),
        confirm=confirm,
    )
    return Platform(runtime=runtime, graph=graph, scheduler=scheduler, deployer=deployer)
