import os
import sys
from threading import Lock

import pytest

# Ensure project root is importable (so `import main` works without installing the project)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from prc import db  # noqa: E402
from prc.deployer import BlueGreenDeployer  # noqa: E402
from prc.errors import LoadBalancerError  # noqa: E402
from prc.gateway import TrafficTable  # noqa: E402
from prc.models import BuildResult, BuildStatus  # noqa: E402
from prc.runtime import RuntimeState  # noqa: E402
from prc.settings import Settings  # noqa: E402
from prc.validation import ConfigValidator  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "prc.db")))
    db.init_db()


class FakeCatalog:
    def __init__(self, missing=()):
        self.missing = set(missing)

    def status(self, name):
        if name in self.missing:
            return {"exists": False, "path": None}
        return {"exists": True, "path": f"/src/{name}"}


class FakeBuilder:
    def __init__(self, fail=(), explode=(), images=None):
        self.fail = set(fail)
        self.explode = set(explode)
        self.images = dict(images or {})
        self.calls = []
        self._lock = Lock()

    def build(self, name):
        with self._lock:
            self.calls.append(name)
        if name in self.explode:
            raise RuntimeError(f"docker daemon went away while building {name}")
        if name in self.fail:
            return BuildResult.failed(name, "compile error")
        return BuildResult(
            service=name, status=BuildStatus.SUCCESS, image_id=f"sha256:{name}", build_time_seconds=1.5, size_mb=42.0
        )

    def inspect(self, name):
        return self.images.get(name)


class FakeRuntime:
    def __init__(self, healthy=True, provision_error=None, history=None, remove_error=None):
        self.healthy = healthy
        self.provision_error = provision_error
        self.remove_error = remove_error
        self.history = dict(history or {})
        self.calls = []
        self.status = {"blue": {"status": "running"}, "green": {"status": "running"}}

    def provision(self, service, image, environment_id, env=None, health_path="/health", port=None):
        self.calls.append(("provision", environment_id, image))
        if self.provision_error:
            raise self.provision_error
        return {"status": "running", "environment_id": environment_id}

    def wait_healthy(self, environment_id, timeout):
        self.calls.append(("wait_healthy", environment_id, timeout))
        if self.healthy:
            return {"healthy": True, "detail": "Healthy"}
        return {"healthy": False, "detail": "HTTP 503"}

    def restart(self, environment_id):
        self.calls.append(("restart", environment_id))
        return {"status": "restarted", "environment_id": environment_id}

    def remove(self, environment_id):
        self.calls.append(("remove", environment_id))
        if self.remove_error:
            raise self.remove_error

    def get_previous_deployment(self, service):
        if len(self.history) < 2:
            return {"status": "not_found"}
        version, prev = list(self.history.items())[1]
        return {"status": "found", "version": version, **prev}

    def get_deployment_history(self, service):
        return dict(self.history)

    def get_service_status(self, service):
        return self.status

    def names(self):
        return [c[0] for c in self.calls]


class RecordingTrafficTable(TrafficTable):
    """Real traffic table that records top-level calls and can be told to fail."""

    def __init__(self, runtime, fail_methods=(), fail_at_percentage=None):
        super().__init__(runtime)
        self.calls = []
        self.fail_methods = set(fail_methods)
        self.fail_at_percentage = fail_at_percentage
        self._depth = 0

    def _call(self, method, fn, *args):
        if self._depth == 0:
            self.calls.append(method)
        if method in self.fail_methods:
            raise LoadBalancerError(f"{method}: upstream proxy unreachable")
        self._depth += 1
        try:
            return fn(*args)
        finally:
            self._depth -= 1

    def set_traffic_percentage(self, service, environment_id, percentage):
        if self.fail_at_percentage is not None and percentage == self.fail_at_percentage:
            self.calls.append("set_traffic_percentage")
            raise LoadBalancerError(f"proxy rejected weight {percentage}")
        return self._call(
            "set_traffic_percentage", super().set_traffic_percentage, service, environment_id, percentage
        )

    def switch_traffic(self, service, from_env, to_env):
        return self._call("switch_traffic", super().switch_traffic, service, from_env, to_env)

    def switch_traffic_instant(self, service, from_env, to_env):
        return self._call("switch_traffic_instant", super().switch_traffic_instant, service, from_env, to_env)

    def revert_traffic(self, service, to):
        return self._call("revert_traffic", super().revert_traffic, service, to)


class FakeMonitor:
    def __init__(self, error_rates=(), metrics_healthy=True, health=None, metrics_error=None):
        self.error_rates = list(error_rates)
        self.metrics_healthy = metrics_healthy
        self.health = dict(health or {})
        self.metrics_error = metrics_error
        self.observed = []

    def check_service_health(self, environment_id):
        return {"healthy": self.health.get(environment_id, True), "message": "ok"}

    def monitor_traffic_metrics(self, environment_id, duration):
        self.observed.append((environment_id, duration))
        if self.metrics_error:
            raise self.metrics_error
        rate = self.error_rates.pop(0) if self.error_rates else 0.0
        return {"error_rate": rate, "response_time": 12.5}

    def validate_service_metrics(self, environment_id):
        if self.metrics_healthy:
            return {"healthy": True, "issues": []}
        return {"healthy": False, "issues": ["CPU usage 97.0% above 90%"]}


class Parts:
    def __init__(self, deployer, runtime, containers, load_balancer, monitor):
        self.deployer = deployer
        self.runtime = runtime
        self.containers = containers
        self.load_balancer = load_balancer
        self.monitor = monitor


@pytest.fixture
def make_deployer():
    def _make(containers=None, monitor=None, lb_kwargs=None, confirm=None, **kwargs):
        runtime = RuntimeState()
        containers = containers or FakeRuntime()
        monitor = monitor or FakeMonitor()
        lb = RecordingTrafficTable(runtime, **(lb_kwargs or {}))
        kwargs.setdefault("observation_window_s", 0)
        kwargs.setdefault("step_settle_s", 0)
        deployer = BlueGreenDeployer(
            runtime=runtime,
            containers=containers,
            load_balancer=lb,
            monitor=monitor,
            validator=ConfigValidator(),
            confirm=confirm,
            **kwargs,
        )
        return Parts(deployer, runtime, containers, lb, monitor)

    return _make


