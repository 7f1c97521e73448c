import threading
import time

import pytest

from conftest import FakeMonitor, FakeRuntime
from prc import db
from prc.errors import ContainerRuntimeError, ContainerStartupError
from prc.models import DeploymentConfig, DeploymentStatus, HealthCheckConfig, SwitchStrategy


def _config(**overrides):
    base = dict(image="registry.local:5000/billing:1.4.0", service="billing")
    base.update(overrides)
    return DeploymentConfig(**base)


def test_successful_deploy(make_deployer):
    p = make_deployer()
    result = p.deployer.deploy(_config())

    assert result["status"] == "success"
    assert result["green_environment"] == {"environment_id": "billing-green", "healthy": True}
    assert abs(result["deployment_time"] - time.time()) < 5
    assert p.containers.names() == ["provision", "wait_healthy"]

    record = p.runtime.get_deployment("billing")
    assert record.status is DeploymentStatus.COMPLETED
    assert record.version == "1.4.0"
    # deploy alone does not move traffic
    assert p.load_balancer.calls == []
    assert db.list_deployments("billing")[0].status == "completed"


def test_deploy_uses_health_check_timeout(make_deployer):
    p = make_deployer()
    p.deployer.deploy(_config(health_check=HealthCheckConfig(timeout=17)))
    assert ("wait_healthy", "billing-green", 17) in p.containers.calls


def test_invalid_config_never_provisions(make_deployer):
    p = make_deployer()
    result = p.deployer.deploy(_config(image="NOT A VALID IMAGE", replicas=0))

    assert result["status"] == "failed"
    assert len(result["validation_errors"]) == 2
    assert p.containers.calls == []
    assert p.runtime.get_deployment("billing") is None
    rows = db.list_deployments("billing")
    assert [r.status for r in rows] == ["failed"]
    assert rows[0].message.startswith("Deployment rejected")


def test_rollback_after_failed_provisioning_uses_live_target(make_deployer):
    p = make_deployer(containers=FakeRuntime(provision_error=ContainerStartupError("no space left")))
    p.load_balancer.switch_traffic("billing", None, "billing-blue")
    p.deployer.deploy(_config())

    result = p.deployer.rollback("billing", reason="paranoia")
    assert result["status"] == "success"
    assert result["decommissioned"] == "billing-blue"
    assert result["traffic_switched_to"] == "billing-green"


def test_deploy_accepts_loose_mapping(make_deployer):
    p = make_deployer()
    result = p.deployer.deploy({"image": "billing:2.0", "service": "billing", "health_check": {"timeout": 5}})
    assert result["status"] == "success"


def test_malformed_mapping_raises(make_deployer):
    p = make_deployer()
    with pytest.raises(ValueError):
        p.deployer.deploy({"service": "billing"})
    with pytest.raises(ValueError):
        p.deployer.deploy({"image": "billing:2.0", "service": "billing", "traffic_switch_strategy": "yolo"})


def test_provisioning_failure_needs_no_rollback(make_deployer):
    p = make_deployer(containers=FakeRuntime(provision_error=ContainerStartupError("image pull failed")))
    result = p.deployer.deploy(_config())

    assert result["status"] == "failed"
    assert result["rollback_performed"] is False
    assert "image pull failed" in result["error"]
    assert p.load_balancer.calls == []
    assert p.runtime.get_deployment("billing").status is DeploymentStatus.FAILED


def test_unhealthy_green_triggers_rollback(make_deployer):
    p = make_deployer(containers=FakeRuntime(healthy=False))
    result = p.deployer.deploy(_config())

    assert result["status"] == "failed"
    assert result["reason"] == "Green environment health check failed"
    assert result["rollback_performed"] is True
    assert result["rollback"]["status"] == "success"
    assert result["rollback"]["traffic_switched_to"] == "billing-blue"
    assert ("remove", "billing-green") in p.containers.calls

    record = p.runtime.get_deployment("billing")
    assert record.status is DeploymentStatus.ROLLED_BACK
    events = db.list_rollbacks("billing")
    assert events[0].reason == "Green environment health check failed"
    assert events[0].initiated_by == "automatic"


def test_unhealthy_green_without_rollback_leaves_it_in_place(make_deployer):
    p = make_deployer(containers=FakeRuntime(healthy=False))
    result = p.deployer.deploy(_config(rollback_on_failure=False))

    assert result["rollback_performed"] is False
    assert "remove" not in p.containers.names()
    assert p.runtime.get_deployment("billing").status is DeploymentStatus.FAILED


def test_bad_metrics_count_as_failed_health(make_deployer):
    p = make_deployer(monitor=FakeMonitor(metrics_healthy=False))
    result = p.deployer.deploy(_config())

    assert result["status"] == "failed"
    assert result["reason"] == "Green environment metrics validation failed"
    assert "CPU usage" in result["detail"]
    assert result["rollback_performed"] is True


def test_second_deploy_targets_the_other_color(make_deployer):
    p = make_deployer()
    first = p.deployer.deploy(_config(switch_traffic=True, traffic_switch_strategy=SwitchStrategy.INSTANT))
    assert first["status"] == "success"
    assert p.load_balancer.get_current_target("billing") == "billing-green"

    second = p.deployer.deploy(_config(image="billing:1.5.0"))
    assert second["green_environment"]["environment_id"] == "billing-blue"


def test_deploy_can_chain_into_gradual_switch(make_deployer):
    p = make_deployer(traffic_steps=(10, 25, 50, 75, 100), error_rate_threshold=0.10)
    result = p.deployer.deploy(_config(switch_traffic=True))

    assert result["status"] == "success"
    assert result["traffic_switch"]["final_percentage"] == 100
    record = p.runtime.get_deployment("billing")
    assert record.status is DeploymentStatus.COMPLETED
    assert record.traffic_percentage == 100
    assert p.load_balancer.get_traffic_distribution("billing") == {"billing-blue": 0, "billing-green": 100}


def test_chained_switch_failure_fails_the_deploy(make_deployer):
    p = make_deployer(monitor=FakeMonitor(error_rates=[0.0, 0.5]), traffic_steps=(10, 25, 50, 75, 100))
    result = p.deployer.deploy(_config(switch_traffic=True))

    assert result["status"] == "failed"
    assert result["rollback_performed"] is True
    assert result["traffic_switch"]["error_rate"] == 0.5
    assert p.runtime.get_deployment("billing").status is DeploymentStatus.ROLLED_BACK


def test_manual_rollback_declined_makes_no_calls(make_deployer):
    p = make_deployer(confirm=lambda service: False)
    result = p.deployer.rollback("billing", manual=True)

    assert result["status"] == "cancelled"
    assert "cancelled" in result["reason"].lower()
    assert p.load_balancer.calls == []
    assert p.containers.calls == []
    assert db.list_rollbacks("billing") == []


def test_manual_rollback_confirmed(make_deployer):
    asked = []
    p = make_deployer(confirm=lambda service: asked.append(service) or True)
    p.deployer.deploy(_config(switch_traffic=True, traffic_switch_strategy="instant"))

    result = p.deployer.rollback("billing", reason="bad release", manual=True)
    assert asked == ["billing"]
    assert result["status"] == "success"
    assert result["manual_confirmation"] is True
    assert result["traffic_switched_to"] == "billing-blue"
    assert p.load_balancer.get_current_target("billing") == "billing-blue"
    assert db.list_rollbacks("billing")[0].initiated_by == "manual"


def test_forced_manual_rollback_skips_confirmation(make_deployer):
    p = make_deployer(confirm=lambda service: pytest.fail("must not prompt"))
    p.deployer.deploy(_config(switch_traffic=True, traffic_switch_strategy="instant"))
    result = p.deployer.rollback("billing", manual=True, force=True)
    assert result["status"] == "success"
    assert result["manual_confirmation"] is True


def test_automatic_rollback_never_prompts(make_deployer):
    p = make_deployer(confirm=lambda service: pytest.fail("must not prompt"), containers=FakeRuntime(healthy=False))
    assert p.deployer.deploy(_config())["rollback_performed"] is True


def test_versioned_rollback(make_deployer):
    history = {
        "1.4.0": {"environment_id": "billing-green", "image": "billing:1.4.0"},
        "1.3.2": {"environment_id": "billing-blue", "image": "billing:1.3.2"},
    }
    p = make_deployer(containers=FakeRuntime(history=history))
    p.load_balancer.switch_traffic("billing", None, "billing-green")

    result = p.deployer.rollback("billing", version="1.3.2")
    assert result["status"] == "success"
    assert result["rolled_back_to"] == "1.3.2"
    assert ("restart", "billing-blue") in p.containers.calls
    assert p.load_balancer.get_current_target("billing") == "billing-blue"


def test_versioned_rollback_unknown_version(make_deployer):
    p = make_deployer()
    result = p.deployer.rollback("billing", version="0.0.1")
    assert result["status"] == "failed"
    assert "not found in deployment history" in result["error"]
    assert "manual_intervention_required" not in result


def test_rollback_failure_requires_manual_intervention(make_deployer):
    p = make_deployer(lb_kwargs={"fail_methods": {"switch_traffic"}})
    p.load_balancer.set_traffic_percentage("billing", "billing-green", 100)

    result = p.deployer.rollback("billing", reason="pager fired")
    assert result["status"] == "failed"
    assert result["manual_intervention_required"] is True
    assert "remove" not in p.containers.names()
    assert any("MANUAL INTERVENTION REQUIRED" in e["message"] for e in db.latest_events())


def test_container_error_during_rollback_requires_manual_intervention(make_deployer):
    p = make_deployer(containers=FakeRuntime(healthy=False, remove_error=ContainerRuntimeError("daemon down")))
    result = p.deployer.deploy(_config())

    assert result["rollback_performed"] is True
    assert result["manual_intervention_required"] is True
    assert p.runtime.get_deployment("billing").status is DeploymentStatus.FAILED


def test_rollback_readiness(make_deployer):
    p = make_deployer()
    assert p.deployer.rollback_readiness("billing")["rollback_ready"] is False

    history = {
        "2.0": {"environment_id": "billing-green", "image": "billing:2.0"},
        "1.9": {"environment_id": "billing-blue", "image": "billing:1.9"},
    }
    p = make_deployer(containers=FakeRuntime(history=history))
    ready = p.deployer.rollback_readiness("billing")
    assert ready["rollback_ready"] is True
    assert ready["previous_version"] == "1.9"


def test_deployment_status_is_idempotent(make_deployer):
    p = make_deployer()
    p.deployer.deploy(_config(switch_traffic=True, traffic_switch_strategy="instant"))

    first = p.deployer.deployment_status("billing")
    second = p.deployer.deployment_status("billing")
    assert first == second
    assert first["current_environment"] == "green"
    assert first["green_status"] == {"status": "running", "traffic_percentage": 100}
    assert first["blue_status"]["traffic_percentage"] == 0


def test_deployment_status_before_any_deploy(make_deployer):
    status = make_deployer().deployer.deployment_status("billing")
    assert status["current_environment"] == "blue"
    assert status["deployment"] is None


def test_health_check_combines_both_colors(make_deployer):
    p = make_deployer(monitor=FakeMonitor(health={"billing-blue": False, "billing-green": True}))
    health = p.deployer.health_check("billing")
    assert health["overall_health"] == "healthy"
    assert health["blue_health"]["healthy"] is False

    p = make_deployer(monitor=FakeMonitor(health={"billing-blue": False, "billing-green": False}))
    assert p.deployer.health_check("billing")["overall_health"] == "unhealthy"


def test_deployment_history_lists_attempts(make_deployer):
    p = make_deployer()
    p.deployer.deploy(_config())
    history = p.deployer.deployment_history("billing")
    assert len(history) == 1
    assert history[0]["environment_id"] == "billing-green"


def test_invalid_traffic_steps_rejected(make_deployer):
    with pytest.raises(ValueError):
        make_deployer(traffic_steps=(50, 25, 100))
    with pytest.raises(ValueError):
        make_deployer(traffic_steps=(10, 50))


def _deployed(make_deployer, **kwargs):
    p = make_deployer(**kwargs)
    assert p.deployer.deploy(_config())["status"] == "success"
    return p


def test_gradual_switch_rolls_back_on_error_rate(make_deployer):
    p = _deployed(
        make_deployer,
        monitor=FakeMonitor(error_rates=[0.0, 0.15]),
        traffic_steps=(10, 25, 50, 75, 100),
        error_rate_threshold=0.10,
    )
    result = p.deployer.traffic_switch("billing", None, "billing-green", strategy="gradual")

    assert result["status"] == "failed"
    assert result["rollback_triggered"] is True
    assert result["percentage"] == 25
    assert result["error_rate"] == 0.15
    assert p.load_balancer.calls == ["set_traffic_percentage", "set_traffic_percentage", "switch_traffic"]
    assert p.load_balancer.get_traffic_distribution("billing") == {"billing-blue": 100, "billing-green": 0}
    assert db.list_rollbacks("billing")[0].reason == "High error rate during traffic switch"
    assert p.runtime.get_deployment("billing").status is DeploymentStatus.ROLLED_BACK


def test_gradual_switch_walks_every_step(make_deployer):
    p = _deployed(make_deployer, traffic_steps=(20, 60, 100))
    result = p.deployer.traffic_switch("billing", None, "billing-green")

    assert result["status"] == "success"
    assert result["switch_completed"] is True
    assert [d for d, _ in p.monitor.observed] == ["billing-green"] * 3
    assert p.runtime.get_deployment("billing").traffic_percentage == 100


def test_error_rate_at_threshold_is_accepted(make_deployer):
    p = _deployed(make_deployer, monitor=FakeMonitor(error_rates=[0.10] * 5), error_rate_threshold=0.10)
    assert p.deployer.traffic_switch("billing", None, "billing-green")["status"] == "success"


def test_metrics_outage_during_switch_rolls_back(make_deployer):
    p = _deployed(make_deployer, monitor=FakeMonitor(metrics_error=RuntimeError("prometheus down")))
    result = p.deployer.traffic_switch("billing", None, "billing-green")

    assert result["status"] == "failed"
    assert result["reason"] == "Traffic metrics unavailable during traffic switch"
    assert result["rollback_triggered"] is True
    assert result["percentage"] == 10


def test_load_balancer_error_reverts_without_rollback(make_deployer):
    p = _deployed(make_deployer, lb_kwargs={"fail_at_percentage": 50}, traffic_steps=(10, 25, 50, 75, 100))
    result = p.deployer.traffic_switch("billing", None, "billing-green")

    assert result["status"] == "failed"
    assert result["traffic_reverted"] is True
    assert result["reverted_to"] == "billing-blue"
    assert "rollback_triggered" not in result
    assert db.list_rollbacks("billing") == []
    assert p.load_balancer.get_traffic_distribution("billing") == {"billing-blue": 100, "billing-green": 0}
    record = p.runtime.get_deployment("billing")
    assert record.status is DeploymentStatus.FAILED
    assert record.traffic_percentage == 0


def test_failed_revert_requires_manual_intervention(make_deployer):
    p = _deployed(make_deployer, lb_kwargs={"fail_at_percentage": 10, "fail_methods": {"revert_traffic"}})
    result = p.deployer.traffic_switch("billing", None, "billing-green")

    assert result["traffic_reverted"] is False
    assert result["manual_intervention_required"] is True


def test_instant_switch(make_deployer):
    p = _deployed(make_deployer)
    result = p.deployer.traffic_switch("billing", "billing-blue", "billing-green", strategy="instant")

    assert result["status"] == "success"
    assert result["strategy_used"] == "instant"
    assert p.load_balancer.calls == ["switch_traffic_instant"]
    assert p.monitor.observed == []
    assert p.load_balancer.get_current_target("billing") == "billing-green"


def test_unknown_strategy_fails_without_calls(make_deployer):
    p = _deployed(make_deployer)
    result = p.deployer.traffic_switch("billing", None, "billing-green", strategy="canary")
    assert result["status"] == "failed"
    assert "canary" in result["error"]
    assert p.load_balancer.calls == []


def test_abort_stops_switch_before_next_step(make_deployer):
    class AbortingMonitor(FakeMonitor):
        armed = True

        def monitor_traffic_metrics(self, environment_id, duration):
            if self.armed:
                p.deployer.abort_traffic_switch("billing", reason="operator pulled the plug")
            return super().monitor_traffic_metrics(environment_id, duration)

    p = _deployed(make_deployer, monitor=AbortingMonitor())
    result = p.deployer.traffic_switch("billing", None, "billing-green")

    assert result["status"] == "failed"
    assert result["reason"] == "operator pulled the plug"
    assert result["percentage"] == 10
    assert p.load_balancer.calls.count("set_traffic_percentage") == 1

    # A new switch starts with the flag cleared.
    p.monitor.armed = False
    assert p.deployer.traffic_switch("billing", None, "billing-blue")["status"] == "success"


def test_retry_after_revert_rolls_back_to_the_serving_side(make_deployer):
    p = _deployed(
        make_deployer,
        monitor=FakeMonitor(error_rates=[0.0, 0.0, 0.0, 0.15]),
        lb_kwargs={"fail_at_percentage": 50},
        traffic_steps=(10, 25, 50, 75, 100),
    )
    first = p.deployer.traffic_switch("billing", None, "billing-green")
    assert first["traffic_reverted"] is True
    assert p.runtime.get_deployment("billing").status is DeploymentStatus.FAILED

    retry = p.deployer.traffic_switch("billing", "billing-blue", "billing-green")
    assert retry["status"] == "failed"
    assert retry["percentage"] == 25
    assert retry["rollback"]["traffic_switched_to"] == "billing-blue"
    assert retry["rollback"]["decommissioned"] == "billing-green"
    assert p.load_balancer.get_traffic_distribution("billing") == {"billing-blue": 100, "billing-green": 0}
    assert p.containers.calls[-1] == ("remove", "billing-green")


def test_failed_switch_back_to_blue_keeps_green_serving(make_deployer):
    p = make_deployer(monitor=FakeMonitor(error_rates=[0.0, 0.15]), traffic_steps=(10, 25, 50, 75, 100))
    deployed = p.deployer.deploy(_config(switch_traffic=True, traffic_switch_strategy="instant"))
    assert deployed["status"] == "success"

    result = p.deployer.traffic_switch("billing", "billing-green", "billing-blue")
    assert result["status"] == "failed"
    assert result["rollback"]["traffic_switched_to"] == "billing-green"
    assert result["rollback"]["decommissioned"] == "billing-blue"
    assert p.load_balancer.get_traffic_distribution("billing") == {"billing-blue": 0, "billing-green": 100}
    assert ("remove", "billing-green") not in p.containers.calls
    # The completed green deployment was not the one that failed.
    assert p.runtime.get_deployment("billing").status is DeploymentStatus.COMPLETED


def test_operations_on_one_service_run_one_at_a_time(make_deployer):
    release = threading.Event()
    waiting = threading.Event()

    class SlowRuntime(FakeRuntime):
        def wait_healthy(self, environment_id, timeout):
            if environment_id.startswith("billing-"):
                waiting.set()
                release.wait(5)
            return super().wait_healthy(environment_id, timeout)

    p = make_deployer(containers=SlowRuntime())
    results = {}
    deploy = threading.Thread(target=lambda: results.setdefault("deploy", p.deployer.deploy(_config())))
    deploy.start()
    assert waiting.wait(5)

    rollback = threading.Thread(
        target=lambda: results.setdefault("rollback", p.deployer.rollback("billing", reason="pager fired"))
    )
    rollback.start()
    rollback.join(timeout=0.2)
    assert rollback.is_alive()
    assert p.load_balancer.calls == []

    # Another service is not held up by billing's lock.
    other = p.deployer.deploy(_config(service="ledger", image="ledger:3.1"))
    assert other["status"] == "success"

    release.set()
    deploy.join(timeout=5)
    rollback.join(timeout=5)
    assert results["deploy"]["status"] == "success"
    assert results["rollback"]["status"] == "success"
    assert results["rollback"]["traffic_switched_to"] == "billing-blue"
    assert p.load_balancer.calls == ["switch_traffic"]
