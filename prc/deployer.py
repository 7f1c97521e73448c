from __future__ import annotations

import secrets
import time
from typing import Any, Callable, Mapping

from . import db
from .alerts import manual_intervention_alert
from .errors import LoadBalancerError
from .interfaces import ContainerRuntime, DeploymentValidator, HealthMonitor, LoadBalancer
from .models import (
    DeploymentConfig,
    DeploymentRecord,
    DeploymentStatus,
    Environment,
    RollbackEvent,
    SwitchStrategy,
)
from .runtime import RuntimeState
from .settings import settings

HEALTH_FAILED = "Green environment health check failed"
METRICS_FAILED = "Green environment metrics validation failed"
HIGH_ERROR_RATE = "High error rate during traffic switch"
METRICS_UNAVAILABLE = "Traffic metrics unavailable during traffic switch"
MANUAL_CANCELLED = "Manual rollback cancelled by user"


def _decline(service: str) -> bool:
    return False


class BlueGreenDeployer:
    """Drives blue-green deployments for one service at a time.

    Lifecycle of a deployment:
      provisioning -> health_checking -> [switching] -> completed
    with rolling_back -> rolled_back reachable from any non-terminal stage.

    Every operation returns a result dict with a "status" key instead of
    raising; only malformed input raises.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        containers: ContainerRuntime,
        load_balancer: LoadBalancer,
        monitor: HealthMonitor,
        validator: DeploymentValidator,
        confirm: Callable[[str], bool] | None = None,
        traffic_steps: tuple[int, ...] | None = None,
        error_rate_threshold: float | None = None,
        observation_window_s: float | None = None,
        step_settle_s: float | None = None,
    ):
        self.runtime = runtime
        self.containers = containers
        self.load_balancer = load_balancer
        self.monitor = monitor
        self.validator = validator
        self.confirm = confirm or _decline
        self.traffic_steps = tuple(traffic_steps or settings.traffic_steps)
        self.error_rate_threshold = (
            settings.error_rate_threshold if error_rate_threshold is None else float(error_rate_threshold)
        )
        self.observation_window_s = (
            settings.observation_window_s if observation_window_s is None else float(observation_window_s)
        )
        self.step_settle_s = settings.step_settle_s if step_settle_s is None else float(step_settle_s)

        steps = list(self.traffic_steps)
        if not steps or steps != sorted(set(steps)) or steps[0] <= 0 or steps[-1] != 100:
            raise ValueError(f"Traffic steps must increase strictly and end at 100: {self.traffic_steps}")

    # -- deploy ---------------------------------------------------------

    def deploy(self, config: DeploymentConfig | Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(config, DeploymentConfig):
            config = DeploymentConfig.from_dict(config)
        service = config.service

        validation = self.validator.validate_deployment_config(config)
        if not validation.get("valid"):
            errors = list(validation.get("errors") or [])
            # History only: nothing was provisioned, so the live record is untouched.
            rejected = DeploymentRecord(
                id=secrets.token_hex(6),
                service=service,
                green_environment_id=self._next_environment(service),
                image=config.image,
                version=config.version_label,
                status=DeploymentStatus.FAILED,
                message=f"Deployment rejected: {'; '.join(errors)}",
            )
            db.upsert_deployment(rejected)
            db.log_event("ERROR", rejected.message, service_name=service)
            return {"status": "failed", "validation_errors": errors, "deployment_id": rejected.id}

        with self.runtime.service_lock(service):
            active = self.load_balancer.get_current_target(service)
            env_id = self._next_environment(service)

            record = DeploymentRecord(
                id=secrets.token_hex(6),
                service=service,
                green_environment_id=env_id,
                image=config.image,
                version=config.version_label,
            )

            self._advance(record, DeploymentStatus.PROVISIONING, f"Provisioning {env_id} from {config.image}")
            try:
                self.containers.provision(
                    service,
                    config.image,
                    env_id,
                    env=config.environment,
                    health_path=config.health_check.path,
                    port=config.health_check.port,
                )
            except Exception as e:
                # Nothing received traffic yet, so there is nothing to roll back.
                self._advance(record, DeploymentStatus.FAILED, f"Provisioning failed: {e}", level="ERROR")
                return {"status": "failed", "error": str(e), "rollback_performed": False, "deployment_id": record.id}

            self._advance(
                record,
                DeploymentStatus.HEALTH_CHECKING,
                f"Waiting up to {config.health_check.timeout}s for {env_id} to become healthy",
            )
            health = self._gate(lambda: self.containers.wait_healthy(env_id, timeout=config.health_check.timeout))
            if not health.get("healthy"):
                return self._reject_green(record, config, HEALTH_FAILED, health.get("detail"))

            metrics = self._gate(lambda: self.monitor.validate_service_metrics(env_id))
            if not metrics.get("healthy"):
                detail = "; ".join(metrics.get("issues") or []) or metrics.get("detail")
                return self._reject_green(record, config, METRICS_FAILED, detail)

            result: dict[str, Any] = {
                "status": "success",
                "deployment_id": record.id,
                "green_environment": {"environment_id": env_id, "healthy": True},
                "deployment_time": int(time.time()),
            }

            if config.switch_traffic:
                switch = self.traffic_switch(service, active, env_id, strategy=config.traffic_switch_strategy)
                result["traffic_switch"] = switch
                if switch.get("status") != "success":
                    # traffic_switch already rolled back or reverted and updated the record.
                    result["status"] = "failed"
                    result["rollback_performed"] = bool(switch.get("rollback_triggered"))
                    return result

            self._advance(record, DeploymentStatus.COMPLETED, f"Deployment of {config.version_label} completed")
            return result

    # -- traffic --------------------------------------------------------

    def traffic_switch(
        self,
        service: str,
        from_env: str | None,
        to_env: str,
        strategy: SwitchStrategy | str = SwitchStrategy.GRADUAL,
    ) -> dict[str, Any]:
        try:
            strategy = SwitchStrategy(strategy)
        except ValueError:
            return {"status": "failed", "error": f"Unknown strategy: {strategy}"}

        with self.runtime.service_lock(service):
            self.runtime.clear_abort(service)
            record = self._record_for(service, to_env)
            if record is not None and not record.status.terminal:
                self._advance(record, DeploymentStatus.SWITCHING, f"Switching traffic to {to_env} ({strategy.value})")

            t0 = time.time()
            try:
                if strategy is SwitchStrategy.INSTANT:
                    res = self.load_balancer.switch_traffic_instant(service, from_env, to_env)
                    self._set_traffic(record, 100)
                    db.log_event("INFO", f"Switched 100% of traffic to {to_env}", service_name=service)
                    return {"status": "success", "switch_time": res.get("switch_time"), "strategy_used": "instant"}
                return self._gradual_switch(service, from_env, to_env, record, t0)
            except LoadBalancerError as e:
                return self._revert(service, from_env, to_env, record, e)

    def abort_traffic_switch(self, service: str, reason: str = "Traffic switch aborted by operator") -> dict[str, Any]:
        """Stop an in-flight gradual switch before its next step; it then rolls back."""
        self.runtime.request_abort(service, reason)
        db.log_event("WARN", f"Abort requested: {reason}", service_name=service)
        return {"status": "abort_requested", "reason": reason}

    def _gradual_switch(
        self, service: str, from_env: str | None, to_env: str, record: DeploymentRecord | None, t0: float
    ) -> dict[str, Any]:
        abort = self.runtime.abort_event(service)
        applied = 0
        for pct in self.traffic_steps:
            if abort.is_set():
                reason = self.runtime.abort_reason(service) or "Traffic switch aborted"
                return self._abort_switch(service, from_env, to_env, reason, applied)

            self.load_balancer.set_traffic_percentage(service, to_env, pct)
            applied = pct
            self._set_traffic(record, pct)
            db.log_event("INFO", f"Applied {pct}% of traffic to {to_env}", service_name=service)

            try:
                metrics = self.monitor.monitor_traffic_metrics(to_env, duration=self.observation_window_s)
            except Exception as e:
                db.log_event("ERROR", f"Traffic metrics failed: {type(e).__name__}: {e}", service_name=service)
                return self._abort_switch(service, from_env, to_env, METRICS_UNAVAILABLE, applied)

            error_rate = float(metrics.get("error_rate") or 0.0)
            if error_rate > self.error_rate_threshold:
                return self._abort_switch(service, from_env, to_env, HIGH_ERROR_RATE, applied, error_rate=error_rate)

            if pct < 100 and self.step_settle_s > 0:
                abort.wait(self.step_settle_s)

        return {
            "status": "success",
            "final_percentage": 100,
            "switch_completed": True,
            "strategy_used": "gradual",
            "total_switch_time": round(time.time() - t0, 3),
        }

    def _abort_switch(
        self,
        service: str,
        from_env: str | None,
        to_env: str,
        reason: str,
        percentage: int,
        error_rate: float | None = None,
    ) -> dict[str, Any]:
        db.log_event("ERROR", f"{reason} at {percentage}%", service_name=service)
        # The switch target is the bad side; traffic goes back to where it came from.
        rollback = self.rollback(service, reason=reason, failed_env=to_env, restore_env=from_env)
        result: dict[str, Any] = {
            "status": "failed",
            "reason": reason,
            "percentage": percentage,
            "rollback_triggered": True,
            "rollback": rollback,
        }
        if error_rate is not None:
            result["error_rate"] = error_rate
        if rollback.get("manual_intervention_required"):
            result["manual_intervention_required"] = True
        return result

    def _revert(
        self,
        service: str,
        from_env: str | None,
        to_env: str,
        record: DeploymentRecord | None,
        error: LoadBalancerError,
    ) -> dict[str, Any]:
        back_to = from_env or Environment.of(to_env).other.environment_id(service)
        db.log_event("ERROR", f"Traffic switch failed ({error}); reverting to {back_to}", service_name=service)
        try:
            self.load_balancer.revert_traffic(service, to=back_to)
        except LoadBalancerError as e:
            if record is not None:
                self._advance(record, DeploymentStatus.FAILED, f"Traffic revert failed: {e}", level="ERROR")
            manual_intervention_alert(service, "traffic revert", str(e))
            return {
                "status": "failed",
                "error": str(error),
                "traffic_reverted": False,
                "manual_intervention_required": True,
            }

        if record is not None:
            record.traffic_percentage = 0
            self._advance(record, DeploymentStatus.FAILED, f"Traffic switch failed, reverted to {back_to}", level="ERROR")
        return {"status": "failed", "error": str(error), "traffic_reverted": True, "reverted_to": back_to}

    # -- rollback -------------------------------------------------------

    def rollback(
        self,
        service: str,
        reason: str | None = None,
        version: str | None = None,
        manual: bool = False,
        force: bool = False,
        confirm: Callable[[str], bool] | None = None,
        failed_env: str | None = None,
        restore_env: str | None = None,
    ) -> dict[str, Any]:
        """Return traffic to the last known-good environment.

        Manual rollbacks ask ``confirm`` (or the deployer's default confirmer)
        unless ``force`` is set. Failures of the rollback itself are reported
        with ``manual_intervention_required`` and are never retried.

        ``failed_env`` names the environment to abandon when the caller knows
        it (a traffic switch does); traffic then goes to ``restore_env`` or,
        without one, to the other colour. Otherwise the source is the live
        deployment's new environment, else the load balancer's current target.
        """
        confirm = confirm or self.confirm
        if manual and not force and not confirm(service):
            db.log_event("INFO", MANUAL_CANCELLED, service_name=service)
            return {"status": "cancelled", "reason": MANUAL_CANCELLED}

        reason = reason or ("Manual rollback" if manual else "Automatic rollback")
        with self.runtime.service_lock(service):
            db.record_rollback(
                RollbackEvent(
                    service=service,
                    reason=reason,
                    initiated_by="manual" if manual else "automatic",
                    target_version=version,
                )
            )
            db.log_event("WARN", f"Rollback started: {reason}", service_name=service, version=version)

            if failed_env is not None:
                record = self._record_for(service, failed_env)
            else:
                record = self.runtime.get_deployment(service)
            if record is not None and record.status in (DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED):
                record = None
            if record is not None and version is None:
                self._advance(record, DeploymentStatus.ROLLING_BACK, f"Rolling back: {reason}", level="WARN")

            try:
                if version is not None:
                    result = self._rollback_to_version(service, version)
                else:
                    from_env = failed_env or (record.green_environment_id if record is not None else None)
                    result = self._rollback_to_standby(service, record, reason, from_env, restore_env)
            except Exception as e:
                # Traffic state is unknown now; a human has to look at it.
                if record is not None and version is None:
                    self._advance(record, DeploymentStatus.FAILED, f"Rollback failed: {e}", level="ERROR")
                manual_intervention_alert(service, "rollback", str(e))
                return {"status": "failed", "error": str(e), "manual_intervention_required": True}

            if manual and result.get("status") == "success":
                result["manual_confirmation"] = True
            return result

    def _rollback_to_standby(
        self,
        service: str,
        record: DeploymentRecord | None,
        reason: str,
        from_env: str | None,
        to_env: str | None,
    ) -> dict[str, Any]:
        from_env = from_env or self.load_balancer.get_current_target(service)
        if from_env is None:
            return {"status": "failed", "error": f"No active environment for service '{service}'"}

        to_env = to_env or Environment.of(from_env).other.environment_id(service)
        self.load_balancer.switch_traffic(service, from_env, to_env)
        self.containers.remove(from_env)

        if record is not None:
            record.traffic_percentage = 0
            self._advance(record, DeploymentStatus.ROLLED_BACK, f"Rolled back to {to_env}: {reason}", level="WARN")
        else:
            db.log_event("WARN", f"Rolled back to {to_env}: {reason}", service_name=service)
        return {
            "status": "success",
            "reason": reason,
            "traffic_switched_to": to_env,
            "decommissioned": from_env,
            "rollback_time": int(time.time()),
        }

    def _rollback_to_version(self, service: str, version: str) -> dict[str, Any]:
        target = self.containers.get_deployment_history(service).get(version)
        if target is None:
            db.log_event("ERROR", f"Version {version} not found in deployment history", service_name=service)
            return {"status": "failed", "error": f"Version {version} not found in deployment history"}

        env_id = target["environment_id"]
        self.containers.restart(env_id)
        self.load_balancer.switch_traffic(service, self.load_balancer.get_current_target(service), env_id)
        db.log_event("WARN", f"Rolled back to version {version} on {env_id}", service_name=service, version=version)
        return {
            "status": "success",
            "rolled_back_to": version,
            "environment_id": env_id,
            "rollback_time": int(time.time()),
        }

    def rollback_readiness(self, service: str) -> dict[str, Any]:
        prev = self.containers.get_previous_deployment(service)
        if prev.get("status") == "not_found":
            return {"rollback_ready": False, "issues": ["No previous deployment found for rollback"]}
        return {
            "rollback_ready": True,
            "previous_version": prev.get("version"),
            "rollback_image": prev.get("image"),
            "environment_id": prev.get("environment_id"),
        }

    # -- reads ----------------------------------------------------------

    def deployment_status(self, service: str) -> dict[str, Any]:
        service_status = self.containers.get_service_status(service)
        distribution = self.load_balancer.get_traffic_distribution(service)
        blue_id = Environment.BLUE.environment_id(service)
        green_id = Environment.GREEN.environment_id(service)
        record = self.runtime.get_deployment(service)

        return {
            "service": service,
            "current_environment": "green" if distribution.get(green_id, 0) > 50 else "blue",
            "blue_status": {
                "status": service_status.get("blue", {}).get("status"),
                "traffic_percentage": distribution.get(blue_id, 0),
            },
            "green_status": {
                "status": service_status.get("green", {}).get("status"),
                "traffic_percentage": distribution.get(green_id, 0),
            },
            "deployment": record.to_dict() if record else None,
        }

    def health_check(self, service: str) -> dict[str, Any]:
        blue = self.monitor.check_service_health(Environment.BLUE.environment_id(service))
        green = self.monitor.check_service_health(Environment.GREEN.environment_id(service))
        return {
            "blue_health": blue,
            "green_health": green,
            "overall_health": "healthy" if blue.get("healthy") or green.get("healthy") else "unhealthy",
        }

    def deployment_history(self, service: str) -> list[dict[str, Any]]:
        return [row.__dict__.copy() for row in db.list_deployments(service)]

    def rollback_history(self, service: str | None = None) -> list[dict[str, Any]]:
        return [row.__dict__.copy() for row in db.list_rollbacks(service)]

    # -- internals ------------------------------------------------------

    def _reject_green(
        self, record: DeploymentRecord, config: DeploymentConfig, reason: str, detail: Any
    ) -> dict[str, Any]:
        result: dict[str, Any] = {"status": "failed", "reason": reason, "detail": detail, "deployment_id": record.id}
        if not config.rollback_on_failure:
            self._advance(record, DeploymentStatus.FAILED, f"{reason}: {detail}", level="ERROR")
            result["rollback_performed"] = False
            return result

        rollback = self.rollback(config.service, reason=reason, failed_env=record.green_environment_id)
        result["rollback_performed"] = True
        result["rollback"] = rollback
        if rollback.get("manual_intervention_required"):
            result["manual_intervention_required"] = True
        return result

    @staticmethod
    def _gate(check: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        # A collaborator blowing up during a health gate counts as unhealthy.
        try:
            return check()
        except Exception as e:
            return {"healthy": False, "detail": f"{type(e).__name__}: {e}"}

    def _next_environment(self, service: str) -> str:
        # Opposite colour to whatever is live; the first deploy goes to green.
        active = self.load_balancer.get_current_target(service)
        color = Environment.of(active).other if active else Environment.GREEN
        return color.environment_id(service)

    def _record_for(self, service: str, environment_id: str) -> DeploymentRecord | None:
        record = self.runtime.get_deployment(service)
        if record is not None and record.green_environment_id == environment_id:
            return record
        return None

    def _set_traffic(self, record: DeploymentRecord | None, percentage: int) -> None:
        if record is None:
            return
        record.traffic_percentage = max(record.traffic_percentage, int(percentage))
        self.runtime.upsert_deployment(record)
        db.upsert_deployment(record)

    def _advance(
        self, record: DeploymentRecord, status: DeploymentStatus, message: str, level: str = "INFO"
    ) -> None:
        record.status = status
        record.message = message
        self.runtime.upsert_deployment(record)
        db.upsert_deployment(record)
        db.log_event(level, message, service_name=record.service, version=record.version)
