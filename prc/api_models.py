from __future__ import annotations

from pydantic import BaseModel, Field

from .models import DeploymentConfig, HealthCheckConfig, SwitchStrategy


class BuildRequest(BaseModel):
    services: list[str] | None = Field(None, description="Services to build; dependencies are pulled in. Omit for all.")


class ParallelBuildRequest(BaseModel):
    services: list[str] | None = Field(None, description="Independent services. Omit for every independent service.")
    max_workers: int | None = Field(None, ge=1, le=64)


class HealthCheckRequest(BaseModel):
    path: str = Field("/health", description="Health endpoint path")
    timeout: int | None = Field(None, description="Seconds to wait for the green environment to become healthy (default PRC_HEALTH_TIMEOUT_S)")
    retries: int = Field(3)
    port: int | None = Field(None, description="Container port serving the health endpoint")


class DeployRequest(BaseModel):
    service: str = Field(..., description="Logical service name (dns-safe)")
    image: str = Field(..., description="Docker image (name:tag)")
    version: str | None = Field(None, description="Version label; defaults to the image tag")
    replicas: int = Field(1)
    health_check: HealthCheckRequest = Field(default_factory=HealthCheckRequest)
    traffic_switch_strategy: SwitchStrategy = SwitchStrategy.GRADUAL
    rollback_on_failure: bool = True
    switch_traffic: bool = Field(False, description="Migrate traffic right after the green environment is healthy")
    environment: dict[str, str] = Field(default_factory=dict)

    def to_config(self) -> DeploymentConfig:
        # Range checks are left to the deployment validator so that rejected
        # configs come back as a failed deployment with its error list.
        return DeploymentConfig(
            image=self.image,
            service=self.service,
            replicas=self.replicas,
            health_check=HealthCheckConfig(**self.health_check.model_dump(exclude_none=True)),
            traffic_switch_strategy=self.traffic_switch_strategy,
            rollback_on_failure=self.rollback_on_failure,
            switch_traffic=self.switch_traffic,
            version=self.version,
            environment=dict(self.environment),
        )


class TrafficSwitchRequest(BaseModel):
    from_env: str | None = Field(None, description="Environment id currently serving, e.g. billing-blue")
    to_env: str = Field(..., description="Environment id to move traffic to, e.g. billing-green")
    strategy: str = Field(SwitchStrategy.GRADUAL.value, description="gradual|instant")


class RollbackRequest(BaseModel):
    reason: str | None = None
    version: str | None = Field(None, description="Roll back to this historical version instead of the standby")
    confirmed: bool = Field(False, description="Operator confirmation for a manual rollback")
    force: bool = Field(False, description="Skip the confirmation step")


class AbortRequest(BaseModel):
    reason: str = "Traffic switch aborted by operator"
