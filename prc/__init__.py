"""Platform Release Coordinator (PRC).

Build and release orchestration for a multi-service platform:
 - dependency-ordered container builds with cascading skips
 - bounded parallel builds for independent services
 - blue-green deployments with health-gated, stepwise traffic migration
 - automatic and manual rollback with an audit trail

Collaborators (docker, traffic routing, health probes) are injected so the
orchestration logic can be exercised without a container runtime.
"""
