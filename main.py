from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from prc import db
from prc.api_models import AbortRequest, BuildRequest, DeployRequest, ParallelBuildRequest, RollbackRequest, TrafficSwitchRequest
from prc.context import Platform, build_platform
from prc.errors import CircularDependencyError, UnknownServiceError


def create_app(platform: Platform | None = None) -> FastAPI:
    app = FastAPI(title="Platform Release Coordinator")
    app.state.platform = platform

    @app.on_event("startup")
    def startup() -> None:
        if app.state.platform is None:
            app.state.platform = build_platform()
        else:
            db.init_db()

    @app.exception_handler(CircularDependencyError)
    def _cycle(request: Request, exc: CircularDependencyError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "cycle": exc.cycle})

    @app.exception_handler(UnknownServiceError)
    def _unknown(request: Request, exc: UnknownServiceError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    def _platform() -> Platform:
        return app.state.platform

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    # -- builds ---------------------------------------------------------

    @app.get("/builds/graph")
    def build_graph() -> dict[str, Any]:
        graph = _platform().graph
        return {"dependencies": graph.analyze(), "independent": graph.independent_services()}

    @app.get("/builds/order")
    def build_order(services: list[str] | None = Query(None)) -> dict[str, Any]:
        return {"order": _platform().scheduler.build_order(services)}

    @app.post("/builds")
    def build(req: BuildRequest) -> dict[str, Any]:
        results = _platform().scheduler.build(req.services)
        return {name: r.to_dict() for name, r in results.items()}

    @app.post("/builds/parallel")
    def parallel_build(req: ParallelBuildRequest) -> dict[str, Any]:
        p = _platform()
        services = req.services if req.services is not None else p.graph.independent_services()
        try:
            results = p.scheduler.parallel_build(services, max_workers=req.max_workers)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {name: r.to_dict() for name, r in results.items()}

    @app.get("/builds/status")
    def build_status() -> dict[str, Any]:
        return _platform().scheduler.build_status()

    @app.get("/builds/history")
    def build_history(service: str | None = None, limit: int = Query(50, ge=1, le=500)) -> list[dict[str, Any]]:
        return db.latest_builds(service, limit=limit)

    # -- deployments ----------------------------------------------------

    @app.post("/deployments")
    def deploy(req: DeployRequest) -> dict[str, Any]:
        return _platform().deployer.deploy(req.to_config())

    @app.post("/services/{service}/traffic")
    def traffic_switch(service: str, req: TrafficSwitchRequest) -> dict[str, Any]:
        try:
            return _platform().deployer.traffic_switch(service, req.from_env, req.to_env, strategy=req.strategy)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.post("/services/{service}/rollback")
    def rollback(service: str, req: RollbackRequest) -> dict[str, Any]:
        # Over HTTP the operator's answer travels in the request body.
        return _platform().deployer.rollback(
            service,
            reason=req.reason,
            version=req.version,
            manual=True,
            force=req.force,
            confirm=lambda _service: req.confirmed,
        )

    @app.post("/services/{service}/abort")
    def abort(service: str, req: AbortRequest) -> dict[str, Any]:
        return _platform().deployer.abort_traffic_switch(service, req.reason)

    @app.get("/services/{service}/status")
    def deployment_status(service: str) -> dict[str, Any]:
        return _platform().deployer.deployment_status(service)

    @app.get("/services/{service}/health")
    def service_health(service: str) -> dict[str, Any]:
        return _platform().deployer.health_check(service)

    @app.get("/services/{service}/history")
    def deployment_history(service: str) -> dict[str, Any]:
        deployer = _platform().deployer
        return {
            "deployments": deployer.deployment_history(service),
            "rollback_readiness": deployer.rollback_readiness(service),
        }

    @app.get("/rollbacks")
    def rollbacks(service: str | None = None) -> list[dict[str, Any]]:
        return _platform().deployer.rollback_history(service)

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), service: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=limit, service_name=service)

    return app


app = create_app()
