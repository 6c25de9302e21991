from __future__ import annotations

from fastapi import FastAPI, Query

from . import db
from .api_models import CertificateModel, EventModel, HealthResponse, RouteModel, RoutesResponse
from .reconciler import Reconciler


def create_app(reconciler: Reconciler) -> FastAPI:
    """Read-only status API over a running reconciler."""
    app = FastAPI(title="reprox")
    runtime = reconciler.runtime

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(
            state=runtime.lifecycle,
            last_cycle_at=runtime.last_cycle_at,
            last_error=runtime.last_error,
        )

    @app.get("/routes", response_model=RoutesResponse)
    def routes() -> RoutesResponse:
        snap = runtime.snapshot()
        return RoutesResponse(
            version=snap.version,
            updated_at=snap.updated_at,
            routes=[RouteModel(host=r.host, upstream=r.upstream) for r in snap.routes],
        )

    @app.get("/certificates", response_model=list[CertificateModel])
    def certificates() -> list[CertificateModel]:
        hosts = runtime.snapshot().hosts
        return [CertificateModel(host=h, state=s) for h, s in reconciler.certs.states(hosts).items()]

    @app.get("/events", response_model=list[EventModel])
    def events(limit: int = Query(50, ge=1, le=1000)) -> list[EventModel]:
        return [EventModel(**e) for e in db.latest_events(limit)]

    return app
