from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "healthy"
    state: str = Field(..., description="starting|running|stopping|stopped")
    last_cycle_at: str | None = None
    last_error: str | None = None


class RouteModel(BaseModel):
    host: str
    upstream: str


class RoutesResponse(BaseModel):
    version: int = Field(..., description="Increments on every applied change")
    updated_at: str | None = None
    routes: list[RouteModel]


class CertificateModel(BaseModel):
    host: str
    state: str = Field(..., description="absent|self-signed|trusted")


class EventModel(BaseModel):
    id: int
    ts: str
    level: str
    host: str | None = None
    message: str
