"""Read-only status API over the event journal, project records and live machines.

Usage:
    uvicorn main:app --host 127.0.0.1 --port 8000
"""
from __future__ import annotations

from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Query

from . import db
from .api_models import EventOut, MachineOut, ProjectStateOut
from .drivers import PlatformRegistry
from .errors import FleetError


def create_app(platforms: PlatformRegistry | None = None) -> FastAPI:
    if platforms is None:
        from .docker_ops import default_registry

        platforms = default_registry()

    app = FastAPI(title="ukfleet status")

    @app.on_event("startup")
    def _startup() -> None:
        db.init_db()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/projects", response_model=list[ProjectStateOut])
    def projects() -> list[dict]:
        return [asdict(s) for s in db.list_composes()]

    @app.get("/projects/{name}", response_model=ProjectStateOut)
    def project(name: str) -> dict:
        state = db.get_compose(name)
        if state is None:
            raise HTTPException(status_code=404, detail=f"unknown project {name}")
        return asdict(state)

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000)) -> list[dict]:
        return db.latest_events(limit)

    @app.get("/machines", response_model=list[MachineOut])
    def machines() -> list[dict]:
        out: list[dict] = []
        for name in platforms.names():
            driver = platforms.get(name)
            if not driver.available():
                continue
            try:
                out.extend(asdict(m) for m in driver.list())
            except FleetError as e:
                raise HTTPException(status_code=502, detail=str(e)) from e
        return out

    return app
