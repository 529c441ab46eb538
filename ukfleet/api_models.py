from __future__ import annotations

from pydantic import BaseModel, Field


class ResourceRefOut(BaseModel):
    name: str
    uid: str = ""


class ProjectStateOut(BaseModel):
    name: str
    composefile: str = Field("", description="Compose file the project was last brought up from")
    workdir: str = ""
    networks: list[ResourceRefOut] = Field(default_factory=list, description="Networks owned by the project")
    machines: list[ResourceRefOut] = Field(default_factory=list, description="Machines owned by the project")


class MachineOut(BaseModel):
    uid: str
    name: str
    state: str = Field(..., description="unknown|starting|running|exited|failed")
    platform: str = ""
    architecture: str = ""
    image: str = ""


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    project: str | None = None
    service_name: str | None = None
    message: str
