from __future__ import annotations

import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable

from .models import CompositeState, ResourceRef
from .settings import settings


logger = logging.getLogger("ukfleet")

_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "WARNING": logging.WARNING, "ERROR": logging.ERROR}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (e.g. a bind mount that
    Docker created as a directory), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "ukfleet.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS compose_projects (
              name TEXT PRIMARY KEY,
              composefile TEXT NOT NULL,
              workdir TEXT NOT NULL,
              networks TEXT NOT NULL, -- json [{name, uid}]
              machines TEXT NOT NULL, -- json [{name, uid}]
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              project TEXT,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, project: str | None = None) -> None:
    level = level.upper()
    prefix = f"[{service_name}] " if service_name else ""
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", prefix, message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, project, service_name, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, project, service_name, message),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def _dump_refs(refs: list[ResourceRef]) -> str:
    return json.dumps([{"name": r.name, "uid": r.uid} for r in refs])


def _load_refs(raw: str) -> list[ResourceRef]:
    return [ResourceRef(name=x["name"], uid=x.get("uid", "")) for x in json.loads(raw or "[]")]


def _row_to_state(row: sqlite3.Row) -> CompositeState:
    return CompositeState(
        name=row["name"],
        composefile=row["composefile"],
        workdir=row["workdir"],
        networks=_load_refs(row["networks"]),
        machines=_load_refs(row["machines"]),
    )


def get_compose(name: str) -> CompositeState | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM compose_projects WHERE name=?", (name,)).fetchone()
        return _row_to_state(row) if row else None


def list_composes() -> list[CompositeState]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM compose_projects ORDER BY name").fetchall()
        return [_row_to_state(r) for r in rows]


_UPSERT_COMPOSE = """
    INSERT INTO compose_projects (name, composefile, workdir, networks, machines, updated_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(name) DO UPDATE SET
      composefile=excluded.composefile,
      workdir=excluded.workdir,
      networks=excluded.networks,
      machines=excluded.machines,
      updated_at=excluded.updated_at
"""


def _write_compose(conn: sqlite3.Connection, state: CompositeState) -> None:
    conn.execute(
        _UPSERT_COMPOSE,
        (
            state.name,
            state.composefile,
            state.workdir,
            _dump_refs(state.networks),
            _dump_refs(state.machines),
            utc_now(),
        ),
    )


def update_compose(
    state: CompositeState,
    keep_networks: Callable[[ResourceRef], bool] | None = None,
    keep_machines: Callable[[ResourceRef], bool] | None = None,
) -> CompositeState:
    """Merge ``state`` into the stored record and return the result.

    Without predicates the merge is a pure superset: owned resources are never
    dropped. ``keep_networks`` / ``keep_machines`` prune stored entries they
    reject before merging. The read, the pruning and the write share one
    transaction so that concurrent invocations do not lose each other's entries.
    """
    pruned = 0
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT * FROM compose_projects WHERE name=?", (state.name,)).fetchone()
        if row:
            stored = _row_to_state(row)
            networks = [r for r in stored.networks if keep_networks is None or keep_networks(r)]
            machines = [r for r in stored.machines if keep_machines is None or keep_machines(r)]
            pruned = len(stored.networks) - len(networks) + len(stored.machines) - len(machines)
            stored.networks, stored.machines = networks, machines
            merged = stored.merged(state)
        else:
            merged = state
        _write_compose(conn, merged)

    if pruned:
        log_event("INFO", f"pruned {pruned} stale resource(s) from project record", project=state.name)
    return merged
