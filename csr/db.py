from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from .models import ChildResource, CustomResource, CustomServiceSpec, ObjectMeta
from .settings import settings


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "csr.db")

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
            CREATE TABLE IF NOT EXISTS custom_resources (
              kind TEXT NOT NULL,
              namespace TEXT NOT NULL,
              name TEXT NOT NULL,
              body TEXT NOT NULL, -- JSON, kubernetes object shape
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY(kind, namespace, name)
            );

            CREATE TABLE IF NOT EXISTS child_resources (
              namespace TEXT NOT NULL,
              name TEXT NOT NULL,
              labels TEXT NOT NULL,
              data TEXT NOT NULL,
              resource_version INTEGER NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY(namespace, name)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              namespace TEXT,
              name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, namespace: str | None = None, name: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, namespace, name, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), namespace, name, message),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


# --- custom resources (store of record) ---


@dataclass(frozen=True)
class ResourceRow:
    kind: str
    namespace: str
    name: str
    body: str
    created_at: str
    updated_at: str

    def to_resource(self) -> CustomResource:
        return CustomResource.from_dict(json.loads(self.body))


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def save_resource(kind: str, resource: CustomResource) -> CustomResource:
    ns, name = resource.identity
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO custom_resources (kind, namespace, name, body, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(kind, namespace, name) DO UPDATE SET
              body=excluded.body,
              updated_at=excluded.updated_at
            """,
            (kind, ns, name, json.dumps(resource.to_dict(), sort_keys=True), now, now),
        )
    return resource


def get_resource(kind: str, namespace: str, name: str) -> CustomResource | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM custom_resources WHERE kind=? AND namespace=? AND name=?",
            (kind, namespace, name),
        ).fetchone()
        return ResourceRow(**dict(row)).to_resource() if row else None


def list_resources(kind: str | None = None) -> list[CustomResource]:
    with connect() as conn:
        if kind:
            cur = conn.execute("SELECT * FROM custom_resources WHERE kind=? ORDER BY namespace, name", (kind,))
        else:
            cur = conn.execute("SELECT * FROM custom_resources ORDER BY kind, namespace, name")
        return [r.to_resource() for r in _rows_to_dataclass(cur.fetchall(), ResourceRow)]


def delete_resource(kind: str, namespace: str, name: str) -> bool:
    with connect() as conn:
        cur = conn.execute(
            "DELETE FROM custom_resources WHERE kind=? AND namespace=? AND name=?",
            (kind, namespace, name),
        )
        return cur.rowcount > 0


def apply_spec(kind: str, namespace: str, name: str, spec: CustomServiceSpec) -> CustomResource:
    """Create the resource or update its spec, bumping generation on change.

    Status and finalizers of an existing resource are preserved.
    """
    current = get_resource(kind, namespace, name)
    if current is None:
        resource = CustomResource(metadata=ObjectMeta(name=name, namespace=namespace), spec=spec)
        return save_resource(kind, resource)
    if current.metadata.marked_for_deletion:
        raise ValueError(f"{namespace}/{name} is being deleted; spec changes are rejected.")
    if current.spec != spec:
        current.spec = spec
        current.metadata.generation += 1
        save_resource(kind, current)
    return current


def mark_for_deletion(kind: str, namespace: str, name: str) -> CustomResource | None:
    current = get_resource(kind, namespace, name)
    if current is None:
        return None
    if not current.metadata.marked_for_deletion:
        current.metadata.deletion_timestamp = utc_now()
        save_resource(kind, current)
    return current


# --- child resources (backing store for SqliteChildGateway) ---


@dataclass(frozen=True)
class ChildRow:
    namespace: str
    name: str
    labels: str
    data: str
    resource_version: int
    updated_at: str

    def to_child(self) -> ChildResource:
        return ChildResource(
            metadata=ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                labels=json.loads(self.labels),
                resource_version=str(self.resource_version),
            ),
            data=json.loads(self.data),
        )


def get_child(namespace: str, name: str) -> ChildResource | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM child_resources WHERE namespace=? AND name=?", (namespace, name)
        ).fetchone()
        return ChildRow(**dict(row)).to_child() if row else None


def put_child(child: ChildResource) -> ChildResource:
    """Insert or fully replace a child; every write bumps resource_version."""
    meta = child.metadata
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO child_resources (namespace, name, labels, data, resource_version, updated_at)
            VALUES (?, ?, ?, ?, 1, ?)
            ON CONFLICT(namespace, name) DO UPDATE SET
              labels=excluded.labels,
              data=excluded.data,
              resource_version=child_resources.resource_version+1,
              updated_at=excluded.updated_at
            """,
            (
                meta.namespace,
                meta.name,
                json.dumps(meta.labels, sort_keys=True),
                json.dumps(child.data, sort_keys=True),
                utc_now(),
            ),
        )
        row = conn.execute(
            "SELECT * FROM child_resources WHERE namespace=? AND name=?", (meta.namespace, meta.name)
        ).fetchone()
        return ChildRow(**dict(row)).to_child()


def delete_child(namespace: str, name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM child_resources WHERE namespace=? AND name=?", (namespace, name))
        return cur.rowcount > 0


def list_children(namespace: str | None = None) -> list[ChildResource]:
    with connect() as conn:
        if namespace:
            cur = conn.execute("SELECT * FROM child_resources WHERE namespace=? ORDER BY name", (namespace,))
        else:
            cur = conn.execute("SELECT * FROM child_resources ORDER BY namespace, name")
        return [r.to_child() for r in _rows_to_dataclass(cur.fetchall(), ChildRow)]
