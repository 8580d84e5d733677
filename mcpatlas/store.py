"""SQLite-backed catalog store.

One CatalogStore is constructed explicitly and handed to every component
that needs it. The connection is shared between threads; all writes go
through a single lock.
"""
from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading

from mcpatlas.errors import DuplicateRequest
from mcpatlas.models import (
    AuditAction,
    AuditEntry,
    CatalogServer,
    ConformanceStatus,
    SourcePayload,
    ValidationRequest,
    ValidationStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS servers (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    source_url TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT,
    github_owner TEXT,
    github_repo TEXT,
    github_repo_id INTEGER,
    stars INTEGER NOT NULL DEFAULT 0,
    forks INTEGER NOT NULL DEFAULT 0,
    npm_package TEXT,
    npm_downloads INTEGER NOT NULL DEFAULT 0,
    pypi_package TEXT,
    install_command TEXT,
    version TEXT,
    language TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    is_official INTEGER NOT NULL DEFAULT 0,
    validation_status TEXT NOT NULL DEFAULT 'pending',
    validation_error TEXT,
    validated_at TEXT,
    tools TEXT NOT NULL DEFAULT '[]',
    resources TEXT NOT NULL DEFAULT '[]',
    prompts TEXT NOT NULL DEFAULT '[]',
    discovered_sources TEXT NOT NULL DEFAULT '[]',
    last_synced_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS server_sources (
    server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
    source TEXT NOT NULL,
    source_identifier TEXT NOT NULL,
    source_url TEXT,
    payload TEXT NOT NULL DEFAULT '{}',
    fetched_at TEXT NOT NULL,
    PRIMARY KEY (server_id, source)
);

CREATE TABLE IF NOT EXISTS validation_requests (
    id TEXT PRIMARY KEY,
    server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
    requested_by TEXT NOT NULL,
    status TEXT NOT NULL,
    install_command TEXT,
    is_owner INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    error TEXT,
    encrypted_credentials TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    reviewed_by TEXT,
    reviewed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_requests_server ON validation_requests(server_id, requested_by, status);

-- At most one active request per (server, requester), across processes.
CREATE UNIQUE INDEX IF NOT EXISTS idx_requests_active
    ON validation_requests(server_id, requested_by)
    WHERE status IN ('pending', 'validating');

CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    request_id TEXT,
    server_id TEXT,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_request ON audit_log(request_id);
"""

_CATALOG_FIELDS = [
    "name", "description", "github_owner", "github_repo", "github_repo_id",
    "stars", "forks", "npm_package", "npm_downloads", "pypi_package",
    "install_command", "version", "language", "tags", "is_official",
    "discovered_sources", "last_synced_at",
]
_JSON_FIELDS = {"tags", "tools", "resources", "prompts", "discovered_sources"}

_REQUEST_FIELDS = [
    "server_id", "requested_by", "status", "install_command", "is_owner",
    "result", "error", "encrypted_credentials", "attempts", "reviewed_by",
    "reviewed_at", "created_at", "updated_at", "started_at", "completed_at",
]


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug[:80] or "server"


def _to_column(name: str, value):
    if name in _JSON_FIELDS:
        return json.dumps(value or [])
    if isinstance(value, bool):
        return int(value)
    return value


class CatalogStore:
    def __init__(self, path: str):
        self.path = path
        if path != ":memory:":
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.conn = sqlite3.connect(path, timeout=30.0, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self._lock = threading.RLock()
        with self._lock:
            self.conn.executescript(SCHEMA)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -- servers --------------------------------------------------------

    def _row_to_server(self, row) -> CatalogServer:
        data = dict(row)
        for key in _JSON_FIELDS:
            data[key] = json.loads(data[key] or "[]")
        data["is_official"] = bool(data["is_official"])
        data["validation_status"] = ConformanceStatus(data["validation_status"])
        return CatalogServer(**data)

    def get_server(self, server_id: str) -> CatalogServer | None:
        row = self.conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
        return self._row_to_server(row) if row else None

    def get_server_by_url(self, source_url: str) -> CatalogServer | None:
        row = self.conn.execute(
            "SELECT * FROM servers WHERE source_url = ?", (source_url.lower(),)).fetchone()
        return self._row_to_server(row) if row else None

    def get_server_by_slug(self, slug: str) -> CatalogServer | None:
        row = self.conn.execute("SELECT * FROM servers WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_server(row) if row else None

    def list_servers(self, status: ConformanceStatus | None = None,
                     limit: int | None = None) -> list[CatalogServer]:
        query = "SELECT * FROM servers"
        params: list = []
        if status is not None:
            query += " WHERE validation_status = ?"
            params.append(ConformanceStatus(status).value)
        query += " ORDER BY stars DESC, source_url"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        return [self._row_to_server(r) for r in self.conn.execute(query, params).fetchall()]

    def known_urls(self) -> set[str]:
        return {r[0] for r in self.conn.execute("SELECT source_url FROM servers").fetchall()}

    def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug, n = base, 1
        while self.conn.execute("SELECT 1 FROM servers WHERE slug = ?", (slug,)).fetchone():
            n += 1
            slug = f"{base}-{n}"
        return slug

    def upsert_server(self, server: CatalogServer) -> CatalogServer:
        """Insert or update by source_url.

        Conformance fields are only written on insert; validation owns them
        afterwards.
        """
        server.source_url = server.source_url.lower()
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT id, slug, created_at FROM servers WHERE source_url = ?",
                (server.source_url,)).fetchone()
            if row:
                server.id, server.slug, server.created_at = row["id"], row["slug"], row["created_at"]
                assignments = ", ".join(f"{f} = ?" for f in _CATALOG_FIELDS)
                self.conn.execute(
                    f"UPDATE servers SET {assignments} WHERE id = ?",
                    [_to_column(f, getattr(server, f)) for f in _CATALOG_FIELDS] + [server.id])
            else:
                server.slug = self._unique_slug(server.slug or server.name)
                fields = ["id", "slug", "source_url", "created_at", "validation_status",
                          "validation_error", "validated_at", "tools", "resources", "prompts"]
                fields += _CATALOG_FIELDS
                values = []
                for f in fields:
                    value = getattr(server, f)
                    if f == "validation_status":
                        value = ConformanceStatus(value).value
                    values.append(_to_column(f, value))
                self.conn.execute(
                    f"INSERT INTO servers ({', '.join(fields)}) VALUES ({', '.join('?' * len(fields))})",
                    values)
        return self.get_server(server.id)

    def set_conformance(self, server_id: str, status: ConformanceStatus, error: str | None = None,
                        tools=None, resources=None, prompts=None, validated_at: str | None = None) -> None:
        """Record a validation outcome.

        Capability lists are only overwritten when given, so a failure keeps
        whatever the last success recorded.
        """
        assignments = {"validation_status": ConformanceStatus(status).value, "validation_error": error}
        if tools is not None:
            assignments["tools"] = json.dumps(tools)
        if resources is not None:
            assignments["resources"] = json.dumps(resources)
        if prompts is not None:
            assignments["prompts"] = json.dumps(prompts)
        if validated_at is not None:
            assignments["validated_at"] = validated_at
        sql = ", ".join(f"{k} = ?" for k in assignments)
        with self._lock, self.conn:
            self.conn.execute(f"UPDATE servers SET {sql} WHERE id = ?",
                              list(assignments.values()) + [server_id])

    def save_source(self, server_id: str, source: str, source_identifier: str,
                    source_url: str | None, payload: SourcePayload | None) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """INSERT INTO server_sources (server_id, source, source_identifier, source_url, payload, fetched_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (server_id, source) DO UPDATE SET
                       source_identifier = excluded.source_identifier,
                       source_url = excluded.source_url,
                       payload = excluded.payload,
                       fetched_at = excluded.fetched_at""",
                (server_id, source, source_identifier, source_url,
                 json.dumps(payload.to_dict() if payload else {}, default=str), utc_now()))

    def sources_for(self, server_id: str) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM server_sources WHERE server_id = ? ORDER BY source", (server_id,)).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["payload"] = json.loads(d["payload"] or "{}")
            out.append(d)
        return out

    # -- validation requests ---------------------------------------------

    def _row_to_request(self, row) -> ValidationRequest:
        data = dict(row)
        data["status"] = ValidationStatus(data["status"])
        data["is_owner"] = bool(data["is_owner"])
        data["result"] = json.loads(data["result"]) if data["result"] else None
        return ValidationRequest(**data)

    def _request_values(self, request: ValidationRequest) -> list:
        values = []
        for f in _REQUEST_FIELDS:
            value = getattr(request, f)
            if f == "status":
                value = ValidationStatus(value).value
            elif f == "result":
                value = json.dumps(value) if value is not None else None
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)
        return values

    def insert_request(self, request: ValidationRequest) -> None:
        """Raises DuplicateRequest if the requester already has an active one."""
        fields = ["id"] + _REQUEST_FIELDS
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    f"INSERT INTO validation_requests ({', '.join(fields)}) "
                    f"VALUES ({', '.join('?' * len(fields))})",
                    [request.id] + self._request_values(request))
        except sqlite3.IntegrityError:
            if ValidationStatus(request.status).is_active and self.find_active_request(
                    request.server_id, request.requested_by) is not None:
                raise DuplicateRequest(
                    f"{request.requested_by} already has an active request for {request.server_id}") from None
            raise

    def save_request(self, request: ValidationRequest,
                     expected_status: ValidationStatus | None = None) -> bool:
        """Write the whole row. With expected_status, only if the stored status still matches.

        Returns False when the compare-and-set found a different status.
        """
        request.updated_at = utc_now()
        assignments = ", ".join(f"{f} = ?" for f in _REQUEST_FIELDS)
        query = f"UPDATE validation_requests SET {assignments} WHERE id = ?"
        params = self._request_values(request) + [request.id]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(ValidationStatus(expected_status).value)
        with self._lock, self.conn:
            cur = self.conn.execute(query, params)
        return cur.rowcount == 1

    def attach_ciphertext(self, request_id: str, token: str) -> bool:
        """Store ciphertext on a request, only while it is still validating."""
        with self._lock, self.conn:
            cur = self.conn.execute(
                """UPDATE validation_requests SET encrypted_credentials = ?, updated_at = ?
                   WHERE id = ? AND status = 'validating'""",
                (token, utc_now(), request_id))
        return cur.rowcount == 1

    def get_request(self, request_id: str) -> ValidationRequest | None:
        row = self.conn.execute(
            "SELECT * FROM validation_requests WHERE id = ?", (request_id,)).fetchone()
        return self._row_to_request(row) if row else None

    def find_active_request(self, server_id: str, requested_by: str) -> ValidationRequest | None:
        row = self.conn.execute(
            """SELECT * FROM validation_requests
               WHERE server_id = ? AND requested_by = ? AND status IN ('pending', 'validating')
               ORDER BY created_at DESC LIMIT 1""",
            (server_id, requested_by)).fetchone()
        return self._row_to_request(row) if row else None

    def latest_request(self, server_id: str) -> ValidationRequest | None:
        """Most recent request for a server that was not cancelled."""
        row = self.conn.execute(
            """SELECT * FROM validation_requests
               WHERE server_id = ? AND status != 'cancelled'
               ORDER BY created_at DESC LIMIT 1""",
            (server_id,)).fetchone()
        return self._row_to_request(row) if row else None

    def list_requests(self, status: ValidationStatus | None = None,
                      limit: int = 50) -> list[ValidationRequest]:
        if status is None:
            rows = self.conn.execute(
                "SELECT * FROM validation_requests ORDER BY created_at DESC LIMIT ?", (limit,)).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM validation_requests WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (ValidationStatus(status).value, limit)).fetchall()
        return [self._row_to_request(r) for r in rows]

    def take_ciphertext(self, request_id: str) -> str | None:
        """Read and clear a request's ciphertext in one transaction."""
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT encrypted_credentials FROM validation_requests WHERE id = ?",
                (request_id,)).fetchone()
            if row is None or row[0] is None:
                return None
            self.conn.execute(
                "UPDATE validation_requests SET encrypted_credentials = NULL WHERE id = ?",
                (request_id,))
            return row[0]

    # -- audit -----------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """INSERT INTO audit_log (id, request_id, server_id, actor, action, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (entry.id, entry.request_id, entry.server_id, entry.actor,
                 AuditAction(entry.action).value, json.dumps(entry.metadata, default=str),
                 entry.created_at))

    def audit_for(self, request_id: str) -> list[AuditEntry]:
        rows = self.conn.execute(
            "SELECT * FROM audit_log WHERE request_id = ? ORDER BY created_at, rowid",
            (request_id,)).fetchall()
        return [
            AuditEntry(
                id=r["id"], request_id=r["request_id"], server_id=r["server_id"],
                actor=r["actor"], action=AuditAction(r["action"]),
                metadata=json.loads(r["metadata"] or "{}"), created_at=r["created_at"],
            )
            for r in rows
        ]
