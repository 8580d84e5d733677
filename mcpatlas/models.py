from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class SourceType(str, Enum):
    MCP_REGISTRY = "mcp-registry"
    NPM = "npm"
    GITHUB = "github"
    GLAMA = "glama"
    PULSEMCP = "pulsemcp"


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (ValidationStatus.PENDING, ValidationStatus.VALIDATING)


TERMINAL_STATUSES = frozenset({
    ValidationStatus.COMPLETED,
    ValidationStatus.FAILED,
    ValidationStatus.CANCELLED,
    ValidationStatus.SKIPPED,
})


class ConformanceStatus(str, Enum):
    """Conformance of a catalog entry, as last observed."""
    PENDING = "pending"
    VALIDATED = "validated"
    FAILED = "failed"
    SKIPPED = "skipped"
    NEEDS_CONFIG = "needs_config"


class AuditAction(str, Enum):
    SUBMIT = "submit"
    VALIDATE = "validate"
    DISPATCH = "dispatch"
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"
    SKIP = "skip"
    APPROVE = "approve"
    REJECT = "reject"
    REVALIDATE = "revalidate"


@dataclass(frozen=True)
class SourcePayload:
    """Raw upstream payload, tagged with the source that produced it.

    The payload stays opaque; it is kept for audit and debug display only.
    """
    source: SourceType
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"source": self.source.value, "raw": self.raw}

    @classmethod
    def from_dict(cls, data: dict) -> "SourcePayload":
        return cls(source=SourceType(data["source"]), raw=data.get("raw") or {})


@dataclass(frozen=True)
class DiscoveredServer:
    """One source's report of one MCP server.

    canonical_url is already normalized by the adapter that built it.
    """
    canonical_url: str
    source: SourceType
    source_identifier: str
    name: str
    description: str | None = None
    version: str | None = None
    github_owner: str | None = None
    github_repo: str | None = None
    github_repo_id: int | None = None
    npm_package: str | None = None
    pypi_package: str | None = None
    install_command: str | None = None
    stars: int | None = None
    forks: int | None = None
    npm_downloads: int | None = None
    npm_quality_score: float | None = None
    last_updated: str | None = None
    source_url: str | None = None
    payload: SourcePayload | None = None
    discovered_at: str = field(default_factory=utc_now)


@dataclass
class BatchStats:
    fetched: int = 0
    filtered: int = 0
    errors: int = 0

    def add(self, other: "BatchStats") -> None:
        self.fetched += other.fetched
        self.filtered += other.filtered
        self.errors += other.errors


@dataclass
class SyncBatch:
    servers: list[DiscoveredServer]
    has_more: bool
    stats: BatchStats = field(default_factory=BatchStats)
    stage: str | None = None
    cursor: str | None = None


@dataclass
class MergedServer:
    """The reconciled view of every report sharing one canonical identity."""
    canonical_url: str
    name: str
    description: str | None = None
    version: str | None = None
    github_owner: str | None = None
    github_repo: str | None = None
    github_repo_id: int | None = None
    npm_package: str | None = None
    pypi_package: str | None = None
    install_command: str | None = None
    stars: int | None = None
    forks: int | None = None
    npm_downloads: int | None = None
    npm_quality_score: float | None = None
    last_updated: str | None = None
    sources: list[SourceType] = field(default_factory=list)
    source_data: dict[SourceType, SourcePayload] = field(default_factory=dict)
    source_identifiers: dict[SourceType, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {
            "canonical_url": self.canonical_url,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "github_owner": self.github_owner,
            "github_repo": self.github_repo,
            "github_repo_id": self.github_repo_id,
            "npm_package": self.npm_package,
            "pypi_package": self.pypi_package,
            "install_command": self.install_command,
            "stars": self.stars,
            "forks": self.forks,
            "npm_downloads": self.npm_downloads,
            "npm_quality_score": self.npm_quality_score,
            "last_updated": self.last_updated,
            "sources": [s.value for s in self.sources],
            "source_identifiers": {
                s.value: self.source_identifiers[s] for s in self.sources
                if s in self.source_identifiers
            },
            "source_data": {
                s.value: self.source_data[s].raw for s in self.sources
                if s in self.source_data
            },
        }
        return d


@dataclass
class CatalogServer:
    """A stored catalog entry."""
    id: str
    slug: str
    name: str
    source_url: str
    description: str | None = None
    github_owner: str | None = None
    github_repo: str | None = None
    github_repo_id: int | None = None
    stars: int = 0
    forks: int = 0
    npm_package: str | None = None
    npm_downloads: int = 0
    pypi_package: str | None = None
    install_command: str | None = None
    version: str | None = None
    language: str | None = None
    tags: list[str] = field(default_factory=list)
    is_official: bool = False
    validation_status: ConformanceStatus = ConformanceStatus.PENDING
    validation_error: str | None = None
    validated_at: str | None = None
    tools: list[dict] = field(default_factory=list)
    resources: list[dict] = field(default_factory=list)
    prompts: list[dict] = field(default_factory=list)
    discovered_sources: list[str] = field(default_factory=list)
    last_synced_at: str | None = None
    created_at: str = field(default_factory=utc_now)


@dataclass
class Actor:
    """Whoever is acting on a validation request."""
    id: str
    is_reviewer: bool = False

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=SYSTEM_ACTOR_ID, is_reviewer=True)


SYSTEM_ACTOR_ID = "system"


@dataclass
class ValidationRequest:
    id: str
    server_id: str
    requested_by: str
    status: ValidationStatus = ValidationStatus.PENDING
    install_command: str | None = None
    is_owner: bool = False
    result: dict | None = None
    error: str | None = None
    encrypted_credentials: str | None = None
    attempts: int = 0
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    started_at: str | None = None
    completed_at: str | None = None

    def public_dict(self) -> dict:
        """Everything except the ciphertext."""
        return {
            "id": self.id,
            "server_id": self.server_id,
            "requested_by": self.requested_by,
            "status": self.status.value,
            "install_command": self.install_command,
            "is_owner": self.is_owner,
            "result": self.result,
            "error": self.error,
            "has_credentials": self.encrypted_credentials is not None,
            "attempts": self.attempts,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class AuditEntry:
    request_id: str | None
    server_id: str | None
    actor: str
    action: AuditAction
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)
