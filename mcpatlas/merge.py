"""Deterministic merge of per-source reports into one record per identity."""
from __future__ import annotations

from collections import defaultdict

from mcpatlas.models import DiscoveredServer, MergedServer, SourceType

# Lower wins.
SOURCE_PRIORITY = {
    SourceType.MCP_REGISTRY: 1,
    SourceType.NPM: 2,
    SourceType.GITHUB: 3,
    SourceType.GLAMA: 4,
    SourceType.PULSEMCP: 5,
}

# Fields where one source is authoritative regardless of overall priority.
FIELD_PRIORITY = {
    "stars": [SourceType.GITHUB],
    "forks": [SourceType.GITHUB],
    "github_repo_id": [SourceType.GITHUB],
    "npm_downloads": [SourceType.NPM],
    "npm_quality_score": [SourceType.NPM],
    "version": [SourceType.NPM, SourceType.MCP_REGISTRY],
    "install_command": [SourceType.MCP_REGISTRY, SourceType.NPM],
}

MERGED_FIELDS = [
    "name",
    "description",
    "version",
    "github_owner",
    "github_repo",
    "github_repo_id",
    "npm_package",
    "pypi_package",
    "install_command",
    "stars",
    "forks",
    "npm_downloads",
    "npm_quality_score",
    "last_updated",
]


def _is_set(value) -> bool:
    return value is not None and value != ""


def _sort_key(server: DiscoveredServer):
    return (
        SOURCE_PRIORITY.get(server.source, 99),
        server.source_identifier,
        server.name or "",
        server.version or "",
        server.description or "",
    )


def group_by_identity(servers) -> dict[str, list[DiscoveredServer]]:
    groups: dict[str, list[DiscoveredServer]] = defaultdict(list)
    for server in servers:
        groups[server.canonical_url.lower()].append(server)
    return dict(groups)


def merge_group(servers: list[DiscoveredServer]) -> MergedServer:
    """Merge every report for one identity.

    Output depends only on the set of reports, never on their order.
    """
    if not servers:
        raise ValueError("merge_group needs at least one record")

    ordered = sorted(servers, key=_sort_key)
    by_source: dict[SourceType, DiscoveredServer] = {}
    for server in ordered:
        by_source.setdefault(server.source, server)

    values = {}
    for name in MERGED_FIELDS:
        value = None
        for source in FIELD_PRIORITY.get(name, []):
            record = by_source.get(source)
            if record is not None and _is_set(getattr(record, name)):
                value = getattr(record, name)
                break
        if value is None:
            for record in ordered:
                candidate = getattr(record, name)
                if _is_set(candidate):
                    value = candidate
                    break
        values[name] = value

    sources = list(by_source)
    return MergedServer(
        canonical_url=ordered[0].canonical_url.lower(),
        sources=sources,
        source_data={
            s: r.payload for s, r in by_source.items() if r.payload is not None
        },
        source_identifiers={s: r.source_identifier for s, r in by_source.items()},
        **{**values, "name": values["name"] or ordered[0].canonical_url.rsplit("/", 1)[-1]},
    )


def merge_all(servers) -> list[MergedServer]:
    """Group and merge, ordered by canonical identity."""
    groups = group_by_identity(servers)
    return [merge_group(groups[key]) for key in sorted(groups)]
