"""Source adapters, keyed by SourceType."""
from __future__ import annotations

from mcpatlas.models import SourceType
from mcpatlas.sources.base import SyncSource, SyncSourceOptions
from mcpatlas.sources.github import GitHubSource
from mcpatlas.sources.glama import GlamaSource
from mcpatlas.sources.npm import NpmSource
from mcpatlas.sources.pulsemcp import PulseMcpSource
from mcpatlas.sources.registry import McpRegistrySource

SOURCES = {
    SourceType.MCP_REGISTRY: McpRegistrySource,
    SourceType.NPM: NpmSource,
    SourceType.GITHUB: GitHubSource,
    SourceType.GLAMA: GlamaSource,
    SourceType.PULSEMCP: PulseMcpSource,
}


def get_source(source_type, settings, **kwargs) -> SyncSource:
    source_type = SourceType(source_type)
    return SOURCES[source_type](settings, **kwargs)


def get_all_sources(settings, **kwargs) -> list[SyncSource]:
    return [cls(settings, **kwargs) for cls in SOURCES.values()]


__all__ = ["SOURCES", "SyncSource", "SyncSourceOptions", "get_source", "get_all_sources"]
