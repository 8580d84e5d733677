"""Official MCP registry adapter."""
from __future__ import annotations

import logging
import time
from urllib.parse import quote

from mcpatlas import config
from mcpatlas.canonical import normalize, parse_owner_repo
from mcpatlas.models import BatchStats, DiscoveredServer, SourcePayload, SourceType, SyncBatch
from mcpatlas.sources.base import HttpClient, Pacer, SourceStage, SyncSource

logger = logging.getLogger(__name__)

OFFICIAL_META = "io.modelcontextprotocol.registry/official"


def _find_package(packages, *registry_types):
    for pkg in packages or []:
        if pkg.get("registryType") in registry_types and pkg.get("identifier"):
            return pkg["identifier"]
    return None


def install_command(packages) -> str | None:
    npm = _find_package(packages, "npm")
    if npm:
        return f"npx -y {npm}"
    pypi = _find_package(packages, "pip", "pypi")
    if pypi:
        return f"uvx {pypi}"
    return None


def is_latest(entry: dict) -> bool:
    return bool(((entry.get("_meta") or {}).get(OFFICIAL_META) or {}).get("isLatest"))


def entry_to_server(entry: dict) -> DiscoveredServer | None:
    srv = entry.get("server") or {}
    name = srv["name"]
    repo_url = (srv.get("repository") or {}).get("url")
    canonical = normalize(repo_url)
    if canonical is None:
        return None
    owner, repo = parse_owner_repo(repo_url)
    packages = srv.get("packages")
    return DiscoveredServer(
        canonical_url=canonical,
        source=SourceType.MCP_REGISTRY,
        source_identifier=name,
        name=srv.get("title") or name.split("/")[-1] or name,
        description=srv.get("description"),
        version=srv.get("version"),
        github_owner=owner,
        github_repo=repo,
        npm_package=_find_package(packages, "npm"),
        pypi_package=_find_package(packages, "pip", "pypi"),
        install_command=install_command(packages),
        source_url=f"https://registry.modelcontextprotocol.io/servers/{quote(name, safe='')}",
        payload=SourcePayload(SourceType.MCP_REGISTRY, entry),
    )


class RegistryListStage(SourceStage):
    """Cursor-paginated server listing. Cursor is the registry's nextCursor."""

    name = "list"

    def __init__(self, client: HttpClient, pacer: Pacer):
        self.client = client
        self.pacer = pacer

    def fetch(self, ctx, cursor=None):
        while True:
            self.pacer.wait()
            params = {"limit": config.MCP_REGISTRY_PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            resp = self.client.get(config.MCP_REGISTRY_URL, params=params)
            if resp is None:
                yield SyncBatch([], has_more=False, stats=BatchStats(errors=1),
                                stage=self.name, cursor=cursor)
                return

            data = resp.json()
            entries = data.get("servers") or []
            stats = BatchStats(fetched=len(entries))
            servers = []
            for entry in entries:
                name = (entry.get("server") or {}).get("name")
                if not name or not is_latest(entry):
                    stats.filtered += 1
                    continue
                if not ctx.claim((SourceType.MCP_REGISTRY, name)):
                    stats.filtered += 1
                    continue
                server = entry_to_server(entry)
                if server is None:
                    logger.debug("mcp-registry: %s has no code-host repository", name)
                    stats.filtered += 1
                    continue
                servers.append(server)

            cursor = (data.get("metadata") or {}).get("nextCursor")
            yield SyncBatch(servers, has_more=bool(cursor), stats=stats,
                            stage=self.name, cursor=cursor)
            if not cursor:
                return


class McpRegistrySource(SyncSource):
    source_type = SourceType.MCP_REGISTRY

    def __init__(self, settings=None, session=None, sleep=time.sleep):
        self.client = HttpClient("mcp-registry", session=session, sleep=sleep)
        self.pacer = Pacer(config.MCP_REGISTRY_PAGE_DELAY, sleep=sleep)

    def stages(self):
        return [RegistryListStage(self.client, self.pacer)]
