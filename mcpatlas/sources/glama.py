"""Glama directory adapter: JSON API first, then the sitemap."""
from __future__ import annotations

import json
import logging
import re
import time

import json_repair

from mcpatlas import config
from mcpatlas.canonical import listing_identity, normalize, parse_owner_repo
from mcpatlas.models import BatchStats, DiscoveredServer, SourcePayload, SourceType, SyncBatch
from mcpatlas.sources.base import HttpClient, Pacer, SourceStage, SyncSource

logger = logging.getLogger(__name__)

_END_CURSOR = re.compile(r'"endCursor"\s*:\s*"([^"]+)"')
_SITEMAP_LOC = re.compile(r"<loc>https://glama\.ai/mcp/servers/([^<]+)</loc>")


def parse_page(text: str) -> dict | None:
    """Decode an API page, repairing the malformed JSON Glama sometimes serves."""
    try:
        data = json.loads(text)
    except ValueError:
        data = json_repair.loads(text)
    if not isinstance(data, dict) or not isinstance(data.get("servers"), list):
        return None
    return data


def _claim_key(canonical: str):
    return (SourceType.GLAMA, canonical)


def api_entry_to_server(srv: dict) -> DiscoveredServer:
    repo_url = (srv.get("repository") or {}).get("url")
    url = srv.get("url") or ""
    glama_url = url if url.startswith("http") else f"https://glama.ai{url}"
    canonical = normalize(repo_url) or listing_identity(glama_url)
    owner_repo = parse_owner_repo(repo_url) or (None, None)
    return DiscoveredServer(
        canonical_url=canonical,
        source=SourceType.GLAMA,
        source_identifier=str(srv.get("id") or srv.get("slug") or glama_url),
        name=srv.get("name") or canonical.rsplit("/", 1)[-1],
        description=srv.get("description"),
        github_owner=owner_repo[0],
        github_repo=owner_repo[1],
        source_url=glama_url,
        payload=SourcePayload(SourceType.GLAMA, srv),
    )


class GlamaApiStage(SourceStage):
    """Cursor walk of the API. Cursor is the last endCursor."""

    name = "api"

    def __init__(self, client: HttpClient, pacer: Pacer):
        self.client = client
        self.pacer = pacer

    def fetch(self, ctx, cursor=None):
        failures = 0
        while True:
            self.pacer.wait()
            params = {"after": cursor} if cursor else None
            resp = self.client.get(config.GLAMA_API_URL, params=params)
            if resp is None:
                yield SyncBatch([], has_more=False, stats=BatchStats(errors=1),
                                stage=self.name, cursor=cursor)
                return

            data = parse_page(resp.text)
            if data is None:
                failures += 1
                logger.warning("glama: skipping page with unfixable JSON (cursor %s)",
                               (cursor or "")[:20])
                salvaged = _END_CURSOR.search(resp.text)
                if failures >= config.GLAMA_MAX_CONSECUTIVE_FAILURES or not salvaged:
                    if failures >= config.GLAMA_MAX_CONSECUTIVE_FAILURES:
                        logger.warning("glama: %d consecutive bad pages, stopping", failures)
                    yield SyncBatch([], has_more=False, stats=BatchStats(errors=1),
                                    stage=self.name, cursor=cursor)
                    return
                cursor = salvaged.group(1)
                yield SyncBatch([], has_more=True, stats=BatchStats(errors=1),
                                stage=self.name, cursor=cursor)
                continue
            failures = 0

            entries = data["servers"]
            stats = BatchStats(fetched=len(entries))
            servers = []
            for srv in entries:
                if not isinstance(srv, dict):
                    stats.errors += 1
                    continue
                server = api_entry_to_server(srv)
                if not ctx.claim(_claim_key(server.canonical_url)):
                    stats.filtered += 1
                    continue
                servers.append(server)

            page_info = data.get("pageInfo") or {}
            has_more = bool(page_info.get("hasNextPage") and page_info.get("endCursor"))
            cursor = page_info.get("endCursor")
            yield SyncBatch(servers, has_more=has_more, stats=stats,
                            stage=self.name, cursor=cursor)
            if not has_more:
                return


class GlamaSitemapStage(SourceStage):
    """Servers listed in the sitemap but missing from the API walk."""

    name = "sitemap"

    def __init__(self, client: HttpClient):
        self.client = client

    def fetch(self, ctx, cursor=None):
        resp = self.client.get(config.GLAMA_SITEMAP_URL)
        if resp is None:
            yield SyncBatch([], has_more=False, stats=BatchStats(errors=1), stage=self.name)
            return

        slugs = _SITEMAP_LOC.findall(resp.text)
        stats = BatchStats(fetched=len(slugs))
        servers = []
        for slug in slugs:
            parts = slug[1:].split("/") if slug.startswith("@") else []
            if len(parts) < 2 or not parts[0] or not parts[1]:
                stats.filtered += 1
                continue
            owner, repo = parts[0], parts[1]
            glama_url = f"https://glama.ai/mcp/servers/{slug}"
            canonical = normalize(f"https://github.com/{owner}/{repo}")
            if canonical is None:
                stats.filtered += 1
                continue
            seen_listing = _claim_key(listing_identity(glama_url)) in ctx.seen
            if seen_listing or not ctx.claim(_claim_key(canonical)):
                stats.filtered += 1
                continue
            servers.append(DiscoveredServer(
                canonical_url=canonical,
                source=SourceType.GLAMA,
                source_identifier=slug,
                name=repo,
                github_owner=owner,
                github_repo=repo,
                source_url=glama_url,
                payload=SourcePayload(SourceType.GLAMA, {"from_sitemap": True, "slug": slug}),
            ))
        logger.info("glama: %d additional servers from sitemap", len(servers))
        yield SyncBatch(servers, has_more=False, stats=stats, stage=self.name)


class GlamaSource(SyncSource):
    source_type = SourceType.GLAMA

    def __init__(self, settings=None, session=None, sleep=time.sleep):
        self.client = HttpClient("glama", session=session, sleep=sleep)
        self.pacer = Pacer(config.GLAMA_PAGE_DELAY, sleep=sleep)

    def stages(self):
        return [GlamaApiStage(self.client, self.pacer), GlamaSitemapStage(self.client)]
