"""PulseMCP directory adapter.

PulseMCP has no API. A pre-scraped snapshot (a JSON list of server detail
dicts) is used when present; otherwise listing pages are scraped live.
"""
from __future__ import annotations

import html as htmllib
import json
import logging
import math
import os
import re
import time

from mcpatlas import config
from mcpatlas.canonical import normalize, parse_owner_repo
from mcpatlas.models import BatchStats, DiscoveredServer, SourcePayload, SourceType, SyncBatch
from mcpatlas.sources.base import HttpClient, Pacer, SourceStage, SyncSource

logger = logging.getLogger(__name__)

SERVERS_PER_PAGE = 42

_SLUG = re.compile(r'href="/servers/([a-zA-Z0-9_-]+)"')
_TITLE = re.compile(r"<h1[^>]*>([^<]+)</h1>")
_DESCRIPTION = re.compile(r'<meta\s+name="description"\s+content="([^"]+)"')
_GITHUB = re.compile(r'data-test-id="mcp-server-github-repo"\s+href="(https://github\.com/[^"]+)"')
_STARS = re.compile(r"GitHub Repo\s*\(([0-9.,]+k?)\s*stars?\)", re.IGNORECASE)
_CLASSIFICATION = re.compile(
    r"Classification</p>\s*<div[^>]*>\s*<img[^>]*>\s*<span[^>]*>(\w+)</span>", re.IGNORECASE
)
_PROVIDER = re.compile(r'Provider</p>\s*<a[^>]*href="([^"]*)"[^>]*>([^<]+)</a>', re.IGNORECASE)
_PAGE_LINK = re.compile(r"page=(\d+)[^>]*>\s*(?:\d+|Last|»)", re.IGNORECASE)
_TOTAL = re.compile(r"(\d+,?\d*)\+?\s*servers", re.IGNORECASE)
_DESCRIPTION_PREFIX = re.compile(r"^MCP \(Model Context Protocol\) Server\.\s*", re.IGNORECASE)


def parse_stars(text: str) -> int | None:
    text = text.replace(",", "").strip().lower()
    try:
        if text.endswith("k"):
            return round(float(text[:-1]) * 1000)
        return int(float(text))
    except ValueError:
        return None


def extract_slugs(page_html: str) -> list[str]:
    slugs = []
    for slug in _SLUG.findall(page_html):
        if slug != "servers" and slug not in slugs:
            slugs.append(slug)
    return slugs


def total_pages(page_html: str) -> int:
    pages = [int(n) for n in _PAGE_LINK.findall(page_html)]
    if pages:
        return max(pages)
    m = _TOTAL.search(page_html)
    if m:
        return math.ceil(int(m.group(1).replace(",", "")) / SERVERS_PER_PAGE)
    return config.PULSEMCP_MAX_PAGES


def parse_details(slug: str, page_html: str) -> dict:
    details = {"slug": slug}
    m = _TITLE.search(page_html)
    if m:
        details["name"] = htmllib.unescape(m.group(1).strip())
    m = _DESCRIPTION.search(page_html)
    if m:
        details["description"] = _DESCRIPTION_PREFIX.sub("", htmllib.unescape(m.group(1)))
    m = _GITHUB.search(page_html)
    if m:
        details["githubUrl"] = m.group(1)
    m = _STARS.search(page_html)
    if m:
        details["starsCount"] = parse_stars(m.group(1))
    m = _CLASSIFICATION.search(page_html)
    if m:
        details["classification"] = m.group(1).lower()
    m = _PROVIDER.search(page_html)
    if m:
        details["providerUrl"] = m.group(1)
        details["provider"] = m.group(2).strip()
    return details


def details_to_server(details: dict) -> DiscoveredServer | None:
    canonical = normalize(details.get("githubUrl"))
    if canonical is None:
        return None
    owner, repo = parse_owner_repo(canonical)
    slug = details["slug"]
    return DiscoveredServer(
        canonical_url=canonical,
        source=SourceType.PULSEMCP,
        source_identifier=slug,
        name=details.get("name") or slug,
        description=details.get("description"),
        github_owner=owner,
        github_repo=repo,
        stars=details.get("starsCount"),
        source_url=f"{config.PULSEMCP_URL}/servers/{slug}",
        payload=SourcePayload(SourceType.PULSEMCP, details),
    )


class PulseCacheStage(SourceStage):
    """Replays the snapshot file. Cursor is the index of the next entry."""

    name = "cache"

    def __init__(self, path: str):
        self.path = path

    def fetch(self, ctx, cursor=None):
        with open(self.path) as f:
            cached = json.load(f)
        logger.info("pulsemcp: %d cached entries in %s", len(cached), self.path)

        start = int(cursor) if cursor else 0
        for offset in range(start, len(cached), config.PULSEMCP_CACHE_BATCH):
            chunk = cached[offset:offset + config.PULSEMCP_CACHE_BATCH]
            stats = BatchStats(fetched=len(chunk))
            servers = []
            for details in chunk:
                if not isinstance(details, dict) or not details.get("slug"):
                    stats.errors += 1
                    continue
                server = details_to_server(details)
                if server is None or not ctx.claim((SourceType.PULSEMCP, server.canonical_url)):
                    stats.filtered += 1
                    continue
                servers.append(server)
            next_offset = offset + len(chunk)
            yield SyncBatch(servers, has_more=next_offset < len(cached), stats=stats,
                            stage=self.name, cursor=str(next_offset))


class PulseScrapeStage(SourceStage):
    """Scrapes the listing pages, then each server's detail page.

    Cursor is the next listing page number.
    """

    name = "scrape"

    def __init__(self, client: HttpClient, pacer: Pacer):
        self.client = client
        self.pacer = pacer

    def _page_url(self, page: int) -> str:
        if page == 1:
            return f"{config.PULSEMCP_URL}/servers"
        return f"{config.PULSEMCP_URL}/servers?page={page}"

    def fetch(self, ctx, cursor=None):
        page = int(cursor) if cursor else 1
        last_page = None
        while last_page is None or page <= last_page:
            self.pacer.wait()
            resp = self.client.get(self._page_url(page))
            if resp is None:
                yield SyncBatch([], has_more=False, stats=BatchStats(errors=1),
                                stage=self.name, cursor=str(page))
                return
            if last_page is None:
                last_page = total_pages(resp.text)
                logger.info("pulsemcp: %d listing pages", last_page)

            slugs = extract_slugs(resp.text)
            if not slugs:
                logger.info("pulsemcp: page %d empty, stopping", page)
                return

            stats = BatchStats(fetched=len(slugs))
            servers = []
            for slug in slugs:
                remaining = ctx.remaining()
                if remaining is not None and len(servers) >= remaining:
                    break
                self.pacer.wait()
                detail = self.client.get(f"{config.PULSEMCP_URL}/servers/{slug}")
                if detail is None:
                    stats.errors += 1
                    continue
                server = details_to_server(parse_details(slug, detail.text))
                if server is None or not ctx.claim((SourceType.PULSEMCP, server.canonical_url)):
                    stats.filtered += 1
                    continue
                servers.append(server)

            page += 1
            yield SyncBatch(servers, has_more=page <= last_page, stats=stats,
                            stage=self.name, cursor=str(page))


class PulseMcpSource(SyncSource):
    source_type = SourceType.PULSEMCP

    def __init__(self, settings=None, session=None, sleep=time.sleep, cache_path=None):
        if cache_path is None:
            cache_path = settings.pulsemcp_cache if settings else config.DEFAULT_PULSEMCP_CACHE
        self.cache_path = cache_path
        self.client = HttpClient("pulsemcp", headers={"Accept": "text/html"},
                                 session=session, sleep=sleep)
        self.pacer = Pacer(config.PULSEMCP_DETAIL_DELAY, sleep=sleep)

    def stages(self):
        if self.cache_path and os.path.exists(self.cache_path):
            return [PulseCacheStage(self.cache_path)]
        return [PulseScrapeStage(self.client, self.pacer)]
