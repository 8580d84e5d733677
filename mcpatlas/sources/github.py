"""GitHub topic search adapter."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone

from mcpatlas import config
from mcpatlas.canonical import normalize
from mcpatlas.models import BatchStats, DiscoveredServer, SourcePayload, SourceType, SyncBatch
from mcpatlas.sources.base import HttpClient, Pacer, SourceStage, SyncSource

logger = logging.getLogger(__name__)

SEARCH_URL = f"{config.GITHUB_API}/search/repositories"

# Large projects that carry the topic but are not MCP servers themselves.
EXCLUDED_REPOS = {
    "anthropics/claude-code",
    "anthropics/anthropic-quickstarts",
    "anthropics/courses",
    "google-gemini/gemini-cli",
    "n8n-io/n8n",
    "assafelovic/gpt-researcher",
    "bytedance/ui-tars-desktop",
    "activepieces/activepieces",
    "1panel-dev/maxkb",
    "sansan0/trendradar",
    "netdata/netdata",
}

_PAYLOAD_KEYS = (
    "id", "full_name", "html_url", "description", "stargazers_count",
    "forks_count", "language", "topics", "pushed_at", "license",
)


def _parse_time(value):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def filter_reason(repo: dict, now: datetime | None = None) -> str | None:
    """Why a search hit is not worth keeping, or None if it is."""
    now = now or datetime.now(timezone.utc)
    if repo.get("fork"):
        return "fork"
    if repo.get("archived"):
        return "archived"
    if (repo.get("full_name") or "").lower() in EXCLUDED_REPOS:
        return "excluded"
    if (repo.get("stargazers_count") or 0) < config.GITHUB_MIN_STARS:
        return "stars"
    pushed = _parse_time(repo.get("pushed_at"))
    if pushed is None or now - pushed > timedelta(days=config.GITHUB_MAX_AGE_DAYS):
        return "stale"
    return None


def repo_to_server(repo: dict) -> DiscoveredServer | None:
    canonical = normalize(repo.get("html_url"))
    if canonical is None:
        return None
    owner = (repo.get("owner") or {}).get("login") or canonical.split("/")[-2]
    payload = {k: repo.get(k) for k in _PAYLOAD_KEYS if k in repo}
    return DiscoveredServer(
        canonical_url=canonical,
        source=SourceType.GITHUB,
        source_identifier=str(repo["id"]),
        name=repo.get("name") or canonical.split("/")[-1],
        description=repo.get("description"),
        github_owner=owner,
        github_repo=repo.get("name"),
        github_repo_id=repo.get("id"),
        stars=repo.get("stargazers_count"),
        forks=repo.get("forks_count"),
        last_updated=repo.get("pushed_at"),
        source_url=repo.get("html_url"),
        payload=SourcePayload(SourceType.GITHUB, payload),
    )


class TopicSearchStage(SourceStage):
    """Walks the search results for one topic. Cursor is the next page number."""

    def __init__(self, topic: str, client: HttpClient, pacer: Pacer):
        self.topic = topic
        self.name = f"topic:{topic}"
        self.client = client
        self.pacer = pacer

    def fetch(self, ctx, cursor=None):
        page = int(cursor) if cursor else 1
        while page <= config.SEARCH_MAX_PAGES:
            self.pacer.wait()
            resp = self.client.get(SEARCH_URL, params={
                "q": f"topic:{self.topic}",
                "sort": "stars",
                "order": "desc",
                "per_page": config.SEARCH_PER_PAGE,
                "page": page,
            }, is_search=True)
            if resp is None:
                yield SyncBatch([], has_more=False, stats=BatchStats(errors=1),
                                stage=self.name, cursor=str(page))
                return

            items = resp.json().get("items") or []
            stats = BatchStats(fetched=len(items))
            servers = []
            now = datetime.now(timezone.utc)
            for repo in items:
                if not ctx.claim((SourceType.GITHUB, repo.get("id"))):
                    stats.filtered += 1
                    continue
                reason = filter_reason(repo, now)
                if reason:
                    logger.debug("github: skipping %s (%s)", repo.get("full_name"), reason)
                    stats.filtered += 1
                    continue
                server = repo_to_server(repo)
                if server is None:
                    stats.filtered += 1
                    continue
                servers.append(server)

            has_more = len(items) == config.SEARCH_PER_PAGE and page < config.SEARCH_MAX_PAGES
            page += 1
            yield SyncBatch(servers, has_more=has_more, stats=stats,
                            stage=self.name, cursor=str(page))
            if not has_more:
                return


class GitHubSource(SyncSource):
    source_type = SourceType.GITHUB

    def __init__(self, settings, session=None, sleep=time.sleep):
        self.client = HttpClient("github", headers=settings.github_headers(),
                                 session=session, sleep=sleep)
        self.pacer = Pacer(config.GITHUB_PAGE_DELAY, sleep=sleep)

    def stages(self):
        return [TopicSearchStage(t, self.client, self.pacer) for t in config.GITHUB_TOPICS]
