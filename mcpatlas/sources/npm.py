"""npm registry search adapter."""
from __future__ import annotations

import logging
import re
import time

from mcpatlas import config
from mcpatlas.canonical import is_github, normalize, parse_owner_repo
from mcpatlas.models import BatchStats, DiscoveredServer, SourcePayload, SourceType, SyncBatch
from mcpatlas.sources.base import HttpClient, Pacer, SourceStage, SyncSource

logger = logging.getLogger(__name__)

EXCLUDED_NAME_PATTERNS = [
    re.compile(p) for p in (r"^test-", r"-test$", r"example", r"demo", r"template", r"boilerplate")
]


def filter_reason(obj: dict) -> str | None:
    pkg = obj.get("package") or {}
    name = pkg.get("name") or ""
    if not name:
        return "no-name"
    if ((obj.get("downloads") or {}).get("weekly") or 0) < config.NPM_MIN_WEEKLY_DOWNLOADS:
        return "downloads"
    if any(p.search(name) for p in EXCLUDED_NAME_PATTERNS):
        return "name-pattern"
    if not is_github((pkg.get("links") or {}).get("repository")):
        return "no-github-repo"
    return None


def package_to_server(obj: dict) -> DiscoveredServer:
    pkg = obj["package"]
    name = pkg["name"]
    repo_url = pkg["links"]["repository"]
    owner, repo = parse_owner_repo(repo_url)
    score = ((obj.get("score") or {}).get("detail") or {}).get("quality")
    return DiscoveredServer(
        canonical_url=normalize(repo_url),
        source=SourceType.NPM,
        source_identifier=name,
        name=name,
        description=pkg.get("description"),
        version=pkg.get("version"),
        github_owner=owner,
        github_repo=repo,
        npm_package=name,
        npm_downloads=(obj.get("downloads") or {}).get("weekly"),
        npm_quality_score=score,
        install_command=f"npx -y {name}",
        last_updated=pkg.get("date"),
        source_url=f"https://www.npmjs.com/package/{name}",
        payload=SourcePayload(SourceType.NPM, obj),
    )


class KeywordSearchStage(SourceStage):
    """Offset-paginated keyword search. Cursor is the next offset."""

    name = "search"

    def __init__(self, client: HttpClient, pacer: Pacer, keyword: str = "mcp-server"):
        self.client = client
        self.pacer = pacer
        self.keyword = keyword

    def fetch(self, ctx, cursor=None):
        offset = int(cursor) if cursor else 0
        while True:
            self.pacer.wait()
            resp = self.client.get(config.NPM_SEARCH_URL, params={
                "text": f"keywords:{self.keyword}",
                "size": config.NPM_PAGE_SIZE,
                "from": offset,
            })
            if resp is None:
                yield SyncBatch([], has_more=False, stats=BatchStats(errors=1),
                                stage=self.name, cursor=str(offset))
                return

            data = resp.json()
            objects = data.get("objects") or []
            stats = BatchStats(fetched=len(objects))
            servers = []
            for obj in objects:
                name = (obj.get("package") or {}).get("name")
                if not ctx.claim((SourceType.NPM, name)):
                    stats.filtered += 1
                    continue
                reason = filter_reason(obj)
                if reason:
                    logger.debug("npm: skipping %s (%s)", name, reason)
                    stats.filtered += 1
                    continue
                try:
                    servers.append(package_to_server(obj))
                except (KeyError, TypeError) as e:
                    logger.warning("npm: malformed package %s: %s", name, e)
                    stats.errors += 1

            has_more = (len(objects) == config.NPM_PAGE_SIZE
                        and (data.get("total") or 0) > offset + config.NPM_PAGE_SIZE)
            offset += config.NPM_PAGE_SIZE
            yield SyncBatch(servers, has_more=has_more, stats=stats,
                            stage=self.name, cursor=str(offset))
            if not has_more:
                return


class NpmSource(SyncSource):
    source_type = SourceType.NPM

    def __init__(self, settings=None, session=None, sleep=time.sleep):
        self.client = HttpClient("npm", session=session, sleep=sleep)
        self.pacer = Pacer(config.NPM_PAGE_DELAY, sleep=sleep)

    def stages(self):
        return [KeywordSearchStage(self.client, self.pacer)]
