"""Catalog sync: fetch every source, merge, enrich, upsert, optionally validate.

Sources are fetched one after another. Enrichment (GitHub repo lookup,
README, tags) and validation run on a bounded thread pool.
"""
from __future__ import annotations

import base64
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import requests

from mcpatlas import config
from mcpatlas.canonical import normalize
from mcpatlas.errors import CommandRejected, MCPAtlasError, RateLimited
from mcpatlas.merge import merge_all
from mcpatlas.models import (
    BatchStats,
    CatalogServer,
    ConformanceStatus,
    MergedServer,
    SourceType,
    new_id,
    utc_now,
)
from mcpatlas.orchestrator import apply_result_to_server, run_attempt
from mcpatlas.sources.base import HttpClient, SyncSourceOptions
from mcpatlas.validation.protocol import FailureReason, ValidationResult
from mcpatlas.validation.security import check_run_command, detect_requires_config

logger = logging.getLogger(__name__)

LANGUAGE_TAGS = {
    "typescript": "typescript",
    "javascript": "typescript",
    "python": "python",
    "go": "go",
    "rust": "rust",
}

# Repositories that are known not to be MCP servers, whatever the source says.
GLOBALLY_EXCLUDED_URLS: set[str] = set()


@dataclass
class SyncOptions:
    sources: list = field(default_factory=lambda: [SourceType.MCP_REGISTRY])
    force_refresh: bool = False
    concurrency: int = config.DEFAULT_CONCURRENCY
    limit: int | None = None
    validate_new: bool = False


@dataclass
class SyncResult:
    checked: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    merged: int = 0
    new_servers: int = 0
    renamed: int = 0
    validated: int = 0
    validation_failed: int = 0
    needs_config: int = 0
    revalidations_queued: int = 0
    source_stats: dict[str, BatchStats] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {k: v for k, v in self.__dict__.items() if k != "source_stats"}
        d["source_stats"] = {k: vars(v) for k, v in self.source_stats.items()}
        return d


@dataclass
class RepoLookup:
    data: dict
    canonical_url: str
    was_redirected: bool


class GitHubRepoClient:
    """Repository metadata and README lookups used during enrichment."""

    def __init__(self, settings, session=None, sleep=time.sleep):
        self.client = HttpClient("github", headers=settings.github_headers(),
                                 session=session, sleep=sleep)

    def fetch_repo(self, owner: str, repo: str) -> RepoLookup | None:
        resp = self.client.get(f"{config.GITHUB_API}/repos/{owner}/{repo}")
        if resp is None:
            return None
        data = resp.json()
        actual = normalize(data.get("html_url")) or (
            f"https://github.com/{data['owner']['login']}/{data['name']}".lower())
        requested = f"https://github.com/{owner}/{repo}".lower()
        return RepoLookup(data=data, canonical_url=actual, was_redirected=actual != requested)

    def fetch_readme(self, owner: str, repo: str) -> str | None:
        resp = self.client.get(f"{config.GITHUB_API}/repos/{owner}/{repo}/readme")
        if resp is None:
            return None
        data = resp.json()
        if data.get("encoding") == "base64" and data.get("content"):
            try:
                return base64.b64decode(data["content"]).decode("utf-8", errors="replace")
            except ValueError:
                return None
        return None


def fetch_from_sources(sources, options: SyncSourceOptions):
    """Drain every source in turn. A failing source is counted, not fatal."""
    discovered = []
    stats: dict[str, BatchStats] = {}
    for source in sources:
        name = source.source_type.value
        stats[name] = BatchStats()
        logger.info("fetching from %s", name)
        count = 0
        try:
            for batch in source.fetch_batches(options):
                discovered.extend(batch.servers)
                stats[name].add(batch.stats)
                count += len(batch.servers)
                logger.info("  %s: %d servers", name, count)
        except (requests.exceptions.RequestException, ValueError, OSError, MCPAtlasError) as e:
            logger.error("error fetching from %s: %s", name, e)
            stats[name].errors += 1
    return discovered, stats


def derive_tags(owner: str | None, stars: int | None, language: str | None) -> list[str]:
    tags = ["official" if (owner or "").lower() in config.OFFICIAL_ORGS else "community"]
    if stars and stars >= config.POPULAR_STAR_THRESHOLD:
        tags.append("popular")
    lang_tag = LANGUAGE_TAGS.get((language or "").lower())
    if lang_tag:
        tags.append(lang_tag)
    return tags


class SyncRunner:
    def __init__(self, store, sources, github: GitHubRepoClient | None = None,
                 validator=None, orchestrator=None):
        self.store = store
        self.sources = sources
        self.github = github
        self.validator = validator
        self.orchestrator = orchestrator
        self._claim_lock = threading.Lock()
        self._claimed: set[str] = set()
        self._result_lock = threading.Lock()

    def _bump(self, result: SyncResult, name: str, n: int = 1) -> None:
        with self._result_lock:
            setattr(result, name, getattr(result, name) + n)

    def _claim_redirect(self, canonical: str) -> bool:
        """Claim a post-rename identity. False if it exists or is already claimed."""
        with self._claim_lock:
            if canonical in self._claimed or self.store.get_server_by_url(canonical) is not None:
                return False
            self._claimed.add(canonical)
            return True

    def run(self, options: SyncOptions) -> SyncResult:
        result = SyncResult()
        source_options = SyncSourceOptions(limit=options.limit, force_refresh=options.force_refresh)
        discovered, result.source_stats = fetch_from_sources(self.sources, source_options)
        logger.info("discovered %d records from %d source(s)", len(discovered), len(self.sources))

        merged = merge_all(discovered)
        result.merged = len(merged)
        logger.info("after merge: %d unique servers", len(merged))

        known = self.store.known_urls()
        self._claimed = {m.canonical_url for m in merged}
        work = []
        for server in merged:
            result.checked += 1
            if server.canonical_url in GLOBALLY_EXCLUDED_URLS:
                result.skipped += 1
                continue
            if server.canonical_url in known and not options.force_refresh:
                result.skipped += 1
                continue
            work.append(server)

        logger.info("processing %d servers (%d skipped)", len(work), result.skipped)
        if not work:
            return result

        with ThreadPoolExecutor(max_workers=max(1, options.concurrency)) as executor:
            futures = {executor.submit(self.process, server, options, result): server for server in work}
            for done, future in enumerate(as_completed(futures), 1):
                server = futures[future]
                try:
                    future.result()
                except Exception as e:
                    logger.error("error processing %s: %s", server.canonical_url, e)
                    self._bump(result, "errors")
                if done % 25 == 0 or done == len(futures):
                    logger.info("processed %d/%d servers", done, len(futures))
        return result

    def process(self, merged: MergedServer, options: SyncOptions, result: SyncResult) -> None:
        canonical = merged.canonical_url
        owner, repo = merged.github_owner, merged.github_repo
        repo_data, readme = None, None

        if self.github is not None and owner and repo and canonical.startswith("https://github.com/"):
            try:
                lookup = self.github.fetch_repo(owner, repo)
                if lookup is not None:
                    repo_data = lookup.data
                    if lookup.was_redirected:
                        logger.info("redirect: %s -> %s", canonical, lookup.canonical_url)
                        if not self._claim_redirect(lookup.canonical_url):
                            logger.info("  skipping stale entry, %s already present", lookup.canonical_url)
                            self._bump(result, "skipped")
                            return
                        canonical = lookup.canonical_url
                        owner, repo = canonical.split("/")[-2:]
                        self._bump(result, "renamed")
                readme = self.github.fetch_readme(owner, repo)
            except RateLimited as e:
                logger.warning("%s; continuing without GitHub enrichment for %s", e, canonical)

        existing = self.store.get_server_by_url(canonical)
        stars = merged.stars if merged.stars is not None else (repo_data or {}).get("stargazers_count")
        forks = merged.forks if merged.forks is not None else (repo_data or {}).get("forks_count")
        language = (repo_data or {}).get("language")
        catalog = CatalogServer(
            id=existing.id if existing else new_id(),
            slug=existing.slug if existing else merged.name,
            name=merged.name,
            source_url=canonical,
            description=merged.description or (repo_data or {}).get("description"),
            github_owner=owner,
            github_repo=repo,
            github_repo_id=merged.github_repo_id or (repo_data or {}).get("id"),
            stars=stars or 0,
            forks=forks or 0,
            npm_package=merged.npm_package,
            npm_downloads=merged.npm_downloads or 0,
            pypi_package=merged.pypi_package,
            install_command=merged.install_command,
            version=merged.version,
            language=language,
            tags=derive_tags(owner, stars, language),
            is_official=(owner or "").lower() in config.OFFICIAL_ORGS,
            discovered_sources=[s.value for s in merged.sources],
            last_synced_at=utc_now(),
        )
        stored = self.store.upsert_server(catalog)
        for source in merged.sources:
            self.store.save_source(
                stored.id, source.value, merged.source_identifiers.get(source, ""),
                None, merged.source_data.get(source))
        self._bump(result, "updated")

        is_new = existing is None
        if is_new:
            self._bump(result, "new_servers")
        elif (existing.validation_status == ConformanceStatus.VALIDATED
              and existing.version and merged.version and existing.version != merged.version):
            logger.info("version changed for %s: %s -> %s, queuing re-validation",
                        stored.slug, existing.version, merged.version)
            if self.orchestrator is not None:
                self.orchestrator.queue_revalidation(
                    stored.id, details={"from_version": existing.version, "to_version": merged.version})
                self._bump(result, "revalidations_queued")

        if is_new and options.validate_new and stored.install_command and self.validator is not None:
            self.validate_server(stored, readme, result)

    def validate_server(self, server: CatalogServer, readme: str | None, result: SyncResult) -> None:
        if detect_requires_config(readme):
            self.store.set_conformance(server.id, ConformanceStatus.NEEDS_CONFIG,
                                       error="Requires API keys or configuration",
                                       validated_at=utc_now())
            self._bump(result, "needs_config")
            return

        outcome = validate_catalog_entry(self.store, self.validator, server)
        self._bump(result, "validated" if outcome.success else "validation_failed")


def validate_catalog_entry(store, runner, server: CatalogServer,
                           timeout: float = config.HANDSHAKE_TIMEOUT) -> ValidationResult:
    """One unattended validation of a catalog entry, with no secrets."""
    try:
        check_run_command(server.install_command, server.npm_package, server.pypi_package)
    except CommandRejected as e:
        outcome = ValidationResult.failure(FailureReason.SECURITY_REJECTED, str(e))
    else:
        logger.info("validating %s (%s)", server.slug, server.install_command)
        outcome = run_attempt(runner, server.install_command, {}, timeout)
    apply_result_to_server(store, server.id, outcome)
    if outcome.success:
        logger.info("%s validated (%d tools)", server.slug, len(outcome.tools))
    else:
        logger.info("%s failed validation: %s", server.slug, outcome.error)
    return outcome


def validate_pending(store, runner, github: GitHubRepoClient | None = None,
                     concurrency: int = config.DEFAULT_VALIDATION_CONCURRENCY,
                     limit: int | None = None,
                     statuses=(ConformanceStatus.PENDING,)) -> dict:
    """Validate catalog entries whose conformance is not yet known."""
    candidates = []
    for status in statuses:
        candidates.extend(store.list_servers(status=status))
    candidates = [s for s in candidates if s.install_command]
    if limit:
        candidates = candidates[:limit]

    counts = {"checked": len(candidates), "validated": 0, "failed": 0, "needs_config": 0, "errors": 0}
    counts_lock = threading.Lock()

    def work(server: CatalogServer) -> str:
        readme = None
        if github is not None and server.github_owner and server.github_repo:
            try:
                readme = github.fetch_readme(server.github_owner, server.github_repo)
            except RateLimited as e:
                logger.warning("%s; validating %s without README check", e, server.slug)
        if detect_requires_config(readme):
            store.set_conformance(server.id, ConformanceStatus.NEEDS_CONFIG,
                                  error="Requires API keys or configuration", validated_at=utc_now())
            return "needs_config"
        outcome = validate_catalog_entry(store, runner, server)
        return "validated" if outcome.success else "failed"

    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
        futures = {executor.submit(work, server): server for server in candidates}
        for future in as_completed(futures):
            server = futures[future]
            try:
                key = future.result()
            except Exception as e:
                logger.error("error validating %s: %s", server.slug, e)
                key = "errors"
            with counts_lock:
                counts[key] += 1
    return counts
