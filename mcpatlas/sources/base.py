"""Shared plumbing for source adapters: HTTP with retry, pacing, stages."""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator

import requests

from mcpatlas import config
from mcpatlas.errors import RateLimited
from mcpatlas.models import BatchStats, SourceType, SyncBatch

logger = logging.getLogger(__name__)

# Longest we are willing to sleep for a quota reset before giving up on a source.
MAX_RATE_LIMIT_SLEEP = 60


class Pacer:
    """Enforces a minimum interval between successive calls to wait()."""

    def __init__(self, interval: float, sleep=time.sleep, clock=time.monotonic):
        self.interval = interval
        self._sleep = sleep
        self._clock = clock
        self._last: float | None = None

    def wait(self) -> None:
        now = self._clock()
        if self._last is not None:
            remaining = self.interval - (now - self._last)
            if remaining > 0:
                self._sleep(remaining)
                now = self._clock()
        self._last = now


class HttpClient:
    """requests.Session wrapper with retry, backoff and rate-limit handling."""

    def __init__(self, source: str, headers: dict | None = None,
                 session: requests.Session | None = None, sleep=time.sleep):
        self.source = source
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", config.USER_AGENT)
        if headers:
            self.session.headers.update(headers)
        self._sleep = sleep

    def _check_rate_limit(self, resp, is_search: bool) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset_at = resp.headers.get("X-RateLimit-Reset")
        if remaining is None:
            return

        remaining = int(remaining)
        floor = config.SEARCH_RATE_LIMIT_FLOOR if is_search else config.RATE_LIMIT_FLOOR
        if remaining < floor and reset_at:
            sleep_seconds = max(int(reset_at) - int(time.time()) + 1, 1)
            if sleep_seconds > MAX_RATE_LIMIT_SLEEP:
                raise RateLimited(self.source, int(reset_at))
            logger.info("%s: %d requests remaining, sleeping %ds until reset",
                        self.source, remaining, sleep_seconds)
            self._sleep(sleep_seconds)

    def _is_rate_limited(self, resp) -> bool:
        if resp.status_code == 429:
            return True
        if resp.status_code == 403:
            if resp.headers.get("X-RateLimit-Remaining") == "0":
                return True
            return "rate limit" in resp.text.lower()
        return False

    def get(self, url: str, params: dict | None = None, is_search: bool = False):
        """GET with retries. Returns the response, or None when it gave up.

        Raises RateLimited when the upstream reports an exhausted quota.
        """
        for attempt in range(config.MAX_RETRIES):
            try:
                resp = self.session.get(url, params=params, timeout=config.REQUEST_TIMEOUT)

                if self._is_rate_limited(resp):
                    reset_at = resp.headers.get("X-RateLimit-Reset")
                    raise RateLimited(self.source, int(reset_at) if reset_at else None)

                self._check_rate_limit(resp, is_search=is_search)

                if resp.status_code in (404, 410, 422):
                    logger.info("%s: %s returned %d", self.source, url, resp.status_code)
                    return None
                if 400 <= resp.status_code < 500:
                    logger.warning("%s: %s returned %d: %s",
                                   self.source, url, resp.status_code, resp.text[:200])
                    return None

                resp.raise_for_status()
                return resp

            except requests.exceptions.RequestException as e:
                backoff = config.RETRY_BACKOFF[min(attempt, len(config.RETRY_BACKOFF) - 1)]
                logger.warning("%s: request error (attempt %d/%d): %s",
                               self.source, attempt + 1, config.MAX_RETRIES, e)
                if attempt < config.MAX_RETRIES - 1:
                    self._sleep(backoff)

        logger.error("%s: giving up on %s after %d attempts", self.source, url, config.MAX_RETRIES)
        return None


@dataclass
class SyncSourceOptions:
    limit: int | None = None
    force_refresh: bool = False
    # Resume support: skip to this stage and hand it this cursor.
    start_stage: str | None = None
    cursor: str | None = None


@dataclass
class FetchContext:
    """State shared by the stages of one adapter run."""
    options: SyncSourceOptions
    seen: set = field(default_factory=set)
    yielded: int = 0

    def claim(self, key) -> bool:
        """Mark key as seen. False if an earlier stage or page already had it."""
        if key in self.seen:
            return False
        self.seen.add(key)
        return True

    def remaining(self) -> int | None:
        if self.options.limit is None:
            return None
        return max(self.options.limit - self.yielded, 0)

    def exhausted(self) -> bool:
        return self.options.limit is not None and self.yielded >= self.options.limit


class SourceStage(ABC):
    """One restartable phase of an adapter (an API walk, a sitemap scrape...)."""

    name: str = "stage"

    @abstractmethod
    def fetch(self, ctx: FetchContext, cursor: str | None = None) -> Iterator[SyncBatch]:
        """Yield batches. Each batch's cursor resumes this stage after it."""


class SyncSource(ABC):
    source_type: SourceType

    @abstractmethod
    def stages(self) -> list[SourceStage]:
        ...

    def fetch_batches(self, options: SyncSourceOptions | None = None) -> Iterator[SyncBatch]:
        """Run the stages in order, enforcing the shared limit.

        A rate-limit signal ends the whole run early with one final batch
        carrying an error count.
        """
        options = options or SyncSourceOptions()
        ctx = FetchContext(options)
        stages = self.stages()

        if options.start_stage:
            names = [s.name for s in stages]
            if options.start_stage not in names:
                raise ValueError(f"{self.source_type.value} has no stage {options.start_stage!r}")
            stages = stages[names.index(options.start_stage):]

        for index, stage in enumerate(stages):
            if ctx.exhausted():
                return
            cursor = options.cursor if index == 0 and options.start_stage else None
            try:
                for batch in stage.fetch(ctx, cursor):
                    remaining = ctx.remaining()
                    if remaining is not None and len(batch.servers) > remaining:
                        batch.servers = batch.servers[:remaining]
                        batch.has_more = False
                    ctx.yielded += len(batch.servers)
                    yield batch
                    if ctx.exhausted():
                        return
            except RateLimited as e:
                logger.warning("%s: %s; stopping early during %s stage",
                               self.source_type.value, e, stage.name)
                yield SyncBatch(servers=[], has_more=False, stats=BatchStats(errors=1))
                return
