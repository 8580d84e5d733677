"""Shared configuration for mcpatlas."""
from __future__ import annotations

import os
from dataclasses import dataclass

from mcpatlas.errors import ConfigError

GITHUB_API = "https://api.github.com"
NPM_SEARCH_URL = "https://registry.npmjs.org/-/v1/search"
MCP_REGISTRY_URL = "https://registry.modelcontextprotocol.io/v0.1/servers"
GLAMA_API_URL = "https://glama.ai/api/mcp/v1/servers"
GLAMA_SITEMAP_URL = "https://glama.ai/sitemaps/mcp-servers.xml"
PULSEMCP_URL = "https://www.pulsemcp.com"

USER_AGENT = "mcpatlas-sync/0.4"

# Rate limit thresholds
RATE_LIMIT_FLOOR = 5          # sleep when remaining < this
SEARCH_RATE_LIMIT_FLOOR = 2   # search API is stricter (30/min)
MAX_RETRIES = 3
RETRY_BACKOFF = [2, 10, 30]   # seconds
REQUEST_TIMEOUT = 30          # seconds, per HTTP request

# GitHub Search API limits
SEARCH_PER_PAGE = 100
SEARCH_MAX_PAGES = 10         # GitHub caps at 1000 results per query
GITHUB_TOPICS = ["mcp-server", "model-context-protocol"]
GITHUB_PAGE_DELAY = 2.0

NPM_PAGE_SIZE = 250
NPM_PAGE_DELAY = 0.1
NPM_MIN_WEEKLY_DOWNLOADS = 10

MCP_REGISTRY_PAGE_SIZE = 100
MCP_REGISTRY_PAGE_DELAY = 0.5

GLAMA_PAGE_DELAY = 0.5
GLAMA_MAX_CONSECUTIVE_FAILURES = 3

PULSEMCP_DETAIL_DELAY = 0.3
PULSEMCP_CACHE_BATCH = 100
PULSEMCP_MAX_PAGES = 200

GITHUB_MIN_STARS = 1
GITHUB_MAX_AGE_DAYS = 365
POPULAR_STAR_THRESHOLD = 500
OFFICIAL_ORGS = {"modelcontextprotocol", "anthropics"}

# Validation
HANDSHAKE_TIMEOUT = 45.0      # seconds, direct spawn
SANDBOX_TIMEOUT = 60.0        # seconds, container incl. package install
KILL_GRACE = 1.0              # SIGTERM -> SIGKILL
MAX_SECRET_LENGTH = 500
ERROR_TEXT_LIMIT = 500
DOCKER_IMAGE = "nikolaik/python-nodejs:python3.12-nodejs20-slim"
DOCKER_MEMORY = "512m"
DOCKER_CPUS = "1"
DOCKER_PIDS_LIMIT = "256"

DEFAULT_DB_PATH = "data/catalog.db"
DEFAULT_PULSEMCP_CACHE = "data/pulsemcp-slugs.json"
DEFAULT_CONCURRENCY = 5
DEFAULT_VALIDATION_CONCURRENCY = 3
DISPATCH_EVENT_TYPE = "validate-server"


@dataclass(frozen=True)
class Settings:
    """Operator configuration, read once at startup."""
    db_path: str = DEFAULT_DB_PATH
    github_token: str | None = None
    encryption_key: str | None = None
    dispatch_repo: str | None = None
    concurrency: int = DEFAULT_CONCURRENCY
    docker_image: str = DOCKER_IMAGE
    pulsemcp_cache: str = DEFAULT_PULSEMCP_CACHE

    def github_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": USER_AGENT,
        }
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers

    def require_encryption_key(self) -> str:
        if not self.encryption_key:
            raise ConfigError(
                "CREDENTIALS_ENCRYPTION_KEY is required for asynchronous validation"
            )
        return self.encryption_key

    def require_github_token(self) -> str:
        if not self.github_token:
            raise ConfigError("GITHUB_TOKEN environment variable is required")
        return self.github_token


def load_settings(environ=None) -> Settings:
    """Build Settings from environment variables."""
    env = os.environ if environ is None else environ

    raw_concurrency = env.get("MCPATLAS_CONCURRENCY")
    concurrency = DEFAULT_CONCURRENCY
    if raw_concurrency:
        try:
            concurrency = int(raw_concurrency)
        except ValueError:
            raise ConfigError(f"MCPATLAS_CONCURRENCY must be an integer, got {raw_concurrency!r}")
        if concurrency < 1:
            raise ConfigError("MCPATLAS_CONCURRENCY must be at least 1")

    return Settings(
        db_path=env.get("MCPATLAS_DB") or DEFAULT_DB_PATH,
        github_token=env.get("GITHUB_TOKEN") or None,
        encryption_key=env.get("CREDENTIALS_ENCRYPTION_KEY") or None,
        dispatch_repo=env.get("MCPATLAS_DISPATCH_REPO") or env.get("GITHUB_REPOSITORY") or None,
        concurrency=concurrency,
        docker_image=env.get("MCPATLAS_DOCKER_IMAGE") or DOCKER_IMAGE,
        pulsemcp_cache=env.get("MCPATLAS_PULSEMCP_CACHE") or DEFAULT_PULSEMCP_CACHE,
    )
