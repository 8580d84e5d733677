"""Tests for the source adapters against a scripted HTTP session."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from mcpatlas import config
from mcpatlas.config import Settings
from mcpatlas.models import SourceType
from mcpatlas.sources import get_source
from mcpatlas.sources.base import HttpClient, Pacer, SyncSourceOptions
from mcpatlas.sources.github import GitHubSource, filter_reason as github_filter_reason
from mcpatlas.sources.glama import GlamaSource, parse_page
from mcpatlas.sources.npm import NpmSource, filter_reason as npm_filter_reason
from mcpatlas.sources.pulsemcp import PulseMcpSource, parse_details, parse_stars, total_pages
from mcpatlas.sources.registry import McpRegistrySource, install_command


class _FakeResponse:
    def __init__(self, status_code=200, body=None, text=None, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        if text is None:
            text = json.dumps(body if body is not None else {})
        self.text = text

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise AssertionError(f"unexpected status {self.status_code}")


class _FakeSession:
    """Returns queued responses in order, recording every request."""

    def __init__(self, responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        if not self.responses:
            raise AssertionError(f"unexpected request to {url}")
        return self.responses.pop(0)


def _no_sleep(_seconds):
    pass


def _collect(source, **opts):
    return list(source.fetch_batches(SyncSourceOptions(**opts)))


def _servers(batches):
    return [s for b in batches for s in b.servers]


def _recent():
    return (datetime.now(timezone.utc) - timedelta(days=3)).isoformat().replace("+00:00", "Z")


def _repo(i, **overrides):
    repo = {
        "id": i, "name": f"repo{i}", "full_name": f"owner/repo{i}",
        "html_url": f"https://github.com/Owner/Repo{i}", "owner": {"login": "owner"},
        "stargazers_count": 5, "forks_count": 1, "pushed_at": _recent(),
        "fork": False, "archived": False,
    }
    repo.update(overrides)
    return repo


# ── shared plumbing ───────────────────────────────────────────────────


def test_pacer_spaces_calls():
    slept = []
    clock = iter([0.0, 0.5, 1.0]).__next__
    pacer = Pacer(2.0, sleep=slept.append, clock=clock)
    pacer.wait()
    pacer.wait()
    assert slept == [1.5]


def test_http_client_treats_missing_as_none():
    session = _FakeSession([_FakeResponse(404)])
    assert HttpClient("t", session=session, sleep=_no_sleep).get("https://x") is None


def test_rate_limit_stops_source_early():
    limited = _FakeResponse(403, text="API rate limit exceeded", headers={"X-RateLimit-Remaining": "0"})
    session = _FakeSession([limited])
    source = NpmSource(session=session, sleep=_no_sleep)
    batches = _collect(source)
    assert len(batches) == 1
    assert batches[0].servers == [] and batches[0].stats.errors == 1
    assert not batches[0].has_more


def test_unknown_start_stage_is_rejected():
    with pytest.raises(ValueError):
        _collect(NpmSource(session=_FakeSession([]), sleep=_no_sleep), start_stage="nope")


# ── github ────────────────────────────────────────────────────────────


def test_github_filters():
    now = datetime.now(timezone.utc)
    assert github_filter_reason(_repo(1), now) is None
    assert github_filter_reason(_repo(1, fork=True), now) == "fork"
    assert github_filter_reason(_repo(1, archived=True), now) == "archived"
    assert github_filter_reason(_repo(1, full_name="n8n-io/n8n"), now) == "excluded"
    assert github_filter_reason(_repo(1, stargazers_count=0), now) == "stars"
    old = (now - timedelta(days=400)).isoformat()
    assert github_filter_reason(_repo(1, pushed_at=old), now) == "stale"


def test_github_dedupes_across_topics_and_respects_limit(monkeypatch):
    monkeypatch.setattr(config, "GITHUB_TOPICS", ["mcp-server", "mcp"])
    page_a = _FakeResponse(body={"items": [_repo(1), _repo(2, fork=True)]})
    page_b = _FakeResponse(body={"items": [_repo(1), _repo(3)]})
    source = GitHubSource(Settings(), session=_FakeSession([page_a, page_b]), sleep=_no_sleep)

    batches = _collect(source)
    servers = _servers(batches)
    assert [s.source_identifier for s in servers] == ["1", "3"]
    assert servers[0].canonical_url == "https://github.com/owner/repo1"
    assert batches[0].stage == "topic:mcp-server"
    assert batches[1].stats.filtered == 1

    limited = GitHubSource(Settings(), session=_FakeSession([page_a]), sleep=_no_sleep)
    assert len(_servers(_collect(limited, limit=1))) == 1


# ── npm ───────────────────────────────────────────────────────────────


def _package(name, weekly=100, repo="git+https://github.com/acme/pkg.git"):
    return {
        "package": {"name": name, "version": "1.0.0", "description": "d",
                    "links": {"repository": repo}},
        "downloads": {"weekly": weekly},
        "score": {"detail": {"quality": 0.9}},
    }


def test_npm_filters():
    assert npm_filter_reason(_package("@acme/weather")) is None
    assert npm_filter_reason(_package("@acme/weather", weekly=2)) == "downloads"
    assert npm_filter_reason(_package("mcp-demo-server")) == "name-pattern"
    assert npm_filter_reason(_package("x", repo="https://gitlab.com/a/b")) == "no-github-repo"


def test_npm_builds_install_command():
    body = {"objects": [_package("@acme/weather"), _package("test-thing")], "total": 2}
    source = NpmSource(session=_FakeSession([_FakeResponse(body=body)]), sleep=_no_sleep)
    [server] = _servers(_collect(source))
    assert server.install_command == "npx -y @acme/weather"
    assert server.canonical_url == "https://github.com/acme/pkg"
    assert server.npm_quality_score == 0.9


# ── official registry ─────────────────────────────────────────────────


def _entry(name, latest=True, packages=None, repo="https://github.com/acme/weather"):
    return {
        "server": {"name": name, "version": "1.0.0", "repository": {"url": repo},
                   "packages": packages or []},
        "_meta": {"io.modelcontextprotocol.registry/official": {"isLatest": latest}},
    }


def test_registry_keeps_latest_versions_and_follows_cursor():
    page1 = {"servers": [_entry("io.github.acme/weather", packages=[{"registryType": "npm", "identifier": "@acme/weather"}]),
                         _entry("io.github.acme/weather", latest=False)],
             "metadata": {"nextCursor": "abc"}}
    page2 = {"servers": [_entry("io.github.acme/none", repo=None)], "metadata": {}}
    session = _FakeSession([_FakeResponse(body=page1), _FakeResponse(body=page2)])
    batches = _collect(McpRegistrySource(session=session, sleep=_no_sleep))

    servers = _servers(batches)
    assert len(servers) == 1
    assert servers[0].install_command == "npx -y @acme/weather"
    assert session.calls[1][1]["cursor"] == "abc"
    assert batches[0].stats.filtered == 1
    assert batches[1].stats.filtered == 1


def test_registry_install_command_prefers_npm():
    assert install_command([{"registryType": "pypi", "identifier": "w"},
                            {"registryType": "npm", "identifier": "n"}]) == "npx -y n"
    assert install_command([{"registryType": "pypi", "identifier": "w"}]) == "uvx w"
    assert install_command([]) is None


# ── glama ─────────────────────────────────────────────────────────────


def test_glama_repairs_json():
    broken = '{"servers": [{"id": "a", "name": "A",}], "pageInfo": {"hasNextPage": false}}'
    data = parse_page(broken)
    assert data["servers"][0]["id"] == "a"
    assert parse_page('{"nothing": 1}') is None


def test_glama_api_then_sitemap():
    api = {"servers": [
        {"id": "1", "name": "weather", "url": "/mcp/servers/@acme/weather",
         "repository": {"url": "https://github.com/acme/weather"}},
        {"id": "2", "name": "hosted", "url": "/mcp/servers/xyz"},
    ], "pageInfo": {"hasNextPage": False}}
    sitemap = (
        "<urlset>"
        "<url><loc>https://glama.ai/mcp/servers/@acme/weather</loc></url>"
        "<url><loc>https://glama.ai/mcp/servers/@other/tool</loc></url>"
        "<url><loc>https://glama.ai/mcp/servers/xyz</loc></url>"
        "</urlset>"
    )
    session = _FakeSession([_FakeResponse(body=api), _FakeResponse(text=sitemap)])
    batches = _collect(GlamaSource(session=session, sleep=_no_sleep))

    urls = [s.canonical_url for s in _servers(batches)]
    assert urls == [
        "https://github.com/acme/weather",
        "https://glama.ai/mcp/servers/xyz",
        "https://github.com/other/tool",
    ]
    assert [b.stage for b in batches] == ["api", "sitemap"]


def test_glama_salvages_cursor_from_bad_page():
    bad = '<html>oops "endCursor": "c2" </html>'
    good = {"servers": [{"id": "1", "name": "x", "url": "/mcp/servers/@a/b",
                         "repository": {"url": "https://github.com/a/b"}}],
            "pageInfo": {"hasNextPage": False}}
    session = _FakeSession([_FakeResponse(text=bad), _FakeResponse(body=good),
                            _FakeResponse(text="<urlset></urlset>")])
    batches = _collect(GlamaSource(session=session, sleep=_no_sleep))
    assert batches[0].stats.errors == 1
    assert session.calls[1][1] == {"after": "c2"}
    assert len(_servers(batches)) == 1


# ── pulsemcp ──────────────────────────────────────────────────────────


def test_pulsemcp_parsing():
    assert parse_stars("1.2k") == 1200
    assert parse_stars("3,456") == 3456
    assert parse_stars("n/a") is None
    assert total_pages('<a href="?page=7">Last</a>') == 7

    page = (
        '<h1 class="t">Weather &amp; Co</h1>'
        '<meta name="description" content="MCP (Model Context Protocol) Server. Forecasts">'
        '<a data-test-id="mcp-server-github-repo" href="https://github.com/acme/weather">'
        "GitHub Repo (2.5k stars)</a>"
    )
    details = parse_details("weather", page)
    assert details == {
        "slug": "weather", "name": "Weather & Co", "description": "Forecasts",
        "githubUrl": "https://github.com/acme/weather", "starsCount": 2500,
    }


def test_pulsemcp_replays_cache(tmp_path):
    cache = tmp_path / "pulsemcp.json"
    cache.write_text(json.dumps([
        {"slug": "weather", "name": "Weather", "githubUrl": "https://github.com/acme/weather", "starsCount": 10},
        {"slug": "nogit", "name": "No repo"},
        {"no": "slug"},
    ]))
    source = PulseMcpSource(cache_path=str(cache), session=_FakeSession([]), sleep=_no_sleep)
    batches = _collect(source)
    assert [s.source_identifier for s in _servers(batches)] == ["weather"]
    assert batches[0].stats.filtered == 1 and batches[0].stats.errors == 1
    assert batches[0].stage == "cache"


def test_get_source_builds_every_adapter():
    for source_type in SourceType:
        assert get_source(source_type, Settings()).source_type == source_type
