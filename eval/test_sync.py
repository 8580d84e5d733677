"""Tests for the sync pipeline: fetch, merge, enrich, upsert, validate."""

from mcpatlas.models import (
    BatchStats,
    CatalogServer,
    ConformanceStatus,
    DiscoveredServer,
    SourcePayload,
    SourceType,
    SyncBatch,
)
from mcpatlas.orchestrator import ValidationOrchestrator
from mcpatlas.store import CatalogStore
from mcpatlas.sync import (
    RepoLookup,
    SyncOptions,
    SyncRunner,
    derive_tags,
    fetch_from_sources,
    validate_pending,
)
from mcpatlas.sources.base import SyncSourceOptions
from mcpatlas.validation.protocol import FailureReason, ValidationResult


class _FakeSource:
    def __init__(self, source_type, servers, error=None):
        self.source_type = source_type
        self.servers = servers
        self.error = error

    def fetch_batches(self, options=None):
        yield SyncBatch(self.servers, has_more=False, stats=BatchStats(fetched=len(self.servers)))
        if self.error:
            raise self.error


class _FakeGitHub:
    def __init__(self, redirects=None, readmes=None):
        self.redirects = redirects or {}
        self.readmes = readmes or {}

    def fetch_repo(self, owner, repo):
        requested = f"https://github.com/{owner}/{repo}"
        actual = self.redirects.get(requested, requested)
        return RepoLookup(data={"language": "Python", "stargazers_count": 7},
                          canonical_url=actual, was_redirected=actual != requested)

    def fetch_readme(self, owner, repo):
        return self.readmes.get(f"{owner}/{repo}")


class _FakeValidator:
    def __init__(self, success=True):
        self.success = success
        self.commands = []

    def probe(self):
        return True

    def run(self, command, secrets=None, timeout=45):
        self.commands.append(command)
        if self.success:
            return ValidationResult(success=True, tools=[{"name": "t"}])
        return ValidationResult.failure(FailureReason.UNEXPECTED_EXIT, "Process exited with code 1. stderr: ")


def _make_discovered(url, source=SourceType.NPM, **kwargs):
    owner, repo = url.split("/")[-2:]
    kwargs.setdefault("name", repo)
    kwargs.setdefault("install_command", f"npx -y {repo}")
    kwargs.setdefault("npm_package", repo)
    return DiscoveredServer(
        canonical_url=url, source=source, source_identifier=repo,
        github_owner=owner, github_repo=repo,
        payload=SourcePayload(source, {"name": repo}), **kwargs,
    )


def _run(store, sources, **kwargs):
    opts = kwargs.pop("options", None) or SyncOptions(sources=[s.source_type for s in sources], concurrency=2)
    runner = SyncRunner(store, sources, **kwargs)
    return runner.run(opts)


def test_sync_merges_sources_into_one_entry():
    store = CatalogStore(":memory:")
    url = "https://github.com/acme/weather"
    sources = [
        _FakeSource(SourceType.NPM, [_make_discovered(url, version="1.0.0")]),
        _FakeSource(SourceType.GITHUB, [_make_discovered(url, source=SourceType.GITHUB, stars=900,
                                                         install_command=None, npm_package=None)]),
    ]
    result = _run(store, sources, github=_FakeGitHub())

    assert result.merged == 1 and result.updated == 1 and result.new_servers == 1
    server = store.get_server_by_url(url)
    assert server.stars == 900
    assert server.install_command == "npx -y weather"
    assert server.language == "Python"
    assert set(server.discovered_sources) == {"npm", "github"}
    assert "popular" in server.tags and "python" in server.tags
    assert {s["source"] for s in store.sources_for(server.id)} == {"npm", "github"}


def test_known_servers_are_skipped_unless_forced():
    store = CatalogStore(":memory:")
    url = "https://github.com/acme/weather"
    sources = [_FakeSource(SourceType.NPM, [_make_discovered(url)])]
    _run(store, sources)
    again = _run(store, sources)
    assert again.skipped == 1 and again.updated == 0

    forced = _run(store, sources, options=SyncOptions(sources=[SourceType.NPM], force_refresh=True))
    assert forced.updated == 1 and forced.new_servers == 0


def test_renamed_repository_is_not_duplicated():
    """Old name redirects to a name another source already reported."""
    store = CatalogStore(":memory:")
    old = "https://github.com/acme/old-name"
    new = "https://github.com/acme/new-name"
    sources = [_FakeSource(SourceType.NPM, [_make_discovered(old), _make_discovered(new)])]
    result = _run(store, sources, github=_FakeGitHub(redirects={old: new}))

    assert result.merged == 2
    assert result.skipped == 1
    assert store.get_server_by_url(old) is None
    assert store.get_server_by_url(new) is not None
    assert len(store.list_servers()) == 1


def test_renamed_repository_is_stored_under_new_name():
    store = CatalogStore(":memory:")
    old = "https://github.com/acme/old-name"
    new = "https://github.com/acme/new-name"
    sources = [_FakeSource(SourceType.NPM, [_make_discovered(old)])]
    result = _run(store, sources, github=_FakeGitHub(redirects={old: new}))

    assert result.renamed == 1
    server = store.get_server_by_url(new)
    assert server.github_repo == "new-name"


def test_version_change_queues_revalidation():
    store = CatalogStore(":memory:")
    url = "https://github.com/acme/weather"
    store.upsert_server(CatalogServer(
        id="srv-1", slug="weather", name="weather", source_url=url, version="1.0.0",
        install_command="npx -y weather", validation_status=ConformanceStatus.VALIDATED))
    orchestrator = ValidationOrchestrator(store, _FakeValidator())
    sources = [_FakeSource(SourceType.NPM, [_make_discovered(url, version="1.1.0")])]

    result = _run(store, sources, orchestrator=orchestrator,
                  options=SyncOptions(sources=[SourceType.NPM], force_refresh=True))

    assert result.revalidations_queued == 1
    queued = store.find_active_request("srv-1", "system")
    assert queued is not None
    # Conformance is untouched until the re-validation runs.
    assert store.get_server("srv-1").validation_status == ConformanceStatus.VALIDATED


def test_validate_new_marks_servers_needing_config():
    store = CatalogStore(":memory:")
    plain = "https://github.com/acme/echo"
    keyed = "https://github.com/acme/keyed"
    github = _FakeGitHub(readmes={"acme/keyed": "This server requires an API key."})
    validator = _FakeValidator()
    sources = [_FakeSource(SourceType.NPM, [_make_discovered(plain), _make_discovered(keyed)])]

    result = _run(store, sources, github=github, validator=validator,
                  options=SyncOptions(sources=[SourceType.NPM], validate_new=True))

    assert result.validated == 1 and result.needs_config == 1
    assert validator.commands == ["npx -y echo"]
    assert store.get_server_by_url(plain).validation_status == ConformanceStatus.VALIDATED
    assert store.get_server_by_url(keyed).validation_status == ConformanceStatus.NEEDS_CONFIG


def test_failing_source_does_not_stop_the_others():
    ok = _FakeSource(SourceType.NPM, [_make_discovered("https://github.com/acme/a")])
    broken = _FakeSource(SourceType.GLAMA, [], error=ValueError("bad json"))
    discovered, stats = fetch_from_sources([broken, ok], SyncSourceOptions())
    assert len(discovered) == 1
    assert stats["glama"].errors == 1
    assert stats["npm"].fetched == 1


def test_derive_tags():
    assert derive_tags("modelcontextprotocol", 10, "TypeScript") == ["official", "typescript"]
    assert derive_tags("someone", 5000, None) == ["community", "popular"]


def test_validate_pending_counts_outcomes():
    store = CatalogStore(":memory:")
    for i, cmd in enumerate(["npx -y good", "npx -y good2; rm -rf /", None]):
        store.upsert_server(CatalogServer(id=f"s{i}", slug=f"s{i}", name=f"s{i}",
                                          source_url=f"https://github.com/a/s{i}", install_command=cmd))
    counts = validate_pending(store, _FakeValidator(), concurrency=2)

    assert counts == {"checked": 2, "validated": 1, "failed": 1, "needs_config": 0, "errors": 0}
    assert store.get_server("s1").validation_status == ConformanceStatus.FAILED
    assert store.get_server("s2").validation_status == ConformanceStatus.PENDING
