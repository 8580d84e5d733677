"""Tests for repository URL canonicalization."""

import pytest

from mcpatlas.canonical import is_github, listing_identity, normalize, parse_owner_repo


@pytest.mark.parametrize("url", [
    "https://github.com/Foo/Bar",
    "https://github.com/Foo/Bar.git",
    "git+https://github.com/foo/bar.git",
    "git@github.com:Foo/Bar.git",
    "ssh://git@github.com/Foo/Bar.git",
    "git://github.com/foo/bar",
    "http://www.github.com/FOO/bar/",
    "https://github.com/foo/bar/tree/main/packages/server",
    "https://github.com/foo/bar#readme",
    "https://github.com/foo/bar?tab=readme-ov-file",
    "  https://github.com/foo/bar  ",
    "github.com/foo/bar",
])
def test_variants_share_one_identity(url):
    assert normalize(url) == "https://github.com/foo/bar"


def test_normalize_is_idempotent():
    samples = [
        "git@gitlab.com:Group/Project.git",
        "https://bitbucket.org/Team/Repo",
        "https://codeberg.org/a/b.c",
        "https://github.com/modelcontextprotocol/servers",
        "https://github.com/foo/bar.git.git",
    ]
    for url in samples:
        once = normalize(url)
        assert once is not None
        assert normalize(once) == once


def test_dots_in_repo_names_survive():
    assert normalize("https://github.com/owner/my.server.git") == "https://github.com/owner/my.server"


def test_other_code_hosts():
    assert normalize("git@gitlab.com:Group/Project.git") == "https://gitlab.com/group/project"
    assert normalize("https://bitbucket.org/Team/Repo") == "https://bitbucket.org/team/repo"


@pytest.mark.parametrize("url", [
    None,
    "",
    "not a url",
    "https://example.com/foo/bar",
    "https://github.com/onlyowner",
    "https://glama.ai/mcp/servers/abc",
])
def test_unrecognised_references_are_rejected(url):
    assert normalize(url) is None


def test_parse_owner_repo():
    assert parse_owner_repo("git@github.com:Foo/Bar.git") == ("foo", "bar")
    assert parse_owner_repo("https://example.com/x/y") is None


def test_is_github():
    assert is_github("git+https://github.com/a/b.git")
    assert not is_github("https://gitlab.com/a/b")
    assert not is_github(None)


def test_listing_identity_strips_query_and_trailing_slash():
    assert listing_identity("https://Glama.ai/mcp/servers/Abc/?x=1") == "https://glama.ai/mcp/servers/abc"
