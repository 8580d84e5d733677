"""Tests for the priority merge of per-source reports."""

import itertools

import pytest

from mcpatlas.merge import group_by_identity, merge_all, merge_group
from mcpatlas.models import DiscoveredServer, SourcePayload, SourceType

URL = "https://github.com/acme/weather-mcp"


def _record(source, ident, **kwargs):
    kwargs.setdefault("name", f"{source.value}-name")
    return DiscoveredServer(
        canonical_url=kwargs.pop("canonical_url", URL),
        source=source,
        source_identifier=ident,
        payload=SourcePayload(source, {"id": ident}),
        **kwargs,
    )


def test_code_host_stars_win():
    """Two sources disagree on stars; the code host's count is kept."""
    records = [
        _record(SourceType.PULSEMCP, "weather", stars=10),
        _record(SourceType.GITHUB, "123", stars=1000, github_repo_id=123),
    ]
    merged = merge_group(records)
    assert merged.stars == 1000
    assert merged.github_repo_id == 123


def test_field_overrides():
    records = [
        _record(SourceType.MCP_REGISTRY, "io.github.acme/weather", version="1.0.0",
                install_command="npx -y @acme/weather", description="from registry"),
        _record(SourceType.NPM, "@acme/weather", version="1.2.0", npm_downloads=500,
                npm_quality_score=0.8, install_command="npx -y @acme/weather@latest"),
        _record(SourceType.GITHUB, "123", stars=42, forks=3, description="from github"),
    ]
    merged = merge_group(records)
    assert merged.version == "1.2.0"                        # npm first
    assert merged.install_command == "npx -y @acme/weather"  # registry first
    assert merged.npm_downloads == 500
    assert merged.stars == 42 and merged.forks == 3
    assert merged.description == "from registry"            # overall priority
    assert merged.name == "mcp-registry-name"


def test_unset_fields_fall_back_to_lower_priority():
    records = [
        _record(SourceType.MCP_REGISTRY, "r", description=None),
        _record(SourceType.GLAMA, "g", description="glama text"),
    ]
    assert merge_group(records).description == "glama text"


def test_empty_string_counts_as_unset():
    records = [
        _record(SourceType.MCP_REGISTRY, "r", install_command=""),
        _record(SourceType.NPM, "pkg", install_command="npx -y pkg"),
    ]
    assert merge_group(records).install_command == "npx -y pkg"


def test_merge_is_order_independent():
    records = [
        _record(SourceType.GLAMA, "g1", description="a", stars=5),
        _record(SourceType.GLAMA, "g0", description="b", stars=6),
        _record(SourceType.NPM, "pkg", version="2.0.0"),
        _record(SourceType.PULSEMCP, "p", stars=7, description="c"),
    ]
    expected = merge_group(records).to_dict()
    for perm in itertools.permutations(records):
        assert merge_group(list(perm)).to_dict() == expected


def test_sources_and_payloads_are_kept_per_source():
    records = [
        _record(SourceType.GITHUB, "123"),
        _record(SourceType.NPM, "pkg"),
    ]
    merged = merge_group(records)
    assert merged.sources == [SourceType.NPM, SourceType.GITHUB]
    assert merged.source_data[SourceType.GITHUB].raw == {"id": "123"}
    assert merged.to_dict()["source_identifiers"] == {"npm": "pkg", "github": "123"}


def test_merge_all_yields_unique_identities_sorted():
    records = [
        _record(SourceType.NPM, "b", canonical_url="https://github.com/z/b"),
        _record(SourceType.GITHUB, "1", canonical_url="https://github.com/a/a"),
        _record(SourceType.GLAMA, "2", canonical_url="https://github.com/z/b"),
    ]
    merged = merge_all(records)
    assert [m.canonical_url for m in merged] == ["https://github.com/a/a", "https://github.com/z/b"]
    assert len(group_by_identity(records)) == 2


def test_merge_group_requires_records():
    with pytest.raises(ValueError):
        merge_group([])
