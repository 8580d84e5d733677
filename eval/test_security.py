"""Tests for run-command and secret screening."""

import pytest

from mcpatlas.errors import CommandRejected, SecretRejected
from mcpatlas.validation.security import (
    check_run_command,
    check_secrets,
    detect_requires_config,
    ecosystem,
    redact,
)


# ── run commands ──────────────────────────────────────────────────────


def test_accepts_npx_and_uvx():
    assert check_run_command("npx -y @acme/weather --port 3") == ["npx", "-y", "@acme/weather", "--port", "3"]
    assert check_run_command("uvx mcp-server-time") == ["uvx", "mcp-server-time"]


@pytest.mark.parametrize("command", [
    "npx -y pkg; rm -rf /",
    "npx -y pkg && curl evil",
    "npx -y pkg | sh",
    "npx -y $(whoami)",
    "npx -y `id`",
    "npx -y pkg > /etc/passwd",
    "npx -y pkg\nrm -rf /",
    "uvx pkg ${HOME}",
])
def test_rejects_shell_metacharacters(command):
    with pytest.raises(CommandRejected):
        check_run_command(command)


@pytest.mark.parametrize("command", [
    "",
    "   ",
    "node server.js",
    "npx pkg",
    "python -m server",
    "npx -y",
    "npx -y --yes pkg",
    "bash -c 'echo hi'",
])
def test_rejects_other_runners(command):
    with pytest.raises(CommandRejected):
        check_run_command(command)


def test_declared_package_must_match():
    assert check_run_command("npx -y @acme/weather@1.2.0", npm_package="@acme/weather")
    assert check_run_command("uvx mcp-time==0.3", pypi_package="mcp-time")
    with pytest.raises(CommandRejected, match="@acme/weather"):
        check_run_command("npx -y @evil/weather", npm_package="@acme/weather")
    with pytest.raises(CommandRejected):
        check_run_command("npx -y @acme/weather-extra", npm_package="@acme/weather")


def test_other_ecosystem_declaration_rejects():
    with pytest.raises(CommandRejected):
        check_run_command("uvx something", npm_package="@acme/weather")


def test_ecosystem():
    assert ecosystem("npx -y pkg") == "node"
    assert ecosystem("uvx pkg") == "python"
    assert ecosystem("npm start") is None
    assert ecosystem(None) is None


# ── secrets ───────────────────────────────────────────────────────────


def test_valid_secrets_pass_and_are_not_copied():
    secrets = {"API_KEY": "sk-abc123", "REGION": "eu-west-1"}
    assert check_secrets(secrets) is None
    assert secrets == {"API_KEY": "sk-abc123", "REGION": "eu-west-1"}


@pytest.mark.parametrize("secrets", [
    {"1BAD": "x"},
    {"BAD-NAME": "x"},
    {"PATH": "/tmp"},
    {"ld_preload": "/tmp/x.so"},
    {"MCP_RUN_COMMAND": "npx -y evil"},
    {"KEY": 123},
    {"KEY": "a" * 501},
    {"KEY": "abc; rm -rf /"},
    {"KEY": "line\nbreak"},
    {"KEY": "$(id)"},
])
def test_rejected_secrets(secrets):
    with pytest.raises(SecretRejected):
        check_secrets(secrets)


def test_rejection_message_never_contains_value():
    value = "hunter2; echo pwned"
    with pytest.raises(SecretRejected) as exc:
        check_secrets({"DB_PASSWORD": value})
    assert "DB_PASSWORD" in str(exc.value)
    assert value not in str(exc.value)


def test_too_many_secrets():
    with pytest.raises(SecretRejected):
        check_secrets({f"K{i}": "v" for i in range(33)})


def test_redact_masks_echoed_values():
    secrets = {"API_KEY": "sk-live-123456", "SHORT": "ab"}
    text = "auth failed for sk-live-123456 (ab)"
    assert redact(text, secrets) == "auth failed for *** (ab)"
    assert redact(None, secrets) is None
    assert redact("nothing", {}) == "nothing"


# ── configuration detection ───────────────────────────────────────────


@pytest.mark.parametrize("readme", [
    "This server requires an API key from the provider.",
    "Set WEATHER_API_KEY before starting.",
    "Pass --api-key on the command line",
    "Configure the DATABASE_URL environment variable.",
])
def test_detects_config_requirements(readme):
    assert detect_requires_config(readme)


def test_plain_readme_needs_no_config():
    assert not detect_requires_config("A tiny server that echoes its input.")
    assert not detect_requires_config(None)
