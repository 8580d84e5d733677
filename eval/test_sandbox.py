"""Tests for the sandbox backends.

The docker CLI is replaced by a small script in tmp_path that logs its
argv and environment and then plays one scripted outcome. DirectBackend
runs a fake ``npx`` found through PATH.
"""

import json
import os
import stat
import sys
import textwrap

import pytest

from mcpatlas import config
from mcpatlas.models import Actor, CatalogServer, ConformanceStatus, ValidationStatus
from mcpatlas.orchestrator import ValidationOrchestrator
from mcpatlas.store import CatalogStore
from mcpatlas.validation.protocol import FailureReason, ValidationResult
from mcpatlas.validation.sandbox import DirectBackend, DockerBackend, SandboxRunner

SECRET = "sk-live-very-secret-value"
COMMAND = "npx -y @acme/weather"

pytestmark = pytest.mark.skipif(os.name != "posix", reason="fake executables use shebang lines")

FAKE_DOCKER = """
import json, os, sys, time

with open(LOG, "a") as fh:
    fh.write(json.dumps({"argv": sys.argv[1:], "env": dict(os.environ)}) + "\\n")

if sys.argv[1] in ("info", "rm"):
    sys.exit(0)
if MODE == "ok":
    print("npm notice installing")
    print(json.dumps({"success": True, "server_name": "weather",
                      "tools": [{"name": "forecast"}], "capabilities": {"tools": {}}}))
elif MODE == "bad_bytes":
    sys.stderr.buffer.write(b"\\xff\\xfe npm ERR! key " + os.environ["API_KEY"].encode() + b"\\n")
    sys.stderr.flush()
    sys.exit(3)
elif MODE == "silent":
    sys.exit(1)
elif MODE == "hang":
    time.sleep(30)
"""

FAKE_NPX = """
import json, os, sys

def send(msg):
    sys.stdout.write(json.dumps(msg) + "\\n")
    sys.stdout.flush()

for line in sys.stdin:
    msg = json.loads(line)
    if msg.get("method") == "initialize":
        send({"jsonrpc": "2.0", "id": msg["id"], "result": {
            "protocolVersion": "2024-11-05", "capabilities": {"tools": {}},
            "serverInfo": {"name": "weather", "version": "1.0.0"}}})
    elif msg.get("method") == "tools/list":
        # one tool per environment variable the server can see
        send({"jsonrpc": "2.0", "id": msg["id"],
              "result": {"tools": [{"name": k} for k in sorted(os.environ)]}})
    elif "id" in msg:
        send({"jsonrpc": "2.0", "id": msg["id"], "result": {}})
"""


def _executable(path, source, **constants):
    header = "".join(f"{name} = {value!r}\n" for name, value in constants.items())
    path.write_text(f"#!{sys.executable}\n" + header + textwrap.dedent(source))
    path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def _fake_docker(tmp_path, mode):
    log = tmp_path / "docker.log"
    docker = _executable(tmp_path / "docker", FAKE_DOCKER, LOG=str(log), MODE=mode)
    return docker, log


def _calls(log):
    return [json.loads(line) for line in log.read_text().splitlines()]


def _run_call(log):
    return next(c for c in _calls(log) if c["argv"][0] == "run")


class _RecordingDirect:
    name = "direct"
    isolated = False

    def __init__(self):
        self.calls = []

    def available(self):
        return True

    def run(self, command, secrets, timeout):
        self.calls.append(command)
        return ValidationResult(success=True)


# ── docker ────────────────────────────────────────────────────────────


def test_docker_passes_secrets_by_name_only(tmp_path, monkeypatch):
    monkeypatch.setenv("HOST_ONLY_VAR", "do-not-forward")
    docker, log = _fake_docker(tmp_path, "ok")

    result = DockerBackend(docker=docker).run(COMMAND, {"API_KEY": SECRET}, 5)

    assert result.success, result.error
    call = _run_call(log)
    argv = call["argv"]
    assert SECRET not in " ".join(argv)
    assert argv[argv.index("API_KEY") - 1] == "-e"
    assert not any("=" in arg for arg in argv[:argv.index(config.DOCKER_IMAGE)])
    assert call["env"]["API_KEY"] == SECRET
    assert call["env"]["MCP_INSTALL_PACKAGE"] == "@acme/weather"
    assert "HOST_ONLY_VAR" not in call["env"]


def test_docker_reads_the_last_stdout_line(tmp_path):
    docker, _ = _fake_docker(tmp_path, "ok")
    result = DockerBackend(docker=docker).run(COMMAND, {}, 5)
    assert result.success
    assert result.server_name == "weather"
    assert result.tools == [{"name": "forecast"}]
    assert result.backend == "docker" and result.isolated


def test_docker_install_failure_with_undecodable_stderr(tmp_path):
    docker, _ = _fake_docker(tmp_path, "bad_bytes")
    result = DockerBackend(docker=docker).run(COMMAND, {"API_KEY": SECRET}, 5)
    assert not result.success
    assert result.failure_reason == FailureReason.SANDBOX_ERROR
    assert "exit 3" in result.error
    assert "npm ERR!" in result.error
    assert SECRET not in result.error and "***" in result.error


def test_docker_without_output_is_no_output(tmp_path):
    docker, _ = _fake_docker(tmp_path, "silent")
    result = DockerBackend(docker=docker).run(COMMAND, {}, 5)
    assert not result.success
    assert result.failure_reason == FailureReason.NO_OUTPUT
    assert "exit 1" in result.error


def test_docker_timeout_removes_the_container(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "SANDBOX_TIMEOUT", 0.5)
    docker, log = _fake_docker(tmp_path, "hang")

    result = DockerBackend(docker=docker, overhead=0).run(COMMAND, {}, 0.5)

    assert result.failure_reason == FailureReason.TIMEOUT
    argv = _run_call(log)["argv"]
    container = argv[argv.index("--name") + 1]
    assert container.startswith("mcpatlas-")
    assert _calls(log)[-1]["argv"] == ["rm", "-f", container]


def test_undecodable_stderr_fails_the_request(tmp_path):
    """Undecodable install output still ends the request as failed."""
    docker, _ = _fake_docker(tmp_path, "bad_bytes")
    store = CatalogStore(":memory:")
    store.upsert_server(CatalogServer(
        id="srv-1", slug="weather", name="weather", source_url="https://github.com/acme/weather",
        npm_package="@acme/weather", install_command=COMMAND))
    orch = ValidationOrchestrator(store, SandboxRunner(DockerBackend(docker=docker), allow_direct=False),
                                  timeout=5)
    req = orch.create_request("srv-1", Actor("alice"))

    done = orch.supply_secrets(req.id, Actor("alice"), {"API_KEY": SECRET})

    assert done.status == ValidationStatus.FAILED
    assert done.result["failure_reason"] == FailureReason.SANDBOX_ERROR.value
    assert store.get_server("srv-1").validation_status == ConformanceStatus.FAILED


# ── direct ────────────────────────────────────────────────────────────


def test_direct_refuses_python_packages():
    result = DirectBackend().run("uvx mcp-weather", {"API_KEY": SECRET}, 5)
    assert result.failure_reason == FailureReason.ISOLATION_REQUIRED


def test_direct_environment_is_minimal(monkeypatch):
    monkeypatch.setenv("HOST_ONLY_VAR", "do-not-forward")
    env = DirectBackend().minimal_env({"API_KEY": SECRET})
    assert set(env) == {"PATH", "HOME", "LANG", "NODE_ENV", "API_KEY"}
    assert env["NODE_ENV"] == "production"


def test_direct_runs_handshake_with_scrubbed_environment(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _executable(bin_dir / "npx", FAKE_NPX)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("HOST_ONLY_VAR", "do-not-forward")

    result = DirectBackend(grace=0.5).run(COMMAND, {"API_KEY": SECRET}, 20)

    assert result.success, result.error
    assert result.backend == "direct" and not result.isolated
    seen = {tool["name"] for tool in result.tools}
    assert {"API_KEY", "NODE_ENV"} <= seen
    assert "HOST_ONLY_VAR" not in seen


# ── runner ────────────────────────────────────────────────────────────


def test_runner_without_docker_refuses_when_direct_disallowed(tmp_path):
    direct = _RecordingDirect()
    runner = SandboxRunner(DockerBackend(docker=str(tmp_path / "no-docker")), direct, allow_direct=False)
    assert not runner.probe()
    result = runner.run(COMMAND, {"API_KEY": SECRET})
    assert result.failure_reason == FailureReason.ISOLATION_REQUIRED
    assert direct.calls == []


def test_runner_falls_back_to_direct_when_allowed(tmp_path):
    direct = _RecordingDirect()
    runner = SandboxRunner(DockerBackend(docker=str(tmp_path / "no-docker")), direct)
    assert runner.run(COMMAND).success
    assert direct.calls == [COMMAND]
