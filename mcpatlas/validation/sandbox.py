"""Execution backends for a single validation attempt.

DockerBackend runs the candidate inside a throwaway, resource-limited
container. DirectBackend spawns it on the host with a scrubbed
environment; it is weaker and refuses Python candidates outright.
Both return a ValidationResult of the same shape.
"""
from __future__ import annotations

import inspect
import json
import logging
import os
import shlex
import subprocess
import uuid
from abc import ABC, abstractmethod

from mcpatlas import config
from mcpatlas.validation import protocol
from mcpatlas.validation.protocol import FailureReason, ValidationResult
from mcpatlas.validation.security import NODE, PYTHON, ecosystem, redact

logger = logging.getLogger(__name__)

# Docker client variables worth passing through to the `docker` CLI.
DOCKER_CLIENT_ENV = (
    "PATH", "HOME", "DOCKER_HOST", "DOCKER_CONFIG", "DOCKER_CONTEXT",
    "DOCKER_CERT_PATH", "DOCKER_TLS_VERIFY",
)

INSTALL_SCRIPTS = {
    NODE: 'npm install -g --no-fund --no-audit "$MCP_INSTALL_PACKAGE" 1>&2 || exit 3; '
          'exec python3 -c "$MCPATLAS_HARNESS"',
    PYTHON: 'pip install --quiet --disable-pip-version-check uv 1>&2 '
            '&& uv tool install "$MCP_INSTALL_PACKAGE" 1>&2 || exit 3; '
            'export PATH="$HOME/.local/bin:$PATH"; '
            'exec python3 -c "$MCPATLAS_HARNESS"',
}

_harness_source = None


def harness_source() -> str:
    """Source of the protocol module, run as a script inside the container."""
    global _harness_source
    if _harness_source is None:
        _harness_source = inspect.getsource(protocol)
    return _harness_source


def package_of(argv: list[str]) -> str:
    eco = ecosystem(" ".join(argv))
    return argv[2] if eco == NODE else argv[1]


class SandboxBackend(ABC):
    name = "backend"
    isolated = False

    @abstractmethod
    def available(self) -> bool:
        ...

    @abstractmethod
    def run(self, command: str, secrets: dict, timeout: float) -> ValidationResult:
        """Execute one attempt of command with secrets in its environment."""


class DockerBackend(SandboxBackend):
    name = "docker"
    isolated = True

    def __init__(self, image: str = config.DOCKER_IMAGE, docker: str = "docker", overhead: float = 15):
        self.image = image
        self.docker = docker
        self.overhead = overhead

    def available(self) -> bool:
        try:
            proc = subprocess.run([self.docker, "info"], capture_output=True, timeout=15)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0

    def build_argv(self, container: str, secret_names) -> list[str]:
        argv = [
            self.docker, "run", "--rm", "-i",
            "--name", container,
            "--network", "bridge",
            "--memory", config.DOCKER_MEMORY,
            "--cpus", config.DOCKER_CPUS,
            "--pids-limit", config.DOCKER_PIDS_LIMIT,
            "--security-opt", "no-new-privileges",
        ]
        # Bare -e NAME: the value comes from the docker client's environment.
        for name in ("MCP_RUN_COMMAND", "MCP_INSTALL_PACKAGE", "MCP_HANDSHAKE_TIMEOUT", "MCPATLAS_HARNESS"):
            argv += ["-e", name]
        for name in sorted(secret_names):
            argv += ["-e", name]
        return argv

    def _remove(self, container: str) -> None:
        try:
            subprocess.run([self.docker, "rm", "-f", container], capture_output=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("could not remove container %s: %s", container, e)

    def run(self, command, secrets, timeout):
        argv = shlex.split(command)
        eco = ecosystem(command)
        container = f"mcpatlas-{uuid.uuid4().hex[:12]}"
        wall_clock = max(config.SANDBOX_TIMEOUT, timeout + self.overhead)

        client_env = {k: os.environ[k] for k in DOCKER_CLIENT_ENV if k in os.environ}
        client_env.update({
            "MCP_RUN_COMMAND": command,
            "MCP_INSTALL_PACKAGE": package_of(argv),
            "MCP_HANDSHAKE_TIMEOUT": str(timeout),
            "MCPATLAS_HARNESS": harness_source(),
        })
        client_env.update(secrets)

        docker_argv = self.build_argv(container, secrets.keys())
        docker_argv += [self.image, "sh", "-c", INSTALL_SCRIPTS[eco]]
        logger.info("docker: validating %s in %s", command, container)
        try:
            proc = subprocess.run(
                docker_argv,
                env=client_env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=wall_clock,
            )
        except subprocess.TimeoutExpired:
            self._remove(container)
            return ValidationResult.failure(
                FailureReason.TIMEOUT, f"Sandbox timeout after {wall_clock:g}s",
                int(wall_clock * 1000))
        except OSError as e:
            return ValidationResult.failure(FailureReason.SANDBOX_ERROR, f"Docker error: {e}")
        finally:
            client_env.clear()

        lines = [line for line in proc.stdout.splitlines() if line.strip()]
        try:
            result = ValidationResult.from_dict(json.loads(lines[-1]))
        except (IndexError, ValueError, TypeError, AttributeError):
            stderr = redact(proc.stderr, secrets) or ""
            reason = FailureReason.SANDBOX_ERROR if proc.returncode in (3, 125) else FailureReason.NO_OUTPUT
            return ValidationResult.failure(
                reason, f"No validation output (exit {proc.returncode}). stderr: {stderr[-config.ERROR_TEXT_LIMIT:]}")

        result.error = redact(result.error, secrets)
        result.backend = self.name
        result.isolated = True
        return result


class DirectBackend(SandboxBackend):
    name = "direct"
    isolated = False

    def __init__(self, grace: float = config.KILL_GRACE):
        self.grace = grace

    def available(self) -> bool:
        return True

    def minimal_env(self, secrets: dict) -> dict:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": os.environ.get("HOME", "/tmp"),
            "LANG": "C.UTF-8",
            "NODE_ENV": "production",
        }
        env.update(secrets)
        return env

    def run(self, command, secrets, timeout):
        if ecosystem(command) == PYTHON:
            return ValidationResult.failure(
                FailureReason.ISOLATION_REQUIRED, "Python validation requires an isolated sandbox")

        env = self.minimal_env(secrets)
        try:
            result = protocol.run_handshake(shlex.split(command), env=env, timeout=timeout,
                                            grace=self.grace)
        finally:
            env.clear()
        result.error = redact(result.error, secrets)
        result.backend = self.name
        result.isolated = False
        return result


class SandboxRunner:
    """Chooses a backend per call, by probing for the isolated one."""

    def __init__(self, isolated: SandboxBackend | None = None,
                 direct: SandboxBackend | None = None, allow_direct: bool = True):
        self.isolated = isolated or DockerBackend()
        self.direct = direct or DirectBackend()
        self.allow_direct = allow_direct

    def probe(self) -> bool:
        return self.isolated.available()

    def select(self) -> SandboxBackend | None:
        if self.probe():
            return self.isolated
        return self.direct if self.allow_direct else None

    def run(self, command: str, secrets: dict | None = None,
            timeout: float = config.HANDSHAKE_TIMEOUT) -> ValidationResult:
        backend = self.select()
        if backend is None:
            return ValidationResult.failure(FailureReason.ISOLATION_REQUIRED, "No isolated sandbox available")
        logger.debug("running %s on %s backend", command, backend.name)
        return backend.run(command, secrets if secrets is not None else {}, timeout)
