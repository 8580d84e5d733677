"""MCP handshake over a child process's stdio.

This module only imports the standard library: the Docker backend ships
its source into the container and runs it there with ``python3 -c``, so it
doubles as the in-container harness (see ``main``).

The exchange is newline-delimited JSON-RPC 2.0:

    -> initialize (id 1)
    <- result | error          error here is fatal
    -> notifications/initialized
    -> tools/list (2), resources/list (3), prompts/list (4)   pipelined
    <- three responses, in any order; an error yields an empty list

Stdout lines that are not JSON, and messages the server initiates itself,
are ignored.
"""
from __future__ import annotations

import json
import os
import queue
import shlex
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcpatlas-validator", "version": "1.0.0"}
DEFAULT_TIMEOUT = 45.0
DEFAULT_GRACE = 1.0
EXCERPT_LIMIT = 500
STDERR_BUFFER_LIMIT = 16384

LIST_REQUESTS = {
    2: ("tools/list", "tools"),
    3: ("resources/list", "resources"),
    4: ("prompts/list", "prompts"),
}


class FailureReason(str, Enum):
    SPAWN_ERROR = "spawn_error"
    INITIALIZE_REJECTED = "initialize_rejected"
    TIMEOUT = "timeout"
    UNEXPECTED_EXIT = "unexpected_exit"
    SANDBOX_ERROR = "sandbox_error"
    NO_OUTPUT = "no_output"
    ISOLATION_REQUIRED = "isolation_required"
    SECURITY_REJECTED = "security_rejected"


@dataclass
class ValidationResult:
    success: bool
    server_name: str | None = None
    server_version: str | None = None
    protocol_version: str | None = None
    capabilities: dict = field(default_factory=dict)
    tools: list = field(default_factory=list)
    resources: list = field(default_factory=list)
    prompts: list = field(default_factory=list)
    duration_ms: int = 0
    failure_reason: FailureReason | None = None
    error: str | None = None
    backend: str | None = None
    isolated: bool = False

    @classmethod
    def failure(cls, reason: FailureReason, error: str, duration_ms: int = 0) -> "ValidationResult":
        return cls(success=False, failure_reason=reason, error=error[:EXCERPT_LIMIT],
                   duration_ms=duration_ms)

    @property
    def has_tools(self) -> bool:
        return "tools" in self.capabilities

    @property
    def has_resources(self) -> bool:
        return "resources" in self.capabilities

    @property
    def has_prompts(self) -> bool:
        return "prompts" in self.capabilities

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "server_name": self.server_name,
            "server_version": self.server_version,
            "protocol_version": self.protocol_version,
            "capabilities": self.capabilities,
            "tools": self.tools,
            "resources": self.resources,
            "prompts": self.prompts,
            "duration_ms": self.duration_ms,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "error": self.error,
            "backend": self.backend,
            "isolated": self.isolated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationResult":
        reason = data.get("failure_reason")
        return cls(
            success=bool(data.get("success")),
            server_name=data.get("server_name"),
            server_version=data.get("server_version"),
            protocol_version=data.get("protocol_version"),
            capabilities=data.get("capabilities") or {},
            tools=data.get("tools") or [],
            resources=data.get("resources") or [],
            prompts=data.get("prompts") or [],
            duration_ms=int(data.get("duration_ms") or 0),
            failure_reason=FailureReason(reason) if reason else None,
            error=data.get("error"),
            backend=data.get("backend"),
            isolated=bool(data.get("isolated")),
        )


def _pump_stdout(stream, sink: queue.Queue) -> None:
    try:
        for raw in iter(stream.readline, b""):
            sink.put(("line", raw.decode("utf-8", errors="replace")))
    except (OSError, ValueError):
        pass
    sink.put(("eof", None))


def _pump_stderr(stream, chunks: list) -> None:
    size = 0
    try:
        for raw in iter(stream.readline, b""):
            if size < STDERR_BUFFER_LIMIT:
                chunks.append(raw.decode("utf-8", errors="replace"))
                size += len(raw)
    except (OSError, ValueError):
        pass


def _signal(proc: subprocess.Popen, sig) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif sig == getattr(signal, "SIGKILL", None):
            proc.kill()
        else:
            proc.terminate()
    except (ProcessLookupError, PermissionError):
        pass


def terminate(proc: subprocess.Popen, grace: float = DEFAULT_GRACE) -> None:
    """SIGTERM the child's process group, SIGKILL it if still alive after grace."""
    try:
        if proc.stdin and not proc.stdin.closed:
            proc.stdin.close()
    except OSError:
        pass

    if proc.poll() is None:
        _signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            _signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()
    elif os.name == "posix":
        # The leader is gone; reap anything it left behind in the group.
        _signal(proc, signal.SIGKILL)


def _message_id(msg: dict):
    """Integer id of a response, or None for notifications and ids we never sent."""
    value = msg.get("id")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _list_result(response: dict, key: str) -> list:
    if "error" in response:
        return []
    result = response.get("result") or {}
    items = result.get(key) if isinstance(result, dict) else None
    return items if isinstance(items, list) else []


def run_handshake(argv, env=None, timeout: float = DEFAULT_TIMEOUT,
                  grace: float = DEFAULT_GRACE, cwd=None) -> ValidationResult:
    """Spawn argv and run the MCP handshake against it.

    The child is terminated on every exit path. No retries.
    """
    started = time.monotonic()
    deadline = started + timeout

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        proc = subprocess.Popen(
            list(argv),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            cwd=cwd,
            start_new_session=(os.name == "posix"),
        )
    except (OSError, ValueError) as e:
        return ValidationResult.failure(FailureReason.SPAWN_ERROR, f"Spawn error: {e}", elapsed_ms())

    messages: queue.Queue = queue.Queue()
    stderr_chunks: list = []
    readers = [
        threading.Thread(target=_pump_stdout, args=(proc.stdout, messages), daemon=True),
        threading.Thread(target=_pump_stderr, args=(proc.stderr, stderr_chunks), daemon=True),
    ]
    for t in readers:
        t.start()

    def send(msg: dict) -> bool:
        try:
            proc.stdin.write((json.dumps(msg) + "\n").encode("utf-8"))
            proc.stdin.flush()
            return True
        except (BrokenPipeError, OSError, ValueError):
            return False

    def exited() -> ValidationResult:
        try:
            code = proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            code = None
        for t in readers:
            t.join(timeout=grace)
        stderr = "".join(stderr_chunks)[:EXCERPT_LIMIT]
        return ValidationResult.failure(
            FailureReason.UNEXPECTED_EXIT,
            f"Process exited with code {code}. stderr: {stderr}",
            elapsed_ms(),
        )

    result = ValidationResult(success=False)
    responses: dict = {}
    try:
        send({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        })

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return ValidationResult.failure(
                    FailureReason.TIMEOUT, f"Handshake timeout after {timeout:g}s", elapsed_ms())
            try:
                kind, line = messages.get(timeout=remaining)
            except queue.Empty:
                continue
            if kind == "eof":
                return exited()

            line = line.strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
            except ValueError:
                continue
            if not isinstance(msg, dict) or "method" in msg or "id" not in msg:
                continue

            msg_id = _message_id(msg)
            if msg_id is None:
                continue
            if msg_id == 1 and 1 not in responses:
                responses[1] = msg
                if "error" in msg:
                    error = msg.get("error") or {}
                    detail = error.get("message") if isinstance(error, dict) else str(error)
                    return ValidationResult.failure(
                        FailureReason.INITIALIZE_REJECTED, f"MCP initialize error: {detail}", elapsed_ms())
                init = msg.get("result") or {}
                server_info = init.get("serverInfo") or {}
                result.server_name = server_info.get("name")
                result.server_version = server_info.get("version")
                result.protocol_version = init.get("protocolVersion")
                result.capabilities = init.get("capabilities") or {}

                send({"jsonrpc": "2.0", "method": "notifications/initialized"})
                for req_id, (method, _) in LIST_REQUESTS.items():
                    send({"jsonrpc": "2.0", "id": req_id, "method": method, "params": {}})
            elif msg_id in LIST_REQUESTS and 1 in responses:
                responses.setdefault(msg_id, msg)

            if all(req_id in responses for req_id in LIST_REQUESTS):
                for req_id, (_, key) in LIST_REQUESTS.items():
                    setattr(result, key, _list_result(responses[req_id], key))
                result.success = True
                result.duration_ms = elapsed_ms()
                return result
    finally:
        terminate(proc, grace)
        for stream in (proc.stdout, proc.stderr):
            try:
                stream.close()
            except OSError:
                pass


HARNESS_ENV_KEYS = ("MCP_RUN_COMMAND", "MCP_HANDSHAKE_TIMEOUT", "MCPATLAS_HARNESS")


def main() -> int:
    """Container entry point: handshake against $MCP_RUN_COMMAND, print one JSON line."""
    command = os.environ.get("MCP_RUN_COMMAND", "")
    timeout = float(os.environ.get("MCP_HANDSHAKE_TIMEOUT") or DEFAULT_TIMEOUT)
    env = {k: v for k, v in os.environ.items() if k not in HARNESS_ENV_KEYS}
    if not command:
        result = ValidationResult.failure(FailureReason.SPAWN_ERROR, "Spawn error: MCP_RUN_COMMAND is empty")
    else:
        result = run_handshake(shlex.split(command), env=env, timeout=timeout)
    sys.stdout.write(json.dumps(result.to_dict()) + "\n")
    sys.stdout.flush()
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
