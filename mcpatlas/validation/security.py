"""Security screens applied before anything is spawned."""
from __future__ import annotations

import re
import shlex

from mcpatlas import config
from mcpatlas.errors import CommandRejected, SecretRejected

NODE = "node"
PYTHON = "python"

RUNNER_PREFIXES = {
    ("npx", "-y"): NODE,
    ("uvx",): PYTHON,
}

FORBIDDEN_COMMAND_PATTERNS = ["|", "&&", "||", ";", "`", "$(", "${", ">", "<", "\n", "\r", "\\n", "\x00"]
_SAFE_TOKEN = re.compile(r"^[A-Za-z0-9@._/:=+,~%\-\[\]]+$")

_SECRET_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")
_SECRET_FORBIDDEN = re.compile(r"[;&|`$\n\r\x00]")
MAX_SECRETS = 32

# Names a caller may not override; the sandbox or the harness owns them.
RESERVED_ENV = {
    "PATH", "HOME", "LANG", "USER", "SHELL", "PWD", "NODE_ENV", "NODE_OPTIONS",
    "LD_PRELOAD", "LD_LIBRARY_PATH", "PYTHONPATH", "PYTHONSTARTUP",
    "MCP_RUN_COMMAND", "MCP_INSTALL_PACKAGE", "MCP_HANDSHAKE_TIMEOUT", "MCPATLAS_HARNESS",
}

CONFIG_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"requires?\s+(an?\s+)?api[_\s]?key",
        r"set\s+.*_API_KEY",
        r"OPENAI_API_KEY",
        r"ANTHROPIC_API_KEY",
        r"DATABASE_URL",
        r"requires?\s+authentication",
        r"you\s+(need|must)\s+to\s+(configure|set|provide)",
        r"environment\s+variable",
        r"--api-key",
    )
]


def ecosystem(command: str | None) -> str | None:
    """'node' for npx commands, 'python' for uvx, else None."""
    if not command:
        return None
    tokens = command.split()
    for prefix, eco in RUNNER_PREFIXES.items():
        if tuple(tokens[:len(prefix)]) == prefix:
            return eco
    return None


def _package_matches(token: str, package: str) -> bool:
    token = token.lower()
    package = package.lower()
    if token == package:
        return True
    # Version pins: pkg@1.2.3 (npm, uvx) or pkg==1.2.3 (uvx)
    for sep in ("@", "==", "["):
        if token.startswith(package + sep):
            return True
    return False


def check_run_command(command: str | None, npm_package: str | None = None,
                      pypi_package: str | None = None) -> list[str]:
    """Screen a run command and return its argv.

    Accepts only ``npx -y <pkg> [args]`` and ``uvx <pkg> [args]`` with no
    shell metacharacters. When the server declares a package for that
    ecosystem, the command must run exactly that package.
    Raises CommandRejected.
    """
    if not command or not command.strip():
        raise CommandRejected("Run command is empty")
    for pattern in FORBIDDEN_COMMAND_PATTERNS:
        if pattern in command:
            raise CommandRejected(f"Command contains forbidden pattern: {pattern!r}")

    eco = ecosystem(command)
    if eco is None:
        raise CommandRejected("Command must start with 'npx -y' or 'uvx'")

    try:
        argv = shlex.split(command)
    except ValueError as e:
        raise CommandRejected(f"Command could not be parsed: {e}")
    for token in argv:
        if not _SAFE_TOKEN.match(token):
            raise CommandRejected(f"Command contains a disallowed argument: {token[:40]!r}")

    prefix_len = 2 if eco == NODE else 1
    if len(argv) <= prefix_len:
        raise CommandRejected("Command does not name a package")
    package_token = argv[prefix_len]
    if package_token.startswith("-"):
        raise CommandRejected("Package must directly follow the runner")

    declared = npm_package if eco == NODE else pypi_package
    other = pypi_package if eco == NODE else npm_package
    if declared:
        if not _package_matches(package_token, declared):
            raise CommandRejected(f"Run command must use the server's package: {declared}")
    elif other:
        raise CommandRejected(
            f"Server declares no {'npm' if eco == NODE else 'PyPI'} package; expected {other}")
    return argv


def check_secrets(secrets: dict) -> None:
    """Screen caller-supplied secrets. Raises SecretRejected naming the key only."""
    if not isinstance(secrets, dict):
        raise SecretRejected("Secrets must be a mapping of names to values")
    if len(secrets) > MAX_SECRETS:
        raise SecretRejected(f"At most {MAX_SECRETS} secrets may be supplied")

    for key, value in secrets.items():
        if not isinstance(key, str) or not _SECRET_KEY.match(key):
            raise SecretRejected(f"Invalid secret name: {str(key)[:64]!r}")
        if key.upper() in RESERVED_ENV:
            raise SecretRejected(f"Secret name {key} is reserved")
        if not isinstance(value, str):
            raise SecretRejected(f"Secret {key} must be a string")
        if len(value) > config.MAX_SECRET_LENGTH:
            raise SecretRejected(f"Secret {key} exceeds {config.MAX_SECRET_LENGTH} characters")
        if _SECRET_FORBIDDEN.search(value):
            raise SecretRejected(f"Secret {key} contains forbidden characters")


def redact(text: str | None, secrets: dict | None) -> str | None:
    """Mask any secret value that a child echoed into its output."""
    if not text or not secrets:
        return text
    for value in sorted(secrets.values(), key=len, reverse=True):
        if value and len(value) >= 4:
            text = text.replace(value, "***")
    return text


def detect_requires_config(readme: str | None) -> bool:
    """True when a README suggests the server won't start without configuration."""
    if not readme:
        return False
    return any(p.search(readme) for p in CONFIG_PATTERNS)
