"""Exception types raised across mcpatlas."""
from __future__ import annotations


class MCPAtlasError(Exception):
    """Base class for every error mcpatlas raises on purpose."""


class ConfigError(MCPAtlasError):
    """Operator configuration is missing or unusable. Fatal at startup."""


class RateLimited(MCPAtlasError):
    """An upstream signalled an exhausted quota. Adapters stop early on this."""

    def __init__(self, source: str, reset_at: int | None = None):
        self.source = source
        self.reset_at = reset_at
        super().__init__(f"{source}: rate limit exhausted")


class CommandRejected(MCPAtlasError):
    """A run command failed the security screen. Nothing was spawned."""


class SecretRejected(MCPAtlasError):
    """A supplied secret failed the security screen.

    The message names the offending key only, never the value.
    """


class VaultError(MCPAtlasError):
    """Ciphertext could not be decrypted (tampered, wrong key, malformed)."""


class RequestNotFound(MCPAtlasError):
    pass


class ServerNotFound(MCPAtlasError):
    pass


class PermissionDenied(MCPAtlasError):
    pass


class InvalidTransition(MCPAtlasError):
    """A validation request was asked to move to a state it cannot reach."""

    def __init__(self, request_id: str, current: str, target: str):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(f"request {request_id}: cannot move from {current} to {target}")


class DuplicateRequest(MCPAtlasError):
    """Another active request already exists for this server and requester."""
