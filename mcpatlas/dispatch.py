"""Asynchronous execution: the external trigger and the worker it starts.

The orchestrator stores encrypted secrets on a request and calls
DispatchTrigger.dispatch(request_id). Something external (a GitHub Actions
workflow listening for repository_dispatch) then runs ``mcpatlas worker
<request_id>``, which lands in run_worker() below.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import requests

from mcpatlas import config
from mcpatlas.errors import CommandRejected, ConfigError, MCPAtlasError, VaultError
from mcpatlas.models import ValidationStatus
from mcpatlas.orchestrator import run_attempt
from mcpatlas.validation.protocol import FailureReason, ValidationResult
from mcpatlas.validation.security import check_run_command
from mcpatlas.vault import secret_scope

logger = logging.getLogger(__name__)

TIMEOUT_SECONDS = 10


class DispatchTrigger(ABC):
    @abstractmethod
    def dispatch(self, request_id: str) -> tuple[bool, str]:
        """Ask the external executor to pick up request_id.

        Returns:
            (success: bool, message: str)
        """


class GitHubDispatchTrigger(DispatchTrigger):
    """Fires a repository_dispatch event carrying the request id."""

    def __init__(self, settings, session: requests.Session | None = None):
        if not settings.dispatch_repo:
            raise ConfigError("MCPATLAS_DISPATCH_REPO is required for remote validation")
        settings.require_github_token()
        self.repo = settings.dispatch_repo
        self.headers = settings.github_headers()
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{config.GITHUB_API}/repos/{self.repo}/dispatches"

    def dispatch(self, request_id):
        body = {
            "event_type": config.DISPATCH_EVENT_TYPE,
            "client_payload": {"validation_id": request_id},
        }
        try:
            resp = self.session.post(self.endpoint, json=body, headers=self.headers,
                                     timeout=TIMEOUT_SECONDS)
        except requests.exceptions.RequestException as e:
            msg = str(e)
            logger.warning("repository_dispatch failed: %s", msg)
            return False, msg

        if 200 <= resp.status_code < 300:
            logger.debug("repository_dispatch accepted: HTTP %d", resp.status_code)
            return True, f"Dispatched (HTTP {resp.status_code})"
        msg = f"HTTP {resp.status_code}: {resp.text[:200]}"
        logger.warning("repository_dispatch failed: %s", msg)
        return False, msg


def run_worker(request_id: str, orchestrator, vault, timeout: float = config.HANDSHAKE_TIMEOUT):
    """Execute one dispatched request and report back.

    The ciphertext is read and cleared in one step before decryption, so it
    never outlives this attempt whatever happens next.
    """
    store = orchestrator.store
    request = store.get_request(request_id)
    if request is None:
        raise MCPAtlasError(f"Validation request {request_id} not found")
    if request.status != ValidationStatus.VALIDATING:
        raise MCPAtlasError(
            f"Validation request {request_id} is {request.status.value}, expected validating")

    token = store.take_ciphertext(request_id)
    secrets = {}
    if token is not None:
        try:
            secrets = vault.decrypt(token)
        except VaultError as e:
            logger.error("request %s: %s", request_id, e)
            return orchestrator.report_result(
                request_id,
                ValidationResult.failure(FailureReason.SANDBOX_ERROR, "Failed to decrypt credentials"),
                source="worker",
            )
        logger.info("request %s: decrypted %d credentials", request_id, len(secrets))

    with secret_scope(secrets) as held:
        server = store.get_server(request.server_id)
        if server is None:
            result = ValidationResult.failure(FailureReason.SANDBOX_ERROR, "Server not found")
        else:
            try:
                check_run_command(request.install_command, server.npm_package, server.pypi_package)
            except CommandRejected as e:
                result = ValidationResult.failure(FailureReason.SECURITY_REJECTED, str(e))
            else:
                logger.info("request %s: running %s", request_id, request.install_command)
                result = run_attempt(orchestrator.runner, request.install_command, held, timeout)

    return orchestrator.report_result(request_id, result, source="worker")
