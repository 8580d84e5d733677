"""Lifecycle of validation requests.

A request moves pending -> validating -> completed | failed, and may be
cancelled while pending or validating, or skipped while pending. Terminal
states are never left. Each transition appends one audit entry.

Once secrets are supplied the attempt runs one of two ways, chosen by
probing for the isolated sandbox:

- LocalExecution runs the sandbox synchronously and reports straight back.
- RemoteExecution encrypts the secrets, stores the ciphertext on the
  request and fires an external trigger; a worker later decrypts, runs
  and calls report_result().
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from mcpatlas import config
from mcpatlas.errors import (
    CommandRejected,
    ConfigError,
    DuplicateRequest,
    InvalidTransition,
    PermissionDenied,
    RequestNotFound,
    ServerNotFound,
)
from mcpatlas.models import (
    SYSTEM_ACTOR_ID,
    Actor,
    AuditAction,
    AuditEntry,
    ConformanceStatus,
    ValidationRequest,
    ValidationStatus,
    new_id,
    utc_now,
)
from mcpatlas.validation.protocol import FailureReason, ValidationResult
from mcpatlas.validation.security import check_run_command, check_secrets, redact
from mcpatlas.vault import secret_scope

logger = logging.getLogger(__name__)

S = ValidationStatus

ALLOWED_TRANSITIONS = {
    S.PENDING: {S.VALIDATING, S.CANCELLED, S.SKIPPED, S.COMPLETED, S.FAILED},
    S.VALIDATING: {S.COMPLETED, S.FAILED, S.CANCELLED},
    S.COMPLETED: set(),
    S.FAILED: set(),
    S.CANCELLED: set(),
    S.SKIPPED: set(),
}

REVIEW_ACTIONS = ("approve", "reject", "complete")


def _actor_id(actor) -> str:
    return actor.id if isinstance(actor, Actor) else str(actor)


def apply_result_to_server(store, server_id: str, result: ValidationResult) -> None:
    """Update a catalog entry's conformance from one validation result."""
    if result.success:
        store.set_conformance(
            server_id, ConformanceStatus.VALIDATED, error=None,
            tools=result.tools, resources=result.resources, prompts=result.prompts,
            validated_at=utc_now(),
        )
    else:
        store.set_conformance(server_id, ConformanceStatus.FAILED,
                              error=(result.error or "")[:config.ERROR_TEXT_LIMIT])


def run_attempt(runner, command: str, secrets: dict, timeout: float) -> ValidationResult:
    """Run one attempt on a backend or runner. Anything it raises becomes a sandbox_error result."""
    try:
        return runner.run(command, secrets, timeout)
    except Exception as e:
        # the exception text may quote a secret; log the type only
        logger.error("attempt for %s crashed: %s", command, type(e).__name__)
        return ValidationResult.failure(
            FailureReason.SANDBOX_ERROR, redact(f"Sandbox error: {type(e).__name__}: {e}", secrets))


class ExecutionMode(ABC):
    name = "mode"

    @abstractmethod
    def execute(self, orchestrator: "ValidationOrchestrator", request: ValidationRequest,
                secrets: dict) -> ValidationRequest:
        """Run or hand off one attempt. secrets is wiped by the caller afterwards."""


class LocalExecution(ExecutionMode):
    name = "local"

    def __init__(self, backend, timeout: float = config.HANDSHAKE_TIMEOUT):
        self.backend = backend
        self.timeout = timeout

    def execute(self, orchestrator, request, secrets):
        result = run_attempt(self.backend, request.install_command, secrets, self.timeout)
        return orchestrator.report_result(request.id, result, source=f"local-{self.backend.name}")


class RemoteExecution(ExecutionMode):
    name = "remote"

    def __init__(self, vault, trigger):
        self.vault = vault
        self.trigger = trigger

    def execute(self, orchestrator, request, secrets):
        store = orchestrator.store
        token = self.vault.encrypt(secrets)
        attached = store.attach_ciphertext(request.id, token)
        del token
        if not attached:
            logger.info("request %s left validating before dispatch; not dispatching", request.id)
            return orchestrator.get_request(request.id)

        ok, message = self.trigger.dispatch(request.id)
        if not ok:
            logger.warning("dispatch failed for request %s: %s", request.id, message)
            request.error = f"Failed to dispatch validation: {message}"[:config.ERROR_TEXT_LIMIT]
            try:
                return orchestrator.transition(
                    request, S.FAILED, SYSTEM_ACTOR_ID, AuditAction.FAIL,
                    {"source": "dispatch", "message": message[:200]})
            except InvalidTransition:
                store.take_ciphertext(request.id)
                return orchestrator.get_request(request.id)

        store.append_audit(AuditEntry(
            request_id=request.id, server_id=request.server_id, actor=SYSTEM_ACTOR_ID,
            action=AuditAction.DISPATCH, metadata={"message": message[:200]},
        ))
        return orchestrator.get_request(request.id)


class ValidationOrchestrator:
    def __init__(self, store, runner, vault=None, trigger=None,
                 timeout: float = config.HANDSHAKE_TIMEOUT):
        self.store = store
        self.runner = runner
        self.vault = vault
        self.trigger = trigger
        self.timeout = timeout
        self._lock = threading.RLock()

    # -- helpers ---------------------------------------------------------

    def _get(self, request_id: str) -> ValidationRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def get_request(self, request_id: str) -> ValidationRequest:
        return self._get(request_id)

    def _server(self, server_id: str):
        server = self.store.get_server(server_id)
        if server is None:
            raise ServerNotFound(server_id)
        return server

    def transition(self, request: ValidationRequest, target: ValidationStatus, actor,
                   action: AuditAction, metadata: dict | None = None) -> ValidationRequest:
        """Move request to target, persist it and write the audit entry.

        Compare-and-set against the stored status, so a concurrent
        transition makes this one fail with InvalidTransition.
        """
        with self._lock:
            stored = self._get(request.id)
            current = stored.status
            if current != request.status or target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(request.id, current.value, target.value)

            request.status = target
            now = utc_now()
            if target == S.VALIDATING:
                request.started_at = now
            if target.is_terminal:
                request.completed_at = now
                request.encrypted_credentials = None
            if not self.store.save_request(request, expected_status=current):
                request.status = current
                raise InvalidTransition(request.id, current.value, target.value)
            self.store.append_audit(AuditEntry(
                request_id=request.id,
                server_id=request.server_id,
                actor=_actor_id(actor),
                action=action,
                metadata={"from": current.value, "to": target.value, **(metadata or {})},
            ))
        logger.info("request %s: %s -> %s", request.id, current.value, target.value)
        return request

    def choose_mode(self) -> ExecutionMode:
        if self.runner.probe():
            return LocalExecution(self.runner.isolated, self.timeout)
        if self.vault is None or self.trigger is None:
            raise ConfigError("No isolated sandbox available and no remote executor configured")
        return RemoteExecution(self.vault, self.trigger)

    # -- operations ------------------------------------------------------

    def create_request(self, server_id: str, requester, run_command: str | None = None) -> ValidationRequest:
        """Open a request, or return the requester's already active one."""
        requester_id = _actor_id(requester)
        server = self._server(server_id)

        with self._lock:
            existing = self.store.find_active_request(server_id, requester_id)
            if existing is not None:
                logger.debug("request %s already active for %s", existing.id, requester_id)
                return existing

            if run_command:
                check_run_command(run_command, server.npm_package, server.pypi_package)
            command = run_command or server.install_command

            request = ValidationRequest(
                id=new_id(),
                server_id=server_id,
                requested_by=requester_id,
                install_command=command,
                is_owner=bool(server.github_owner) and requester_id.lower() == server.github_owner.lower(),
            )
            try:
                self.store.insert_request(request)
            except DuplicateRequest:
                # another process opened one since the lookup above
                return self.store.find_active_request(server_id, requester_id)
            self.store.append_audit(AuditEntry(
                request_id=request.id, server_id=server_id, actor=requester_id,
                action=AuditAction.SUBMIT,
                metadata={"is_owner": request.is_owner, "custom_command": bool(run_command)},
            ))

        if not command:
            request.error = "No run command available for this server"
            self.transition(request, S.SKIPPED, SYSTEM_ACTOR_ID, AuditAction.SKIP,
                            {"reason": "no_run_command"})
        return request

    def supply_secrets(self, request_id: str, requester, secrets: dict | None) -> ValidationRequest:
        """Attach secrets to a pending request and start the attempt.

        The secrets dict is wiped before this returns, on every path.
        """
        with secret_scope(secrets) as held:
            request = self._get(request_id)
            if request.requested_by != _actor_id(requester):
                raise PermissionDenied("Only the requester may supply secrets")
            if request.status != S.PENDING:
                raise InvalidTransition(request.id, request.status.value, S.VALIDATING.value)

            check_secrets(held)
            server = self._server(request.server_id)
            mode = self.choose_mode()

            request.attempts += 1
            self.transition(request, S.VALIDATING, requester, AuditAction.VALIDATE,
                            {"has_credentials": bool(held), "credential_count": len(held),
                             "mode": mode.name})

            try:
                check_run_command(request.install_command, server.npm_package, server.pypi_package)
            except CommandRejected as e:
                return self.report_result(
                    request.id, ValidationResult.failure(FailureReason.SECURITY_REJECTED, str(e)),
                    source="security")

            return mode.execute(self, request, held)

    def report_result(self, request_id: str, result: ValidationResult,
                      source: str = "worker", actor=SYSTEM_ACTOR_ID) -> ValidationRequest:
        """Record the outcome of an attempt (local run or worker callback)."""
        request = self._get(request_id)
        if request.status == S.CANCELLED:
            logger.info("request %s was cancelled; discarding %s result", request_id, source)
            self.store.take_ciphertext(request_id)
            return request
        if request.status != S.VALIDATING:
            target = S.COMPLETED if result.success else S.FAILED
            raise InvalidTransition(request_id, request.status.value, target.value)

        request.result = result.to_dict()
        request.error = (result.error or "")[:config.ERROR_TEXT_LIMIT] or None
        target = S.COMPLETED if result.success else S.FAILED
        action = AuditAction.COMPLETE if result.success else AuditAction.FAIL
        self.transition(request, target, actor, action, {
            "source": source,
            "success": result.success,
            "backend": result.backend,
            "isolated": result.isolated,
            "failure_reason": result.failure_reason.value if result.failure_reason else None,
            "tool_count": len(result.tools),
            "duration_ms": result.duration_ms,
        })
        apply_result_to_server(self.store, request.server_id, result)
        return request

    def cancel(self, request_id: str, requester) -> ValidationRequest:
        request = self._get(request_id)
        if request.requested_by != _actor_id(requester):
            raise PermissionDenied("Only the requester may cancel")
        previous = request.status
        self.transition(request, S.CANCELLED, requester, AuditAction.CANCEL,
                        {"previous_status": previous.value})
        self.store.take_ciphertext(request_id)
        return request

    def review(self, request_id: str, reviewer: Actor, action: str,
               result: ValidationResult | None = None, error: str | None = None) -> ValidationRequest:
        """Reviewer override: approve, reject, or complete with an explicit result."""
        if not isinstance(reviewer, Actor) or not reviewer.is_reviewer:
            raise PermissionDenied("Reviewer role required")
        if action not in REVIEW_ACTIONS:
            raise ValueError(f"Unknown review action {action!r}")

        request = self._get(request_id)
        request.reviewed_by = reviewer.id
        request.reviewed_at = utc_now()

        if action == "approve":
            return self.transition(request, S.COMPLETED, reviewer, AuditAction.APPROVE)
        if action == "reject":
            request.error = (error or "Rejected by reviewer")[:config.ERROR_TEXT_LIMIT]
            return self.transition(request, S.FAILED, reviewer, AuditAction.REJECT)

        if result is None:
            raise ValueError("complete requires a result")
        request.result = result.to_dict()
        request.error = (result.error or error or "")[:config.ERROR_TEXT_LIMIT] or None
        target = S.COMPLETED if result.success else S.FAILED
        self.transition(request, target, reviewer,
                        AuditAction.COMPLETE if result.success else AuditAction.FAIL,
                        {"source": "review"})
        apply_result_to_server(self.store, request.server_id, result)
        return request

    def queue_revalidation(self, server_id: str, reason: str = "version_changed",
                           details: dict | None = None) -> ValidationRequest:
        """System-requested fresh pending request, e.g. after a version bump."""
        server = self._server(server_id)
        with self._lock:
            existing = self.store.find_active_request(server_id, SYSTEM_ACTOR_ID)
            if existing is not None:
                return existing
            request = ValidationRequest(
                id=new_id(), server_id=server_id, requested_by=SYSTEM_ACTOR_ID,
                install_command=server.install_command,
            )
            try:
                self.store.insert_request(request)
            except DuplicateRequest:
                return self.store.find_active_request(server_id, SYSTEM_ACTOR_ID)
            self.store.append_audit(AuditEntry(
                request_id=request.id, server_id=server_id, actor=SYSTEM_ACTOR_ID,
                action=AuditAction.REVALIDATE, metadata={"reason": reason, **(details or {})},
            ))
        return request
