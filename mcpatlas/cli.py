"""Click CLI entry point for mcpatlas."""
from __future__ import annotations

import functools
import json
import logging
import os
import sys

import click

from mcpatlas import __version__
from mcpatlas.config import load_settings
from mcpatlas.dispatch import GitHubDispatchTrigger, run_worker
from mcpatlas.errors import ConfigError, MCPAtlasError
from mcpatlas.models import Actor, ConformanceStatus, SourceType, ValidationStatus
from mcpatlas.orchestrator import ValidationOrchestrator
from mcpatlas.output.terminal import (
    console,
    render_request,
    render_requests,
    render_sync_result,
    render_validation_counts,
    render_validation_result,
)
from mcpatlas.sources import get_source
from mcpatlas.store import CatalogStore
from mcpatlas.sync import GitHubRepoClient, SyncOptions, SyncRunner, validate_pending
from mcpatlas.validation.sandbox import DockerBackend, SandboxRunner
from mcpatlas.validation.security import check_run_command
from mcpatlas.vault import CredentialVault

logger = logging.getLogger(__name__)

SOURCE_CHOICES = [s.value for s in SourceType]


class AppContext:
    """Settings and lazily opened resources shared by every command."""

    def __init__(self, settings):
        self.settings = settings
        self._store = None

    @property
    def store(self) -> CatalogStore:
        if self._store is None:
            self._store = CatalogStore(self.settings.db_path)
        return self._store

    def runner(self, allow_direct: bool = True) -> SandboxRunner:
        return SandboxRunner(DockerBackend(self.settings.docker_image), allow_direct=allow_direct)

    def vault(self) -> CredentialVault | None:
        if not self.settings.encryption_key:
            return None
        return CredentialVault(self.settings.encryption_key)

    def trigger(self) -> GitHubDispatchTrigger | None:
        if not (self.settings.dispatch_repo and self.settings.github_token):
            return None
        return GitHubDispatchTrigger(self.settings)

    def orchestrator(self) -> ValidationOrchestrator:
        return ValidationOrchestrator(self.store, self.runner(), vault=self.vault(), trigger=self.trigger())

    def find_server(self, ref: str):
        server = (self.store.get_server(ref) or self.store.get_server_by_slug(ref)
                  or self.store.get_server_by_url(ref))
        if server is None:
            raise click.BadParameter(f"no server with id, slug or URL {ref!r}")
        return server


def handle_errors(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except MCPAtlasError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="mcpatlas")
@click.option("--verbose", is_flag=True, help="Debug logging")
@click.option("--db", "db_path", type=click.Path(), default=None,
              help="Catalog database (default: $MCPATLAS_DB or data/catalog.db)")
@click.pass_context
def cli(ctx, verbose: bool, db_path: str | None) -> None:
    """mcpatlas - discover, reconcile and verify MCP servers."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s: %(message)s",
    )
    env = dict(os.environ)
    if db_path:
        env["MCPATLAS_DB"] = db_path
    try:
        settings = load_settings(env)
    except ConfigError as e:
        raise click.UsageError(str(e))
    ctx.obj = AppContext(settings)


@cli.command()
@click.option("--source", "sources", multiple=True, type=click.Choice(SOURCE_CHOICES),
              help="Source to fetch (repeatable, default: all)")
@click.option("--force", "force_refresh", is_flag=True, help="Reprocess servers already in the catalog")
@click.option("--limit", type=int, default=None, help="Max servers per source")
@click.option("--concurrency", type=int, default=None, help="Enrichment workers")
@click.option("--validate-new", is_flag=True, help="Run the handshake against new servers")
@click.option("--json-output", "--json", "json_output", is_flag=True, help="JSON summary to stdout")
@click.pass_obj
@handle_errors
def sync(app: AppContext, sources, force_refresh: bool, limit: int | None,
         concurrency: int | None, validate_new: bool, json_output: bool) -> None:
    """Fetch every source, merge, and update the catalog."""
    selected = [SourceType(s) for s in sources] or list(SourceType)
    adapters = [get_source(s, app.settings) for s in selected]
    runner = SyncRunner(
        app.store,
        adapters,
        github=GitHubRepoClient(app.settings),
        validator=app.runner() if validate_new else None,
        orchestrator=app.orchestrator(),
    )
    result = runner.run(SyncOptions(
        sources=selected,
        force_refresh=force_refresh,
        concurrency=concurrency or app.settings.concurrency,
        limit=limit,
        validate_new=validate_new,
    ))
    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        render_sync_result(result)


@cli.command("validate-servers")
@click.option("--limit", type=int, default=None)
@click.option("--concurrency", type=int, default=3)
@click.option("--retry-failed", is_flag=True, help="Also retry servers that failed before")
@click.pass_obj
@handle_errors
def validate_servers(app: AppContext, limit: int | None, concurrency: int, retry_failed: bool) -> None:
    """Validate catalog entries with unknown conformance."""
    statuses = [ConformanceStatus.PENDING]
    if retry_failed:
        statuses.append(ConformanceStatus.FAILED)
    counts = validate_pending(app.store, app.runner(), github=GitHubRepoClient(app.settings),
                              concurrency=concurrency, limit=limit, statuses=statuses)
    render_validation_counts(counts)


@cli.command()
@click.argument("command")
@click.option("--timeout", type=float, default=45.0, help="Handshake timeout in seconds")
@click.option("--json-output", "--json", "json_output", is_flag=True)
@click.pass_obj
@handle_errors
def check(app: AppContext, command: str, timeout: float, json_output: bool) -> None:
    """Run the handshake against COMMAND (e.g. "npx -y @scope/server")."""
    check_run_command(command)
    result = app.runner().run(command, {}, timeout)
    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        render_validation_result(result, command)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.pass_obj
def probe(app: AppContext) -> None:
    """Report whether the isolated sandbox is available."""
    if app.runner().probe():
        console.print("[green]docker available[/green]: validations run synchronously")
    else:
        console.print("[yellow]docker unavailable[/yellow]: validations are dispatched")


@cli.group()
def request() -> None:
    """Manage validation requests."""


@request.command("create")
@click.argument("server")
@click.option("--as", "user", required=True, help="Requesting user id")
@click.option("--command", "run_command", default=None, help="Custom run command")
@click.pass_obj
@handle_errors
def request_create(app: AppContext, server: str, user: str, run_command: str | None) -> None:
    """Open a validation request for SERVER (id, slug or URL)."""
    target = app.find_server(server)
    req = app.orchestrator().create_request(target.id, Actor(user), run_command)
    render_request(req)


@request.command("secrets")
@click.argument("request_id")
@click.option("--as", "user", required=True, help="Requesting user id")
@click.option("--env", "names", multiple=True, help="Secret name; the value is prompted for")
@click.pass_obj
@handle_errors
def request_secrets(app: AppContext, request_id: str, user: str, names) -> None:
    """Supply secrets for REQUEST_ID and start validation."""
    secrets = {name: click.prompt(name, hide_input=True) for name in names}
    req = app.orchestrator().supply_secrets(request_id, Actor(user), secrets)
    render_request(req)


@request.command("cancel")
@click.argument("request_id")
@click.option("--as", "user", required=True)
@click.pass_obj
@handle_errors
def request_cancel(app: AppContext, request_id: str, user: str) -> None:
    req = app.orchestrator().cancel(request_id, Actor(user))
    render_request(req)


@request.command("review")
@click.argument("request_id")
@click.option("--as", "reviewer", required=True, help="Reviewer id")
@click.option("--action", type=click.Choice(["approve", "reject"]), required=True)
@click.option("--reason", default=None, help="Rejection reason")
@click.pass_obj
@handle_errors
def request_review(app: AppContext, request_id: str, reviewer: str, action: str, reason: str | None) -> None:
    """Approve or reject REQUEST_ID as a reviewer."""
    req = app.orchestrator().review(request_id, Actor(reviewer, is_reviewer=True), action, error=reason)
    render_request(req)


@request.command("show")
@click.argument("request_id")
@click.pass_obj
@handle_errors
def request_show(app: AppContext, request_id: str) -> None:
    req = app.store.get_request(request_id)
    if req is None:
        raise click.BadParameter(f"no request {request_id}")
    render_request(req, app.store.audit_for(request_id))


@request.command("list")
@click.option("--status", type=click.Choice([s.value for s in ValidationStatus]), default=None)
@click.option("--limit", type=int, default=50)
@click.pass_obj
def request_list(app: AppContext, status: str | None, limit: int) -> None:
    render_requests(app.store.list_requests(ValidationStatus(status) if status else None, limit))


@cli.command()
@click.argument("request_id", envvar="VALIDATION_ID")
@click.pass_obj
@handle_errors
def worker(app: AppContext, request_id: str) -> None:
    """Execute a dispatched validation (run by the external executor)."""
    vault = CredentialVault.from_settings(app.settings)
    orchestrator = ValidationOrchestrator(app.store, app.runner(allow_direct=False), vault=vault)
    req = run_worker(request_id, orchestrator, vault)
    render_request(req)
    if req.status != ValidationStatus.COMPLETED:
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
