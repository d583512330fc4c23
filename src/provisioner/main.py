"""Command line entry point for the provisioner.

A thin driver over the reconciler: it loads a desired-state document,
builds the Azure client, runs one operation and maps failures to exit codes.
SIGINT/SIGTERM cancel the wait in progress instead of killing the process
mid-request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import click
from azure.identity import DefaultAzureCredential

from .azure_client import AzureResourceClient
from .client import RemoteResourceClient
from .config import Config, ConfigurationError
from .errors import AlreadyExistsError, InvalidIdentityError, ReconcileError
from .kinds import KIND_REGISTRY, REMEDIATION_KIND, get_kind
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, load_document

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[Config], RemoteResourceClient]

# Exit codes
EXIT_FAILED = 1
EXIT_ALREADY_EXISTS = 3
EXIT_NOT_FOUND = 4

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Fields passed via extra={...}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(config: Config) -> None:
    """Configure logging to stderr, JSON formatted unless disabled."""
    handler = logging.StreamHandler(sys.stderr)
    if config.enable_json_logging:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(config.log_level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def default_client_factory(config: Config) -> RemoteResourceClient:
    return AzureResourceClient(DefaultAzureCredential(), config)


async def _with_signal_cancel(action: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run ``action`` with an event that SIGINT/SIGTERM will set."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not available outside the main thread or on some platforms
            pass
    try:
        return await action(cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _reconciler(ctx: click.Context, kind_name: str) -> Reconciler:
    config: Config = ctx.obj["config"]
    factory: ClientFactory = ctx.obj.get("client_factory", default_client_factory)
    try:
        kind = get_kind(kind_name)
        client = factory(config)
    except (ValueError, ConfigurationError) as e:
        raise click.ClickException(str(e)) from e
    return Reconciler(client, kind, config=config)


def _fail(error: ReconcileError) -> click.ClickException:
    exc = click.ClickException(str(error))
    exc.exit_code = EXIT_ALREADY_EXISTS if isinstance(error, AlreadyExistsError) else EXIT_FAILED
    return exc


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Reconcile declared Azure resources through long-running operations."""
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = Config.from_env()
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e
    setup_logging(ctx.obj["config"])


@cli.command()
@click.option(
    "-f", "--file", "path", required=True, type=click.Path(path_type=Path), help="Document."
)
@click.option("--adopt", is_flag=True, help="Take over a resource that already exists.")
@click.option("--timeout", type=float, default=None, help="Overall timeout in seconds.")
@click.pass_context
def create(ctx: click.Context, path: Path, adopt: bool, timeout: float | None) -> None:
    """Create the resource declared in a document and print its ID."""
    try:
        document = load_document(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    reconciler = _reconciler(ctx, document.kind)
    try:
        identity = asyncio.run(
            _with_signal_cancel(
                lambda cancel: reconciler.create(
                    document.spec, adopt=adopt, timeout=timeout, cancel_event=cancel
                )
            )
        )
    except ReconcileError as e:
        raise _fail(e) from e
    click.echo(identity.id_string)


@cli.command()
@click.argument("resource_id")
@click.option(
    "--kind",
    "kind_name",
    default=REMEDIATION_KIND.name,
    type=click.Choice(sorted(KIND_REGISTRY)),
    show_default=True,
)
@click.option(
    "-f",
    "--file",
    "path",
    type=click.Path(path_type=Path),
    default=None,
    help="Also report fields that drifted from this document.",
)
@click.pass_context
def read(ctx: click.Context, resource_id: str, kind_name: str, path: Path | None) -> None:
    """Print the materialized state of a resource as JSON."""
    document = None
    if path is not None:
        try:
            document = load_document(path)
        except SpecLoadError as e:
            raise click.ClickException(str(e)) from e
        kind_name = document.kind

    reconciler = _reconciler(ctx, kind_name)
    try:
        identity, state = asyncio.run(reconciler.import_resource(resource_id))
    except InvalidIdentityError as e:
        raise click.BadParameter(str(e), param_hint="RESOURCE_ID") from e
    except ReconcileError as e:
        exc = _fail(e)
        if e.last_phase == "Absent":
            exc.exit_code = EXIT_NOT_FOUND
        raise exc from e

    output: dict[str, Any] = {"id": identity.id_string, "state": state}
    if document is not None:
        output["drift"] = reconciler.kind.detect_drift(document.spec, state)
        if output["drift"]:
            logger.info(
                "Drift detected",
                extra={"resource_id": identity.id_string, "fields": output["drift"]},
            )
    click.echo(json.dumps(output, indent=2, sort_keys=True))


@cli.command()
@click.argument("resource_id")
@click.option(
    "-f", "--file", "path", required=True, type=click.Path(path_type=Path), help="Document."
)
@click.option("--timeout", type=float, default=None, help="Overall timeout in seconds.")
@click.pass_context
def update(ctx: click.Context, resource_id: str, path: Path, timeout: float | None) -> None:
    """Apply a document to an existing resource."""
    try:
        document = load_document(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    reconciler = _reconciler(ctx, document.kind)
    try:
        identity = reconciler.kind.parse_identity(resource_id)
    except InvalidIdentityError as e:
        raise click.BadParameter(str(e), param_hint="RESOURCE_ID") from e

    try:
        asyncio.run(
            _with_signal_cancel(
                lambda cancel: reconciler.update(
                    identity, document.spec, timeout=timeout, cancel_event=cancel
                )
            )
        )
    except ReconcileError as e:
        raise _fail(e) from e
    click.echo(identity.id_string)


@cli.command()
@click.argument("resource_id")
@click.option(
    "--kind",
    "kind_name",
    default=REMEDIATION_KIND.name,
    type=click.Choice(sorted(KIND_REGISTRY)),
    show_default=True,
)
@click.option("--timeout", type=float, default=None, help="Overall timeout in seconds.")
@click.pass_context
def delete(ctx: click.Context, resource_id: str, kind_name: str, timeout: float | None) -> None:
    """Delete a resource, cancelling it first where required."""
    reconciler = _reconciler(ctx, kind_name)
    try:
        identity = reconciler.kind.parse_identity(resource_id)
    except InvalidIdentityError as e:
        raise click.BadParameter(str(e), param_hint="RESOURCE_ID") from e

    try:
        asyncio.run(
            _with_signal_cancel(
                lambda cancel: reconciler.delete(identity, timeout=timeout, cancel_event=cancel)
            )
        )
    except ReconcileError as e:
        raise _fail(e) from e
    click.echo(f"Deleted {identity.id_string}")


def run() -> None:
    """Entry point for the provisioner CLI."""
    cli(obj={})


if __name__ == "__main__":
    run()
