"""Operator CLI for connectors, probes and sync runs."""
import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import uvicorn
from pydantic import BaseModel, Field

from esg_sync.exceptions import EsgSyncError
from esg_sync.schemas.connector import ConnectorCreate, ConnectorView
from esg_sync.schemas.results import ProbeResult, RunState, RunSummary
from esg_sync.sync.service import SyncService
from esg_sync.utils.config import get_settings, load_yaml_config, validate_config


class ConnectorFile(BaseModel):
    """YAML document listing connectors to register."""

    version: int = 1
    connectors: list[ConnectorCreate] = Field(default_factory=list)


def _service(ctx: click.Context) -> SyncService:
    if ctx.obj is None:
        ctx.obj = SyncService()
    return ctx.obj


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def print_connector(connector: ConnectorView) -> None:
    """Print one connector as a single line."""
    click.echo(
        f"  [{connector.id}] {connector.name} ({connector.connector_type.value}) "
        f"{connector.status.value} {connector.endpoint_base_url} "
        f"rate={connector.rate_limit_per_minute}/min retries={connector.max_retry_attempts}"
    )


def print_probe(result: ProbeResult) -> None:
    status_icon = "✅" if result.success else "❌"
    click.echo(f"{status_icon} {result.message}")
    click.echo(f"  Correlation ID: {result.correlation_id}")
    click.echo(f"  Duration:       {result.duration_ms if result.duration_ms is not None else '-'} ms")
    if result.error_details:
        click.echo("  Details:")
        for key, value in result.error_details.items():
            click.echo(f"    {key}: {value}")


def print_run_summary(summary: RunSummary) -> None:
    """Print formatted summary of a sync run."""
    click.echo("\n" + "=" * 70)
    click.echo(f"SYNC RUN {summary.state.value.upper()}")
    click.echo("=" * 70)
    click.echo(f"  Connector:        {summary.connector_id}")
    click.echo(f"  Correlation ID:   {summary.correlation_id}")
    click.echo(f"  Initiated by:     {summary.initiated_by}")
    click.echo(f"  Scheduled:        {summary.is_scheduled}")
    click.echo(f"  Records fetched:  {summary.total_records}")
    click.echo("-" * 70)
    for name, value in summary.counts().items():
        if name != "total":
            click.echo(f"  {name.replace('_', ' ').title():<22}{value}")
    click.echo("-" * 70)
    click.echo(f"  {summary.message}")
    click.echo("=" * 70 + "\n")


@click.group()
def cli() -> None:
    """Manage ESG source connectors and run synchronizations."""


@cli.command("load-connectors")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--user", required=True, help="User recorded as the connectors' creator")
@click.pass_context
def load_connectors(ctx: click.Context, config_path: str, user: str) -> None:
    """
    Register connectors defined in a YAML file.

    Example file:

        connectors:
          - name: Workday HR
            connector_type: hr
            endpoint_base_url: https://hr.example.com/api
            auth_secret_ref: env:WORKDAY_TOKEN
    """
    try:
        document = validate_config(load_yaml_config(Path(config_path)), ConnectorFile)
        service = _service(ctx)
        for definition in document.connectors:
            print_connector(service.registry.create(definition, user))
    except EsgSyncError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("list")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_connectors(ctx: click.Context, output_json: bool) -> None:
    """List registered connectors."""
    connectors = _service(ctx).registry.list()
    if output_json:
        _echo_json([connector.model_dump(mode="json") for connector in connectors])
        return
    if not connectors:
        click.echo("No connectors registered.")
    for connector in connectors:
        print_connector(connector)


@cli.command()
@click.argument("connector_id", type=int)
@click.option("--user", required=True)
@click.pass_context
def enable(ctx: click.Context, connector_id: int, user: str) -> None:
    """Enable a connector."""
    try:
        print_connector(_service(ctx).registry.enable(connector_id, user))
    except EsgSyncError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("connector_id", type=int)
@click.option("--user", required=True)
@click.pass_context
def disable(ctx: click.Context, connector_id: int, user: str) -> None:
    """Disable a connector (a run in progress finishes)."""
    try:
        print_connector(_service(ctx).registry.disable(connector_id, user))
    except EsgSyncError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("connector_id", type=int)
@click.option("--user", required=True)
@click.option("--json", "output_json", is_flag=True, help="Output result as JSON")
@click.pass_context
def probe(ctx: click.Context, connector_id: int, user: str, output_json: bool) -> None:
    """Test a connector's connectivity, credentials and permissions."""
    result = asyncio.run(_service(ctx).probe(connector_id, user))
    if output_json:
        _echo_json(result.model_dump(mode="json"))
    else:
        print_probe(result)
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument("connector_id", type=int)
@click.option("--user", default="system", show_default=True)
@click.option("--scheduled", is_flag=True, help="Record the run as scheduled (initiated by system)")
@click.option("--override-by", default=None, help="Approver allowing manual values to be overwritten")
@click.option("--json", "output_json", is_flag=True, help="Output summary as JSON")
@click.pass_context
def sync(
    ctx: click.Context,
    connector_id: int,
    user: str,
    scheduled: bool,
    override_by: str | None,
    output_json: bool,
) -> None:
    """
    Run a sync for a connector and print the run summary.

    Exits with status 1 unless the run succeeded.
    """
    try:
        summary = asyncio.run(
            _service(ctx).execute_sync(
                connector_id,
                user,
                is_scheduled=scheduled,
                approved_override_by=override_by,
            )
        )
    except EsgSyncError as exc:
        raise click.ClickException(str(exc)) from exc

    if output_json:
        _echo_json(summary.model_dump(mode="json"))
    else:
        print_run_summary(summary)
    if not summary.success:
        ctx.exit(1)


@cli.command()
@click.argument("connector_id", type=int)
@click.option(
    "--kind",
    type=click.Choice(["all", "rejected", "conflicts", "overrides"]),
    default="all",
    show_default=True,
)
@click.option("--limit", type=int, default=None)
@click.option("--approved-by", default=None, help="Overrides only: filter by approver")
@click.option("--since", type=click.DateTime(), default=None, help="Overrides only: synced at or after")
@click.option("--until", type=click.DateTime(), default=None, help="Overrides only: synced before")
@click.pass_context
def history(
    ctx: click.Context,
    connector_id: int,
    kind: str,
    limit: int | None,
    approved_by: str | None,
    since: datetime | None,
    until: datetime | None,
) -> None:
    """Show recent sync records for a connector as JSON."""
    service = _service(ctx)
    if kind != "overrides" and (approved_by or since or until):
        raise click.UsageError("--approved-by, --since and --until apply to --kind overrides")
    try:
        if kind == "overrides":
            records = service.get_override_history(
                connector_id, limit, approved_by=approved_by, start=since, end=until
            )
        else:
            query = {
                "all": service.get_sync_history,
                "rejected": service.get_rejected_records,
                "conflicts": service.get_conflicts,
            }[kind]
            records = query(connector_id, limit)
    except EsgSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json([record.model_dump(mode="json") for record in records])


@cli.command()
@click.argument("correlation_id")
@click.pass_context
def logs(ctx: click.Context, correlation_id: str) -> None:
    """Show the integration log of one probe or run as JSON."""
    entries = _service(ctx).get_logs_by_correlation_id(correlation_id)
    if not entries:
        raise click.ClickException(f"No log entries for correlation id {correlation_id}")
    _echo_json([entry.model_dump(mode="json") for entry in entries])


@cli.command()
@click.argument("connector_id", type=int, required=False)
@click.option("--since", type=click.DateTime(), default=None, help="Window start (default: 30 days ago)")
@click.option("--until", type=click.DateTime(), default=None, help="Window end (default: now)")
@click.pass_context
def stats(
    ctx: click.Context,
    connector_id: int | None,
    since: datetime | None,
    until: datetime | None,
) -> None:
    """Show run, record and outbound call statistics as JSON (all connectors if omitted)."""
    try:
        statistics = _service(ctx).get_statistics(connector_id, since, until)
    except EsgSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(statistics.model_dump(mode="json"))


@cli.command()
@click.option("--connector", "connector_id", type=int, default=None)
@click.option("--state", type=click.Choice([state.value for state in RunState]), default=None)
@click.option("--user", "initiated_by", default=None, help="Only runs initiated by this user")
@click.option("--since", type=click.DateTime(), default=None)
@click.option("--until", type=click.DateTime(), default=None)
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--page-size", type=click.IntRange(min=1), default=None)
@click.pass_context
def runs(
    ctx: click.Context,
    connector_id: int | None,
    state: str | None,
    initiated_by: str | None,
    since: datetime | None,
    until: datetime | None,
    page: int,
    page_size: int | None,
) -> None:
    """Search finalized sync runs, newest first, as JSON."""
    try:
        result = _service(ctx).search_runs(
            connector_id=connector_id,
            state=RunState(state) if state else None,
            initiated_by=initiated_by,
            start=since,
            end=until,
            page=page,
            page_size=page_size,
        )
    except EsgSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.model_dump(mode="json"))


@cli.command()
@click.argument("correlation_id")
@click.pass_context
def run(ctx: click.Context, correlation_id: str) -> None:
    """Show one sync run with its records and integration log as JSON."""
    details = _service(ctx).get_run_details(correlation_id)
    if details is None:
        raise click.ClickException(f"No sync run with correlation id {correlation_id}")
    _echo_json(details.model_dump(mode="json"))


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.option("--reload", is_flag=True, help="Restart on code changes (development only)")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the sync API server."""
    settings = get_settings()
    click.echo(f"Starting esg_sync API on http://{host}:{port} ({settings.environment})")
    uvicorn.run(
        "esg_sync.api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    cli()
