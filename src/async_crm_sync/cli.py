# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for async-crm-sync.

This module provides a CLI for inspecting submissions, their audit trail
and error statistics, and for managing form configurations directly in the
database without going through the HTTP API.

Usage:
    crm-sync --db /data/crm_sync.db submissions list --status failed
    crm-sync submissions show <submission-id>
    crm-sync audit <submission-id>
    crm-sync stats
    crm-sync forms list
    crm-sync forms add contact --module Leads --lead-source "Website" \\
        --strict --map email=Email --map full_name=Last_Name
    crm-sync serve --host 0.0.0.0 --port 8000

Example:
    $ crm-sync --db ./crm_sync.db stats --json
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any, Tuple

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from async_crm_sync.config_loader import DEFAULT_DB_PATH
from async_crm_sync.logger import configure_logging
from async_crm_sync.models import FormConfiguration, SyncStatus
from async_crm_sync.persistence import Persistence
from async_crm_sync.statistics import compute_error_statistics

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    SyncStatus.PENDING: "yellow",
    SyncStatus.SYNCED: "green",
    SyncStatus.FAILED: "red",
}


def get_persistence(db_path: str) -> Persistence:
    """Create a Persistence instance with the given database path."""
    return Persistence(db_path)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _parse_mappings(values: Tuple[str, ...]) -> dict[str, str]:
    """Turn repeated ``form=crm`` options into a mapping."""
    mappings: dict[str, str] = {}
    for item in values:
        form_field, sep, crm_field = item.partition("=")
        if not sep or not form_field.strip() or not crm_field.strip():
            raise click.BadParameter(f"expected FORM_FIELD=CRM_FIELD, got '{item}'", param_hint="--map")
        mappings[form_field.strip()] = crm_field.strip()
    return mappings


def _persistence(ctx: click.Context) -> Persistence:
    return get_persistence(ctx.obj["db_path"])


@click.group()
@click.option(
    "--db",
    "db_path",
    envvar="CRS_DB_PATH",
    default=DEFAULT_DB_PATH,
    show_default=True,
    help="Path to the SQLite database.",
)
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level.")
@click.version_option(package_name="async-crm-sync")
@click.pass_context
def main(ctx: click.Context, db_path: str, log_level: str) -> None:
    """async-crm-sync CLI - Inspect and operate the CRM submission pipeline."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


# ============================================================================
# SUBMISSIONS commands
# ============================================================================

@main.group("submissions", invoke_without_command=True)
@click.pass_context
def submissions(ctx: click.Context) -> None:
    """Inspect stored submissions."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@submissions.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in SyncStatus]),
    help="Filter by sync status.",
)
@click.option("--form", "form_name", help="Filter by form name.")
@click.option("--limit", type=int, default=50, show_default=True, help="Maximum rows to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def submissions_list(ctx: click.Context, status: str | None, form_name: str | None, limit: int, as_json: bool) -> None:
    """List submissions, oldest first."""
    persistence = _persistence(ctx)

    async def _list():
        await persistence.init_db()
        return await persistence.list_submissions(sync_status=status, form_name=form_name, limit=limit)

    items = run_async(_list())

    if as_json:
        print_json([item.model_dump(mode="json") for item in items])
        return

    if not items:
        console.print("[dim]No submissions found.[/dim]")
        return

    table = Table(title=f"Submissions (showing up to {limit})")
    table.add_column("ID", style="cyan", max_width=32)
    table.add_column("Form")
    table.add_column("Module")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Category")
    table.add_column("Last Error", max_width=40)

    for item in items:
        style = _STATUS_STYLES.get(item.sync_status, "white")
        table.add_row(
            item.id,
            item.form_name,
            item.target_module,
            f"[{style}]{item.sync_status.value}[/{style}]",
            str(item.retry_count),
            item.error_category.value if item.error_category else "-",
            item.last_error or "-",
        )

    console.print(table)


@submissions.command("show")
@click.argument("submission_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def submissions_show(ctx: click.Context, submission_id: str, as_json: bool) -> None:
    """Show details for a specific submission."""
    persistence = _persistence(ctx)

    async def _show():
        await persistence.init_db()
        return await persistence.find(submission_id)

    item = run_async(_show())

    if item is None:
        print_error(f"Submission '{submission_id}' not found.")
        sys.exit(1)

    if as_json:
        print_json(item.model_dump(mode="json"))
        return

    console.print(f"\n[bold cyan]Submission: {item.id}[/bold cyan]\n")
    console.print(f"  Form:            {item.form_name}")
    console.print(f"  Module:          {item.target_module}")
    console.print(f"  Sync Status:     {item.sync_status.value}")
    console.print(f"  Processing:      {item.processing_status.value}")
    console.print(f"  Retry Count:     {item.retry_count}")
    console.print(f"  External ID:     {item.external_id or '-'}")
    console.print(f"  Error Category:  {item.error_category.value if item.error_category else '-'}")
    console.print(f"  Last Error:      {item.last_error or '-'}")
    console.print(f"  Last Retry:      {item.last_retry_at or '-'}")
    console.print(f"  Next Retry:      {item.next_retry_at or '-'}")
    console.print(f"  Last Sync:       {item.last_sync_at or '-'}")
    console.print(f"  Created:         {item.created_at or '-'}")
    console.print(f"  Fields:          {', '.join(item.payload) or '-'}")
    console.print()


# ============================================================================
# AUDIT command
# ============================================================================

@main.command("audit")
@click.argument("submission_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def audit(ctx: click.Context, submission_id: str, as_json: bool) -> None:
    """Show the audit trail of a submission."""
    persistence = _persistence(ctx)

    async def _audit():
        await persistence.init_db()
        return await persistence.list_audit(submission_id)

    entries = run_async(_audit())

    if as_json:
        print_json([entry.model_dump(mode="json") for entry in entries])
        return

    if not entries:
        console.print(f"[dim]No audit entries for '{submission_id}'.[/dim]")
        return

    table = Table(title=f"Audit trail ({submission_id})")
    table.add_column("#", justify="right")
    table.add_column("Operation", style="cyan")
    table.add_column("Status")
    table.add_column("Attempt", justify="right")
    table.add_column("Category")
    table.add_column("Duration", justify="right")
    table.add_column("Error", max_width=40)
    table.add_column("Created")

    for entry in entries:
        table.add_row(
            str(entry.id),
            entry.operation.value,
            entry.status.value,
            str(entry.retry_attempt) if entry.retry_attempt is not None else "-",
            entry.error_classification.value if entry.error_classification else "-",
            f"{entry.duration_ms}ms" if entry.duration_ms is not None else "-",
            entry.error_message or "-",
            str(entry.created_at or "-"),
        )

    console.print(table)


# ============================================================================
# STATS command
# ============================================================================

@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show error statistics over all submissions."""
    persistence = _persistence(ctx)

    async def _stats():
        await persistence.init_db()
        return compute_error_statistics(await persistence.list_submissions())

    data = run_async(_stats())

    if as_json:
        print_json(data.model_dump(mode="json"))
        return

    console.print("\n[bold]Submission statistics[/bold]\n")
    console.print(f"  Submissions:      {data.total_submissions}")
    console.print(f"  With errors:      {data.total_errors}")
    for status, count in sorted(data.by_sync_status.items()):
        console.print(f"    {status + ':':<15} {count}")
    console.print(f"  Retry success:    {data.retry_success_rate}%")
    console.print(f"  Avg. retries:     {data.average_retry_attempts}")
    if data.errors_by_category:
        console.print("  Failures by category:")
        for category, count in sorted(data.errors_by_category.items(), key=lambda kv: (-kv[1], kv[0])):
            console.print(f"    {category + ':':<22} {count}")
    console.print()


# ============================================================================
# FORMS commands
# ============================================================================

@main.group("forms", invoke_without_command=True)
@click.pass_context
def forms(ctx: click.Context) -> None:
    """Manage per-form CRM configuration."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@forms.command("list")
@click.option("--active-only", "-a", is_flag=True, help="Show only active forms.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def forms_list(ctx: click.Context, active_only: bool, as_json: bool) -> None:
    """List form configurations."""
    persistence = _persistence(ctx)

    async def _list():
        await persistence.init_db()
        return await persistence.list_form_configurations(active_only=active_only)

    configs = run_async(_list())

    if as_json:
        print_json([config.model_dump(mode="json") for config in configs])
        return

    if not configs:
        console.print("[dim]No form configurations found.[/dim]")
        return

    table = Table(title="Form configurations")
    table.add_column("Form", style="cyan")
    table.add_column("Module")
    table.add_column("Lead Source")
    table.add_column("Strict", justify="center")
    table.add_column("Active", justify="center")
    table.add_column("Mapped Fields", justify="right")

    for config in configs:
        table.add_row(
            config.form_name,
            config.target_module,
            config.lead_source,
            "[green]✓[/green]" if config.strict_mapping else "-",
            "[green]✓[/green]" if config.active else "[red]✗[/red]",
            str(len(config.submit_fields) + len(config.field_mappings)),
        )

    console.print(table)


@forms.command("add")
@click.argument("form_name")
@click.option("--module", "target_module", default="Leads", show_default=True, help="Target CRM module.")
@click.option("--lead-source", help="Lead source tag (default: 'Form: <name>').")
@click.option("--strict/--no-strict", default=False, show_default=True, help="Drop fields without a mapping.")
@click.option("--map", "mappings", multiple=True, metavar="FORM=CRM", help="Field mapping, repeatable.")
@click.option("--inactive", is_flag=True, help="Store the configuration disabled.")
@click.pass_context
def forms_add(
    ctx: click.Context,
    form_name: str,
    target_module: str,
    lead_source: str | None,
    strict: bool,
    mappings: Tuple[str, ...],
    inactive: bool,
) -> None:
    """Add or replace the configuration of a form."""
    try:
        config = FormConfiguration(
            form_name=form_name,
            target_module=target_module,
            lead_source_tag=lead_source,
            field_mappings=_parse_mappings(mappings),
            strict_mapping=strict,
            active=not inactive,
        )
    except ValidationError as e:
        print_error(f"Invalid form configuration: {e}")
        sys.exit(1)

    persistence = _persistence(ctx)

    async def _add():
        await persistence.init_db()
        await persistence.upsert_form_configuration(config)

    run_async(_add())
    print_success(f"Form '{form_name}' configured for module {target_module}.")


# ============================================================================
# SERVE command
# ============================================================================

@main.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address.")
@click.option("--port", "-p", type=int, default=8000, show_default=True, help="Bind port.")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, reload: bool) -> None:
    """Run the HTTP API and the retry processor with uvicorn."""
    import uvicorn

    os.environ["CRS_DB_PATH"] = ctx.obj["db_path"]
    console.print(f"[bold green]Starting async-crm-sync[/bold green] on http://{host}:{port}")
    console.print(f"  Database: {ctx.obj['db_path']}")
    uvicorn.run(
        "async_crm_sync.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
