# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for dmarc-report-sender.

Usage:
    dmarc-sender send --delay 5 --batch 1 --timeout 60
    dmarc-sender queue list
    dmarc-sender queue add report.xml --domain example.com --rua mailto:dmarc@example.com
    dmarc-sender queue delete <report-id>
    dmarc-sender policy check "v=DMARC1; p=reject; rua=mailto:dmarc@example.com"

Example:
    $ dmarc-sender --config /etc/dmarc-sender/config.ini send --no-log
    $ dmarc-sender --db /tmp/reports.db queue list
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from dmarc_sender.config_loader import ConfigurationError, SenderConfig, load_config
from dmarc_sender.models import AggregateReport, PolicyError, PublishedPolicy, SigningError
from dmarc_sender.persistence import Persistence
from dmarc_sender.policy import PolicyRecord
from dmarc_sender.prometheus import ReportMetrics
from dmarc_sender.scheduler import build_scheduler

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def configure_logging(verbose: bool, enabled: bool = True) -> None:
    if not enabled:
        logging.disable(logging.CRITICAL)
        return
    level_name = "DEBUG" if verbose else os.getenv("DMARC_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True,
    )


def _config(ctx: click.Context) -> SenderConfig:
    return ctx.obj["config"]


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False),
              help="Path to config.ini (default: $DMARC_CONFIG or ./config.ini).")
@click.option("--db", "db_path", help="Override the report queue database path.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.version_option(package_name="dmarc-report-sender")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None, verbose: bool) -> None:
    """Deliver queued DMARC aggregate reports."""
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        print_error(str(exc))
        sys.exit(1)
    if db_path:
        config.db_path = db_path
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose


# ============================================================================
# send
# ============================================================================

@main.command("send")
@click.option("--delay", type=click.FloatRange(min=0), help="Seconds to pause between batches.")
@click.option("--batch", "batch_size", type=click.IntRange(min=1), help="Reports per batch.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Per-report deadline in seconds.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option("--log/--no-log", default=True, help="Enable or disable logging output.")
@click.option("--metrics-file", type=click.Path(dir_okay=False),
              help="Write Prometheus metrics to this file after the run.")
@click.pass_context
def send(ctx: click.Context, delay: float | None, batch_size: int | None, timeout: float | None,
         verbose: bool, log: bool, metrics_file: str | None) -> None:
    """Deliver every queued report once."""
    config = _config(ctx)
    configure_logging(verbose or ctx.obj["verbose"], enabled=log)
    if delay is not None:
        config.sending.delay = delay
    if batch_size is not None:
        config.sending.batch_size = batch_size
    if timeout is not None:
        config.sending.timeout = timeout

    metrics = ReportMetrics()
    try:
        scheduler = build_scheduler(config, metrics=metrics)
    except SigningError as exc:
        print_error(str(exc))
        sys.exit(1)

    try:
        summary = run_async(scheduler.run_once())
    except Exception as exc:
        print_error(f"Cannot read the report queue: {exc}")
        sys.exit(1)

    if metrics_file:
        Path(metrics_file).write_bytes(metrics.generate_latest())

    if log:
        console.print(
            f"Processed {summary.processed}: "
            f"[green]{summary.delivered} delivered[/green], "
            f"{summary.deleted} deleted, "
            f"[yellow]{summary.deferred} deferred[/yellow], "
            f"[red]{summary.failed} failed[/red]"
        )


# ============================================================================
# queue
# ============================================================================

@main.group("queue", invoke_without_command=True)
@click.pass_context
def queue(ctx: click.Context) -> None:
    """Inspect and edit the report queue."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@queue.command("list")
@click.pass_context
def queue_list(ctx: click.Context) -> None:
    """List queued reports."""
    persistence = Persistence(_config(ctx).db_path)

    async def _list():
        await persistence.init_db()
        return await persistence.list_reports()

    reports = run_async(_list())
    if not reports:
        console.print("[dim]No reports queued.[/dim]")
        return

    table = Table(title="Queued Reports")
    table.add_column("ID", style="cyan")
    table.add_column("Domain")
    table.add_column("RUA")
    table.add_column("Bytes", justify="right")
    table.add_column("Errors", justify="right")

    for r in reports:
        errors = r.get("error_count") or 0
        table.add_row(
            r["id"],
            r["domain"],
            r.get("rua") or "-",
            str(r.get("xml_bytes") or 0),
            f"[red]{errors}[/red]" if errors else "0",
        )

    console.print(table)


@queue.command("add")
@click.argument("xml_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--domain", required=True, help="Policy domain the report is about.")
@click.option("--rua", required=True, help="Aggregate report URIs, comma-separated.")
@click.option("--begin", type=int, help="Start of the reporting window (epoch seconds).")
@click.option("--end", type=int, help="End of the reporting window (epoch seconds).")
@click.option("--id", "report_id", help="Report identifier (default: random).")
@click.pass_context
def queue_add(ctx: click.Context, xml_file: str, domain: str, rua: str,
              begin: int | None, end: int | None, report_id: str | None) -> None:
    """Queue the report in XML_FILE for delivery."""
    now = int(time.time())
    data: dict[str, Any] = {
        "report_id": report_id or uuid.uuid4().hex,
        "domain": domain,
        "policy_published": PublishedPolicy(domain=domain, rua=rua),
        "xml": Path(xml_file).read_text(encoding="utf-8"),
        "begin": begin if begin is not None else now - 86400,
        "end": end if end is not None else now,
    }
    report = AggregateReport(**data)
    persistence = Persistence(_config(ctx).db_path)

    async def _add():
        await persistence.init_db()
        return await persistence.insert_report(report)

    if not run_async(_add()):
        print_error(f"Report '{report.report_id}' is already queued.")
        sys.exit(1)
    print_success(f"Queued report {report.report_id}")


@queue.command("delete")
@click.argument("report_id")
@click.pass_context
def queue_delete(ctx: click.Context, report_id: str) -> None:
    """Remove a report from the queue."""
    persistence = Persistence(_config(ctx).db_path)

    async def _delete():
        await persistence.init_db()
        return await persistence.delete_report(report_id)

    if not run_async(_delete()):
        print_error(f"Report '{report_id}' not found.")
        sys.exit(1)
    print_success(f"Deleted report {report_id}")


# ============================================================================
# policy
# ============================================================================

@main.group("policy", invoke_without_command=True)
@click.pass_context
def policy(ctx: click.Context) -> None:
    """Work with DMARC policy records."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@policy.command("check")
@click.argument("record")
def policy_check(record: str) -> None:
    """Parse RECORD and show its effective values."""
    try:
        parsed = PolicyRecord.parse(record)
    except PolicyError as exc:
        print_error(str(exc))
        sys.exit(1)

    console.print(f"\n[bold cyan]{parsed.as_record()}[/bold cyan]\n")
    console.print(f"  Policy:            {parsed.policy_action.value}")
    console.print(f"  Subdomain policy:  {parsed.subdomain_policy.value}")
    console.print(f"  DKIM alignment:    {parsed.dkim_alignment.value}")
    console.print(f"  SPF alignment:     {parsed.spf_alignment.value}")
    console.print(f"  Percentage:        {parsed.percentage}")
    console.print(f"  Failure options:   {':'.join(sorted(parsed.failure_options))}")
    console.print(f"  Report formats:    {','.join(parsed.report_formats)}")
    console.print(f"  Report interval:   {parsed.report_interval}s")
    console.print(f"  Aggregate URIs:    {parsed.rua or '-'}")
    console.print(f"  Failure URIs:      {parsed.ruf or '-'}")
    console.print()


if __name__ == "__main__":
    main()
