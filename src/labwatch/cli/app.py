"""Typer CLI for labwatch service monitoring."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from labwatch.config import LabwatchConfig
from labwatch.core.scheduler import MonitorScheduler
from labwatch.logging_setup import setup_logging
from labwatch.models import AnalyticsReport, ProbeStatus, StatusRecord

app = typer.Typer(
    name="labwatch",
    help="Health monitoring, anomaly detection and alerting for homelab services.",
    no_args_is_help=True,
)
console = Console(stderr=True)

_STATUS_STYLE = {
    ProbeStatus.ONLINE: "green",
    ProbeStatus.OFFLINE: "red",
    ProbeStatus.ERROR: "magenta",
    ProbeStatus.PENDING: "dim",
}


def _config() -> LabwatchConfig:
    return LabwatchConfig.load()


def _scheduler(config: LabwatchConfig) -> MonitorScheduler:
    if not config.services:
        console.print(f"[yellow]No services configured.[/yellow] Add [[services]] to {config.config_path}")
        raise typer.Exit(1)
    return MonitorScheduler.from_config(config)


@app.callback()
def _main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    setup_logging(logging.DEBUG if verbose else logging.WARNING)


def _status_table(statuses: dict[str, StatusRecord], title: str = "Service Status") -> Table:
    table = Table(title=title)
    table.add_column("Service", style="bold")
    table.add_column("Status")
    table.add_column("Response", justify="right")
    table.add_column("Error")

    for service_id, record in statuses.items():
        style = _STATUS_STYLE[record.status]
        table.add_row(
            service_id,
            f"[{style}]{record.status.value}[/{style}]",
            f"{record.response_time_ms:.1f}ms" if record.timestamp else "—",
            record.error or "",
        )
    return table


@app.command()
def services() -> None:
    """List configured services."""
    config = _config()

    if not config.services:
        console.print("[dim]No services configured.[/dim]")
        return

    table = Table(title="Configured Services")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Protocol")
    table.add_column("URL")
    table.add_column("Timeout", justify="right")
    table.add_column("Critical")

    for s in config.services:
        table.add_row(
            s.id,
            s.name,
            s.protocol.value,
            s.url,
            f"{s.timeout_ms}ms",
            "yes" if s.critical else "",
        )
    console.print(table)


@app.command()
def check(
    service: Annotated[Optional[str], typer.Argument(help="Service id (omit for all)")] = None,
) -> None:
    """Run one probe pass, or force a check of a single service."""
    scheduler = _scheduler(_config())

    async def run() -> dict[str, StatusRecord] | None:
        try:
            if service:
                record = await scheduler.force_check_server(service)
                return {service: record} if record else None
            return await scheduler.update_all_server_statuses()
        finally:
            await scheduler.close()

    statuses = asyncio.run(run())
    if statuses is None:
        console.print(f"[red]Service not found:[/red] {service}")
        raise typer.Exit(1)

    console.print(_status_table(statuses))
    if any(r.status is not ProbeStatus.ONLINE for r in statuses.values()):
        raise typer.Exit(2)


@app.command()
def watch(
    interval: Annotated[Optional[float], typer.Option("--interval", "-i", help="Seconds between passes")] = None,
) -> None:
    """Monitor continuously until Ctrl+C."""
    config = _config()
    scheduler = _scheduler(config)
    every = interval or config.monitor.interval_seconds

    async def run() -> None:
        scheduler.start_monitoring(every)
        try:
            while True:
                await asyncio.sleep(every)
                stats = scheduler.get_monitoring_stats()
                console.print(
                    f"[dim]{stats.last_check.isoformat() if stats.last_check else '—'}[/dim] "
                    f"online {stats.online_servers}/{stats.total_servers}  "
                    f"health {stats.system_health.current_health:.0f}% ({stats.system_health.status.value})"
                )
        finally:
            await scheduler.close()

    console.print(f"[dim]Watching {len(config.services)} services... (Ctrl+C to stop)[/dim]")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")


@app.command()
def export(
    format: Annotated[str, typer.Option("--format", "-f", help="json or csv")] = "json",
    timeframe: Annotated[str, typer.Option("--timeframe", "-t", help="e.g. 30m, 24h, 7d")] = "24h",
) -> None:
    """Run one probe pass and export the monitoring data to stdout."""
    if format not in ("json", "csv"):
        console.print(f"[red]Invalid format:[/red] {format}")
        raise typer.Exit(1)

    scheduler = _scheduler(_config())

    async def run() -> dict | str:
        try:
            await scheduler.update_all_server_statuses()
            return scheduler.export_monitoring_data(format, timeframe)
        finally:
            await scheduler.close()

    try:
        data = asyncio.run(run())
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    typer.echo(data if isinstance(data, str) else json.dumps(data, indent=2), nl=False)


@app.command()
def report(
    service: str,
    samples: Annotated[int, typer.Option("--samples", "-n", help="Probe passes to collect")] = 10,
    interval: Annotated[float, typer.Option("--interval", "-i", help="Seconds between passes")] = 1.0,
    timeframe: Annotated[str, typer.Option("--timeframe", "-t", help="Report window")] = "24h",
) -> None:
    """Sample a service several times and print its analytics report."""
    scheduler = _scheduler(_config())
    if service not in {t.id for t in scheduler.targets}:
        console.print(f"[red]Service not found:[/red] {service}")
        raise typer.Exit(1)

    async def run() -> AnalyticsReport:
        try:
            for i in range(samples):
                await scheduler.force_check_server(service)
                if i < samples - 1:
                    await asyncio.sleep(interval)
            analyzer = scheduler.analyzer
            await analyzer.run_analysis()
            return analyzer.generate_report(service, timeframe)
        finally:
            await scheduler.close()

    rpt = asyncio.run(run())
    _print_report(rpt)


def _print_report(rpt: AnalyticsReport) -> None:
    s = rpt.summary
    console.print(f"\n[bold]{rpt.service_id}[/bold] ({rpt.timeframe})")
    console.print(
        f"  Uptime: {s['uptime']}%  Avg response: {s['average_response_time']}ms  "
        f"Checks: {s['total_checks']}  Anomalies: {s['anomaly_count']}"
    )

    if rpt.trends:
        table = Table(title="Trends")
        table.add_column("Metric", style="bold")
        table.add_column("Current", justify="right")
        table.add_column("Average", justify="right")
        table.add_column("Min", justify="right")
        table.add_column("Max", justify="right")
        table.add_column("Trend")
        for metric, t in rpt.trends.items():
            table.add_row(
                metric,
                f"{t['current']:.2f}",
                f"{t['average']:.2f}",
                f"{t['min']:.2f}",
                f"{t['max']:.2f}",
                rpt.trend_analysis.get(metric, ""),
            )
        console.print(table)

    for metric, p in rpt.predictions.items():
        console.print(
            f"  Forecast {metric}: {p.predicted:.2f} in {p.horizon} "
            f"({p.trend.value}, {p.confidence}% confidence)"
        )

    for a in rpt.anomalies:
        style = "red" if a.severity.value == "critical" else "yellow"
        console.print(f"  [{style}]{a.type}[/{style}] {a.value:.2f} (expected {a.expected:.2f})")

    for v in rpt.threshold_violations:
        style = "red" if v.severity.value == "critical" else "yellow"
        console.print(
            f"  [{style}]{v.metric.value} over {v.threshold:g}[/{style}] {v.value:.2f}"
        )

    for r in rpt.recommendations:
        console.print(f"  [bold]{r.priority.upper()}[/bold] {r.title}: {r.action}")


def main() -> None:
    """Entry point for the labwatch CLI."""
    app()


if __name__ == "__main__":
    main()
