import json
import signal
import threading
import uuid
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scanforge.cancellation import CANCEL_CHANNEL
from scanforge.config import config_manager
from scanforge.events import EventSink, InMemoryBroker
from scanforge.jobs import InMemoryJobQueue
from scanforge.logger import enable_console_logging, setup_logger
from scanforge.models import RepositoryScanJob, ScanConfig, TargetScanJob
from scanforge.sandbox import SandboxExecutor
from scanforge.target_pipeline import SCAN_MODES
from scanforge.tools import build_registry
from scanforge.worker import Worker, create_backends, enqueue_repository_scan, enqueue_target_scan

app = typer.Typer(
    name="scanforge",
    help="scanforge: security scan orchestration for repositories and network targets",
    add_completion=False,
)
console = Console()
core_config = config_manager.config.get("core", {})
log_level = core_config.get("log_level", "INFO")
logger = setup_logger(log_level=log_level)

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "cyan",
    "info": "dim",
}


class ConsoleSink(EventSink):
    """Prints scan events as they arrive during a local run."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def send(self, scan_id: str, event: str, payload: Dict[str, Any]) -> None:
        if event == "scanner:start":
            console.print(f"[cyan]>[/cyan] {payload.get('label') or payload.get('scanner')} started")
        elif event == "scanner:complete":
            status = payload.get("status")
            style = "green" if status == "completed" else "yellow" if status == "skipped" else "red"
            console.print(
                f"[{style}]{status}[/{style}] {payload.get('label') or payload.get('scanner')}: "
                f"{payload.get('findingsCount', 0)} findings in {payload.get('duration', 0)}ms"
            )
        elif event == "scan:phase":
            console.print(f"[dim]phase {payload.get('phase')} {payload.get('percent', '')}%[/dim]")
        elif event == "scan:technology":
            console.print(f"[magenta]technology[/magenta] {payload.get('technology')}")
        elif event == "scanner:log" and self.verbose:
            console.print(f"[dim]{payload.get('scanner')}: {payload.get('line')}[/dim]")


def _local_worker() -> Worker:
    config = config_manager.config
    return Worker(config, broker=InMemoryBroker(), queue=InMemoryJobQueue())


def _print_findings(findings, limit: int = 50) -> None:
    if not findings:
        console.print("[green]No findings.[/green]")
        return
    table = Table(title=f"Findings ({len(findings)})")
    table.add_column("Severity")
    table.add_column("Scanner")
    table.add_column("Rule")
    table.add_column("Location")
    for f in findings[:limit]:
        location = f"{f.file_path}:{f.start_line}" if f.start_line else f.file_path
        table.add_row(
            f"[{SEVERITY_STYLES.get(f.severity.value, '')}]{f.severity.value}[/]",
            f.scanner,
            f.rule_id,
            location,
        )
    console.print(table)
    if len(findings) > limit:
        console.print(f"[dim]... {len(findings) - limit} more[/dim]")


def _print_counts(counts: Dict[str, int]) -> None:
    parts = [f"[{SEVERITY_STYLES[k]}]{k}: {counts.get(k, 0)}[/]" for k in SEVERITY_STYLES]
    console.print("  ".join(parts))


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """
    scanforge entry point.
    """
    if ctx.invoked_subcommand is None:
        console.print(Panel("[bold cyan]scanforge[/bold cyan]", subtitle="security scan orchestration", expand=False))
        console.print("Use [bold cyan]--help[/bold cyan] to see available commands.")


@app.command()
def worker():
    """
    Run a worker instance: drains the scan, target-scan and notify queues until interrupted.
    """
    logger.info("Command 'worker' triggered")
    enable_console_logging(log_level)
    instance = Worker(config_manager.config)
    stop = threading.Event()

    def handle_signal(signum, frame):
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    instance.start()
    console.print(f"[green]Worker started[/green] (redis: {config_manager.get('redis.url')})")
    stop.wait()
    console.print("[yellow]Shutting down worker...[/yellow]")
    instance.stop()


@app.command("scan-repo")
def scan_repo(
    clone_url: str = typer.Argument(..., help="Git clone URL"),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch to scan"),
    commit: str = typer.Option("", "--commit", help="Commit SHA to check out"),
    token: Optional[str] = typer.Option(None, "--token", envvar="SCANFORGE_GIT_TOKEN", help="Access token for private repositories"),
    exclude: List[str] = typer.Option([], "--exclude", "-e", help="Path pattern to exclude (repeatable)"),
    target_url: List[str] = typer.Option([], "--target-url", help="Enable DAST against this URL (repeatable)"),
    no_sast: bool = typer.Option(False, "--no-sast", help="Disable SAST scanners"),
    no_sca: bool = typer.Option(False, "--no-sca", help="Disable dependency scanning"),
    no_secrets: bool = typer.Option(False, "--no-secrets", help="Disable secret detection"),
    no_iac: bool = typer.Option(False, "--no-iac", help="Disable IaC scanning"),
    local: bool = typer.Option(False, "--local", help="Run in this process instead of enqueueing"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Stream scanner output"),
):
    """
    Scan a git repository.
    """
    logger.info("Command 'scan-repo' triggered")
    scan_id = uuid.uuid4().hex
    job = RepositoryScanJob(
        scan_id=scan_id,
        tenant_id="local",
        repository_id=clone_url,
        clone_url=clone_url,
        branch=branch,
        commit_sha=commit,
        full_name=clone_url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git"),
        access_token=token,
        config=ScanConfig(
            enable_sast=not no_sast,
            enable_sca=not no_sca,
            enable_secrets=not no_secrets,
            enable_iac=not no_iac,
            enable_dast=bool(target_url),
            exclude_paths=list(exclude),
            target_urls=list(target_url),
        ),
    )

    if not local:
        _, queue = create_backends(config_manager.config)
        enqueued = enqueue_repository_scan(queue, job, config_manager.config)
        console.print(f"[green]Queued repository scan[/green] {enqueued.id}")
        return

    instance = _local_worker()
    instance.gateway.subscribe(scan_id, ConsoleSink(verbose))
    console.print(f"[bold]Scanning[/bold] {clone_url} ({branch}) as {scan_id}")
    try:
        result = instance.repository_pipeline.run(job)
    except Exception as e:
        console.print(f"[red]Scan failed:[/red] {e}")
        raise typer.Exit(code=1)
    finally:
        instance.stop()
    _print_findings(result.findings)
    _print_counts(result.severity_counts)
    console.print(f"Status: [bold]{result.status.value}[/bold] in {result.duration:.1f}s")


@app.command("scan-target")
def scan_target(
    url: str = typer.Argument(..., help="Target base URL"),
    mode: str = typer.Option("standard", "--mode", "-m", help=f"Scan mode: {', '.join(SCAN_MODES)}"),
    preset: str = typer.Option("medium", "--preset", "-r", help="Rate limit preset: low, medium, high"),
    header: List[str] = typer.Option([], "--header", "-H", help="Extra request header 'Name: value' (repeatable)"),
    local: bool = typer.Option(False, "--local", help="Run in this process instead of enqueueing"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Stream scanner output"),
):
    """
    Scan a network target (web application).
    """
    logger.info("Command 'scan-target' triggered")
    if mode not in SCAN_MODES:
        console.print(f"[red]Unknown scan mode '{mode}'. Choose one of: {', '.join(SCAN_MODES)}[/red]")
        raise typer.Exit(code=1)
    headers = {}
    for raw in header:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            console.print(f"[red]Invalid header '{raw}'. Use 'Name: value'.[/red]")
            raise typer.Exit(code=1)
        headers[name.strip()] = value.strip()

    scan_id = uuid.uuid4().hex
    job = TargetScanJob(
        scan_id=scan_id,
        tenant_id="local",
        target_id=url,
        target_url=url,
        target_name=url,
        scan_mode=mode,
        rate_limit_preset=preset,
        headers=headers,
    )

    if not local:
        _, queue = create_backends(config_manager.config)
        enqueued = enqueue_target_scan(queue, job, config_manager.config)
        console.print(f"[green]Queued target scan[/green] {enqueued.id}")
        return

    instance = _local_worker()
    instance.gateway.subscribe(scan_id, ConsoleSink(verbose))
    console.print(f"[bold]Scanning[/bold] {url} ({mode}) as {scan_id}")
    try:
        result = instance.target_pipeline.run(job)
    except Exception as e:
        console.print(f"[red]Scan failed:[/red] {e}")
        raise typer.Exit(code=1)
    finally:
        instance.stop()
    _print_findings(result.findings)
    _print_counts(result.severity_counts)
    console.print(
        f"Status: [bold]{result.status.value}[/bold] in {result.duration:.1f}s, "
        f"{result.crawled_urls} URLs crawled, risk score {result.risk_score}"
    )


@app.command()
def cancel(scan_id: str = typer.Argument(..., help="Scan to cancel")):
    """
    Broadcast a cancellation; the worker that owns the scan stops it.
    """
    logger.info(f"Command 'cancel' triggered for {scan_id}")
    broker, _ = create_backends(config_manager.config)
    try:
        broker.publish(CANCEL_CHANNEL, scan_id)
    finally:
        broker.close()
    console.print(f"[yellow]Cancellation requested for {scan_id}[/yellow]")


@app.command()
def doctor():
    """
    Check which scanner binaries are installed.
    """
    logger.info("Command 'doctor' triggered")
    registry = build_registry(SandboxExecutor(), config_manager.config)
    table = Table(title="Scanners")
    table.add_column("Scanner")
    table.add_column("Label")
    table.add_column("Category")
    table.add_column("Available")
    table.add_column("Version")
    missing = 0
    for name, adapter in sorted(registry.items()):
        available = adapter.is_available()
        if not available:
            missing += 1
        table.add_row(
            name,
            adapter.label,
            adapter.category.value,
            "[green]yes[/green]" if available else "[red]no[/red]",
            adapter.get_version() if available else "-",
        )
    console.print(table)
    if missing:
        console.print(f"[yellow]{missing} scanner(s) unavailable; they will be skipped.[/yellow]")


@app.command()
def config(
    set_value: List[str] = typer.Option([], "--set", "-s", help="Set a dotted key, e.g. queue.concurrency=4 (repeatable)"),
    as_json: bool = typer.Option(False, "--json", help="Print the effective config as JSON"),
):
    """
    View or update configuration settings.
    """
    logger.info("Command 'config' triggered")
    if set_value:
        for item in set_value:
            key, sep, raw = item.partition("=")
            if not sep or not key:
                console.print(f"[red]Invalid setting '{item}'. Use key=value.[/red]")
                raise typer.Exit(code=1)
            value = yaml.safe_load(raw) if raw else None
            config_manager.set(key.strip(), value)
            console.print(f"Set [cyan]{key.strip()}[/cyan] = [green]{value!r}[/green]")
        console.print(f"[bold green]Configuration saved to {config_manager.config_file}[/bold green]")
        return

    if as_json:
        console.print_json(json.dumps(config_manager.config, default=str))
        return
    console.print(Panel("[bold green]Configuration[/bold green]", expand=False))
    console.print(f"Config File: [dim]{config_manager.config_file}[/dim]")
    console.print(yaml.safe_dump(config_manager.config, default_flow_style=False, sort_keys=False))


if __name__ == "__main__":
    app()
