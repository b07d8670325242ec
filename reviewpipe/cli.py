import json
import time
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from . import jobs, monitor, pipeline, retry, scheduler, storage
from .alerts import Notifier, load_rules
from .analysis import JsonFileScraper, load_object
from .config import get_config, load_settings, set_config
from .dispatch import InlineDispatcher, ProcessDispatcher, ThreadDispatcher
from .errors import PipelineError
from .metrics import collect_metrics, concurrency_for
from .models import SEVERITIES, TASK_STATES
from .utils import setup_logging

DEFAULT_ANALYZER = "reviewpipe.analysis:KeywordAnalyzer"

app = typer.Typer(help="reviewpipe - batch review analysis with quotas, retries and recovery.")

# Sub-apps so the CLI supports commands like:
#   reviewpipe config set max-retries 3
#   reviewpipe alerts send high "disk almost full"
config_app = typer.Typer(help="Read and write policy settings.")
alerts_app = typer.Typer(help="Alert rules and history.")

app.add_typer(config_app, name="config")
app.add_typer(alerts_app, name="alerts")


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, "--log-level", help="Override $REVIEWPIPE_LOG_LEVEL")):
    setup_logging(log_level)


def _fail(exc: Exception):
    print(f"[red]{exc}[/red]")
    raise typer.Exit(1)


def _dispatcher(mode: str, analyzer: str, workers: int, aggregator: Optional[str] = None, budget: Optional[int] = None):
    agg = load_object(aggregator) if aggregator else None
    if mode == "inline":
        return InlineDispatcher(load_object(analyzer), agg)
    if mode == "threads":
        return ThreadDispatcher(load_object(analyzer), agg, max_workers=workers, budget=budget)
    if mode == "processes":
        return ProcessDispatcher(analyzer, aggregator)
    raise typer.BadParameter(f"unknown dispatch mode {mode!r} (inline, threads, processes)")


MODE = typer.Option("threads", "--mode", "-m", help="inline | threads | processes")
ANALYZER = typer.Option(DEFAULT_ANALYZER, "--analyzer", help="module:attr of the analyzer")
AGGREGATOR = typer.Option(None, "--aggregator", help="module:attr of a custom aggregator")
WORKERS = typer.Option(6, "--workers", "-w", help="Thread pool size")


# -----------------------------
# Intake & analysis
# -----------------------------
@app.command()
def ingest(
    input_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON array of reviews"),
    app_name: str = typer.Option(..., "--app", help="App the reviews are about"),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Reuse an existing collecting job"),
    source: Optional[str] = typer.Option(None, "--source", help="Source for items that do not name one"),
    max_items: Optional[int] = typer.Option(None, "--max-items", help="Read at most this many items"),
):
    """Load scraped reviews from a file into a new job and mark it ready."""
    try:
        if job_id is None or storage.get_job(job_id) is None:
            job_id = jobs.create_job(app_name, job_id).id
        scraper = JsonFileScraper(str(input_file), source)
        kept = pipeline.ingest(job_id, scraper.scrape(app_name, {"max_items": max_items}))
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e.msg}")
    except (PipelineError, ValueError) as e:
        _fail(e)
    print(f"[green]Ingested[/green] {kept} reviews into job [bold]{job_id}[/bold]")


@app.command()
def analyze(
    job_id: str = typer.Argument(..., help="Job in 'ready' status"),
    mode: str = MODE,
    analyzer: str = ANALYZER,
    aggregator: Optional[str] = AGGREGATOR,
    workers: int = WORKERS,
    wait: bool = typer.Option(True, help="Keep reconciling until the job finishes"),
    poll: float = typer.Option(1.0, help="Seconds between passes while waiting"),
):
    """Filter a ready job, create its batch tasks and start dispatching them."""
    dispatcher = _dispatcher(mode, analyzer, workers, aggregator)
    agg = load_object(aggregator) if aggregator else None
    with dispatcher:
        try:
            started = pipeline.start_analysis(job_id, dispatcher)
        except PipelineError as e:
            _fail(e)
        stats = started.stats
        print(
            f"[green]Started[/green] job [bold]{job_id}[/bold]: "
            f"{stats.original.total} reviews -> {stats.final.total} kept, {started.tasks_created} batches"
        )
        while wait and not jobs.get_job(job_id).terminal:
            time.sleep(poll)
            monitor.reconcile(dispatcher, aggregator=agg)
    _print_job(job_id)


@app.command()
def drive(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Only dispatch this job's tasks"),
    budget: Optional[int] = typer.Option(None, "--budget", help="Override the computed concurrency budget"),
    mode: str = MODE,
    analyzer: str = ANALYZER,
    aggregator: Optional[str] = AGGREGATOR,
    workers: int = WORKERS,
):
    """Dispatch ready tasks once, within the concurrency budget."""
    with _dispatcher(mode, analyzer, workers, aggregator, budget) as dispatcher:
        result = scheduler.drive(dispatcher, job_id=job_id, budget=budget)
    print(
        f"budget {result.budget}, in flight {result.in_flight}, eligible {result.eligible}: "
        f"dispatched {len(result.dispatched)}, dispatch failures {len(result.dispatch_failed)}"
    )


@app.command()
def reconcile(
    dispatch: bool = typer.Option(True, help="Also drive waiting tasks"),
    mode: str = MODE,
    analyzer: str = ANALYZER,
    aggregator: Optional[str] = AGGREGATOR,
    workers: int = WORKERS,
):
    """Run a single recovery pass."""
    dispatcher = _dispatcher(mode, analyzer, workers, aggregator) if dispatch else None
    agg = load_object(aggregator) if aggregator else None
    try:
        result = monitor.reconcile(dispatcher, Notifier(), agg)
    finally:
        if dispatcher is not None:
            dispatcher.close()
    t = Table(title="Recovery pass")
    t.add_column("step")
    t.add_column("count")
    for name, value in vars(result).items():
        t.add_row(name, str(value))
    Console().print(t)


@app.command("monitor")
def monitor_cmd(
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between passes (default: monitor_interval)"),
    mode: str = MODE,
    analyzer: str = ANALYZER,
    aggregator: Optional[str] = AGGREGATOR,
    workers: int = WORKERS,
    reset_shutdown: bool = typer.Option(True, help="Set shutdown=false before start"),
):
    """Run the recovery monitor until `reviewpipe stop`."""
    if reset_shutdown:
        set_config("shutdown", "false")
    agg = load_object(aggregator) if aggregator else None
    print("Monitor running. Ctrl+C or `reviewpipe stop` to exit.")
    with _dispatcher(mode, analyzer, workers, aggregator) as dispatcher:
        monitor.run_forever(dispatcher, Notifier(), agg, interval=interval)


@app.command("stop")
def stop():
    """Signal monitors to stop after their current pass."""
    set_config("shutdown", "true")
    print("[yellow]Set shutdown=true. Monitors will exit after the current pass.[/yellow]")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def status():
    """Show task counts, load, and active monitors."""
    console = Console()
    tbl = Table(title="Tasks")
    tbl.add_column("State")
    tbl.add_column("Count")
    counts = storage.counts_by_state()
    for state in TASK_STATES:
        tbl.add_row(state, str(counts.get(state, 0)))
    console.print(tbl)

    settings = load_settings()
    m = collect_metrics(settings)
    mt = Table(title="Load")
    mt.add_column("metric")
    mt.add_column("value")
    mt.add_row("in flight", str(m.in_flight))
    mt.add_row("current load", f"{m.current_load:.0%}")
    mt.add_row("memory (est.)", f"{m.memory_usage:.0%}")
    mt.add_row("error rate", f"{m.error_rate:.1%}")
    mt.add_row("avg processing", f"{m.average_processing_time:.1f}s")
    mt.add_row("budget", str(concurrency_for(m, settings)))
    console.print(mt)

    wt = Table(title="Active Monitors")
    wt.add_column("monitor_id")
    wt.add_column("pid")
    wt.add_column("started_at")
    for w in storage.list_workers():
        wt.add_row(w["id"], str(w["pid"]), w["started_at"])
    console.print(wt)


@app.command("list")
def list_cmd(
    state: Optional[str] = typer.Option(None, "--state", help="Filter by state"),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Filter by job"),
):
    """List tasks, optionally by state or job."""
    if state and state not in TASK_STATES:
        raise typer.BadParameter(f"state must be one of {', '.join(TASK_STATES)}")
    rows = storage.list_tasks(job_id, [state] if state else None)
    t = Table(title=f"Tasks{'' if not state else f' ({state})'}")
    for c in ["id", "job_id", "batch", "source", "items", "state", "retries", "error_class", "not_before", "error"]:
        t.add_column(c)
    for r in rows:
        t.add_row(
            r["id"][:12],
            r["job_id"][:12],
            str(r["batch_index"]),
            r["source"],
            str(len(json.loads(r["payload"]))),
            r["state"],
            f"{r['retry_count']}/{r['max_retries']}",
            r["error_class"] or "",
            r["not_before"] or "",
            (r["error"] or "")[:60],
        )
    Console().print(t)


@app.command("jobs")
def jobs_cmd(status: Optional[str] = typer.Option(None, "--status", help="Filter by status")):
    """List jobs."""
    t = Table(title="Jobs")
    for c in ["id", "app", "status", "tasks", "created_at", "completed_at", "error"]:
        t.add_column(c)
    for r in storage.list_jobs(status):
        counts = storage.counts_by_state(r["id"])
        t.add_row(
            r["id"],
            r["app_name"],
            r["status"],
            " ".join(f"{k}={v}" for k, v in sorted(counts.items())),
            r["created_at"],
            r["completed_at"] or "",
            (r["error"] or "")[:60],
        )
    Console().print(t)


@app.command("show")
def show(job_id: str):
    """Show one job with its filter stats and themes."""
    _print_job(job_id)


def _print_job(job_id: str):
    try:
        summary = pipeline.job_summary(job_id)
    except PipelineError as e:
        _fail(e)
    colour = {"completed": "green", "failed": "red"}.get(summary["status"], "yellow")
    print(f"Job [bold]{job_id}[/bold] ({summary['app_name']}): [{colour}]{summary['status']}[/{colour}]")
    if summary["error"]:
        print(f"  error: {summary['error']}")
    if summary["result"]:
        t = Table(title="Themes")
        t.add_column("title")
        t.add_column("mentions")
        t.add_column("batches")
        for theme in summary["result"].get("themes", []):
            t.add_row(theme["title"], str(theme["mentions"]), str(theme["batches"]))
        Console().print(t)


# -----------------------------
# Retry & cleanup
# -----------------------------
@app.command("retry")
def retry_cmd(
    task_id: Optional[str] = typer.Argument(None, help="Failed task to requeue"),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Requeue failed tasks of this job"),
    error_class: Optional[retry.ErrorClass] = typer.Option(None, "--error-class", help="Only this error class"),
    force: bool = typer.Option(False, "--force", help="Ignore the retry limit"),
):
    """Manually requeue failed tasks of jobs that are still analyzing."""
    if not task_id and not job_id:
        raise typer.BadParameter("Provide a TASK_ID or --job-id.")
    try:
        decisions = retry.retry_failed(task_id, job_id, error_class, force)
    except PipelineError as e:
        _fail(e)
    if not decisions:
        print("[yellow]Nothing to retry.[/yellow]")
        return
    for d in decisions:
        if d.action == retry.REQUEUED:
            print(f"[green]requeued[/green] {d.task_id} (retry {d.retry_count}, in {d.delay:.1f}s)")
        else:
            print(f"[yellow]skipped[/yellow] {d.task_id}: {d.reason}")


@app.command()
def cleanup():
    """Delete terminal tasks of finished jobs past the retention window."""
    print(f"removed {monitor.sweep()} tasks")


# -----------------------------
# Config
# -----------------------------
@config_app.command("set")
def config_set_cmd(key: str = typer.Argument(..., help="Config key"), value: str = typer.Argument(..., help="Value")):
    try:
        set_config(key, value)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    print(f"set {key}={value}")


@config_app.command("get")
def config_get_cmd(key: str = typer.Argument(..., help="Config key")):
    print(get_config(key) or "")


# -----------------------------
# Alerts
# -----------------------------
@alerts_app.command("list")
def alerts_list(limit: int = typer.Option(20, "--limit", help="How many recent alerts")):
    """Show alert rules and the most recent alerts."""
    console = Console()
    rt = Table(title="Rules")
    for c in ["id", "condition", "threshold", "severity", "cooldown", "enabled", "last_triggered"]:
        rt.add_column(c)
    for rule in load_rules():
        rt.add_row(
            rule.id, rule.condition, f"{rule.threshold:g}", rule.severity,
            f"{rule.cooldown:.0f}s", "yes" if rule.enabled else "no",
            rule.last_triggered.isoformat() if rule.last_triggered else "",
        )
    console.print(rt)

    at = Table(title="Recent alerts")
    for c in ["created_at", "rule", "severity", "message"]:
        at.add_column(c)
    for a in storage.list_alerts(limit):
        at.add_row(a["created_at"], a["rule_id"], a["severity"], a["message"])
    console.print(at)


@alerts_app.command("send")
def alerts_send(
    severity: str = typer.Argument(..., help="low | medium | high | critical"),
    message: str = typer.Argument(...),
):
    """Send a manual alert through every channel."""
    if severity not in SEVERITIES:
        raise typer.BadParameter(f"severity must be one of {', '.join(SEVERITIES)}")
    alert = Notifier().send_manual(severity, message)
    print(f"[green]Sent[/green] {alert.id}")


if __name__ == "__main__":
    app()
