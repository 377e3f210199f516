"""Smart Worker command line interface."""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from smart_worker.config import SmartWorkerConfig
from smart_worker.errors import StorageError
from smart_worker.logging import LogContext, configure_from_env
from smart_worker.models.job import FailedJob

app = typer.Typer(
    help="Self-healing job worker: repair failed jobs and manage failure memory.",
    no_args_is_help=True,
)


@app.callback()
def main() -> None:
    """Configure logging from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    configure_from_env()


@app.command()
def reason(
    job_file: Path = typer.Argument(..., help="Failed job as a JSON document"),
    as_json: bool = typer.Option(False, "--json", help="Print the outcome as JSON"),
) -> None:
    """Run the repair pipeline on one failed job."""
    from smart_worker.reasoning.pipeline import RepairPipeline

    console = Console()
    try:
        payload = json.loads(job_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]Could not read job file: {e}[/red]")
        raise typer.Exit(code=2)

    job = FailedJob.from_dict(payload)
    config = SmartWorkerConfig.from_env()
    pipeline = RepairPipeline.from_config(config)

    with LogContext(job_id=job.id, job_name=job.name):
        outcome = asyncio.run(pipeline.run(job))

    if as_json:
        console.print_json(json.dumps(outcome.to_dict()))
    else:
        color = "green" if outcome.verified else "red"
        console.print(f"Job {job.id}: [{color}]{outcome.status.value}[/{color}]")
        if outcome.precedent_id is not None:
            console.print(f"  Precedent: record {outcome.precedent_id}")
        if outcome.signature_match:
            console.print("  Near-duplicate error signature in memory")
        for change in outcome.changes:
            console.print(f"  Changed: {change.path}")
        if outcome.summary:
            console.print(f"  Summary: {outcome.summary}")
        if outcome.detail:
            console.print(f"  Detail: {outcome.detail}")

    if not outcome.verified:
        raise typer.Exit(code=1)


@app.command()
def sweep() -> None:
    """Stop sandbox containers left behind by earlier runs."""
    from smart_worker.sandbox.runtime import DockerRuntime, sweep_stale_sandboxes

    console = Console()
    config = SmartWorkerConfig.from_env()
    runtime = DockerRuntime()
    if not runtime.is_available():
        console.print("[red]Docker is not available.[/red]")
        raise typer.Exit(code=1)

    stopped = sweep_stale_sandboxes(
        runtime, [config.sandbox.container_prefix, config.sandbox.sidecar_prefix]
    )
    console.print(f"Removed {stopped} sandbox container(s).")


@app.command("memory-stats")
def memory_stats(
    limit: int = typer.Option(10, "--limit", "-n", help="Recent records to list"),
) -> None:
    """Show failure memory size and the most recent episodes."""
    from smart_worker.memory.store import FailureMemoryStore

    console = Console()
    store = FailureMemoryStore(SmartWorkerConfig.from_env().memory)

    console.print(
        f"Records: {store.count_records()} "
        f"([green]{store.count_records(resolved=True)} resolved[/green]), "
        f"chunks: {store.count_chunks()}"
    )

    records = store.list_records(limit=limit)
    if not records:
        console.print("[yellow]No episodes stored yet.[/yellow]")
        return

    table = Table(title="Recent episodes")
    table.add_column("ID", justify="right")
    table.add_column("Queue")
    table.add_column("Job")
    table.add_column("Failed at")
    table.add_column("Resolved")
    table.add_column("Summary", overflow="fold")
    for record in records:
        table.add_row(
            str(record.id),
            record.queue_name,
            f"{record.job_name} ({record.job_id})",
            record.timestamp_failed or "",
            "yes" if record.resolved else "no",
            (record.resolution_summary or "")[:80],
        )
    console.print(table)


@app.command()
def forget(record_id: int = typer.Argument(..., help="Record to delete")) -> None:
    """Delete a stored episode and all of its embedding chunks."""
    from smart_worker.memory.store import FailureMemoryStore

    console = Console()
    store = FailureMemoryStore(SmartWorkerConfig.from_env().memory)
    try:
        deleted = store.delete_record(record_id)
    except StorageError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if not deleted:
        console.print(f"[yellow]Record {record_id} not found.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]Record {record_id} deleted.[/green]")


@app.command("check-config")
def check_config() -> None:
    """Validate configuration from the environment."""
    console = Console()
    config = SmartWorkerConfig.from_env()

    table = Table(title="Smart Worker configuration")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("APP_ROOT_DIR", config.root_dir or "[red]unset[/red]")
    table.add_row("EXECUTION_CONTEXT", config.execution_context)
    table.add_row("AI_SERVICE_URL", config.llm.service_url)
    table.add_row("AI_MODEL_NAME", config.llm.model)
    table.add_row("AI_EMBEDDING_URL", config.embedding.url)
    table.add_row("AI_EMBEDDING_MODEL", config.embedding.model)
    table.add_row("Memory DB", config.memory.db_path)
    table.add_row("Distance metric", config.memory.distance_metric)
    table.add_row("Sandbox image", config.sandbox.image_tag)
    table.add_row("SMTP", "configured" if config.smtp.is_configured else "disabled")
    console.print(table)

    errors = config.validate()
    if errors:
        for error in errors:
            console.print(f"[red]- {error}[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Configuration OK[/green]")


if __name__ == "__main__":
    app()
