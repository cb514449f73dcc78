"""Typer CLI for the ingest sink."""

from __future__ import annotations

from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from ingest_sink.config.loader import load_task_config
from ingest_sink.config.models import SinkTaskConfig
from ingest_sink.log import configure_logging
from ingest_sink.naming import client_name, table_name

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="ingest-sink", help="Streaming ingestion sink CLI")


def _load(config_path: str) -> SinkTaskConfig:
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    return load_task_config(path)


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to task YAML"),
) -> None:
    """Validate a task configuration file and show the resolved routing."""
    try:
        config = _load(config_path)
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc

    ingestion = config.ingestion
    console.print(
        f"[green]Valid[/green]: client={client_name(ingestion.connector_name, ingestion.task_id)}"
    )
    console.print(f"  destination: {ingestion.database}.{ingestion.schema_name}")
    console.print(f"  backend:     {ingestion.backend}")
    console.print(f"  kafka:       {config.kafka.bootstrap_servers}")

    table = Table(title="Topic routing")
    table.add_column("Topic", style="cyan")
    table.add_column("Table")
    for topic in config.kafka.topics:
        table.add_row(topic, table_name(topic, ingestion.topic_to_table))
    console.print(table)

    buf = ingestion.buffer
    console.print(
        f"  buffer: {buf.size_bytes} bytes / {buf.count_records} records / "
        f"{buf.flush_time_seconds}s"
    )


@app.command()
def run(
    config_path: str = typer.Argument(..., help="Path to task YAML"),
) -> None:
    """Run a sink task (Kafka → ingestion channels) until interrupted."""
    config = _load(config_path)
    configure_logging(config.log_level, json_output=config.log_json)

    from ingest_sink.task.runner import SinkTask

    console.print(
        f"[yellow]Starting sink task:[/yellow] "
        f"{config.ingestion.connector_name}/{config.ingestion.task_id}"
    )
    task = SinkTask(config)
    try:
        task.start()
    except KeyboardInterrupt:
        task.stop()


if __name__ == "__main__":
    app()
