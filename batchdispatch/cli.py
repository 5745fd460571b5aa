"""CLI for Batch Dispatch."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from batchdispatch.config import Settings, settings
from batchdispatch.jobs.dispatcher import create_dispatcher
from batchdispatch.jobs.errors import DispatchError
from batchdispatch.jobs.models import CleanupPolicy

app = typer.Typer(
    name="batchdispatch",
    help="Batch Dispatch - run one task per input file on a compute pool",
    no_args_is_help=True,
)


def _configure(overrides: dict) -> Settings:
    """Apply command-line overrides on top of the environment, re-validating."""
    values = settings.model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        config = Settings(**values)
    except ValidationError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(1)
    logging.basicConfig(level=config.log_level.upper(), format="%(message)s")
    return config


@app.command("run")
def run(
    files: Optional[List[Path]] = typer.Argument(
        None, help="Input files (defaults to INPUT_FILES)"
    ),
    mode: Optional[str] = typer.Option(None, help="Dispatch mode: local or azure"),
    pool_id: Optional[str] = typer.Option(None, help="Pool id"),
    job_id: Optional[str] = typer.Option(None, help="Job id"),
    timeout_minutes: Optional[float] = typer.Option(None, help="Completion timeout"),
    cleanup_policy: Optional[CleanupPolicy] = typer.Option(
        None, help="When to delete the job, pool and container"
    ),
):
    """Upload inputs, run one task per file and print each task's output."""
    config = _configure({
        "compute_dispatch_mode": mode,
        "pool_id": pool_id,
        "job_id": job_id,
        "completion_timeout_minutes": timeout_minutes,
        "cleanup_policy": cleanup_policy.value if cleanup_policy else None,
    })
    paths = [str(f) for f in files] if files else list(config.input_files)

    typer.echo(f"Sample start: {datetime.now()}")
    typer.echo()
    try:
        dispatcher = create_dispatcher(config)
        outputs = asyncio.run(dispatcher.run(paths))
    except (DispatchError, OSError) as exc:
        typer.echo(f"Run failed: {exc}", err=True)
        raise typer.Exit(1)

    typer.echo()
    typer.echo("Printing task output...")
    for output in outputs:
        typer.echo(f"Task: {output.task_id}")
        typer.echo(f"Node: {output.node_id}")
        typer.echo("Standard out:")
        typer.echo(output.stdout)

    typer.echo()
    typer.echo(f"Sample complete: {datetime.now()}")


@app.command("cleanup")
def cleanup(
    mode: Optional[str] = typer.Option(None, help="Dispatch mode: local or azure"),
    pool_id: Optional[str] = typer.Option(None, help="Pool id"),
    job_id: Optional[str] = typer.Option(None, help="Job id"),
    container: Optional[str] = typer.Option(None, help="Input container name"),
):
    """Delete a job, pool and input container left behind by an earlier run."""
    config = _configure({
        "compute_dispatch_mode": mode,
        "pool_id": pool_id,
        "job_id": job_id,
        "input_container_name": container,
    })
    try:
        dispatcher = create_dispatcher(config)
        asyncio.run(dispatcher.cleanup())
    except DispatchError as exc:
        typer.echo(f"Cleanup failed: {exc}", err=True)
        raise typer.Exit(1)
    typer.echo("Cleanup complete")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: Optional[int] = typer.Option(None, help="Port (defaults to COMPUTE_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the HTTP service."""
    import uvicorn

    uvicorn.run(
        "batchdispatch.main:app",
        host=host,
        port=port or settings.compute_port,
        reload=reload,
    )


def main():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
