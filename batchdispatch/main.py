"""Batch Dispatch service - FastAPI application."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from batchdispatch.config import settings
from batchdispatch.api.v1.router import v1_router
from batchdispatch.api.v1.health import router as health_root_router
from batchdispatch.api.v1 import runs as runs_api
from batchdispatch.jobs.dispatcher import create_dispatcher
from batchdispatch.jobs.in_process_queue import InProcessQueue
from batchdispatch.jobs.models import RunRecord, RunStatus
from batchdispatch.storage.local_store import LocalArtifactStore


async def run_dispatch(run: RunRecord) -> RunRecord:
    """Worker function: uploads the run's inputs and drives its tasks to completion.

    Called by the InProcessQueue. Errors propagate and are recorded on the run
    by the queue.
    """
    dispatcher = create_dispatcher(settings)
    run.outputs = await dispatcher.run(run.input_files)
    run.status = RunStatus.COMPLETED
    run.completed_at = datetime.now(timezone.utc)
    return run


# Global queue reference
_queue = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global _queue

    print(f"Starting Batch Dispatch service on port {settings.compute_port}")
    print(f"Dispatch mode: {settings.compute_dispatch_mode}")
    print(f"Pool: {settings.pool_id}  Job: {settings.job_id}")
    print(f"Cleanup policy: {settings.cleanup_policy}")

    if settings.compute_dispatch_mode == "azure":
        missing = settings.missing_credentials()
        if missing:
            print(f"Warning: missing credentials {', '.join(missing)}; runs will fail")

    _queue = InProcessQueue(worker_fn=run_dispatch)
    await _queue.start()
    print("Run queue started")

    runs_api.set_queue(_queue)

    yield

    # Shutdown
    print("Shutting down Batch Dispatch service")
    await _queue.stop()
    if settings.compute_dispatch_mode == "local":
        removed = LocalArtifactStore(settings.local_store_dir or None).cleanup_expired(
            settings.artifact_ttl_hours
        )
        print(f"Removed {removed} expired local container(s)")


app = FastAPI(
    title="Batch Dispatch Service",
    description="Uploads inputs, fans tasks out to a compute pool and collects their output",
    version="0.1.0",
    lifespan=lifespan,
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
