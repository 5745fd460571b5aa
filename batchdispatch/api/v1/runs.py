"""Run management API — submit dispatch runs, poll status, read task output."""

import os
from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from typing import List, Optional

from batchdispatch.config import settings
from batchdispatch.jobs.models import RunRecord, RunStatus

router = APIRouter()

# Set by main.py during lifespan
_queue = None


def set_queue(queue):
    global _queue
    _queue = queue


class RunSubmitRequest(BaseModel):
    input_files: Optional[List[str]] = None


class RunSubmitResponse(BaseModel):
    run_id: str
    status: str
    message: str


@router.post("/runs", response_model=RunSubmitResponse)
async def submit_run(request: RunSubmitRequest):
    """Submit a dispatch run over files on the server's filesystem.

    Defaults to the configured input files when none are given.
    """
    if _queue is None:
        raise HTTPException(status_code=503, detail="Run queue not initialized")

    input_files = request.input_files or list(settings.input_files)
    missing = [path for path in input_files if not os.path.isfile(path)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Input files not found: {missing}")

    run = RunRecord(input_files=input_files)
    run_id = await _queue.submit(run)
    return RunSubmitResponse(
        run_id=run_id,
        status="pending",
        message="Run submitted successfully. Poll GET /api/v1/runs/{id} for status.",
    )


@router.get("/runs")
async def list_runs():
    """List every run submitted since startup."""
    if _queue is None:
        raise HTTPException(status_code=503, detail="Run queue not initialized")

    runs = _queue.list_runs()
    return {
        "runs": [
            {
                "run_id": run.id,
                "status": run.status.value,
                "input_files": run.input_files,
                "created_at": run.created_at.isoformat(),
            }
            for run in runs
        ],
        "count": len(runs),
    }


@router.get("/runs/{run_id}")
async def get_run_status(run_id: str):
    """Get the current status and task outputs of a run."""
    if _queue is None:
        raise HTTPException(status_code=503, detail="Run queue not initialized")

    run = await _queue.get_status(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    response = {
        "run_id": run.id,
        "status": run.status.value,
        "input_files": run.input_files,
        "created_at": run.created_at.isoformat(),
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }

    if run.status == RunStatus.COMPLETED:
        response["tasks"] = [
            {"task_id": o.task_id, "node_id": o.node_id} for o in run.outputs
        ]

    if run.status == RunStatus.FAILED:
        response["error"] = run.error

    return response


@router.get("/runs/{run_id}/outputs/{task_id}", response_class=PlainTextResponse)
async def get_task_output(run_id: str, task_id: str):
    """Return the captured stdout of one task of a completed run."""
    if _queue is None:
        raise HTTPException(status_code=503, detail="Run queue not initialized")

    run = await _queue.get_status(run_id)
    if run is None or run.status != RunStatus.COMPLETED:
        raise HTTPException(status_code=404, detail="Results not available yet")

    for output in run.outputs:
        if output.task_id == task_id:
            return PlainTextResponse(output.stdout)
    raise HTTPException(status_code=404, detail="Task output not found")
