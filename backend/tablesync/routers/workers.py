"""Worker invocation endpoint used by the HTTP dispatcher."""

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status

from tablesync.exceptions import DispatchError
from tablesync.runtime import RefreshRuntime, get_runtime
from tablesync.schemas import WorkerMessage

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workers", tags=["workers"])


@router.post("/{worker_name}", status_code=status.HTTP_202_ACCEPTED)
async def invoke_worker(
    worker_name: str,
    message: WorkerMessage,
    background_tasks: BackgroundTasks,
    runtime: Annotated[RefreshRuntime, Depends(get_runtime)],
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """
    Accept a worker invocation and run it after responding.

    The caller only learns that the invocation was accepted; the outcome is
    recorded in the run's audit log entry.
    """
    token = runtime.settings.worker_invoke_token
    if token and authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="Invalid worker token")

    try:
        runtime.handlers.get_worker(worker_name)
    except DispatchError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    background_tasks.add_task(runtime.run_worker, worker_name, message.model_dump(mode="json"))
    logger.info(
        f"Accepted {worker_name} for {message.config.identity} "
        f"(audit log {message.audit_log_id}, depth {message.chain_depth})"
    )
    return {
        "accepted": True,
        "worker": worker_name,
        "audit_log_id": message.audit_log_id,
        "chain_depth": message.chain_depth,
    }
