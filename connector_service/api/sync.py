"""Sync scheduler control endpoints."""

from fastapi import APIRouter, Depends
import logging

from connector_service.core.exceptions import IntegrationError
from connector_service.schemas.integration import (
    SchedulerControlResponse,
    SchedulerStatusResponse,
    SyncRunRequest,
    SyncRunResponse,
    SyncTickResponse,
)
from connector_service.services import SyncScheduler
from connector_service.api.dependencies import get_current_tenant, get_sync_scheduler, http_error

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/start", response_model=SchedulerControlResponse)
async def start_scheduler(
    tenant_id: str = Depends(get_current_tenant),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Start periodic sync. Calling it again is a no-op."""
    changed = scheduler.start()
    logger.info(f"Scheduler start requested by tenant {tenant_id} (changed={changed})")
    return SchedulerControlResponse(running=scheduler.running, changed=changed)


@router.post("/stop", response_model=SchedulerControlResponse)
async def stop_scheduler(
    tenant_id: str = Depends(get_current_tenant),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Stop periodic sync. In-flight syncs finish."""
    changed = scheduler.stop()
    logger.info(f"Scheduler stop requested by tenant {tenant_id} (changed={changed})")
    return SchedulerControlResponse(running=scheduler.running, changed=changed)


@router.post("/run", response_model=SyncTickResponse)
async def run_now(
    body: SyncRunRequest,
    tenant_id: str = Depends(get_current_tenant),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Sync the tenant's connections now."""
    if body.integration_id:
        try:
            run = await scheduler.run_sync(tenant_id, body.integration_id)
        except IntegrationError as e:
            raise http_error(e)
        runs = [run]
    else:
        runs = await scheduler.run_once(tenant_id=tenant_id, wait=body.wait)

    return SyncTickResponse(
        dispatched=len(runs),
        runs=[SyncRunResponse(**run.model_dump()) for run in runs],
    )


@router.get("/status", response_model=SchedulerStatusResponse)
async def scheduler_status(
    tenant_id: str = Depends(get_current_tenant),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Scheduler state and recent runs."""
    return SchedulerStatusResponse(**scheduler.status())
