"""Background synchronization scheduler."""

import asyncio
from collections import deque
from typing import Deque, Dict, Any, List, Optional, Tuple
from datetime import datetime
import logging

from connector_service.core.config import Settings, get_settings
from connector_service.core.exceptions import NotConnected, ReauthRequired
from connector_service.models import (
    ConnectionRef,
    ConnectionStatus,
    IntegrationConnection,
    SyncOutcome,
    SyncRun,
)
from connector_service.services.oauth_service import OAuthConnectionManager
from connector_service.store.base import CredentialStore
from connector_service.utils.clock import utcnow

logger = logging.getLogger(__name__)

RECENT_RUNS_LIMIT = 100


class SyncScheduler:
    """Periodically syncs every connected integration.

    A single timer task runs a tick immediately on ``start()`` and then every
    ``sync_interval_seconds``. Each tick dispatches one task per connection,
    bounded by a semaphore; at most one task per connection is in flight.
    ``stop()`` only cancels the timer, in-flight tasks run to completion.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth_manager: OAuthConnectionManager,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.oauth_manager = oauth_manager
        self.settings = settings or get_settings()
        self.recent_runs: Deque[SyncRun] = deque(maxlen=RECENT_RUNS_LIMIT)
        self.last_tick_at: Optional[datetime] = None
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Dict[ConnectionRef, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(self.settings.sync_max_concurrency)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> bool:
        """Start the timer. Returns False if it was already running."""
        if self.running:
            return False
        self._timer = asyncio.create_task(self._run_loop(), name="sync-scheduler")
        logger.info(f"Sync scheduler started (interval {self.settings.sync_interval_seconds}s)")
        return True

    def stop(self) -> bool:
        """Stop future ticks. Returns False if the timer was not running."""
        if not self.running:
            return False
        self._timer.cancel()
        self._timer = None
        logger.info("Sync scheduler stopped")
        return True

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Sync tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.settings.sync_interval_seconds)

    async def run_once(self, tenant_id: Optional[str] = None, wait: bool = False) -> List[SyncRun]:
        """Dispatch one sync task per connected integration.

        Returns the dispatched runs; with ``wait`` they have finished.
        """
        self.last_tick_at = utcnow()
        connections = await self.store.list_connected(tenant_id)
        calendar_syncs = await self.store.list_enabled_calendar_syncs(tenant_id)

        refs = [c.key for c in connections]
        refs.extend(ConnectionRef(c.tenant_id, c.integration_id) for c in calendar_syncs)

        dispatched: List[Tuple[SyncRun, asyncio.Task]] = []
        for ref in refs:
            entry = self._dispatch(ref)
            if entry is not None:
                dispatched.append(entry)

        logger.info(f"Sync tick dispatched {len(dispatched)} of {len(refs)} connections")

        if wait and dispatched:
            await asyncio.gather(*(task for _, task in dispatched))
        return [run for run, _ in dispatched]

    async def run_sync(self, tenant_id: str, integration_id: str) -> SyncRun:
        """Sync one connection now.

        Returns a ``skipped`` run immediately if a sync for the same
        connection is already in flight.
        """
        ref = ConnectionRef(tenant_id, integration_id)
        if self.is_in_flight(ref):
            return self._skipped(ref)

        connection = await self.oauth_manager.get_connection(tenant_id, integration_id)
        if (
            connection is None
            or connection.credentials is None
            or connection.status == ConnectionStatus.DISCONNECTED
        ):
            raise NotConnected(f"{integration_id} is not connected", integration_id)

        entry = self._dispatch(ref)
        if entry is None:
            return self._skipped(ref)
        run, task = entry
        # Shielded so a dropped HTTP request does not cancel the sync itself
        await asyncio.shield(task)
        return run

    def is_in_flight(self, ref: ConnectionRef) -> bool:
        task = self._in_flight.get(ref)
        return task is not None and not task.done()

    def _skipped(self, ref: ConnectionRef) -> SyncRun:
        run = SyncRun(tenant_id=ref.tenant_id, integration_id=ref.integration_id)
        run.finish(SyncOutcome.SKIPPED, "Sync already in progress")
        return run

    def _dispatch(self, ref: ConnectionRef) -> Optional[Tuple[SyncRun, asyncio.Task]]:
        if self.is_in_flight(ref):
            logger.debug(f"Sync already in flight for {ref}")
            return None

        run = SyncRun(tenant_id=ref.tenant_id, integration_id=ref.integration_id)
        task = asyncio.create_task(self._execute(run), name=f"sync:{ref}")
        self._in_flight[ref] = task

        def _done(finished: asyncio.Task) -> None:
            if self._in_flight.get(ref) is finished:
                del self._in_flight[ref]

        task.add_done_callback(_done)
        return run, task

    async def _execute(self, run: SyncRun) -> SyncRun:
        async with self._semaphore:
            run.started_at = utcnow()
            connection: Optional[IntegrationConnection] = None
            try:
                connection = await self.oauth_manager.get_connection(run.tenant_id, run.integration_id)
                if (
                    connection is None
                    or connection.credentials is None
                    or connection.status == ConnectionStatus.DISCONNECTED
                ):
                    raise NotConnected(f"{run.integration_id} is not connected", run.integration_id)

                connection = await self.oauth_manager.refresh_if_expired(connection)
                provider = self.oauth_manager.provider(run.integration_id)
                run.result = await provider.sync(connection)
                await self.oauth_manager.mark_synced(connection)
                run.finish(SyncOutcome.SUCCEEDED)
            except NotConnected as e:
                run.finish(SyncOutcome.SKIPPED, e.message)
            except ReauthRequired as e:
                # Already marked error by the refresh
                run.finish(SyncOutcome.REAUTH_REQUIRED, e.message)
            except Exception as e:
                run.finish(SyncOutcome.FAILED, str(e) or type(e).__name__)
                if connection is not None:
                    await self._record_failure(connection, run.error)

        self.recent_runs.append(run)
        self._log_run(run)
        return run

    async def _record_failure(self, connection: IntegrationConnection, error: str) -> None:
        try:
            await self.oauth_manager.mark_failed(connection, error)
        except Exception as e:
            logger.error(f"Failed to record sync failure for {connection.key}: {e}")

    def _log_run(self, run: SyncRun) -> None:
        extra = {
            "tenant_id": run.tenant_id,
            "integration_id": run.integration_id,
            "outcome": run.outcome.value,
        }
        if run.outcome == SyncOutcome.SUCCEEDED:
            extra["records"] = run.result.total_records if run.result else 0
            logger.info("Sync completed", extra=extra)
        elif run.outcome == SyncOutcome.SKIPPED:
            logger.info("Sync skipped", extra={**extra, "error": run.error})
        else:
            logger.warning("Sync failed", extra={**extra, "error": run.error})

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight tasks. Returns False if some were still running at the timeout."""
        tasks = [task for task in self._in_flight.values() if not task.done()]
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    def status(self) -> Dict[str, Any]:
        """Snapshot for the status endpoint."""
        return {
            "running": self.running,
            "interval_seconds": self.settings.sync_interval_seconds,
            "max_concurrency": self.settings.sync_max_concurrency,
            "last_tick_at": self.last_tick_at,
            "in_flight": [str(ref) for ref, task in self._in_flight.items() if not task.done()],
            "recent_runs": [run.model_dump() for run in list(self.recent_runs)[-20:]],
        }
