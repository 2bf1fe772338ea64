"""Tests for the sync scheduler."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from connector_service.core.exceptions import NotConnected, ProviderRequestError
from connector_service.models import ConnectionRef, ConnectionStatus, SyncOutcome, SyncResult, TokenSet

HUBSPOT_TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


def _hubspot_crm(stub):
    stub.add_json("GET", "https://api.hubapi.com/crm/v3/objects/", {"results": [{"id": "1"}]})


class TestSchedulerLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, scheduler):
        assert scheduler.start() is True
        timer = scheduler._timer
        assert scheduler.start() is False
        assert scheduler._timer is timer
        assert scheduler.running is True

        assert scheduler.stop() is True
        assert scheduler.stop() is False
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_runs_a_tick(self, scheduler, stub, seed_connection):
        await seed_connection()
        _hubspot_crm(stub)

        scheduler.start()
        for _ in range(50):
            if scheduler.recent_runs:
                break
            await asyncio.sleep(0.01)

        assert scheduler.last_tick_at is not None
        assert scheduler.recent_runs[0].outcome == SyncOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_sync_finish(self, scheduler, manager, seed_connection):
        await seed_connection()
        release = asyncio.Event()

        async def slow_sync(connection):
            await release.wait()
            return SyncResult(integration_id="hubspot")

        with patch.object(manager.provider("hubspot"), "sync", new=AsyncMock(side_effect=slow_sync)):
            scheduler.start()
            await asyncio.sleep(0.05)
            assert scheduler.is_in_flight(ConnectionRef("t1", "hubspot"))

            scheduler.stop()
            release.set()
            assert await scheduler.wait_idle(timeout=1) is True

        assert scheduler.recent_runs[-1].outcome == SyncOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_status_snapshot(self, scheduler, settings):
        status = scheduler.status()
        assert status["running"] is False
        assert status["interval_seconds"] == settings.sync_interval_seconds
        assert status["in_flight"] == []
        assert status["recent_runs"] == []


class TestRunSync:

    @pytest.mark.asyncio
    async def test_success_updates_last_sync(self, scheduler, store, stub, seed_connection):
        await seed_connection()
        _hubspot_crm(stub)

        run = await scheduler.run_sync("t1", "hubspot")

        assert run.outcome == SyncOutcome.SUCCEEDED
        assert run.result.records == {"contacts": 1, "companies": 1, "deals": 1}
        assert (await store.get("t1", "hubspot")).last_sync is not None

    @pytest.mark.asyncio
    async def test_not_connected(self, scheduler):
        with pytest.raises(NotConnected):
            await scheduler.run_sync("t1", "hubspot")

    @pytest.mark.asyncio
    async def test_disconnected_is_not_synced(self, scheduler, manager, seed_connection):
        await seed_connection()
        await manager.disconnect("t1", "hubspot")
        with pytest.raises(NotConnected):
            await scheduler.run_sync("t1", "hubspot")

    @pytest.mark.asyncio
    async def test_refreshes_expiring_token_before_sync(self, scheduler, stub, seed_connection):
        await seed_connection(expires_in=1)
        stub.add_json("POST", HUBSPOT_TOKEN_URL, {"access_token": "tok2", "expires_in": 3600})
        _hubspot_crm(stub)

        run = await scheduler.run_sync("t1", "hubspot")

        assert run.outcome == SyncOutcome.SUCCEEDED
        urls = [str(r.url) for r in stub.requests]
        assert urls[0] == HUBSPOT_TOKEN_URL
        assert all(r.headers["Authorization"] == "Bearer tok2" for r in stub.requests[1:])

    @pytest.mark.asyncio
    async def test_duplicate_request_is_skipped(self, scheduler, manager, seed_connection):
        await seed_connection()
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_sync(connection):
            started.set()
            await release.wait()
            return SyncResult(integration_id="hubspot")

        with patch.object(manager.provider("hubspot"), "sync", new=AsyncMock(side_effect=slow_sync)) as mock:
            first = asyncio.create_task(scheduler.run_sync("t1", "hubspot"))
            await started.wait()

            second = await scheduler.run_sync("t1", "hubspot")
            assert second.outcome == SyncOutcome.SKIPPED

            release.set()
            assert (await first).outcome == SyncOutcome.SUCCEEDED
            assert mock.await_count == 1

    @pytest.mark.asyncio
    async def test_slow_connection_does_not_block_others(self, scheduler, manager, seed_connection):
        await seed_connection(tenant_id="slow")
        await seed_connection(tenant_id="fast")
        release = asyncio.Event()
        started = asyncio.Event()

        async def sync(connection):
            if connection.tenant_id == "slow":
                started.set()
                await release.wait()
            return SyncResult(integration_id="hubspot")

        with patch.object(manager.provider("hubspot"), "sync", new=AsyncMock(side_effect=sync)):
            slow = asyncio.create_task(scheduler.run_sync("slow", "hubspot"))
            await started.wait()

            fast = await asyncio.wait_for(scheduler.run_sync("fast", "hubspot"), timeout=1)
            assert fast.outcome == SyncOutcome.SUCCEEDED
            assert not slow.done()

            release.set()
            assert (await slow).outcome == SyncOutcome.SUCCEEDED


class TestFailures:

    @pytest.mark.asyncio
    async def test_threshold_flips_to_error(self, scheduler, store, manager, seed_connection):
        await seed_connection()
        failing = AsyncMock(side_effect=ProviderRequestError("boom", "hubspot", status_code=503))

        with patch.object(manager.provider("hubspot"), "sync", new=failing):
            for attempt in range(1, 4):
                run = await scheduler.run_sync("t1", "hubspot")
                assert run.outcome == SyncOutcome.FAILED
                stored = await store.get("t1", "hubspot")
                assert stored.consecutive_failures == attempt
                assert stored.last_sync is None

        assert stored.status == ConnectionStatus.ERROR
        assert stored.last_error == "boom"

    @pytest.mark.asyncio
    async def test_error_connection_is_retried_and_recovers(self, scheduler, store, stub, seed_connection):
        await seed_connection(status=ConnectionStatus.ERROR)
        _hubspot_crm(stub)

        run = await scheduler.run_sync("t1", "hubspot")

        assert run.outcome == SyncOutcome.SUCCEEDED
        assert (await store.get("t1", "hubspot")).status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_reauth_required(self, scheduler, store, seed_connection):
        await seed_connection(expires_in=1, refresh_token=None)

        run = await scheduler.run_sync("t1", "hubspot")

        assert run.outcome == SyncOutcome.REAUTH_REQUIRED
        assert (await store.get("t1", "hubspot")).status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_siblings(self, scheduler, store, manager, seed_connection):
        await seed_connection(tenant_id="bad")
        await seed_connection(tenant_id="good")

        async def sync(connection):
            if connection.tenant_id == "bad":
                raise ProviderRequestError("boom", "hubspot")
            return SyncResult(integration_id="hubspot", records={"contacts": 2})

        with patch.object(manager.provider("hubspot"), "sync", new=AsyncMock(side_effect=sync)):
            runs = await scheduler.run_once(wait=True)

        outcomes = {run.tenant_id: run.outcome for run in runs}
        assert outcomes == {"bad": SyncOutcome.FAILED, "good": SyncOutcome.SUCCEEDED}
        assert (await store.get("good", "hubspot")).last_sync is not None
        assert (await store.get("bad", "hubspot")).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_disconnect_during_sync_stays_disconnected(self, scheduler, store, manager, seed_connection):
        await seed_connection()

        async def sync(connection):
            await manager.disconnect("t1", "hubspot")
            raise ProviderRequestError("boom", "hubspot")

        with patch.object(manager.provider("hubspot"), "sync", new=AsyncMock(side_effect=sync)):
            run = await scheduler.run_sync("t1", "hubspot")

        assert run.outcome == SyncOutcome.FAILED
        stored = await store.get("t1", "hubspot")
        assert stored.status == ConnectionStatus.DISCONNECTED
        assert stored.credentials is None

    @pytest.mark.asyncio
    async def test_calendar_failure_keeps_sync_enabled(self, scheduler, store, manager, seed_calendar):
        await seed_calendar()
        failing = AsyncMock(side_effect=ProviderRequestError("calendar down", "google-calendar"))

        with patch.object(manager.provider("google-calendar"), "sync", new=failing):
            for _ in range(3):
                run = await scheduler.run_sync("t1", "google-calendar")
                assert run.outcome == SyncOutcome.FAILED

        stored = await store.get_calendar_sync("t1", "google")
        assert stored.sync_enabled is True
        assert stored.needs_reauth is False
        assert stored.consecutive_failures == 3
        assert stored.last_error == "calendar down"

    @pytest.mark.asyncio
    async def test_rejected_calendar_refresh_is_not_retried(self, scheduler, store, stub, aggregator, seed_calendar):
        await seed_calendar(expires_in=1)
        stub.add_json("POST", GOOGLE_TOKEN_URL, {"error": "invalid_grant"}, status_code=400)

        first = await scheduler.run_once(wait=True)
        later = [await scheduler.run_once(wait=True) for _ in range(2)]

        assert [run.outcome for run in first] == [SyncOutcome.REAUTH_REQUIRED]
        assert later == [[], []]
        assert len(stub.calls(GOOGLE_TOKEN_URL)) == 1

        stored = await store.get_calendar_sync("t1", "google")
        assert stored.needs_reauth is True
        assert "invalid_grant" in stored.last_error
        status_map = await aggregator.get_status_map("t1")
        assert status_map["google-calendar"].status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_reconnect_resumes_calendar_sync(self, scheduler, store, manager, seed_calendar):
        await seed_calendar()
        await store.update_calendar_sync("t1", "google", {"needs_reauth": True})
        assert await store.list_enabled_calendar_syncs() == []

        await manager.save_connection("t1", "google-calendar", TokenSet(access_token="g-new", expires_in_seconds=3600))

        stored = await store.get_calendar_sync("t1", "google")
        assert stored.needs_reauth is False
        assert [c.provider for c in await store.list_enabled_calendar_syncs()] == ["google"]


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_tenant_scope(self, scheduler, manager, seed_connection, seed_calendar):
        await seed_connection(tenant_id="t1")
        await seed_connection(tenant_id="t2")
        await seed_calendar(tenant_id="t1")
        sync = AsyncMock(return_value=SyncResult(integration_id="x"))

        with patch.object(manager.provider("hubspot"), "sync", new=sync), \
                patch.object(manager.provider("google-calendar"), "sync", new=sync):
            runs = await scheduler.run_once(tenant_id="t1", wait=True)

        assert sorted((r.tenant_id, r.integration_id) for r in runs) == [
            ("t1", "google-calendar"),
            ("t1", "hubspot"),
        ]
        assert all(r.outcome == SyncOutcome.SUCCEEDED for r in runs)

    @pytest.mark.asyncio
    async def test_skips_disconnected_and_error_rows(self, scheduler, seed_connection, stub):
        await seed_connection(tenant_id="t1", status=ConnectionStatus.DISCONNECTED)
        await seed_connection(tenant_id="t2", status=ConnectionStatus.ERROR)

        assert await scheduler.run_once(wait=True) == []
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_transport_error_counts_as_failure(self, scheduler, store, seed_connection, manager):
        await seed_connection()
        provider = manager.provider("hubspot")
        with patch.object(provider, "_send", new=AsyncMock(side_effect=httpx.ConnectError("connection refused"))):
            runs = await scheduler.run_once(wait=True)

        assert runs[0].outcome == SyncOutcome.FAILED
        assert (await store.get("t1", "hubspot")).consecutive_failures == 1
