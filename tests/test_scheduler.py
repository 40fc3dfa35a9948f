"""
Due-report scheduler tests: single-flight polling and non-blocking dispatch
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from scheduled_reports.record_store import InMemoryReportStore
from scheduled_reports.scheduler import DueReportScheduler


@pytest.fixture
def mock_orchestrator():
    orchestrator = Mock()
    orchestrator.run = AsyncMock(return_value=None)
    return orchestrator


@pytest.fixture
def scheduler(memory_store, mock_orchestrator, clock):
    return DueReportScheduler(memory_store, mock_orchestrator, poll_interval=3600, clock=clock)


class TestPoll:
    """One poll cycle"""

    @pytest.mark.asyncio
    async def test_dispatches_due_reports_and_marks_them_run(self, make_report, mock_orchestrator, clock, fixed_datetime):
        store = InMemoryReportStore([
            make_report(id="due-1"),
            make_report(id="due-2", next_run_at=fixed_datetime - timedelta(days=1)),
            make_report(id="later", next_run_at=fixed_datetime + timedelta(days=1)),
            make_report(id="inactive", is_active=False),
        ])
        scheduler = DueReportScheduler(store, mock_orchestrator, clock=clock)

        dispatched = await scheduler.poll()
        await scheduler.wait_for_runs()

        assert dispatched == 2
        run_ids = sorted(call.args[0].id for call in mock_orchestrator.run.call_args_list)
        assert run_ids == ["due-1", "due-2"]
        assert (await store.get("due-1")).last_run_at == fixed_datetime
        assert (await store.get("later")).last_run_at is None

    @pytest.mark.asyncio
    async def test_each_report_dispatched_once_per_cycle(self, sample_report, mock_orchestrator, clock):
        store = Mock()
        store.list_due_active_reports = AsyncMock(return_value=[sample_report, sample_report])
        store.touch_last_run = AsyncMock()
        scheduler = DueReportScheduler(store, mock_orchestrator, clock=clock)

        assert await scheduler.poll() == 1
        await scheduler.wait_for_runs()

        mock_orchestrator.run.assert_awaited_once()
        store.touch_last_run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_does_not_wait_for_runs(self, scheduler, mock_orchestrator):
        release = asyncio.Event()

        async def blocked_run(report):
            await release.wait()

        mock_orchestrator.run = blocked_run

        assert await scheduler.poll() == 1
        assert scheduler.get_stats()["in_flight_runs"] == 1

        release.set()
        await scheduler.wait_for_runs()
        assert scheduler.get_stats()["in_flight_runs"] == 0

    @pytest.mark.asyncio
    async def test_overlapping_poll_is_skipped(self, sample_report, mock_orchestrator, clock):
        listing_started = asyncio.Event()
        release = asyncio.Event()

        async def slow_listing(now):
            listing_started.set()
            await release.wait()
            return [sample_report]

        store = Mock()
        store.list_due_active_reports = slow_listing
        store.touch_last_run = AsyncMock()
        scheduler = DueReportScheduler(store, mock_orchestrator, clock=clock)

        first = asyncio.create_task(scheduler.poll())
        await listing_started.wait()

        assert await scheduler.poll() == 0
        assert scheduler.get_stats()["skipped_polls"] == 1

        release.set()
        assert await first == 1
        await scheduler.wait_for_runs()
        mock_orchestrator.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_listing_failure_is_swallowed(self, mock_orchestrator, clock):
        store = Mock()
        store.list_due_active_reports = AsyncMock(side_effect=ConnectionError("db down"))
        store.touch_last_run = AsyncMock()
        scheduler = DueReportScheduler(store, mock_orchestrator, clock=clock)

        assert await scheduler.poll() == 0

        store.touch_last_run.assert_not_awaited()
        mock_orchestrator.run.assert_not_called()
        assert scheduler.get_stats()["last_error"] == "db down"

    @pytest.mark.asyncio
    async def test_touch_failure_skips_only_that_report(self, make_report, mock_orchestrator, clock):
        reports = [make_report(id="bad"), make_report(id="good")]

        async def touch(report_id, ts):
            if report_id == "bad":
                raise RuntimeError("row locked")

        store = Mock()
        store.list_due_active_reports = AsyncMock(return_value=reports)
        store.touch_last_run = touch
        scheduler = DueReportScheduler(store, mock_orchestrator, clock=clock)

        assert await scheduler.poll() == 1
        await scheduler.wait_for_runs()

        assert mock_orchestrator.run.call_args.args[0].id == "good"

    @pytest.mark.asyncio
    async def test_failed_run_is_logged_not_raised(self, scheduler, mock_orchestrator):
        mock_orchestrator.run = AsyncMock(side_effect=RuntimeError("render failed"))

        assert await scheduler.poll() == 1
        await scheduler.wait_for_runs()
        await asyncio.sleep(0)

        stats = scheduler.get_stats()
        assert stats["failed_runs"] == 1
        assert stats["last_error"] == "render failed"


class TestLifecycle:
    """start/stop"""

    @pytest.mark.asyncio
    async def test_start_polls_immediately(self, scheduler, mock_orchestrator):
        await scheduler.start()
        try:
            assert scheduler.running
            assert scheduler.get_stats()["polls"] == 1
            await scheduler.wait_for_runs()
            mock_orchestrator.run.assert_awaited_once()
        finally:
            await scheduler.stop()

        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler):
        await scheduler.start()
        await scheduler.start()
        try:
            assert scheduler.get_stats()["polls"] == 1
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_interval_polling_stops_after_stop(self, memory_store, mock_orchestrator, clock):
        scheduler = DueReportScheduler(memory_store, mock_orchestrator, poll_interval=0.01, clock=clock)

        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        polls = scheduler.get_stats()["polls"]
        await asyncio.sleep(0.05)

        assert polls > 1
        assert scheduler.get_stats()["polls"] == polls

    @pytest.mark.asyncio
    async def test_stop_does_not_cancel_in_flight_runs(self, scheduler, mock_orchestrator):
        release = asyncio.Event()
        finished = []

        async def blocked_run(report):
            await release.wait()
            finished.append(report.id)

        mock_orchestrator.run = blocked_run

        await scheduler.start()
        await scheduler.stop()

        release.set()
        await scheduler.wait_for_runs()
        assert finished == ["report-1"]
