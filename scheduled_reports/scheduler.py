"""
Due-Report Scheduler

Polls the record store on a fixed interval and dispatches every due, active
scheduled report to the orchestrator as an independent background task.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import structlog

from .metrics import report_dispatches_total, report_polls_total, report_runs_in_flight
from .models import ScheduledReport, utcnow
from .orchestrator import ReportOrchestrator
from .record_store import ReportRecordStore

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 60.0


class DueReportScheduler:
    """
    Single-flight poller for due scheduled reports.

    Only one poll runs at a time: a poll that finds the previous one still
    in progress is skipped, not queued. Dispatched runs are not awaited by
    the poll and are not cancelled by ``stop()``.
    """

    def __init__(
        self,
        store: ReportRecordStore,
        orchestrator: ReportOrchestrator,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock=None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.clock = clock or utcnow

        self.running = False
        self._guard = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._runs: Set[asyncio.Task] = set()

        self.stats = {
            "polls": 0,
            "skipped_polls": 0,
            "dispatched_runs": 0,
            "failed_runs": 0,
            "last_poll": None,
            "last_error": None,
        }

    async def start(self):
        """Poll once immediately, then keep polling every ``poll_interval`` seconds"""
        if self.running:
            logger.warning("report_scheduler_already_running")
            return

        self.running = True
        logger.info("report_scheduler_started", poll_interval=self.poll_interval)

        await self.poll()
        self._loop_task = asyncio.create_task(self._poll_loop(), name="report-scheduler")

    async def stop(self):
        """Stop polling; in-flight runs keep going"""
        self.running = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        logger.info("report_scheduler_stopped", in_flight=len(self._runs))

    async def _poll_loop(self):
        while self.running:
            await asyncio.sleep(self.poll_interval)
            await self.poll()

    async def poll(self) -> int:
        """
        Dispatch every due report once.

        Returns the number of runs dispatched; 0 when the poll was skipped
        because another poll still holds the guard.
        """
        if self._guard.locked():
            self.stats["skipped_polls"] += 1
            report_polls_total.labels(outcome="skipped").inc()
            logger.info("report_poll_skipped")
            return 0

        async with self._guard:
            now = self.clock()
            self.stats["polls"] += 1
            self.stats["last_poll"] = now.isoformat()

            try:
                due_reports = await self.store.list_due_active_reports(now)
            except Exception as e:
                self.stats["last_error"] = str(e)
                report_polls_total.labels(outcome="failed").inc()
                logger.error("due_report_listing_failed", error=str(e))
                return 0

            dispatched = 0
            for report in self._unique(due_reports):
                try:
                    await self.store.touch_last_run(report.id, now)
                except Exception as e:
                    self.stats["last_error"] = str(e)
                    logger.error("report_touch_failed", report_id=report.id, error=str(e))
                    continue

                self._dispatch(report)
                dispatched += 1

            report_polls_total.labels(outcome="completed").inc()
            if dispatched:
                logger.info("due_reports_dispatched", count=dispatched)

            return dispatched

    @staticmethod
    def _unique(reports: List[ScheduledReport]) -> List[ScheduledReport]:
        seen = set()
        unique = []
        for report in reports:
            if report.id in seen:
                continue
            seen.add(report.id)
            unique.append(report)
        return unique

    def _dispatch(self, report: ScheduledReport):
        task = asyncio.create_task(self.orchestrator.run(report), name=f"report-run-{report.id}")
        self._runs.add(task)
        task.add_done_callback(self._on_run_done)

        self.stats["dispatched_runs"] += 1
        report_dispatches_total.labels(report_type=report.report_type.value).inc()
        report_runs_in_flight.inc()

    def _on_run_done(self, task: asyncio.Task):
        self._runs.discard(task)
        report_runs_in_flight.dec()

        if task.cancelled():
            logger.warning("report_run_cancelled", task=task.get_name())
            return

        error = task.exception()
        if error is not None:
            self.stats["failed_runs"] += 1
            self.stats["last_error"] = str(error)
            logger.error("report_run_task_failed", task=task.get_name(), error=str(error))

    async def wait_for_runs(self):
        """Await all in-flight runs dispatched by this scheduler"""
        if self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "running": self.running,
            "in_flight_runs": len(self._runs),
            "poll_interval": self.poll_interval,
        }
