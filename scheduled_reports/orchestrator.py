"""
Report Orchestrator

Runs one scheduled report end to end: fetch data, render the artifact, store
it, email it, and advance the report's schedule.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, Optional, Set

import structlog

from .artifact_store import ReportArtifactStore
from .data_aggregator import ReportDataAggregator
from .email_sender import ReportEmailSender
from .errors import RecordNotFoundError
from .metrics import elapsed_since, record_delivery, record_run, report_artifact_bytes
from .models import DeliveryResult, RunResult, ScheduledReport, compute_next_run, utcnow
from .record_store import ReportRecordStore
from .report_renderer import ReportRenderer

logger = structlog.get_logger(__name__)


class ReportOrchestrator:
    """
    Executes report runs.

    Fetching and rendering abort the run; storage and delivery only degrade
    it. Whatever happens, the report's ``next_run_at`` is recomputed and
    persisted once the run attempt ends.
    """

    def __init__(
        self,
        store: ReportRecordStore,
        aggregator: ReportDataAggregator,
        renderer: ReportRenderer,
        artifact_store: ReportArtifactStore,
        email_sender: ReportEmailSender,
        clock=None,
        run_timeout: Optional[float] = None,
    ):
        self.store = store
        self.aggregator = aggregator
        self.renderer = renderer
        self.artifact_store = artifact_store
        self.email_sender = email_sender
        self.clock = clock or utcnow
        self.run_timeout = run_timeout

        self._manual_runs: Set[asyncio.Task] = set()

    async def run(self, report: ScheduledReport) -> RunResult:
        """Run a report; aborting errors are raised after the schedule advances"""
        started_at = self.clock()
        start = time.monotonic()
        outcome = "failed"
        result: Optional[RunResult] = None

        logger.info(
            "report_run_started",
            report_id=report.id,
            report_type=report.report_type.value,
            format=report.format.value,
        )

        try:
            if self.run_timeout:
                result = await asyncio.wait_for(
                    self._execute(report, started_at, start), timeout=self.run_timeout
                )
            else:
                result = await self._execute(report, started_at, start)

            outcome = "success" if result.email_sent else "degraded"

        except asyncio.TimeoutError:
            logger.error("report_run_timed_out", report_id=report.id, timeout=self.run_timeout)
            raise
        except Exception as e:
            logger.error("report_run_failed", report_id=report.id, error=str(e), exc_info=True)
            raise

        finally:
            next_run_at = await self._advance_schedule(report)
            record_run(report.report_type.value, report.format.value, outcome, elapsed_since(start))

        result.next_run_at = next_run_at

        logger.info(
            "report_run_completed",
            report_id=report.id,
            duration=round(result.duration, 3),
            file_size=result.file_size,
            email_sent=result.email_sent,
            next_run_at=next_run_at.isoformat() if next_run_at else None,
        )
        return result

    async def _execute(self, report: ScheduledReport, started_at: datetime, start: float) -> RunResult:
        data = await self.aggregator.fetch_report_data(report.report_type, report.filters)

        content = await asyncio.to_thread(
            self.renderer.render,
            report.report_type,
            data,
            {"title": report.name, "filters": report.filters},
            report.format,
        )
        report_artifact_bytes.labels(format=report.format.value).observe(len(content))

        download_url = await self._store_artifact(report, content)
        delivery = await self._deliver(report, content, download_url)

        return RunResult(
            report_id=report.id,
            success=True,
            started_at=started_at,
            duration=elapsed_since(start),
            file_size=len(content),
            email_sent=delivery.success,
            download_url=download_url,
            error=delivery.error,
        )

    async def _store_artifact(self, report: ScheduledReport, content: bytes) -> Optional[str]:
        try:
            url = await self.artifact_store.upload_report(
                content, report.id, report.format, report.report_type
            )
        except Exception as e:
            logger.error("report_artifact_store_failed", report_id=report.id, error=str(e))
            return None

        if url is None:
            logger.info("report_artifact_not_stored", report_id=report.id)
        return url

    async def _deliver(
        self, report: ScheduledReport, content: bytes, download_url: Optional[str]
    ) -> DeliveryResult:
        try:
            delivery = await self.email_sender.send_report(
                report.recipients,
                report.name,
                report.report_type,
                report.format,
                content,
                download_url,
            )
        except Exception as e:
            delivery = DeliveryResult(
                success=False, recipients=list(report.recipients), error=str(e) or type(e).__name__
            )

        if not delivery.success:
            logger.warning("report_delivery_failed", report_id=report.id, error=delivery.error)

        record_delivery(delivery.success)
        return delivery

    async def _advance_schedule(self, report: ScheduledReport) -> Optional[datetime]:
        next_run_at = compute_next_run(self.clock(), report.schedule, current=report.next_run_at)

        try:
            await self.store.update_next_run(report.id, next_run_at)
        except Exception as e:
            logger.error("next_run_persist_failed", report_id=report.id, error=str(e))

        return next_run_at

    # ------------------------------------------------------------------
    # Manual trigger
    # ------------------------------------------------------------------

    async def run_now(self, report_id: str) -> Dict[str, Any]:
        """
        Queue an immediate run of one report and return without waiting.

        Raises RecordNotFoundError when the report does not exist.
        """
        report = await self.store.get(report_id)
        if report is None:
            raise RecordNotFoundError(report_id)

        task = asyncio.create_task(self.run(report), name=f"report-run-{report.id}")
        self._manual_runs.add(task)
        task.add_done_callback(self._on_manual_run_done)

        queued_at = self.clock()
        await self.store.touch_last_run(report.id, queued_at)

        logger.info("report_run_queued", report_id=report.id)

        return {
            "success": True,
            "message": "Scheduled report execution started",
            "data": {
                "report_id": report.id,
                "queued_at": queued_at.isoformat(),
                "message": "Report generation has been queued and will be sent to recipients when ready",
            },
        }

    def _on_manual_run_done(self, task: asyncio.Task):
        self._manual_runs.discard(task)

        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            logger.error("manual_report_run_failed", task=task.get_name(), error=str(error))

    async def wait_for_manual_runs(self):
        """Await every queued manual run"""
        if self._manual_runs:
            await asyncio.gather(*list(self._manual_runs), return_exceptions=True)
