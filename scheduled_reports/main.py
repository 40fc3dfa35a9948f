"""
Scheduled Report Service

Entry point wiring the record store, data aggregator, renderer, artifact
store, email sender, orchestrator and due-report scheduler together.

Run with ``python -m scheduled_reports.main``.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

import structlog
from prometheus_client import start_http_server

from .artifact_store import ReportArtifactStore
from .config import Settings, settings
from .data_aggregator import ReportDataAggregator
from .email_sender import EmailConfig, ReportEmailSender
from .orchestrator import ReportOrchestrator
from .record_store import InMemoryReportStore, PostgresReportStore, ReportRecordStore
from .report_renderer import ReportRenderer
from .scheduler import DueReportScheduler

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO"):
    """Configure structured JSON logging"""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class ReportService:
    """The assembled report pipeline"""
    store: ReportRecordStore
    aggregator: ReportDataAggregator
    renderer: ReportRenderer
    artifact_store: ReportArtifactStore
    email_sender: ReportEmailSender
    orchestrator: ReportOrchestrator
    scheduler: DueReportScheduler

    async def start(self):
        if isinstance(self.store, PostgresReportStore):
            await self.store.connect()
            await self.store.initialize_schema()

        await self.aggregator.connect()
        await self.scheduler.start()

    async def shutdown(self):
        """Stop polling, let in-flight runs finish, then release resources"""
        await self.scheduler.stop()
        await self.scheduler.wait_for_runs()
        await self.orchestrator.wait_for_manual_runs()

        await self.aggregator.close()
        if isinstance(self.store, PostgresReportStore):
            await self.store.close()


def build_service(config: Optional[Settings] = None) -> ReportService:
    config = config or settings

    if config.DATABASE_URL:
        store = PostgresReportStore(config.DATABASE_URL)
    else:
        logger.warning("database_url_not_set_using_in_memory_store")
        store = InMemoryReportStore()

    aggregator = ReportDataAggregator(
        member_service_url=config.MEMBER_SERVICE_URL,
        schedule_service_url=config.SCHEDULE_SERVICE_URL,
        billing_service_url=config.BILLING_SERVICE_URL,
        identity_service_url=config.IDENTITY_SERVICE_URL,
        timeout=config.DATA_SOURCE_TIMEOUT_SECONDS,
    )

    renderer = ReportRenderer()

    artifact_store = ReportArtifactStore(
        bucket_name=config.AWS_S3_BUCKET_NAME,
        region=config.AWS_REGION,
        access_key_id=config.AWS_ACCESS_KEY_ID,
        secret_access_key=config.AWS_SECRET_ACCESS_KEY,
        url_expiry_seconds=config.REPORT_URL_EXPIRY_SECONDS,
    )
    validation = artifact_store.validate_configuration()
    if not validation["valid"]:
        logger.warning("artifact_store_disabled", missing=validation["missing"])

    email_sender = ReportEmailSender(
        EmailConfig(
            smtp_host=config.SMTP_HOST,
            smtp_port=config.SMTP_PORT,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            from_address=config.SMTP_FROM_EMAIL,
            use_tls=config.SMTP_USE_TLS,
        )
    )

    orchestrator = ReportOrchestrator(
        store=store,
        aggregator=aggregator,
        renderer=renderer,
        artifact_store=artifact_store,
        email_sender=email_sender,
        run_timeout=config.REPORT_RUN_TIMEOUT_SECONDS,
    )

    scheduler = DueReportScheduler(
        store=store,
        orchestrator=orchestrator,
        poll_interval=config.REPORT_POLL_INTERVAL_SECONDS,
    )

    return ReportService(
        store=store,
        aggregator=aggregator,
        renderer=renderer,
        artifact_store=artifact_store,
        email_sender=email_sender,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


async def main():
    configure_logging(settings.LOG_LEVEL)

    if settings.METRICS_PORT:
        start_http_server(settings.METRICS_PORT)
        logger.info("metrics_server_started", port=settings.METRICS_PORT)

    service = build_service(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("scheduled_report_service_starting", service=settings.SERVICE_NAME)
    await service.start()

    try:
        await stop_event.wait()
    finally:
        logger.info("scheduled_report_service_stopping")
        await service.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
