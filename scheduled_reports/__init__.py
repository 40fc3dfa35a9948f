"""
Scheduled Report Pipeline

Background reporting for the Gym147 gym-operations platform:
- Periodic detection of due scheduled reports
- Data aggregation from member, schedule, billing and identity services
- Multi-format rendering (PDF, Excel, CSV)
- Artifact storage in S3 with presigned download links
- Email delivery with the report attached

Components:
- DueReportScheduler: single-flight poller dispatching due reports
- ReportOrchestrator: fetch, render, store, deliver and reschedule one report
- ReportDataAggregator: HTTP fetchers for each report type
- ReportRenderer: PDF, XLSX and CSV layouts
- ReportArtifactStore: S3 persistence
- ReportEmailSender: SMTP delivery
- ReportRecordStore: scheduled report persistence (in-memory and PostgreSQL)
"""

from .errors import (
    ReportPipelineError,
    ReportConfigurationError,
    DataSourceError,
    ArtifactStoreError,
    RecordNotFoundError
)

from .models import (
    ReportType,
    ReportFormat,
    ScheduleFrequency,
    ReportSchedule,
    ScheduledReport,
    DeliveryResult,
    RunResult,
    compute_next_run
)

from .record_store import (
    ReportRecordStore,
    InMemoryReportStore,
    PostgresReportStore
)

from .data_aggregator import ReportDataAggregator

from .report_renderer import (
    ReportRenderer,
    format_currency,
    format_date,
    format_datetime
)

from .artifact_store import ReportArtifactStore

from .email_sender import EmailConfig, ReportEmailSender

from .orchestrator import ReportOrchestrator

from .scheduler import DueReportScheduler

__all__ = [
    # Errors
    "ReportPipelineError",
    "ReportConfigurationError",
    "DataSourceError",
    "ArtifactStoreError",
    "RecordNotFoundError",

    # Models
    "ReportType",
    "ReportFormat",
    "ScheduleFrequency",
    "ReportSchedule",
    "ScheduledReport",
    "DeliveryResult",
    "RunResult",
    "compute_next_run",

    # Record store
    "ReportRecordStore",
    "InMemoryReportStore",
    "PostgresReportStore",

    # Pipeline
    "ReportDataAggregator",
    "ReportRenderer",
    "format_currency",
    "format_date",
    "format_datetime",
    "ReportArtifactStore",
    "EmailConfig",
    "ReportEmailSender",
    "ReportOrchestrator",
    "DueReportScheduler",
]

__version__ = "1.0.0"
