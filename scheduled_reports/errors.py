"""
Scheduled report pipeline errors
"""

from typing import Optional


class ReportPipelineError(Exception):
    """Base class for scheduled report pipeline errors"""


class ReportConfigurationError(ReportPipelineError):
    """
    A report definition cannot be executed as configured.

    Raised for unknown report types or formats, CUSTOM reports without a
    usable ``dataType`` filter, and unsupported render formats. These are
    never retried within a run.
    """


class DataSourceError(ReportPipelineError):
    """A domain data source could not be read"""

    def __init__(self, source: str, message: str, status: Optional[int] = None):
        self.source = source
        self.status = status
        super().__init__(f"Failed to fetch {source} data: {message}")


class ArtifactStoreError(ReportPipelineError):
    """A configured artifact store rejected or failed an upload"""


class RecordNotFoundError(ReportPipelineError):
    """No scheduled report exists with the requested id"""

    def __init__(self, report_id: str):
        self.report_id = report_id
        super().__init__(f"Scheduled report not found: {report_id}")
