"""
Shared pytest fixtures for the scheduled report pipeline tests
"""

import pytest
from unittest.mock import AsyncMock, Mock
from datetime import datetime, timezone

from scheduled_reports.models import (
    DeliveryResult,
    ReportFormat,
    ReportSchedule,
    ReportType,
    ScheduledReport,
    ScheduleFrequency,
)
from scheduled_reports.orchestrator import ReportOrchestrator
from scheduled_reports.record_store import InMemoryReportStore


@pytest.fixture
def fixed_datetime():
    """Fixed datetime for testing"""
    return datetime(2024, 1, 1, 14, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(fixed_datetime):
    """Clock callable pinned to fixed_datetime"""
    return lambda: fixed_datetime


@pytest.fixture
def make_report():
    """Factory for ScheduledReport instances with sensible defaults"""
    def _make(**overrides):
        values = {
            "id": "report-1",
            "name": "Weekly Members",
            "report_type": ReportType.MEMBERS,
            "format": ReportFormat.CSV,
            "schedule": ReportSchedule(frequency=ScheduleFrequency.WEEKLY, time="09:00"),
            "recipients": ["manager@gym147.vn"],
            "filters": {},
            "is_active": True,
            "next_run_at": None,
        }
        values.update(overrides)
        return ScheduledReport(**values)
    return _make


@pytest.fixture
def sample_report(make_report):
    return make_report()


@pytest.fixture
def memory_store(sample_report):
    """In-memory store seeded with sample_report"""
    return InMemoryReportStore([sample_report])


@pytest.fixture
def sample_members():
    """Member records as returned by the member service"""
    return [
        {
            "id": "m-1",
            "full_name": "Nguyen Van A",
            "email": "a@example.com",
            "membership_status": "ACTIVE",
            "membership_type": "PREMIUM",
            "joined_at": "2024-03-05T08:30:00Z",
        },
        {
            "id": "m-2",
            "full_name": "Tran Thi B",
            "email": None,
            "membership_status": "EXPIRED",
            "membership_type": "BASIC",
            "joined_at": None,
        },
    ]


@pytest.fixture
def sample_revenue():
    """Revenue analytics payload as returned by the billing service"""
    return {
        "totals": {
            "total_revenue": 1234567,
            "subscription_revenue": 1000000,
            "class_revenue": 200000,
            "addon_revenue": 34567,
            "new_members": 12,
            "successful_payments": 40,
        },
        "reports": [
            {"report_date": "2024-01-01T00:00:00Z", "total_revenue": 500000, "successful_payments": 15},
            {"report_date": "2024-01-02T00:00:00Z", "total_revenue": 734567, "successful_payments": 25},
        ],
    }


@pytest.fixture
def mock_aggregator(sample_members):
    """Mock ReportDataAggregator"""
    aggregator = Mock()
    aggregator.fetch_report_data = AsyncMock(return_value=sample_members)
    return aggregator


@pytest.fixture
def mock_renderer():
    """Mock ReportRenderer producing a fixed artifact"""
    renderer = Mock()
    renderer.render = Mock(return_value=b"ID,Full Name\nm-1,Nguyen Van A\n")
    return renderer


@pytest.fixture
def mock_artifact_store():
    """Mock ReportArtifactStore returning a download URL"""
    artifact_store = Mock()
    artifact_store.upload_report = AsyncMock(return_value="https://bucket.s3.amazonaws.com/reports/members/report-1.csv")
    return artifact_store


@pytest.fixture
def mock_email_sender():
    """Mock ReportEmailSender that always delivers"""
    sender = Mock()
    sender.send_report = AsyncMock(
        return_value=DeliveryResult(success=True, recipients=["manager@gym147.vn"], message_id="<1@gym147>")
    )
    return sender


@pytest.fixture
def orchestrator(memory_store, mock_aggregator, mock_renderer, mock_artifact_store, mock_email_sender, clock):
    return ReportOrchestrator(
        store=memory_store,
        aggregator=mock_aggregator,
        renderer=mock_renderer,
        artifact_store=mock_artifact_store,
        email_sender=mock_email_sender,
        clock=clock,
    )
