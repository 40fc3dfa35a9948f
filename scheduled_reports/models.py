"""
Scheduled Report Models

Domain types shared by the scheduler, orchestrator and pipeline steps:
report/format/frequency enums, the scheduled report definition, run and
delivery results, and next-run computation.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from dateutil.relativedelta import relativedelta

from .errors import ReportConfigurationError

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


class ReportType(Enum):
    """Report types available for scheduling"""
    MEMBERS = "MEMBERS"
    REVENUE = "REVENUE"
    CLASSES = "CLASSES"
    EQUIPMENT = "EQUIPMENT"
    SYSTEM = "SYSTEM"
    CUSTOM = "CUSTOM"

    @classmethod
    def parse(cls, value: Union[str, "ReportType"]) -> "ReportType":
        """Convert an untrusted value into a ReportType"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ReportConfigurationError(f"Unknown report type: {value}") from None


class ReportFormat(Enum):
    """Output formats a report can be rendered to"""
    PDF = "PDF"
    EXCEL = "EXCEL"
    CSV = "CSV"

    @classmethod
    def parse(cls, value: Union[str, "ReportFormat"]) -> "ReportFormat":
        """Convert an untrusted value into a ReportFormat (case-insensitive)"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ReportConfigurationError(f"Unsupported report format: {value}") from None

    @property
    def extension(self) -> str:
        return "xlsx" if self is ReportFormat.EXCEL else self.value.lower()

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self]


_CONTENT_TYPES = {
    ReportFormat.PDF: "application/pdf",
    ReportFormat.EXCEL: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ReportFormat.CSV: "text/csv",
}


class ScheduleFrequency(Enum):
    """Schedule frequency options"""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Aware datetime from a datetime or ISO-8601 string; naive values are UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value) if value else default
    return value


@dataclass
class ReportSchedule:
    """
    When a report runs.

    ``frequency`` holds a ScheduleFrequency for recognised values and the raw
    string otherwise; unrecognised frequencies never move ``next_run_at``.
    """
    frequency: Union[ScheduleFrequency, str]
    time: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "ReportSchedule":
        if isinstance(value, cls):
            return value
        data = _parse_json(value, {}) or {}
        if not isinstance(data, Mapping):
            raise ReportConfigurationError(f"Invalid schedule: {value!r}")

        raw_frequency = str(data.get("frequency") or "").strip()
        try:
            frequency: Union[ScheduleFrequency, str] = ScheduleFrequency(raw_frequency.upper())
        except ValueError:
            frequency = raw_frequency

        return cls(frequency=frequency, time=data.get("time") or None)

    @property
    def is_recognized(self) -> bool:
        return isinstance(self.frequency, ScheduleFrequency)

    def time_of_day(self) -> Optional[time]:
        """Parsed ``HH:MM`` override, or None when absent or malformed"""
        if not self.time:
            return None
        match = _TIME_PATTERN.match(str(self.time).strip())
        if not match:
            return None
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        return time(hour, minute)

    def next_run_after(self, now: datetime, current: Optional[datetime] = None) -> Optional[datetime]:
        return compute_next_run(now, self, current)

    def to_dict(self) -> Dict[str, Any]:
        frequency = self.frequency.value if self.is_recognized else self.frequency
        result: Dict[str, Any] = {"frequency": frequency}
        if self.time:
            result["time"] = self.time
        return result


def compute_next_run(
    now: datetime,
    schedule: ReportSchedule,
    current: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Compute the next run time for a schedule.

    DAILY, WEEKLY and MONTHLY add one day, seven days and one calendar month
    to ``now`` (month ends are clamped). A ``HH:MM`` schedule time replaces
    the time of day of the result. Unrecognised frequencies return
    ``current`` unchanged.
    """
    if not schedule.is_recognized:
        return current

    if schedule.frequency is ScheduleFrequency.DAILY:
        next_run = now + timedelta(days=1)
    elif schedule.frequency is ScheduleFrequency.WEEKLY:
        next_run = now + timedelta(days=7)
    else:
        next_run = now + relativedelta(months=1)

    target = schedule.time_of_day()
    if target is not None:
        next_run = next_run.replace(
            hour=target.hour, minute=target.minute, second=0, microsecond=0
        )

    return next_run


@dataclass
class ScheduledReport:
    """Persisted definition of what to generate, how often, and for whom"""
    id: str
    name: str
    report_type: ReportType
    format: ReportFormat
    schedule: ReportSchedule
    recipients: List[str] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ScheduledReport":
        """
        Build a ScheduledReport from a store row or API payload.

        This is the single place untrusted strings become enums; unknown
        report types and formats raise ReportConfigurationError.
        """
        recipients = _parse_json(record.get("recipients"), [])
        filters = _parse_json(record.get("filters"), {})

        return cls(
            id=str(record["id"]),
            name=record.get("name") or "",
            report_type=ReportType.parse(record.get("report_type")),
            format=ReportFormat.parse(record.get("format")),
            schedule=ReportSchedule.from_value(record.get("schedule")),
            recipients=[str(r) for r in recipients],
            filters=dict(filters or {}),
            is_active=bool(record.get("is_active", True)),
            last_run_at=parse_datetime(record.get("last_run_at")),
            next_run_at=parse_datetime(record.get("next_run_at")),
            created_at=parse_datetime(record.get("created_at")),
            updated_at=parse_datetime(record.get("updated_at")),
        )

    def is_due(self, now: datetime) -> bool:
        """Active and either never scheduled or past its next run time"""
        return self.is_active and (self.next_run_at is None or self.next_run_at <= now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary"""
        return {
            "id": self.id,
            "name": self.name,
            "report_type": self.report_type.value,
            "format": self.format.value,
            "schedule": self.schedule.to_dict(),
            "recipients": list(self.recipients),
            "filters": dict(self.filters),
            "is_active": self.is_active,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class DeliveryResult:
    """Outcome of emailing one report artifact"""
    success: bool
    recipients: List[str] = field(default_factory=list)
    error: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "recipients": list(self.recipients)}
        if self.error:
            result["error"] = self.error
        if self.message_id:
            result["message_id"] = self.message_id
        return result


@dataclass
class RunResult:
    """Outcome of one fetch, render, store and deliver run"""
    report_id: str
    success: bool
    started_at: datetime
    duration: float
    file_size: int
    email_sent: bool
    download_url: Optional[str] = None
    next_run_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "duration": self.duration,
            "file_size": self.file_size,
            "email_sent": self.email_sent,
            "download_url": self.download_url,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "error": self.error,
        }
