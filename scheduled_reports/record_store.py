"""
Report Record Store

Persistence for scheduled report definitions and their run state. The
pipeline only needs the narrow interface in ReportRecordStore; an in-memory
implementation backs tests and local runs and a PostgreSQL implementation
backs deployments.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import asyncpg
import structlog

from .errors import RecordNotFoundError, ReportPipelineError
from .models import (
    ReportFormat,
    ReportSchedule,
    ReportType,
    ScheduledReport,
    parse_datetime,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Fields an external management surface may change
EDITABLE_FIELDS = (
    "name",
    "report_type",
    "format",
    "schedule",
    "recipients",
    "filters",
    "is_active",
    "last_run_at",
    "next_run_at",
)

REQUIRED_FIELDS = ("name", "report_type", "format", "schedule", "recipients")


def _validate_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalise editable fields, rejecting unknown enum values early"""
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise ReportPipelineError(f"Unknown scheduled report fields: {', '.join(sorted(unknown))}")

    clean = dict(fields)
    if "report_type" in clean:
        clean["report_type"] = ReportType.parse(clean["report_type"])
    if "format" in clean:
        clean["format"] = ReportFormat.parse(clean["format"])
    if "schedule" in clean:
        clean["schedule"] = ReportSchedule.from_value(clean["schedule"])
    if "recipients" in clean:
        clean["recipients"] = [str(r) for r in (clean["recipients"] or [])]
    if "filters" in clean:
        clean["filters"] = dict(clean["filters"] or {})
    if "is_active" in clean:
        clean["is_active"] = _parse_bool(clean["is_active"])
    for name in ("last_run_at", "next_run_at"):
        if name in clean:
            try:
                clean[name] = parse_datetime(clean[name])
            except (TypeError, ValueError):
                raise ReportPipelineError(f"Invalid {name}: {clean[name]!r}") from None
    return clean


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


class ReportRecordStore(ABC):
    """Interface the scheduler and orchestrator use to read and mutate reports"""

    @abstractmethod
    async def list_due_active_reports(self, now: datetime) -> List[ScheduledReport]:
        """Active reports whose next_run_at is unset or at/before ``now``"""

    @abstractmethod
    async def touch_last_run(self, report_id: str, ts: datetime) -> None:
        """Set last_run_at"""

    @abstractmethod
    async def update_next_run(self, report_id: str, ts: Optional[datetime]) -> None:
        """Set next_run_at"""

    @abstractmethod
    async def get(self, report_id: str) -> Optional[ScheduledReport]:
        pass

    @abstractmethod
    async def list_all(self) -> List[ScheduledReport]:
        pass

    @abstractmethod
    async def create(self, fields: Mapping[str, Any]) -> ScheduledReport:
        pass

    @abstractmethod
    async def update(self, report_id: str, fields: Mapping[str, Any]) -> ScheduledReport:
        pass

    @abstractmethod
    async def delete(self, report_id: str) -> None:
        pass


class InMemoryReportStore(ReportRecordStore):
    """Dictionary-backed store; returns copies so callers cannot alias rows"""

    def __init__(self, reports: Optional[List[ScheduledReport]] = None):
        self._reports: Dict[str, ScheduledReport] = {}
        self._lock = asyncio.Lock()
        for report in reports or []:
            self._reports[report.id] = replace(report)

    async def list_due_active_reports(self, now: datetime) -> List[ScheduledReport]:
        async with self._lock:
            return [replace(r) for r in self._reports.values() if r.is_due(now)]

    async def touch_last_run(self, report_id: str, ts: datetime) -> None:
        async with self._lock:
            report = self._require(report_id)
            report.last_run_at = ts
            report.updated_at = utcnow()

    async def update_next_run(self, report_id: str, ts: Optional[datetime]) -> None:
        async with self._lock:
            report = self._require(report_id)
            report.next_run_at = ts
            report.updated_at = utcnow()

    async def get(self, report_id: str) -> Optional[ScheduledReport]:
        async with self._lock:
            report = self._reports.get(report_id)
            return replace(report) if report else None

    async def list_all(self) -> List[ScheduledReport]:
        async with self._lock:
            reports = sorted(
                self._reports.values(),
                key=lambda r: r.created_at or datetime.min.replace(tzinfo=timezone.utc),
                reverse=True,
            )
            return [replace(r) for r in reports]

    async def create(self, fields: Mapping[str, Any]) -> ScheduledReport:
        missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
        if missing:
            raise ReportPipelineError(f"Missing required fields: {', '.join(missing)}")

        clean = _validate_fields(fields)
        now = utcnow()
        report = ScheduledReport(
            id=str(uuid.uuid4()),
            name=clean["name"],
            report_type=clean["report_type"],
            format=clean["format"],
            schedule=clean["schedule"],
            recipients=clean["recipients"],
            filters=clean.get("filters", {}),
            is_active=clean.get("is_active", True),
            last_run_at=clean.get("last_run_at"),
            next_run_at=clean.get("next_run_at"),
            created_at=now,
            updated_at=now,
        )

        async with self._lock:
            self._reports[report.id] = report
        logger.info("scheduled_report_created", report_id=report.id, report_type=report.report_type.value)
        return replace(report)

    async def update(self, report_id: str, fields: Mapping[str, Any]) -> ScheduledReport:
        clean = _validate_fields(fields)
        async with self._lock:
            report = self._require(report_id)
            updated = replace(report, **clean, updated_at=utcnow())
            self._reports[report_id] = updated
            return replace(updated)

    async def delete(self, report_id: str) -> None:
        async with self._lock:
            self._require(report_id)
            del self._reports[report_id]
        logger.info("scheduled_report_deleted", report_id=report_id)

    def _require(self, report_id: str) -> ScheduledReport:
        report = self._reports.get(report_id)
        if report is None:
            raise RecordNotFoundError(report_id)
        return report


class PostgresReportStore(ReportRecordStore):
    """PostgreSQL store for scheduled reports"""

    def __init__(self, database_url: str, min_size: int = 1, max_size: int = 5):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish database connection pool"""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
            )
            logger.info("database_pool_created", min_size=self.min_size, max_size=self.max_size)
        except Exception as e:
            logger.error("database_connection_failed", error=str(e))
            raise

    async def close(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("database_pool_closed")

    async def check_connection(self) -> bool:
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception:
            return False

    async def initialize_schema(self):
        """Create the scheduled_reports table if it doesn't exist"""
        async with self._acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_reports (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    report_type TEXT NOT NULL,
                    format TEXT NOT NULL,
                    schedule JSONB NOT NULL,
                    recipients JSONB NOT NULL DEFAULT '[]'::jsonb,
                    filters JSONB NOT NULL DEFAULT '{}'::jsonb,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    last_run_at TIMESTAMP WITH TIME ZONE,
                    next_run_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                )
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_scheduled_reports_due
                ON scheduled_reports (is_active, next_run_at)
            """)
        logger.info("scheduled_reports_schema_initialized")

    async def list_due_active_reports(self, now: datetime) -> List[ScheduledReport]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM scheduled_reports
                WHERE is_active = TRUE
                  AND (next_run_at IS NULL OR next_run_at <= $1)
                ORDER BY next_run_at NULLS FIRST
                """,
                now,
            )
        return self._rows_to_reports(rows)

    async def touch_last_run(self, report_id: str, ts: datetime) -> None:
        await self._set_column(report_id, "last_run_at", ts)

    async def update_next_run(self, report_id: str, ts: Optional[datetime]) -> None:
        await self._set_column(report_id, "next_run_at", ts)

    async def get(self, report_id: str) -> Optional[ScheduledReport]:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM scheduled_reports WHERE id = $1", report_id)
        return ScheduledReport.from_record(dict(row)) if row else None

    async def list_all(self) -> List[ScheduledReport]:
        async with self._acquire() as conn:
            rows = await conn.fetch("SELECT * FROM scheduled_reports ORDER BY created_at DESC")
        return self._rows_to_reports(rows)

    async def create(self, fields: Mapping[str, Any]) -> ScheduledReport:
        missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
        if missing:
            raise ReportPipelineError(f"Missing required fields: {', '.join(missing)}")

        clean = _validate_fields(fields)
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO scheduled_reports (
                    id, name, report_type, format, schedule, recipients, filters,
                    is_active, last_run_at, next_run_at
                ) VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8, $9, $10)
                RETURNING *
                """,
                str(uuid.uuid4()),
                clean["name"],
                clean["report_type"].value,
                clean["format"].value,
                json.dumps(clean["schedule"].to_dict()),
                json.dumps(clean["recipients"]),
                json.dumps(clean.get("filters", {})),
                clean.get("is_active", True),
                clean.get("last_run_at"),
                clean.get("next_run_at"),
            )
        report = ScheduledReport.from_record(dict(row))
        logger.info("scheduled_report_created", report_id=report.id, report_type=report.report_type.value)
        return report

    async def update(self, report_id: str, fields: Mapping[str, Any]) -> ScheduledReport:
        clean = _validate_fields(fields)
        assignments = []
        values: List[Any] = []
        for index, (column, value) in enumerate(clean.items(), start=2):
            if column in ("report_type", "format"):
                value = value.value
            elif column == "schedule":
                value = json.dumps(value.to_dict())
            elif column in ("recipients", "filters"):
                value = json.dumps(value)
            cast = "::jsonb" if column in ("schedule", "recipients", "filters") else ""
            assignments.append(f"{column} = ${index}{cast}")
            values.append(value)
        assignments.append("updated_at = NOW()")

        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE scheduled_reports SET {', '.join(assignments)} WHERE id = $1 RETURNING *",
                report_id,
                *values,
            )
        if row is None:
            raise RecordNotFoundError(report_id)
        return ScheduledReport.from_record(dict(row))

    async def delete(self, report_id: str) -> None:
        async with self._acquire() as conn:
            status = await conn.execute("DELETE FROM scheduled_reports WHERE id = $1", report_id)
        if status.endswith(" 0"):
            raise RecordNotFoundError(report_id)
        logger.info("scheduled_report_deleted", report_id=report_id)

    async def _set_column(self, report_id: str, column: str, value: Optional[datetime]) -> None:
        async with self._acquire() as conn:
            status = await conn.execute(
                f"UPDATE scheduled_reports SET {column} = $2, updated_at = NOW() WHERE id = $1",
                report_id,
                value,
            )
        if status.endswith(" 0"):
            raise RecordNotFoundError(report_id)

    def _acquire(self):
        if self.pool is None:
            raise RuntimeError("PostgresReportStore not connected; call connect() first")
        return self.pool.acquire()

    @staticmethod
    def _rows_to_reports(rows) -> List[ScheduledReport]:
        reports = []
        for row in rows:
            try:
                reports.append(ScheduledReport.from_record(dict(row)))
            except (ReportPipelineError, ValueError) as e:
                logger.error("invalid_scheduled_report_row", report_id=row["id"], error=str(e))
        return reports
