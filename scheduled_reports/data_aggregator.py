"""
Report Data Aggregator

Fetches the data a scheduled report needs from the gym platform's domain
services (member, schedule, billing and identity services).
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import aiohttp
import structlog

from .errors import DataSourceError, ReportConfigurationError
from .metrics import track_data_source
from .models import ReportType, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 1000

ReportData = Union[List[Dict[str, Any]], Dict[str, Any]]


def _clean_params(params: Mapping[str, Any]) -> Dict[str, str]:
    """Drop unset values and encode booleans the way the services expect"""
    clean = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            clean[key] = "true" if value else "false"
        else:
            clean[key] = str(value)
    return clean


def _date_range(filters: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "start_date": filters.get("startDate") or filters.get("start_date"),
        "end_date": filters.get("endDate") or filters.get("end_date"),
    }


def _extract_list(payload: Any, key: str) -> List[Dict[str, Any]]:
    """Pull a record list out of ``{data: {<key>: [...]}}`` or ``{data: [...]}``"""
    data = payload.get("data") if isinstance(payload, dict) else None
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    if isinstance(data, list):
        return data
    return []


class ReportDataAggregator:
    """
    Translates a (report type, filters) request into normalised report data.

    List reports (members, classes, equipment) return a list of records;
    revenue and system reports return a summary object. Any transport or
    HTTP failure is raised as DataSourceError naming the failing source.
    """

    def __init__(
        self,
        member_service_url: str,
        schedule_service_url: str,
        billing_service_url: str,
        identity_service_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ):
        self.member_service_url = member_service_url.rstrip('/')
        self.schedule_service_url = schedule_service_url.rstrip('/')
        self.billing_service_url = billing_service_url.rstrip('/')
        self.identity_service_url = identity_service_url.rstrip('/')
        self.timeout = timeout

        self.session = session
        self._owns_session = session is None

        self._fetchers: Dict[ReportType, Callable[[Mapping[str, Any]], Awaitable[ReportData]]] = {
            ReportType.MEMBERS: self.fetch_members_data,
            ReportType.REVENUE: self.fetch_revenue_data,
            ReportType.CLASSES: self.fetch_classes_data,
            ReportType.EQUIPMENT: self.fetch_equipment_data,
            ReportType.SYSTEM: self.fetch_system_data,
        }

    async def connect(self):
        """Create the HTTP session if one was not supplied"""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def fetch_report_data(
        self,
        report_type: Union[ReportType, str],
        filters: Optional[Mapping[str, Any]] = None,
    ) -> ReportData:
        """
        Fetch data for a report type.

        CUSTOM reports name the real data type in ``filters["dataType"]``
        and are fetched exactly as that type would be.
        """
        filters = dict(filters or {})
        report_type = ReportType.parse(report_type)

        if report_type is ReportType.CUSTOM:
            data_type = filters.get("dataType")
            if not data_type:
                raise ReportConfigurationError("Custom report requires dataType in filters")
            report_type = ReportType.parse(data_type)
            if report_type is ReportType.CUSTOM:
                raise ReportConfigurationError("Custom report dataType cannot be CUSTOM")

        return await self._fetchers[report_type](filters)

    @track_data_source("members")
    async def fetch_members_data(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        params = {
            "page": filters.get("page") or DEFAULT_PAGE,
            "limit": filters.get("limit") or DEFAULT_LIMIT,
            "status": filters.get("status"),
            "membership_type": filters.get("membership_type"),
        }
        payload = await self._get("members", f"{self.member_service_url}/members", params)
        return _extract_list(payload, "members")

    @track_data_source("revenue")
    async def fetch_revenue_data(self, filters: Mapping[str, Any]) -> Dict[str, Any]:
        payload = await self._get(
            "revenue", f"{self.billing_service_url}/analytics/revenue", _date_range(filters)
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        return data if isinstance(data, dict) else {}

    @track_data_source("classes")
    async def fetch_classes_data(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        is_active = filters.get("is_active")
        params = {
            "page": filters.get("page") or DEFAULT_PAGE,
            "limit": filters.get("limit") or DEFAULT_LIMIT,
            "category": filters.get("category"),
            "difficulty": filters.get("difficulty"),
            "is_active": True if is_active is None else is_active,
        }
        payload = await self._get("classes", f"{self.schedule_service_url}/classes", params)
        return _extract_list(payload, "classes")

    @track_data_source("equipment")
    async def fetch_equipment_data(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        params = {
            "page": filters.get("page") or DEFAULT_PAGE,
            "limit": filters.get("limit") or DEFAULT_LIMIT,
            "category": filters.get("category"),
            "status": filters.get("status"),
        }
        payload = await self._get("equipment", f"{self.member_service_url}/equipment", params)
        return _extract_list(payload, "equipment")

    @track_data_source("system")
    async def fetch_system_data(self, filters: Mapping[str, Any]) -> Dict[str, Any]:
        payload = await self._get(
            "system", f"{self.identity_service_url}/analytics/system", _date_range(filters)
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        data = data if isinstance(data, dict) else {}

        return {
            "total_users": data.get("total_users") or 0,
            "active_users": data.get("active_users") or 0,
            "total_sessions": data.get("total_sessions") or 0,
            "generated_at": data.get("generated_at") or utcnow().isoformat(),
        }

    async def _get(self, source: str, url: str, params: Mapping[str, Any]) -> Any:
        """GET a JSON document, wrapping every failure as DataSourceError"""
        if self.session is None:
            await self.connect()

        try:
            async with self.session.get(url, params=_clean_params(params)) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise DataSourceError(
                        source, f"HTTP {response.status}: {body[:200]}", status=response.status
                    )
                return await response.json(content_type=None)

        except DataSourceError as e:
            logger.error("data_source_request_failed", source=source, url=url, error=str(e))
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("data_source_request_failed", source=source, url=url, error=str(e))
            raise DataSourceError(source, str(e) or type(e).__name__) from e
