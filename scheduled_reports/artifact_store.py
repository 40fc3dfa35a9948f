"""
Report Artifact Store

Persists rendered report artifacts in S3 and hands back a presigned download
URL. An unconfigured store is not an error: uploads return None and the
pipeline carries on without a link.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ArtifactStoreError
from .models import ReportFormat, ReportType, utcnow

logger = structlog.get_logger(__name__)

ONE_YEAR_SECONDS = 365 * 24 * 60 * 60


def _iso_timestamp(ts: datetime) -> str:
    """``2024-01-01T14:00:00.000Z`` style UTC timestamp"""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return f"{ts:%Y-%m-%dT%H:%M:%S}.{ts.microsecond // 1000:03d}Z"


class ReportArtifactStore:
    """S3-backed storage for generated reports"""

    def __init__(
        self,
        bucket_name: Optional[str],
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        url_expiry_seconds: int = ONE_YEAR_SECONDS,
        client: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.bucket_name = bucket_name
        self.region = region
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.url_expiry_seconds = url_expiry_seconds
        self.clock = clock or utcnow
        self._client = client

    @property
    def is_configured(self) -> bool:
        if self._client is not None:
            return bool(self.bucket_name)
        return bool(self.bucket_name and self.access_key_id and self.secret_access_key)

    def validate_configuration(self) -> Dict[str, Any]:
        """Report which settings are missing, if any"""
        required = {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_S3_BUCKET_NAME": self.bucket_name,
        }
        missing = [name for name, value in required.items() if not value]

        if missing:
            return {
                "valid": False,
                "missing": missing,
                "message": f"Missing required environment variables: {', '.join(missing)}",
            }

        return {"valid": True, "bucket": self.bucket_name, "region": self.region}

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
            )
        return self._client

    @staticmethod
    def build_key(
        report_id: str,
        report_format: Union[ReportFormat, str],
        report_type: Union[ReportType, str],
        timestamp: datetime,
    ) -> str:
        """``reports/<type>/<reportId>_<timestamp>.<ext>`` with ':' and '.' made safe"""
        report_format = ReportFormat.parse(report_format)
        type_name = report_type.value if isinstance(report_type, ReportType) else str(report_type)
        stamp = _iso_timestamp(timestamp).replace(":", "-").replace(".", "-")
        return f"reports/{type_name.lower()}/{report_id}_{stamp}.{report_format.extension}"

    async def upload_report(
        self,
        content: bytes,
        report_id: str,
        report_format: Union[ReportFormat, str],
        report_type: Union[ReportType, str],
    ) -> Optional[str]:
        """
        Upload an artifact and return a presigned GET URL.

        Returns None when the store is not configured. Raises
        ArtifactStoreError when a configured upload fails.
        """
        if not self.is_configured:
            logger.warning("artifact_store_not_configured", report_id=report_id)
            return None

        report_format = ReportFormat.parse(report_format)
        generated_at = self.clock()
        key = self.build_key(report_id, report_format, report_type, generated_at)
        type_name = report_type.value if isinstance(report_type, ReportType) else str(report_type)

        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=content,
                ContentType=report_format.content_type,
                Metadata={
                    "reportId": str(report_id),
                    "reportType": type_name,
                    "format": report_format.value,
                    "generatedAt": _iso_timestamp(generated_at),
                },
            )

            url = await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=self.url_expiry_seconds,
            )

        except (BotoCoreError, ClientError) as e:
            logger.error("report_upload_failed", report_id=report_id, key=key, error=str(e))
            raise ArtifactStoreError(f"Failed to upload report {report_id}: {e}") from e

        logger.info("report_uploaded", report_id=report_id, key=key, size=len(content))
        return url
