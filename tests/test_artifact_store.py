"""
Artifact store tests with a mocked S3 client
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from scheduled_reports.artifact_store import ReportArtifactStore
from scheduled_reports.errors import ArtifactStoreError
from scheduled_reports.models import ReportFormat, ReportType


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://gym147-reports.s3.amazonaws.com/signed"
    return client


@pytest.fixture
def artifact_store(s3_client, clock):
    return ReportArtifactStore(
        bucket_name="gym147-reports",
        region="ap-southeast-1",
        access_key_id="key",
        secret_access_key="secret",
        url_expiry_seconds=3600,
        client=s3_client,
        clock=clock,
    )


class TestBuildKey:

    def test_key_layout(self):
        ts = datetime(2024, 1, 1, 14, 0, 0, 123000, tzinfo=timezone.utc)
        key = ReportArtifactStore.build_key("r-1", ReportFormat.EXCEL, ReportType.REVENUE, ts)
        assert key == "reports/revenue/r-1_2024-01-01T14-00-00-123Z.xlsx"

    def test_key_accepts_strings(self):
        ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
        key = ReportArtifactStore.build_key("r-2", "csv", "CUSTOM", ts)
        assert key == "reports/custom/r-2_2024-01-01T00-00-00-000Z.csv"

    def test_offset_timestamps_are_converted_to_utc(self):
        ts = datetime(2024, 1, 1, 21, 0, tzinfo=timezone(timedelta(hours=7)))
        key = ReportArtifactStore.build_key("r-3", ReportFormat.PDF, ReportType.MEMBERS, ts)
        assert key == "reports/members/r-3_2024-01-01T14-00-00-000Z.pdf"


class TestConfiguration:

    def test_missing_settings_are_reported(self):
        store = ReportArtifactStore(bucket_name=None, access_key_id="key")
        result = store.validate_configuration()

        assert not store.is_configured
        assert result["valid"] is False
        assert result["missing"] == ["AWS_SECRET_ACCESS_KEY", "AWS_S3_BUCKET_NAME"]

    def test_valid_configuration(self, artifact_store):
        assert artifact_store.is_configured
        assert artifact_store.validate_configuration() == {
            "valid": True,
            "bucket": "gym147-reports",
            "region": "ap-southeast-1",
        }

    @pytest.mark.asyncio
    async def test_unconfigured_upload_returns_none(self):
        store = ReportArtifactStore(bucket_name=None)
        assert await store.upload_report(b"data", "r-1", "PDF", "MEMBERS") is None


class TestUpload:

    @pytest.mark.asyncio
    async def test_upload_and_presign(self, artifact_store, s3_client):
        url = await artifact_store.upload_report(b"%PDF-1.4", "r-1", ReportFormat.PDF, ReportType.MEMBERS)

        assert url == "https://gym147-reports.s3.amazonaws.com/signed"

        put_kwargs = s3_client.put_object.call_args.kwargs
        assert put_kwargs["Bucket"] == "gym147-reports"
        assert put_kwargs["Key"] == "reports/members/r-1_2024-01-01T14-00-00-000Z.pdf"
        assert put_kwargs["Body"] == b"%PDF-1.4"
        assert put_kwargs["ContentType"] == "application/pdf"
        assert put_kwargs["Metadata"] == {
            "reportId": "r-1",
            "reportType": "MEMBERS",
            "format": "PDF",
            "generatedAt": "2024-01-01T14:00:00.000Z",
        }

        s3_client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "gym147-reports", "Key": put_kwargs["Key"]},
            ExpiresIn=3600,
        )

    @pytest.mark.asyncio
    async def test_boto_errors_are_wrapped(self, artifact_store, s3_client):
        s3_client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )

        with pytest.raises(ArtifactStoreError, match="r-1"):
            await artifact_store.upload_report(b"x", "r-1", "CSV", "MEMBERS")
