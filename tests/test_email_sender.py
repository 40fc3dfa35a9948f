"""
Email sender tests with aiosmtplib patched out
"""

from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from scheduled_reports.email_sender import (
    EmailConfig,
    ReportEmailSender,
    attachment_filename,
    report_subject,
)
from scheduled_reports.models import ReportFormat, ReportType


@pytest.fixture
def email_config():
    return EmailConfig(
        smtp_host="smtp.gym147.vn",
        smtp_port=587,
        username="reports@gym147.vn",
        password="secret",
        from_address="reports@gym147.vn",
    )


@pytest.fixture
def sender(email_config, clock):
    return ReportEmailSender(email_config, clock=clock)


class TestMessageParts:

    def test_attachment_filename_is_sanitized(self, fixed_datetime):
        assert attachment_filename("Báo cáo tuần/Q1", "EXCEL", fixed_datetime) == "B_o_c_o_tu_n_Q1_2024-01-01.xlsx"
        assert attachment_filename("weekly-members_v2", ReportFormat.PDF, fixed_datetime) == "weekly-members_v2_2024-01-01.pdf"

    def test_subject(self):
        assert report_subject("Weekly Members", ReportType.MEMBERS) == "[Gym147] Weekly Members - MEMBERS Report"
        assert report_subject("Ad hoc", "custom") == "[Gym147] Ad hoc - CUSTOM Report"


class TestSendReport:

    @pytest.mark.asyncio
    async def test_unconfigured_transport(self, clock):
        sender = ReportEmailSender(EmailConfig(), clock=clock)

        with patch("scheduled_reports.email_sender.aiosmtplib.send", new_callable=AsyncMock) as send:
            result = await sender.send_report(["a@x.vn"], "Members", "MEMBERS", "CSV", b"data")

        assert not result.success
        assert result.error == "Email transport not configured"
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_recipients(self, sender):
        with patch("scheduled_reports.email_sender.aiosmtplib.send", new_callable=AsyncMock) as send:
            result = await sender.send_report([], "Members", "MEMBERS", "CSV", b"data")

        assert not result.success
        assert result.error == "No recipients specified"
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sends_one_message_to_all_recipients(self, sender):
        recipients = ["a@gym147.vn", "b@gym147.vn"]

        with patch("scheduled_reports.email_sender.aiosmtplib.send", new_callable=AsyncMock) as send:
            result = await sender.send_report(
                recipients,
                "Weekly Members",
                ReportType.MEMBERS,
                ReportFormat.CSV,
                b"ID,Full Name\n",
                download_url="https://example.com/report.csv",
            )

        assert result.success
        assert result.recipients == recipients
        assert result.message_id
        send.assert_awaited_once()

        message = send.call_args.args[0]
        kwargs = send.call_args.kwargs
        assert kwargs["recipients"] == recipients
        assert kwargs["hostname"] == "smtp.gym147.vn"
        assert kwargs["start_tls"] is True
        assert kwargs["use_tls"] is False

        assert message["Subject"] == "[Gym147] Weekly Members - MEMBERS Report"
        assert message["To"] == "a@gym147.vn, b@gym147.vn"
        assert message["Message-ID"] == result.message_id

        html_part, attachment = message.get_payload()
        body = html_part.get_payload(decode=True).decode("utf-8")
        assert "https://example.com/report.csv" in body
        assert "Weekly_Members_2024-01-01.csv" in body

        assert attachment.get_filename() == "Weekly_Members_2024-01-01.csv"
        assert attachment.get_content_type() == "text/csv"
        assert attachment.get_payload(decode=True) == b"ID,Full Name\n"

    @pytest.mark.asyncio
    async def test_body_without_download_link(self, sender):
        with patch("scheduled_reports.email_sender.aiosmtplib.send", new_callable=AsyncMock) as send:
            await sender.send_report(["a@gym147.vn"], "Revenue", "REVENUE", "PDF", b"%PDF")

        html_part = send.call_args.args[0].get_payload()[0]
        assert "Download report" not in html_part.get_payload(decode=True).decode("utf-8")

    @pytest.mark.asyncio
    async def test_implicit_tls_port(self, email_config, clock):
        email_config.smtp_port = 465
        sender = ReportEmailSender(email_config, clock=clock)

        with patch("scheduled_reports.email_sender.aiosmtplib.send", new_callable=AsyncMock) as send:
            await sender.send_report(["a@gym147.vn"], "Revenue", "REVENUE", "PDF", b"%PDF")

        assert send.call_args.kwargs["use_tls"] is True
        assert send.call_args.kwargs["start_tls"] is False

    @pytest.mark.asyncio
    async def test_transport_error_is_returned(self, sender):
        with patch(
            "scheduled_reports.email_sender.aiosmtplib.send",
            new_callable=AsyncMock,
            side_effect=aiosmtplib.SMTPConnectError("connection refused"),
        ):
            result = await sender.send_report(["a@gym147.vn"], "Revenue", "REVENUE", "PDF", b"%PDF")

        assert not result.success
        assert "connection refused" in result.error

        stats = sender.get_email_statistics()
        assert stats["total"]["failed"] == 1
        assert stats["total"]["sent"] == 0
