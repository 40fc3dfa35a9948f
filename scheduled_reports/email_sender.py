"""
Report Email Sender

Delivers rendered reports to their recipients over SMTP:
- HTML body rendered from a jinja2 template
- Report artifact attached under a sanitized filename
- Optional download link to the stored artifact
- Delivery history and statistics
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Any, Callable, Dict, List, Optional, Union

import aiosmtplib
import structlog
from jinja2 import Environment

from .models import DeliveryResult, ReportFormat, ReportType, utcnow

logger = structlog.get_logger(__name__)

MAX_HISTORY = 1000

REPORT_EMAIL_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <style>
        body { font-family: Arial, sans-serif; margin: 20px; color: #212529; }
        .summary-box { background-color: #f8f9fa; padding: 15px; border-radius: 8px; margin: 10px 0; }
        .label { color: #6c757d; }
        .download { display: inline-block; padding: 10px 16px; background: #0d6efd; color: #fff; border-radius: 4px; text-decoration: none; }
    </style>
</head>
<body>
    <h2>{{ report_name }}</h2>

    <div class="summary-box">
        <p><span class="label">Report type:</span> <strong>{{ report_type }}</strong></p>
        <p><span class="label">Format:</span> <strong>{{ report_format }}</strong></p>
        <p><span class="label">Generated:</span> {{ generated_at }}</p>
    </div>

    <p>The report is attached to this email as <strong>{{ filename }}</strong>.</p>

    {% if download_url %}
    <p><a class="download" href="{{ download_url }}">Download report</a></p>
    {% endif %}

    <p><em>This is an automated email from the Gym147 Automated Report System.</em></p>
</body>
</html>
"""


@dataclass
class EmailConfig:
    """SMTP transport settings"""
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: Optional[str] = None
    use_tls: bool = True
    timeout: float = 30.0

    @property
    def sender(self) -> Optional[str]:
        return self.from_address or self.username

    def validate(self) -> bool:
        """A transport needs a host and a sender address"""
        if not self.smtp_host or not self.sender:
            return False

        if self.smtp_port not in [25, 465, 587, 2525]:
            logger.warning("unusual_smtp_port", smtp_port=self.smtp_port)

        return True


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", name)


def attachment_filename(
    report_name: str, report_format: Union[ReportFormat, str], generated_at: datetime
) -> str:
    """``<sanitized name>_<YYYY-MM-DD>.<ext>``"""
    report_format = ReportFormat.parse(report_format)
    return f"{sanitize_filename(report_name)}_{generated_at:%Y-%m-%d}.{report_format.extension}"


def report_subject(report_name: str, report_type: Union[ReportType, str]) -> str:
    type_name = report_type.value if isinstance(report_type, ReportType) else str(report_type)
    return f"[Gym147] {report_name} - {type_name.upper()} Report"


class ReportEmailSender:
    """SMTP delivery of generated reports"""

    def __init__(
        self,
        config: EmailConfig,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.clock = clock or utcnow

        self.template = Environment(autoescape=True).from_string(REPORT_EMAIL_TEMPLATE)

        self.sent_emails: List[Dict[str, Any]] = []
        self.failed_emails: List[Dict[str, Any]] = []

    @property
    def is_configured(self) -> bool:
        return self.config.validate()

    async def send_report(
        self,
        recipients: List[str],
        report_name: str,
        report_type: Union[ReportType, str],
        report_format: Union[ReportFormat, str],
        content: bytes,
        download_url: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Email a report artifact to every recipient in a single send.

        Never raises: an unconfigured transport, an empty recipient list and
        SMTP failures all come back as an unsuccessful DeliveryResult.
        """
        recipients = list(recipients or [])

        if not self.is_configured:
            logger.warning("email_transport_not_configured", report_name=report_name)
            return DeliveryResult(
                success=False, recipients=recipients, error="Email transport not configured"
            )

        if not recipients:
            logger.warning("report_has_no_recipients", report_name=report_name)
            return DeliveryResult(success=False, recipients=[], error="No recipients specified")

        try:
            message = self._create_mime_message(
                recipients, report_name, report_type, report_format, content, download_url
            )
            await self._send_via_smtp(message, recipients)

        except (aiosmtplib.SMTPException, OSError, ValueError) as e:
            error = str(e) or type(e).__name__
            logger.error(
                "report_email_failed", report_name=report_name, recipients=recipients, error=error
            )
            self._record(self.failed_emails, recipients, report_name, error=error)
            return DeliveryResult(success=False, recipients=recipients, error=error)

        message_id = message["Message-ID"]
        logger.info(
            "report_email_sent",
            report_name=report_name,
            recipients=len(recipients),
            message_id=message_id,
        )
        self._record(self.sent_emails, recipients, report_name)
        return DeliveryResult(success=True, recipients=recipients, message_id=message_id)

    def _create_mime_message(
        self,
        recipients: List[str],
        report_name: str,
        report_type: Union[ReportType, str],
        report_format: Union[ReportFormat, str],
        content: bytes,
        download_url: Optional[str],
    ) -> MIMEMultipart:
        report_format = ReportFormat.parse(report_format)
        generated_at = self.clock()
        filename = attachment_filename(report_name, report_format, generated_at)
        type_name = report_type.value if isinstance(report_type, ReportType) else str(report_type)

        msg = MIMEMultipart()
        msg['Subject'] = report_subject(report_name, report_type)
        msg['From'] = self.config.sender
        msg['To'] = ', '.join(recipients)
        msg['Date'] = formatdate(generated_at.timestamp(), usegmt=True)
        msg['Message-ID'] = make_msgid(domain="gym147.local")

        body = self.template.render(
            report_name=report_name,
            report_type=type_name.upper(),
            report_format=report_format.value,
            generated_at=generated_at.strftime("%Y-%m-%d %H:%M:%S UTC"),
            filename=filename,
            download_url=download_url,
        )
        msg.attach(MIMEText(body, 'html', 'utf-8'))

        maintype, subtype = report_format.content_type.split('/', 1)
        attachment = MIMEApplication(content, _subtype=subtype)
        attachment.replace_header('Content-Type', f'{maintype}/{subtype}')
        attachment.add_header('Content-Disposition', 'attachment', filename=filename)
        msg.attach(attachment)

        return msg

    async def _send_via_smtp(self, message: MIMEMultipart, recipients: List[str]):
        implicit_tls = self.config.use_tls and self.config.smtp_port == 465

        await aiosmtplib.send(
            message,
            recipients=recipients,
            hostname=self.config.smtp_host,
            port=self.config.smtp_port,
            username=self.config.username or None,
            password=self.config.password or None,
            use_tls=implicit_tls,
            start_tls=self.config.use_tls and not implicit_tls,
            timeout=self.config.timeout,
        )

    def _record(
        self,
        history: List[Dict[str, Any]],
        recipients: List[str],
        report_name: str,
        error: Optional[str] = None,
    ):
        record = {
            "timestamp": self.clock().isoformat(),
            "recipients": recipients,
            "report_name": report_name,
        }
        if error is not None:
            record["error"] = error

        history.append(record)

        if len(history) > MAX_HISTORY:
            del history[:-MAX_HISTORY]

    def get_email_statistics(self) -> Dict[str, Any]:
        """Get email delivery statistics"""
        total_sent = len(self.sent_emails)
        total_failed = len(self.failed_emails)
        total_attempts = total_sent + total_failed

        cutoff = self.clock() - timedelta(hours=24)
        recent_sent = [
            e for e in self.sent_emails if datetime.fromisoformat(e["timestamp"]) >= cutoff
        ]
        recent_failed = [
            e for e in self.failed_emails if datetime.fromisoformat(e["timestamp"]) >= cutoff
        ]
        recent_attempts = len(recent_sent) + len(recent_failed)

        return {
            "total": {
                "sent": total_sent,
                "failed": total_failed,
                "attempts": total_attempts,
                "success_rate_percent": (total_sent / total_attempts * 100) if total_attempts else 0,
            },
            "recent_24h": {
                "sent": len(recent_sent),
                "failed": len(recent_failed),
                "success_rate_percent": (len(recent_sent) / recent_attempts * 100) if recent_attempts else 0,
            },
            "configuration": {
                "smtp_host": self.config.smtp_host,
                "smtp_port": self.config.smtp_port,
                "use_tls": self.config.use_tls,
            },
        }
