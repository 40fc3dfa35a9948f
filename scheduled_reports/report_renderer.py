"""
Report Renderer

Turns aggregated report data into PDF, Excel or CSV bytes. Rendering is pure:
no network calls, no filesystem access, and the "generated at" timestamp
comes from an injectable clock so identical inputs give identical output.
"""

import io
import json
import re
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from xml.sax.saxutils import escape

import pandas as pd
import structlog
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, Preformatted, SimpleDocTemplate, Spacer

from .errors import ReportConfigurationError
from .models import ReportFormat, ReportType, utcnow

logger = structlog.get_logger(__name__)

# Detail rows listed in paginated documents; spreadsheets and CSV carry everything
DOCUMENT_ROW_LIMIT = 50
REVENUE_DOCUMENT_ROW_LIMIT = 30

CURRENCY_SYMBOL = "₫"  # VND
FOOTER_TEXT = "Gym147 - Automated Report System"
HEADER_FILL = PatternFill(fill_type="solid", fgColor="FFE0E0E0")
_CORE_MODIFIED = re.compile(r"(<dcterms:modified[^>]*>)[^<]*(</dcterms:modified>)")

ReportTypeLike = Union[ReportType, str, None]


# ============================================================================
# Locale formatting (vi-VN, VND, UTC)
# ============================================================================

def format_currency(amount: Any) -> str:
    """Format an amount as VND the way vi-VN does: ``1.234.567 ₫``"""
    try:
        value = Decimal(str(amount if amount not in (None, "") else 0))
    except InvalidOperation:
        value = Decimal(0)

    rounded = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    grouped = f"{abs(rounded):,}".replace(",", ".")
    sign = "-" if rounded < 0 else ""
    return f"{sign}{grouped}\u00a0{CURRENCY_SYMBOL}"


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(value: Any) -> Optional[str]:
    """``d/m/yyyy`` in UTC, or None when the value is not a date"""
    parsed = _to_datetime(value)
    if parsed is None:
        return None
    return f"{parsed.day}/{parsed.month}/{parsed.year}"


def format_datetime(value: Any) -> Optional[str]:
    """``HH:MM:SS d/m/yyyy`` in UTC, or None when the value is not a date"""
    parsed = _to_datetime(value)
    if parsed is None:
        return None
    return f"{parsed:%H:%M:%S} {parsed.day}/{parsed.month}/{parsed.year}"


def _field(record: Any, *keys: str) -> Any:
    if not isinstance(record, Mapping):
        return None
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


# ============================================================================
# Layouts
# ============================================================================

@dataclass(frozen=True)
class Column:
    """One column of a tabular report"""
    header: str
    getter: Callable[[Any], Any]
    width: int = 15
    numeric: bool = False

    def value(self, record: Any, placeholder: Any) -> Any:
        value = self.getter(record)
        if value is None:
            return 0 if self.numeric else placeholder
        return value


@dataclass(frozen=True)
class ListLayout:
    """How a list-shaped report (members, classes, equipment) is laid out"""
    label: str
    detail_heading: str
    title: Callable[[Any], Any]
    detail_lines: Tuple[Tuple[str, Callable[[Any], str]], ...]
    columns: Tuple[Column, ...]

    @property
    def empty_message(self) -> str:
        return f"No {self.label.lower()} found."


def _text(value: Any, placeholder: str = "N/A") -> str:
    return placeholder if value is None else str(value)


LIST_LAYOUTS: Dict[ReportType, ListLayout] = {
    ReportType.MEMBERS: ListLayout(
        label="Members",
        detail_heading="Member Details",
        title=lambda r: _field(r, "full_name", "name"),
        detail_lines=(
            ("Email", lambda r: _text(_field(r, "email"))),
            ("Status", lambda r: _text(_field(r, "membership_status"))),
            ("Type", lambda r: _text(_field(r, "membership_type"))),
        ),
        columns=(
            Column("ID", lambda r: _field(r, "id", "membership_number")),
            Column("Full Name", lambda r: _field(r, "full_name"), width=30),
            Column("Email", lambda r: _field(r, "email"), width=30),
            Column("Status", lambda r: _field(r, "membership_status")),
            Column("Type", lambda r: _field(r, "membership_type")),
            Column("Joined At", lambda r: format_date(_field(r, "joined_at")), width=20),
        ),
    ),
    ReportType.CLASSES: ListLayout(
        label="Classes",
        detail_heading="Class Details",
        title=lambda r: _field(r, "name"),
        detail_lines=(
            ("Category", lambda r: _text(_field(r, "category"))),
            ("Difficulty", lambda r: _text(_field(r, "difficulty"))),
            ("Duration", lambda r: f"{_field(r, 'duration') or 0} minutes"),
            ("Max Capacity", lambda r: str(_field(r, "max_capacity") or 0)),
        ),
        columns=(
            Column("ID", lambda r: _field(r, "id")),
            Column("Name", lambda r: _field(r, "name"), width=30),
            Column("Category", lambda r: _field(r, "category")),
            Column("Difficulty", lambda r: _field(r, "difficulty")),
            Column("Duration", lambda r: _field(r, "duration"), numeric=True),
            Column("Capacity", lambda r: _field(r, "max_capacity"), numeric=True),
        ),
    ),
    ReportType.EQUIPMENT: ListLayout(
        label="Equipment",
        detail_heading="Equipment Details",
        title=lambda r: _field(r, "name"),
        detail_lines=(
            ("Category", lambda r: _text(_field(r, "category"))),
            ("Status", lambda r: _text(_field(r, "status"))),
            ("Location", lambda r: _text(_field(r, "location"))),
        ),
        columns=(
            Column("ID", lambda r: _field(r, "id")),
            Column("Name", lambda r: _field(r, "name"), width=30),
            Column("Category", lambda r: _field(r, "category")),
            Column("Status", lambda r: _field(r, "status")),
            Column("Location", lambda r: _field(r, "location"), width=20),
        ),
    ),
}


def _revenue_summary(revenue: Mapping[str, Any]) -> List[Tuple[str, Any]]:
    totals = revenue.get("totals")
    if not isinstance(totals, Mapping):
        return []
    return [
        ("Total Revenue", format_currency(totals.get("total_revenue"))),
        ("Subscription Revenue", format_currency(totals.get("subscription_revenue"))),
        ("Class Revenue", format_currency(totals.get("class_revenue"))),
        ("Addon Revenue", format_currency(totals.get("addon_revenue"))),
        ("New Members", totals.get("new_members") or 0),
        ("Successful Payments", totals.get("successful_payments") or 0),
    ]


def _revenue_daily(revenue: Mapping[str, Any]) -> List[Tuple[Optional[str], str, Any]]:
    reports = revenue.get("reports")
    if not isinstance(reports, list):
        return []
    return [
        (
            format_date(_field(report, "report_date")),
            format_currency(_field(report, "total_revenue")),
            _field(report, "successful_payments") or 0,
        )
        for report in reports
    ]


def _system_rows(system: Mapping[str, Any]) -> List[Tuple[str, Any]]:
    return [
        ("Total Users", system.get("total_users") or 0),
        ("Active Users", system.get("active_users") or 0),
        ("Total Sessions", system.get("total_sessions") or 0),
        ("Generated At", format_datetime(system.get("generated_at"))),
    ]


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, default=str, ensure_ascii=False)


def _coerce_report_type(value: ReportTypeLike) -> Optional[ReportType]:
    """Known report type, or None so that unknown data still renders generically"""
    if isinstance(value, ReportType):
        return value
    try:
        return ReportType(str(value).strip().upper())
    except ValueError:
        return None


def _as_mapping(data: Any) -> Mapping[str, Any]:
    return data if isinstance(data, Mapping) else {}


def _pin_workbook_timestamps(content: bytes, generated_at: datetime) -> bytes:
    """
    Rewrite an XLSX archive so it carries only the generation timestamp.

    openpyxl stamps docProps/core.xml ``modified`` and every zip entry with
    the wall clock at save time; both are replaced with ``generated_at``
    (naive UTC) so identical inputs give identical bytes.
    """
    stamp = generated_at.strftime("%Y-%m-%dT%H:%M:%SZ")
    date_time = generated_at.timetuple()[:6]

    output = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(content)) as source, \
            zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as target:
        for info in source.infolist():
            data = source.read(info.filename)
            if info.filename == "docProps/core.xml":
                data = _CORE_MODIFIED.sub(
                    lambda m: f"{m.group(1)}{stamp}{m.group(2)}", data.decode("utf-8")
                ).encode("utf-8")
            entry = zipfile.ZipInfo(info.filename, date_time=date_time)
            entry.compress_type = zipfile.ZIP_DEFLATED
            entry.external_attr = info.external_attr
            target.writestr(entry, data)
    return output.getvalue()


# ============================================================================
# Renderer
# ============================================================================

class ReportRenderer:
    """
    Multi-format report renderer

    Each entry point dispatches on report type to a fixed layout: a title
    and summary followed by detail rows. Documents list at most
    DOCUMENT_ROW_LIMIT rows; spreadsheets and CSV hold the full data. Types
    without a dedicated layout (CUSTOM or unknown) are dumped as JSON.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow

    def render(
        self,
        report_type: ReportTypeLike,
        data: Any,
        options: Optional[Mapping[str, Any]],
        report_format: Union[ReportFormat, str],
    ) -> bytes:
        """Render to the requested format; unsupported formats are configuration errors"""
        report_format = ReportFormat.parse(report_format)

        if report_format is ReportFormat.PDF:
            content = self.to_document(report_type, data, options)
        elif report_format is ReportFormat.EXCEL:
            content = self.to_spreadsheet(report_type, data, options)
        elif report_format is ReportFormat.CSV:
            content = self.to_delimited_text(report_type, data, options)
        else:
            raise ReportConfigurationError(f"Unsupported report format: {report_format}")

        logger.debug(
            "report_rendered",
            report_type=getattr(report_type, "value", report_type),
            format=report_format.value,
            size=len(content),
        )
        return content

    def _generated_at(self, options: Mapping[str, Any]) -> datetime:
        return _to_datetime(options.get("generated_at")) or self.clock()

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    def to_document(
        self,
        report_type: ReportTypeLike,
        data: Any,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bytes:
        options = options or {}
        known_type = _coerce_report_type(report_type)
        type_label = known_type.value if known_type else str(report_type)
        title = options.get("title") or f"{type_label} Report"
        generated_at = self._generated_at(options)
        styles = self._document_styles()

        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=50,
            rightMargin=50,
            topMargin=50,
            bottomMargin=50,
            title=title,
            author="Gym147",
            invariant=1,
        )

        story: List[Any] = [
            Paragraph(escape(title), styles["title"]),
            Spacer(1, 12),
            Paragraph(f"Generated: {format_datetime(generated_at)}", styles["meta"]),
        ]

        filters = _as_mapping(options.get("filters"))
        start = format_date(filters.get("startDate") or filters.get("start_date"))
        end = format_date(filters.get("endDate") or filters.get("end_date"))
        if start:
            story.append(Paragraph(f"From: {start}", styles["meta"]))
        if end:
            story.append(Paragraph(f"To: {end}", styles["meta"]))
        story.append(Spacer(1, 24))

        story.extend(self._document_body(known_type, data, styles))

        story.append(Spacer(1, 24))
        story.append(Paragraph(FOOTER_TEXT, styles["footer"]))

        doc.build(story)
        return buffer.getvalue()

    def _document_styles(self) -> Dict[str, ParagraphStyle]:
        sample = getSampleStyleSheet()
        return {
            "title": ParagraphStyle(
                "ReportTitle", parent=sample["Heading1"], fontSize=20, leading=24, alignment=TA_CENTER
            ),
            "meta": ParagraphStyle("ReportMeta", parent=sample["Normal"], fontSize=10, alignment=TA_CENTER),
            "heading": ParagraphStyle("ReportHeading", parent=sample["Heading2"], fontSize=16, spaceAfter=6),
            "subheading": ParagraphStyle("ReportSubheading", parent=sample["Heading3"], fontSize=14, spaceAfter=6),
            "body": ParagraphStyle("ReportBody", parent=sample["Normal"], fontSize=12, leading=16),
            "row": ParagraphStyle("ReportRow", parent=sample["Normal"], fontSize=10),
            "detail": ParagraphStyle("ReportDetail", parent=sample["Normal"], fontSize=10, leftIndent=20),
            "centered": ParagraphStyle("ReportCentered", parent=sample["Normal"], fontSize=10, alignment=TA_CENTER),
            "code": ParagraphStyle("ReportCode", parent=sample["Code"], fontSize=8, leading=10),
            "footer": ParagraphStyle("ReportFooter", parent=sample["Normal"], fontSize=8, alignment=TA_CENTER),
        }

    def _document_body(
        self, report_type: Optional[ReportType], data: Any, styles: Dict[str, ParagraphStyle]
    ) -> List[Any]:
        if report_type in LIST_LAYOUTS:
            return self._document_list(LIST_LAYOUTS[report_type], data, styles)
        if report_type is ReportType.REVENUE:
            return self._document_revenue(_as_mapping(data), styles)
        if report_type is ReportType.SYSTEM:
            return self._document_system(_as_mapping(data), styles)

        return [
            Paragraph("<u>Report data:</u>", styles["body"]),
            Spacer(1, 6),
            Preformatted(_dump(data), styles["code"]),
        ]

    def _document_list(self, layout: ListLayout, records: Any, styles) -> List[Any]:
        if not isinstance(records, list) or not records:
            return [Paragraph(layout.empty_message, styles["body"])]

        story: List[Any] = [
            Paragraph(f"<u>{layout.label} Summary</u>", styles["heading"]),
            Paragraph(f"Total {layout.label}: {len(records)}", styles["body"]),
            Spacer(1, 24),
            Paragraph(f"<u>{layout.detail_heading}</u>", styles["subheading"]),
        ]

        for index, record in enumerate(records[:DOCUMENT_ROW_LIMIT], start=1):
            story.append(Paragraph(escape(f"{index}. {_text(layout.title(record))}"), styles["row"]))
            for label, getter in layout.detail_lines:
                story.append(Paragraph(escape(f"{label}: {getter(record)}"), styles["detail"]))
            story.append(Spacer(1, 4))

        remaining = len(records) - DOCUMENT_ROW_LIMIT
        if remaining > 0:
            story.append(Spacer(1, 12))
            story.append(
                Paragraph(f"... and {remaining} more {layout.label.lower()}", styles["centered"])
            )
        return story

    def _document_revenue(self, revenue: Mapping[str, Any], styles) -> List[Any]:
        story: List[Any] = [Paragraph("<u>Revenue Summary</u>", styles["heading"])]

        for label, value in _revenue_summary(revenue):
            story.append(Paragraph(escape(f"{label}: {value}"), styles["body"]))

        daily = _revenue_daily(revenue)
        if daily:
            story.append(Spacer(1, 24))
            story.append(Paragraph("<u>Daily Reports</u>", styles["subheading"]))
            for report_date, amount, payments in daily[:REVENUE_DOCUMENT_ROW_LIMIT]:
                story.append(
                    Paragraph(
                        escape(f"{_text(report_date)}: {amount} ({payments} payments)"),
                        styles["row"],
                    )
                )
        return story

    def _document_system(self, system: Mapping[str, Any], styles) -> List[Any]:
        story: List[Any] = [Paragraph("<u>System Summary</u>", styles["heading"])]
        for label, value in _system_rows(system):
            story.append(Paragraph(escape(f"{label}: {_text(value)}"), styles["body"]))
        return story

    # ------------------------------------------------------------------
    # Excel
    # ------------------------------------------------------------------

    def to_spreadsheet(
        self,
        report_type: ReportTypeLike,
        data: Any,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bytes:
        options = options or {}
        known_type = _coerce_report_type(report_type)
        sheet_name = (known_type.value if known_type else str(report_type or "Report"))[:31]
        generated_at = self._generated_at(options).astimezone(timezone.utc).replace(tzinfo=None)

        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            if known_type in LIST_LAYOUTS:
                self._spreadsheet_list(writer, sheet_name, LIST_LAYOUTS[known_type], data)
            elif known_type is ReportType.REVENUE:
                self._spreadsheet_revenue(writer, sheet_name, _as_mapping(data))
            elif known_type is ReportType.SYSTEM:
                frame = pd.DataFrame(
                    [(label, _text(value)) for label, value in _system_rows(_as_mapping(data))],
                    columns=["Metric", "Value"],
                )
                frame.to_excel(writer, sheet_name=sheet_name, index=False)
                self._style_sheet(writer.sheets[sheet_name], [25, 20], header_row=1)
            else:
                frame = pd.DataFrame([["Report Data"], [_dump(data)]])
                frame.to_excel(writer, sheet_name=sheet_name, index=False, header=False)
                self._style_sheet(writer.sheets[sheet_name], [80])

            writer.book.properties.creator = "Gym147"
            writer.book.properties.created = generated_at

        return _pin_workbook_timestamps(buffer.getvalue(), generated_at)

    def _spreadsheet_list(self, writer, sheet_name: str, layout: ListLayout, records: Any):
        rows = records if isinstance(records, list) else []
        frame = pd.DataFrame(
            [[column.value(record, "N/A") for column in layout.columns] for record in rows],
            columns=[column.header for column in layout.columns],
        )
        frame.to_excel(writer, sheet_name=sheet_name, index=False)
        self._style_sheet(
            writer.sheets[sheet_name], [column.width for column in layout.columns], header_row=1
        )

    def _spreadsheet_revenue(self, writer, sheet_name: str, revenue: Mapping[str, Any]):
        summary = _revenue_summary(revenue)
        start_row = 0
        if summary:
            frame = pd.DataFrame([("Revenue Summary", "")] + summary)
            frame.to_excel(writer, sheet_name=sheet_name, index=False, header=False)
            start_row = len(summary) + 2

        daily = _revenue_daily(revenue)
        header_row = None
        if daily:
            frame = pd.DataFrame(
                [(_text(d), amount, payments) for d, amount, payments in daily],
                columns=["Date", "Revenue", "Payments"],
            )
            frame.to_excel(writer, sheet_name=sheet_name, index=False, startrow=start_row)
            header_row = start_row + 1

        if sheet_name not in writer.sheets:
            # Nothing to write; keep an empty sheet so the workbook is valid
            pd.DataFrame().to_excel(writer, sheet_name=sheet_name, index=False)
        self._style_sheet(writer.sheets[sheet_name], [25, 20, 15], header_row=header_row)
        if summary:
            writer.sheets[sheet_name].cell(row=1, column=1).font = Font(bold=True)

    @staticmethod
    def _style_sheet(worksheet, widths: Sequence[int], header_row: Optional[int] = None):
        for index, width in enumerate(widths, start=1):
            worksheet.column_dimensions[get_column_letter(index)].width = width

        if header_row is None:
            return
        for cell in worksheet[header_row]:
            cell.font = Font(bold=True)
            cell.fill = HEADER_FILL

    # ------------------------------------------------------------------
    # CSV
    # ------------------------------------------------------------------

    def to_delimited_text(
        self,
        report_type: ReportTypeLike,
        data: Any,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bytes:
        known_type = _coerce_report_type(report_type)

        if known_type in LIST_LAYOUTS:
            content = self._csv_list(LIST_LAYOUTS[known_type], data)
        elif known_type is ReportType.REVENUE:
            content = self._csv_revenue(_as_mapping(data))
        elif known_type is ReportType.SYSTEM:
            rows = [(label, _text(value, "")) for label, value in _system_rows(_as_mapping(data))]
            content = self._csv(rows, ["Metric", "Value"])
        else:
            content = _dump(data)

        return content.encode("utf-8")

    @staticmethod
    def _csv(rows: Sequence[Sequence[Any]], columns: Sequence[str]) -> str:
        return pd.DataFrame(list(rows), columns=list(columns)).to_csv(index=False, lineterminator="\n")

    def _csv_list(self, layout: ListLayout, records: Any) -> str:
        if not isinstance(records, list) or not records:
            return layout.empty_message
        rows = [[column.value(record, "") for column in layout.columns] for record in records]
        return self._csv(rows, [column.header for column in layout.columns])

    def _csv_revenue(self, revenue: Mapping[str, Any]) -> str:
        sections = []
        summary = _revenue_summary(revenue)
        if summary:
            sections.append(self._csv(summary, ["Metric", "Value"]))
        daily = _revenue_daily(revenue)
        if daily:
            rows = [(_text(d, ""), amount, payments) for d, amount, payments in daily]
            sections.append(self._csv(rows, ["Date", "Revenue", "Payments"]))
        return "\n".join(sections)
