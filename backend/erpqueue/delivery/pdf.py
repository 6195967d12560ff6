from __future__ import annotations

import asyncio
import hashlib
import json
import re
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from erpqueue.core.logging import get_logger
from erpqueue.core.time import iso_utc_ms

log = get_logger(__name__)

REPORT_CARD = "report-card"
FEE_RECEIPT = "fee-receipt"
SALARY_SLIP = "salary-slip"
ATTENDANCE_REPORT = "attendance-report"

_MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


class DocumentRenderer(Protocol):
    async def render(self, kind: str, data: dict[str, Any]) -> str: ...


def _s(value: Any, default: str = "-") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _num(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _money(value: Any) -> str:
    return f"Rs. {_s(value, '0')}"


def _safe(value: Any) -> str:
    return _SAFE_NAME.sub("_", _s(value, "x"))[:40]


def document_filename(kind: str, data: dict[str, Any], *, ident: Any = None) -> str:
    """Deterministic in ``(kind, data)`` so a retried job rewrites the same file."""
    canonical = json.dumps(data, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{kind}\n{canonical}".encode("utf-8")).hexdigest()[:12]
    return f"{kind}-{_safe(ident)}-{digest}.pdf"


class _Page:
    """Top-down text cursor over a reportlab canvas with automatic page breaks."""

    def __init__(self, c: canvas.Canvas) -> None:
        self.c = c
        self.width, self.height = A4
        self.left = 20 * mm
        self.y = self.height - 20 * mm

    def _ensure(self, needed: float) -> None:
        if self.y - needed < 20 * mm:
            self.c.showPage()
            self.y = self.height - 20 * mm

    def center(self, text: str, *, size: float = 12, bold: bool = False) -> None:
        self._ensure(size + 4)
        self.c.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        self.c.drawCentredString(self.width / 2, self.y, text)
        self.y -= size + 6

    def line(self, text: str, *, size: float = 11, x: float | None = None, bold: bool = False) -> None:
        self._ensure(size + 4)
        self.c.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        self.c.drawString(self.left if x is None else x, self.y, text)
        self.y -= size + 5

    def row(self, cells: list[str], widths: list[float], *, size: float = 9, bold: bool = False) -> None:
        self._ensure(size + 4)
        self.c.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        x = self.left
        for cell, w in zip(cells, widths):
            self.c.drawCentredString(x + w / 2, self.y, cell)
            x += w
        self.y -= size + 5

    def gap(self, amount: float = 8) -> None:
        self.y -= amount


class ReportLabRenderer:
    def __init__(self, output_dir: str | Path, *, school_name: str = "School ERP") -> None:
        self.output_dir = Path(output_dir)
        self.school_name = school_name
        self._layouts: dict[str, Callable[[_Page, dict[str, Any]], Any]] = {
            REPORT_CARD: self._report_card,
            FEE_RECEIPT: self._fee_receipt,
            SALARY_SLIP: self._salary_slip,
            ATTENDANCE_REPORT: self._attendance_report,
        }

    def kinds(self) -> list[str]:
        return sorted(self._layouts)

    async def render(self, kind: str, data: dict[str, Any]) -> str:
        if kind not in self._layouts:
            raise ValueError(f"unknown document kind: {kind}")
        if not isinstance(data, dict):
            raise ValueError("document data must be an object")
        return await asyncio.to_thread(self.render_sync, kind, data)

    def render_sync(self, kind: str, data: dict[str, Any]) -> str:
        layout = self._layouts[kind]
        self.output_dir.mkdir(parents=True, exist_ok=True)
        filepath = self.output_dir / document_filename(kind, data, ident=self._ident(kind, data))

        # One temp file per render; readers only ever see complete files.
        with tempfile.NamedTemporaryFile(
            dir=self.output_dir, prefix=f"{filepath.stem}.", suffix=".pdf.tmp", delete=False
        ) as tmp:
            tmp_path = Path(tmp.name)
        try:
            c = canvas.Canvas(str(tmp_path), pagesize=A4)
            c.setAuthor(self.school_name)
            c.setTitle(kind.replace("-", " ").title())
            page = _Page(c)
            layout(page, data)
            c.showPage()
            c.save()
            tmp_path.replace(filepath)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        log.info("pdf_rendered kind=%s path=%s", kind, filepath)
        return str(filepath)

    @staticmethod
    def _ident(kind: str, data: dict[str, Any]) -> Any:
        if kind == REPORT_CARD:
            return (data.get("studentData") or {}).get("admission_no")
        if kind == FEE_RECEIPT:
            return (data.get("receiptData") or {}).get("receipt_no")
        if kind == SALARY_SLIP:
            p = data.get("payrollData") or {}
            return f"{_s(p.get('employee_id'), 'x')}-{_s(p.get('month'), 'x')}-{_s(p.get('year'), 'x')}"
        return (data.get("reportData") or {}).get("standard")

    def _header(self, page: _Page, title: str, subtitle: str | None = None) -> None:
        page.center(self.school_name, size=18, bold=True)
        page.center(title, size=14)
        if subtitle:
            page.center(subtitle, size=12)
        page.gap(12)

    def _report_card(self, page: _Page, data: dict[str, Any]) -> None:
        student = data.get("studentData") or {}
        results = data.get("examResults") or []

        self._header(page, "Student Report Card")
        page.line(f"Name: {_s(student.get('name'))}")
        page.line(f"Admission No: {_s(student.get('admission_no'))}")
        page.line(f"Standard: {_s(student.get('standard'))}")
        page.line(f"Section: {_s(student.get('section'))}")
        page.gap()

        page.line("Examination Results", size=13, bold=True)
        widths = [55 * mm, 28 * mm, 28 * mm, 20 * mm, 40 * mm]
        page.row(["Subject", "Max Marks", "Obtained", "Grade", "Remarks"], widths, size=10, bold=True)
        total = 0.0
        obtained = 0.0
        for r in results:
            if not isinstance(r, dict):
                continue
            total += _num(r.get("max_marks"))
            obtained += _num(r.get("obtained_marks"))
            page.row(
                [
                    _s(r.get("subject")),
                    _s(r.get("max_marks")),
                    _s(r.get("obtained_marks")),
                    _s(r.get("grade")),
                    _s(r.get("remarks")),
                ],
                widths,
            )
        page.gap()
        percentage = (obtained / total * 100.0) if total > 0 else 0.0
        page.line(f"Total Marks: {total:g}")
        page.line(f"Obtained Marks: {obtained:g}")
        page.line(f"Percentage: {percentage:.2f}%")
        page.gap()
        page.center(f"Generated on: {iso_utc_ms()[:10]}", size=9)

    def _fee_receipt(self, page: _Page, data: dict[str, Any]) -> None:
        receipt = data.get("receiptData") or {}

        self._header(page, "Fee Payment Receipt")
        page.line(f"Receipt No: {_s(receipt.get('receipt_no'))}")
        page.line(f"Date: {_s(receipt.get('payment_date'))}")
        page.gap()
        page.line(f"Student Name: {_s(receipt.get('student_name'))}")
        page.line(f"Admission No: {_s(receipt.get('admission_no'))}")
        page.line(f"Standard: {_s(receipt.get('standard'))}")
        page.line(f"Section: {_s(receipt.get('section'))}")
        page.gap(14)
        page.line("Payment Details", size=13, bold=True)
        page.line(f"Fee Type: {_s(receipt.get('fee_type'))}")
        page.line(f"Amount Paid: {_money(receipt.get('amount'))}")
        page.line(f"Payment Mode: {_s(receipt.get('payment_mode'))}")
        page.line(f"Transaction ID: {_s(receipt.get('transaction_id'), 'N/A')}")
        page.gap(30)
        page.line("______________________", size=10)
        page.line("Authorized Signature", size=10)

    def _salary_slip(self, page: _Page, data: dict[str, Any]) -> None:
        payroll = data.get("payrollData") or {}
        allowances = payroll.get("allowances") or {}
        deductions = payroll.get("deductions") or {}

        month = payroll.get("month")
        month_name = _MONTH_NAMES[month - 1] if isinstance(month, int) and 1 <= month <= 12 else _s(month)
        self._header(page, "Salary Slip", f"{month_name} {_s(payroll.get('year'))}")

        page.line(f"Employee Name: {_s(payroll.get('employee_name'))}")
        page.line(f"Employee ID: {_s(payroll.get('employee_id'))}")
        page.line(f"Designation: {_s(payroll.get('designation'))}")
        page.line(f"Department: {_s(payroll.get('department'))}")
        page.gap(14)

        earnings = [
            f"Basic Salary: {_money(payroll.get('basic_salary'))}",
            f"HRA: {_money(allowances.get('hra'))}",
            f"DA: {_money(allowances.get('da'))}",
            f"TA: {_money(allowances.get('ta'))}",
            f"Medical: {_money(allowances.get('medical'))}",
            f"Other: {_money(allowances.get('other'))}",
        ]
        deducted = [
            f"PF: {_money(deductions.get('pf'))}",
            f"ESI: {_money(deductions.get('esi'))}",
            f"TDS: {_money(deductions.get('tds'))}",
            f"Loan: {_money(deductions.get('loan'))}",
            f"Other: {_money(deductions.get('other'))}",
        ]
        right = page.left + 85 * mm
        top = page.y
        page.line("Earnings", size=12, bold=True)
        for text in earnings:
            page.line(text, size=10)
        bottom = page.y
        page.y = top
        page.line("Deductions", size=12, bold=True, x=right)
        for text in deducted:
            page.line(text, size=10, x=right)
        page.y = min(bottom, page.y)
        page.gap(12)

        top = page.y
        page.line(f"Gross Salary: {_money(payroll.get('gross_salary'))}")
        page.y = top
        page.line(f"Total Deductions: {_money(payroll.get('total_deductions'))}", x=right)
        page.gap(8)
        page.center(f"Net Salary: {_money(payroll.get('net_salary'))}", size=14, bold=True)
        page.gap(24)
        page.center("This is a computer-generated document.", size=9)

    def _attendance_report(self, page: _Page, data: dict[str, Any]) -> None:
        report = data.get("reportData") or {}
        records = data.get("attendanceRecords") or []

        self._header(page, "Attendance Report", f"{_s(report.get('month'))} {_s(report.get('year'))}")
        page.line(f"Standard: {_s(report.get('standard'))}")
        page.line(f"Section: {_s(report.get('section'))}")
        page.line(f"Total Students: {_s(report.get('total_students'))}")
        page.gap(14)

        page.line("Attendance Summary", size=13, bold=True)
        widths = [40 * mm, 28 * mm, 28 * mm, 28 * mm, 28 * mm]
        page.row(["Date", "Present", "Absent", "Leave", "Percentage"], widths, size=10, bold=True)
        for r in records:
            if not isinstance(r, dict):
                continue
            page.row(
                [
                    _s(r.get("date"))[:10],
                    _s(r.get("present"), "0"),
                    _s(r.get("absent"), "0"),
                    _s(r.get("leave"), "0"),
                    f"{_s(r.get('percentage'), '0')}%",
                ],
                widths,
            )
