from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from erpqueue.delivery.pdf import (
    ATTENDANCE_REPORT,
    FEE_RECEIPT,
    REPORT_CARD,
    SALARY_SLIP,
    ReportLabRenderer,
    document_filename,
)

REPORT_CARD_DATA = {
    "studentData": {"name": "Asha Rao", "admission_no": "A-101", "standard": "8", "section": "B"},
    "examResults": [
        {"subject": "Maths", "max_marks": 100, "obtained_marks": 91, "grade": "A1"},
        {"subject": "Science", "max_marks": 100, "obtained_marks": 84, "grade": "A2", "remarks": "Good"},
    ],
}


def test_renders_each_layout(tmp_path: Path) -> None:
    renderer = ReportLabRenderer(tmp_path / "pdfs", school_name="Green Valley School")
    samples = {
        REPORT_CARD: REPORT_CARD_DATA,
        FEE_RECEIPT: {"receiptData": {"receipt_no": "R-9", "amount": 1500, "student_name": "Asha"}},
        SALARY_SLIP: {
            "payrollData": {
                "employee_name": "K. Iyer",
                "employee_id": "E-7",
                "month": 2,
                "year": 2026,
                "allowances": {"hra": 1000},
                "deductions": {"pf": 200},
                "net_salary": 25000,
            }
        },
        ATTENDANCE_REPORT: {
            "reportData": {"standard": "8", "section": "B", "month": "February", "year": 2026},
            "attendanceRecords": [{"date": "2026-02-02", "present": 30, "absent": 2, "leave": 0, "percentage": 93.75}],
        },
    }
    for kind, data in samples.items():
        path = Path(asyncio.run(renderer.render(kind, data)))
        assert path.exists()
        assert path.parent == tmp_path / "pdfs"
        assert path.name.startswith(kind + "-")
        assert path.read_bytes()[:5] == b"%PDF-"


def test_same_input_overwrites_same_file(tmp_path: Path) -> None:
    renderer = ReportLabRenderer(tmp_path)
    first = asyncio.run(renderer.render(REPORT_CARD, REPORT_CARD_DATA))
    second = asyncio.run(renderer.render(REPORT_CARD, REPORT_CARD_DATA))
    assert first == second
    assert len(list(tmp_path.glob("*.pdf"))) == 1
    assert not list(tmp_path.glob("*.tmp"))


def test_concurrent_renders_of_one_document_do_not_share_temp_files(tmp_path: Path) -> None:
    renderer = ReportLabRenderer(tmp_path)

    async def _run() -> list[str]:
        return list(await asyncio.gather(*(renderer.render(REPORT_CARD, REPORT_CARD_DATA) for _ in range(4))))

    paths = asyncio.run(_run())
    assert len(set(paths)) == 1
    assert Path(paths[0]).read_bytes()[:5] == b"%PDF-"
    assert Path(paths[0]).read_bytes().rstrip().endswith(b"%%EOF")
    assert not list(tmp_path.glob("*.tmp"))


def test_failed_render_leaves_no_temp_file(tmp_path: Path) -> None:
    renderer = ReportLabRenderer(tmp_path)

    def _broken(_page, _data) -> None:
        raise RuntimeError("layout failed")

    renderer._layouts[FEE_RECEIPT] = _broken
    with pytest.raises(RuntimeError):
        asyncio.run(renderer.render(FEE_RECEIPT, {"receiptData": {"receipt_no": "R-1"}}))
    assert list(tmp_path.iterdir()) == []


def test_filename_depends_on_content() -> None:
    a = document_filename(FEE_RECEIPT, {"receiptData": {"receipt_no": "R-1"}}, ident="R-1")
    b = document_filename(FEE_RECEIPT, {"receiptData": {"receipt_no": "R-1", "amount": 5}}, ident="R-1")
    assert a != b
    assert a.startswith("fee-receipt-R-1-")
    assert "/" not in document_filename(FEE_RECEIPT, {"x": 1}, ident="../../etc")


def test_unknown_kind_is_rejected(tmp_path: Path) -> None:
    renderer = ReportLabRenderer(tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(renderer.render("id-card", {}))
