from __future__ import annotations

from typing import Any

from erpqueue.delivery.pdf import ATTENDANCE_REPORT, FEE_RECEIPT, REPORT_CARD, SALARY_SLIP, DocumentRenderer
from erpqueue.jobs.errors import JobPermanentError
from erpqueue.jobs.handlers.payload import require_object

_REQUIRED: dict[str, dict[str, type]] = {
    REPORT_CARD: {"studentData": dict, "examResults": list},
    FEE_RECEIPT: {"receiptData": dict},
    SALARY_SLIP: {"payrollData": dict},
    ATTENDANCE_REPORT: {"reportData": dict, "attendanceRecords": list},
}


def build_report_handler(renderer: DocumentRenderer, document: str):
    """One handler per document kind; the result carries the rendered file path."""
    required = _REQUIRED[document]

    async def _handler(payload: Any) -> dict[str, str]:
        data = require_object(payload)
        for key, typ in required.items():
            if not isinstance(data.get(key), typ):
                raise JobPermanentError(f"payload.{key} must be {'an object' if typ is dict else 'a list'}")
        filepath = await renderer.render(document, {k: data[k] for k in required})
        return {"filepath": filepath}

    return _handler
