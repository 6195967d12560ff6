from __future__ import annotations

from typing import Any

from erpqueue.jobs.policies import (
    GENERATE_ATTENDANCE_REPORT,
    GENERATE_FEE_RECEIPT,
    GENERATE_REPORT_CARD,
    GENERATE_SALARY_SLIP,
    SEND_BULK_EMAIL,
    SEND_BULK_SMS,
    SEND_EMAIL,
    SEND_SMS,
    TOPIC_EMAIL,
    TOPIC_REPORT,
    TOPIC_SMS,
    resolve_options,
)
from erpqueue.jobs.store import QueueStore


class QueueProducer:
    """Entry points business modules call to hand work to the workers.

    Every method returns the new job id once the job is durably stored; nothing
    is executed inline. Retry policy comes from ``erpqueue.jobs.policies``.
    """

    def __init__(self, store: QueueStore) -> None:
        self.store = store

    async def enqueue(
        self,
        topic: str,
        kind: str,
        payload: Any,
        *,
        delay_ms: int | None = None,
        max_attempts: int | None = None,
        backoff: object | None = None,
    ) -> int:
        options = resolve_options(topic, kind, delay_ms=delay_ms, max_attempts=max_attempts, backoff=backoff)
        return await self.store.enqueue(topic, kind, payload, options)

    async def send_email(self, payload: dict[str, Any], delay_ms: int | None = None) -> int:
        return await self.enqueue(TOPIC_EMAIL, SEND_EMAIL, payload, delay_ms=delay_ms)

    async def send_bulk_email(self, payload: dict[str, Any]) -> int:
        return await self.enqueue(TOPIC_EMAIL, SEND_BULK_EMAIL, payload)

    async def send_sms(self, payload: dict[str, Any], delay_ms: int | None = None) -> int:
        return await self.enqueue(TOPIC_SMS, SEND_SMS, payload, delay_ms=delay_ms)

    async def send_bulk_sms(self, payload: dict[str, Any]) -> int:
        return await self.enqueue(TOPIC_SMS, SEND_BULK_SMS, payload)

    async def generate_report_card(self, student_data: dict[str, Any], exam_results: list[Any]) -> int:
        return await self.enqueue(
            TOPIC_REPORT,
            GENERATE_REPORT_CARD,
            {"studentData": student_data, "examResults": exam_results},
        )

    async def generate_fee_receipt(self, receipt_data: dict[str, Any]) -> int:
        return await self.enqueue(TOPIC_REPORT, GENERATE_FEE_RECEIPT, {"receiptData": receipt_data})

    async def generate_salary_slip(self, payroll_data: dict[str, Any]) -> int:
        return await self.enqueue(TOPIC_REPORT, GENERATE_SALARY_SLIP, {"payrollData": payroll_data})

    async def generate_attendance_report(
        self,
        report_data: dict[str, Any],
        attendance_records: list[Any],
    ) -> int:
        return await self.enqueue(
            TOPIC_REPORT,
            GENERATE_ATTENDANCE_REPORT,
            {"reportData": report_data, "attendanceRecords": attendance_records},
        )

    async def get_stats(self, topic: str) -> dict[str, int]:
        topic = (topic or "").strip()
        if not topic:
            raise ValueError("topic is required")
        return await self.store.stats(topic)
