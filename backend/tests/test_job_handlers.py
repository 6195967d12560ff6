from __future__ import annotations

import asyncio
from typing import Any

import pytest

from erpqueue.delivery.mail import EmailMessage, LogEmailTransport
from erpqueue.delivery.sms import LogSmsTransport
from erpqueue.jobs.errors import DeliveryError, JobPermanentError
from erpqueue.jobs.handlers.email import build_send_bulk_email_handler, build_send_email_handler
from erpqueue.jobs.handlers.report import build_report_handler
from erpqueue.jobs.handlers.sms import build_send_bulk_sms_handler, build_send_sms_handler


class _FlakyEmail:
    def __init__(self, bad: set[str], *, reject: bool = False) -> None:
        self.bad = bad
        self.reject = reject
        self.attempted: list[str] = []

    async def send(self, message: EmailMessage) -> bool:
        self.attempted.append(message.to)
        if message.to in self.bad:
            if self.reject:
                return False
            raise ConnectionError("smtp reset")
        return True


class _FlakySms:
    def __init__(self, bad: set[str]) -> None:
        self.bad = bad
        self.attempted: list[str] = []

    async def send(self, to: str, message: str) -> bool:
        self.attempted.append(to)
        if to in self.bad:
            raise DeliveryError("twilio 500", recipient=to)
        return True


class _FakeRenderer:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def render(self, kind: str, data: dict[str, Any]) -> str:
        self.calls.append((kind, data))
        return f"/pdfs/{kind}.pdf"


def test_send_email_with_inline_html() -> None:
    transport = LogEmailTransport()
    handler = build_send_email_handler(transport)
    asyncio.run(handler({"to": "parent@x.org", "subject": "Hi", "html": "<p>hello</p>"}))
    assert [m.to for m in transport.sent] == ["parent@x.org"]
    assert transport.sent[0].subject == "Hi"


def test_send_email_renders_template() -> None:
    transport = LogEmailTransport()
    handler = build_send_email_handler(transport, school_name="Green Valley School")
    asyncio.run(
        handler(
            {
                "to": "parent@x.org",
                "template": "fee-payment-confirmation",
                "context": {"receipt_no": "R-17", "amount": 1500, "payment_date": "2026-02-10"},
            }
        )
    )
    msg = transport.sent[0]
    assert msg.subject == "Fee Payment Confirmation"
    assert "R-17" in msg.html


def test_send_email_payload_errors_are_permanent() -> None:
    handler = build_send_email_handler(LogEmailTransport())
    with pytest.raises(JobPermanentError):
        asyncio.run(handler({"subject": "x", "html": "y"}))
    with pytest.raises(JobPermanentError):
        asyncio.run(handler({"to": "a@x.org", "subject": "x"}))
    with pytest.raises(JobPermanentError):
        asyncio.run(handler({"to": "a@x.org", "template": "no-such-template"}))
    with pytest.raises(JobPermanentError):
        asyncio.run(handler({"to": "a@x.org", "template": "welcome", "context": {}}))
    with pytest.raises(JobPermanentError):
        asyncio.run(handler(["not", "an", "object"]))


def test_transport_returning_false_is_a_failure() -> None:
    transport = _FlakyEmail({"a@x.org"}, reject=True)
    handler = build_send_email_handler(transport)
    with pytest.raises(DeliveryError):
        asyncio.run(handler({"to": "a@x.org", "subject": "x", "html": "y"}))


def test_bulk_email_attempts_everyone_then_fails_whole_job() -> None:
    transport = _FlakyEmail({"b@x.org"})
    handler = build_send_bulk_email_handler(transport)
    payload = {"recipients": ["a@x.org", "b@x.org", "c@x.org"], "subject": "Notice", "html": "<p>x</p>"}

    with pytest.raises(DeliveryError):
        asyncio.run(handler(payload))
    assert sorted(transport.attempted) == ["a@x.org", "b@x.org", "c@x.org"]

    # A retry resends to every recipient, including those already delivered.
    transport.bad.clear()
    asyncio.run(handler(payload))
    assert sorted(transport.attempted) == ["a@x.org", "a@x.org", "b@x.org", "b@x.org", "c@x.org", "c@x.org"]


def test_bulk_email_requires_recipients() -> None:
    handler = build_send_bulk_email_handler(LogEmailTransport())
    with pytest.raises(JobPermanentError):
        asyncio.run(handler({"recipients": [], "subject": "x", "html": "y"}))


def test_send_sms_and_bulk_sms() -> None:
    transport = LogSmsTransport()
    asyncio.run(build_send_sms_handler(transport)({"to": "+15550001", "message": "Fee due"}))
    asyncio.run(build_send_bulk_sms_handler(transport)({"recipients": ["+1", "+2"], "message": "Holiday"}))
    assert transport.sent == [("+15550001", "Fee due"), ("+1", "Holiday"), ("+2", "Holiday")]

    with pytest.raises(JobPermanentError):
        asyncio.run(build_send_sms_handler(transport)({"to": "+1"}))


def test_bulk_sms_is_all_or_nothing() -> None:
    transport = _FlakySms({"+2"})
    handler = build_send_bulk_sms_handler(transport)
    with pytest.raises(DeliveryError):
        asyncio.run(handler({"recipients": ["+1", "+2", "+3"], "message": "x"}))
    assert sorted(transport.attempted) == ["+1", "+2", "+3"]


def test_report_handler_returns_filepath() -> None:
    renderer = _FakeRenderer()
    handler = build_report_handler(renderer, "report-card")
    result = asyncio.run(handler({"studentData": {"name": "Asha"}, "examResults": [], "extra": 1}))
    assert result == {"filepath": "/pdfs/report-card.pdf"}
    assert renderer.calls == [("report-card", {"studentData": {"name": "Asha"}, "examResults": []})]


def test_report_handler_validates_payload_shape() -> None:
    handler = build_report_handler(_FakeRenderer(), "attendance-report")
    with pytest.raises(JobPermanentError):
        asyncio.run(handler({"reportData": {}}))
    with pytest.raises(JobPermanentError):
        asyncio.run(handler({"reportData": [], "attendanceRecords": []}))
