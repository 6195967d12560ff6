from __future__ import annotations

from typing import Any

from erpqueue.delivery.sms import SmsTransport
from erpqueue.jobs.errors import DeliveryError
from erpqueue.jobs.handlers.payload import recipient_list, require_object, require_str, send_to_all


def _sender(transport: SmsTransport, message: str):
    async def _send_one(to: str) -> bool:
        ok = await transport.send(to, message)
        if ok is False:
            raise DeliveryError("sms transport reported failure", recipient=to)
        return True

    return _send_one


def build_send_sms_handler(transport: SmsTransport):
    async def _handler(payload: Any) -> None:
        data = require_object(payload)
        recipients = recipient_list(data.get("to"), key="to")
        message = require_str(data, "message")
        await send_to_all(recipients, _sender(transport, message), channel="sms")

    return _handler


def build_send_bulk_sms_handler(transport: SmsTransport):
    async def _handler(payload: Any) -> None:
        data = require_object(payload)
        recipients = recipient_list(data.get("recipients"), key="recipients")
        message = require_str(data, "message")
        await send_to_all(recipients, _sender(transport, message), channel="sms")

    return _handler
