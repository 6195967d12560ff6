from __future__ import annotations

from typing import Any

from jinja2 import TemplateError

from erpqueue.delivery.mail import EmailMessage, EmailTransport
from erpqueue.delivery.templates import render_template
from erpqueue.jobs.errors import DeliveryError, JobPermanentError
from erpqueue.jobs.handlers.payload import recipient_list, require_object, send_to_all


def _compose(payload: dict[str, Any], *, school_name: str) -> tuple[str, str]:
    subject = payload.get("subject")
    html = payload.get("html")
    template = payload.get("template")

    if isinstance(template, str) and template.strip():
        context = payload.get("context") or {}
        if not isinstance(context, dict):
            raise JobPermanentError("payload.context must be an object")
        try:
            rendered_subject, rendered_html = render_template(template.strip(), context, school_name=school_name)
        except KeyError as exc:
            raise JobPermanentError(str(exc.args[0] if exc.args else exc)) from exc
        except TemplateError as exc:
            raise JobPermanentError(f"template {template} failed to render: {exc}") from exc
        subject = subject if isinstance(subject, str) and subject.strip() else rendered_subject
        html = html if isinstance(html, str) and html.strip() else rendered_html

    if not isinstance(subject, str) or not subject.strip():
        raise JobPermanentError("payload.subject is required")
    if not isinstance(html, str) or not html.strip():
        raise JobPermanentError("payload.html or payload.template is required")
    return subject.strip(), html


def _attachments(payload: dict[str, Any]) -> tuple[str, ...]:
    raw = payload.get("attachments") or []
    if not isinstance(raw, list):
        raise JobPermanentError("payload.attachments must be a list of file paths")
    return tuple(str(p) for p in raw if isinstance(p, str) and p.strip())


def _sender(transport: EmailTransport, subject: str, html: str, attachments: tuple[str, ...]):
    async def _send_one(to: str) -> bool:
        ok = await transport.send(EmailMessage(to=to, subject=subject, html=html, attachments=attachments))
        if ok is False:
            raise DeliveryError("email transport reported failure", recipient=to)
        return True

    return _send_one


def build_send_email_handler(transport: EmailTransport, *, school_name: str = "School ERP"):
    async def _handler(payload: Any) -> None:
        data = require_object(payload)
        recipients = recipient_list(data.get("to"), key="to")
        subject, html = _compose(data, school_name=school_name)
        await send_to_all(recipients, _sender(transport, subject, html, _attachments(data)), channel="email")

    return _handler


def build_send_bulk_email_handler(transport: EmailTransport, *, school_name: str = "School ERP"):
    async def _handler(payload: Any) -> None:
        data = require_object(payload)
        recipients = recipient_list(data.get("recipients"), key="recipients")
        subject, html = _compose(data, school_name=school_name)
        await send_to_all(recipients, _sender(transport, subject, html, _attachments(data)), channel="email")

    return _handler
