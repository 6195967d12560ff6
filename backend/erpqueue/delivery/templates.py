from __future__ import annotations

from typing import Any

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateNotFound, select_autoescape

_TEMPLATES: dict[str, dict[str, str]] = {
    "welcome": {
        "subject": "Welcome to {{ school_name }}",
        "html": """
<h1>Welcome {{ name }}!</h1>
<p>Thank you for registering with {{ school_name }}.</p>
<p>You can now log in to your account and start using the platform.</p>
""",
    },
    "password-reset": {
        "subject": "Password Reset Request",
        "html": """
<h1>Hello {{ name }},</h1>
<p>You requested to reset your password.</p>
<p>Click the link below to reset your password:</p>
<a href="{{ reset_url }}">Reset Password</a>
<p>This link will expire in 1 hour.</p>
<p>If you didn't request this, please ignore this email.</p>
""",
    },
    "admission-confirmation": {
        "subject": "Admission Confirmation",
        "html": """
<h1>Admission Confirmed</h1>
<p>Dear Parent/Guardian,</p>
<p>We are pleased to inform you that <strong>{{ student_name }}</strong> has been successfully admitted to our school.</p>
<h3>Admission Details:</h3>
<ul>
  <li>Admission Number: {{ admission_no }}</li>
  <li>Standard: {{ standard }}</li>
</ul>
<p>Welcome to our school family!</p>
""",
    },
    "fee-payment-confirmation": {
        "subject": "Fee Payment Confirmation",
        "html": """
<h1>Payment Received</h1>
<p>Thank you for your payment.</p>
<h3>Payment Details:</h3>
<ul>
  <li>Receipt Number: {{ receipt_no }}</li>
  <li>Amount: {{ amount }}</li>
  <li>Date: {{ payment_date }}</li>
</ul>
<p>This is an automated confirmation email.</p>
""",
    },
    "exam-result": {
        "subject": "Exam Results - {{ exam_name }}",
        "html": """
<h1>Exam Results Available</h1>
<p>Dear Parent/Guardian,</p>
<p>The results for <strong>{{ exam_name }}</strong> are now available.</p>
<h3>Result Summary for {{ student_name }}:</h3>
<ul>
  <li>Total Marks: {{ total_marks }}</li>
  <li>Obtained Marks: {{ obtained_marks }}</li>
  <li>Percentage: {{ "%.2f"|format(percentage|float) }}%</li>
</ul>
<p>Please log in to view detailed subject-wise marks.</p>
""",
    },
    "leave-status": {
        "subject": "Leave Request {{ status }}",
        "html": """
<h1>Leave Request Update</h1>
<p>Dear {{ name }},</p>
<p>Your leave request has been <strong>{{ status }}</strong>.</p>
<h3>Leave Details:</h3>
<ul>
  <li>Leave Type: {{ leave_type }}</li>
  <li>Status: {{ status }}</li>
  {% if reason is defined and reason %}<li>Reason: {{ reason }}</li>{% endif %}
</ul>
""",
    },
    "attendance-alert": {
        "subject": "Low Attendance Alert",
        "html": """
<h1>Attendance Alert</h1>
<p>Dear Parent/Guardian,</p>
<p>This is to inform you that <strong>{{ student_name }}</strong>'s attendance has fallen below the required threshold.</p>
<p>Current Attendance: <strong>{{ "%.2f"|format(attendance_percentage|float) }}%</strong></p>
<p>Minimum Required: <strong>75%</strong></p>
<p>Please ensure regular attendance.</p>
""",
    },
    "notice": {
        "subject": "Notice: {{ title }}",
        "html": """
<h1>{{ title }}</h1>
<p>{{ description }}</p>
<p>Please check the school portal for more details.</p>
""",
    },
    "event-reminder": {
        "subject": "Event Reminder: {{ event_name }}",
        "html": """
<h1>Event Reminder</h1>
<p>This is a reminder for the upcoming event:</p>
<h3>Event Details:</h3>
<ul>
  <li>Event: {{ event_name }}</li>
  <li>Date: {{ event_date }}</li>
  <li>Venue: {{ venue }}</li>
</ul>
<p>We look forward to your participation!</p>
""",
    },
    "salary-slip": {
        "subject": "Salary Slip - {{ month_name }} {{ year }}",
        "html": """
<h1>Salary Slip</h1>
<p>Dear {{ employee_name }},</p>
<p>Your salary slip for {{ month_name }} {{ year }} is ready.</p>
<p>Please log in to the portal to view and download your salary slip.</p>
""",
    },
}

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


def _loader_mapping() -> dict[str, str]:
    out: dict[str, str] = {}
    for name, parts in _TEMPLATES.items():
        out[f"{name}.subject"] = parts["subject"]
        out[f"{name}.html"] = parts["html"].strip()
    return out


_ENV = Environment(
    loader=DictLoader(_loader_mapping()),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=True),
    undefined=StrictUndefined,
)
# Subjects are plain text; never HTML-escape them.
_SUBJECT_ENV = Environment(loader=DictLoader(_loader_mapping()), autoescape=False, undefined=StrictUndefined)


def template_names() -> list[str]:
    return sorted(_TEMPLATES)


def render_template(name: str, context: dict[str, Any] | None = None, *, school_name: str = "School ERP") -> tuple[str, str]:
    """Returns ``(subject, html)`` for a built-in template.

    Raises ``KeyError`` for unknown templates and ``jinja2.UndefinedError``
    when the context lacks a variable the template uses.
    """
    if name not in _TEMPLATES:
        raise KeyError(f"unknown email template: {name}")

    ctx: dict[str, Any] = {"school_name": school_name}
    ctx.update(context or {})
    month = ctx.get("month")
    if "month_name" not in ctx and isinstance(month, int) and 1 <= month <= 12:
        ctx["month_name"] = _MONTH_NAMES[month - 1]

    try:
        subject = _SUBJECT_ENV.get_template(f"{name}.subject").render(**ctx)
        html = _ENV.get_template(f"{name}.html").render(**ctx)
    except TemplateNotFound as exc:
        raise KeyError(f"unknown email template: {name}") from exc
    return subject.strip(), html
