from __future__ import annotations

from dataclasses import dataclass

from erpqueue.jobs.backoff import NO_BACKOFF, BackoffPolicy

TOPIC_EMAIL = "email"
TOPIC_SMS = "sms"
TOPIC_REPORT = "report"

SEND_EMAIL = "send-email"
SEND_BULK_EMAIL = "send-bulk-email"
SEND_SMS = "send-sms"
SEND_BULK_SMS = "send-bulk-sms"
GENERATE_REPORT_CARD = "generate-report-card"
GENERATE_FEE_RECEIPT = "generate-fee-receipt"
GENERATE_SALARY_SLIP = "generate-salary-slip"
GENERATE_ATTENDANCE_REPORT = "generate-attendance-report"

DEFAULT_REMOVE_ON_COMPLETE = 100
DEFAULT_REMOVE_ON_FAIL = 50


@dataclass(frozen=True, slots=True)
class JobOptions:
    max_attempts: int = 1
    backoff: BackoffPolicy = NO_BACKOFF
    delay_ms: int = 0

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        if int(self.delay_ms) < 0:
            raise ValueError("delay_ms must be >= 0")


_DELIVERY = JobOptions(max_attempts=3, backoff=BackoffPolicy.exponential(2000))
_REPORT = JobOptions(max_attempts=2, backoff=NO_BACKOFF)

DEFAULT_JOB_OPTIONS: dict[tuple[str, str], JobOptions] = {
    (TOPIC_EMAIL, SEND_EMAIL): _DELIVERY,
    (TOPIC_EMAIL, SEND_BULK_EMAIL): _DELIVERY,
    (TOPIC_SMS, SEND_SMS): _DELIVERY,
    (TOPIC_SMS, SEND_BULK_SMS): _DELIVERY,
    (TOPIC_REPORT, GENERATE_REPORT_CARD): _REPORT,
    (TOPIC_REPORT, GENERATE_FEE_RECEIPT): _REPORT,
    (TOPIC_REPORT, GENERATE_SALARY_SLIP): _REPORT,
    (TOPIC_REPORT, GENERATE_ATTENDANCE_REPORT): _REPORT,
}


def default_options(topic: str, kind: str) -> JobOptions:
    return DEFAULT_JOB_OPTIONS.get((topic, kind), JobOptions())


def resolve_options(
    topic: str,
    kind: str,
    *,
    delay_ms: int | None = None,
    max_attempts: int | None = None,
    backoff: object | None = None,
) -> JobOptions:
    base = default_options(topic, kind)
    return JobOptions(
        max_attempts=int(max_attempts) if max_attempts is not None else base.max_attempts,
        backoff=BackoffPolicy.coerce(backoff) if backoff is not None else base.backoff,
        delay_ms=int(delay_ms) if delay_ms is not None else base.delay_ms,
    )
