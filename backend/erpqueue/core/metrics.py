from __future__ import annotations

from prometheus_client import Counter, Gauge

from erpqueue.core.config import TOPICS

JOB_STATES: tuple[str, ...] = (
    "waiting",
    "delayed",
    "active",
    "completed",
    "failed",
)

JOBS_ENQUEUED_TOTAL = Counter(
    "erpqueue_jobs_enqueued_total",
    "Total jobs enqueued by topic.",
    ["topic"],
)

JOBS_CLAIM_TOTAL = Counter(
    "erpqueue_jobs_claim_total",
    "Total jobs claimed by workers.",
    ["topic"],
)

JOBS_COMPLETED_TOTAL = Counter(
    "erpqueue_jobs_completed_total",
    "Total jobs whose handler succeeded.",
    ["topic"],
)

JOBS_FAILED_TOTAL = Counter(
    "erpqueue_jobs_failed_total",
    "Total failed attempts; final=true when retries are exhausted.",
    ["topic", "final"],
)

JOBS_RECLAIMED_TOTAL = Counter(
    "erpqueue_jobs_reclaimed_total",
    "Total active jobs returned by the visibility-timeout sweep.",
    ["topic"],
)

JOBS_PRUNED_TOTAL = Counter(
    "erpqueue_jobs_pruned_total",
    "Total completed/failed jobs removed by retention.",
    ["topic"],
)

JOBS_STATE_COUNT = Gauge(
    "erpqueue_jobs_state_count",
    "Current jobs count by topic and state.",
    ["topic", "state"],
)

METRICS_SCRAPE_ERRORS_TOTAL = Counter(
    "erpqueue_metrics_scrape_errors_total",
    "Total /metrics scrape errors while querying the queue store.",
)


def _init_labelsets() -> None:
    for topic in TOPICS:
        JOBS_ENQUEUED_TOTAL.labels(topic=topic).inc(0)
        JOBS_CLAIM_TOTAL.labels(topic=topic).inc(0)
        JOBS_COMPLETED_TOTAL.labels(topic=topic).inc(0)
        JOBS_FAILED_TOTAL.labels(topic=topic, final="true").inc(0)
        JOBS_FAILED_TOTAL.labels(topic=topic, final="false").inc(0)
        JOBS_RECLAIMED_TOTAL.labels(topic=topic).inc(0)
        JOBS_PRUNED_TOTAL.labels(topic=topic).inc(0)
        for state in JOB_STATES:
            JOBS_STATE_COUNT.labels(topic=topic, state=state).set(0)


_init_labelsets()


def set_job_state_counts(topic: str, counts: dict[str, int]) -> None:
    for state in JOB_STATES:
        JOBS_STATE_COUNT.labels(topic=topic, state=state).set(float(int(counts.get(state, 0) or 0)))
