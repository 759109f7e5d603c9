"""Prometheus metrics for scheduler observability."""

from prometheus_client import Counter, Gauge, Histogram

JOBS_SCHEDULED = Counter(
    "agenda_jobs_scheduled_total",
    "Total jobs written to the job store",
    ["job_type"],
)
JOBS_CANCELLED = Counter(
    "agenda_jobs_cancelled_total",
    "Total jobs cancelled before they were claimed",
    ["job_type"],
)

# Dispatcher outcomes: done, retried, failed
JOB_RUNS = Counter(
    "agenda_job_runs_total",
    "Total job executions by outcome",
    ["job_type", "status"],
)
JOB_DURATION = Histogram(
    "agenda_job_duration_seconds",
    "Duration of job handler executions",
    ["job_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
JOBS_IN_FLIGHT = Gauge(
    "agenda_jobs_in_flight",
    "Jobs currently executing on this worker",
    ["job_type"],
)
LEASES_EXPIRED = Counter(
    "agenda_job_leases_expired_total",
    "Locked jobs failed after their lease expired with no attempts left",
)

# Domain counters
SESSIONS_CONSUMED = Counter(
    "agenda_package_sessions_total",
    "Package session consumption attempts",
    ["result"],
)
WARNINGS_RECORDED = Counter(
    "agenda_repetition_warning_entries_total",
    "Warning entries recorded for repetition links",
    ["kind"],
)
NOTIFICATIONS_SENT = Counter(
    "agenda_notifications_total",
    "Notification sends by template and outcome",
    ["template", "status"],
)
