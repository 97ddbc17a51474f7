from __future__ import annotations

from datetime import datetime, timedelta

from .cron_auth import SOURCE_VERCEL_CRON
from .models import DispatchRunItem, MonitorJobItem, MonitorResponse, TemplateRetryItem
from .sender import mask_phone
from .store import DispatchRunRecord, DispatchStore, JobRecord, _now_utc

RUN_HISTORY_LIMIT = 50
PROBLEM_JOBS_LIMIT = 30
RECENT_FAILURES_LIMIT = 10
RETRY_WINDOW = timedelta(hours=24)
RETRY_SAMPLE_LIMIT = 500
TOP_RETRIES_LIMIT = 5


def run_item(record: DispatchRunRecord) -> DispatchRunItem:
    return DispatchRunItem(
        run_id=record.run_id,
        ran_at=record.ran_at,
        source=record.source,
        picked=record.picked,
        sent=record.sent,
        failed=record.failed,
        retried=record.retried,
        schedules_picked=record.schedules_picked,
        jobs_created_from_schedules=record.jobs_created_from_schedules,
        duration_ms=record.duration_ms,
        error=record.error,
    )


def job_item(record: JobRecord) -> MonitorJobItem:
    return MonitorJobItem(
        job_id=record.job_id,
        updated_at=record.updated_at,
        status=record.status,
        attempts=record.attempts,
        template_key=record.template_key,
        to_masked=mask_phone(record.to),
        last_error=record.last_error,
    )


def aggregate_retries(jobs: list[JobRecord], *, limit: int = TOP_RETRIES_LIMIT) -> list[TemplateRetryItem]:
    totals: dict[str, list[int]] = {}
    for job in jobs:
        bucket = totals.setdefault(job.template_key, [0, 0])
        bucket[0] += job.attempts
        bucket[1] += 1
    items = [
        TemplateRetryItem(template_key=key, total_attempts=values[0], count_jobs=values[1])
        for key, values in totals.items()
    ]
    items.sort(key=lambda item: (-item.total_attempts, item.template_key))
    return items[:limit]


def build_monitor_snapshot(store: DispatchStore, *, now: datetime | None = None) -> MonitorResponse:
    current = now or _now_utc()
    runs = store.list_dispatch_runs(limit=RUN_HISTORY_LIMIT)
    last_cron = next((value for value in runs if value.source == SOURCE_VERCEL_CRON), None)
    if last_cron is None:
        last_cron = store.latest_dispatch_run(source=SOURCE_VERCEL_CRON)
    retry_activity = store.list_retry_activity(since=current - RETRY_WINDOW, limit=RETRY_SAMPLE_LIMIT)
    return MonitorResponse(
        generated_at=current,
        last_cron_run=run_item(last_cron) if last_cron is not None else None,
        runs=[run_item(value) for value in runs],
        problem_jobs=[job_item(value) for value in store.list_problem_jobs(limit=PROBLEM_JOBS_LIMIT)],
        recent_failures=[job_item(value) for value in store.list_failed_jobs(limit=RECENT_FAILURES_LIMIT)],
        top_retries=aggregate_retries(retry_activity),
    )
