from __future__ import annotations

from datetime import datetime, timedelta, timezone

from whatsapp_dispatch.dispatcher import DispatchService
from whatsapp_dispatch.monitor import aggregate_retries, build_monitor_snapshot
from whatsapp_dispatch.sender import StubWhatsAppSender
from whatsapp_dispatch.store import InMemoryDispatchStore, JobRecord, NewJob

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _record(*, job_id: str, template_key: str, attempts: int) -> JobRecord:
    return JobRecord(
        job_id=job_id,
        tenant_id="tenant-a",
        status="pending",
        run_at=NOW,
        attempts=attempts,
        max_attempts=5,
        dedupe_key=None,
        to="+5511999990001",
        template_key=template_key,
        payload={},
        last_error=None,
        locked_at=None,
        locked_by=None,
        created_at=NOW,
        updated_at=NOW,
    )


def test_aggregate_retries_orders_by_total_attempts() -> None:
    jobs = [
        _record(job_id="j1", template_key="reminder", attempts=2),
        _record(job_id="j2", template_key="reminder", attempts=1),
        _record(job_id="j3", template_key="welcome", attempts=4),
        _record(job_id="j4", template_key="billing", attempts=1),
    ]

    items = aggregate_retries(jobs, limit=2)

    assert [(item.template_key, item.total_attempts, item.count_jobs) for item in items] == [
        ("welcome", 4, 1),
        ("reminder", 3, 2),
    ]


def test_monitor_snapshot_reports_runs_and_problem_jobs() -> None:
    store = InMemoryDispatchStore()
    store.add_template(tenant_id="tenant-a", key="welcome", body="Hi")
    for to in ("+5511900000001", "+55-fail-0001"):
        store.insert_job(
            NewJob(
                tenant_id="tenant-a",
                to=to,
                template_key="welcome",
                run_at=NOW - timedelta(minutes=1),
                max_attempts=1,
            )
        )
    service = DispatchService(store=store, sender=StubWhatsAppSender(enabled=True))
    service.run_once(source="manual", now=NOW)
    service.run_once(source="vercel_cron", now=NOW)

    snapshot = build_monitor_snapshot(store)

    assert len(snapshot.runs) == 2
    assert snapshot.last_cron_run is not None
    assert snapshot.last_cron_run.source == "vercel_cron"
    assert len(snapshot.problem_jobs) == 1
    assert snapshot.problem_jobs[0].to_masked == "***0001"
    assert snapshot.problem_jobs[0].status == "failed"
    assert [job.status for job in snapshot.recent_failures] == ["failed"]
    assert [(item.template_key, item.total_attempts) for item in snapshot.top_retries] == [("welcome", 1)]


def test_monitor_snapshot_on_empty_store() -> None:
    snapshot = build_monitor_snapshot(InMemoryDispatchStore(), now=NOW)

    assert snapshot.generated_at == NOW
    assert snapshot.last_cron_run is None
    assert snapshot.runs == []
    assert snapshot.problem_jobs == []
    assert snapshot.top_retries == []
