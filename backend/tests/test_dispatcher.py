from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from whatsapp_dispatch.dispatcher import (
    MAX_BACKOFF_MINUTES,
    DispatchService,
    JobClaimError,
    backoff_minutes,
)
from whatsapp_dispatch.sender import SendResult, StubWhatsAppSender
from whatsapp_dispatch.store import InMemoryDispatchStore, NewJob

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
FAR_FUTURE = NOW + timedelta(days=365)


class _RaisingSender:
    from_number = "+5511000000000"

    def __init__(self, *, explode_for: str) -> None:
        self._explode_for = explode_for
        self.sent: list[tuple[str, str]] = []

    def send(self, to: str, body: str) -> SendResult:
        if to == self._explode_for:
            raise RuntimeError("sender crashed")
        self.sent.append((to, body))
        return SendResult(ok=True, attempted_at=NOW, message_id=f"SM{len(self.sent)}")


class _ClaimFailingStore(InMemoryDispatchStore):
    def claim_pending_jobs(self, *, batch_size: int, locker: str, now: datetime):
        raise RuntimeError("connection reset")


class _RunWriteFailingStore(InMemoryDispatchStore):
    def insert_dispatch_run(self, run):
        raise RuntimeError("runs table missing")


class _TransitionFailingStore(InMemoryDispatchStore):
    def update_job(self, job_id: str, *, tenant_id: str, locker: str, changes: dict[str, object]) -> bool:
        if "status" in changes:
            raise RuntimeError("update rejected")
        return super().update_job(job_id, tenant_id=tenant_id, locker=locker, changes=changes)


class _TemplateGuardStore(InMemoryDispatchStore):
    def __init__(self) -> None:
        super().__init__()
        self.template_lookups = 0

    def get_template(self, tenant_id: str, key: str):
        self.template_lookups += 1
        return super().get_template(tenant_id, key)


def _enqueue(
    store: InMemoryDispatchStore,
    *,
    to: str = "+5511999990001",
    template_key: str = "welcome",
    payload: dict | None = None,
    max_attempts: int = 3,
    run_at: datetime = NOW - timedelta(minutes=1),
) -> str:
    result = store.insert_job(
        NewJob(
            tenant_id="tenant-a",
            to=to,
            template_key=template_key,
            run_at=run_at,
            payload=payload if payload is not None else {"name": "Ana"},
            max_attempts=max_attempts,
        )
    )
    return result.job_id


def _set_attempts(store: InMemoryDispatchStore, job_id: str, attempts: int) -> None:
    claimed = store.claim_pending_jobs(batch_size=1000, locker="seed", now=FAR_FUTURE)
    for job in claimed:
        changes: dict[str, object] = {"locked_by": None, "locked_at": None}
        if job.job_id == job_id:
            changes["attempts"] = attempts
        store.update_job(job.job_id, tenant_id=job.tenant_id, locker="seed", changes=changes)


def _service(store: InMemoryDispatchStore, sender=None, *, batch_size: int = 50) -> DispatchService:
    return DispatchService(
        store=store,
        sender=sender or StubWhatsAppSender(enabled=True, from_number="+5511000000000"),
        batch_size=batch_size,
    )


def test_successful_send_marks_job_sent_and_logs_message() -> None:
    store = InMemoryDispatchStore()
    store.add_template(tenant_id="tenant-a", key="welcome", body="Hello {{name}}")
    job_id = _enqueue(store)
    sender = StubWhatsAppSender(enabled=True, from_number="+5511000000000")

    summary = _service(store, sender).run_once(source="manual", now=NOW)

    assert summary.as_response() == {"picked": 1, "sent": 1, "failed": 0, "retried": 0}
    job = store.get_job(job_id)
    assert job is not None
    assert job.status == "sent"
    assert job.attempts == 0
    assert job.last_error is None
    assert job.locked_by is None
    assert job.locked_at is None
    assert sender.sent == [("+5511999990001", "Hello Ana")]

    messages = store.list_outbound_messages()
    assert len(messages) == 1
    assert messages[0].direction == "outbound"
    assert messages[0].from_number == "+5511000000000"
    assert messages[0].body == "Hello Ana"
    assert messages[0].raw["source"] == "cron_dispatch"
    assert messages[0].raw["job_id"] == job_id
    assert messages[0].raw["sid"] == "stub-5511999990001-1"


def test_failure_on_last_attempt_marks_job_failed() -> None:
    store = InMemoryDispatchStore()
    job_id = _enqueue(store, to="+55-fail-0001", payload={"text": "hi"})
    _set_attempts(store, job_id, 2)

    summary = _service(store).run_once(source="manual", now=NOW)

    assert summary.failed == 1
    assert summary.retried == 0
    job = store.get_job(job_id)
    assert job is not None
    assert job.attempts == 3
    assert job.status == "failed"
    assert job.locked_by is None
    assert job.last_error == "Stub sender forced failure for destination"


def test_first_failure_schedules_retry_with_backoff() -> None:
    store = InMemoryDispatchStore()
    job_id = _enqueue(store, to="+55-fail-0002", payload={"text": "hi"})

    summary = _service(store).run_once(source="manual", now=NOW)

    assert summary.as_response() == {"picked": 1, "sent": 0, "failed": 0, "retried": 1}
    job = store.get_job(job_id)
    assert job is not None
    assert job.attempts == 1
    assert job.status == "pending"
    assert job.run_at == NOW + timedelta(minutes=2)
    assert job.locked_by is None
    assert job.locked_at is None


def test_retried_job_is_not_picked_before_backoff_elapses() -> None:
    store = InMemoryDispatchStore()
    _enqueue(store, to="+55-fail-0003", payload={"text": "hi"})
    service = _service(store)

    service.run_once(source="manual", now=NOW)
    early = service.run_once(source="manual", now=NOW + timedelta(minutes=1))
    due = service.run_once(source="manual", now=NOW + timedelta(minutes=2))

    assert early.picked == 0
    assert due.picked == 1
    assert due.retried == 1


def test_failed_job_is_never_picked_again() -> None:
    store = InMemoryDispatchStore()
    job_id = _enqueue(store, to="+55-fail-0004", payload={"text": "hi"}, max_attempts=1)
    service = _service(store)

    first = service.run_once(source="manual", now=NOW)
    later = service.run_once(source="manual", now=FAR_FUTURE)

    assert first.failed == 1
    assert later.picked == 0
    job = store.get_job(job_id)
    assert job is not None and job.status == "failed" and job.attempts == 1


def test_schedule_with_literal_text_sends_without_template_lookup() -> None:
    store = _TemplateGuardStore()
    store.add_schedule(
        tenant_id="tenant-a",
        schedule_key="daily",
        template_key="no-such-template",
        next_run_at=NOW - timedelta(minutes=10),
        interval_seconds=86400,
        payload={"to_phone": "+5511977776666", "text": "hello"},
    )
    sender = StubWhatsAppSender(enabled=True)

    summary = _service(store, sender).run_once(source="vercel_cron", now=NOW)

    assert summary.schedules_picked == 1
    assert summary.jobs_created_from_schedules == 1
    assert summary.as_response() == {"picked": 1, "sent": 1, "failed": 0, "retried": 0}
    assert sender.sent == [("+5511977776666", "hello")]
    assert store.template_lookups == 0


def test_missing_template_consumes_an_attempt() -> None:
    store = InMemoryDispatchStore()
    job_id = _enqueue(store, template_key="missing")

    summary = _service(store).run_once(source="manual", now=NOW)

    assert summary.retried == 1
    job = store.get_job(job_id)
    assert job is not None
    assert job.attempts == 1
    assert job.status == "pending"
    assert job.last_error == "TEMPLATE_NOT_FOUND: missing"


def test_empty_invocation_still_records_a_run() -> None:
    store = InMemoryDispatchStore()

    summary = _service(store).run_once(source="vercel_cron", now=NOW)

    assert summary.as_response() == {"picked": 0, "sent": 0, "failed": 0, "retried": 0}
    runs = store.list_dispatch_runs(limit=10)
    assert len(runs) == 1
    run = runs[0]
    assert run.source == "vercel_cron"
    assert run.picked == 0
    assert run.error is None
    assert run.duration_ms is not None and run.duration_ms >= 0
    assert run.meta["batch_size"] == 50
    assert str(run.meta["locker"]).startswith("cron:")
    assert run.meta["job_errors"] == 0


def test_claim_failure_raises_and_records_run_with_error() -> None:
    store = _ClaimFailingStore()

    with pytest.raises(JobClaimError) as exc_info:
        _service(store).run_once(source="manual", now=NOW)

    assert "connection reset" in exc_info.value.message
    runs = store.list_dispatch_runs(limit=10)
    assert len(runs) == 1
    assert runs[0].error == "Failed to pick jobs: connection reset"
    assert runs[0].picked == 0


def test_run_record_failure_does_not_fail_the_invocation() -> None:
    store = _RunWriteFailingStore()
    store.add_template(tenant_id="tenant-a", key="welcome", body="Hi")
    _enqueue(store)

    summary = _service(store).run_once(source="manual", now=NOW)

    assert summary.sent == 1


def test_sender_exception_consumes_an_attempt_and_releases_lock() -> None:
    store = InMemoryDispatchStore()
    crashing = _enqueue(store, to="+5511900000001", payload={"text": "a"})
    healthy = _enqueue(store, to="+5511900000002", payload={"text": "b"}, run_at=NOW - timedelta(seconds=30))
    sender = _RaisingSender(explode_for="+5511900000001")

    summary = _service(store, sender).run_once(source="manual", now=NOW)

    assert summary.as_response() == {"picked": 2, "sent": 1, "failed": 0, "retried": 1}
    assert summary.job_errors == 0
    assert sender.sent == [("+5511900000002", "b")]
    crashed_job = store.get_job(crashing)
    healthy_job = store.get_job(healthy)
    assert crashed_job is not None
    assert crashed_job.status == "pending"
    assert crashed_job.attempts == 1
    assert crashed_job.last_error == "sender crashed"
    assert crashed_job.locked_by is None
    assert crashed_job.locked_at is None
    assert crashed_job.run_at == NOW + timedelta(minutes=2)
    assert healthy_job is not None and healthy_job.status == "sent"


def test_sender_exception_is_retried_on_a_later_run() -> None:
    store = InMemoryDispatchStore()
    job_id = _enqueue(store, to="+5511900000001", payload={"text": "a"})
    service = _service(store, _RaisingSender(explode_for="+5511900000001"))

    service.run_once(source="manual", now=NOW)
    later = service.run_once(source="manual", now=NOW + timedelta(days=1))

    assert later.picked == 1
    job = store.get_job(job_id)
    assert job is not None and job.attempts == 2 and job.locked_by is None


def test_sender_exception_on_last_attempt_marks_job_failed() -> None:
    store = InMemoryDispatchStore()
    job_id = _enqueue(store, to="+5511900000001", payload={"text": "a"}, max_attempts=3)
    _set_attempts(store, job_id, 2)

    summary = _service(store, _RaisingSender(explode_for="+5511900000001")).run_once(source="manual", now=NOW)

    assert summary.failed == 1
    job = store.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.attempts == 3
    assert job.locked_by is None


def test_store_error_during_transition_is_isolated_and_releases_lock() -> None:
    store = _TransitionFailingStore()
    broken = _enqueue(store, to="+5511900000001", payload={"text": "a"})

    summary = _service(store).run_once(source="manual", now=NOW)

    assert summary.picked == 1
    assert summary.sent == 0
    assert summary.job_errors == 1
    job = store.get_job(broken)
    assert job is not None
    assert job.status == "pending"
    assert job.locked_by is None
    assert job.locked_at is None
    run = store.list_dispatch_runs(limit=1)[0]
    assert run.meta["job_errors"] == 1
    assert run.meta["job_error_details"] == [f"{broken}: update rejected"]

    again = _service(store).run_once(source="manual", now=NOW + timedelta(minutes=1))
    assert again.picked == 1


def test_batch_size_limits_claimed_jobs_in_run_at_order() -> None:
    store = InMemoryDispatchStore()
    oldest = _enqueue(store, payload={"text": "1"}, run_at=NOW - timedelta(minutes=30))
    middle = _enqueue(store, payload={"text": "2"}, run_at=NOW - timedelta(minutes=20))
    newest = _enqueue(store, payload={"text": "3"}, run_at=NOW - timedelta(minutes=10))

    summary = _service(store, batch_size=2).run_once(source="manual", now=NOW)

    assert summary.picked == 2
    assert store.get_job(oldest).status == "sent"
    assert store.get_job(middle).status == "sent"
    assert store.get_job(newest).status == "pending"


def test_future_jobs_are_not_picked() -> None:
    store = InMemoryDispatchStore()
    _enqueue(store, payload={"text": "later"}, run_at=NOW + timedelta(minutes=5))

    summary = _service(store).run_once(source="manual", now=NOW)

    assert summary.picked == 0


def test_concurrent_claims_never_overlap() -> None:
    store = InMemoryDispatchStore()
    for index in range(200):
        _enqueue(store, to=f"+55119000{index:05d}", payload={"text": "x"})

    claims: dict[str, list[str]] = {}
    barrier = threading.Barrier(4)

    def _claim(locker: str) -> None:
        barrier.wait()
        picked: list[str] = []
        while True:
            batch = store.claim_pending_jobs(batch_size=7, locker=locker, now=NOW)
            if not batch:
                break
            picked.extend(job.job_id for job in batch)
        claims[locker] = picked

    threads = [threading.Thread(target=_claim, args=(f"worker:{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    all_ids = [job_id for picked in claims.values() for job_id in picked]
    assert len(all_ids) == 200
    assert len(set(all_ids)) == 200


def test_backoff_is_exponential_and_capped() -> None:
    assert [backoff_minutes(n) for n in range(1, 8)] == [2, 4, 8, 16, 32, 60, 60]
    assert backoff_minutes(0) == 1
    assert backoff_minutes(500) == MAX_BACKOFF_MINUTES
    for attempts in range(1, 50):
        assert 1 <= backoff_minutes(attempts) <= MAX_BACKOFF_MINUTES


def test_attempts_never_decrease_across_failures() -> None:
    store = InMemoryDispatchStore()
    job_id = _enqueue(store, to="+55-fail-0005", payload={"text": "x"}, max_attempts=5)
    service = _service(store)
    seen: list[int] = []
    current = NOW

    for _ in range(6):
        service.run_once(source="manual", now=current)
        job = store.get_job(job_id)
        assert job is not None
        seen.append(job.attempts)
        current = current + timedelta(hours=2)

    assert seen == sorted(seen)
    assert seen[-1] == 5
    assert store.get_job(job_id).status == "failed"
