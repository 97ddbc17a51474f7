from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Literal, Protocol

JobStatus = Literal["pending", "sent", "failed"]
InsertOutcome = Literal["inserted", "duplicate"]

UPDATABLE_JOB_FIELDS = frozenset({"status", "attempts", "last_error", "run_at", "locked_by", "locked_at"})
DEFAULT_MAX_ATTEMPTS = 3


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_tick_after(due: datetime, *, interval_seconds: int, now: datetime) -> datetime:
    """First ``due + k * interval`` strictly after ``now``; missed ticks collapse into one."""
    interval = max(1, int(interval_seconds))
    elapsed = (_coerce_utc(now) - _coerce_utc(due)).total_seconds()
    steps = max(0, int(elapsed // interval)) + 1
    return _coerce_utc(due) + timedelta(seconds=steps * interval)


def validate_job_changes(changes: dict[str, object]) -> None:
    unknown = set(changes) - UPDATABLE_JOB_FIELDS
    if unknown:
        raise ValueError(f"unsupported job fields: {', '.join(sorted(unknown))}")


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    tenant_id: str
    status: JobStatus
    run_at: datetime
    attempts: int
    max_attempts: int
    dedupe_key: str | None
    to: str
    template_key: str
    payload: dict[str, Any]
    last_error: str | None
    locked_at: datetime | None
    locked_by: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class JobInsertResult:
    outcome: InsertOutcome
    job_id: str

    @property
    def inserted(self) -> bool:
        return self.outcome == "inserted"


@dataclass(frozen=True)
class NewJob:
    tenant_id: str
    to: str
    template_key: str
    run_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    dedupe_key: str | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.to.strip():
            raise ValueError("to must not be blank")


@dataclass(frozen=True)
class ScheduleRecord:
    schedule_id: str
    tenant_id: str
    schedule_key: str
    template_key: str
    enabled: bool
    next_run_at: datetime
    interval_seconds: int
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class DueSchedule:
    schedule_id: str
    tenant_id: str
    schedule_key: str
    template_key: str
    payload: dict[str, Any]
    due_next_run_at: datetime
    next_run_at: datetime


@dataclass(frozen=True)
class TemplateRecord:
    tenant_id: str
    key: str
    body: str
    enabled: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class OutboundMessageRecord:
    message_id: int
    tenant_id: str
    direction: str
    from_number: str | None
    to_number: str | None
    body: str
    raw: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class DispatchRunRecord:
    run_id: str
    source: str
    picked: int
    sent: int
    failed: int
    retried: int
    schedules_picked: int
    jobs_created_from_schedules: int
    duration_ms: int | None
    error: str | None
    meta: dict[str, Any]
    ran_at: datetime


@dataclass(frozen=True)
class NewDispatchRun:
    source: str
    picked: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    schedules_picked: int = 0
    jobs_created_from_schedules: int = 0
    duration_ms: int | None = None
    error: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


class DispatchStore(Protocol):
    def reset(self) -> None: ...

    def claim_pending_jobs(self, *, batch_size: int, locker: str, now: datetime) -> list[JobRecord]: ...

    def insert_job(self, job: NewJob) -> JobInsertResult: ...

    def update_job(self, job_id: str, *, tenant_id: str, locker: str, changes: dict[str, object]) -> bool: ...

    def get_job(self, job_id: str) -> JobRecord | None: ...

    def find_job_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> JobRecord | None: ...

    def list_jobs(self) -> list[JobRecord]: ...

    def pick_due_schedules(self, *, batch_size: int, now: datetime) -> list[DueSchedule]: ...

    def add_schedule(
        self,
        *,
        tenant_id: str,
        schedule_key: str,
        template_key: str,
        next_run_at: datetime,
        interval_seconds: int,
        payload: dict[str, Any],
        enabled: bool = True,
    ) -> ScheduleRecord: ...

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None: ...

    def add_template(self, *, tenant_id: str, key: str, body: str, enabled: bool = True) -> TemplateRecord: ...

    def get_template(self, tenant_id: str, key: str) -> TemplateRecord | None: ...

    def insert_outbound_message(
        self,
        *,
        tenant_id: str,
        from_number: str | None,
        to_number: str | None,
        body: str,
        raw: dict[str, Any],
    ) -> OutboundMessageRecord: ...

    def list_outbound_messages(self) -> list[OutboundMessageRecord]: ...

    def insert_dispatch_run(self, run: NewDispatchRun) -> DispatchRunRecord: ...

    def list_dispatch_runs(self, *, limit: int) -> list[DispatchRunRecord]: ...

    def latest_dispatch_run(self, *, source: str) -> DispatchRunRecord | None: ...

    def list_problem_jobs(self, *, limit: int) -> list[JobRecord]: ...

    def list_failed_jobs(self, *, limit: int) -> list[JobRecord]: ...

    def list_retry_activity(self, *, since: datetime, limit: int) -> list[JobRecord]: ...


class InMemoryDispatchStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._job_counter = 1
        self._schedule_counter = 1
        self._message_counter = 1
        self._run_counter = 1
        self._jobs: dict[str, JobRecord] = {}
        self._job_ids_by_dedupe: dict[tuple[str, str], str] = {}
        self._schedules: dict[str, ScheduleRecord] = {}
        self._templates: dict[tuple[str, str], TemplateRecord] = {}
        self._messages: list[OutboundMessageRecord] = []
        self._runs: list[DispatchRunRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._job_counter = 1
            self._schedule_counter = 1
            self._message_counter = 1
            self._run_counter = 1
            self._jobs.clear()
            self._job_ids_by_dedupe.clear()
            self._schedules.clear()
            self._templates.clear()
            self._messages.clear()
            self._runs.clear()

    def claim_pending_jobs(self, *, batch_size: int, locker: str, now: datetime) -> list[JobRecord]:
        normalized_now = _coerce_utc(now)
        with self._lock:
            candidates = sorted(
                (
                    row
                    for row in self._jobs.values()
                    if row.status == "pending" and row.locked_by is None and row.run_at <= normalized_now
                ),
                key=lambda value: (value.run_at, value.created_at, value.job_id),
            )
            claimed: list[JobRecord] = []
            for row in candidates[: max(0, batch_size)]:
                updated = JobRecord(
                    **{
                        **row.__dict__,
                        "locked_by": locker,
                        "locked_at": normalized_now,
                        "updated_at": _now_utc(),
                    }
                )
                self._jobs[row.job_id] = updated
                claimed.append(copy.deepcopy(updated))
            return claimed

    def insert_job(self, job: NewJob) -> JobInsertResult:
        with self._lock:
            if job.dedupe_key is not None:
                existing_id = self._job_ids_by_dedupe.get((job.tenant_id, job.dedupe_key))
                if existing_id is not None:
                    return JobInsertResult(outcome="duplicate", job_id=existing_id)
            job_id = f"job_{self._job_counter:06d}"
            self._job_counter += 1
            now = _now_utc()
            self._jobs[job_id] = JobRecord(
                job_id=job_id,
                tenant_id=job.tenant_id,
                status="pending",
                run_at=_coerce_utc(job.run_at),
                attempts=0,
                max_attempts=job.max_attempts,
                dedupe_key=job.dedupe_key,
                to=job.to,
                template_key=job.template_key,
                payload=copy.deepcopy(job.payload),
                last_error=None,
                locked_at=None,
                locked_by=None,
                created_at=now,
                updated_at=now,
            )
            if job.dedupe_key is not None:
                self._job_ids_by_dedupe[(job.tenant_id, job.dedupe_key)] = job_id
            return JobInsertResult(outcome="inserted", job_id=job_id)

    def update_job(self, job_id: str, *, tenant_id: str, locker: str, changes: dict[str, object]) -> bool:
        validate_job_changes(changes)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.tenant_id != tenant_id or row.locked_by != locker:
                return False
            normalized = {
                key: _coerce_utc(value) if isinstance(value, datetime) else value
                for key, value in changes.items()
            }
            self._jobs[job_id] = JobRecord(**{**row.__dict__, **normalized, "updated_at": _now_utc()})
            return True

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._lock:
            row = self._jobs.get(job_id)
            return copy.deepcopy(row) if row is not None else None

    def find_job_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> JobRecord | None:
        with self._lock:
            job_id = self._job_ids_by_dedupe.get((tenant_id, dedupe_key))
            if job_id is None:
                return None
            return copy.deepcopy(self._jobs[job_id])

    def list_jobs(self) -> list[JobRecord]:
        with self._lock:
            return [copy.deepcopy(row) for row in sorted(self._jobs.values(), key=lambda value: value.job_id)]

    def pick_due_schedules(self, *, batch_size: int, now: datetime) -> list[DueSchedule]:
        normalized_now = _coerce_utc(now)
        with self._lock:
            due_rows = sorted(
                (row for row in self._schedules.values() if row.enabled and row.next_run_at <= normalized_now),
                key=lambda value: (value.next_run_at, value.schedule_id),
            )
            picked: list[DueSchedule] = []
            for row in due_rows[: max(0, batch_size)]:
                advanced = next_tick_after(row.next_run_at, interval_seconds=row.interval_seconds, now=normalized_now)
                self._schedules[row.schedule_id] = ScheduleRecord(
                    **{**row.__dict__, "next_run_at": advanced, "updated_at": _now_utc()}
                )
                picked.append(
                    DueSchedule(
                        schedule_id=row.schedule_id,
                        tenant_id=row.tenant_id,
                        schedule_key=row.schedule_key,
                        template_key=row.template_key,
                        payload=copy.deepcopy(row.payload),
                        due_next_run_at=row.next_run_at,
                        next_run_at=advanced,
                    )
                )
            return picked

    def add_schedule(
        self,
        *,
        tenant_id: str,
        schedule_key: str,
        template_key: str,
        next_run_at: datetime,
        interval_seconds: int,
        payload: dict[str, Any],
        enabled: bool = True,
    ) -> ScheduleRecord:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        with self._lock:
            schedule_id = f"sched_{self._schedule_counter:06d}"
            self._schedule_counter += 1
            now = _now_utc()
            record = ScheduleRecord(
                schedule_id=schedule_id,
                tenant_id=tenant_id,
                schedule_key=schedule_key,
                template_key=template_key,
                enabled=enabled,
                next_run_at=_coerce_utc(next_run_at),
                interval_seconds=interval_seconds,
                payload=copy.deepcopy(payload),
                created_at=now,
                updated_at=now,
            )
            self._schedules[schedule_id] = record
            return record

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        with self._lock:
            return self._schedules.get(schedule_id)

    def add_template(self, *, tenant_id: str, key: str, body: str, enabled: bool = True) -> TemplateRecord:
        with self._lock:
            now = _now_utc()
            existing = self._templates.get((tenant_id, key))
            record = TemplateRecord(
                tenant_id=tenant_id,
                key=key,
                body=body,
                enabled=enabled,
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
            )
            self._templates[(tenant_id, key)] = record
            return record

    def get_template(self, tenant_id: str, key: str) -> TemplateRecord | None:
        with self._lock:
            record = self._templates.get((tenant_id, key))
            if record is None or not record.enabled:
                return None
            return record

    def insert_outbound_message(
        self,
        *,
        tenant_id: str,
        from_number: str | None,
        to_number: str | None,
        body: str,
        raw: dict[str, Any],
    ) -> OutboundMessageRecord:
        with self._lock:
            record = OutboundMessageRecord(
                message_id=self._message_counter,
                tenant_id=tenant_id,
                direction="outbound",
                from_number=from_number,
                to_number=to_number,
                body=body,
                raw=copy.deepcopy(raw),
                created_at=_now_utc(),
            )
            self._message_counter += 1
            self._messages.append(record)
            return record

    def list_outbound_messages(self) -> list[OutboundMessageRecord]:
        with self._lock:
            return list(self._messages)

    def insert_dispatch_run(self, run: NewDispatchRun) -> DispatchRunRecord:
        with self._lock:
            record = DispatchRunRecord(
                run_id=f"wrun_{self._run_counter:06d}",
                source=run.source,
                picked=run.picked,
                sent=run.sent,
                failed=run.failed,
                retried=run.retried,
                schedules_picked=run.schedules_picked,
                jobs_created_from_schedules=run.jobs_created_from_schedules,
                duration_ms=run.duration_ms,
                error=run.error,
                meta=copy.deepcopy(run.meta),
                ran_at=_now_utc(),
            )
            self._run_counter += 1
            self._runs.append(record)
            return record

    def list_dispatch_runs(self, *, limit: int) -> list[DispatchRunRecord]:
        with self._lock:
            ordered = sorted(self._runs, key=lambda value: (value.ran_at, value.run_id), reverse=True)
            return ordered[:limit]

    def latest_dispatch_run(self, *, source: str) -> DispatchRunRecord | None:
        with self._lock:
            matching = [value for value in self._runs if value.source == source]
            if not matching:
                return None
            return max(matching, key=lambda value: (value.ran_at, value.run_id))

    def list_problem_jobs(self, *, limit: int) -> list[JobRecord]:
        return self._recent_jobs(lambda row: row.attempts > 0 or row.status == "failed", limit=limit)

    def list_failed_jobs(self, *, limit: int) -> list[JobRecord]:
        return self._recent_jobs(lambda row: row.status == "failed", limit=limit)

    def list_retry_activity(self, *, since: datetime, limit: int) -> list[JobRecord]:
        normalized_since = _coerce_utc(since)
        return self._recent_jobs(
            lambda row: row.attempts > 0 and row.updated_at >= normalized_since,
            limit=limit,
        )

    def _recent_jobs(self, predicate, *, limit: int) -> list[JobRecord]:
        with self._lock:
            rows = [row for row in self._jobs.values() if predicate(row)]
            rows.sort(key=lambda value: (value.updated_at, value.job_id), reverse=True)
            return [copy.deepcopy(row) for row in rows[:limit]]
