from __future__ import annotations

import json
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .store import (
    DispatchRunRecord,
    DispatchStore,
    DueSchedule,
    InMemoryDispatchStore,
    JobInsertResult,
    JobRecord,
    NewDispatchRun,
    NewJob,
    OutboundMessageRecord,
    ScheduleRecord,
    TemplateRecord,
    _coerce_utc,
    _now_utc,
    next_tick_after,
    validate_job_changes,
)


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _load_json(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else {}


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def normalize_database_url(database_url: str) -> str:
    """Point bare Postgres URLs at the psycopg (v3) driver."""
    url = database_url.strip()
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix) :]
    return url


class DispatchBase(DeclarativeBase):
    pass


class _JobRow(DispatchBase):
    __tablename__ = "whatsapp_jobs"
    __table_args__ = (UniqueConstraint("tenant_id", "dedupe_key", name="uq_whatsapp_jobs_tenant_dedupe"),)

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    dedupe_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    to_phone: Mapped[str] = mapped_column(String(64), nullable=False)
    template_key: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _ScheduleRow(DispatchBase):
    __tablename__ = "whatsapp_schedules"

    schedule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    schedule_key: Mapped[str] = mapped_column(String(128), nullable=False)
    template_key: Mapped[str] = mapped_column(String(128), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _TemplateRow(DispatchBase):
    __tablename__ = "whatsapp_templates"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(DispatchBase):
    __tablename__ = "whatsapp_messages"

    message_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    from_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    raw_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DispatchRunRow(DispatchBase):
    __tablename__ = "whatsapp_dispatch_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    picked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retried: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    schedules_picked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_created_from_schedules: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    ran_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyDispatchStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DISPATCH_STORE_BACKEND=postgres")
        self._engine = create_engine(normalize_database_url(database_url), future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DispatchBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DispatchRunRow).delete()
                session.query(_MessageRow).delete()
                session.query(_TemplateRow).delete()
                session.query(_ScheduleRow).delete()
                session.query(_JobRow).delete()

    def claim_pending_jobs(self, *, batch_size: int, locker: str, now: datetime) -> list[JobRecord]:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            with session.begin():
                query = (
                    select(_JobRow)
                    .where(_JobRow.status == "pending")
                    .where(_JobRow.locked_by.is_(None))
                    .where(_JobRow.run_at <= normalized_now)
                    .order_by(_JobRow.run_at.asc(), _JobRow.created_at.asc())
                    .limit(batch_size)
                    .with_for_update(skip_locked=True)
                )
                rows = session.execute(query).scalars().all()
                claimed: list[JobRecord] = []
                for row in rows:
                    row.locked_by = locker
                    row.locked_at = normalized_now
                    row.updated_at = _now_utc()
                    claimed.append(self._job_record(row))
                return claimed

    def insert_job(self, job: NewJob) -> JobInsertResult:
        now = _now_utc()
        job_id = f"job_{secrets.token_hex(8)}"
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _JobRow(
                            job_id=job_id,
                            tenant_id=job.tenant_id,
                            status="pending",
                            run_at=_coerce_utc(job.run_at),
                            attempts=0,
                            max_attempts=job.max_attempts,
                            dedupe_key=job.dedupe_key,
                            to_phone=job.to,
                            template_key=job.template_key,
                            payload_json=_dump_json(job.payload),
                            last_error=None,
                            locked_at=None,
                            locked_by=None,
                            created_at=now,
                            updated_at=now,
                        )
                    )
        except IntegrityError:
            if job.dedupe_key is None:
                raise
            existing = self.find_job_by_dedupe_key(job.tenant_id, job.dedupe_key)
            if existing is None:
                raise
            return JobInsertResult(outcome="duplicate", job_id=existing.job_id)
        return JobInsertResult(outcome="inserted", job_id=job_id)

    def update_job(self, job_id: str, *, tenant_id: str, locker: str, changes: dict[str, object]) -> bool:
        validate_job_changes(changes)
        values = {
            key: _coerce_utc(value) if isinstance(value, datetime) else value
            for key, value in changes.items()
        }
        values["updated_at"] = _now_utc()
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_JobRow)
                    .where(_JobRow.job_id == job_id)
                    .where(_JobRow.tenant_id == tenant_id)
                    .where(_JobRow.locked_by == locker)
                    .values(**values)
                )
                return result.rowcount == 1

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._session() as session:
            row = session.get(_JobRow, job_id)
            return self._job_record(row) if row is not None else None

    def find_job_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> JobRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_JobRow)
                .where(_JobRow.tenant_id == tenant_id)
                .where(_JobRow.dedupe_key == dedupe_key)
            )
            return self._job_record(row) if row is not None else None

    def list_jobs(self) -> list[JobRecord]:
        with self._session() as session:
            rows = session.execute(select(_JobRow).order_by(_JobRow.created_at.asc())).scalars()
            return [self._job_record(row) for row in rows]

    def pick_due_schedules(self, *, batch_size: int, now: datetime) -> list[DueSchedule]:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            with session.begin():
                rows = session.execute(
                    select(_ScheduleRow)
                    .where(_ScheduleRow.enabled.is_(True))
                    .where(_ScheduleRow.next_run_at <= normalized_now)
                    .order_by(_ScheduleRow.next_run_at.asc())
                    .limit(batch_size)
                    .with_for_update(skip_locked=True)
                ).scalars().all()
                picked: list[DueSchedule] = []
                for row in rows:
                    due = _coerce_utc(row.next_run_at)
                    advanced = next_tick_after(due, interval_seconds=row.interval_seconds, now=normalized_now)
                    row.next_run_at = advanced
                    row.updated_at = _now_utc()
                    picked.append(
                        DueSchedule(
                            schedule_id=row.schedule_id,
                            tenant_id=row.tenant_id,
                            schedule_key=row.schedule_key,
                            template_key=row.template_key,
                            payload=_load_json(row.payload_json),
                            due_next_run_at=due,
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
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = _ScheduleRow(
                    schedule_id=f"sched_{secrets.token_hex(8)}",
                    tenant_id=tenant_id,
                    schedule_key=schedule_key,
                    template_key=template_key,
                    enabled=enabled,
                    next_run_at=_coerce_utc(next_run_at),
                    interval_seconds=interval_seconds,
                    payload_json=_dump_json(payload),
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return self._schedule_record(row)

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        with self._session() as session:
            row = session.get(_ScheduleRow, schedule_id)
            return self._schedule_record(row) if row is not None else None

    def add_template(self, *, tenant_id: str, key: str, body: str, enabled: bool = True) -> TemplateRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_TemplateRow, (tenant_id, key))
                if row is None:
                    row = _TemplateRow(
                        tenant_id=tenant_id,
                        key=key,
                        body=body,
                        enabled=enabled,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                else:
                    row.body = body
                    row.enabled = enabled
                    row.updated_at = now
                session.flush()
                return self._template_record(row)

    def get_template(self, tenant_id: str, key: str) -> TemplateRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_TemplateRow)
                .where(_TemplateRow.tenant_id == tenant_id)
                .where(_TemplateRow.key == key)
                .where(_TemplateRow.enabled.is_(True))
            )
            return self._template_record(row) if row is not None else None

    def insert_outbound_message(
        self,
        *,
        tenant_id: str,
        from_number: str | None,
        to_number: str | None,
        body: str,
        raw: dict[str, Any],
    ) -> OutboundMessageRecord:
        with self._session() as session:
            with session.begin():
                row = _MessageRow(
                    tenant_id=tenant_id,
                    direction="outbound",
                    from_number=from_number,
                    to_number=to_number,
                    body=body,
                    raw_json=_dump_json(raw),
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._message_record(row)

    def list_outbound_messages(self) -> list[OutboundMessageRecord]:
        with self._session() as session:
            rows = session.execute(select(_MessageRow).order_by(_MessageRow.message_id.asc())).scalars()
            return [self._message_record(row) for row in rows]

    def insert_dispatch_run(self, run: NewDispatchRun) -> DispatchRunRecord:
        with self._session() as session:
            with session.begin():
                row = _DispatchRunRow(
                    run_id=f"wrun_{secrets.token_hex(8)}",
                    source=run.source,
                    picked=run.picked,
                    sent=run.sent,
                    failed=run.failed,
                    retried=run.retried,
                    schedules_picked=run.schedules_picked,
                    jobs_created_from_schedules=run.jobs_created_from_schedules,
                    duration_ms=run.duration_ms,
                    error=run.error,
                    meta_json=_dump_json(run.meta),
                    ran_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._run_record(row)

    def list_dispatch_runs(self, *, limit: int) -> list[DispatchRunRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_DispatchRunRow).order_by(_DispatchRunRow.ran_at.desc()).limit(limit)
            ).scalars()
            return [self._run_record(row) for row in rows]

    def latest_dispatch_run(self, *, source: str) -> DispatchRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_DispatchRunRow)
                .where(_DispatchRunRow.source == source)
                .order_by(_DispatchRunRow.ran_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._run_record(row) if row is not None else None

    def list_problem_jobs(self, *, limit: int) -> list[JobRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_JobRow)
                .where(or_(_JobRow.attempts > 0, _JobRow.status == "failed"))
                .order_by(_JobRow.updated_at.desc())
                .limit(limit)
            ).scalars()
            return [self._job_record(row) for row in rows]

    def list_failed_jobs(self, *, limit: int) -> list[JobRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_JobRow)
                .where(_JobRow.status == "failed")
                .order_by(_JobRow.updated_at.desc())
                .limit(limit)
            ).scalars()
            return [self._job_record(row) for row in rows]

    def list_retry_activity(self, *, since: datetime, limit: int) -> list[JobRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_JobRow)
                .where(_JobRow.attempts > 0)
                .where(_JobRow.updated_at >= _coerce_utc(since))
                .order_by(_JobRow.updated_at.desc())
                .limit(limit)
            ).scalars()
            return [self._job_record(row) for row in rows]

    @staticmethod
    def _job_record(row: _JobRow) -> JobRecord:
        return JobRecord(
            job_id=row.job_id,
            tenant_id=row.tenant_id,
            status=row.status,  # type: ignore[arg-type]
            run_at=_coerce_utc(row.run_at),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            dedupe_key=row.dedupe_key,
            to=row.to_phone,
            template_key=row.template_key,
            payload=_load_json(row.payload_json),
            last_error=row.last_error,
            locked_at=_optional_utc(row.locked_at),
            locked_by=row.locked_by,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    @staticmethod
    def _schedule_record(row: _ScheduleRow) -> ScheduleRecord:
        return ScheduleRecord(
            schedule_id=row.schedule_id,
            tenant_id=row.tenant_id,
            schedule_key=row.schedule_key,
            template_key=row.template_key,
            enabled=row.enabled,
            next_run_at=_coerce_utc(row.next_run_at),
            interval_seconds=row.interval_seconds,
            payload=_load_json(row.payload_json),
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    @staticmethod
    def _template_record(row: _TemplateRow) -> TemplateRecord:
        return TemplateRecord(
            tenant_id=row.tenant_id,
            key=row.key,
            body=row.body,
            enabled=row.enabled,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> OutboundMessageRecord:
        return OutboundMessageRecord(
            message_id=row.message_id,
            tenant_id=row.tenant_id,
            direction=row.direction,
            from_number=row.from_number,
            to_number=row.to_number,
            body=row.body,
            raw=_load_json(row.raw_json),
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _run_record(row: _DispatchRunRow) -> DispatchRunRecord:
        return DispatchRunRecord(
            run_id=row.run_id,
            source=row.source,
            picked=row.picked,
            sent=row.sent,
            failed=row.failed,
            retried=row.retried,
            schedules_picked=row.schedules_picked,
            jobs_created_from_schedules=row.jobs_created_from_schedules,
            duration_ms=row.duration_ms,
            error=row.error,
            meta=_load_json(row.meta_json),
            ran_at=_coerce_utc(row.ran_at),
        )


def create_dispatch_store(*, backend: str, database_url: str) -> DispatchStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDispatchStore(database_url)
    if normalized == "inmemory":
        return InMemoryDispatchStore()
    raise RuntimeError(f"unsupported DISPATCH_STORE_BACKEND: {backend}")
