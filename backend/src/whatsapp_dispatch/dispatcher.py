from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from .run_recorder import RunRecorder
from .sender import WhatsAppSender, mask_phone
from .spawner import ScheduleSpawner, SpawnSummary
from .store import DEFAULT_MAX_ATTEMPTS, DispatchStore, JobRecord, NewDispatchRun, _now_utc
from .templates import TemplateResolutionError, TemplateResolver, resolve_message_body

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
MAX_BACKOFF_MINUTES = 60
MESSAGE_LOG_SOURCE = "cron_dispatch"

JobOutcome = Literal["sent", "failed", "retried"]


def backoff_minutes(attempts: int) -> int:
    # 2**6 > 60, so every larger exponent lands on the cap.
    exponent = min(max(0, attempts), 6)
    return min(2**exponent, MAX_BACKOFF_MINUTES)


def new_locker_id(prefix: str) -> str:
    return f"{prefix}:{secrets.token_hex(6)}"


@dataclass
class DispatchSummary:
    picked: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    schedules_picked: int = 0
    jobs_created_from_schedules: int = 0
    job_errors: int = 0
    locker: str | None = None
    errors: list[str] = field(default_factory=list)

    def as_response(self) -> dict[str, int]:
        return {
            "picked": self.picked,
            "sent": self.sent,
            "failed": self.failed,
            "retried": self.retried,
        }


class DispatchError(Exception):
    def __init__(self, message: str, *, summary: DispatchSummary | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.summary = summary or DispatchSummary()


class JobClaimError(DispatchError):
    pass


class JobDispatcher:
    def __init__(
        self,
        *,
        store: DispatchStore,
        sender: WhatsAppSender,
        resolver: TemplateResolver,
        spawner: ScheduleSpawner,
        batch_size: int = BATCH_SIZE,
        locker_prefix: str = "cron",
    ) -> None:
        self._store = store
        self._sender = sender
        self._resolver = resolver
        self._spawner = spawner
        self._batch_size = batch_size
        self._locker_prefix = locker_prefix

    def dispatch(self, now: datetime) -> DispatchSummary:
        summary = DispatchSummary(locker=new_locker_id(self._locker_prefix))

        try:
            spawned = self._spawner.spawn(now)
        except Exception:
            logger.exception("schedule spawn failed; continuing with pending jobs")
            spawned = SpawnSummary()
        summary.schedules_picked = spawned.schedules_picked
        summary.jobs_created_from_schedules = spawned.jobs_created

        try:
            claimed = self._store.claim_pending_jobs(
                batch_size=self._batch_size,
                locker=summary.locker,
                now=now,
            )
        except Exception as exc:
            logger.error("failed to pick jobs: %s", exc)
            raise JobClaimError(f"Failed to pick jobs: {exc}", summary=summary) from exc

        summary.picked = len(claimed)
        logger.info("picked %d jobs locker=%s", summary.picked, summary.locker)

        for job in claimed:
            try:
                outcome = self._process(job, locker=summary.locker, now=now)
            except Exception as exc:
                logger.exception("unexpected error processing job=%s", job.job_id)
                summary.job_errors += 1
                summary.errors.append(f"{job.job_id}: {exc}")
                self._release(job, locker=summary.locker)
                continue
            if outcome == "sent":
                summary.sent += 1
            elif outcome == "failed":
                summary.failed += 1
            else:
                summary.retried += 1

        logger.info(
            "done picked=%d sent=%d failed=%d retried=%d",
            summary.picked,
            summary.sent,
            summary.failed,
            summary.retried,
        )
        return summary

    def _process(self, job: JobRecord, *, locker: str, now: datetime) -> JobOutcome:
        try:
            body = resolve_message_body(job, self._resolver)
        except TemplateResolutionError as exc:
            return self._apply_failure(job, error=exc.message, locker=locker, now=now)

        try:
            result = self._sender.send(job.to, body)
        except Exception as exc:
            logger.exception("sender raised for job=%s to=%s", job.job_id, mask_phone(job.to))
            return self._apply_failure(job, error=str(exc) or exc.__class__.__name__, locker=locker, now=now)

        if result.ok:
            self._apply_success(job, body=body, message_id=result.message_id, locker=locker)
            return "sent"
        return self._apply_failure(job, error=result.error or "send failed", locker=locker, now=now)

    def _apply_success(self, job: JobRecord, *, body: str, message_id: str | None, locker: str) -> None:
        logger.info("sent job=%s to=%s sid=%s", job.job_id, mask_phone(job.to), message_id)
        updated = self._store.update_job(
            job.job_id,
            tenant_id=job.tenant_id,
            locker=locker,
            changes={"status": "sent", "last_error": None, "locked_by": None, "locked_at": None},
        )
        if not updated:
            logger.warning("job=%s was not updated after send; lock no longer held by %s", job.job_id, locker)

        try:
            self._store.insert_outbound_message(
                tenant_id=job.tenant_id,
                from_number=self._sender.from_number,
                to_number=job.to,
                body=body,
                raw={
                    "source": MESSAGE_LOG_SOURCE,
                    "job_id": job.job_id,
                    "template_key": job.template_key,
                    "sid": message_id,
                },
            )
        except Exception:
            logger.exception("failed to log outbound message for job=%s", job.job_id)

    def _apply_failure(self, job: JobRecord, *, error: str, locker: str, now: datetime) -> JobOutcome:
        attempts = job.attempts + 1
        exhausted = attempts >= job.max_attempts
        logger.warning(
            "error job=%s attempt=%d/%d err=%s",
            job.job_id,
            attempts,
            job.max_attempts,
            error,
        )

        changes: dict[str, object] = {
            "attempts": attempts,
            "last_error": error,
            "locked_by": None,
            "locked_at": None,
        }
        if exhausted:
            changes["status"] = "failed"
        else:
            changes["status"] = "pending"
            changes["run_at"] = now + timedelta(minutes=backoff_minutes(attempts))

        updated = self._store.update_job(job.job_id, tenant_id=job.tenant_id, locker=locker, changes=changes)
        if not updated:
            logger.warning("job=%s was not updated after failure; lock no longer held by %s", job.job_id, locker)
        return "failed" if exhausted else "retried"

    def _release(self, job: JobRecord, *, locker: str) -> None:
        try:
            self._store.update_job(
                job.job_id,
                tenant_id=job.tenant_id,
                locker=locker,
                changes={"locked_by": None, "locked_at": None},
            )
        except Exception:
            logger.exception("failed to release lock for job=%s locker=%s", job.job_id, locker)


class DispatchService:
    """One cron invocation: spawn, claim, send, and record a run summary."""

    def __init__(
        self,
        *,
        store: DispatchStore,
        sender: WhatsAppSender,
        batch_size: int = BATCH_SIZE,
        locker_prefix: str = "cron",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._store = store
        self._recorder = RunRecorder(store)
        self._dispatcher = JobDispatcher(
            store=store,
            sender=sender,
            resolver=TemplateResolver(store),
            spawner=ScheduleSpawner(store=store, batch_size=batch_size, max_attempts=max_attempts),
            batch_size=batch_size,
            locker_prefix=locker_prefix,
        )
        self._batch_size = batch_size

    def run_once(self, *, source: str, now: datetime | None = None) -> DispatchSummary:
        started = time.monotonic()
        current = now or _now_utc()
        summary = DispatchSummary()
        error: str | None = None
        try:
            summary = self._dispatcher.dispatch(current)
            return summary
        except DispatchError as exc:
            summary = exc.summary
            error = exc.message
            raise
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("dispatch invocation failed source=%s", source)
            raise
        finally:
            meta: dict[str, object] = {
                "batch_size": self._batch_size,
                "locker": summary.locker,
                "job_errors": summary.job_errors,
            }
            if summary.errors:
                meta["job_error_details"] = summary.errors[:20]
            self._recorder.record(
                NewDispatchRun(
                    source=source,
                    picked=summary.picked,
                    sent=summary.sent,
                    failed=summary.failed,
                    retried=summary.retried,
                    schedules_picked=summary.schedules_picked,
                    jobs_created_from_schedules=summary.jobs_created_from_schedules,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=error,
                    meta=meta,
                )
            )
