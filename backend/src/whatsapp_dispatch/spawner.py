from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from .sender import mask_phone
from .store import DEFAULT_MAX_ATTEMPTS, DispatchStore, DueSchedule, NewJob, _coerce_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpawnSummary:
    schedules_picked: int = 0
    jobs_created: int = 0


def schedule_destination(payload: Mapping[str, Any] | None) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    for key in ("to_phone", "to"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def schedule_dedupe_key(schedule: DueSchedule) -> str:
    due = _coerce_utc(schedule.due_next_run_at).isoformat()
    return f"schedule:{schedule.schedule_id}:{due}"


class ScheduleSpawner:
    def __init__(
        self,
        *,
        store: DispatchStore,
        batch_size: int,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._store = store
        self._batch_size = batch_size
        self._max_attempts = max_attempts

    def spawn(self, now: datetime) -> SpawnSummary:
        try:
            schedules = self._store.pick_due_schedules(batch_size=self._batch_size, now=now)
        except Exception:
            logger.exception("failed to pick due schedules")
            return SpawnSummary()

        created = 0
        for schedule in schedules:
            destination = schedule_destination(schedule.payload)
            if destination is None:
                logger.warning(
                    "schedule %s (%s) has no destination in payload.to_phone or payload.to; skipping",
                    schedule.schedule_id,
                    schedule.schedule_key,
                )
                continue

            job = NewJob(
                tenant_id=schedule.tenant_id,
                to=destination,
                template_key=schedule.template_key,
                run_at=now,
                payload=dict(schedule.payload),
                max_attempts=self._max_attempts,
                dedupe_key=schedule_dedupe_key(schedule),
            )
            try:
                result = self._store.insert_job(job)
            except Exception:
                logger.exception(
                    "failed to create job for schedule %s to %s",
                    schedule.schedule_id,
                    mask_phone(destination),
                )
                continue
            if result.inserted:
                created += 1

        if schedules:
            logger.info("spawned %d jobs from %d due schedules", created, len(schedules))
        return SpawnSummary(schedules_picked=len(schedules), jobs_created=created)
