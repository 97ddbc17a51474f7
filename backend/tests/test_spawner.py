from __future__ import annotations

from datetime import datetime, timedelta, timezone

from whatsapp_dispatch.spawner import ScheduleSpawner, schedule_dedupe_key, schedule_destination
from whatsapp_dispatch.store import DueSchedule, InMemoryDispatchStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _ExplodingScheduleStore(InMemoryDispatchStore):
    def pick_due_schedules(self, *, batch_size: int, now: datetime):
        raise RuntimeError("schedule query failed")


class _FlakyInsertStore(InMemoryDispatchStore):
    def __init__(self) -> None:
        super().__init__()
        self.insert_calls = 0

    def insert_job(self, job):
        self.insert_calls += 1
        if self.insert_calls == 1:
            raise RuntimeError("insert failed")
        return super().insert_job(job)


def _add_daily(store: InMemoryDispatchStore, *, payload: dict, next_run_at: datetime = NOW - timedelta(minutes=5)):
    return store.add_schedule(
        tenant_id="tenant-a",
        schedule_key="daily-reminder",
        template_key="reminder",
        next_run_at=next_run_at,
        interval_seconds=86400,
        payload=payload,
    )


def test_spawn_creates_one_job_and_advances_schedule() -> None:
    store = InMemoryDispatchStore()
    schedule = _add_daily(store, payload={"to_phone": "+5511988887777", "name": "Ana"})
    spawner = ScheduleSpawner(store=store, batch_size=50)

    summary = spawner.spawn(NOW)

    assert summary.schedules_picked == 1
    assert summary.jobs_created == 1
    jobs = store.list_jobs()
    assert len(jobs) == 1
    job = jobs[0]
    assert job.to == "+5511988887777"
    assert job.template_key == "reminder"
    assert job.payload["name"] == "Ana"
    assert job.run_at == NOW
    assert job.dedupe_key == f"schedule:{schedule.schedule_id}:{schedule.next_run_at.isoformat()}"

    advanced = store.get_schedule(schedule.schedule_id)
    assert advanced is not None
    assert advanced.next_run_at > NOW


def test_spawn_is_idempotent_for_the_same_due_instant() -> None:
    store = InMemoryDispatchStore()
    due = NOW - timedelta(minutes=5)
    schedule = _add_daily(store, payload={"to": "+5511911112222"}, next_run_at=due)
    due_schedule = DueSchedule(
        schedule_id=schedule.schedule_id,
        tenant_id=schedule.tenant_id,
        schedule_key=schedule.schedule_key,
        template_key=schedule.template_key,
        payload=schedule.payload,
        due_next_run_at=due,
        next_run_at=due + timedelta(days=1),
    )

    class _ReplayStore(InMemoryDispatchStore):
        def pick_due_schedules(self, *, batch_size: int, now: datetime):
            return [due_schedule]

    replay_store = _ReplayStore()
    spawner = ScheduleSpawner(store=replay_store, batch_size=50)

    first = spawner.spawn(NOW)
    second = spawner.spawn(NOW + timedelta(seconds=30))

    assert first.jobs_created == 1
    assert second.schedules_picked == 1
    assert second.jobs_created == 0
    assert len(replay_store.list_jobs()) == 1


def test_spawn_does_not_pick_schedule_twice_after_advancing() -> None:
    store = InMemoryDispatchStore()
    _add_daily(store, payload={"to": "+5511911112222"})
    spawner = ScheduleSpawner(store=store, batch_size=50)

    spawner.spawn(NOW)
    again = spawner.spawn(NOW + timedelta(minutes=1))

    assert again.schedules_picked == 0
    assert len(store.list_jobs()) == 1


def test_spawn_skips_schedule_without_destination() -> None:
    store = InMemoryDispatchStore()
    schedule = _add_daily(store, payload={"name": "no phone"})
    spawner = ScheduleSpawner(store=store, batch_size=50)

    summary = spawner.spawn(NOW)

    assert summary.schedules_picked == 1
    assert summary.jobs_created == 0
    assert store.list_jobs() == []
    advanced = store.get_schedule(schedule.schedule_id)
    assert advanced is not None and advanced.next_run_at > NOW


def test_spawn_ignores_disabled_and_future_schedules() -> None:
    store = InMemoryDispatchStore()
    store.add_schedule(
        tenant_id="tenant-a",
        schedule_key="disabled",
        template_key="reminder",
        next_run_at=NOW - timedelta(hours=1),
        interval_seconds=3600,
        payload={"to": "+5511900000001"},
        enabled=False,
    )
    _add_daily(store, payload={"to": "+5511900000002"}, next_run_at=NOW + timedelta(hours=1))

    summary = ScheduleSpawner(store=store, batch_size=50).spawn(NOW)

    assert summary.schedules_picked == 0
    assert summary.jobs_created == 0


def test_spawn_returns_zero_when_schedule_pick_fails() -> None:
    summary = ScheduleSpawner(store=_ExplodingScheduleStore(), batch_size=50).spawn(NOW)

    assert summary.schedules_picked == 0
    assert summary.jobs_created == 0


def test_spawn_continues_after_insert_failure() -> None:
    store = _FlakyInsertStore()
    _add_daily(store, payload={"to": "+5511900000001"})
    store.add_schedule(
        tenant_id="tenant-a",
        schedule_key="hourly",
        template_key="reminder",
        next_run_at=NOW - timedelta(minutes=1),
        interval_seconds=3600,
        payload={"to": "+5511900000002"},
    )

    summary = ScheduleSpawner(store=store, batch_size=50).spawn(NOW)

    assert summary.schedules_picked == 2
    assert summary.jobs_created == 1
    assert [job.to for job in store.list_jobs()] == ["+5511900000002"]


def test_schedule_destination_prefers_to_phone() -> None:
    assert schedule_destination({"to_phone": " +551100 ", "to": "+552200"}) == "+551100"
    assert schedule_destination({"to_phone": "  ", "to": "+552200"}) == "+552200"
    assert schedule_destination({"to": 5511}) is None
    assert schedule_destination(None) is None


def test_schedule_dedupe_key_uses_due_instant_in_utc() -> None:
    due = datetime(2026, 3, 2, 6, 0, tzinfo=timezone(timedelta(hours=-3)))
    schedule = DueSchedule(
        schedule_id="sched_000009",
        tenant_id="tenant-a",
        schedule_key="k",
        template_key="t",
        payload={},
        due_next_run_at=due,
        next_run_at=due + timedelta(days=1),
    )

    assert schedule_dedupe_key(schedule) == "schedule:sched_000009:2026-03-02T09:00:00+00:00"
