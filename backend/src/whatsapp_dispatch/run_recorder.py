from __future__ import annotations

import logging

from .store import DispatchRunRecord, DispatchStore, NewDispatchRun

logger = logging.getLogger(__name__)


class RunRecorder:
    """Best-effort writer for dispatch run summaries; never raises."""

    def __init__(self, store: DispatchStore) -> None:
        self._store = store

    def record(self, run: NewDispatchRun) -> DispatchRunRecord | None:
        try:
            return self._store.insert_dispatch_run(run)
        except Exception:
            logger.exception(
                "failed to record dispatch run source=%s picked=%d sent=%d failed=%d retried=%d",
                run.source,
                run.picked,
                run.sent,
                run.failed,
                run.retried,
            )
            return None
