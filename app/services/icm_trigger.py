# app/services/icm_trigger.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Set

from app.core.enums import JobType
from app.services.icm_update_service import IcmUpdateService

logger = logging.getLogger("icmstats.trigger")


class BackgroundTrigger:
    """
    Fire-and-forget de ciclos ICM en un thread pool.

    El set in-flight solo evita encolar threads inútiles dentro del proceso;
    la exclusión real la hace acquire() en la DB.
    """

    def __init__(self, service: IcmUpdateService, *, max_workers: int = 2) -> None:
        self.service = service
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="icm-cycle")
        self._inflight: Set[JobType] = set()
        self._lock = threading.Lock()

    def __call__(self, job_type: JobType) -> bool:
        return self.trigger(job_type)

    def trigger(self, job_type: JobType) -> bool:
        jt = JobType(job_type)
        with self._lock:
            if jt in self._inflight:
                logger.debug("[%s] cycle already queued in this process", jt.value)
                return False
            self._inflight.add(jt)

        fut: Future = self._executor.submit(self._run, jt)
        fut.add_done_callback(lambda _f: self._done(jt))
        logger.info("[%s] background update triggered", jt.value)
        return True

    def _done(self, jt: JobType) -> None:
        with self._lock:
            self._inflight.discard(jt)

    def _run(self, jt: JobType) -> None:
        try:
            result = self.service.run_cycle(jt)
            logger.info("[%s] background cycle finished status=%s", jt.value, result.status)
        except Exception:
            # el fallo ya quedó persistido en UpdateState.error
            logger.exception("[%s] background cycle failed", jt.value)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


_TRIGGER: Optional[BackgroundTrigger] = None


def get_trigger() -> BackgroundTrigger:
    """Singleton por proceso (lazy) para el API."""
    global _TRIGGER
    if _TRIGGER is None:
        _TRIGGER = BackgroundTrigger(IcmUpdateService())
    return _TRIGGER


def shutdown_trigger() -> None:
    global _TRIGGER
    if _TRIGGER is not None:
        _TRIGGER.shutdown(wait=False)
        _TRIGGER = None
