# app/workers/icm_scheduler_loop.py
"""
Trigger periódico de ciclos ICM (daily cada hora, weekly cada 24h).

Corre como proceso aparte:  python -m app.workers.icm_scheduler_loop
Cada job vencido se despacha al BackgroundTrigger, así un weekly de horas no
frena el daily horario. Varias instancias pueden convivir: todas pasan por
acquire(), así que los triggers simultáneos colapsan en un solo ciclo activo.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from app.config import settings
from app.core.enums import JOB_SPECS, JobType
from app.core.timeutils import as_utc, utc_now
from app.services.icm_trigger import BackgroundTrigger
from app.services.icm_update_service import IcmUpdateService

logger = logging.getLogger("icmstats.scheduler")

Trigger = Callable[[JobType], bool]


def initial_schedule(now: datetime) -> Dict[JobType, datetime]:
    # al arrancar se intenta todo de inmediato
    return {jt: now for jt in JOB_SPECS}


def due_jobs(next_due: Dict[JobType, datetime], now: datetime) -> List[JobType]:
    return [jt for jt, at in sorted(next_due.items(), key=lambda kv: kv[0].value) if at <= now]


def run_tick(
    trigger: Trigger,
    next_due: Dict[JobType, datetime],
    *,
    now: Optional[datetime] = None,
) -> List[JobType]:
    """
    Despacha los jobs vencidos sin esperarlos y reprograma cada uno a
    now + interval. Retorna los job types efectivamente encolados.
    """
    now = as_utc(now) or utc_now()
    dispatched: List[JobType] = []

    for jt in due_jobs(next_due, now):
        next_due[jt] = now + JOB_SPECS[jt].interval
        try:
            if trigger(jt):
                dispatched.append(jt)
            else:
                # el ciclo anterior de este job sigue corriendo en este proceso
                logger.info("[%s] previous cycle still running, tick skipped", jt.value)
        except Exception as e:
            logger.error("[%s] could not dispatch scheduled cycle: %s: %s", jt.value, type(e).__name__, e)

    return dispatched


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    poll_seconds = max(1, int(settings.SCHEDULER_POLL_SECONDS))
    logger.info("[icm-scheduler] start poll=%ss", poll_seconds)

    service = IcmUpdateService()

    # ciclos colgados de un proceso anterior (solo los que superan el threshold)
    reaped = service.reap_all()
    if reaped:
        logger.warning("[icm-scheduler] reaped %d stale cycles on startup", reaped)

    # un worker por job type: daily y weekly corren en paralelo
    trigger = BackgroundTrigger(service, max_workers=len(JOB_SPECS))
    next_due = initial_schedule(utc_now())
    try:
        while True:
            run_tick(trigger, next_due)
            time.sleep(poll_seconds)
    finally:
        trigger.shutdown(wait=True)


if __name__ == "__main__":
    main()
