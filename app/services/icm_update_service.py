# app/services/icm_update_service.py
"""
Orquestador del ciclo de refresh ICM:

  reap_stale -> acquire -> fetch (ownership check + heartbeat por página)
  -> process_messages -> upsert_daily / replace_weekly -> prune (daily)
  -> release(completed)

Errores: cualquier excepción marca failed (con detalle) y se re-lanza;
LockLost NO toca UpdateState, puede haber un owner más nuevo avanzando.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ContextManager, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.core.enums import JOB_SPECS, CycleOutcome, JobType
from app.core.errors import LockLost
from app.core.timeutils import as_utc, end_of_day, utc_now
from app.db import SessionLocal, session_scope
from app.jobs import update_lock
from app.models.icm_update_state import UpdateProgress
from app.services import snapshot_store
from app.services.chain_names import ChainNameCache, HttpChainRegistry
from app.services.icm_aggregator import process_messages
from app.services.icm_fetcher import IcmMessageFetcher
from app.services.system_settings_service import SystemSettingsService

logger = logging.getLogger("icmstats.update")


@dataclass
class CycleResult:
    job_type: JobType
    # completed | skipped | disabled | lock_lost
    status: str
    total_messages: int = 0
    pair_count: int = 0
    reaped: int = 0
    days_filled: int = 0


class IcmUpdateService:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        fetcher: Optional[IcmMessageFetcher] = None,
        names: Optional[ChainNameCache] = None,
        settings_service: Optional[SystemSettingsService] = None,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.fetcher = fetcher or IcmMessageFetcher()
        self.names = names or ChainNameCache(HttpChainRegistry())
        self.settings_service = settings_service or SystemSettingsService()
        self.retention_days = int(settings.ICM_DAILY_RETENTION_DAYS if retention_days is None else retention_days)
        self._clock = clock

    def _session(self) -> ContextManager[Session]:
        return session_scope(self._session_factory)

    # ----------------------------
    # callbacks del fetcher (sesión corta por llamada)
    # ----------------------------

    def _still_owned(self, job_type: JobType, token: datetime) -> bool:
        with self._session() as db:
            return update_lock.still_owned(db, job_type, token)

    def _heartbeat(self, job_type: JobType, token: datetime, progress: UpdateProgress) -> None:
        with self._session() as db:
            update_lock.heartbeat(db, job_type, token, progress=progress, now=self._clock())

    def _begin(self, job_type: JobType) -> Tuple[Optional[datetime], CycleResult]:
        spec = JOB_SPECS[job_type]
        # el lock se estampa con el reloj real; el `now` del caller solo fija el fin de la ventana
        lock_now = self._clock()
        with self._session() as db:
            if not self.settings_service.job_enabled(db, job_type):
                logger.info("[%s] disabled via system_settings, skipping", job_type.value)
                return None, CycleResult(job_type=job_type, status="disabled")

            reaped = update_lock.reap_stale(db, job_type, spec.stale_after, now=lock_now)
            token = update_lock.acquire(db, job_type, now=lock_now)

        if token is None:
            logger.info("[%s] update already in progress, skipping", job_type.value)
            return None, CycleResult(job_type=job_type, status="skipped", reaped=reaped)
        return token, CycleResult(job_type=job_type, status="completed", reaped=reaped)

    def _fail(self, job_type: JobType, token: datetime, exc: BaseException) -> None:
        with self._session() as db:
            update_lock.release(db, job_type, token, CycleOutcome.FAILED, error=exc, now=self._clock())

    # ----------------------------
    # ciclo
    # ----------------------------

    def run_cycle(self, job_type: JobType, *, now: Optional[datetime] = None) -> CycleResult:
        job_type = JobType(job_type)
        spec = JOB_SPECS[job_type]
        now = as_utc(now) or self._clock()

        token, result = self._begin(job_type)
        if token is None:
            return result

        logger.info("[%s] starting update cycle window=%dh", job_type.value, spec.window_hours)
        try:
            messages = self.fetcher.fetch(
                spec.window_hours,
                job_type.value,
                lambda: self._still_owned(job_type, token),
                heartbeat=lambda p: self._heartbeat(job_type, token, p),
                now=now,
                max_pages=spec.max_pages,
            )
            pairs = process_messages(messages, self.names)

            snap = snapshot_store.SnapshotData(
                data_type=job_type,
                captured_at=now,
                window_hours=spec.window_hours,
                pair_counts=pairs,
                total_messages=len(messages),
            )

            with self._session() as db:
                # no escribir snapshots si otro ciclo ya tomó el lock
                if not update_lock.still_owned(db, job_type, token):
                    raise LockLost(job_type.value)

                if job_type == JobType.DAILY:
                    snapshot_store.upsert_daily(db, snap)
                    snapshot_store.prune_older_than(db, self.retention_days, now=now)
                else:
                    snapshot_store.replace_weekly(db, snap)

                update_lock.release(db, job_type, token, CycleOutcome.COMPLETED, now=self._clock())

        except LockLost as e:
            logger.warning("[%s] cycle aborted: %s (state left to the current owner)", job_type.value, e)
            result.status = "lock_lost"
            return result
        except Exception as e:
            logger.error("[%s] update cycle failed: %s: %s", job_type.value, type(e).__name__, e)
            self._fail(job_type, token, e)
            raise

        result.total_messages = len(messages)
        result.pair_count = len(pairs)
        logger.info(
            "[%s] update completed: %d messages, %d chain pairs",
            job_type.value, result.total_messages, result.pair_count,
        )
        return result

    def backfill_daily(self, days: int, *, now: Optional[datetime] = None) -> CycleResult:
        """
        Rellena días UTC sin daily snapshot (últimos `days`, hoy excluido).
        Corre bajo el lock daily para no competir con el ciclo normal.
        """
        job_type = JobType.DAILY
        now = as_utc(now) or self._clock()

        token, result = self._begin(job_type)
        if token is None:
            return result

        filled = 0
        total = 0
        try:
            with self._session() as db:
                missing: List = snapshot_store.missing_daily_dates(db, days, now=now)
            logger.info("[backfill] %d missing days in the last %d days", len(missing), days)

            for d in missing:
                day_end = end_of_day(d)
                messages = self.fetcher.fetch(
                    24,
                    "daily-backfill",
                    lambda: self._still_owned(job_type, token),
                    heartbeat=lambda p: self._heartbeat(job_type, token, p),
                    now=day_end,
                )
                pairs = process_messages(messages, self.names)

                with self._session() as db:
                    if not update_lock.still_owned(db, job_type, token):
                        raise LockLost(job_type.value)
                    snapshot_store.upsert_daily(
                        db,
                        snapshot_store.SnapshotData(
                            data_type=job_type,
                            captured_at=day_end,
                            window_hours=24,
                            pair_counts=pairs,
                            total_messages=len(messages),
                        ),
                    )
                filled += 1
                total += len(messages)
                logger.info("[backfill] %s filled with %d messages", d.isoformat(), len(messages))

            with self._session() as db:
                update_lock.release(db, job_type, token, CycleOutcome.COMPLETED, now=self._clock())

        except LockLost as e:
            logger.warning("[backfill] aborted: %s", e)
            result.status = "lock_lost"
            result.days_filled = filled
            return result
        except Exception as e:
            logger.error("[backfill] failed: %s: %s", type(e).__name__, e)
            self._fail(job_type, token, e)
            raise

        result.days_filled = filled
        result.total_messages = total
        return result

    def reap_all(self, *, now: Optional[datetime] = None) -> int:
        now = as_utc(now) or self._clock()
        n = 0
        with self._session() as db:
            for jt, spec in JOB_SPECS.items():
                n += update_lock.reap_stale(db, jt, spec.stale_after, now=now)
        return n
