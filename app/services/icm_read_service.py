# app/services/icm_read_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.core.enums import JOB_SPECS, PROGRESS_VISIBLE_FOR, JobType, UpdateStateStatus
from app.core.timeutils import as_utc, utc_now
from app.jobs import update_lock
from app.models.icm_snapshot import IcmSnapshot
from app.models.icm_update_state import UpdateProgress
from app.schemas.icm import (
    HistoricalDayOut,
    HistoricalMeta,
    HistoricalOut,
    PairCountOut,
    SnapshotMeta,
    SnapshotOut,
    UpdateStateOut,
    UpdateStatusOut,
)
from app.services import snapshot_store
from app.services.system_settings_service import SystemSettingsService

logger = logging.getLogger("icmstats.read")

Trigger = Callable[[JobType], Any]


def _norm(s: Optional[str]) -> str:
    return (s or "").strip().lower()


def filter_pairs(
    pairs: Iterable[Dict[str, Any]],
    *,
    from_chain: Optional[str] = None,
    to_chain: Optional[str] = None,
) -> List[PairCountOut]:
    """Filtro case-insensitive por nombre de chain origen/destino."""
    src, dst = _norm(from_chain), _norm(to_chain)
    out: List[PairCountOut] = []
    for p in pairs or []:
        if src and _norm(p.get("source_chain")) != src:
            continue
        if dst and _norm(p.get("destination_chain")) != dst:
            continue
        out.append(
            PairCountOut(
                source_chain=str(p.get("source_chain") or ""),
                destination_chain=str(p.get("destination_chain") or ""),
                message_count=int(p.get("message_count") or 0),
            )
        )
    return out


class IcmReadService:
    """
    Read path: sirve siempre el último snapshot persistido (aunque esté
    viejo) y, si corresponde, agenda un ciclo sin esperarlo.
    """

    def __init__(
        self,
        trigger: Trigger,
        *,
        settings_service: Optional[SystemSettingsService] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._trigger = trigger
        self.settings_service = settings_service or SystemSettingsService()
        self._clock = clock

    def _fire(self, job_type: JobType) -> bool:
        try:
            # False = ya había un ciclo encolado en este proceso
            return self._trigger(job_type) is not False
        except Exception:
            # un trigger roto no puede tumbar el read
            logger.exception("[%s] could not schedule background update", job_type.value)
            return False

    def get_snapshot(
        self,
        db: Session,
        data_type: JobType,
        *,
        now: Optional[datetime] = None,
        from_chain: Optional[str] = None,
        to_chain: Optional[str] = None,
    ) -> SnapshotOut:
        jt = JobType(data_type)
        spec = JOB_SPECS[jt]
        now = as_utc(now) or self._clock()

        snap: Optional[IcmSnapshot] = snapshot_store.latest(db, jt)
        state = update_lock.get_state(db, jt)
        in_progress = state is not None and state.state == UpdateStateStatus.IN_PROGRESS.value

        captured_at = as_utc(snap.captured_at) if snap is not None else None
        stale = captured_at is None or (now - captured_at) > spec.freshness

        triggered = False
        if stale and not in_progress and self.settings_service.job_enabled(db, jt):
            logger.info(
                "[%s] snapshot %s, triggering background update",
                jt.value, "missing" if snap is None else "stale",
            )
            triggered = self._fire(jt)

        meta = SnapshotMeta(
            data_type=jt.value,
            total_messages=int(snap.total_messages) if snap is not None else 0,
            time_window=int(snap.window_hours) if snap is not None else spec.window_hours,
            updated_at=captured_at,
            update_triggered=triggered,
        )

        if in_progress:
            last_hb = as_utc(state.last_updated_at)
            # heartbeat viejo = ciclo probablemente colgado: no reportar progreso falso
            if last_hb is not None and (now - last_hb) < PROGRESS_VISIBLE_FOR:
                meta.update_status = UpdateStatusOut(
                    state=state.state,
                    started_at=as_utc(state.started_at),
                    last_updated_at=last_hb,
                    progress=UpdateProgress.from_dict(state.progress).to_dict(),
                )

        pairs = snap.pair_counts if snap is not None else []
        return SnapshotOut(
            data=filter_pairs(pairs, from_chain=from_chain, to_chain=to_chain),
            metadata=meta,
        )

    def get_historical_daily(
        self,
        db: Session,
        days: int,
        *,
        now: Optional[datetime] = None,
        from_chain: Optional[str] = None,
        to_chain: Optional[str] = None,
    ) -> HistoricalOut:
        now = as_utc(now) or self._clock()
        rows = snapshot_store.historical_daily(db, days, now=now)

        items: List[HistoricalDayOut] = []
        for r in rows:
            captured_at = as_utc(r.captured_at)
            items.append(
                HistoricalDayOut(
                    date=captured_at,
                    date_string=captured_at.date().isoformat(),
                    data=filter_pairs(r.pair_counts, from_chain=from_chain, to_chain=to_chain),
                    total_messages=int(r.total_messages or 0),
                    time_window=int(r.window_hours or 24),
                )
            )

        return HistoricalOut(
            data=items,
            metadata=HistoricalMeta(requested_days=int(days), days_returned=len(items), updated_at=now),
        )

    def trigger_update(self, db: Session, job_type: JobType) -> bool:
        jt = JobType(job_type)
        if not self.settings_service.job_enabled(db, jt):
            logger.info("[%s] trigger ignored, job disabled via system_settings", jt.value)
            return False
        return self._fire(jt)

    def update_states(self, db: Session) -> List[UpdateStateOut]:
        out: List[UpdateStateOut] = []
        for row in update_lock.list_states(db):
            out.append(
                UpdateStateOut(
                    job_type=row.job_type,
                    state=row.state,
                    started_at=as_utc(row.started_at),
                    last_updated_at=as_utc(row.last_updated_at),
                    progress=UpdateProgress.from_dict(row.progress).to_dict(),
                    error=dict(row.error) if row.error else None,
                )
            )
        return out
