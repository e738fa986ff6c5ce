# app/jobs/update_lock.py
"""
Lock por job type sobre icm_update_state.

La DB es la única autoridad de exclusión mutua: toda transición hacia
in_progress es un UPDATE condicional atómico (WHERE state != 'in_progress'),
nunca un read-then-write. El token de ownership es started_at.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, and_, case, literal, null, update
from sqlalchemy.orm import Session

from app.core.enums import OWNERSHIP_TOLERANCE, CycleOutcome, UpdateStateStatus
from app.core.errors import StaleLockError, error_detail
from app.core.timeutils import as_utc, utc_now
from app.models.icm_update_state import IcmUpdateState, UpdateProgress

logger = logging.getLogger("icmstats.lock")

IN_PROGRESS = UpdateStateStatus.IN_PROGRESS.value

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _job(job_type: Any) -> str:
    return str(getattr(job_type, "value", job_type))


def _ts(value: datetime):
    return literal(value, DateTime(timezone=True))


def _not_backwards(now: datetime):
    # heartbeat monotónico: nunca mover last_updated_at hacia atrás
    return case(
        (IcmUpdateState.last_updated_at > _ts(now), IcmUpdateState.last_updated_at),
        else_=_ts(now),
    )


def _owned_by(job_type: str, token: datetime):
    token = as_utc(token) or token
    return and_(
        IcmUpdateState.job_type == job_type,
        IcmUpdateState.state == IN_PROGRESS,
        IcmUpdateState.started_at >= token - OWNERSHIP_TOLERANCE,
        IcmUpdateState.started_at <= token + OWNERSHIP_TOLERANCE,
    )


def _rows(db: Session, job_type: str) -> List[IcmUpdateState]:
    # populate_existing: los UPDATE core no sincronizan el identity map
    rows = db.query(IcmUpdateState).populate_existing().filter(IcmUpdateState.job_type == job_type).all()
    # más reciente primero (started_at, luego id)
    return sorted(
        rows,
        key=lambda r: (as_utc(r.started_at) or _EPOCH, r.id or 0),
        reverse=True,
    )


def dedupe_rows(db: Session, job_type: Any) -> Optional[IcmUpdateState]:
    """
    Limpieza defensiva: si hay más de un row para el job type, conserva el
    más recientemente iniciado y borra el resto.
    """
    jt = _job(job_type)
    rows = _rows(db, jt)
    if not rows:
        return None

    keep, extra = rows[0], rows[1:]
    if extra:
        for r in extra:
            db.delete(r)
        db.commit()
        logger.warning(
            "removed %d duplicate update_state rows job_type=%s kept_id=%s",
            len(extra), jt, keep.id,
        )
    return keep


def ensure_row(db: Session, job_type: Any, *, now: Optional[datetime] = None) -> IcmUpdateState:
    """Insert-if-absent del row de estado (idle, progress en cero)."""
    jt = _job(job_type)
    exists = db.query(IcmUpdateState.id).filter(IcmUpdateState.job_type == jt).first()
    if not exists:
        db.add(
            IcmUpdateState(
                job_type=jt,
                state=UpdateStateStatus.IDLE.value,
                started_at=None,
                last_updated_at=as_utc(now) or utc_now(),
                progress=UpdateProgress().to_dict(),
                error=None,
            )
        )
        db.commit()

    row = dedupe_rows(db, jt)
    if row is None:
        # otro proceso borró el row entre el insert y la relectura
        raise RuntimeError(f"update_state row for job_type={jt} vanished after insert")
    return row


def get_state(db: Session, job_type: Any) -> Optional[IcmUpdateState]:
    rows = _rows(db, _job(job_type))
    return rows[0] if rows else None


def list_states(db: Session) -> List[IcmUpdateState]:
    return (
        db.query(IcmUpdateState)
        .populate_existing()
        .order_by(IcmUpdateState.job_type.asc(), IcmUpdateState.id.asc())
        .all()
    )


def acquire(db: Session, job_type: Any, *, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Intenta pasar el row a in_progress. Retorna el token (started_at) o None
    si ya hay un ciclo in_progress (en ese caso no se muta nada).
    """
    jt = _job(job_type)
    now = as_utc(now) or utc_now()
    row = ensure_row(db, jt, now=now)

    res = db.execute(
        update(IcmUpdateState)
        .where(IcmUpdateState.id == row.id, IcmUpdateState.state != IN_PROGRESS)
        .values(
            state=IN_PROGRESS,
            started_at=now,
            last_updated_at=now,
            progress=UpdateProgress().to_dict(),
            error=null(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if res.rowcount != 1:
        logger.info("acquire denied job_type=%s (already in_progress)", jt)
        return None

    logger.info("acquired job_type=%s token=%s", jt, now.isoformat())
    return now


def still_owned(db: Session, job_type: Any, token: datetime) -> bool:
    row = db.query(IcmUpdateState.id).filter(_owned_by(_job(job_type), token)).first()
    return row is not None


def heartbeat(
    db: Session,
    job_type: Any,
    token: datetime,
    *,
    progress: Optional[UpdateProgress] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Extiende last_updated_at (y opcionalmente progress) si el token sigue siendo dueño."""
    jt = _job(job_type)
    now = as_utc(now) or utc_now()

    values: Dict[str, Any] = {"last_updated_at": _not_backwards(now)}
    if progress is not None:
        values["progress"] = progress.to_dict()

    res = db.execute(
        update(IcmUpdateState)
        .where(_owned_by(jt, token))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    owned = res.rowcount > 0
    if not owned:
        logger.warning("heartbeat ignored job_type=%s token=%s (ownership lost)", jt, token)
    return owned


def release(
    db: Session,
    job_type: Any,
    token: datetime,
    outcome: CycleOutcome,
    *,
    error: Optional[BaseException] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    in_progress -> completed | failed. Si el ownership ya se perdió no toca
    nada (solo log) para no pisar el estado de un ciclo más nuevo.
    """
    jt = _job(job_type)
    now = as_utc(now) or utc_now()
    outcome = CycleOutcome(outcome)

    err_value: Any = null()
    if outcome == CycleOutcome.FAILED:
        if error is not None:
            detail = error_detail(error)
        else:
            detail = {"type": "Unknown", "message": "Update failed", "details": {}}
        detail["timestamp"] = now.isoformat()
        err_value = detail

    res = db.execute(
        update(IcmUpdateState)
        .where(_owned_by(jt, token))
        .values(state=outcome.value, last_updated_at=_not_backwards(now), error=err_value)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if res.rowcount == 0:
        logger.warning(
            "release skipped job_type=%s outcome=%s token=%s (ownership lost)",
            jt, outcome.value, token,
        )
        return False

    logger.info("released job_type=%s outcome=%s", jt, outcome.value)
    return True


def reap_stale(
    db: Session,
    job_type: Any,
    threshold: timedelta,
    *,
    now: Optional[datetime] = None,
) -> int:
    """
    Marca failed cualquier row in_progress cuyo heartbeat sea más viejo que
    threshold. Evita lockout permanente por un worker caído.
    """
    jt = _job(job_type)
    now = as_utc(now) or utc_now()
    cutoff = now - threshold

    stale = (
        db.query(IcmUpdateState)
        .populate_existing()
        .filter(
            IcmUpdateState.job_type == jt,
            IcmUpdateState.state == IN_PROGRESS,
            IcmUpdateState.last_updated_at < cutoff,
        )
        .all()
    )

    reaped = 0
    for row in stale:
        last_hb = as_utc(row.last_updated_at)
        detail = StaleLockError(jt, last_hb, threshold).to_detail()
        detail["timestamp"] = now.isoformat()

        # el WHERE repite la condición: un heartbeat concurrente gana
        res = db.execute(
            update(IcmUpdateState)
            .where(
                IcmUpdateState.id == row.id,
                IcmUpdateState.state == IN_PROGRESS,
                IcmUpdateState.last_updated_at < cutoff,
            )
            .values(state=UpdateStateStatus.FAILED.value, last_updated_at=now, error=detail)
            .execution_options(synchronize_session=False)
        )
        reaped += res.rowcount or 0

    db.commit()

    if reaped:
        logger.warning("reaped %d stale in_progress rows job_type=%s cutoff=%s", reaped, jt, cutoff.isoformat())
    return reaped
