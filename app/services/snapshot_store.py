# app/services/snapshot_store.py
"""
Persistencia de snapshots ICM.

  - daily: upsert por día calendario UTC (una fila por día)
  - weekly: upsert versionado; se inserta version+1 y recién después se
    borran las versiones anteriores. latest() siempre toma la version
    máxima, así un lector nunca ve cero snapshots.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.enums import JobType
from app.core.timeutils import as_utc, day_bounds, utc_now
from app.models.icm_snapshot import IcmSnapshot
from app.services.icm_aggregator import PairCount

logger = logging.getLogger("icmstats.snapshots")


@dataclass
class SnapshotData:
    data_type: JobType
    captured_at: datetime
    window_hours: int
    pair_counts: Sequence[PairCount] = field(default_factory=list)
    total_messages: int = 0

    def pair_dicts(self) -> List[Dict]:
        return [pc.to_dict() for pc in self.pair_counts]


def upsert_daily(db: Session, snap: SnapshotData) -> IcmSnapshot:
    """Si ya hay daily en el mismo día UTC se actualiza in place; si no, insert."""
    captured_at = as_utc(snap.captured_at) or utc_now()
    start, end = day_bounds(captured_at)

    row = (
        db.query(IcmSnapshot)
        .filter(
            IcmSnapshot.data_type == JobType.DAILY.value,
            IcmSnapshot.captured_at >= start,
            IcmSnapshot.captured_at < end,
        )
        .order_by(IcmSnapshot.captured_at.desc(), IcmSnapshot.id.desc())
        .first()
    )

    if row is not None:
        row.captured_at = captured_at
        row.pair_counts = snap.pair_dicts()
        row.total_messages = int(snap.total_messages)
        row.window_hours = int(snap.window_hours)
        action = "updated"
    else:
        row = IcmSnapshot(
            data_type=JobType.DAILY.value,
            captured_at=captured_at,
            window_hours=int(snap.window_hours),
            pair_counts=snap.pair_dicts(),
            total_messages=int(snap.total_messages),
            version=1,
        )
        db.add(row)
        action = "created"

    db.commit()
    logger.info("daily snapshot %s for %s (total=%d pairs=%d)", action, start.date(), row.total_messages, len(snap.pair_counts))
    return row


def replace_weekly(db: Session, snap: SnapshotData) -> IcmSnapshot:
    current = (
        db.query(func.max(IcmSnapshot.version))
        .filter(IcmSnapshot.data_type == JobType.WEEKLY.value)
        .scalar()
    )
    version = int(current or 0) + 1

    row = IcmSnapshot(
        data_type=JobType.WEEKLY.value,
        captured_at=as_utc(snap.captured_at) or utc_now(),
        window_hours=int(snap.window_hours),
        pair_counts=snap.pair_dicts(),
        total_messages=int(snap.total_messages),
        version=version,
    )
    db.add(row)
    # primero queda visible la nueva versión...
    db.commit()

    # ...después se limpian las anteriores
    removed = (
        db.query(IcmSnapshot)
        .filter(IcmSnapshot.data_type == JobType.WEEKLY.value, IcmSnapshot.id != row.id)
        .delete(synchronize_session=False)
    )
    db.commit()

    logger.info("weekly snapshot v%d stored (total=%d, removed %d old rows)", version, row.total_messages, removed)
    return row


def prune_older_than(db: Session, days: int, *, now: Optional[datetime] = None) -> int:
    """Borra daily capturados antes de now - days. Nunca toca weekly."""
    now = as_utc(now) or utc_now()
    cutoff = now - timedelta(days=int(days))
    n = (
        db.query(IcmSnapshot)
        .filter(IcmSnapshot.data_type == JobType.DAILY.value, IcmSnapshot.captured_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if n:
        logger.info("pruned %d daily snapshots older than %d days", n, days)
    return int(n or 0)


def latest(db: Session, data_type: JobType) -> Optional[IcmSnapshot]:
    dt = JobType(data_type)
    q = db.query(IcmSnapshot).filter(IcmSnapshot.data_type == dt.value)
    if dt == JobType.WEEKLY:
        q = q.order_by(IcmSnapshot.version.desc(), IcmSnapshot.captured_at.desc())
    else:
        q = q.order_by(IcmSnapshot.captured_at.desc(), IcmSnapshot.id.desc())
    return q.first()


def historical_daily(db: Session, days: int, *, now: Optional[datetime] = None) -> List[IcmSnapshot]:
    """Un daily por día UTC (el capturado más tarde), más reciente primero."""
    now = as_utc(now) or utc_now()
    since = now - timedelta(days=int(days))

    rows = (
        db.query(IcmSnapshot)
        .filter(IcmSnapshot.data_type == JobType.DAILY.value, IcmSnapshot.captured_at >= since)
        .order_by(IcmSnapshot.captured_at.desc(), IcmSnapshot.id.desc())
        .all()
    )

    by_day: Dict[date, IcmSnapshot] = {}
    for r in rows:
        d = as_utc(r.captured_at).date()
        # rows vienen ordenados desc: el primero de cada día es el más reciente
        by_day.setdefault(d, r)

    return sorted(by_day.values(), key=lambda r: as_utc(r.captured_at), reverse=True)


def missing_daily_dates(db: Session, days: int, *, now: Optional[datetime] = None) -> List[date]:
    """Días UTC (hoy excluido) de los últimos `days` sin daily snapshot, más viejo primero."""
    now = as_utc(now) or utc_now()
    today = now.date()
    first = today - timedelta(days=int(days))
    start, _ = day_bounds(now - timedelta(days=int(days)))

    rows = (
        db.query(IcmSnapshot.captured_at)
        .filter(IcmSnapshot.data_type == JobType.DAILY.value, IcmSnapshot.captured_at >= start)
        .all()
    )
    have: Set[date] = {as_utc(r[0]).date() for r in rows if r[0] is not None}

    out: List[date] = []
    d = first
    while d < today:
        if d not in have:
            out.append(d)
        d += timedelta(days=1)
    return out
