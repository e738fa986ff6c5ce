# app/core/timeutils.py
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple

# Glacier mezcla segundos y milisegundos: >= 1e12 solo puede ser ms
MILLIS_THRESHOLD = 10**12


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite devuelve datetimes naive (guardados en UTC)
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_epoch_seconds(value: Any) -> Optional[int]:
    """
    Normaliza un timestamp epoch (int/float/str numérico) a segundos.
    Retorna None si no hay valor utilizable.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return None
    if n <= 0:
        return None
    if n >= MILLIS_THRESHOLD:
        return n // 1000
    return n


def to_epoch_seconds(dt: datetime) -> int:
    return int((as_utc(dt) or dt).timestamp())


def day_bounds(dt: datetime) -> Tuple[datetime, datetime]:
    """[inicio, fin) del día calendario UTC que contiene dt."""
    d = (as_utc(dt) or dt).date()
    start = datetime.combine(d, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def end_of_day(d: date) -> datetime:
    # 23:59:59 para que el snapshot caiga dentro del día que representa
    return datetime.combine(d, time(23, 59, 59), tzinfo=timezone.utc)


def parse_dt(s: str) -> datetime:
    # Acepta ISO8601, con o sin Z
    s = (s or "").strip()
    if not s:
        raise ValueError("empty datetime")
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    return as_utc(dt) or dt
