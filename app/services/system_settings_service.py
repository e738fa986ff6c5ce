# app/services/system_settings_service.py
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.enums import KEY_JOB_ENABLED, JobType
from app.models.system_setting import SystemSetting

_TRUE_VALUES = ("1", "true", "yes", "y", "on", "enabled")


@dataclass
class CachedValue:
    value: Optional[str]
    expires_at: float


class SystemSettingsService:
    """
    Control plane (system_settings) con cache por proceso para no golpear
    la DB en cada tick del scheduler ni en cada read.
    """
    def __init__(self, ttl_seconds: int = 5) -> None:
        self.ttl_seconds = int(ttl_seconds)
        self._cache: Dict[str, CachedValue] = {}

    def get_raw(self, db: Session, key: str, default: Optional[str] = None) -> str:
        k = (key or "").strip()
        if not k:
            return default or ""

        now = time.monotonic()
        cv = self._cache.get(k)
        if cv is None or cv.expires_at < now:
            row = db.query(SystemSetting).filter(SystemSetting.key == k).first()
            cv = CachedValue(value=row.value if row else None, expires_at=now + self.ttl_seconds)
            self._cache[k] = cv

        if cv.value is None or cv.value.strip() == "":
            return default or ""
        return cv.value

    def get_bool(self, db: Session, key: str, default: bool = False) -> bool:
        raw = self.get_raw(db, key, default="1" if default else "0").strip().lower()
        return raw in _TRUE_VALUES

    def set_many(self, db: Session, updates: Dict[str, Any], *, updated_by: Optional[str] = None) -> None:
        for k, v in (updates or {}).items():
            kk = (k or "").strip()
            if not kk:
                continue
            vv = "" if v is None else str(v)

            row = db.query(SystemSetting).filter(SystemSetting.key == kk).first()
            if not row:
                db.add(SystemSetting(key=kk, value=vv, updated_by=updated_by))
            else:
                row.value = vv
                row.updated_by = updated_by
            self._cache.pop(kk, None)

        db.commit()

    def job_enabled(self, db: Session, job_type: JobType) -> bool:
        return self.get_bool(db, KEY_JOB_ENABLED[JobType(job_type)], default=True)

    def set_job_enabled(self, db: Session, job_type: JobType, enabled: bool, *, updated_by: Optional[str] = None) -> None:
        self.set_many(db, {KEY_JOB_ENABLED[JobType(job_type)]: "1" if enabled else "0"}, updated_by=updated_by)
