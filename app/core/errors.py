# app/core/errors.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional


class IcmError(Exception):
    """Base de los errores del pipeline ICM."""

    def details(self) -> Dict[str, Any]:
        return {}

    def to_detail(self) -> Dict[str, Any]:
        # forma persistida en UpdateState.error (más timestamp, que pone release/reaper)
        return {"type": type(self).__name__, "message": str(self), "details": self.details()}


class TransientNetworkError(IcmError):
    """Reset de conexión, timeout, DNS. Se reintenta dentro del fetcher."""


class ServerError(IcmError):
    """Respuesta 429/502/503/504. Se reintenta dentro del fetcher."""

    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = int(status_code)

    def details(self) -> Dict[str, Any]:
        return {"status_code": self.status_code}


class PermanentFetchError(IcmError):
    """
    Retries agotados o respuesta no reintentable.
    El ciclo queda en failed con este detalle en UpdateState.error.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        page: Optional[int] = None,
        attempts: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.page = page
        self.attempts = attempts

    def details(self) -> Dict[str, Any]:
        return {"status_code": self.status_code, "page": self.page, "attempts": self.attempts}


class LockLost(IcmError):
    """
    El ciclo perdió el lock (otro owner o el reaper).
    El caller NO debe tocar UpdateState: puede haber un owner más nuevo avanzando.
    """

    def __init__(self, job_type: str, page: Optional[int] = None) -> None:
        msg = f"lock lost for job_type={job_type}"
        if page is not None:
            msg += f" before page={page}"
        super().__init__(msg)
        self.job_type = job_type
        self.page = page

    def details(self) -> Dict[str, Any]:
        return {"job_type": self.job_type, "page": self.page}


class StaleLockError(IcmError):
    """Lo construye el reaper para documentar un ciclo sin heartbeat. No sale a callers."""

    def __init__(self, job_type: str, last_updated_at: Optional[datetime], threshold: timedelta) -> None:
        minutes = int(threshold.total_seconds() // 60)
        super().__init__(f"Update timed out (no heartbeat for more than {minutes} minutes)")
        self.job_type = job_type
        self.last_updated_at = last_updated_at
        self.threshold = threshold

    def details(self) -> Dict[str, Any]:
        return {
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "threshold_seconds": int(self.threshold.total_seconds()),
        }


def error_detail(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, IcmError):
        return exc.to_detail()
    return {"type": type(exc).__name__, "message": str(exc), "details": {}}
