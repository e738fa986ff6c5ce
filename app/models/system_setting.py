from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from app.db import Base


class SystemSetting(Base):
    """
    Control plane key/value.

      jobs.icm_daily.enabled / jobs.icm_weekly.enabled  ("0" / "false" pausa el job)
    """
    __tablename__ = "system_settings"

    key = Column(String(191), primary_key=True, nullable=False)
    value = Column(String, nullable=False, default="")

    # quién hizo el último cambio (cli, operador, ...)
    updated_by = Column(String(128), nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<SystemSetting key={self.key} value={self.value!r}>"
