# app/models/icm_update_state.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict

from app.core.enums import UpdateStateStatus
from app.db import Base

JsonDoc = JSON().with_variant(JSONB(), "postgresql")


@dataclass(frozen=True)
class UpdateProgress:
    """Contadores del ciclo. Siempre completos desde su construcción."""

    pages_fetched: int = 0
    messages_collected: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "UpdateProgress":
        raw = raw if isinstance(raw, dict) else {}
        return cls(
            pages_fetched=int(raw.get("pages_fetched") or 0),
            messages_collected=int(raw.get("messages_collected") or 0),
        )


class IcmUpdateState(Base):
    """
    Lock + state machine por job type (daily / weekly).

    job_type NO es unique a propósito: ensure_row() tolera duplicados
    (inserts concurrentes o data vieja) y se queda con el más reciente.
    """
    __tablename__ = "icm_update_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(32), nullable=False)

    state = Column(String(32), nullable=False, default=UpdateStateStatus.IDLE.value)

    # token de ownership del ciclo actual/último
    started_at = Column(DateTime(timezone=True), nullable=True)
    # heartbeat
    last_updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    progress = Column(
        MutableDict.as_mutable(JsonDoc),
        nullable=False,
        default=lambda: UpdateProgress().to_dict(),
    )
    error = Column(MutableDict.as_mutable(JsonDoc), nullable=True)

    __table_args__ = (
        Index("ix_icm_update_state_job_type_state", "job_type", "state"),
    )

    def __repr__(self) -> str:
        return (
            f"<IcmUpdateState id={self.id} job_type={self.job_type} "
            f"state={self.state} started_at={self.started_at}>"
        )
