# app/models/icm_snapshot.py
from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from app.db import Base


class IcmSnapshot(Base):
    """
    Agregado point-in-time de mensajes ICM por par de chains.

      - daily: uno por día calendario UTC (upsert)
      - weekly: versionado; el "actual" es siempre el de version más alta
    """
    __tablename__ = "icm_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)

    data_type = Column(String(16), nullable=False)
    captured_at = Column(DateTime(timezone=True), nullable=False)
    window_hours = Column(Integer, nullable=False, default=24)

    # [{"source_chain", "destination_chain", "message_count"}, ...]
    pair_counts = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list)
    total_messages = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_icm_snapshots_type_captured_at", "data_type", "captured_at"),
        Index("ix_icm_snapshots_type_version", "data_type", "version"),
    )

    def __repr__(self) -> str:
        return (
            f"<IcmSnapshot id={self.id} data_type={self.data_type} "
            f"captured_at={self.captured_at} total={self.total_messages} v={self.version}>"
        )
