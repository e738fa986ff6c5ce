# app/schemas/icm.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PairCountOut(BaseModel):
    source_chain: str
    destination_chain: str
    message_count: int


class UpdateStatusOut(BaseModel):
    state: str
    started_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    progress: Dict[str, int] = Field(default_factory=dict)


class SnapshotMeta(BaseModel):
    data_type: str
    total_messages: int = 0
    time_window: int
    time_window_unit: str = "hours"
    updated_at: Optional[datetime] = None
    update_triggered: bool = False
    # solo si hay un ciclo in_progress con heartbeat reciente
    update_status: Optional[UpdateStatusOut] = None


class SnapshotOut(BaseModel):
    data: List[PairCountOut] = Field(default_factory=list)
    metadata: SnapshotMeta


class HistoricalDayOut(BaseModel):
    date: datetime
    date_string: str
    data: List[PairCountOut] = Field(default_factory=list)
    total_messages: int = 0
    time_window: int = 24


class HistoricalMeta(BaseModel):
    requested_days: int
    days_returned: int
    updated_at: datetime


class HistoricalOut(BaseModel):
    data: List[HistoricalDayOut] = Field(default_factory=list)
    metadata: HistoricalMeta


class UpdateStateOut(BaseModel):
    job_type: str
    state: str
    started_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    progress: Dict[str, int] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class TriggerOut(BaseModel):
    job_type: str
    accepted: bool
    detail: str = ""
