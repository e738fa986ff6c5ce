from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.enums import JobType
from app.db import get_db
from app.schemas.icm import HistoricalOut, SnapshotOut, TriggerOut, UpdateStateOut
from app.services.icm_read_service import IcmReadService
from app.services.icm_trigger import get_trigger

router = APIRouter(prefix="/icm", tags=["icm"])


def get_read_service() -> IcmReadService:
    return IcmReadService(get_trigger())


@router.get("/messages/daily-count", response_model=SnapshotOut)
def daily_count(
    from_chain: Optional[str] = Query(default=None),
    to_chain: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    svc: IcmReadService = Depends(get_read_service),
):
    return svc.get_snapshot(db, JobType.DAILY, from_chain=from_chain, to_chain=to_chain)


@router.get("/messages/weekly-count", response_model=SnapshotOut)
def weekly_count(
    from_chain: Optional[str] = Query(default=None),
    to_chain: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    svc: IcmReadService = Depends(get_read_service),
):
    return svc.get_snapshot(db, JobType.WEEKLY, from_chain=from_chain, to_chain=to_chain)


@router.get("/messages/historical-daily", response_model=HistoricalOut)
def historical_daily(
    days: int = Query(default=30, ge=1, le=365),
    from_chain: Optional[str] = Query(default=None),
    to_chain: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    svc: IcmReadService = Depends(get_read_service),
):
    return svc.get_historical_daily(db, days, from_chain=from_chain, to_chain=to_chain)


@router.post("/updates/{job_type}", response_model=TriggerOut, status_code=202)
def trigger_update(
    job_type: JobType,
    db: Session = Depends(get_db),
    svc: IcmReadService = Depends(get_read_service),
):
    accepted = svc.trigger_update(db, job_type)
    if not accepted:
        return JSONResponse(
            status_code=409,
            content=TriggerOut(
                job_type=job_type.value,
                accepted=False,
                detail="job disabled or already queued",
            ).model_dump(),
        )
    return TriggerOut(job_type=job_type.value, accepted=True, detail="update scheduled")


@router.get("/updates", response_model=List[UpdateStateOut])
def update_states(
    db: Session = Depends(get_db),
    svc: IcmReadService = Depends(get_read_service),
):
    return svc.update_states(db)
