# app/core/enums.py
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict


class JobType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class UpdateStateStatus(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class CycleOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobSpec:
    job_type: JobType
    window_hours: int
    # edad a partir de la cual un read dispara un ciclo
    freshness: timedelta
    # heartbeat más viejo que esto => el reaper marca failed
    stale_after: timedelta
    # intervalo del trigger periódico
    interval: timedelta
    max_pages: int


JOB_SPECS: Dict[JobType, JobSpec] = {
    JobType.DAILY: JobSpec(
        job_type=JobType.DAILY,
        window_hours=24,
        freshness=timedelta(hours=1),
        stale_after=timedelta(minutes=60),
        interval=timedelta(hours=1),
        max_pages=1000,
    ),
    JobType.WEEKLY: JobSpec(
        job_type=JobType.WEEKLY,
        window_hours=168,
        freshness=timedelta(hours=6),
        stale_after=timedelta(hours=8),
        interval=timedelta(hours=24),
        max_pages=10000,
    ),
}

# tolerancia al comparar el token (started_at) contra la DB
OWNERSHIP_TOLERANCE = timedelta(seconds=2)

# el read path solo expone progreso si el heartbeat es reciente
PROGRESS_VISIBLE_FOR = timedelta(minutes=5)

# system_settings keys (control plane)
KEY_JOB_ENABLED: Dict[JobType, str] = {
    JobType.DAILY: "jobs.icm_daily.enabled",
    JobType.WEEKLY: "jobs.icm_weekly.enabled",
}


def max_pages_for_window(window_hours: int) -> int:
    return 1000 if int(window_hours) <= 24 else 10000
