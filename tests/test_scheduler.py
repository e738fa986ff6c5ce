import queue
import threading
from datetime import timedelta

from app.core.enums import JobType
from app.services.icm_trigger import BackgroundTrigger
from app.services.icm_update_service import CycleResult
from app.workers.icm_scheduler_loop import due_jobs, initial_schedule, run_tick

from tests.conftest import NOW


class RecordingTrigger:
    def __init__(self, refuse=(), fail=()):
        self.refuse = set(refuse)
        self.fail = set(fail)
        self.calls = []

    def __call__(self, job_type):
        self.calls.append(job_type)
        if job_type in self.fail:
            raise RuntimeError("executor shut down")
        return job_type not in self.refuse


class SlowWeeklyService:
    """weekly queda bloqueado hasta release_weekly; daily termina al instante."""

    def __init__(self):
        self.release_weekly = threading.Event()
        self.weekly_started = threading.Event()
        self.finished = queue.Queue()

    def run_cycle(self, job_type, *, now=None):
        if job_type == JobType.WEEKLY:
            self.weekly_started.set()
            self.release_weekly.wait(timeout=10)
        self.finished.put(job_type)
        return CycleResult(job_type=job_type, status="completed")


def test_initial_schedule_runs_everything_immediately():
    sched = initial_schedule(NOW)
    assert due_jobs(sched, NOW) == [JobType.DAILY, JobType.WEEKLY]


def test_run_tick_reschedules_by_interval():
    sched = initial_schedule(NOW)
    trigger = RecordingTrigger()

    assert run_tick(trigger, sched, now=NOW) == [JobType.DAILY, JobType.WEEKLY]
    assert sched[JobType.DAILY] == NOW + timedelta(hours=1)
    assert sched[JobType.WEEKLY] == NOW + timedelta(hours=24)

    # a los 30 minutos no hay nada vencido
    assert run_tick(trigger, sched, now=NOW + timedelta(minutes=30)) == []

    # a la hora solo daily
    assert run_tick(trigger, sched, now=NOW + timedelta(hours=1)) == [JobType.DAILY]
    assert trigger.calls == [JobType.DAILY, JobType.WEEKLY, JobType.DAILY]


def test_run_tick_survives_dispatch_errors_and_busy_jobs():
    sched = initial_schedule(NOW)
    trigger = RecordingTrigger(refuse={JobType.WEEKLY}, fail={JobType.DAILY})

    assert run_tick(trigger, sched, now=NOW) == []
    # ambos se reprograman igual
    assert sched[JobType.DAILY] == NOW + timedelta(hours=1)
    assert sched[JobType.WEEKLY] == NOW + timedelta(hours=24)


def test_slow_weekly_does_not_delay_daily():
    service = SlowWeeklyService()
    trigger = BackgroundTrigger(service, max_workers=2)
    sched = initial_schedule(NOW)
    try:
        assert run_tick(trigger, sched, now=NOW) == [JobType.DAILY, JobType.WEEKLY]
        assert service.weekly_started.wait(timeout=5)

        # daily termina mientras weekly sigue corriendo
        assert service.finished.get(timeout=5) == JobType.DAILY
        assert not service.release_weekly.is_set()

        # un nuevo trigger de weekly no se encola mientras el anterior corre
        assert trigger(JobType.WEEKLY) is False
    finally:
        service.release_weekly.set()
        trigger.shutdown(wait=True)

    assert service.finished.get(timeout=5) == JobType.WEEKLY
