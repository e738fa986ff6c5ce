from datetime import date, datetime, timedelta, timezone

from app.core.enums import JOB_SPECS, JobType, max_pages_for_window
from app.core.errors import LockLost, StaleLockError, error_detail
from app.core.timeutils import as_utc, day_bounds, end_of_day, normalize_epoch_seconds, parse_dt


def test_normalize_epoch_seconds():
    assert normalize_epoch_seconds(1_700_000_000) == 1_700_000_000
    assert normalize_epoch_seconds(1_700_000_000_123) == 1_700_000_000
    assert normalize_epoch_seconds("1700000000") == 1_700_000_000
    assert normalize_epoch_seconds(1_700_000_000.9) == 1_700_000_000
    for bad in (None, "", "abc", 0, -5, True):
        assert normalize_epoch_seconds(bad) is None


def test_day_bounds_and_end_of_day_are_utc():
    start, end = day_bounds(datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc))
    assert start == datetime(2026, 10, 19, tzinfo=timezone.utc)
    assert end - start == timedelta(days=1)
    assert end_of_day(date(2026, 10, 18)) == datetime(2026, 10, 18, 23, 59, 59, tzinfo=timezone.utc)


def test_as_utc_and_parse_dt():
    assert as_utc(None) is None
    assert as_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc
    assert parse_dt("2026-10-19T12:00:00Z") == datetime(2026, 10, 19, 12, tzinfo=timezone.utc)


def test_job_specs():
    assert JOB_SPECS[JobType.DAILY].window_hours == 24
    assert JOB_SPECS[JobType.WEEKLY].window_hours == 168
    assert JOB_SPECS[JobType.DAILY].stale_after == timedelta(minutes=60)
    assert JOB_SPECS[JobType.WEEKLY].stale_after == timedelta(hours=8)
    assert max_pages_for_window(24) == 1000
    assert max_pages_for_window(168) == 10000


def test_error_details():
    d = StaleLockError("daily", None, timedelta(minutes=60)).to_detail()
    assert d["message"] == "Update timed out (no heartbeat for more than 60 minutes)"
    assert d["details"]["threshold_seconds"] == 3600

    assert error_detail(LockLost("weekly", page=3))["message"] == "lock lost for job_type=weekly before page=3"
    assert error_detail(ValueError("boom")) == {"type": "ValueError", "message": "boom", "details": {}}
