from app.core.enums import JobType
from app.models.system_setting import SystemSetting
from app.services.system_settings_service import SystemSettingsService


def test_jobs_enabled_by_default(db):
    svc = SystemSettingsService(ttl_seconds=0)
    assert svc.job_enabled(db, JobType.DAILY)
    assert svc.job_enabled(db, JobType.WEEKLY)


def test_set_job_enabled_records_author_and_invalidates_cache(db):
    svc = SystemSettingsService(ttl_seconds=300)
    assert svc.job_enabled(db, JobType.WEEKLY)

    svc.set_job_enabled(db, JobType.WEEKLY, False, updated_by="cli")
    assert not svc.job_enabled(db, JobType.WEEKLY)
    assert svc.job_enabled(db, JobType.DAILY)

    row = db.query(SystemSetting).filter(SystemSetting.key == "jobs.icm_weekly.enabled").one()
    assert row.value == "0"
    assert row.updated_by == "cli"

    svc.set_job_enabled(db, JobType.WEEKLY, True, updated_by="ops")
    assert svc.job_enabled(db, JobType.WEEKLY)
    assert db.query(SystemSetting).count() == 1


def test_bool_parsing(db):
    svc = SystemSettingsService(ttl_seconds=0)
    svc.set_many(db, {"a": "Yes", "b": "off", "c": ""})
    assert svc.get_bool(db, "a")
    assert not svc.get_bool(db, "b", default=True)
    # vacío => default
    assert svc.get_bool(db, "c", default=True)
