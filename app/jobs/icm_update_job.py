# app/jobs/icm_update_job.py
from __future__ import annotations

import argparse
import logging
import sys

from app.config import settings
from app.core.enums import JobType
from app.core.timeutils import parse_dt
from app.db import session_scope
from app.services.icm_update_service import IcmUpdateService


def main() -> None:
    p = argparse.ArgumentParser(description="ICM update job (one cycle, reaper or daily backfill)")
    p.add_argument("--job", choices=[j.value for j in JobType], default=JobType.DAILY.value)
    p.add_argument("--reap-only", action="store_true", help="Only mark stale in_progress cycles as failed")
    p.add_argument("--backfill-days", type=int, default=0, help="Fill missing daily snapshots for the last N days")
    p.add_argument("--now", type=str, default=None, help="ISO datetime used as window end (UTC)")
    g = p.add_mutually_exclusive_group()
    g.add_argument("--enable", action="store_true", help="Re-enable --job via system_settings and exit")
    g.add_argument("--disable", action="store_true", help="Pause --job via system_settings and exit")

    args = p.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    now = parse_dt(args.now) if args.now else None
    service = IcmUpdateService()

    try:
        if args.enable or args.disable:
            with session_scope() as db:
                service.settings_service.set_job_enabled(db, JobType(args.job), args.enable, updated_by="cli")
            print(f"[icm_job] job={args.job} enabled={args.enable}")
            return

        if args.reap_only:
            n = service.reap_all(now=now)
            print(f"[icm_job] reaped={n}")
            return

        if args.backfill_days > 0:
            res = service.backfill_daily(args.backfill_days, now=now)
            print(f"[icm_job] backfill status={res.status} days_filled={res.days_filled} messages={res.total_messages}")
            return

        res = service.run_cycle(JobType(args.job), now=now)
        print(
            f"[icm_job] job={args.job} status={res.status} "
            f"messages={res.total_messages} pairs={res.pair_count} reaped={res.reaped}"
        )
    except Exception as e:
        print(f"[icm_job] ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
