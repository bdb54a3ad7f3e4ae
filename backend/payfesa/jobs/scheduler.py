"""
=====================================================
PAYFESA BACKGROUND JOBS
=====================================================
Daily settlement batch at the payout cutoff, plus the
processing-payout verifier on an interval.
"""
from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from payfesa.jobs.payout_verifier import verify_processing_payouts
from payfesa.jobs.settlement_runner import parse_cutoff, run_scheduled_settlement


# =====================================================
# JOB WRAPPERS
# =====================================================

def _settlement_job(app):
    with app.app_context():
        try:
            result = run_scheduled_settlement()
            app.logger.info("scheduled settlement finished %s", result)
        except Exception as e:
            app.logger.exception("scheduled settlement crashed: %s", e)


def _verifier_job(app):
    with app.app_context():
        try:
            verify_processing_payouts(older_than_minutes=int(app.config.get("VERIFY_OLDER_THAN_MINUTES") or 15))
        except Exception as e:
            app.logger.exception("payout verification crashed: %s", e)


# =====================================================
# STARTER
# =====================================================

def build_scheduler(app) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=app.config.get("SETTLEMENT_TIMEZONE") or "Africa/Blantyre")
    cutoff = parse_cutoff(app.config.get("PAYOUT_CUTOFF_TIME"))

    scheduler.add_job(
        _settlement_job,
        "cron",
        args=[app],
        id="scheduled_settlement",
        hour=cutoff.hour,
        minute=cutoff.minute,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        _verifier_job,
        "interval",
        args=[app],
        id="payout_verifier",
        minutes=int(app.config.get("VERIFY_INTERVAL_MINUTES") or 15),
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def start_scheduler(app) -> BackgroundScheduler | None:
    if not app.config.get("SETTLEMENT_SCHEDULER_ENABLED"):
        return None
    scheduler = build_scheduler(app)
    scheduler.start()
    app.logger.info("settlement scheduler started jobs=%s", [j.id for j in scheduler.get_jobs()])
    return scheduler
