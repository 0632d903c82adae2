"""Scheduler process: periodic dispatch sweep and stalled-job audit.

Run with ``python scheduler.py`` next to one or more ``worker.py``
processes.
"""

import logging
from datetime import datetime

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger as profiler

from backpressure import get_backpressure
from config import settings
from database import SessionLocal, create_tables
from dispatcher import DispatchSweep, SweepReport, get_dispatcher
from job_store import JobStore
from monitoring import backpressure_regime
from notifications import get_publisher
from recovery import RecoveryEngine

logger = logging.getLogger(__name__)


def run_sweep() -> SweepReport:
    db = SessionLocal()
    try:
        store = JobStore(db, notifier=get_publisher())
        report = DispatchSweep(store, get_dispatcher(), get_backpressure()).run()
    finally:
        db.close()
    backpressure_regime.state(report.regime)
    profiler.info(f"Sweep: {len(report.dispatched)} dispatched, {report.skipped} skipped ({report.regime})")
    return report


def run_stall_audit() -> list:
    db = SessionLocal()
    try:
        store = JobStore(db, notifier=get_publisher())
        results = RecoveryEngine(store, get_dispatcher(), get_backpressure()).run()
    finally:
        db.close()
    for result in results:
        profiler.info(f"Recovery: job {result.job_id} attempt {result.attempt} {result.strategy.value}")
    return results


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler()
    scheduler.add_job(
        run_sweep,
        trigger=IntervalTrigger(seconds=settings.sweep_interval_seconds),
        id="dispatch-sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(),
    )
    scheduler.add_job(
        run_stall_audit,
        trigger=IntervalTrigger(seconds=settings.stall_check_interval_seconds),
        id="stall-audit",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


if __name__ == '__main__':
    logging.basicConfig(level=settings.log_level)
    profiler.add(settings.worker_log_file, rotation="1 week", retention="4 weeks", level="INFO")
    create_tables()
    scheduler = build_scheduler()
    logger.info("Scheduler started")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
