from __future__ import annotations

import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import SessionLocal
from app.core.errors import LedgerError
from app.core.settings import settings
from app.services.invitations import sweep_expired_invitations
from app.services.purchases import reconcile_pending_purchases

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None


def get_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 600,
            },
            timezone="UTC",
        )
    return _scheduler


def run_invite_sweep_job(session_factory: Callable[[], Session] = SessionLocal) -> int:
    db = session_factory()
    try:
        return sweep_expired_invitations(db)
    except SQLAlchemyError:
        logger.exception("jobs.invite_sweep.failed")
        return 0
    finally:
        db.close()


def run_purchase_reconcile_job(session_factory: Callable[[], Session] = SessionLocal) -> int:
    db = session_factory()
    try:
        summary = reconcile_pending_purchases(db)
        return summary.completed + summary.expired
    except (SQLAlchemyError, LedgerError):
        logger.exception("jobs.purchase_reconcile.failed")
        return 0
    finally:
        db.close()


def start_scheduler() -> BackgroundScheduler | None:
    if not settings.scheduler_enabled:
        logger.info("jobs.scheduler.disabled")
        return None
    scheduler = get_scheduler()
    if scheduler.running:
        return scheduler

    scheduler.add_job(
        func=run_invite_sweep_job,
        trigger=IntervalTrigger(minutes=settings.invite_sweep_interval_minutes),
        id="invite_sweep",
        name="Fail expired team invitations",
        replace_existing=True,
    )
    if settings.lemonsqueezy_api_key:
        scheduler.add_job(
            func=run_purchase_reconcile_job,
            trigger=IntervalTrigger(minutes=settings.purchase_reconcile_interval_minutes),
            id="purchase_reconcile",
            name="Reconcile pending credit purchases",
            replace_existing=True,
        )
    scheduler.start()
    logger.info("jobs.scheduler.started jobs=%s", [j.id for j in scheduler.get_jobs()])
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("jobs.scheduler.stopped")
    _scheduler = None
