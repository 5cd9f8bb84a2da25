"""Interval scheduler for the Gmail checks, started with the API."""
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shared import settings

logger = logging.getLogger(__name__)

EMAIL_CHECK_JOB_ID = 'email_check'

_scheduler: Optional[BackgroundScheduler] = None
_is_running = False
_last_run: Optional[datetime] = None
_last_result: Optional[Dict[str, Any]] = None
_lock = threading.Lock()


def check_emails_job():
    """One scheduled pass over supplier invoices and Amex alerts. Overlapping passes are dropped."""
    global _is_running, _last_run, _last_result

    with _lock:
        if _is_running:
            logger.warning("⏸️  Previous email check still running, skipping this cycle")
            return
        _is_running = True

    started = datetime.utcnow()
    try:
        logger.info("🔁 Scheduled email check started")
        # late import keeps the Gmail client stack out of API startup
        from services.ingestion.main import check_emails_internal
        result = check_emails_internal()
        _last_result = {
            'supplierEmails': result['supplier']['processed'],
            'amexTransactions': result['amex']['processed'],
            'errors': result['supplier']['errors'] + result['amex']['errors'],
        }
        logger.info(
            f"✔ Email check done: {_last_result['supplierEmails']} invoice emails, "
            f"{_last_result['amexTransactions']} Amex purchases"
        )
    except Exception as e:
        _last_result = {'error': str(e)}
        logger.error(f"❌ Email check failed: {e}", exc_info=True)
    finally:
        with _lock:
            _is_running = False
            _last_run = started


def start_scheduler():
    global _scheduler

    if _scheduler and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    minutes = settings.email_check_interval_minutes
    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        check_emails_job,
        trigger=IntervalTrigger(minutes=minutes),
        id=EMAIL_CHECK_JOB_ID,
        name='Gmail invoice and Amex check',
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(f"🚀 Email check scheduled every {minutes} minutes")


def stop_scheduler():
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def get_scheduler_status() -> Dict[str, Any]:
    status = {
        'status': 'running' if _scheduler and _scheduler.running else 'stopped',
        'interval_minutes': settings.email_check_interval_minutes,
        'is_running': _is_running,
        'last_run': _last_run.isoformat() if _last_run else None,
        'last_result': _last_result,
        'next_run': None,
    }
    if status['status'] == 'running':
        job = _scheduler.get_job(EMAIL_CHECK_JOB_ID)
        if job and job.next_run_time:
            status['next_run'] = job.next_run_time.isoformat()
    return status
