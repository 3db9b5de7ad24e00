"""Celery tasks for upload staging housekeeping."""
import logging
from datetime import timedelta

from marketplace.config import get_settings
from marketplace.database import SessionLocal
from marketplace.services.staging import expire_stale_batches
from marketplace.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task
def cleanup_stale_batches() -> dict:
    """
    Cancel uploads left in STAGING past the retention window and purge
    staged rows of finished batches. Runs hourly from the beat schedule.

    Returns:
        Dict with expired batch and purged row counts
    """
    retention = timedelta(hours=get_settings().staging_retention_hours)
    logger.info(f"🧹 Starting staging cleanup (retention={retention})")

    db = SessionLocal()
    try:
        result = expire_stale_batches(db, older_than=retention)
        logger.info(f"✅ Staging cleanup finished: {result}")
        return result
    except Exception as e:
        db.rollback()
        logger.error(f"💥 Staging cleanup failed: {e}", exc_info=True)
        raise
    finally:
        db.close()
