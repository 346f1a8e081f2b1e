from __future__ import annotations

from apps.common.log import get_logger, setup_logging
from apps.workers.celery_app import celery_app
from apps.workers.client_loader import get_job_store, get_storage
from services.ingestion.ephemeral import is_temp_bucket

setup_logging()
logger = get_logger(__name__)


def _bucket_in_use(bucket: str) -> bool:
    job = get_job_store().find_by_bucket(bucket)
    return job is not None and not job.is_terminal


@celery_app.task(name="moderation.cleanup_bucket")
def cleanup_bucket(bucket: str) -> dict:
    """
    Delete a job's temp bucket and stamp the owning job.
    Never raises: a bucket left behind is picked up by the sweep.
    """
    if not is_temp_bucket(bucket):
        logger.warning("Refusing to clean up non-temp bucket %s", bucket)
        return {"ok": False, "bucket": bucket, "error": "not_temp_bucket"}

    try:
        deleted = get_storage().delete_bucket(bucket)
    except Exception as e:
        logger.error("Cleanup of bucket %s failed: %s", bucket, e)
        return {"ok": False, "bucket": bucket, "error": "cleanup_failed", "detail": str(e)[:300]}

    jobs = get_job_store()
    job = jobs.find_by_bucket(bucket)
    if job is not None:
        jobs.mark_cleaned_up(job.id)
    return {"ok": True, "bucket": bucket, "deleted_objects": deleted}


@celery_app.task(name="moderation.sweep_stale_buckets")
def sweep_stale_buckets(older_than_hours: float = 24.0, force: bool = False) -> dict:
    report = get_storage().sweep_stale_buckets(
        older_than_hours=float(older_than_hours),
        is_active=_bucket_in_use,
        force=bool(force),
    )
    jobs = get_job_store()
    for bucket in report.deleted:
        job = jobs.find_by_bucket(bucket)
        if job is not None and not job.cleaned_up_at:
            jobs.mark_cleaned_up(job.id)
    return {
        "deleted": report.deleted,
        "skipped": [{"bucket": b, "reason": r} for b, r in report.skipped],
        "errors": report.errors,
    }
