# services/pipeline.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from apps.common.log import get_logger
from services.analysis.client import (
    STATE_FAILED,
    STATE_PROCESSING,
    AnalysisServiceClient,
    AnalysisServiceError,
)
from services.analysis.poller import DETAIL_SALVAGED, JobStatusPoller, NoResultFilesError, PollOutcome
from services.ingestion.ephemeral import EphemeralStorageManager
from services.ingestion.storage import StorageError
from services.jobs.job_store import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_SUBMITTED,
    STATUS_UPLOADING,
    InvalidTransitionError,
    JobStore,
    ModerationJob,
)
from services.moderation.normalizer import ResultNormalizer, summarize
from services.propagation.propagator import UpdatePropagator
from services.propagation.record_store import RecordStoreError

logger = get_logger(__name__)

COMPLETION_CLAIM = "completion"
TRANSIENT_ERROR = "Temporary upstream communication issue"

STATIC_PROGRESS = {STATUS_UPLOADING: 10, STATUS_SUBMITTED: 25}


class PipelineError(RuntimeError):
    """Non-HTTP error for pipeline failures."""


class ValidationError(ValueError):
    """Request rejected before any state was touched."""


@dataclass(frozen=True)
class PipelineConfig:
    confidence_threshold: float = 80.0
    include_albums: bool = True
    # Provider said SUCCEEDED but the bucket is empty: keep retrying this long.
    missing_results_grace_s: float = 1800.0


class ModerationPipeline:
    """
    Owns the job state machine:
      uploading -> submitted -> processing -> completed | failed
    and sequences poll -> normalize -> classify -> propagate -> complete -> cleanup.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        poller: JobStatusPoller,
        normalizer: ResultNormalizer,
        propagator: UpdatePropagator,
        storage: EphemeralStorageManager,
        analysis: AnalysisServiceClient,
        dispatch_cleanup: Callable[[str], Any],
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self.jobs = jobs
        self.poller = poller
        self.normalizer = normalizer
        self.propagator = propagator
        self.storage = storage
        self.analysis = analysis
        self.dispatch_cleanup = dispatch_cleanup
        self.config = config or PipelineConfig()

    # --- submission ---

    def submit(self, *, owner_id: str, images: Sequence[Tuple[str, bytes]]) -> ModerationJob:
        if not images:
            raise ValidationError("No images provided")

        job = self.jobs.create(total_images=len(images), owner_id=owner_id)
        try:
            bucket = self.storage.create_job_bucket(owner_id)
            self.jobs.update(job.id, temp_storage_location=bucket)

            keys = self.storage.upload_images(bucket, images)
            if not keys:
                raise PipelineError("No images could be uploaded")
            self.jobs.transition(job.id, STATUS_SUBMITTED, expected=STATUS_UPLOADING)

            external_id = self.analysis.submit(
                bucket=bucket,
                job_name=f"nsfw-bulk-{job.id}",
                min_confidence=self.config.confidence_threshold,
                output_prefix=f"output-{job.id}/",
            )
            return self.jobs.transition(
                job.id, STATUS_PROCESSING, expected=STATUS_SUBMITTED, external_job_id=external_id
            )
        except (PipelineError, StorageError, AnalysisServiceError) as e:
            self._fail(self.jobs.get(job.id), f"Submission failed: {e}")
            raise PipelineError(str(e)) from e

    # --- status query ---

    def check_status(self, job_id: Optional[str]) -> Dict[str, Any]:
        """
        Idempotent for terminal jobs. For processing jobs this may advance
        the record to completed or failed.
        Raises ValidationError (no id) and JobNotFoundError (unknown id).
        """
        if not job_id or not str(job_id).strip():
            raise ValidationError("Missing jobId")

        job = self.jobs.get(str(job_id).strip())

        if job.status == STATUS_COMPLETED:
            return self._completed_response(job)
        if job.status == STATUS_FAILED:
            return self._failed_response(job)
        if job.status != STATUS_PROCESSING:
            return self._base(job, job.status, STATIC_PROGRESS.get(job.status, 0))

        try:
            outcome = self.poller.poll(job)
        except NoResultFilesError as e:
            return self._missing_results(job, e)
        except (AnalysisServiceError, StorageError) as e:
            logger.error("Status check for job %s hit an upstream error: %s", job.id, e)
            return {**self._base(job, STATUS_PROCESSING, 50), "error": TRANSIENT_ERROR, "detail": str(e)}

        if outcome.state == STATE_FAILED:
            return self._respond(self._fail(job, outcome.detail or "Analysis job failed"))
        if outcome.state == STATE_PROCESSING:
            return self._base(job, STATUS_PROCESSING, outcome.progress)
        return self._complete(job, outcome)

    # --- internals ---

    def _base(self, job: ModerationJob, status: str, progress: int) -> Dict[str, Any]:
        return {"jobId": job.id, "status": status, "progress": progress, "totalImages": job.total_images}

    def _completed_response(self, job: ModerationJob) -> Dict[str, Any]:
        stored = self.jobs.get_results(job.id) or {}
        return {
            **self._base(job, STATUS_COMPLETED, 100),
            "processedImages": job.processed_images,
            "nsfwDetected": job.nsfw_detected,
            "results": stored.get("results", []),
            "albums": stored.get("albums", []),
        }

    def _respond(self, job: ModerationJob) -> Dict[str, Any]:
        if job.status == STATUS_COMPLETED:
            return self._completed_response(job)
        if job.status == STATUS_FAILED:
            return self._failed_response(job)
        return self._base(job, job.status, STATIC_PROGRESS.get(job.status, 0))

    def _failed_response(self, job: ModerationJob) -> Dict[str, Any]:
        return {
            "jobId": job.id,
            "status": STATUS_FAILED,
            "totalImages": job.total_images,
            "error": job.error_message or "Job processing failed",
        }

    def _missing_results(self, job: ModerationJob, err: Exception) -> Dict[str, Any]:
        age = job.age_seconds()
        if age > self.config.missing_results_grace_s:
            return self._respond(self._fail(job, str(err)))
        logger.warning("Job %s: %s (age %.0fs); will retry", job.id, err, age)
        return {**self._base(job, STATUS_PROCESSING, 95), "error": TRANSIENT_ERROR, "detail": str(err)}

    def _fail(self, job: ModerationJob, message: str) -> ModerationJob:
        try:
            failed = self.jobs.transition(job.id, STATUS_FAILED, error_message=message)
        except InvalidTransitionError as e:
            # Another writer already made the job terminal.
            logger.warning("Job %s not marked failed: %s", job.id, e)
            return self.jobs.get(job.id)
        logger.error("Job %s failed: %s", job.id, message)
        self._cleanup(failed)
        return failed

    def _cleanup(self, job: ModerationJob) -> None:
        bucket = job.temp_storage_location
        if not bucket:
            return
        try:
            self.dispatch_cleanup(bucket)
            logger.info("Cleanup of %s dispatched for job %s", bucket, job.id)
        except Exception as e:
            logger.error("Could not dispatch cleanup of %s for job %s: %s", bucket, job.id, e)

    def _complete(self, job: ModerationJob, outcome: PollOutcome) -> Dict[str, Any]:
        token = self.jobs.try_claim(job.id, COMPLETION_CLAIM)
        if not token:
            logger.info("Job %s completion already in progress elsewhere", job.id)
            return self._base(job, STATUS_PROCESSING, 95)

        try:
            current = self.jobs.get(job.id)
            if current.status != STATUS_PROCESSING:
                return self._respond(current)

            try:
                results = self.normalizer.normalize_files(outcome.files, self.config.confidence_threshold)
                albums: List[Dict[str, Any]] = []
                if self.config.include_albums:
                    flagged = [r for r in results if r.is_flagged]
                    albums = [
                        g.to_dict()
                        for g in self.normalizer.classifier.group_by_category(
                            (r.image_id, r.matched_labels, r.confidence_score) for r in flagged
                        )
                    ]
            except Exception as e:
                return self._respond(self._fail(current, f"Result processing failed: {e}"))

            if not self.jobs.holds_claim(job.id, COMPLETION_CLAIM, token):
                # Claim went stale and another writer took it over.
                logger.warning("Job %s lost its completion claim before propagation", job.id)
                return self._respond(self.jobs.get(job.id))

            try:
                self.propagator.propagate(current.id, current.owner_id, results)
            except RecordStoreError as e:
                # Record not advanced: the next poll retries the whole step.
                logger.error("Job %s: propagation failed, will retry: %s", current.id, e)
                return {**self._base(current, STATUS_PROCESSING, 95), "error": TRANSIENT_ERROR, "detail": str(e)}

            counts = summarize(results)
            self.jobs.save_results(
                current.id,
                {
                    "results": [r.to_dict() for r in results],
                    "albums": albums,
                    "salvaged": outcome.detail == DETAIL_SALVAGED,
                },
            )
            try:
                done = self.jobs.transition(
                    current.id,
                    STATUS_COMPLETED,
                    expected=STATUS_PROCESSING,
                    processed_images=counts["total"],
                    nsfw_detected=counts["flagged"],
                )
            except InvalidTransitionError as e:
                logger.warning("Job %s was finished by another writer: %s", job.id, e)
                return self._respond(self.jobs.get(job.id))
        finally:
            self.jobs.release_claim(job.id, COMPLETION_CLAIM, token)

        self._cleanup(done)
        return self._completed_response(done)
