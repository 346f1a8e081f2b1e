# services/analysis/poller.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from apps.common.log import get_logger
from services.analysis.client import (
    STATE_FAILED,
    STATE_PROCESSING,
    STATE_SUCCEEDED,
    AnalysisServiceClient,
)
from services.ingestion.ephemeral import EphemeralStorageManager
from services.ingestion.storage import StoredObject
from services.jobs.job_store import ModerationJob, utcnow

logger = get_logger(__name__)

DETAIL_SALVAGED = "salvaged"
MAX_PROGRESS = 90

RawFile = Tuple[str, bytes]


class NoResultFilesError(RuntimeError):
    """Provider reported success but no result artifacts are in the bucket."""


def is_final_result(key: str) -> bool:
    k = key.lower()
    if "manifest" in k or "metadata" in k:
        return False
    return "results.jsonl" in k or ("result" in k and k.endswith(".json"))


def progress_for(job: ModerationJob, now: Optional[datetime] = None) -> int:
    """User-facing estimate only. Never used to decide completion."""
    return min(MAX_PROGRESS, int(job.age_seconds(now)))


@dataclass(frozen=True)
class PollOutcome:
    state: str  # processing | succeeded | failed
    detail: Optional[str] = None
    files: List[RawFile] = field(default_factory=list)
    progress: int = 0


class JobStatusPoller:
    def __init__(
        self,
        *,
        analysis: AnalysisServiceClient,
        storage: EphemeralStorageManager,
        staleness_s: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.analysis = analysis
        self.storage = storage
        self.staleness_s = float(staleness_s)
        self.clock = clock

    def _result_objects(self, bucket: str) -> List[StoredObject]:
        objects = self.storage.list_all(bucket)
        keep = [o for o in objects if is_final_result(o.key)]
        logger.info(
            "Bucket %s holds %d objects, %d result files: %s",
            bucket, len(objects), len(keep), [o.key for o in keep],
        )
        return keep

    def _fetch(self, bucket: str, objects: List[StoredObject]) -> List[RawFile]:
        return [(o.key, self.storage.fetch(bucket, o.key)) for o in objects]

    def poll(self, job: ModerationJob) -> PollOutcome:
        """
        Raises AnalysisServiceError / StorageError on transient upstream
        faults and NoResultFilesError when success has no artifacts.
        """
        if not job.external_job_id:
            return PollOutcome(state=STATE_PROCESSING, detail="not_submitted", progress=progress_for(job, self.clock()))

        status = self.analysis.get_status(job.external_job_id)
        now = self.clock()

        if status.state == STATE_FAILED:
            return PollOutcome(state=STATE_FAILED, detail=status.message or "Analysis job failed")

        bucket = job.temp_storage_location
        if status.state == STATE_SUCCEEDED:
            if not bucket:
                raise NoResultFilesError("job has no temp storage location")
            objects = self._result_objects(bucket)
            if not objects:
                raise NoResultFilesError(f"No result files found in temp bucket {bucket}")
            return PollOutcome(state=STATE_SUCCEEDED, files=self._fetch(bucket, objects), progress=100)

        age = job.age_seconds(now)
        if age > self.staleness_s and bucket:
            # The provider's status lags its output near completion; look anyway.
            logger.warning(
                "Job %s still reported in progress after %.0fs; checking bucket %s",
                job.id, age, bucket,
            )
            try:
                objects = self._result_objects(bucket)
                if objects:
                    logger.warning("Found results for job %s despite in-progress status", job.id)
                    return PollOutcome(
                        state=STATE_SUCCEEDED,
                        detail=DETAIL_SALVAGED,
                        files=self._fetch(bucket, objects),
                        progress=100,
                    )
            except Exception as e:
                logger.error("Salvage check of bucket %s failed: %s", bucket, e)

        return PollOutcome(state=STATE_PROCESSING, detail=status.message, progress=progress_for(job, now))
