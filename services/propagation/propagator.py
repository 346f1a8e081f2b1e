# services/propagation/propagator.py
from __future__ import annotations

import time
from typing import Callable, List, Optional, Protocol, Sequence

from apps.common.log import get_logger
from services.moderation.models import NormalizedModerationResult, VirtualImageUpdate
from services.propagation.record_store import BulkUpdateOutcome

logger = get_logger(__name__)


class RecordStore(Protocol):
    def ordered_record_ids(self, job_id: str) -> List[Optional[str]]: ...
    def bulk_update(self, job_id: str, owner_id: str, updates: Sequence[VirtualImageUpdate]) -> BulkUpdateOutcome: ...


def build_updates(
    results: Sequence[NormalizedModerationResult], record_ids: Sequence[Optional[str]]
) -> List[VirtualImageUpdate]:
    """Correlate by position: result i belongs to the i-th uploaded image."""
    updates: List[VirtualImageUpdate] = []
    for i, res in enumerate(results):
        vid = record_ids[i] if i < len(record_ids) else None
        if not vid:
            logger.warning("No record id for result %d (%s); skipping", i, res.image_id)
            continue
        updates.append(
            VirtualImageUpdate(
                virtual_image_id=vid,
                is_flagged=res.is_flagged,
                confidence_score=res.confidence_score,
                matched_labels=tuple(res.matched_labels),
                raw_analysis=res.raw,
            )
        )
    return updates


class UpdatePropagator:
    def __init__(
        self,
        *,
        store: RecordStore,
        delay_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.delay_s = float(delay_s)
        self.sleep = sleep

    def propagate(
        self, job_id: str, owner_id: str, results: Sequence[NormalizedModerationResult]
    ) -> BulkUpdateOutcome:
        """Raises RecordStoreError; the caller decides whether that is fatal."""
        # Correlation rows are written by the uploader and may lag slightly.
        if self.delay_s > 0:
            self.sleep(self.delay_s)

        record_ids = self.store.ordered_record_ids(job_id)
        updates = build_updates(results, record_ids)
        if not updates:
            logger.warning("Job %s: nothing to propagate (%d results, %d ids)", job_id, len(results), len(record_ids))
            return BulkUpdateOutcome(processed=0, failed=0)

        outcome = self.store.bulk_update(job_id, owner_id, updates)
        logger.info(
            "Job %s: propagated %d updates (%d processed, %d failed)",
            job_id, len(updates), outcome.processed, outcome.failed,
        )
        return outcome
