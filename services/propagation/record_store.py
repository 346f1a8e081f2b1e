# services/propagation/record_store.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests

from services.moderation.models import VirtualImageUpdate

BULK_UPDATE_PATH = "/api/virtual-images/batch-update"
CORRELATION_PATH = "/api/bulk-jobs/{job_id}/virtual-images"


class RecordStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class BulkUpdateOutcome:
    processed: int
    failed: int


@dataclass(frozen=True)
class RecordStoreConfig:
    base_url: str
    token: str = ""
    timeout_s: float = 30.0


class RecordStoreClient:
    """
    Client for the downstream virtual-image store.
      - ordered_record_ids(job_id): record ids in upload order
      - bulk_update(job_id, owner_id, updates): one batch call
    Raises RecordStoreError on any HTTP/shape problem.
    """

    def __init__(self, config: RecordStoreConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return self.config.base_url.rstrip("/") + path

    def _headers(self, job_id: str, owner_id: str = "") -> Dict[str, str]:
        h = {"Content-Type": "application/json", "X-Job-ID": job_id}
        if owner_id:
            h["X-User-ID"] = owner_id
        if self.config.token:
            h["Authorization"] = f"Bearer {self.config.token}"
        return h

    def _json(self, r: requests.Response) -> Dict[str, Any]:
        try:
            r.raise_for_status()
        except requests.HTTPError as e:
            raise RecordStoreError(f"Record store error: {r.status_code} - {r.text[:300]}") from e
        try:
            body = r.json()
        except ValueError as e:
            raise RecordStoreError(f"Record store returned non-JSON body: {e}") from e
        if not isinstance(body, dict):
            raise RecordStoreError("Record store JSON was not an object")
        return body

    def ordered_record_ids(self, job_id: str) -> List[Optional[str]]:
        try:
            r = self.session.get(
                self._url(CORRELATION_PATH.format(job_id=job_id)),
                headers=self._headers(job_id),
                timeout=self.config.timeout_s,
            )
        except requests.RequestException as e:
            raise RecordStoreError(f"Correlation lookup failed: {e}") from e
        body = self._json(r)

        rows = body.get("data")
        if not isinstance(rows, list):
            raise RecordStoreError("Correlation response missing 'data' list")

        # Index by upload_order; gaps stay None so positions still line up.
        by_order: Dict[int, str] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            order = row.get("upload_order")
            vid = row.get("virtual_image_id")
            if isinstance(order, int) and isinstance(vid, str) and vid:
                by_order[order] = vid
        if not by_order:
            return []
        return [by_order.get(i) for i in range(max(by_order) + 1)]

    def bulk_update(
        self, job_id: str, owner_id: str, updates: Sequence[VirtualImageUpdate]
    ) -> BulkUpdateOutcome:
        payload = {"jobId": job_id, "updates": [u.to_payload() for u in updates]}
        try:
            r = self.session.post(
                self._url(BULK_UPDATE_PATH),
                json=payload,
                headers=self._headers(job_id, owner_id),
                timeout=self.config.timeout_s,
            )
        except requests.RequestException as e:
            raise RecordStoreError(f"Bulk update request failed: {e}") from e
        body = self._json(r)

        data = body.get("data") if isinstance(body.get("data"), dict) else body
        try:
            processed = int(data.get("successful", data.get("processedCount", 0)) or 0)
            failed = int(data.get("failed", data.get("failedCount", len(updates) - processed)) or 0)
        except (TypeError, ValueError) as e:
            raise RecordStoreError(f"Bulk update response has unreadable counts: {e}") from e
        return BulkUpdateOutcome(processed=processed, failed=failed)
