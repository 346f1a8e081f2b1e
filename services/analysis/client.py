# services/analysis/client.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from apps.common.log import get_logger

logger = get_logger(__name__)

STATE_PROCESSING = "processing"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"

SUBMIT_PATH = "/jobs"
STATUS_PATH = "/jobs/{job_id}"


class AnalysisServiceError(RuntimeError):
    """Transport or protocol failure talking to the analysis service. Transient."""


@dataclass(frozen=True)
class AnalysisStatus:
    state: str  # processing | succeeded | failed
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def map_provider_state(state: Optional[str]) -> str:
    s = (state or "").upper()
    if s in ("SUCCEEDED", "COMPLETED"):
        return STATE_SUCCEEDED
    if s in ("FAILED",):
        return STATE_FAILED
    return STATE_PROCESSING


@dataclass(frozen=True)
class AnalysisClientConfig:
    base_url: str
    timeout_s: float = 30.0
    api_key: str = ""


class AnalysisServiceClient:
    """
    Thin client for the asynchronous media-analysis service.
    Contract:
      - submit(...) -> provider job id
      - get_status(job_id) -> AnalysisStatus
      - Raises AnalysisServiceError on any transport/HTTP/shape error
    """

    def __init__(self, config: AnalysisClientConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _build_url(self, path: str) -> str:
        base = (self.config.base_url or "").strip()
        if not base:
            raise AnalysisServiceError("Missing analysis service base_url (MOD_ANALYSIS_URL)")
        return base.rstrip("/") + path

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.config.api_key:
            h["Authorization"] = f"Bearer {self.config.api_key}"
        return h

    def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            r = self.session.request(
                method, url, json=payload, headers=self._headers(), timeout=self.config.timeout_s
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise AnalysisServiceError(f"Analysis service request failed: {e}") from e

        try:
            body = r.json()
        except ValueError as e:
            raise AnalysisServiceError(f"Analysis service returned non-JSON body: {e}") from e
        if not isinstance(body, dict):
            raise AnalysisServiceError("Analysis service JSON was not an object")
        return body

    def submit(self, *, bucket: str, job_name: str, min_confidence: float, output_prefix: str) -> str:
        body = self._request(
            "POST",
            self._build_url(SUBMIT_PATH),
            {
                "JobName": job_name,
                "OperationsConfig": {"DetectModerationLabels": {"MinConfidence": min_confidence}},
                "Input": {"S3Object": {"Bucket": bucket, "Name": ""}},
                "OutputConfig": {"S3Bucket": bucket, "S3KeyPrefix": output_prefix},
            },
        )
        job_id = body.get("JobId")
        if not isinstance(job_id, str) or not job_id:
            raise AnalysisServiceError(f"Submit response missing JobId: {list(body.keys())}")
        logger.info("Submitted analysis job %s for bucket %s", job_id, bucket)
        return job_id

    def get_status(self, job_id: str) -> AnalysisStatus:
        body = self._request("GET", self._build_url(STATUS_PATH.format(job_id=job_id)))
        # Provider versions disagree on the field name.
        raw_state = body.get("Status") or body.get("JobStatus")
        state = map_provider_state(raw_state)
        message = body.get("StatusMessage")
        details = body.get("FailureDetails")
        if not message and isinstance(details, dict):
            message = details.get("Message")
        logger.debug("Analysis job %s status %s -> %s", job_id, raw_state, state)
        return AnalysisStatus(state=state, message=message, raw=body)
