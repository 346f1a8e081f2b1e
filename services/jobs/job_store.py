# services/jobs/job_store.py
from __future__ import annotations

import json
import os
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from apps.common.log import get_logger

logger = get_logger(__name__)

STATUS_UPLOADING = "uploading"
STATUS_SUBMITTED = "submitted"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

STATUS_ORDER = (STATUS_UPLOADING, STATUS_SUBMITTED, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

JOB_FILE = "job.json"
RESULTS_FILE = "results.json"


class JobNotFoundError(LookupError):
    pass


class InvalidTransitionError(RuntimeError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(v: Optional[str]) -> Optional[datetime]:
    if not v:
        return None
    dt = datetime.fromisoformat(v)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass
class ModerationJob:
    id: str
    status: str
    total_images: int
    created_at: str
    owner_id: str = ""
    processed_images: int = 0
    nsfw_detected: int = 0
    external_job_id: Optional[str] = None
    temp_storage_location: Optional[str] = None
    error_message: Optional[str] = None
    submitted_at: Optional[str] = None
    completed_at: Optional[str] = None
    cleaned_up_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        created = parse_ts(self.created_at) or utcnow()
        return max(0.0, ((now or utcnow()) - created).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ModerationJob":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})


def check_transition(current: str, target: str) -> None:
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"job already terminal ({current}); cannot move to {target}")
    if target not in STATUS_ORDER:
        raise InvalidTransitionError(f"unknown status: {target}")
    if STATUS_ORDER.index(target) <= STATUS_ORDER.index(current):
        raise InvalidTransitionError(f"status may only move forward: {current} -> {target}")


class JobStore:
    """
    Durable job records as JSON files, one directory per job.
    Records are never deleted; they are the audit trail.
    """

    def __init__(self, root_dir: str, claim_ttl_s: float = 300.0) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.claim_ttl_s = float(claim_ttl_s)

    def _job_dir(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id in (".", ".."):
            raise JobNotFoundError(job_id)
        return self.root / job_id

    def _write_json_atomic(self, path: Path, obj: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
        tmp.replace(path)  # atomic on same filesystem

    def _save(self, job: ModerationJob) -> None:
        self._write_json_atomic(self._job_dir(job.id) / JOB_FILE, job.to_dict())

    def create(self, *, total_images: int, owner_id: str = "", job_id: Optional[str] = None) -> ModerationJob:
        job = ModerationJob(
            id=job_id or str(uuid4()),
            status=STATUS_UPLOADING,
            total_images=int(total_images),
            owner_id=owner_id,
            created_at=utcnow().isoformat(),
        )
        if (self._job_dir(job.id) / JOB_FILE).exists():
            raise InvalidTransitionError(f"job already exists: {job.id}")
        self._save(job)
        logger.info("Created job %s (%d images)", job.id, job.total_images)
        return job

    def get(self, job_id: str) -> ModerationJob:
        p = self._job_dir(job_id) / JOB_FILE
        if not p.exists():
            raise JobNotFoundError(job_id)
        return ModerationJob.from_dict(json.loads(p.read_text(encoding="utf-8")))

    def update(self, job_id: str, **changes: Any) -> ModerationJob:
        """Non-status field updates (external ids, bucket names, audit stamps)."""
        if "status" in changes:
            raise InvalidTransitionError("use transition() to change status")
        job = self.get(job_id)
        for k, v in changes.items():
            if not hasattr(job, k):
                raise AttributeError(k)
            setattr(job, k, v)
        self._save(job)
        return job

    def transition(
        self, job_id: str, target: str, *, expected: Optional[str] = None, **changes: Any
    ) -> ModerationJob:
        job = self.get(job_id)
        if expected is not None and job.status != expected:
            raise InvalidTransitionError(f"expected status {expected}, found {job.status}")
        check_transition(job.status, target)

        if target == STATUS_FAILED and not changes.get("error_message"):
            raise InvalidTransitionError("failed jobs require an error_message")
        if target != STATUS_FAILED and changes.get("error_message"):
            raise InvalidTransitionError("error_message is only set on failed jobs")

        for k, v in changes.items():
            if not hasattr(job, k):
                raise AttributeError(k)
            setattr(job, k, v)
        if target == STATUS_COMPLETED:
            job.completed_at = utcnow().isoformat()
        if target == STATUS_SUBMITTED and not job.submitted_at:
            job.submitted_at = utcnow().isoformat()

        prev = job.status
        job.status = target
        self._save(job)
        logger.info("Job %s: %s -> %s", job_id, prev, target)
        return job

    def save_results(self, job_id: str, results: Dict[str, Any]) -> None:
        self._write_json_atomic(self._job_dir(job_id) / RESULTS_FILE, results)

    def get_results(self, job_id: str) -> Optional[Dict[str, Any]]:
        p = self._job_dir(job_id) / RESULTS_FILE
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8"))

    def _claim_path(self, job_id: str, name: str) -> Path:
        return self._job_dir(job_id) / f"{name}.claim"

    def try_claim(self, job_id: str, name: str) -> Optional[str]:
        """
        Exclusive, cross-process claim on a job step. Only the first caller
        gets a token; everyone else gets None. Claims older than claim_ttl_s
        are treated as abandoned by a crashed writer and may be taken over.
        """
        p = self._claim_path(job_id, name)
        p.parent.mkdir(parents=True, exist_ok=True)
        token = uuid4().hex
        for _ in range(2):
            try:
                fd = os.open(str(p), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                try:
                    age = time.time() - p.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age <= self.claim_ttl_s:
                    return None
                logger.warning("Taking over stale %s claim on job %s (%.0fs old)", name, job_id, age)
                p.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(token)
            return token
        return None

    def holds_claim(self, job_id: str, name: str, token: str) -> bool:
        try:
            return self._claim_path(job_id, name).read_text(encoding="utf-8") == token
        except FileNotFoundError:
            return False

    def release_claim(self, job_id: str, name: str, token: str) -> None:
        """Only the current holder may release; a taken-over claim is left alone."""
        if self.holds_claim(job_id, name, token):
            self._claim_path(job_id, name).unlink(missing_ok=True)

    def mark_cleaned_up(self, job_id: str) -> ModerationJob:
        return self.update(job_id, cleaned_up_at=utcnow().isoformat())

    def list_jobs(self) -> List[ModerationJob]:
        out = []
        for d in sorted(self.root.iterdir()):
            p = d / JOB_FILE
            if d.is_dir() and p.exists():
                out.append(ModerationJob.from_dict(json.loads(p.read_text(encoding="utf-8"))))
        return out

    def find_by_bucket(self, bucket: str) -> Optional[ModerationJob]:
        for job in self.list_jobs():
            if job.temp_storage_location == bucket:
                return job
        return None
