# services/ingestion/ephemeral.py
from __future__ import annotations

import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from apps.common.log import get_logger
from services.ingestion.storage import ObjectStore, StoredObject

logger = get_logger(__name__)

TEMP_BUCKET_PREFIXES = ("nsfw-temp-", "nsfw-bulk-")
_BUCKET_TS_RE = re.compile(r"-(\d{13})$")


def is_temp_bucket(name: str) -> bool:
    return name.startswith(TEMP_BUCKET_PREFIXES)


def bucket_timestamp_ms(name: str) -> Optional[int]:
    m = _BUCKET_TS_RE.search(name)
    return int(m.group(1)) if m else None


@dataclass
class SweepReport:
    deleted: List[str] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class EphemeralStorageManager:
    """Lists, fetches and tears down job-scoped temporary buckets."""

    def __init__(self, store: ObjectStore, *, max_delete_workers: int = 16) -> None:
        self.store = store
        self.max_delete_workers = int(max_delete_workers)

    def list_all(self, bucket: str) -> List[StoredObject]:
        out: List[StoredObject] = []
        token: Optional[str] = None
        while True:
            page = self.store.list_objects(bucket, continuation_token=token)
            out.extend(page.objects)
            token = page.next_token
            if not token:
                return out

    def fetch(self, bucket: str, key: str) -> bytes:
        return self.store.get_object(bucket, key)

    def delete_bucket(self, bucket: str) -> int:
        """
        Empty the bucket one listing page at a time, then remove it.
        Deletes within a page run concurrently; pages run in order.
        Raises on the first failure; the bucket is left in place.
        """
        logger.info("Starting temp bucket cleanup: %s", bucket)
        total = 0
        token: Optional[str] = None
        while True:
            page = self.store.list_objects(bucket, continuation_token=token)
            if page.objects:
                keys = [o.key for o in page.objects]
                workers = max(1, min(self.max_delete_workers, len(keys)))
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    # list() re-raises the first worker exception
                    list(pool.map(lambda k: self.store.delete_object(bucket, k), keys))
                total += len(keys)
                logger.info("Deleted batch of %d objects from %s (total %d)", len(keys), bucket, total)
            token = page.next_token
            if not token:
                break

        self.store.delete_bucket(bucket)
        logger.info("Temp bucket %s deleted (%d objects)", bucket, total)
        return total

    def create_job_bucket(self, owner_id: str, now_ms: Optional[int] = None) -> str:
        ts = now_ms if now_ms is not None else int(time.time() * 1000)
        name = f"{TEMP_BUCKET_PREFIXES[0]}{(owner_id or 'anon')[:8].lower()}-{ts}"
        self.store.create_bucket(name)
        logger.info("Created temp bucket %s", name)
        return name

    def upload_images(self, bucket: str, images: Iterable[Tuple[str, bytes]]) -> List[str]:
        """
        images: (original filename, bytes) in upload order.
        Returns the stored keys in the same order; failed uploads are logged
        and left out.
        """
        keys: List[str] = []
        for i, (filename, blob) in enumerate(images):
            ext = ""
            if filename and "." in filename:
                ext = "." + filename.rsplit(".", 1)[-1].lower()
            key = f"input/{i:05d}{ext or '.jpg'}"
            try:
                self.store.put_object(bucket, key, blob)
            except Exception as e:
                logger.error("Upload of image %d (%s) to %s failed: %s", i, filename, bucket, e)
                continue
            keys.append(key)
        return keys

    def sweep_stale_buckets(
        self,
        *,
        older_than_hours: float = 24.0,
        is_active: Optional[Callable[[str], bool]] = None,
        force: bool = False,
        now_ms: Optional[int] = None,
        only: Optional[Sequence[str]] = None,
        dry_run: bool = False,
    ) -> SweepReport:
        """
        Remove temp buckets left behind by abandoned or crashed jobs.
        Buckets newer than the cutoff, or still owned by an active job,
        are skipped unless force is set. With dry_run, report.deleted lists what
        would have been removed and nothing is touched.
        """
        report = SweepReport()
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        cutoff = now - int(older_than_hours * 3600 * 1000)

        created_ms = {b.name: int(b.created_at.timestamp() * 1000) for b in self.store.list_buckets()}
        names = list(only) if only else list(created_ms)
        for name in names:
            if not is_temp_bucket(name):
                continue

            ts = bucket_timestamp_ms(name) or created_ms.get(name)
            if ts is not None and ts > cutoff and not force:
                report.skipped.append((name, "too_recent"))
                continue
            if not force and is_active is not None and is_active(name):
                report.skipped.append((name, "job_active"))
                continue

            if dry_run:
                report.deleted.append(name)
                continue
            try:
                self.delete_bucket(name)
            except Exception as e:
                msg = f"Failed to delete bucket {name}: {e}"
                logger.error(msg)
                report.errors.append(msg)
                continue
            report.deleted.append(name)

        logger.info(
            "Sweep finished: %d deleted, %d skipped, %d errors",
            len(report.deleted), len(report.skipped), len(report.errors),
        )
        return report
