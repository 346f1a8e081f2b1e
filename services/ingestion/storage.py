from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol, Tuple
from urllib.parse import quote, unquote


# Encoded keys never contain a space, so in-flight writes cannot collide with a key.
INFLIGHT_SUFFIX = " .inflight"


class StorageError(RuntimeError):
    """Object store operation failed."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime


@dataclass(frozen=True)
class ObjectPage:
    objects: List[StoredObject]
    next_token: Optional[str] = None


@dataclass(frozen=True)
class BucketInfo:
    name: str
    created_at: datetime


class ObjectStore(Protocol):
    def create_bucket(self, bucket: str) -> None: ...
    def put_object(self, bucket: str, key: str, blob: bytes) -> StoredObject: ...
    def list_objects(self, bucket: str, continuation_token: Optional[str] = None) -> ObjectPage: ...
    def get_object(self, bucket: str, key: str) -> bytes: ...
    def delete_object(self, bucket: str, key: str) -> None: ...
    def delete_bucket(self, bucket: str) -> None: ...
    def list_buckets(self) -> List[BucketInfo]: ...


class LocalObjectStore:
    """
    Filesystem-backed object store: one directory per bucket, one file per key.
    Keys are percent-encoded into flat filenames so prefixes like
    "output-123/results.jsonl" stay addressable without nested dirs.
    Listings are sorted by key and paged with an opaque continuation token.
    """

    def __init__(self, root_dir: str, page_size: int = 1000) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.page_size = int(page_size)

    def _bucket_dir(self, bucket: str) -> Path:
        if not bucket or "/" in bucket or bucket in (".", ".."):
            raise StorageError(f"invalid bucket name: {bucket!r}")
        return self.root / bucket

    def _existing_bucket(self, bucket: str) -> Path:
        d = self._bucket_dir(bucket)
        if not d.is_dir():
            raise StorageError(f"no such bucket: {bucket}")
        return d

    @staticmethod
    def _encode(key: str) -> str:
        return quote(key, safe="")

    @staticmethod
    def _decode(name: str) -> str:
        return unquote(name)

    def create_bucket(self, bucket: str) -> None:
        d = self._bucket_dir(bucket)
        if d.exists():
            raise StorageError(f"bucket already exists: {bucket}")
        d.mkdir(parents=True)

    def put_object(self, bucket: str, key: str, blob: bytes) -> StoredObject:
        p = self._existing_bucket(bucket) / self._encode(key)
        tmp = p.with_name(p.name + INFLIGHT_SUFFIX)
        tmp.write_bytes(blob)
        tmp.replace(p)  # atomic on same filesystem
        return self._stat(key, p)

    def _stat(self, key: str, p: Path) -> StoredObject:
        st = p.stat()
        return StoredObject(
            key=key,
            size=st.st_size,
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def _sorted_keys(self, d: Path) -> List[Tuple[str, Path]]:
        entries = [
            (self._decode(p.name), p)
            for p in d.iterdir()
            if p.is_file() and not p.name.endswith(INFLIGHT_SUFFIX)
        ]
        return sorted(entries, key=lambda e: e[0])

    def list_objects(self, bucket: str, continuation_token: Optional[str] = None) -> ObjectPage:
        d = self._existing_bucket(bucket)
        entries = self._sorted_keys(d)
        if continuation_token:
            entries = [e for e in entries if e[0] > continuation_token]

        page = entries[: self.page_size]
        objects = [self._stat(k, p) for k, p in page]
        next_token = page[-1][0] if len(entries) > self.page_size else None
        return ObjectPage(objects=objects, next_token=next_token)

    def get_object(self, bucket: str, key: str) -> bytes:
        p = self._existing_bucket(bucket) / self._encode(key)
        if not p.exists():
            raise StorageError(f"no such key: {bucket}/{key}")
        return p.read_bytes()

    def delete_object(self, bucket: str, key: str) -> None:
        p = self._existing_bucket(bucket) / self._encode(key)
        p.unlink(missing_ok=True)

    def delete_bucket(self, bucket: str) -> None:
        d = self._existing_bucket(bucket)
        try:
            d.rmdir()  # fails unless empty, like a real object store
        except OSError as e:
            raise StorageError(f"bucket not empty: {bucket}") from e

    def list_buckets(self) -> List[BucketInfo]:
        out = []
        for d in sorted(self.root.iterdir()):
            if d.is_dir():
                out.append(
                    BucketInfo(
                        name=d.name,
                        created_at=datetime.fromtimestamp(d.stat().st_mtime, tz=timezone.utc),
                    )
                )
        return out

