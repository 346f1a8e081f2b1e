from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from services.ingestion.ephemeral import (
    EphemeralStorageManager,
    bucket_timestamp_ms,
    is_temp_bucket,
)
from services.ingestion.storage import (
    BucketInfo,
    LocalObjectStore,
    ObjectPage,
    StorageError,
    StoredObject,
)

NOW_MS = 1_700_000_000_000
DAY_MS = 24 * 3600 * 1000


class RecordingStore:
    """In-memory object store that logs every mutating call in order."""

    def __init__(self, page_size=3):
        self.page_size = page_size
        self.buckets = {}
        self.events = []
        self.list_calls = 0
        self._lock = threading.Lock()
        self.fail_on_delete = set()

    def create_bucket(self, bucket):
        self.buckets[bucket] = {}

    def put_object(self, bucket, key, blob):
        self.buckets[bucket][key] = blob
        return StoredObject(key=key, size=len(blob), last_modified=datetime.now(timezone.utc))

    def list_objects(self, bucket, continuation_token=None):
        self.list_calls += 1
        keys = sorted(k for k in self.buckets[bucket] if not continuation_token or k > continuation_token)
        page = keys[: self.page_size]
        objs = [StoredObject(key=k, size=1, last_modified=datetime.now(timezone.utc)) for k in page]
        return ObjectPage(objects=objs, next_token=page[-1] if len(keys) > self.page_size else None)

    def get_object(self, bucket, key):
        return self.buckets[bucket][key]

    def delete_object(self, bucket, key):
        if key in self.fail_on_delete:
            raise StorageError(f"cannot delete {key}")
        with self._lock:
            self.events.append(("delete_object", key))
            self.buckets[bucket].pop(key, None)

    def delete_bucket(self, bucket):
        if self.buckets[bucket]:
            raise StorageError("bucket not empty")
        self.events.append(("delete_bucket", bucket))
        del self.buckets[bucket]

    def list_buckets(self):
        return [BucketInfo(name=b, created_at=datetime.now(timezone.utc)) for b in self.buckets]


def test_local_store_round_trip_and_paging(tmp_path):
    store = LocalObjectStore(root_dir=str(tmp_path), page_size=2)
    store.create_bucket("nsfw-temp-x-1")
    for k in ["input/00000.jpg", "input/00001.jpg", "output-1/results.jsonl"]:
        store.put_object("nsfw-temp-x-1", k, k.encode())

    p1 = store.list_objects("nsfw-temp-x-1")
    assert [o.key for o in p1.objects] == ["input/00000.jpg", "input/00001.jpg"]
    assert p1.next_token == "input/00001.jpg"

    p2 = store.list_objects("nsfw-temp-x-1", continuation_token=p1.next_token)
    assert [o.key for o in p2.objects] == ["output-1/results.jsonl"]
    assert p2.next_token is None

    assert store.get_object("nsfw-temp-x-1", "output-1/results.jsonl") == b"output-1/results.jsonl"


def test_local_store_refuses_to_delete_non_empty_bucket(tmp_path):
    store = LocalObjectStore(root_dir=str(tmp_path))
    store.create_bucket("b")
    store.put_object("b", "k", b"v")
    with pytest.raises(StorageError):
        store.delete_bucket("b")
    store.delete_object("b", "k")
    store.delete_bucket("b")
    assert store.list_buckets() == []


def test_keys_ending_in_tmp_are_listed_and_deletable(tmp_path):
    store = LocalObjectStore(root_dir=str(tmp_path))
    store.create_bucket("b")
    store.put_object("b", "output/partial.tmp", b"x")
    store.put_object("b", "notes .inflight", b"y")
    assert [o.key for o in store.list_objects("b").objects] == ["notes .inflight", "output/partial.tmp"]

    assert EphemeralStorageManager(store).delete_bucket("b") == 2
    assert store.list_buckets() == []


def test_local_store_errors(tmp_path):
    store = LocalObjectStore(root_dir=str(tmp_path))
    with pytest.raises(StorageError):
        store.list_objects("missing")
    store.create_bucket("b")
    with pytest.raises(StorageError):
        store.create_bucket("b")
    with pytest.raises(StorageError):
        store.get_object("b", "nope")
    with pytest.raises(StorageError):
        store.create_bucket("../escape")


def test_bucket_name_helpers():
    assert is_temp_bucket("nsfw-temp-abc-1700000000000")
    assert is_temp_bucket("nsfw-bulk-job")
    assert not is_temp_bucket("user-photos")
    assert bucket_timestamp_ms("nsfw-temp-abc-1700000000000") == 1700000000000
    assert bucket_timestamp_ms("nsfw-bulk-job") is None


def test_delete_bucket_removes_every_object_before_the_bucket():
    store = RecordingStore(page_size=3)
    store.create_bucket("nsfw-temp-a-1")
    for i in range(8):
        store.put_object("nsfw-temp-a-1", f"k{i:02d}", b"x")

    deleted = EphemeralStorageManager(store, max_delete_workers=4).delete_bucket("nsfw-temp-a-1")

    assert deleted == 8
    assert store.list_calls >= 3
    kinds = [e[0] for e in store.events]
    assert kinds.count("delete_object") == 8
    assert kinds[-1] == "delete_bucket"
    assert "nsfw-temp-a-1" not in store.buckets


def test_delete_bucket_failure_leaves_bucket_in_place():
    store = RecordingStore(page_size=10)
    store.create_bucket("nsfw-temp-a-1")
    for i in range(3):
        store.put_object("nsfw-temp-a-1", f"k{i}", b"x")
    store.fail_on_delete = {"k1"}

    with pytest.raises(StorageError):
        EphemeralStorageManager(store).delete_bucket("nsfw-temp-a-1")
    assert "nsfw-temp-a-1" in store.buckets
    assert ("delete_bucket", "nsfw-temp-a-1") not in store.events


def test_create_job_bucket_and_upload_order():
    store = RecordingStore()
    mgr = EphemeralStorageManager(store)
    bucket = mgr.create_job_bucket("ABCDEFGHIJ", now_ms=NOW_MS)
    assert bucket == f"nsfw-temp-abcdefgh-{NOW_MS}"

    keys = mgr.upload_images(bucket, [("a.PNG", b"1"), ("noext", b"2"), ("c.jpeg", b"3")])
    assert keys == ["input/00000.png", "input/00001.jpg", "input/00002.jpeg"]
    assert [o.key for o in mgr.list_all(bucket)] == sorted(keys)


def test_upload_failures_are_skipped():
    class FlakyStore(RecordingStore):
        def put_object(self, bucket, key, blob):
            if key.startswith("input/00001"):
                raise StorageError("boom")
            return super().put_object(bucket, key, blob)

    store = FlakyStore()
    mgr = EphemeralStorageManager(store)
    store.create_bucket("b")
    assert mgr.upload_images("b", [("a.jpg", b"1"), ("b.jpg", b"2"), ("c.jpg", b"3")]) == [
        "input/00000.jpg",
        "input/00002.jpg",
    ]


def _sweep_fixture():
    store = RecordingStore()
    old = f"nsfw-temp-old-{NOW_MS - 2 * DAY_MS}"
    busy = f"nsfw-bulk-busy-{NOW_MS - 2 * DAY_MS}"
    fresh = f"nsfw-temp-new-{NOW_MS - 1000}"
    for b in (old, busy, fresh, "user-photos"):
        store.create_bucket(b)
        store.put_object(b, "input/00000.jpg", b"x")
    return store, old, busy, fresh


def test_sweep_deletes_only_stale_inactive_temp_buckets():
    store, old, busy, fresh = _sweep_fixture()
    report = EphemeralStorageManager(store).sweep_stale_buckets(
        is_active=lambda b: b == busy, now_ms=NOW_MS
    )
    assert report.deleted == [old]
    assert dict(report.skipped) == {busy: "job_active", fresh: "too_recent"}
    assert report.errors == []
    assert "user-photos" in store.buckets


def test_sweep_force_ignores_age_and_activity():
    store, old, busy, fresh = _sweep_fixture()
    report = EphemeralStorageManager(store).sweep_stale_buckets(
        is_active=lambda b: True, force=True, now_ms=NOW_MS
    )
    assert sorted(report.deleted) == sorted([old, busy, fresh])
    assert list(store.buckets) == ["user-photos"]


def test_sweep_dry_run_touches_nothing():
    store, old, busy, fresh = _sweep_fixture()
    report = EphemeralStorageManager(store).sweep_stale_buckets(now_ms=NOW_MS, dry_run=True)
    assert sorted(report.deleted) == sorted([old, busy])
    assert store.events == []


def test_sweep_records_errors_and_continues():
    store, old, busy, fresh = _sweep_fixture()
    store.fail_on_delete = {"input/00000.jpg"}
    report = EphemeralStorageManager(store).sweep_stale_buckets(only=[old], now_ms=NOW_MS)
    assert report.deleted == []
    assert len(report.errors) == 1 and old in report.errors[0]
