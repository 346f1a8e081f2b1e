from __future__ import annotations

import apps.workers.client_loader as loader_mod
import apps.workers.tasks as tasks_mod
from services.ingestion.ephemeral import EphemeralStorageManager
from services.ingestion.storage import LocalObjectStore
from services.jobs.job_store import STATUS_FAILED, STATUS_PROCESSING, STATUS_SUBMITTED, JobStore

OLD_BUCKET = "nsfw-temp-user1-1600000000000"


class FakeCelery:
    def __init__(self):
        self.sent = []

    def send_task(self, name: str, args=None, kwargs=None):
        class R:
            id = "fake-task-id-123"
        self.sent.append((name, args, kwargs))
        return R()


def _wire(monkeypatch, tmp_path):
    store = LocalObjectStore(root_dir=str(tmp_path / "buckets"))
    storage = EphemeralStorageManager(store)
    jobs = JobStore(root_dir=str(tmp_path / "jobs"))
    monkeypatch.setattr(tasks_mod, "get_storage", lambda: storage)
    monkeypatch.setattr(tasks_mod, "get_job_store", lambda: jobs)
    return store, jobs


def _job_with_bucket(jobs, store, bucket, *, failed=True):
    store.create_bucket(bucket)
    store.put_object(bucket, "input/00000.jpg", b"img")
    job = jobs.create(total_images=1, owner_id="user1")
    jobs.update(job.id, temp_storage_location=bucket)
    jobs.transition(job.id, STATUS_SUBMITTED)
    if failed:
        jobs.transition(job.id, STATUS_FAILED, error_message="x")
    else:
        jobs.transition(job.id, STATUS_PROCESSING, external_job_id="ext-1")
    return job


def test_dispatch_cleanup_sends_named_task(monkeypatch):
    fake = FakeCelery()
    monkeypatch.setattr(loader_mod, "celery_app", fake)
    assert loader_mod.dispatch_cleanup_task("nsfw-temp-a-1") == "fake-task-id-123"
    assert fake.sent == [("moderation.cleanup_bucket", ["nsfw-temp-a-1"], None)]


def test_cleanup_bucket_deletes_and_stamps_job(monkeypatch, tmp_path):
    store, jobs = _wire(monkeypatch, tmp_path)
    job = _job_with_bucket(jobs, store, OLD_BUCKET)

    out = tasks_mod.cleanup_bucket(OLD_BUCKET)

    assert out == {"ok": True, "bucket": OLD_BUCKET, "deleted_objects": 1}
    assert store.list_buckets() == []
    assert jobs.get(job.id).cleaned_up_at is not None


def test_cleanup_bucket_failures_are_reported_not_raised(monkeypatch, tmp_path):
    _wire(monkeypatch, tmp_path)
    out = tasks_mod.cleanup_bucket("nsfw-temp-gone-1600000000000")
    assert out["ok"] is False
    assert out["error"] == "cleanup_failed"


def test_cleanup_refuses_non_temp_buckets(monkeypatch, tmp_path):
    store, _ = _wire(monkeypatch, tmp_path)
    store.create_bucket("user-photos")
    assert tasks_mod.cleanup_bucket("user-photos")["error"] == "not_temp_bucket"
    assert [b.name for b in store.list_buckets()] == ["user-photos"]


def test_sweep_skips_buckets_of_active_jobs(monkeypatch, tmp_path):
    store, jobs = _wire(monkeypatch, tmp_path)
    done = _job_with_bucket(jobs, store, OLD_BUCKET)
    active_bucket = "nsfw-temp-user2-1600000000000"
    _job_with_bucket(jobs, store, active_bucket, failed=False)

    out = tasks_mod.sweep_stale_buckets(older_than_hours=24)

    assert out["deleted"] == [OLD_BUCKET]
    assert out["skipped"] == [{"bucket": active_bucket, "reason": "job_active"}]
    assert jobs.get(done.id).cleaned_up_at is not None

    out = tasks_mod.sweep_stale_buckets(older_than_hours=24, force=True)
    assert out["deleted"] == [active_bucket]
