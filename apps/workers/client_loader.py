from __future__ import annotations

from functools import lru_cache

from apps.common.settings import AppSettings, load_settings
from apps.workers.celery_app import celery_app
from services.analysis.client import AnalysisClientConfig, AnalysisServiceClient
from services.analysis.poller import JobStatusPoller
from services.ingestion.ephemeral import EphemeralStorageManager
from services.ingestion.storage import LocalObjectStore
from services.jobs.job_store import JobStore
from services.moderation.normalizer import ResultNormalizer
from services.moderation.taxonomy import TaxonomyClassifier
from services.pipeline import ModerationPipeline, PipelineConfig
from services.propagation.propagator import UpdatePropagator
from services.propagation.record_store import RecordStoreClient, RecordStoreConfig

CLEANUP_TASK = "moderation.cleanup_bucket"


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_storage() -> EphemeralStorageManager:
    return EphemeralStorageManager(LocalObjectStore(root_dir=str(get_settings().storage_root)))


@lru_cache(maxsize=1)
def get_job_store() -> JobStore:
    return JobStore(root_dir=str(get_settings().job_root))


@lru_cache(maxsize=1)
def get_analysis_client() -> AnalysisServiceClient:
    s = get_settings()
    return AnalysisServiceClient(AnalysisClientConfig(base_url=s.analysis_url, timeout_s=s.request_timeout_s))


@lru_cache(maxsize=1)
def get_record_store() -> RecordStoreClient:
    s = get_settings()
    return RecordStoreClient(
        RecordStoreConfig(base_url=s.record_store_url, token=s.record_store_token, timeout_s=s.request_timeout_s)
    )


def dispatch_cleanup_task(bucket: str) -> str:
    """Fire-and-forget; the caller never waits on the result."""
    return celery_app.send_task(CLEANUP_TASK, args=[bucket]).id


@lru_cache(maxsize=1)
def get_pipeline() -> ModerationPipeline:
    s = get_settings()
    storage = get_storage()
    analysis = get_analysis_client()

    return ModerationPipeline(
        jobs=get_job_store(),
        poller=JobStatusPoller(
            analysis=analysis,
            storage=storage,
            staleness_s=s.staleness_minutes * 60.0,
        ),
        normalizer=ResultNormalizer(classifier=TaxonomyClassifier()),
        propagator=UpdatePropagator(store=get_record_store(), delay_s=s.propagation_delay_s),
        storage=storage,
        analysis=analysis,
        dispatch_cleanup=dispatch_cleanup_task,
        config=PipelineConfig(confidence_threshold=s.confidence_threshold),
    )
