from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from apps.common.log import get_logger
from services.jobs.job_store import JobNotFoundError
from services.pipeline import ModerationPipeline, PipelineError, ValidationError

logger = get_logger(__name__)


class StatusRequest(BaseModel):
    jobId: Optional[str] = None


def _status_or_http_error(pipeline: ModerationPipeline, job_id: Optional[str]) -> Dict[str, Any]:
    try:
        return pipeline.check_status(job_id)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job_not_found")


def create_jobs_router(*, pipeline_provider: Callable[[], ModerationPipeline]) -> APIRouter:
    """
    pipeline_provider is called per request so the process-wide pipeline
    is only built (and its settings only loaded) on first use.
    """
    router = APIRouter()

    @router.post("/jobs")
    async def submit_job(owner_id: str = Query(...), files: List[UploadFile] = File(...)):
        images = []
        for f in files:
            images.append((f.filename or "", await f.read()))

        try:
            job = pipeline_provider().submit(owner_id=owner_id, images=images)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except PipelineError as e:
            logger.error("Submission for owner %s failed: %s", owner_id, e)
            raise HTTPException(status_code=502, detail=f"submission_failed: {str(e)[:300]}")

        return JSONResponse(
            status_code=202,
            content={"job_id": job.id, "status": job.status, "total_images": job.total_images},
        )

    @router.post("/jobs/status")
    def job_status_by_body(body: Optional[StatusRequest] = None):
        return _status_or_http_error(pipeline_provider(), body.jobId if body else None)

    @router.get("/jobs/{job_id}")
    def job_status(job_id: str):
        return _status_or_http_error(pipeline_provider(), job_id)

    return router
