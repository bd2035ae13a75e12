# taxflow/ops/jobs_api.py
# Operator view over the job ledger (mounted under /admin with HTTP Basic).
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict

from taxflow.exceptions import InvalidTransition, JobError, JobNotFound
from taxflow.models.audit_log import add_audit_entry, get_audit_log
from taxflow.models.jobs import JOB_STATUSES, Job
from taxflow.regulatory.submissions import check_submission_status

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/jobs", tags=["Jobs Admin"])


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source: str
    kind: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    next_eligible_at: Optional[datetime] = None
    last_error: Optional[str] = None
    correlation_id: Optional[str] = None
    business_id: Optional[str] = None
    delivery_key: Optional[str] = None
    reference: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    validation_errors: Optional[List[Dict[str, Any]]] = None
    duration_ms: Optional[int] = None
    created_at: datetime
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobDetail(JobOut):
    payload: Dict[str, Any] = {}


def _store(request: Request):
    return request.app.state.runtime.store


@router.get("/stats")
async def jobs_stats(request: Request):
    return await _store(request).stats()


@router.get("/rejections")
async def rejected_deliveries():
    return {"items": get_audit_log("Webhook Rejected")}


@router.get("")
async def list_jobs(
    request: Request,
    status: Optional[str] = Query(None),
    source: Optional[str] = Query(None),
    business_id: Optional[str] = Query(None),
    integration_id: Optional[str] = Query(None),
    correlation_id: Optional[str] = Query(None),
    reference: Optional[str] = Query(None, description="authority IRN or other handler reference"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    if status and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(JOB_STATUSES)}")
    jobs: List[Job] = await _store(request).list_jobs(
        status=status,
        source=source,
        business_id=business_id,
        integration_id=integration_id,
        correlation_id=correlation_id,
        reference=reference,
        limit=limit,
        offset=offset,
    )
    return {"items": [JobOut.model_validate(j).model_dump(mode="json") for j in jobs], "count": len(jobs)}


@router.get("/{job_id}")
async def get_job(job_id: str, request: Request):
    try:
        job = await _store(request).get(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="job not found")
    return JobDetail.model_validate(job).model_dump(mode="json")


@router.post("/{job_id}/retry")
async def retry_job(job_id: str, request: Request, extra_attempts: Optional[int] = Query(None, ge=1, le=20)):
    try:
        job = await _store(request).retry_dead_letter(job_id, extra_attempts)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="job not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=f"only failed jobs can be retried (status={e.current})")
    add_audit_entry("Job Retried", "admin", f"job={job_id} max_attempts={job.max_attempts}")
    return JobOut.model_validate(job).model_dump(mode="json")


@router.post("/{job_id}/authority-status")
async def check_authority_status(job_id: str, request: Request):
    """Pull the tax authority's verdict for a filed submission and record it."""
    rt = request.app.state.runtime
    try:
        job = await check_submission_status(rt.store, rt.authority, job_id, rt.notifier)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="job not found")
    except (ValueError, InvalidTransition) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobError as e:
        logger.warning("[OPS] status check for job=%s failed: %s", job_id, e)
        raise HTTPException(status_code=502, detail=f"authority unavailable: {e}")
    add_audit_entry("Submission Status Checked", "admin", f"job={job_id} status={job.status}")
    return JobDetail.model_validate(job).model_dump(mode="json")


@router.post("/purge")
async def purge_jobs(request: Request, older_than_days: Optional[int] = Query(None, ge=1)):
    days = older_than_days or request.app.state.runtime.settings.RETENTION_DAYS
    purged = await _store(request).purge_terminal(timedelta(days=days))
    add_audit_entry("Jobs Purged", "admin", f"older_than_days={days} purged={purged}")
    return {"ok": True, "purged": purged, "older_than_days": days}
