# taxflow/regulatory/submissions.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from taxflow.config import SOURCE_AUTHORITY
from taxflow.dispatch.alerts import AlertNotifier
from taxflow.dispatch.classifier import Classifier
from taxflow.exceptions import TerminalJobError
from taxflow.handlers.base import HandlerContext, HandlerResult
from taxflow.models.jobs import FAILED, Job
from taxflow.regulatory.authority_client import AuthorityClient, generate_irn, render_document
from taxflow.store.jobs_store import JobStore

logger = logging.getLogger("uvicorn.error")

SUBMISSION_TYPES = ("invoice", "credit_note", "debit_note", "cancellation")


def _missing_fields(submission_type: str, document: Dict[str, Any]) -> List[str]:
    if submission_type == "cancellation":
        return [] if document.get("irn") else ["irn"]
    missing = []
    if not document.get("invoice_number"):
        missing.append("invoice_number")
    if not (document.get("seller") or {}).get("tin"):
        missing.append("seller.tin")
    if not (document.get("buyer") or {}).get("name"):
        missing.append("buyer.name")
    if not document.get("line_items"):
        missing.append("line_items")
    if document.get("total_amount") in (None, ""):
        missing.append("total_amount")
    if submission_type in ("credit_note", "debit_note") and not document.get("original_irn"):
        missing.append("original_irn")
    return missing


async def submit_document(
    store: JobStore,
    classifier: Classifier,
    *,
    business_id: str,
    invoice_id: str,
    submission_type: str,
    document: Dict[str, Any],
    seller_tin: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> Job:
    """
    Entry point for the invoicing domain: queue a filing with the tax authority.
    Returns the pending Job; the outcome lands on the Job row later.
    """
    if submission_type not in SUBMISSION_TYPES:
        raise ValueError(f"unknown submission type {submission_type!r}")
    missing = _missing_fields(submission_type, document)
    if missing:
        raise ValueError(f"document missing required field(s): {', '.join(missing)}")

    cls = classifier.classify(SOURCE_AUTHORITY, submission_type, document)
    payload = {
        "business_id": business_id,
        "invoice_id": invoice_id,
        "seller_tin": seller_tin or (document.get("seller") or {}).get("tin"),
        "document": document,
    }
    job = await store.enqueue(
        SOURCE_AUTHORITY,
        submission_type,
        payload,
        priority=cls.rank,
        max_attempts=max_attempts,
        correlation_id=f"{business_id}:{invoice_id}",
        business_id=business_id,
        delivery_key=f"{submission_type}:{invoice_id}",
    )
    logger.info("[AUTHORITY] queued %s for invoice=%s business=%s job=%s",
                submission_type, invoice_id, business_id, job.id)
    return job


async def check_submission_status(
    store: JobStore,
    client: AuthorityClient,
    job_id: str,
    notifier: Optional[AlertNotifier] = None,
) -> Job:
    """
    Ask the authority for its verdict on a filed submission and record it on the Job.
    Raises ValueError for jobs that are not filed submissions, JobError on transport failures.
    """
    job = await store.get(job_id)
    if job.source != SOURCE_AUTHORITY or not job.reference:
        raise ValueError(f"job {job_id} is not a filed submission")

    reply = await client.check_status(job.reference)
    decision = reply.decision
    errors = None
    if decision == "rejected":
        errors = reply.errors or [{"code": reply.code, "message": "rejected without detail", "field": None}]
    updated = await store.record_authority_decision(
        job_id,
        decision,
        response={"code": reply.code, "fields": reply.fields},
        validation_errors=errors,
    )
    logger.info("[AUTHORITY] job=%s irn=%s status check: %s", job_id, job.reference, decision)
    if updated.status == FAILED and notifier is not None:
        notifier.dead_letter(updated)
    return updated


class SubmissionHandler:
    """
    Renders and files one submission. Approved replies complete the job with the IRN as
    reference; business rejections dead-letter it at once with the authority's errors.
    Transport failures, 5xx and 429 surface as retryable from the client.
    """

    def __init__(self, client: AuthorityClient):
        self.client = client

    async def __call__(self, job: Job, ctx: HandlerContext) -> HandlerResult:
        payload = job.payload or {}
        document = payload.get("document") or {}
        tin = payload.get("seller_tin") or (document.get("seller") or {}).get("tin") or ""

        irn = generate_irn(tin, job.id, job.created_at)
        xml = render_document(job.kind, document, irn)
        # request id is per attempt; the IRN is what the authority deduplicates on
        reply = await self.client.submit(job.kind, xml, request_id=f"{job.id}-{job.attempts}")

        response = {"code": reply.code, "fields": reply.fields}
        if reply.approved:
            reference = reply.irn or irn
            logger.info("[AUTHORITY] job=%s approved irn=%s", job.id, reference)
            return HandlerResult(
                reference=reference,
                result={
                    "irn": reference,
                    "qr_code": reply.qr_code,
                    "signature": reply.signature,
                    "authority_response": response,
                },
            )

        errors = reply.errors or [{"code": reply.code, "message": "rejected without detail", "field": None}]
        first = errors[0]
        raise TerminalJobError(
            f"authority rejected: {first.get('code')} - {first.get('message')}",
            validation_errors=errors,
            response={"irn": irn, "authority_response": response},
        )
