# taxflow/store/jobs_store.py
# Table-backed job queue. The `jobs` row is the only shared state between workers;
# every transition below is a single guarded write.
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxflow.db import utcnow
from taxflow.exceptions import InvalidTransition, JobNotFound
from taxflow.models.jobs import (
    COMPLETED,
    FAILED,
    IGNORED,
    JOB_STATUSES,
    PENDING,
    PROCESSING,
    TERMINAL_STATUSES,
    Job,
    ProcessedDelivery,
)
from taxflow.store.retry import BackoffPolicy

logger = logging.getLogger("uvicorn.error")

_ERROR_MAX = 4000


def _claim_order(job: Job):
    return (-job.priority, job.created_at, job.id)


class JobStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        backoff: Optional[BackoffPolicy] = None,
        *,
        default_max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sm = sessionmaker
        self.backoff = backoff or BackoffPolicy()
        self.default_max_attempts = default_max_attempts
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # enqueue / claim
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        source: str,
        kind: str,
        payload: Dict[str, Any],
        *,
        raw_body: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        priority: int = 0,
        max_attempts: Optional[int] = None,
        correlation_id: Optional[str] = None,
        business_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        delivery_key: Optional[str] = None,
    ) -> Job:
        now = self.now()
        job = Job(
            source=source,
            kind=kind,
            payload=payload,
            raw_body=raw_body,
            headers=headers,
            status=PENDING,
            attempts=0,
            max_attempts=max_attempts or self.default_max_attempts,
            next_eligible_at=None,
            priority=priority,
            correlation_id=correlation_id,
            business_id=business_id,
            integration_id=integration_id,
            delivery_key=delivery_key,
            created_at=now,
            updated_at=now,
        )
        async with self._sm() as session:
            async with session.begin():
                session.add(job)
        logger.info("[STORE] enqueued job=%s source=%s kind=%s priority=%s", job.id, source, kind, priority)
        return job

    async def claim_batch(self, limit: int, worker_id: Optional[str] = None) -> List[Job]:
        """
        Atomically move up to `limit` eligible pending jobs to `processing`.

        One UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) ... RETURNING:
        concurrent claimants on PostgreSQL skip each other's locked rows instead of
        waiting on them. SQLite has no row locks; its single writer lock serializes the
        statement and the `status = pending` re-check keeps claims disjoint.
        """
        if limit <= 0:
            return []
        now = self.now()
        candidates = (
            select(Job.id)
            .where(
                Job.status == PENDING,
                or_(Job.next_eligible_at.is_(None), Job.next_eligible_at <= now),
            )
            .order_by(Job.priority.desc(), Job.created_at.asc(), Job.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(Job)
            .where(Job.id.in_(candidates), Job.status == PENDING)
            .values(
                status=PROCESSING,
                attempts=Job.attempts + 1,
                processing_started_at=now,
                worker_id=worker_id,
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        async with self._sm() as session:
            async with session.begin():
                ids = list((await session.execute(stmt)).scalars().all())
                if not ids:
                    return []
                jobs = list((await session.execute(select(Job).where(Job.id.in_(ids)))).scalars().all())
        jobs.sort(key=_claim_order)
        logger.info("[STORE] worker=%s claimed %d job(s)", worker_id, len(jobs))
        return jobs

    # ------------------------------------------------------------------
    # transitions out of `processing`
    # ------------------------------------------------------------------

    async def _load_processing(self, session: AsyncSession, job_id: str, target: str) -> Job:
        job = (await session.execute(
            select(Job).where(Job.id == job_id).with_for_update()
        )).scalars().first()
        if job is None:
            raise JobNotFound(job_id)
        if job.status != PROCESSING:
            raise InvalidTransition(job_id, job.status, target)
        return job

    async def complete(
        self,
        job_id: str,
        result: Optional[Dict[str, Any]] = None,
        *,
        ignored: bool = False,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> Job:
        target = IGNORED if ignored else COMPLETED
        now = self.now()
        async with self._sm() as session:
            async with session.begin():
                job = await self._load_processing(session, job_id, target)
                job.status = target
                job.completed_at = now
                job.updated_at = now
                job.next_eligible_at = None
                job.worker_id = None
                if result is not None:
                    job.result = result
                if reference:
                    job.reference = reference
                if ignored and reason:
                    job.last_error = f"ignored: {reason}"
                if duration_ms is not None:
                    job.duration_ms = duration_ms
        logger.info("[STORE] job=%s -> %s%s", job_id, target, f" ({reason})" if reason else "")
        return job

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        *,
        terminal: bool = False,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        result: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
    ) -> Job:
        """
        Re-arm with backoff while attempts remain, else dead-letter.
        `terminal=True` dead-letters immediately regardless of the remaining budget.
        """
        now = self.now()
        async with self._sm() as session:
            async with session.begin():
                job = await self._load_processing(session, job_id, FAILED)
                job.last_error = (error or "unknown error")[:_ERROR_MAX]
                job.updated_at = now
                job.worker_id = None
                if validation_errors is not None:
                    job.validation_errors = validation_errors
                if result is not None:
                    job.result = result
                if duration_ms is not None:
                    job.duration_ms = duration_ms

                if terminal or job.attempts >= job.max_attempts:
                    job.status = FAILED
                    job.next_eligible_at = None
                    job.completed_at = now
                else:
                    job.status = PENDING
                    job.next_eligible_at = self.backoff.next_eligible_at(job.attempts, now)

        if job.status == FAILED:
            logger.warning("[STORE] job=%s dead-lettered after %d/%d attempt(s)%s: %s",
                           job_id, job.attempts, job.max_attempts, " (terminal)" if terminal else "", job.last_error)
        else:
            logger.info("[STORE] job=%s retry %d/%d at %s: %s",
                        job_id, job.attempts, job.max_attempts, job.next_eligible_at.isoformat(), job.last_error)
        return job

    # ------------------------------------------------------------------
    # operator actions
    # ------------------------------------------------------------------

    async def retry_dead_letter(self, job_id: str, extra_attempts: Optional[int] = None) -> Job:
        """
        Re-arm a dead-lettered job with a fresh retry budget. `attempts` keeps counting
        up; `max_attempts` is raised instead.
        """
        now = self.now()
        async with self._sm() as session:
            async with session.begin():
                job = await session.get(Job, job_id, with_for_update=True)
                if job is None:
                    raise JobNotFound(job_id)
                if job.status != FAILED:
                    raise InvalidTransition(job_id, job.status, PENDING)
                job.status = PENDING
                job.max_attempts = job.attempts + (extra_attempts or self.default_max_attempts)
                job.next_eligible_at = None
                job.completed_at = None
                job.processing_started_at = None
                job.updated_at = now
        logger.info("[STORE] job=%s re-armed from dead letter (max_attempts=%d)", job_id, job.max_attempts)
        return job

    async def record_authority_decision(
        self,
        job_id: str,
        decision: str,
        *,
        response: Optional[Dict[str, Any]] = None,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
    ) -> Job:
        """
        Apply the authority's later verdict on a filed (completed) submission.
        `rejected` dead-letters the job so an operator can correct and retry it;
        `approved` and `pending` only annotate the result.
        """
        now = self.now()
        target = FAILED if decision == "rejected" else COMPLETED
        async with self._sm() as session:
            async with session.begin():
                job = await session.get(Job, job_id, with_for_update=True)
                if job is None:
                    raise JobNotFound(job_id)
                if job.status != COMPLETED:
                    raise InvalidTransition(job_id, job.status, target)
                result = dict(job.result or {})
                result["authority_status"] = decision
                if response is not None:
                    result["status_response"] = response
                job.result = result
                job.updated_at = now
                if decision == "rejected":
                    errors = validation_errors or []
                    first = errors[0] if errors else {}
                    job.status = FAILED
                    job.validation_errors = errors
                    job.last_error = f"authority rejected after filing: {first.get('code')} - {first.get('message')}"
                    job.completed_at = now
                    job.next_eligible_at = None
        logger.info("[STORE] job=%s authority decision %s -> %s", job_id, decision, job.status)
        return job

    async def reap_stale(self, older_than: timedelta) -> List[Job]:
        """Jobs stuck in `processing` (crashed worker) go through the normal failure path."""
        cutoff = self.now() - older_than
        async with self._sm() as session:
            ids = list((await session.execute(
                select(Job.id).where(Job.status == PROCESSING, Job.processing_started_at < cutoff)
            )).scalars().all())
        out: List[Job] = []
        for job_id in ids:
            try:
                out.append(await self.mark_failed(job_id, f"stale claim: no outcome reported within {int(older_than.total_seconds())}s"))
            except InvalidTransition:
                # finished between the scan and the update
                continue
        if out:
            logger.warning("[STORE] reaped %d stale processing job(s)", len(out))
        return out

    async def purge_terminal(self, older_than: timedelta) -> int:
        """Retention: delete terminal jobs finished before the cutoff. Non-terminal rows are never touched."""
        cutoff = self.now() - older_than
        async with self._sm() as session:
            async with session.begin():
                res = await session.execute(
                    delete(Job)
                    .where(
                        Job.status.in_(tuple(TERMINAL_STATUSES)),
                        func.coalesce(Job.completed_at, Job.created_at) < cutoff,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    delete(ProcessedDelivery)
                    .where(ProcessedDelivery.created_at < cutoff)
                    .execution_options(synchronize_session=False)
                )
        purged = res.rowcount or 0
        logger.info("[STORE] purged %d terminal job(s) older than %s", purged, cutoff.isoformat())
        return purged

    # ------------------------------------------------------------------
    # ledger reads
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> Job:
        async with self._sm() as session:
            job = await session.get(Job, job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        source: Optional[str] = None,
        business_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        reference: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Job]:
        """Newest first. Filters combine; e.g. business + correlation id finds one invoice's filings."""
        stmt = select(Job)
        for column, value in (
            (Job.status, status),
            (Job.source, source),
            (Job.business_id, business_id),
            (Job.integration_id, integration_id),
            (Job.correlation_id, correlation_id),
            (Job.reference, reference),
        ):
            if value:
                stmt = stmt.where(column == value)
        stmt = stmt.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit).offset(offset)
        async with self._sm() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def stats(self) -> Dict[str, Any]:
        """Pending count, oldest pending age, failure rate by source, average processing time."""
        now = self.now()
        async with self._sm() as session:
            by_status = {s: 0 for s in JOB_STATUSES}
            for st, n in (await session.execute(select(Job.status, func.count()).group_by(Job.status))).all():
                by_status[st] = n

            oldest = (await session.execute(
                select(func.min(Job.created_at)).where(Job.status == PENDING)
            )).scalar()

            per_source: Dict[str, Dict[str, Any]] = {}
            rows = await session.execute(
                select(Job.source, Job.status, func.count()).group_by(Job.source, Job.status)
            )
            for src, st, n in rows.all():
                entry = per_source.setdefault(src, {s: 0 for s in JOB_STATUSES})
                entry[st] = n

            avg_ms = (await session.execute(
                select(func.avg(Job.duration_ms)).where(Job.status == COMPLETED, Job.duration_ms.is_not(None))
            )).scalar()

        oldest_age = None
        if oldest is not None:
            # func.min() bypasses the column type on some backends
            if isinstance(oldest, str):
                oldest = datetime.fromisoformat(oldest)
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=now.tzinfo)
            oldest_age = max((now - oldest).total_seconds(), 0.0)

        for entry in per_source.values():
            finished = entry[COMPLETED] + entry[FAILED] + entry[IGNORED]
            entry["failure_rate"] = round(entry[FAILED] / finished, 4) if finished else 0.0

        return {
            "by_status": by_status,
            "pending": by_status[PENDING],
            "oldest_pending_age_seconds": oldest_age,
            "by_source": per_source,
            "avg_processing_seconds": round(float(avg_ms) / 1000.0, 3) if avg_ms is not None else None,
        }

    # ------------------------------------------------------------------
    # handler idempotency ledger
    # ------------------------------------------------------------------

    async def delivery_processed(self, source: str, delivery_key: str) -> bool:
        async with self._sm() as session:
            row = (await session.execute(
                select(ProcessedDelivery.id).where(
                    ProcessedDelivery.source == source,
                    ProcessedDelivery.delivery_key == delivery_key,
                ).limit(1)
            )).scalar()
        return row is not None

    async def record_delivery(self, source: str, delivery_key: str, job_id: str) -> None:
        async with self._sm() as session:
            async with session.begin():
                session.add(ProcessedDelivery(
                    source=source, delivery_key=delivery_key, job_id=job_id, created_at=self.now(),
                ))
