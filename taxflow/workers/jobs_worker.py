# ---------------------------
# taxflow/workers/jobs_worker.py
# ---------------------------
import asyncio
import logging
import os
import signal
import socket
import time
from datetime import timedelta
from typing import List, Optional

from taxflow.dispatch.alerts import AlertNotifier
from taxflow.exceptions import IgnoreJob, InvalidTransition, JobNotFound, TerminalJobError
from taxflow.handlers.base import HandlerContext, HandlerRegistry
from taxflow.models.jobs import FAILED, Job
from taxflow.store.jobs_store import JobStore

logger = logging.getLogger("uvicorn.error")


def default_worker_id(n: int = 0) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{n}"


class Worker:
    """
    Claim a small batch, run each job's handler in claim order, report each outcome on its own.
    A failing job never affects the rest of its batch.
    """

    def __init__(
        self,
        store: JobStore,
        handlers: HandlerRegistry,
        ctx: HandlerContext,
        notifier: Optional[AlertNotifier] = None,
        *,
        worker_id: Optional[str] = None,
        batch_size: int = 5,
        poll_seconds: float = 2.0,
        job_timeout: float = 60.0,
    ):
        self.store = store
        self.handlers = handlers
        self.ctx = ctx
        self.notifier = notifier
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = batch_size
        self.poll_seconds = poll_seconds
        self.job_timeout = job_timeout

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("[WORKER] %s started", self.worker_id)
        while not stop_event.is_set():
            try:
                n = await self.run_once()
            except Exception as e:
                logger.error("[WORKER] %s poll failed: %s", self.worker_id, e)
                n = 0
            if n:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[WORKER] %s stopped", self.worker_id)

    async def run_once(self) -> int:
        jobs = await self.store.claim_batch(self.batch_size, worker_id=self.worker_id)
        for job in jobs:
            try:
                await self.process(job)
            except Exception as e:
                # Outcome not recorded; the job stays `processing` until the stale reaper picks it up
                logger.error("[WORKER] job=%s outcome not recorded: %s: %s", job.id, type(e).__name__, e)
        return len(jobs)

    async def process(self, job: Job) -> Optional[Job]:
        handler = self.handlers.get(job.source)
        logger.info("[WORKER] job=%s source=%s kind=%s attempt=%d/%d",
                    job.id, job.source, job.kind, job.attempts, job.max_attempts)
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            try:
                res = await asyncio.wait_for(handler(job, self.ctx), timeout=self.job_timeout)
            except IgnoreJob as e:
                logger.info("[WORKER] job=%s ignored: %s", job.id, e.reason)
                return await self.store.complete(job.id, ignored=True, reason=e.reason, duration_ms=elapsed_ms())
            except TerminalJobError as e:
                logger.warning("[WORKER] job=%s rejected: %s", job.id, e)
                updated = await self.store.mark_failed(
                    job.id, str(e), terminal=True,
                    validation_errors=e.validation_errors or None,
                    result=e.response,
                    duration_ms=elapsed_ms(),
                )
            except asyncio.TimeoutError:
                logger.warning("[WORKER] job=%s timed out after %.1fs", job.id, self.job_timeout)
                updated = await self.store.mark_failed(
                    job.id, f"handler timed out after {self.job_timeout:g}s", duration_ms=elapsed_ms(),
                )
            except Exception as e:
                logger.warning("[WORKER] job=%s failed: %s: %s", job.id, type(e).__name__, e)
                updated = await self.store.mark_failed(
                    job.id, f"{type(e).__name__}: {e}", duration_ms=elapsed_ms(),
                )
            else:
                return await self.store.complete(
                    job.id,
                    res.result if res else None,
                    reference=res.reference if res else None,
                    duration_ms=elapsed_ms(),
                )
        except (InvalidTransition, JobNotFound) as e:
            # Reaped or re-armed by an operator while the handler ran
            logger.warning("[WORKER] job=%s outcome dropped: %s", job.id, e)
            return None

        if updated.status == FAILED and self.notifier is not None:
            self.notifier.dead_letter(updated)
        return updated


class WorkerPool:
    """N uncoordinated polling workers plus a housekeeping loop, all on the current event loop."""

    def __init__(
        self,
        store: JobStore,
        handlers: HandlerRegistry,
        ctx: HandlerContext,
        notifier: Optional[AlertNotifier] = None,
        *,
        count: int = 2,
        batch_size: int = 5,
        poll_seconds: float = 2.0,
        job_timeout: float = 60.0,
        stale_after: Optional[timedelta] = timedelta(minutes=15),
        retention: Optional[timedelta] = None,
        housekeeping_seconds: float = 60.0,
    ):
        self.store = store
        self.notifier = notifier
        self.stale_after = stale_after
        self.retention = retention
        self.housekeeping_seconds = housekeeping_seconds
        self.workers: List[Worker] = [
            Worker(store, handlers, ctx, notifier,
                   worker_id=default_worker_id(i), batch_size=batch_size,
                   poll_seconds=poll_seconds, job_timeout=job_timeout)
            for i in range(max(count, 1))
        ]
        self._stop: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._stop = asyncio.Event()
        self._tasks = [asyncio.create_task(w.run(self._stop)) for w in self.workers]
        self._tasks.append(asyncio.create_task(self._housekeeping(self._stop)))
        logger.info("[WORKER] pool started with %d worker(s)", len(self.workers))

    async def stop(self, timeout: float = 5.0) -> None:
        if self._stop:
            self._stop.set()
        for t in self._tasks:
            try:
                await asyncio.wait_for(t, timeout=timeout)
            except Exception:
                t.cancel()
        self._tasks = []
        self._stop = None
        if self.notifier is not None:
            await self.notifier.drain()

    async def housekeep(self) -> None:
        if self.stale_after:
            for job in await self.store.reap_stale(self.stale_after):
                if job.status == FAILED and self.notifier is not None:
                    self.notifier.dead_letter(job)
        if self.retention:
            await self.store.purge_terminal(self.retention)

    async def _housekeeping(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.housekeep()
            except Exception as e:
                logger.error("[WORKER] housekeeping failed: %s", e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.housekeeping_seconds)
            except asyncio.TimeoutError:
                pass


# ---------------------------
# Standalone worker process:  python -m taxflow.workers.jobs_worker
# ---------------------------

async def _main() -> None:
    from taxflow.db import dispose_engine, init_db
    from taxflow.runtime import build_runtime

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s | %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    await init_db()
    runtime = build_runtime()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    runtime.pool.start()
    await stop.wait()
    await runtime.pool.stop()
    await dispose_engine()


if __name__ == "__main__":
    asyncio.run(_main())
