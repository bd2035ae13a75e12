# taxflow/handlers/base.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxflow.config import SourceConfig
from taxflow.exceptions import TerminalJobError
from taxflow.models.jobs import Job
from taxflow.store.jobs_store import JobStore

logger = logging.getLogger("uvicorn.error")


@dataclass
class HandlerResult:
    result: Optional[Dict[str, Any]] = None
    reference: Optional[str] = None


@dataclass
class SyncBatch:
    """What a provider handler hands to the accounting domain."""
    source: str
    kind: str
    business_id: Optional[str]
    job_id: str
    entities: List[Dict[str, Any]] = field(default_factory=list)


Sink = Callable[[SyncBatch], Awaitable[None]]


async def log_sink(batch: SyncBatch) -> None:
    logger.info("[SYNC] %s/%s business=%s entities=%d job=%s",
                batch.source, batch.kind, batch.business_id, len(batch.entities), batch.job_id)


@dataclass
class HandlerContext:
    store: JobStore
    sessionmaker: async_sessionmaker[AsyncSession]
    sources: Mapping[str, SourceConfig]
    sink: Sink = log_sink
    # Tests pass an httpx.MockTransport here
    transport: Optional[httpx.AsyncBaseTransport] = None
    provider_timeout: float = 20.0

    def client(self, timeout: Optional[float] = None, **kw) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.provider_timeout, transport=self.transport, **kw)


Handler = Callable[[Job, HandlerContext], Awaitable[Optional[HandlerResult]]]


class HandlerRegistry:
    """source -> handler. Sources without a registered handler fall back to `default`, if any."""

    def __init__(self, default: Optional[Handler] = None):
        self._handlers: Dict[str, Handler] = {}
        self._default = default

    def register(self, source: str, handler: Handler) -> None:
        self._handlers[source] = handler

    def get(self, source: str) -> Handler:
        h = self._handlers.get(source) or self._default
        if h is None:
            return _no_handler
        return h


async def _no_handler(job: Job, ctx: HandlerContext) -> Optional[HandlerResult]:
    raise TerminalJobError(f"no handler registered for source {job.source!r}")
