# taxflow/runtime.py
# Wires the pipeline once per process: config map, verifier, classifier, store, handlers, pool.
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxflow.config import (
    SOURCE_AUTHORITY,
    Settings,
    SourceConfig,
    load_source_config,
    settings as default_settings,
)
from taxflow.db import get_sessionmaker
from taxflow.dispatch.alerts import AlertNotifier
from taxflow.dispatch.classifier import Classifier
from taxflow.handlers.base import HandlerContext, HandlerRegistry, Sink, log_sink
from taxflow.handlers.providers import handle_provider_event
from taxflow.logging_filters import register_secret
from taxflow.regulatory.authority_client import AuthorityClient, AuthorityConfig
from taxflow.regulatory.submissions import SubmissionHandler
from taxflow.sources.signatures import SignatureVerifier
from taxflow.store.jobs_store import JobStore
from taxflow.store.retry import BackoffPolicy
from taxflow.workers.jobs_worker import WorkerPool


@dataclass
class Runtime:
    settings: Settings
    sources: Mapping[str, SourceConfig]
    sessionmaker: async_sessionmaker[AsyncSession]
    verifier: SignatureVerifier
    classifier: Classifier
    store: JobStore
    notifier: AlertNotifier
    handlers: HandlerRegistry
    ctx: HandlerContext
    pool: WorkerPool
    authority: AuthorityClient


def build_runtime(
    cfg: Settings = default_settings,
    *,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
    sources: Optional[Mapping[str, SourceConfig]] = None,
    store: Optional[JobStore] = None,
    sink: Sink = log_sink,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier: Optional[AlertNotifier] = None,
) -> Runtime:
    sources = sources if sources is not None else load_source_config(cfg)
    for sc in sources.values():
        if sc.signature is not None:
            register_secret(sc.signature.secret)
        register_secret(sc.api_token)

    sm = sessionmaker or get_sessionmaker()
    store = store or JobStore(
        sm,
        BackoffPolicy.from_settings(cfg),
        default_max_attempts=cfg.JOB_MAX_ATTEMPTS,
    )
    notifier = notifier or AlertNotifier(cfg.ALERT_WEBHOOK_URL, cfg.ALERT_RECIPIENTS, transport=transport)
    ctx = HandlerContext(
        store=store,
        sessionmaker=sm,
        sources=sources,
        sink=sink,
        transport=transport,
        provider_timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
    )

    authority = AuthorityClient(AuthorityConfig.from_settings(cfg), transport=transport)
    handlers = HandlerRegistry(default=handle_provider_event)
    handlers.register(SOURCE_AUTHORITY, SubmissionHandler(authority))

    pool = WorkerPool(
        store, handlers, ctx, notifier,
        count=cfg.WORKER_COUNT,
        batch_size=cfg.WORKER_BATCH_SIZE,
        poll_seconds=cfg.WORKER_POLL_SECONDS,
        job_timeout=cfg.JOB_TIMEOUT_SECONDS,
        stale_after=timedelta(seconds=cfg.STALE_PROCESSING_SECONDS) if cfg.STALE_PROCESSING_SECONDS > 0 else None,
        retention=timedelta(days=cfg.RETENTION_DAYS) if cfg.RETENTION_DAYS > 0 else None,
    )
    return Runtime(
        settings=cfg,
        sources=sources,
        sessionmaker=sm,
        verifier=SignatureVerifier(sources),
        classifier=Classifier(sources),
        store=store,
        notifier=notifier,
        handlers=handlers,
        ctx=ctx,
        pool=pool,
        authority=authority,
    )
