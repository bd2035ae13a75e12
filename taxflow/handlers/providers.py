# taxflow/handlers/providers.py
# Inbound provider events -> accounting sync. Idempotent per (source, delivery_key).
from __future__ import annotations

import logging
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from taxflow.config import (
    SOURCE_QUICKBOOKS,
    SOURCE_WHATSAPP,
    SOURCE_WOOCOMMERCE,
    SOURCE_ZOHO,
)
from taxflow.exceptions import IgnoreJob, classify_http_error
from taxflow.handlers.base import HandlerContext, HandlerResult, SyncBatch
from taxflow.models.integrations import EXPIRED, REVOKED, Integration
from taxflow.models.jobs import Job, ProcessedDelivery

logger = logging.getLogger("uvicorn.error")

# kind pattern -> integration status it implies
_CONNECTION_EVENTS = {
    SOURCE_ZOHO: {"connection.revoked": REVOKED, "token.expired": EXPIRED},
    SOURCE_QUICKBOOKS: {"Disconnect*": REVOKED},
}

# kinds worth syncing; everything else completes as ignored
_SYNC_KINDS = {
    SOURCE_ZOHO: ("invoice.*", "payment.*", "contact.*", "customer.*", "creditnote.*", "bill.*"),
    SOURCE_QUICKBOOKS: ("Invoice*", "Payment*", "Customer*", "CreditMemo*", "Bill*", "Vendor*"),
    SOURCE_WHATSAPP: ("messages",),
    SOURCE_WOOCOMMERCE: ("order.*", "refund.*", "customer.*"),
}

_ZOHO_PLURALS = {"invoice": "invoices", "payment": "customerpayments", "contact": "contacts",
                 "customer": "contacts", "creditnote": "creditnotes", "bill": "bills"}


def _matches(kind: str, patterns) -> bool:
    return any(fnmatchcase(kind, p) for p in patterns)


async def _already_processed(ctx: HandlerContext, job: Job) -> bool:
    """A delivery counts as a duplicate only when some *other* job already ran its side effects."""
    if not job.delivery_key:
        return False
    async with ctx.sessionmaker() as session:
        owner = (await session.execute(
            select(ProcessedDelivery.job_id).where(
                ProcessedDelivery.source == job.source,
                ProcessedDelivery.delivery_key == job.delivery_key,
            ).limit(1)
        )).scalar()
    return owner is not None and owner != job.id


async def _remember(ctx: HandlerContext, job: Job) -> None:
    if not job.delivery_key:
        return
    if await ctx.store.delivery_processed(job.source, job.delivery_key):
        return
    try:
        await ctx.store.record_delivery(job.source, job.delivery_key, job.id)
    except IntegrityError:
        logger.info("[SYNC] delivery %s/%s recorded concurrently", job.source, job.delivery_key)


async def _set_integration_status(ctx: HandlerContext, job: Job, status: str) -> bool:
    if not job.integration_id:
        return False
    async with ctx.sessionmaker() as session:
        async with session.begin():
            integ = await session.get(Integration, job.integration_id)
            if integ is None:
                return False
            integ.status = status
    logger.warning("[SYNC] integration=%s (%s) marked %s by %s", job.integration_id, job.source, status, job.kind)
    return True


def _entity_refs(job: Job) -> List[Dict[str, Any]]:
    p = job.payload or {}
    if job.source == SOURCE_QUICKBOOKS:
        out = []
        for n in p.get("eventNotifications") or []:
            realm = (n or {}).get("realmId")
            for e in ((n or {}).get("dataChangeEvent") or {}).get("entities") or []:
                out.append({"entity": e.get("name"), "id": e.get("id"), "operation": e.get("operation"), "realm": realm})
        return out
    if job.source == SOURCE_ZOHO:
        data = p.get("data") if isinstance(p.get("data"), dict) else {}
        entity = job.kind.split(".", 1)[0]
        eid = data.get(f"{entity}_id") or data.get("id") or p.get("entity_id")
        return [{"entity": entity, "id": eid, "operation": job.kind.split(".", 1)[-1], "data": data or None}]
    if job.source == SOURCE_WHATSAPP:
        out = []
        for entry in p.get("entry") or []:
            for ch in (entry or {}).get("changes") or []:
                for m in ((ch or {}).get("value") or {}).get("messages") or []:
                    out.append({"entity": "message", "id": m.get("id"), "data": m})
        return out
    # WooCommerce and generic partners send the full object
    return [{"entity": job.kind.split(".", 1)[0], "id": p.get("id"), "data": p}]


def _entity_url(job: Job, base: str, ref: Dict[str, Any]) -> Optional[str]:
    if not base or not ref.get("id"):
        return None
    if job.source == SOURCE_ZOHO:
        return f"{base}/{_ZOHO_PLURALS.get(ref['entity'], ref['entity'] + 's')}/{ref['id']}"
    if job.source == SOURCE_QUICKBOOKS and ref.get("realm"):
        return f"{base}/v3/company/{ref['realm']}/{str(ref['entity']).lower()}/{ref['id']}"
    return None


async def _fetch_entities(ctx: HandlerContext, job: Job, refs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    cfg = ctx.sources.get(job.source)
    base = cfg.api_base if cfg else ""
    headers = {"Accept": "application/json"}
    if cfg and cfg.api_token:
        headers["Authorization"] = f"Bearer {cfg.api_token}"

    out: List[Dict[str, Any]] = []
    async with ctx.client() as client:
        for ref in refs:
            url = _entity_url(job, base, ref)
            if url is None:
                out.append(ref)
                continue
            try:
                r = await client.get(url, headers=headers)
                r.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_http_error(e, what=f"{job.source} fetch {ref['entity']} {ref['id']}") from e
            out.append({**ref, "data": r.json()})
    return out


async def handle_provider_event(job: Job, ctx: HandlerContext) -> HandlerResult:
    if await _already_processed(ctx, job):
        raise IgnoreJob(f"duplicate delivery {job.delivery_key}")

    kinds = [job.kind]
    for ref in _entity_refs(job) if job.source == SOURCE_QUICKBOOKS else []:
        if ref.get("entity"):
            kinds.append(f"{ref['entity']}.{ref.get('operation')}" if ref.get("operation") else ref["entity"])

    for pattern, status in (_CONNECTION_EVENTS.get(job.source) or {}).items():
        if any(fnmatchcase(k, pattern) for k in kinds):
            changed = await _set_integration_status(ctx, job, status)
            await _remember(ctx, job)
            return HandlerResult(result={"integration_status": status, "updated": changed})

    patterns = _SYNC_KINDS.get(job.source)
    if patterns is not None and not any(_matches(k, patterns) for k in kinds):
        raise IgnoreJob(f"unsupported kind {job.kind}")

    refs = _entity_refs(job)
    if not refs:
        raise IgnoreJob(f"no entities in {job.kind}")

    entities = await _fetch_entities(ctx, job, refs)
    await ctx.sink(SyncBatch(
        source=job.source, kind=job.kind, business_id=job.business_id, job_id=job.id, entities=entities,
    ))
    await _remember(ctx, job)
    return HandlerResult(result={"entities": len(entities)})
