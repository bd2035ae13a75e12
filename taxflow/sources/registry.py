# taxflow/sources/registry.py
# Per-source capabilities for inbound deliveries: ping detection, event kind,
# delivery key and tenant lookup. One adapter per provider, looked up by source name.
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.config import (
    SOURCE_QUICKBOOKS,
    SOURCE_WHATSAPP,
    SOURCE_WOOCOMMERCE,
    SOURCE_ZOHO,
)
from taxflow.models.integrations import ACTIVE, Integration
from taxflow.sources.signatures import _get_hdr

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class OwnerLookup:
    account_id: Optional[str] = None
    account_email: Optional[str] = None

    def __bool__(self) -> bool:
        return bool(self.account_id or self.account_email)


@dataclass
class InboundEvent:
    source: str
    kind: str
    payload: Dict[str, Any]
    delivery_key: str
    owner: OwnerLookup
    related_kinds: Tuple[str, ...] = field(default_factory=tuple)


def body_digest(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


class SourceAdapter:
    """Generic JSON deliveries: `event`/`type` field, `id` for the delivery key, `account_id` for routing."""

    kind_fields = ("event", "type", "event_type")
    delivery_headers: Tuple[str, ...] = ("X-Webhook-Delivery", "X-Request-Id")

    def __init__(self, name: str):
        self.name = name

    def is_ping(self, raw: bytes, headers: Mapping[str, str]) -> bool:
        return False

    def parse(self, raw: bytes, headers: Mapping[str, str]) -> InboundEvent:
        """Raises ValueError when the body is not a JSON object."""
        try:
            payload = json.loads(raw.decode("utf-8") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"invalid JSON body: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError("JSON body is not an object")
        kinds = self.event_kinds(payload, headers)
        return InboundEvent(
            source=self.name,
            kind=kinds[0] if kinds else "unknown",
            payload=payload,
            delivery_key=self.delivery_key(payload, headers, raw),
            owner=self.owner(payload, headers),
            related_kinds=tuple(kinds[1:]),
        )

    def event_kinds(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> list[str]:
        for f in self.kind_fields:
            v = payload.get(f)
            if isinstance(v, str) and v.strip():
                return [v.strip()]
        return []

    def delivery_key(self, payload: Dict[str, Any], headers: Mapping[str, str], raw: bytes) -> str:
        for h in self.delivery_headers:
            v = (_get_hdr(headers, h) or "").strip()
            if v:
                return v[:128]
        for f in ("event_id", "id"):
            v = payload.get(f)
            if v not in (None, ""):
                return str(v)[:128]
        return body_digest(raw)

    def owner(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> OwnerLookup:
        acct = payload.get("account_id") or _get_hdr(headers, "X-Account-Id")
        return OwnerLookup(account_id=str(acct) if acct else None)


class ZohoAdapter(SourceAdapter):
    kind_fields = ("event",)
    delivery_headers = ("X-Zoho-Event-Id",)

    def owner(self, payload, headers):
        org = payload.get("organization_id") or (payload.get("data") or {}).get("organization_id")
        conf = payload.get("configuration") or {}
        email = conf.get("email") if isinstance(conf, dict) else None
        return OwnerLookup(
            account_id=str(org) if org else None,
            account_email=email or payload.get("email"),
        )


class QuickBooksAdapter(SourceAdapter):
    delivery_headers = ("intuit-t-id",)

    def event_kinds(self, payload, headers):
        out: list[str] = []
        for n in payload.get("eventNotifications") or []:
            entities = ((n or {}).get("dataChangeEvent") or {}).get("entities") or []
            for e in entities:
                name = (e or {}).get("name")
                if not name:
                    continue
                op = (e or {}).get("operation")
                out.append(f"{name}.{op}" if op else name)
        return out

    def delivery_key(self, payload, headers, raw):
        # Intuit retries re-send the same body; no stable event id is carried
        for h in self.delivery_headers:
            v = (_get_hdr(headers, h) or "").strip()
            if v:
                return v[:128]
        return body_digest(raw)

    def owner(self, payload, headers):
        realm = _get_hdr(headers, "Intuit-RealmId")
        if not realm:
            for n in payload.get("eventNotifications") or []:
                realm = (n or {}).get("realmId")
                if realm:
                    break
        return OwnerLookup(account_id=str(realm) if realm else None)


class WhatsAppAdapter(SourceAdapter):
    def _first_change(self, payload) -> Dict[str, Any]:
        try:
            return payload["entry"][0]["changes"][0] or {}
        except (KeyError, IndexError, TypeError):
            return {}

    def event_kinds(self, payload, headers):
        fld = self._first_change(payload).get("field")
        return [fld] if fld else []

    def delivery_key(self, payload, headers, raw):
        value = self._first_change(payload).get("value") or {}
        for coll in ("messages", "statuses"):
            items = value.get(coll) or []
            if items and isinstance(items[0], dict) and items[0].get("id"):
                return str(items[0]["id"])[:128]
        return body_digest(raw)

    def owner(self, payload, headers):
        value = self._first_change(payload).get("value") or {}
        pnid = (value.get("metadata") or {}).get("phone_number_id")
        return OwnerLookup(account_id=str(pnid) if pnid else None)


class WooCommerceAdapter(SourceAdapter):
    delivery_headers = ("X-WC-Webhook-Delivery-ID",)

    def is_ping(self, raw, headers):
        # Woo sends an unsigned, form-encoded `webhook_id=...` when a hook is saved
        ctype = (_get_hdr(headers, "content-type") or "").lower()
        return ctype.startswith("application/x-www-form-urlencoded") and raw.startswith(b"webhook_id=")

    def event_kinds(self, payload, headers):
        topic = (_get_hdr(headers, "X-WC-Webhook-Topic") or "").strip()
        if topic:
            return [topic]
        resource = _get_hdr(headers, "X-WC-Webhook-Resource")
        event = _get_hdr(headers, "X-WC-Webhook-Event")
        if resource and event:
            return [f"{resource}.{event}"]
        return []

    def owner(self, payload, headers):
        site = (_get_hdr(headers, "X-WC-Webhook-Source") or "").strip().rstrip("/")
        return OwnerLookup(account_id=site or None)


_ADAPTERS: Dict[str, SourceAdapter] = {
    SOURCE_ZOHO: ZohoAdapter(SOURCE_ZOHO),
    SOURCE_QUICKBOOKS: QuickBooksAdapter(SOURCE_QUICKBOOKS),
    SOURCE_WHATSAPP: WhatsAppAdapter(SOURCE_WHATSAPP),
    SOURCE_WOOCOMMERCE: WooCommerceAdapter(SOURCE_WOOCOMMERCE),
}


def get_adapter(source: str) -> SourceAdapter:
    """Known providers get their adapter; configured generic sources share the default one."""
    return _ADAPTERS.get(source) or SourceAdapter(source)


async def resolve_integration(session: AsyncSession, source: str, owner: OwnerLookup) -> Optional[Integration]:
    """Active integration owning this delivery, or None (unroutable)."""
    if not owner:
        return None
    stmt = select(Integration).where(Integration.provider == source, Integration.status == ACTIVE)
    if owner.account_id:
        row = (await session.execute(stmt.where(Integration.account_id == owner.account_id).limit(1))).scalars().first()
        if row is not None:
            return row
    if owner.account_email:
        return (await session.execute(
            stmt.where(Integration.account_email == owner.account_email).limit(1)
        )).scalars().first()
    return None
