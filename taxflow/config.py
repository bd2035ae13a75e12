# ----------------------------------------------------------------
# Configuration for the intake pipeline and its workers.
# Everything is read once at process start.
# ----------------------------------------------------------------
from __future__ import annotations

import os
import json as _json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from dotenv import load_dotenv

# Load .env (container env wins over file values)
load_dotenv(override=False)


def _rstrip_slash(s: str) -> str:
    return (s or "").rstrip("/")


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    try:
        return float(str(v).strip())
    except ValueError:
        return default


def _get_json_map(name: str, default: dict | None = None) -> dict:
    raw = os.getenv(name, "")
    if not raw:
        return default or {}
    try:
        val = _json.loads(raw)
    except Exception:
        return default or {}
    return val if isinstance(val, dict) else (default or {})


def _get_list(name: str) -> list[str]:
    return [p.strip() for p in os.getenv(name, "").split(",") if p.strip()]


class Settings:
    # ── Database ─────────────────────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # ── Admin / ops API ──────────────────────────────────────────────────────
    ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
    ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")
    CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    # ── Webhook secrets (one per provider) ──────────────────────────────────
    ZOHO_WEBHOOK_SECRET: str = os.getenv("ZOHO_WEBHOOK_SECRET", "")
    WHATSAPP_APP_SECRET: str = os.getenv("WHATSAPP_APP_SECRET", "")
    WHATSAPP_VERIFY_TOKEN: str = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
    QUICKBOOKS_WEBHOOK_TOKEN: str = os.getenv("QUICKBOOKS_WEBHOOK_TOKEN", "")
    # Support both names, like the Woo plugin docs do
    WOO_WEBHOOK_SECRET: str = os.getenv("WOO_WEBHOOK_SECRET", "") or os.getenv("WC_WEBHOOK_SECRET", "")
    # {"source-name": "secret"} for partners using the generic X-Webhook-Signature scheme
    GENERIC_WEBHOOK_SECRETS: dict = _get_json_map("GENERIC_WEBHOOK_SECRETS", {})
    # Sources accepted without any signature check (lowered trust, logged on every delivery)
    UNSIGNED_SOURCES: list[str] = _get_list("UNSIGNED_SOURCES")
    SIGNATURE_MAX_SKEW_SECONDS: int = _get_int("SIGNATURE_MAX_SKEW_SECONDS", 300)
    AUDIT_REJECTED_WEBHOOKS: bool = _get_bool("AUDIT_REJECTED_WEBHOOKS", True)

    # Optional overrides of the static priority table: {"zoho": {"invoice.*": "high"}}
    PRIORITY_RULES: dict = _get_json_map("PRIORITY_RULES", {})

    # ── Provider APIs used by the sync handlers ─────────────────────────────
    ZOHO_API_URL: str = _rstrip_slash(os.getenv("ZOHO_API_URL", ""))
    ZOHO_API_TOKEN: str = os.getenv("ZOHO_API_TOKEN", "")
    QUICKBOOKS_API_URL: str = _rstrip_slash(os.getenv("QUICKBOOKS_API_URL", ""))
    QUICKBOOKS_API_TOKEN: str = os.getenv("QUICKBOOKS_API_TOKEN", "")
    PROVIDER_TIMEOUT_SECONDS: float = _get_float("PROVIDER_TIMEOUT_SECONDS", 20.0)

    # ── Tax authority (e-invoice submission) ────────────────────────────────
    AUTHORITY_API_URL: str = _rstrip_slash(os.getenv("AUTHORITY_API_URL", "https://taxpayers.ng/firs/api/v1"))
    AUTHORITY_API_KEY: str = os.getenv("AUTHORITY_API_KEY", "")
    AUTHORITY_CSID: str = os.getenv("AUTHORITY_CSID", "")
    AUTHORITY_TIMEOUT_SECONDS: float = _get_float("AUTHORITY_TIMEOUT_SECONDS", 30.0)

    # ── Workers / queue ─────────────────────────────────────────────────────
    EMBEDDED_WORKERS: bool = _get_bool("EMBEDDED_WORKERS", True)
    WORKER_COUNT: int = _get_int("WORKER_COUNT", 2)
    WORKER_BATCH_SIZE: int = _get_int("WORKER_BATCH_SIZE", 5)
    WORKER_POLL_SECONDS: float = _get_float("WORKER_POLL_SECONDS", 2.0)
    JOB_TIMEOUT_SECONDS: float = _get_float("JOB_TIMEOUT_SECONDS", 60.0)
    JOB_MAX_ATTEMPTS: int = _get_int("JOB_MAX_ATTEMPTS", 3)
    STALE_PROCESSING_SECONDS: int = _get_int("STALE_PROCESSING_SECONDS", 900)

    # Backoff: first retry never earlier than RETRY_BASE_SECONDS
    RETRY_BASE_SECONDS: float = _get_float("RETRY_BASE_SECONDS", 300.0)
    RETRY_FACTOR: float = _get_float("RETRY_FACTOR", 2.0)
    RETRY_MAX_SECONDS: float = _get_float("RETRY_MAX_SECONDS", 6 * 3600.0)
    RETRY_JITTER_RATIO: float = _get_float("RETRY_JITTER_RATIO", 0.2)

    RETENTION_DAYS: int = _get_int("RETENTION_DAYS", 90)

    # ── Alerts (critical events, dead letters) ──────────────────────────────
    ALERT_WEBHOOK_URL: str = os.getenv("ALERT_WEBHOOK_URL", "")
    ALERT_RECIPIENTS: list[str] = _get_list("ALERT_RECIPIENTS")


settings = Settings()


# ─────────────────────────────────────────────────────────────────────────────
# Per-source configuration map
# ─────────────────────────────────────────────────────────────────────────────

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"
PRIORITY_CRITICAL = "critical"
PRIORITY_RANKS: Mapping[str, int] = MappingProxyType({
    PRIORITY_NORMAL: 0,
    PRIORITY_HIGH: 1,
    PRIORITY_CRITICAL: 2,
})

SOURCE_ZOHO = "zoho"
SOURCE_WHATSAPP = "whatsapp"
SOURCE_QUICKBOOKS = "quickbooks"
SOURCE_WOOCOMMERCE = "woocommerce"
SOURCE_AUTHORITY = "regulatory-authority"


@dataclass(frozen=True)
class SignatureScheme:
    header: str
    secret: str
    encoding: str = "hex"                      # "hex" | "base64"
    prefix: str = ""                           # e.g. "sha256=" on WhatsApp
    timestamp_header: Optional[str] = None     # signed as f"{ts}.{body}" when present
    timestamp_required: bool = False
    max_skew_seconds: Optional[int] = None
    digest: str = "sha256"


@dataclass(frozen=True)
class SourceConfig:
    name: str
    signature: Optional[SignatureScheme]
    priorities: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    inbound: bool = True
    api_base: str = ""
    api_token: str = ""


# Static priority table: glob pattern on the event kind → priority.
DEFAULT_PRIORITY_RULES: dict[str, dict[str, str]] = {
    SOURCE_ZOHO: {
        "invoice.created": PRIORITY_HIGH,
        "invoice.paid": PRIORITY_HIGH,
        "payment.received": PRIORITY_HIGH,
        "connection.revoked": PRIORITY_CRITICAL,
        "token.expired": PRIORITY_CRITICAL,
    },
    SOURCE_QUICKBOOKS: {
        "Invoice.*": PRIORITY_HIGH,
        "Payment.*": PRIORITY_HIGH,
        "Disconnect*": PRIORITY_CRITICAL,
    },
    SOURCE_WHATSAPP: {
        "messages": PRIORITY_HIGH,
    },
    SOURCE_WOOCOMMERCE: {
        "order.*": PRIORITY_HIGH,
        "refund.*": PRIORITY_HIGH,
    },
    SOURCE_AUTHORITY: {
        "invoice": PRIORITY_HIGH,
        "credit_note": PRIORITY_HIGH,
        "debit_note": PRIORITY_HIGH,
        "cancellation": PRIORITY_HIGH,
    },
}


def _freeze_rules(source: str, overrides: dict) -> Mapping[str, str]:
    rules = dict(DEFAULT_PRIORITY_RULES.get(source, {}))
    extra = overrides.get(source) or {}
    if isinstance(extra, dict):
        rules.update({str(k): str(v) for k, v in extra.items()})
    unknown = {p for p in rules.values() if p not in PRIORITY_RANKS}
    if unknown:
        raise ValueError(f"Unknown priority {sorted(unknown)} in rules for source {source!r}")
    return MappingProxyType(rules)


def load_source_config(cfg: Settings = settings) -> Mapping[str, SourceConfig]:
    """
    Build the immutable per-source map (secrets, signature schemes, priority tables).
    Call once at process start and pass the result around by reference.
    """
    skew = cfg.SIGNATURE_MAX_SKEW_SECONDS
    overrides = cfg.PRIORITY_RULES or {}
    sources: dict[str, SourceConfig] = {
        SOURCE_ZOHO: SourceConfig(
            name=SOURCE_ZOHO,
            signature=SignatureScheme(
                header="X-Zoho-Signature",
                secret=cfg.ZOHO_WEBHOOK_SECRET,
                timestamp_header="X-Zoho-Timestamp",
                timestamp_required=True,
                max_skew_seconds=skew,
            ),
            priorities=_freeze_rules(SOURCE_ZOHO, overrides),
            api_base=cfg.ZOHO_API_URL,
            api_token=cfg.ZOHO_API_TOKEN,
        ),
        SOURCE_WHATSAPP: SourceConfig(
            name=SOURCE_WHATSAPP,
            signature=SignatureScheme(
                header="X-Hub-Signature-256",
                secret=cfg.WHATSAPP_APP_SECRET,
                prefix="sha256=",
            ),
            priorities=_freeze_rules(SOURCE_WHATSAPP, overrides),
        ),
        SOURCE_QUICKBOOKS: SourceConfig(
            name=SOURCE_QUICKBOOKS,
            signature=SignatureScheme(
                header="Intuit-Signature",
                secret=cfg.QUICKBOOKS_WEBHOOK_TOKEN,
                encoding="base64",
            ),
            priorities=_freeze_rules(SOURCE_QUICKBOOKS, overrides),
            api_base=cfg.QUICKBOOKS_API_URL,
            api_token=cfg.QUICKBOOKS_API_TOKEN,
        ),
        SOURCE_WOOCOMMERCE: SourceConfig(
            name=SOURCE_WOOCOMMERCE,
            signature=SignatureScheme(
                header="X-WC-Webhook-Signature",
                secret=cfg.WOO_WEBHOOK_SECRET,
                encoding="base64",
            ),
            priorities=_freeze_rules(SOURCE_WOOCOMMERCE, overrides),
        ),
        SOURCE_AUTHORITY: SourceConfig(
            name=SOURCE_AUTHORITY,
            signature=None,
            priorities=_freeze_rules(SOURCE_AUTHORITY, overrides),
            inbound=False,
            api_base=cfg.AUTHORITY_API_URL,
            api_token=cfg.AUTHORITY_API_KEY,
        ),
    }

    for name, secret in (cfg.GENERIC_WEBHOOK_SECRETS or {}).items():
        if name in sources:
            continue
        sources[name] = SourceConfig(
            name=name,
            signature=SignatureScheme(
                header="X-Webhook-Signature",
                secret=str(secret or ""),
                timestamp_header="X-Webhook-Timestamp",
                max_skew_seconds=skew,
            ),
            priorities=_freeze_rules(name, overrides),
        )

    for name in cfg.UNSIGNED_SOURCES:
        if name in sources:
            continue
        sources[name] = SourceConfig(name=name, signature=None, priorities=_freeze_rules(name, overrides))

    return MappingProxyType(sources)
