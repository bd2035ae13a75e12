from collections import deque
from typing import Deque, List, Dict, Any, Mapping, Optional
import time
import threading

# Bounded; this is a security trail for operators, not a durable store
audit_log: Deque[Dict[str, Any]] = deque(maxlen=1000)
lock = threading.Lock()

_SENSITIVE_HEADERS = {
    "x-zoho-signature",
    "x-hub-signature-256",
    "intuit-signature",
    "x-wc-webhook-signature",
    "x-webhook-signature",
    "authorization",
    "cookie",
}


def _redact(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in _SENSITIVE_HEADERS else v) for k, v in headers.items()}


def add_audit_entry(action: str, user: str, details: str, **extra: Any):
    entry = {
        "action": action,
        "user": user,
        "timestamp": time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime()),
        "details": details,
        **extra,
    }
    with lock:
        audit_log.append(entry)


def record_rejected_delivery(source: str, reason: str, *, ip: Optional[str],
                             headers: Mapping[str, str], body_len: int) -> None:
    add_audit_entry(
        action="Webhook Rejected",
        user=ip or "unknown",
        details=f"source={source} reason={reason}",
        source=source,
        reason=reason,
        headers=_redact(headers),
        body_len=body_len,
    )


def get_audit_log(action: Optional[str] = None) -> List[Dict[str, Any]]:
    with lock:
        entries = list(audit_log)
    if action:
        entries = [e for e in entries if e.get("action") == action]
    return entries


def clear_audit_log() -> None:
    with lock:
        audit_log.clear()
