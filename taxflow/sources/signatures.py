# taxflow/sources/signatures.py
import base64, hmac, hashlib, logging, time
from typing import Callable, Mapping, Optional

from taxflow.config import SignatureScheme, SourceConfig

logger = logging.getLogger("uvicorn.error")


def _get_hdr(headers: Mapping[str, str], key: str) -> Optional[str]:
    v = headers.get(key)
    if v is None:
        v = headers.get(key.lower())
    if v is None:
        lk = key.lower()
        for k, val in headers.items():
            if k.lower() == lk:
                return val
    return v


def signed_message(scheme: SignatureScheme, raw: bytes, timestamp: Optional[str]) -> bytes:
    """`ts.body` when the scheme has a timestamp and one was sent, else the raw body."""
    if scheme.timestamp_header and timestamp:
        return timestamp.encode("utf-8") + b"." + raw
    return raw


def compute_signature(scheme: SignatureScheme, raw: bytes, timestamp: Optional[str] = None) -> str:
    mac = hmac.new(scheme.secret.encode("utf-8"), signed_message(scheme, raw, timestamp),
                   getattr(hashlib, scheme.digest)).digest()
    if scheme.encoding == "base64":
        encoded = base64.b64encode(mac).decode("ascii")
    else:
        encoded = mac.hex()
    return f"{scheme.prefix}{encoded}"


class SignatureVerifier:
    """
    verify(source, raw, headers) -> bool. Never raises; the caller decides the HTTP response.
    """

    def __init__(self, sources: Mapping[str, SourceConfig], clock: Callable[[], float] = time.time):
        self._sources = sources
        self._clock = clock

    def verify(self, source: str, raw: bytes, headers: Mapping[str, str]) -> bool:
        try:
            return self._verify(source, raw, headers)
        except Exception as e:
            logger.error("[SIG] verification error source=%s: %s", source, e)
            return False

    def _verify(self, source: str, raw: bytes, headers: Mapping[str, str]) -> bool:
        cfg = self._sources.get(source)
        scheme = cfg.signature if cfg is not None else None
        if scheme is None:
            logger.warning("[SIG] source=%s has no signature scheme; accepting with lowered trust", source)
            return True

        if not scheme.secret:
            logger.error("[SIG] source=%s has no secret configured; rejecting", source)
            return False

        received = (_get_hdr(headers, scheme.header) or "").strip()
        if not received:
            logger.info("[SIG] source=%s missing %s header", source, scheme.header)
            return False

        ts = None
        if scheme.timestamp_header:
            ts = (_get_hdr(headers, scheme.timestamp_header) or "").strip() or None
            if ts is None and scheme.timestamp_required:
                logger.info("[SIG] source=%s missing %s header", source, scheme.timestamp_header)
                return False
            if ts is not None and not self._fresh(ts, scheme.max_skew_seconds):
                logger.info("[SIG] source=%s stale or malformed timestamp=%s", source, ts)
                return False

        expected = compute_signature(scheme, raw, ts)
        return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))

    def _fresh(self, ts: str, max_skew: Optional[int]) -> bool:
        try:
            value = float(ts)
        except ValueError:
            return False
        # Millisecond epochs are common on provider timestamps
        if value > 1e12:
            value = value / 1000.0
        if max_skew is None:
            return True
        return abs(self._clock() - value) <= max_skew
