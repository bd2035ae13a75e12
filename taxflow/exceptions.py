# taxflow/exceptions.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx


class JobError(Exception):
    """Base class for failures raised by job handlers."""


class RetryableJobError(JobError):
    """Transient failure (network, timeout, 5xx, 429). The job goes back through backoff."""


class TerminalJobError(JobError):
    """
    Downstream rejected the payload as permanently invalid.
    The job is dead-lettered without spending its remaining attempts.
    """

    def __init__(
        self,
        message: str,
        *,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.validation_errors = validation_errors or []
        self.response = response


class IgnoreJob(Exception):
    """Nothing to do for this job (unsupported kind, duplicate delivery)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class JobNotFound(LookupError):
    pass


class InvalidTransition(Exception):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"job {job_id}: illegal transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


def _body_preview(resp: httpx.Response, limit: int = 300) -> str:
    try:
        text = resp.text
    except Exception:
        return ""
    return text[:limit]


def classify_http_error(exc: Exception, *, what: str = "request") -> JobError:
    """Map an httpx failure onto the retryable / terminal split."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        msg = f"{what} failed: HTTP {code} {_body_preview(exc.response)}".strip()
        if code >= 500 or code in (408, 425, 429):
            return RetryableJobError(msg)
        return TerminalJobError(msg, response={"status_code": code, "body": _body_preview(exc.response, 2000)})
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return RetryableJobError(f"{what} failed: {type(exc).__name__}: {exc}")
    return RetryableJobError(f"{what} failed: {exc}")
