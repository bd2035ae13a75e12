# taxflow/dispatch/alerts.py
# Out-of-band notifications: critical events and dead letters.
# Fire-and-forget; a failed alert is logged and never touches job state.
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

import httpx

from taxflow.models.integrations import Integration
from taxflow.models.jobs import Job

logger = logging.getLogger("uvicorn.error")


class AlertNotifier:
    def __init__(
        self,
        webhook_url: str = "",
        default_recipients: Optional[List[str]] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        history: int = 200,
    ):
        self.webhook_url = webhook_url
        self.default_recipients = list(default_recipients or [])
        self.timeout = timeout
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()
        # Recent alerts only, like the audit trail
        self.queued: Deque[Dict[str, Any]] = deque(maxlen=history)
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=history)

    def notify(self, kind: str, message: str, recipients: List[str], **context: Any) -> None:
        """Schedule delivery and return immediately. Must be called from a running loop."""
        alert = {"kind": kind, "message": message, "recipients": recipients or self.default_recipients, **context}
        self.queued.append(alert)
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(alert))
        except RuntimeError as e:
            logger.error("[ALERT] cannot schedule %s alert: %s", kind, e)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, alert: Dict[str, Any]) -> None:
        try:
            if not self.webhook_url:
                logger.warning("[ALERT] %s: %s (recipients=%s)", alert["kind"], alert["message"], alert["recipients"])
            else:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    r = await client.post(self.webhook_url, json=alert)
                    r.raise_for_status()
                logger.info("[ALERT] %s delivered to %s", alert["kind"], self.webhook_url)
            self.sent.append(alert)
        except Exception as e:
            logger.error("[ALERT] %s delivery failed: %s", alert["kind"], e)

    def escalate_critical(self, job: Job, integration: Optional[Integration] = None) -> None:
        recipients = list(integration.alert_recipients or []) if integration is not None else []
        self.notify(
            "critical_event",
            f"{job.source} event {job.kind} for business {job.business_id}",
            recipients,
            job_id=job.id,
            source=job.source,
            event=job.kind,
            business_id=job.business_id,
        )

    def dead_letter(self, job: Job) -> None:
        self.notify(
            "dead_letter",
            f"job {job.id} ({job.source}/{job.kind}) failed after {job.attempts} attempt(s): {job.last_error}",
            [],
            job_id=job.id,
            source=job.source,
            event=job.kind,
            business_id=job.business_id,
        )

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight alerts (shutdown, tests)."""
        if not self._tasks:
            return
        await asyncio.wait(list(self._tasks), timeout=timeout)
