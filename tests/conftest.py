import asyncio
import base64
import hashlib
import hmac
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

# Must be in place before anything under taxflow is imported (Settings reads env at import)
_TMP = tempfile.mkdtemp(prefix="taxflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/test.db"
os.environ["EMBEDDED_WORKERS"] = "0"
os.environ["ADMIN_USER"] = "admin"
os.environ["ADMIN_PASS"] = "secret"
os.environ["ZOHO_WEBHOOK_SECRET"] = "zoho-test-secret"
os.environ["WHATSAPP_APP_SECRET"] = "wa-test-secret"
os.environ["WHATSAPP_VERIFY_TOKEN"] = "wa-verify-token"
os.environ["QUICKBOOKS_WEBHOOK_TOKEN"] = "qb-test-token"
os.environ["WOO_WEBHOOK_SECRET"] = "woo-test-secret"
os.environ["GENERIC_WEBHOOK_SECRETS"] = json.dumps({"paystack": "paystack-test-secret"})
os.environ["UNSIGNED_SOURCES"] = "legacy-erp"
os.environ["AUDIT_REJECTED_WEBHOOKS"] = "1"
os.environ["ALERT_WEBHOOK_URL"] = ""
os.environ["AUTHORITY_API_URL"] = "https://authority.test/api/v1"
os.environ["AUTHORITY_API_KEY"] = "authority-test-key"
os.environ["AUTHORITY_CSID"] = "csid-test"
os.environ["RETRY_JITTER_RATIO"] = "0"

from taxflow.db import Base, get_engine, get_sessionmaker  # noqa: E402
from taxflow.models import integrations, jobs  # noqa: E402,F401
from taxflow.models.audit_log import clear_audit_log  # noqa: E402
from taxflow.models.integrations import Integration  # noqa: E402
from taxflow.store.jobs_store import JobStore  # noqa: E402
from taxflow.store.retry import BackoffPolicy  # noqa: E402

SECRETS = {
    "zoho": "zoho-test-secret",
    "whatsapp": "wa-test-secret",
    "quickbooks": "qb-test-token",
    "woocommerce": "woo-test-secret",
    "paystack": "paystack-test-secret",
}


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


async def _reset_db():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture(autouse=True)
def fresh_db():
    asyncio.run(_reset_db())
    clear_audit_log()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return JobStore(get_sessionmaker(), BackoffPolicy(jitter_ratio=0), default_max_attempts=3, clock=clock)


@pytest.fixture
def add_integration():
    def _add(provider: str, account_id=None, *, business_id="biz-1", email=None, recipients=None, status="active"):
        async def go():
            async with get_sessionmaker()() as session:
                async with session.begin():
                    row = Integration(
                        business_id=business_id,
                        provider=provider,
                        account_id=account_id,
                        account_email=email,
                        status=status,
                        alert_recipients=recipients or [],
                    )
                    session.add(row)
            return row
        return asyncio.run(go())
    return _add


def _hmac(secret: str, msg: bytes) -> bytes:
    return hmac.new(secret.encode(), msg, hashlib.sha256).digest()


@pytest.fixture
def sign():
    """Header sets for each provider, computed independently of taxflow's own signer."""
    def _sign(source: str, body: bytes, *, ts: str = None, secret: str = None) -> dict:
        key = secret or SECRETS[source]
        if source == "zoho":
            ts = ts or str(int(datetime.now(timezone.utc).timestamp()))
            return {"X-Zoho-Signature": _hmac(key, ts.encode() + b"." + body).hex(), "X-Zoho-Timestamp": ts}
        if source == "whatsapp":
            return {"X-Hub-Signature-256": "sha256=" + _hmac(key, body).hex()}
        if source == "quickbooks":
            return {"Intuit-Signature": base64.b64encode(_hmac(key, body)).decode()}
        if source == "woocommerce":
            return {"X-WC-Webhook-Signature": base64.b64encode(_hmac(key, body)).decode()}
        if ts:
            return {"X-Webhook-Signature": _hmac(key, ts.encode() + b"." + body).hex(), "X-Webhook-Timestamp": ts}
        return {"X-Webhook-Signature": _hmac(key, body).hex()}
    return _sign
