import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from taxflow.config import settings
from taxflow.db import get_sessionmaker
from taxflow.dispatch.alerts import AlertNotifier
from taxflow.exceptions import RetryableJobError
from taxflow.handlers.base import HandlerRegistry
from taxflow.main_app import create_app
from taxflow.models.audit_log import get_audit_log
from taxflow.models.integrations import Integration
from taxflow.models.jobs import COMPLETED, FAILED, IGNORED, PENDING, Job
from taxflow.runtime import build_runtime
from taxflow.workers.jobs_worker import Worker


class RecordingSink:
    def __init__(self):
        self.batches = []

    async def __call__(self, batch):
        self.batches.append(batch)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def runtime(store, sink):
    return build_runtime(settings, sessionmaker=get_sessionmaker(), store=store, sink=sink, notifier=AlertNotifier())


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime, start_workers=False))


def _job_count():
    async def go():
        async with get_sessionmaker()() as session:
            return (await session.execute(select(func.count()).select_from(Job))).scalar()
    return asyncio.run(go())


def _zoho_body(event="invoice.created", event_id="evt-1001", org="org-77", **extra):
    return json.dumps({
        "event": event,
        "event_id": event_id,
        "organization_id": org,
        "data": {"invoice_id": "INV-1", "total": 1075.5},
        **extra,
    }).encode()


def _post(client, source, body, headers):
    return client.post(f"/webhooks/{source}", content=body, headers={"Content-Type": "application/json", **headers})


def test_scenario_valid_webhook_completes(client, runtime, sink, sign, add_integration):
    add_integration("zoho", "org-77", business_id="biz-42")
    body = _zoho_body()

    r = _post(client, "zoho", body, sign("zoho", body))
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert set(data) == {"ok", "receipt_id"}

    job = asyncio.run(runtime.store.get(data["receipt_id"]))
    assert job.status == PENDING
    assert job.attempts == 0
    assert job.business_id == "biz-42"
    assert job.correlation_id == "biz-42"
    assert job.kind == "invoice.created"
    assert job.priority == 1
    assert job.delivery_key == "evt-1001"
    assert job.raw_body == body

    worker = Worker(runtime.store, runtime.handlers, runtime.ctx, runtime.notifier)
    assert asyncio.run(worker.run_once()) == 1
    done = asyncio.run(runtime.store.get(job.id))
    assert done.status == COMPLETED
    assert done.completed_at is not None
    assert len(sink.batches) == 1
    assert sink.batches[0].business_id == "biz-42"
    assert sink.batches[0].entities[0]["id"] == "INV-1"


def test_scenario_tampered_signature_rejected(client, sign, add_integration):
    add_integration("zoho", "org-77")
    body = _zoho_body()
    headers = sign("zoho", body)
    tampered = body.replace(b"1075.5", b"9075.5")

    r = _post(client, "zoho", tampered, headers)
    assert r.status_code == 401
    assert r.json() == {"ok": False, "reason": "invalid_signature"}
    assert _job_count() == 0

    audit = get_audit_log("Webhook Rejected")
    assert len(audit) == 1
    assert audit[0]["source"] == "zoho"
    assert audit[0]["headers"]["x-zoho-signature"] == "<redacted>"


def test_missing_signature_rejected(client, add_integration):
    add_integration("woocommerce", "https://shop.example.com")
    r = _post(client, "woocommerce", b'{"id": 1}', {"X-WC-Webhook-Topic": "order.created"})
    assert r.status_code == 401
    assert _job_count() == 0


def test_scenario_retries_then_dead_letters(client, runtime, store, clock, sign, add_integration):
    add_integration("zoho", "org-77")
    body = _zoho_body()
    r = _post(client, "zoho", body, sign("zoho", body))
    job_id = r.json()["receipt_id"]

    async def flaky(job, ctx):
        raise RetryableJobError("provider 503")

    worker = Worker(store, HandlerRegistry(default=flaky), runtime.ctx, runtime.notifier)
    for expected_attempts in (1, 2, 3):
        assert asyncio.run(worker.run_once()) == 1
        job = asyncio.run(store.get(job_id))
        assert job.attempts == expected_attempts
        if expected_attempts < 3:
            assert job.status == PENDING
            assert job.next_eligible_at > clock.now
        clock.advance(7 * 3600)

    assert job.status == FAILED
    assert job.next_eligible_at is None
    assert any(a["kind"] == "dead_letter" and a["job_id"] == job_id for a in runtime.notifier.queued)


def test_unroutable_delivery_acknowledged_and_dropped(client, sign, add_integration):
    add_integration("zoho", "org-77")
    body = _zoho_body(org="someone-else")
    r = _post(client, "zoho", body, sign("zoho", body))
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["receipt_id"]
    assert _job_count() == 0


def test_inactive_integration_does_not_route(client, sign, add_integration):
    add_integration("zoho", "org-77", status="revoked")
    body = _zoho_body()
    r = _post(client, "zoho", body, sign("zoho", body))
    assert r.status_code == 200
    assert _job_count() == 0


def test_zoho_routes_by_account_email(client, sign, add_integration):
    add_integration("zoho", None, email="books@acme.ng", business_id="biz-email")
    body = json.dumps({"event": "payment.received", "configuration": {"email": "books@acme.ng"}}).encode()
    r = _post(client, "zoho", body, sign("zoho", body))
    assert r.status_code == 200
    assert _job_count() == 1


def test_undecodable_payload_dropped(client, sign, add_integration):
    add_integration("zoho", "org-77")
    body = b"not json at all"
    r = _post(client, "zoho", body, sign("zoho", body))
    assert r.status_code == 200
    assert _job_count() == 0


def test_unknown_source_404(client):
    r = _post(client, "stripe", b"{}", {})
    assert r.status_code == 404
    assert r.json()["reason"] == "unknown_source"


def test_outbound_only_source_not_exposed(client):
    r = _post(client, "regulatory-authority", b"{}", {})
    assert r.status_code == 404


def test_woocommerce_ping_acknowledged_without_job(client):
    r = client.post(
        "/webhooks/woocommerce",
        content=b"webhook_id=12",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert r.status_code == 200
    assert r.json() == {"ok": True, "ping": True}
    assert _job_count() == 0


def test_woocommerce_order(client, runtime, sign, add_integration):
    add_integration("woocommerce", "https://shop.example.com", business_id="biz-woo")
    body = json.dumps({"id": 501, "status": "processing", "total": "99.99"}).encode()
    headers = {
        **sign("woocommerce", body),
        "X-WC-Webhook-Topic": "order.created",
        "X-WC-Webhook-Source": "https://shop.example.com/",
        "X-WC-Webhook-Delivery-ID": "d-501",
    }
    r = _post(client, "woocommerce", body, headers)
    assert r.status_code == 200
    job = asyncio.run(runtime.store.get(r.json()["receipt_id"]))
    assert (job.kind, job.priority, job.delivery_key, job.business_id) == ("order.created", 1, "d-501", "biz-woo")


def test_quickbooks_disconnect_is_critical_and_escalated(client, runtime, sign, add_integration):
    integ = add_integration("quickbooks", "realm-9", business_id="biz-qb", recipients=["ops@biz-qb.ng"])
    body = json.dumps({"eventNotifications": [{
        "realmId": "realm-9",
        "dataChangeEvent": {"entities": [
            {"name": "Customer", "id": "7", "operation": "Update"},
            {"name": "Disconnect", "id": "realm-9", "operation": "Delete"},
        ]},
    }]}).encode()
    r = _post(client, "quickbooks", body, {**sign("quickbooks", body), "Intuit-RealmId": "realm-9"})
    assert r.status_code == 200
    job = asyncio.run(runtime.store.get(r.json()["receipt_id"]))
    assert job.kind == "Customer.Update"
    assert job.priority == 2

    alerts = [a for a in runtime.notifier.queued if a["kind"] == "critical_event"]
    assert len(alerts) == 1
    assert alerts[0]["recipients"] == ["ops@biz-qb.ng"]
    assert alerts[0]["job_id"] == job.id

    # the handler then marks the connection revoked
    worker = Worker(runtime.store, runtime.handlers, runtime.ctx, runtime.notifier)
    asyncio.run(worker.run_once())
    assert asyncio.run(runtime.store.get(job.id)).status == COMPLETED

    async def status():
        async with get_sessionmaker()() as session:
            return (await session.get(Integration, integ.id)).status
    assert asyncio.run(status()) == "revoked"


def test_escalation_failure_does_not_affect_job(client, runtime, sign, add_integration):
    add_integration("zoho", "org-77")

    def broken(job, integration=None):
        raise RuntimeError("smtp down")
    runtime.notifier.escalate_critical = broken

    body = _zoho_body(event="token.expired", event_id="evt-crit")
    r = _post(client, "zoho", body, sign("zoho", body))
    assert r.status_code == 200
    job = asyncio.run(runtime.store.get(r.json()["receipt_id"]))
    assert job.status == PENDING
    assert job.priority == 2


def test_redelivery_does_not_duplicate_side_effects(client, runtime, sink, sign, add_integration):
    add_integration("zoho", "org-77")
    body = _zoho_body(event_id="evt-dup")
    first = _post(client, "zoho", body, sign("zoho", body)).json()["receipt_id"]

    worker = Worker(runtime.store, runtime.handlers, runtime.ctx, runtime.notifier)
    asyncio.run(worker.run_once())
    assert asyncio.run(runtime.store.get(first)).status == COMPLETED

    # provider retries the same event after a timeout on its side
    second = _post(client, "zoho", body, sign("zoho", body)).json()["receipt_id"]
    assert second != first
    asyncio.run(worker.run_once())
    again = asyncio.run(runtime.store.get(second))
    assert again.status == IGNORED
    assert "duplicate" in again.last_error
    assert len(sink.batches) == 1


def test_whatsapp_message(client, runtime, sign, add_integration):
    add_integration("whatsapp", "pn-555", business_id="biz-wa")
    body = json.dumps({"object": "whatsapp_business_account", "entry": [{"changes": [{
        "field": "messages",
        "value": {"metadata": {"phone_number_id": "pn-555"}, "messages": [{"id": "wamid.A1", "text": {"body": "hi"}}]},
    }]}]}).encode()
    r = _post(client, "whatsapp", body, sign("whatsapp", body))
    assert r.status_code == 200
    job = asyncio.run(runtime.store.get(r.json()["receipt_id"]))
    assert (job.kind, job.delivery_key, job.priority) == ("messages", "wamid.A1", 1)


def test_whatsapp_subscription_handshake(client):
    ok = client.get("/webhooks/whatsapp", params={
        "hub.mode": "subscribe", "hub.verify_token": "wa-verify-token", "hub.challenge": "1158201444",
    })
    assert ok.status_code == 200
    assert ok.text == "1158201444"

    bad = client.get("/webhooks/whatsapp", params={
        "hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "x",
    })
    assert bad.status_code == 403


def test_generic_partner_with_timestamp(client, runtime, sign, add_integration):
    import time
    add_integration("paystack", "acct-1", business_id="biz-ps")
    body = json.dumps({"event": "charge.success", "id": 88, "account_id": "acct-1"}).encode()
    r = _post(client, "paystack", body, sign("paystack", body, ts=str(int(time.time()))))
    assert r.status_code == 200
    job = asyncio.run(runtime.store.get(r.json()["receipt_id"]))
    assert (job.kind, job.delivery_key) == ("charge.success", "88")


def test_root_endpoint(client):
    assert client.get("/").json()["status"] == "running"
