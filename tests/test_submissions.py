import asyncio
import xml.etree.ElementTree as ET

import httpx
import pytest

from taxflow.config import settings
from taxflow.db import get_sessionmaker
from taxflow.dispatch.alerts import AlertNotifier
from taxflow.exceptions import RetryableJobError
from taxflow.models.jobs import COMPLETED, FAILED, PENDING
from taxflow.regulatory.authority_client import generate_irn, parse_reply, render_document
from taxflow.regulatory.submissions import check_submission_status, submit_document
from taxflow.runtime import build_runtime
from taxflow.workers.jobs_worker import Worker

NS = "{urn:ng:firs:einvoice:1.0}"

DOCUMENT = {
    "invoice_number": "INV-2026-0042",
    "issue_date": "2026-03-01T10:00:00Z",
    "currency": "NGN",
    "seller": {"tin": "12345678-0001", "name": "Acme Nigeria Ltd", "city": "Lagos"},
    "buyer": {"tin": "87654321-0001", "name": "Buyer Co"},
    "line_items": [
        {"item_code": "SKU-1", "description": "Consulting", "quantity": 2, "unit_price": 500, "vat_amount": 75, "total": 1075},
    ],
    "subtotal": 1000,
    "vat_amount": 75,
    "total_amount": 1075,
}

APPROVED = """<?xml version="1.0" encoding="UTF-8"?>
<FIRSResponse><ResponseCode>00</ResponseCode><IRN>FIRS-APPROVED-1</IRN><QRCode>qr-data</QRCode><Signature>sig</Signature></FIRSResponse>"""

REJECTED = """<FIRSResponse><ResponseCode>01</ResponseCode><ErrorCode>E102</ErrorCode>
<ErrorMessage>Buyer TIN not registered</ErrorMessage><ErrorField>BuyerDetails.TIN</ErrorField></FIRSResponse>"""


class Authority:
    """Scripted authority endpoint; each call pops the next response."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


def _xml(status, body):
    return httpx.Response(status, text=body, headers={"content-type": "application/xml"})


def _runtime(store, authority):
    return build_runtime(
        settings,
        sessionmaker=get_sessionmaker(),
        store=store,
        transport=httpx.MockTransport(authority),
        notifier=AlertNotifier(),
    )


def _submit(rt, **kw):
    args = dict(business_id="biz-1", invoice_id="inv-42", submission_type="invoice", document=DOCUMENT)
    args.update(kw)
    return asyncio.run(submit_document(rt.store, rt.classifier, **args))


def _work(rt):
    async def go():
        n = await Worker(rt.store, rt.handlers, rt.ctx, rt.notifier).run_once()
        await rt.notifier.drain()
        return n
    return asyncio.run(go())


def test_submit_document_queues_pending_job(store):
    rt = _runtime(store, Authority())
    job = _submit(rt)
    assert job.source == "regulatory-authority"
    assert job.kind == "invoice"
    assert job.status == PENDING
    assert job.correlation_id == "biz-1:inv-42"
    assert job.priority == 1
    assert job.payload["document"]["invoice_number"] == "INV-2026-0042"


@pytest.mark.parametrize("drop", ["invoice_number", "line_items", "total_amount"])
def test_submit_document_validates_required_fields(store, drop):
    rt = _runtime(store, Authority())
    doc = {k: v for k, v in DOCUMENT.items() if k != drop}
    with pytest.raises(ValueError):
        _submit(rt, document=doc)


def test_submit_document_rejects_unknown_type(store):
    rt = _runtime(store, Authority())
    with pytest.raises(ValueError):
        _submit(rt, submission_type="receipt")


def test_approved_submission_records_reference(store):
    authority = Authority(_xml(200, APPROVED))
    rt = _runtime(store, authority)
    job = _submit(rt)
    assert _work(rt) == 1

    done = asyncio.run(store.get(job.id))
    assert done.status == COMPLETED
    assert done.reference == "FIRS-APPROVED-1"
    assert done.result["qr_code"] == "qr-data"
    assert done.result["authority_response"]["code"] == "00"

    req = authority.requests[0]
    assert str(req.url) == "https://authority.test/api/v1/einvoice/submit"
    assert req.headers["X-API-Key"] == "authority-test-key"
    assert req.headers["X-CSID"] == "csid-test"
    assert req.headers["Content-Type"] == "application/xml"
    assert req.headers["X-Request-ID"]
    root = ET.fromstring(req.content)
    assert root.find(f"{NS}InvoiceHeader/{NS}InvoiceNumber").text == "INV-2026-0042"
    assert root.find(f"{NS}SellerDetails/{NS}TIN").text == "12345678-0001"


def test_business_rejection_is_terminal(store):
    rt = _runtime(store, Authority(_xml(200, REJECTED)))
    job = _submit(rt)
    _work(rt)

    out = asyncio.run(store.get(job.id))
    assert out.status == FAILED
    assert out.attempts == 1
    assert out.next_eligible_at is None
    assert out.validation_errors == [
        {"code": "E102", "message": "Buyer TIN not registered", "field": "BuyerDetails.TIN"},
    ]
    assert "E102" in out.last_error
    assert out.result["authority_response"]["code"] == "01"
    assert [a["kind"] for a in rt.notifier.queued] == ["dead_letter"]


def test_xml_rejection_on_4xx_is_terminal(store):
    rt = _runtime(store, Authority(_xml(422, REJECTED)))
    job = _submit(rt)
    _work(rt)
    out = asyncio.run(store.get(job.id))
    assert out.status == FAILED
    assert out.validation_errors[0]["code"] == "E102"


def test_plain_4xx_is_terminal(store):
    rt = _runtime(store, Authority(httpx.Response(400, text="bad request")))
    job = _submit(rt)
    _work(rt)
    out = asyncio.run(store.get(job.id))
    assert out.status == FAILED
    assert "HTTP 400" in out.last_error


@pytest.mark.parametrize("response", [
    httpx.Response(503, text="maintenance"),
    httpx.Response(429, text="slow down"),
    httpx.ConnectError("connection refused"),
    httpx.ReadTimeout("read timed out"),
])
def test_transient_failures_are_retried(store, clock, response):
    rt = _runtime(store, Authority(response))
    job = _submit(rt)
    _work(rt)
    out = asyncio.run(store.get(job.id))
    assert out.status == PENDING
    assert out.attempts == 1
    assert out.next_eligible_at > clock.now


def test_retry_presents_same_irn(store, clock):
    authority = Authority(httpx.Response(502, text="bad gateway"), _xml(200, APPROVED))
    rt = _runtime(store, authority)
    job = _submit(rt)
    _work(rt)
    clock.advance(3600)
    _work(rt)

    assert asyncio.run(store.get(job.id)).status == COMPLETED
    irns = [ET.fromstring(r.content).find(f"{NS}InvoiceHeader/{NS}IRN").text for r in authority.requests]
    assert len(irns) == 2
    assert irns[0] == irns[1]
    # request ids differ per attempt
    assert authority.requests[0].headers["X-Request-ID"] != authority.requests[1].headers["X-Request-ID"]


def test_cancellation_goes_to_cancel_endpoint(store):
    authority = Authority(_xml(200, APPROVED))
    rt = _runtime(store, authority)
    _submit(rt, submission_type="cancellation", document={"irn": "FIRS-OLD-1", "reason": "duplicate"})
    _work(rt)
    req = authority.requests[0]
    assert req.url.path.endswith("/einvoice/cancel")
    root = ET.fromstring(req.content)
    assert root.find(f"{NS}IRN").text == "FIRS-OLD-1"


def test_parse_reply_collects_error_list():
    reply = parse_reply(
        "<FIRSResponse><ResponseCode>02</ResponseCode><Errors>"
        "<Error><Code>E1</Code><Message>Missing due date</Message><Field>InvoiceDueDate</Field></Error>"
        "<Error><Code>E2</Code><Message>VAT mismatch</Message></Error>"
        "</Errors></FIRSResponse>"
    )
    assert not reply.approved
    assert [e["code"] for e in reply.errors] == ["E1", "E2"]
    assert reply.errors[1]["field"] is None


def test_parse_reply_rejects_non_xml():
    with pytest.raises(ValueError):
        parse_reply("<html")


def test_render_document_skips_empty_fields():
    xml = render_document("credit_note", {**DOCUMENT, "original_irn": "FIRS-ORIG"}, "FIRS-NEW")
    root = ET.fromstring(xml)
    assert root.find(f"{NS}InvoiceHeader/{NS}InvoiceType").text == "CREDIT_NOTE"
    assert root.find(f"{NS}InvoiceHeader/{NS}OriginalIRN").text == "FIRS-ORIG"
    assert root.find(f"{NS}InvoiceHeader/{NS}InvoiceDueDate") is None
    assert len(root.findall(f"{NS}LineItems/{NS}LineItem")) == 1


def test_generate_irn_is_stable(clock):
    a = generate_irn("123", "job-1", clock.now)
    assert a == generate_irn("123", "job-1", clock.now)
    assert a != generate_irn("123", "job-2", clock.now)
    assert a.startswith("FIRS12320260302")


def _status_xml(status, extra=""):
    return _xml(200, f"<FIRSResponse><ResponseCode>00</ResponseCode><Status>{status}</Status>{extra}</FIRSResponse>")


def _filed(store, *later):
    authority = Authority(_xml(200, APPROVED), *later)
    rt = _runtime(store, authority)
    job = _submit(rt)
    _work(rt)
    return rt, authority, job


def _check(rt, job_id):
    async def go():
        out = await check_submission_status(rt.store, rt.authority, job_id, rt.notifier)
        await rt.notifier.drain()
        return out
    return asyncio.run(go())


def test_status_check_approved(store):
    rt, authority, job = _filed(store, _status_xml("APPROVED"))
    out = _check(rt, job.id)
    assert out.status == COMPLETED
    assert out.result["authority_status"] == "approved"
    assert out.result["irn"] == "FIRS-APPROVED-1"

    req = authority.requests[-1]
    assert req.method == "GET"
    assert str(req.url) == "https://authority.test/api/v1/einvoice/status/FIRS-APPROVED-1"
    assert req.headers["X-API-Key"] == "authority-test-key"
    assert req.headers["X-CSID"] == "csid-test"


def test_status_check_rejection_dead_letters(store):
    errors = "<Errors><Error><Code>E210</Code><Message>Duplicate invoice number</Message></Error></Errors>"
    rt, authority, job = _filed(store, _status_xml("REJECTED", errors))
    out = _check(rt, job.id)
    assert out.status == FAILED
    assert out.validation_errors == [{"code": "E210", "message": "Duplicate invoice number", "field": None}]
    assert "E210" in out.last_error
    assert out.result["authority_status"] == "rejected"
    assert [a["kind"] for a in rt.notifier.queued] == ["dead_letter"]


def test_status_check_pending_leaves_job_completed(store):
    rt, authority, job = _filed(store, _status_xml("PROCESSING"))
    out = _check(rt, job.id)
    assert out.status == COMPLETED
    assert out.result["authority_status"] == "pending"
    assert list(rt.notifier.queued) == []


def test_status_check_transport_failure_is_retryable(store):
    rt, authority, job = _filed(store, httpx.Response(503, text="maintenance"))
    with pytest.raises(RetryableJobError):
        _check(rt, job.id)
    assert asyncio.run(store.get(job.id)).status == COMPLETED


def test_status_check_needs_a_filed_submission(store):
    rt = _runtime(store, Authority())
    pending = _submit(rt)
    with pytest.raises(ValueError):
        _check(rt, pending.id)
    other = asyncio.run(store.enqueue("zoho", "invoice.created", {}))
    with pytest.raises(ValueError):
        _check(rt, other.id)
