# taxflow/regulatory/authority_client.py
# Tax authority e-invoice API: XML document out, XML reply in.
from __future__ import annotations

import hashlib
import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from taxflow.config import Settings
from taxflow.exceptions import RetryableJobError, classify_http_error

logger = logging.getLogger("uvicorn.error")

NAMESPACE = "urn:ng:firs:einvoice:1.0"
APPROVED = "00"
_DECISIONS = {"APPROVED": "approved", "REJECTED": "rejected"}

_DOC_ROOTS = {
    "invoice": ("FIRSInvoice", "INVOICE"),
    "credit_note": ("FIRSInvoice", "CREDIT_NOTE"),
    "debit_note": ("FIRSInvoice", "DEBIT_NOTE"),
    "cancellation": ("FIRSCancellation", None),
}


@dataclass(frozen=True)
class AuthorityConfig:
    base_url: str
    api_key: str = ""
    csid: str = ""
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, cfg: Settings) -> "AuthorityConfig":
        return cls(
            base_url=cfg.AUTHORITY_API_URL,
            api_key=cfg.AUTHORITY_API_KEY,
            csid=cfg.AUTHORITY_CSID,
            timeout=cfg.AUTHORITY_TIMEOUT_SECONDS,
        )


@dataclass
class AuthorityReply:
    code: Optional[str]
    irn: Optional[str] = None
    qr_code: Optional[str] = None
    signature: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    @property
    def approved(self) -> bool:
        return self.code == APPROVED

    @property
    def decision(self) -> str:
        """Status-check verdict: approved, rejected or pending."""
        return _DECISIONS.get((self.fields.get("Status") or "").upper(), "pending")


def generate_irn(tin: str, job_id: str, created_at: datetime) -> str:
    """
    Invoice reference number. Derived from the job, not from the clock, so every retry
    of the same submission presents the same IRN.
    """
    digest = hashlib.sha256(job_id.encode("utf-8")).hexdigest()[:10].upper()
    return f"FIRS{tin}{created_at.astimezone(timezone.utc):%Y%m%d}{digest}"


# ---------------------------
# XML rendering / parsing
# ---------------------------

def _text(parent: ET.Element, tag: str, value: Any) -> None:
    if value is None or value == "":
        return
    el = ET.SubElement(parent, tag)
    el.text = str(value)


def _party(parent: ET.Element, tag: str, party: Dict[str, Any], *, default_country: Optional[str] = None) -> None:
    el = ET.SubElement(parent, tag)
    _text(el, "TIN", party.get("tin"))
    _text(el, "Name", party.get("name") or party.get("legal_name"))
    _text(el, "Address", party.get("address"))
    _text(el, "City", party.get("city"))
    _text(el, "State", party.get("state"))
    _text(el, "Country", party.get("country") or default_country)
    _text(el, "Email", party.get("email"))
    _text(el, "Phone", party.get("phone"))
    _text(el, "VATNumber", party.get("vat_number"))


def render_document(submission_type: str, document: Dict[str, Any], irn: str) -> bytes:
    root_tag, invoice_type = _DOC_ROOTS[submission_type]
    root = ET.Element(root_tag, {"xmlns": NAMESPACE})

    if submission_type == "cancellation":
        _text(root, "IRN", document.get("irn"))
        _text(root, "Reason", document.get("reason") or "CANCELLED")
        _text(root, "CancellationDate", document.get("cancellation_date"))
        _text(root, "RequestIRN", irn)
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    header = ET.SubElement(root, "InvoiceHeader")
    _text(header, "IRN", irn)
    _text(header, "InvoiceNumber", document.get("invoice_number"))
    _text(header, "InvoiceType", invoice_type)
    _text(header, "InvoiceCurrency", document.get("currency") or "NGN")
    _text(header, "InvoiceIssueDate", document.get("issue_date"))
    _text(header, "InvoiceDueDate", document.get("due_date"))
    _text(header, "OriginalIRN", document.get("original_irn"))

    _party(root, "SellerDetails", document.get("seller") or {})
    _party(root, "BuyerDetails", document.get("buyer") or {}, default_country="NG")

    lines = ET.SubElement(root, "LineItems")
    for i, item in enumerate(document.get("line_items") or [], start=1):
        li = ET.SubElement(lines, "LineItem")
        _text(li, "LineNumber", i)
        _text(li, "ItemCode", item.get("item_code"))
        _text(li, "ItemDescription", item.get("description"))
        _text(li, "Quantity", item.get("quantity"))
        _text(li, "UnitOfMeasure", item.get("unit_of_measure") or "unit")
        _text(li, "UnitPrice", item.get("unit_price"))
        _text(li, "DiscountAmount", item.get("discount_amount") or 0)
        _text(li, "VATRate", item.get("vat_rate", 7.5))
        _text(li, "VATAmount", item.get("vat_amount"))
        _text(li, "LineTotal", item.get("total"))

    totals = ET.SubElement(root, "Totals")
    _text(totals, "TotalExclusiveVAT", document.get("subtotal"))
    _text(totals, "TotalVATAmount", document.get("vat_amount"))
    _text(totals, "TotalDiscountAmount", document.get("discount_amount"))
    _text(totals, "TotalPayableAmount", document.get("total_amount"))

    pay = ET.SubElement(root, "PaymentDetails")
    _text(pay, "PaymentMethod", document.get("payment_method") or "TRANSFER")
    _text(pay, "PaymentTerms", document.get("terms"))
    _text(pay, "PaymentReference", document.get("payment_reference"))

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_reply(body: str) -> AuthorityReply:
    """
    <FIRSResponse><ResponseCode>00</ResponseCode><IRN/><QRCode/>...</FIRSResponse>
    Rejections carry ErrorCode/ErrorMessage/ErrorField, or a list under <Errors><Error>.
    Raises ValueError on a body that is not XML.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ValueError(f"unparseable authority reply: {e}") from e

    fields: Dict[str, Any] = {}
    errors: List[Dict[str, Any]] = []
    for child in root:
        name = _local(child.tag)
        if name == "Errors":
            for err in child:
                e = {_local(c.tag): (c.text or "").strip() for c in err}
                errors.append({"code": e.get("Code") or e.get("ErrorCode"),
                               "message": e.get("Message") or e.get("ErrorMessage"),
                               "field": e.get("Field") or e.get("ErrorField")})
        else:
            fields[name] = (child.text or "").strip()

    if fields.get("ErrorCode") or fields.get("ErrorMessage"):
        errors.insert(0, {"code": fields.get("ErrorCode"), "message": fields.get("ErrorMessage"),
                          "field": fields.get("ErrorField")})

    return AuthorityReply(
        code=fields.get("ResponseCode") or None,
        irn=fields.get("IRN") or None,
        qr_code=fields.get("QRCode") or None,
        signature=fields.get("Signature") or None,
        errors=errors,
        fields=fields,
        raw=body,
    )


class AuthorityClient:
    """Stateless: one AsyncClient per call."""

    def __init__(self, config: AuthorityConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    def _headers(self, request_id: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/xml",
            "Accept": "application/xml",
            "X-API-Key": self.config.api_key,
            "X-CSID": self.config.csid,
            "X-Request-ID": request_id,
            "X-Timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def submit(self, submission_type: str, xml: bytes, *, request_id: Optional[str] = None) -> AuthorityReply:
        path = "/einvoice/cancel" if submission_type == "cancellation" else "/einvoice/submit"
        url = f"{self.config.base_url}{path}"
        rid = request_id or str(uuid.uuid4())
        logger.info("[AUTHORITY] POST %s type=%s request_id=%s bytes=%d", url, submission_type, rid, len(xml))
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                r = await client.post(url, content=xml, headers=self._headers(rid))
                if r.status_code >= 400 and not _is_xml_rejection(r):
                    r.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e, what="authority submission") from e

        try:
            return parse_reply(r.text)
        except ValueError as e:
            # 2xx with garbage: treat as a transient gateway problem
            raise RetryableJobError(str(e)) from e

    async def check_status(self, irn: str) -> AuthorityReply:
        """GET /einvoice/status/{irn}; the verdict is in `reply.decision`."""
        url = f"{self.config.base_url}/einvoice/status/{irn}"
        headers = {"Accept": "application/xml", "X-API-Key": self.config.api_key, "X-CSID": self.config.csid}
        logger.info("[AUTHORITY] GET %s", url)
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                r = await client.get(url, headers=headers)
                r.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e, what="authority status check") from e

        try:
            return parse_reply(r.text)
        except ValueError as e:
            raise RetryableJobError(str(e)) from e


def _is_xml_rejection(r: httpx.Response) -> bool:
    """4xx with an XML FIRSResponse body is a business rejection, parsed like a 200."""
    if not (400 <= r.status_code < 500) or r.status_code == 429:
        return False
    ctype = (r.headers.get("content-type") or "").lower()
    return "xml" in ctype and "FIRSResponse" in r.text
