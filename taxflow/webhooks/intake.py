# taxflow/webhooks/intake.py
import hmac, logging, uuid
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from taxflow.config import SOURCE_WHATSAPP
from taxflow.models.audit_log import record_rejected_delivery
from taxflow.runtime import Runtime
from taxflow.sources.registry import get_adapter, resolve_integration
from taxflow.webhooks.intake_models import IntakeReceipt, IntakeRejection


logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

# Never persisted with the job
_DROP_HEADERS = {"authorization", "cookie", "proxy-authorization"}


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _receipt(receipt_id: str | None = None, **kw) -> JSONResponse:
    return JSONResponse(IntakeReceipt(receipt_id=receipt_id, **kw).model_dump(exclude_none=True))


def _reject(status_code: int, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=IntakeRejection(reason=reason).model_dump())


@router.get("/whatsapp")
async def whatsapp_verify(request: Request) -> Response:
    """Meta subscription handshake: echo hub.challenge when the verify token matches."""
    rt = _runtime(request)
    q = request.query_params
    expected = rt.settings.WHATSAPP_VERIFY_TOKEN or ""
    token = q.get("hub.verify_token") or ""
    if q.get("hub.mode") == "subscribe" and expected and hmac.compare_digest(token, expected):
        logger.info("[INTAKE] whatsapp subscription verified")
        return PlainTextResponse(q.get("hub.challenge") or "")
    logger.warning("[INTAKE] whatsapp verification failed mode=%s", q.get("hub.mode"))
    return _reject(403, "verification_failed")


@router.post("/{source}")
async def receive_webhook(source: str, request: Request) -> Response:
    rt = _runtime(request)
    cfg = rt.sources.get(source)
    if cfg is None or not cfg.inbound:
        logger.info("[INTAKE] unknown source=%s", source)
        return _reject(404, "unknown_source")

    # 1) Read body ONCE; the exact bytes are what was signed
    body = await request.body()
    hdrs = {k: v for k, v in request.headers.items()}
    adapter = get_adapter(source)

    # 2) Provider pings (unsigned by design) are acknowledged and not stored
    if adapter.is_ping(body, hdrs):
        logger.info("[INTAKE] %s ping accepted (unsigned) body_len=%d", source, len(body))
        return _receipt(ping=True)

    # 3) Authenticate
    if not rt.verifier.verify(source, body, hdrs):
        ip = request.client.host if request.client else None
        logger.warning("[INTAKE] %s signature mismatch from %s; returning 401", source, ip)
        if rt.settings.AUDIT_REJECTED_WEBHOOKS:
            record_rejected_delivery(source, "invalid_signature", ip=ip, headers=hdrs, body_len=len(body))
        return _reject(401, "invalid_signature")

    # 4) Parse + route to the owning tenant; foreign or malformed deliveries are acked and dropped
    try:
        event = adapter.parse(body, hdrs)
    except ValueError as e:
        logger.info("[INTAKE] %s undecodable payload dropped: %s", source, e)
        return _receipt(str(uuid.uuid4()))

    async with rt.sessionmaker() as session:
        integration = await resolve_integration(session, source, event.owner)
    if integration is None:
        logger.info("[INTAKE] %s delivery %s unroutable (owner=%s); dropped", source, event.delivery_key, event.owner)
        return _receipt(str(uuid.uuid4()))

    # 5) Classify (in-memory) and persist
    cls = rt.classifier.classify(source, event.kind, event.payload, related_kinds=event.related_kinds)
    job = await rt.store.enqueue(
        source,
        event.kind,
        event.payload,
        raw_body=body,
        headers={k: v for k, v in hdrs.items() if k.lower() not in _DROP_HEADERS},
        priority=cls.rank,
        correlation_id=integration.business_id,
        business_id=integration.business_id,
        integration_id=integration.id,
        delivery_key=event.delivery_key,
    )

    # 6) Critical events also go out-of-band; never affects the stored job
    if cls.is_critical:
        try:
            rt.notifier.escalate_critical(job, integration)
        except Exception as e:
            logger.error("[INTAKE] escalation for job=%s failed: %s", job.id, e)

    logger.info("[INTAKE] %s/%s accepted job=%s priority=%s", source, event.kind, job.id, cls.priority)
    # 7) ACK quickly
    return _receipt(job.id)
