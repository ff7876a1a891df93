from __future__ import annotations

import hmac
import logging
import time
import uuid
from datetime import date, time as dt_time
from typing import Any, Literal
from uuid import UUID

import redis
from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from slotbook.core.config import settings
from slotbook.core.errors import (
    BookingEngineError,
    Forbidden,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    SlotConflict,
    UpstreamFailure,
    ValidationFailed,
)
from slotbook.core.roles import (
    SCOPED_ROLES,
    Action,
    Actor,
    AuthorizationGate,
    CapabilityGate,
    Role,
    normalize_role,
)
from slotbook.db.session import get_db
from slotbook.logging_utils import (
    _actor_ctx_var,
    _request_id_ctx_var,
    configure_logging,
    get_current_actor,
)
from slotbook.models import BookingStatus, PaymentStatus, SlotStatus, SlotType
from slotbook.services import (
    AuditRecorder,
    BookingRequest,
    DatabaseAuditRecorder,
    HttpObjectStorage,
    HttpReminderDispatcher,
    ObjectStorage,
    ReminderDispatcher,
    WindowCounter,
    add_client_photo,
    cancel_booking,
    complete_booking,
    confirm_booking,
    create_booking,
    get_booking,
    issue_booking_invoice,
    list_bookings,
    parse_category,
    record_payment,
    remove_client_photo,
    reschedule_booking,
    run_notification_sweep,
    run_photo_retention_sweep,
    serialize_booking,
    upload_payment_proof,
)
from slotbook.services.booking_lifecycle import authorize
from slotbook.services.clock import local_now
from slotbook.services.slot_registry import (
    create_slots,
    delete_slot,
    get_slot,
    list_slots,
    serialize_slot,
    sweep_unbooked_past,
    sweep_unbooked_past_if_due,
    update_slot,
)

configure_logging()

app = FastAPI(title=settings.app_name, version="0.1.0")

logger = logging.getLogger(__name__)

REQUEST_COUNTER = Counter(
    "slotbook_api_requests_total",
    "Total number of processed HTTP requests.",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "slotbook_api_request_duration_seconds",
    "HTTP request latency in seconds.",
    ["method", "path"],
)

ERROR_STATUS: dict[type[BookingEngineError], int] = {
    SlotConflict: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    PreconditionFailed: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ValidationFailed: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFound: status.HTTP_404_NOT_FOUND,
    Forbidden: status.HTTP_403_FORBIDDEN,
    UpstreamFailure: status.HTTP_502_BAD_GATEWAY,
}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Populate request and actor context for logging."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        actor_hint = request.headers.get("X-Actor-Id")

        request.state.request_id = request_id
        request_id_token = _request_id_ctx_var.set(request_id)
        actor_token = _actor_ctx_var.set(actor_hint)

        try:
            response = await call_next(request)
        finally:
            _request_id_ctx_var.reset(request_id_token)
            _actor_ctx_var.reset(actor_token)

        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply a shared rate limit per client IP and actor."""

    def __init__(self, app: FastAPI, limiter: WindowCounter) -> None:  # type: ignore[override]
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.method == "OPTIONS":
            return await call_next(request)

        client_host = request.client.host if request.client else "unknown"
        actor = _actor_ctx_var.get() or request.headers.get("X-Actor-Id") or "anonymous"
        rate_key = f"ratelimit:{client_host}:{actor}"

        try:
            allowed = await run_in_threadpool(
                self.limiter.hit,
                rate_key,
                settings.rate_limit_requests,
                settings.rate_limit_window_seconds,
            )
        except redis.RedisError:
            logger.warning("rate limiter unavailable", extra={"client_ip": client_host})
            allowed = True

        if not allowed:
            logger.warning(
                "rate limit exceeded",
                extra={"client_ip": client_host, "actor_id": actor},
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
            )

        return await call_next(request)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs and feed metrics."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start_time = time.perf_counter()
        path = request.scope.get("root_path", "") + request.scope.get("path", request.url.path)
        method = request.method

        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - start_time
            REQUEST_COUNTER.labels(method=method, path=path, status="500").inc()
            REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)
            logger.exception(
                "request failed",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
            raise

        elapsed = time.perf_counter() - start_time
        status_code = response.status_code

        REQUEST_COUNTER.labels(method=method, path=path, status=str(status_code)).inc()
        REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)

        logger.info(
            "request completed",
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000, 2),
                "actor_id": request.headers.get("X-Actor-Id") or get_current_actor(),
            },
        )

        return response


app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
if settings.rate_limit_enabled:
    app.add_middleware(RateLimitMiddleware, limiter=WindowCounter())
app.add_middleware(AccessLogMiddleware)


@app.exception_handler(BookingEngineError)
async def handle_engine_error(request: Request, exc: BookingEngineError) -> JSONResponse:
    status_code = next(
        (code for error_cls, code in ERROR_STATUS.items() if isinstance(exc, error_cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    log = logger.error if status_code >= 500 else logger.info
    log(
        "request rejected",
        extra={"error": exc.code, "detail": exc.message, "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content=exc.as_dict())


# Collaborators, overridable through ``app.dependency_overrides``.

_gate = CapabilityGate()
_throttle = WindowCounter()


def get_gate() -> AuthorizationGate:
    return _gate


def get_audit() -> AuditRecorder:
    return DatabaseAuditRecorder()


def get_storage() -> ObjectStorage:
    return HttpObjectStorage()


def get_dispatcher() -> ReminderDispatcher:
    return HttpReminderDispatcher()


def get_throttle() -> WindowCounter:
    return _throttle


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_actor_provider_id: str | None = Header(default=None),
) -> Actor:
    """Build the acting identity from headers set by the upstream auth layer."""

    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing actor identity"
        )
    role = normalize_role(x_actor_role)
    if role == Role.SYSTEM:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    provider_id: UUID | None = None
    if x_actor_provider_id:
        try:
            provider_id = UUID(x_actor_provider_id)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid X-Actor-Provider-Id header",
            ) from exc
    return Actor(id=x_actor_id, role=role, provider_id=provider_id)


def verify_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    """Reject scheduler triggers that do not carry the shared secret."""

    expected = settings.cron_secret
    if expected and not hmac.compare_digest(x_cron_secret or "", expected):
        logger.warning("cron trigger rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


class SlotBulkCreate(BaseModel):
    provider_id: UUID
    dates: list[date]
    times: list[dt_time]
    slot_type: SlotType | None = None
    notes: str | None = None
    is_hidden: bool = False


class SlotUpdate(BaseModel):
    notes: str | None = None
    slot_type: SlotType | None = None
    is_hidden: bool | None = None


class BookingCreate(BaseModel):
    customer_id: UUID
    provider_id: UUID
    slot_ids: list[UUID]
    service_description: str
    subtotal: int = Field(default=0, ge=0)
    discount_amount: int = Field(default=0, ge=0)


class BookingAction(BaseModel):
    action: Literal["confirm", "cancel", "reschedule", "record_payment", "complete"]
    reason: str | None = None
    amount_paid: int = Field(default=0, ge=0)


class InvoiceItem(BaseModel):
    description: str
    quantity: int = Field(default=1, ge=1)
    unit_price: int = Field(default=0, ge=0)
    total: int = Field(ge=0)


class InvoiceCreate(BaseModel):
    items: list[InvoiceItem]
    discount_amount: int | None = Field(default=None, ge=0)
    discount_rate: float = Field(default=0, ge=0, le=100)
    squeeze_in_fee: int = Field(default=0, ge=0)


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scraping."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint used by infrastructure probes."""

    return {"status": "ok"}


@app.post("/api/v1/slots", status_code=status.HTTP_201_CREATED)
def bulk_create_slots(
    payload: SlotBulkCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
) -> dict[str, Any]:
    """Generate available slots for every requested date and time."""

    authorize(gate, actor, Action.MANAGE_SLOTS, payload.provider_id)
    result = create_slots(
        db,
        provider_id=payload.provider_id,
        dates=payload.dates,
        times=payload.times,
        slot_type=payload.slot_type,
        notes=payload.notes,
        is_hidden=payload.is_hidden,
    )
    return {
        "created": [serialize_slot(slot) for slot in result.created],
        "errors": result.errors,
    }


@app.get("/api/v1/slots")
def search_slots(
    provider_id: UUID | None = None,
    on_date: date | None = Query(default=None, alias="date"),
    start_date: date | None = None,
    end_date: date | None = None,
    slot_status: SlotStatus | None = Query(default=None, alias="status"),
    include_hidden: bool = True,
    db: Session = Depends(get_db),
    throttle: WindowCounter = Depends(get_throttle),
) -> dict[str, Any]:
    """List slots; past unbooked slots are swept first, at most once per interval."""

    try:
        sweep_unbooked_past_if_due(db, throttle)
    except redis.RedisError:
        logger.warning("slot sweep throttle unavailable")

    slots = list_slots(
        db,
        provider_id=provider_id,
        on_date=on_date,
        start_date=start_date,
        end_date=end_date,
        status=slot_status,
        include_hidden=include_hidden,
    )
    return {"timezone": settings.timezone, "results": [serialize_slot(slot) for slot in slots]}


@app.get("/api/v1/slots/{slot_id}")
def read_slot(slot_id: UUID, db: Session = Depends(get_db)) -> dict[str, Any]:
    return {"slot": serialize_slot(get_slot(db, slot_id))}


@app.patch("/api/v1/slots/{slot_id}")
def edit_slot(
    slot_id: UUID,
    payload: SlotUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
) -> dict[str, Any]:
    """Edit notes, slot type or visibility of a slot."""

    slot = get_slot(db, slot_id)
    authorize(gate, actor, Action.MANAGE_SLOTS, slot.provider_id)
    changes = payload.model_dump(include=payload.model_fields_set)
    slot = update_slot(db, slot_id, **changes)
    return {"slot": serialize_slot(slot)}


@app.delete("/api/v1/slots/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_slot(
    slot_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
) -> Response:
    slot = get_slot(db, slot_id)
    authorize(gate, actor, Action.MANAGE_SLOTS, slot.provider_id)
    delete_slot(db, slot_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/v1/bookings", status_code=status.HTTP_201_CREATED)
def book_slots(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    """Reserve the requested slots for a customer."""

    booking = create_booking(
        db,
        BookingRequest(
            customer_id=payload.customer_id,
            provider_id=payload.provider_id,
            slot_ids=list(payload.slot_ids),
            service_description=payload.service_description,
            subtotal=payload.subtotal,
            discount_amount=payload.discount_amount,
        ),
        audit=audit,
    )
    return {"booking": serialize_booking(booking)}


@app.get("/api/v1/bookings")
def search_bookings(
    customer_id: UUID | None = None,
    provider_id: UUID | None = None,
    booking_status: BookingStatus | None = Query(default=None, alias="status"),
    payment_status: PaymentStatus | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
) -> dict[str, Any]:
    """List bookings; scoped roles only see their own provider."""

    if actor.role in SCOPED_ROLES:
        provider_id = actor.provider_id
    authorize(gate, actor, Action.VIEW_BOOKINGS, provider_id)
    bookings = list_bookings(
        db,
        customer_id=customer_id,
        provider_id=provider_id,
        status=booking_status,
        payment_status=payment_status,
        limit=limit,
    )
    return {"bookings": [serialize_booking(booking) for booking in bookings]}


@app.get("/api/v1/bookings/{reference}")
def read_booking(reference: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Look a booking up by id or by code."""

    return {"booking": serialize_booking(get_booking(db, reference))}


@app.patch("/api/v1/bookings/{booking_id}")
def update_booking(
    booking_id: UUID,
    payload: BookingAction,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    """Apply a staff action to a booking."""

    common: dict[str, Any] = {"actor": actor, "gate": gate, "audit": audit}
    response: dict[str, Any] = {}
    if payload.action == "confirm":
        booking = confirm_booking(db, booking_id, **common)
    elif payload.action == "cancel":
        booking = cancel_booking(db, booking_id, reason=payload.reason, **common)
    elif payload.action == "reschedule":
        booking = reschedule_booking(db, booking_id, reason=payload.reason or "", **common)
    elif payload.action == "record_payment":
        if payload.amount_paid <= 0:
            raise ValidationFailed("amount_paid must be positive")
        booking, application = record_payment(db, booking_id, payload.amount_paid, **common)
        response["payment"] = application.as_dict()
    else:
        booking = complete_booking(db, booking_id, amount_paid=payload.amount_paid, **common)

    response["booking"] = serialize_booking(booking)
    return response


@app.post("/api/v1/bookings/{booking_id}/invoice")
def create_invoice(
    booking_id: UUID,
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    booking = issue_booking_invoice(
        db,
        booking_id,
        actor=actor,
        items=[item.model_dump() for item in payload.items],
        discount_amount=payload.discount_amount,
        discount_rate=payload.discount_rate,
        squeeze_in_fee=payload.squeeze_in_fee,
        gate=gate,
        audit=audit,
    )
    return {"booking": serialize_booking(booking)}


@app.post("/api/v1/bookings/{booking_id}/payment-proof")
def submit_payment_proof(
    booking_id: UUID,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    """Attach or replace the booking's payment proof image."""

    booking = upload_payment_proof(
        db,
        booking_id,
        content=file.file.read(),
        content_type=file.content_type or "",
        storage=storage,
        audit=audit,
    )
    return {"booking": serialize_booking(booking)}


@app.post("/api/v1/bookings/{booking_id}/photos", status_code=status.HTTP_201_CREATED)
def submit_client_photo(
    booking_id: UUID,
    category: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
    storage: ObjectStorage = Depends(get_storage),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    photo = add_client_photo(
        db,
        booking_id,
        category=parse_category(category),
        content=file.file.read(),
        content_type=file.content_type or "",
        storage=storage,
        actor=actor,
        gate=gate,
        audit=audit,
    )
    return {"photo": {"id": str(photo.id), "category": photo.category.value, "url": photo.url}}


@app.delete(
    "/api/v1/bookings/{booking_id}/photos/{photo_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_client_photo(
    booking_id: UUID,
    photo_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: AuthorizationGate = Depends(get_gate),
    storage: ObjectStorage = Depends(get_storage),
    audit: AuditRecorder = Depends(get_audit),
) -> Response:
    remove_client_photo(
        db, booking_id, photo_id, storage=storage, actor=actor, gate=gate, audit=audit
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/v1/cron/notifications", dependencies=[Depends(verify_cron_secret)])
def trigger_notification_sweep(
    db: Session = Depends(get_db),
    dispatcher: ReminderDispatcher = Depends(get_dispatcher),
    gate: AuthorizationGate = Depends(get_gate),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    """Scheduler entry point for payment and appointment reminders."""

    result = run_notification_sweep(db, dispatcher=dispatcher, gate=gate, audit=audit)
    return {"status": "ok", "result": result.as_dict()}


@app.post("/api/v1/cron/cleanup-photos", dependencies=[Depends(verify_cron_secret)])
def trigger_photo_retention(
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
) -> dict[str, Any]:
    result = run_photo_retention_sweep(db, storage=storage)
    return {"status": "ok", "result": result.as_dict()}


@app.post("/api/v1/cron/cleanup-slots", dependencies=[Depends(verify_cron_secret)])
def trigger_slot_sweep(db: Session = Depends(get_db)) -> dict[str, Any]:
    result = sweep_unbooked_past(db, local_now())
    return {"status": "ok", "result": result.as_dict()}
