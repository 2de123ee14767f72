import asyncio
import hashlib
import hmac
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import uuid4

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Request,
    Response,
    status,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from .batch import BatchDriver
from .config import Settings, settings as default_settings
from .engine import UpsertEngine
from .errors import InvalidInput, MalformedPayload, NotFound, StoreFailure
from .hub import EventHub
from .logging_utils import logging_middleware
from .metrics import inc_webhook_result, render_metrics
from .normalizer import to_utc_datetime
from .notifier import ChangeNotifier
from .schemas import (
    ConversationSummary,
    IngestSummary,
    MessageInput,
    MessageOut,
    MessageStatus,
    StatusUpdateInput,
)
from .storage import Database, MessageStore


# ---------- Pydantic Models ----------


class MessageCreate(BaseModel):
    conversation_id: str = Field(min_length=1)
    body: str = Field(min_length=1)
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: Optional[datetime] = None
    status: Optional[MessageStatus] = None
    sender_display_name: str = "Unknown"
    is_outgoing: bool = False
    client_id: Optional[str] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def normalize_created_at(cls, v):
        # same formats as webhook timestamps: epoch s/ms or a date string
        return to_utc_datetime(v)


class StatusRequest(BaseModel):
    message_id: str = Field(min_length=1)
    conversation_id: Optional[str] = None


class StatusResponse(BaseModel):
    ok: bool
    message_id: str
    status: MessageStatus


# ---------- Helpers ----------


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Iterable[Session]:
    with request.app.state.database.session() as db:
        yield db


def get_engine(db: Session = Depends(get_db)) -> UpsertEngine:
    return UpsertEngine(MessageStore(db))


def get_notifier(request: Request) -> ChangeNotifier:
    return request.app.state.notifier


# ---------- Endpoints ----------

router = APIRouter()


@router.get("/health/live")
def health_live():
    # always 200 once running
    return {"status": "ok"}


@router.get("/health/ready")
def health_ready(request: Request):
    if not request.app.state.database.ping():
        raise HTTPException(status_code=503, detail="database unavailable")
    return {"status": "ok"}


@router.post("/webhook", response_model=IngestSummary)
async def webhook(
    request: Request,
    engine: UpsertEngine = Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
    app_settings: Settings = Depends(get_settings),
):
    raw_body = await request.body()

    # Signature check only when a secret is configured
    if app_settings.WEBHOOK_SECRET:
        x_sig = request.headers.get("X-Signature")
        expected_sig = compute_signature(app_settings.WEBHOOK_SECRET, raw_body)
        # some clients send uppercase hex; compare as lower
        if not x_sig or not hmac.compare_digest(expected_sig, x_sig.lower()):
            inc_webhook_result("invalid_signature")
            request.state.log_extra.update({"result": "invalid_signature"})
            raise HTTPException(status_code=401, detail="invalid signature")

    driver = BatchDriver(engine, notifier)
    try:
        # sync SQLAlchemy work stays off the event loop
        summary = await run_in_threadpool(driver.ingest_payload, raw_body)
    except MalformedPayload as exc:
        inc_webhook_result("malformed")
        request.state.log_extra.update({"result": "malformed"})
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    inc_webhook_result("ok")
    request.state.log_extra.update({"result": "ok", **summary.model_dump()})
    return summary


@router.post("/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
def create_message(
    payload: MessageCreate,
    response: Response,
    engine: UpsertEngine = Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    item = MessageInput(
        conversation_id=payload.conversation_id,
        message_id=payload.message_id or str(uuid4()),
        correlation_id=payload.correlation_id,
        body=payload.body,
        created_at=payload.created_at or datetime.now(timezone.utc),
        status=payload.status,
        sender_display_name=payload.sender_display_name,
        is_outgoing=payload.is_outgoing,
    )
    result = engine.upsert_message(item)
    if result.rejected:
        raise InvalidInput("conversation_id and message_id are required")
    if result.created:
        notifier.notify_created(result.message, client_id=payload.client_id)
        return MessageOut.model_validate(result.message)

    # duplicate message_id: report the stored record, content untouched
    response.status_code = status.HTTP_200_OK
    if result.updated:
        notifier.notify_status_changed(
            result.message.conversation_id,
            result.message.message_id,
            result.message.status,
        )
    return MessageOut.model_validate(result.message)


@router.get("/messages/{conversation_id}", response_model=list[MessageOut])
def list_messages(conversation_id: str, db: Session = Depends(get_db)):
    rows = MessageStore(db).list_by_conversation(conversation_id)
    return [MessageOut.model_validate(m) for m in rows]


def _set_status(
    body: StatusRequest,
    new_status: MessageStatus,
    engine: UpsertEngine,
    notifier: ChangeNotifier,
) -> StatusResponse:
    result = engine.apply_status(
        StatusUpdateInput(
            target_message_id=body.message_id,
            conversation_id=body.conversation_id,
            status=new_status,
        )
    )
    if not result.matched:
        raise NotFound(f"message {body.message_id!r} not found")
    notifier.notify_status_changed(
        result.message.conversation_id, result.message.message_id, new_status
    )
    return StatusResponse(ok=True, message_id=result.message.message_id, status=new_status)


@router.post("/delivered", response_model=StatusResponse)
def mark_delivered(
    body: StatusRequest,
    engine: UpsertEngine = Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return _set_status(body, MessageStatus.DELIVERED, engine, notifier)


@router.post("/read", response_model=StatusResponse)
def mark_read(
    body: StatusRequest,
    engine: UpsertEngine = Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return _set_status(body, MessageStatus.READ, engine, notifier)


@router.get("/conversations", response_model=list[ConversationSummary])
def conversations(db: Session = Depends(get_db)):
    return MessageStore(db).conversation_summaries()


@router.get("/events")
async def events(request: Request):
    hub: EventHub = request.app.state.hub
    queue = hub.subscribe()

    async def event_generator():
        try:
            while True:
                try:
                    event_name, payload = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    continue
                yield {"event": event_name, "data": json.dumps(payload)}
        finally:
            hub.unsubscribe(queue)

    return EventSourceResponse(event_generator(), ping=15)


@router.get("/metrics")
def metrics():
    text = render_metrics()
    return PlainTextResponse(content=text, media_type="text/plain")


# ---------- App factory ----------


async def store_failure_handler(request: Request, exc: StoreFailure):
    request.state.log_extra = getattr(request.state, "log_extra", {})
    request.state.log_extra.update({"result": "store_failure", "error": str(exc)})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Could not access message store", "message": str(exc)},
    )


async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)}
    )


def create_app(
    app_settings: Optional[Settings] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    app_settings = app_settings or default_settings
    database = database or Database(app_settings.DATABASE_URL)
    hub = EventHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.open()
        try:
            yield
        finally:
            database.close()

    app = FastAPI(title="Webhook Message Ingest", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.database = database
    app.state.hub = hub
    app.state.notifier = ChangeNotifier(hub)

    # Attach logging middleware
    app.middleware("http")(logging_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Signature"],
        allow_credentials=False,
    )
    app.add_exception_handler(StoreFailure, store_failure_handler)
    app.add_exception_handler(NotFound, not_found_handler)
    app.add_exception_handler(InvalidInput, invalid_input_handler)
    app.include_router(router)
    return app


app = create_app()
