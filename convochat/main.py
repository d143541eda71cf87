import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import APIRouter, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from starlette.exceptions import HTTPException as StarletteHTTPException

from convochat.cancel import CancelToken
from convochat.config import Settings, configure_logging, load_settings
from convochat.errors import ChatError, InternalError, NotFoundError, UpstreamUnavailableError
from convochat.executor import ResilientExecutor
from convochat.models import (
    ConversationCreate,
    ConversationListItem,
    ConversationOut,
    ConversationUpdate,
    ConversationWithMessages,
    MessageIn,
    SendMessageResponse,
)
from convochat.pagination import DEFAULT_LIMIT, build_page, clamp_limit, decode_cursor
from convochat.pipeline import SendPipeline
from convochat.providers import CompletionProvider, create_provider
from convochat.store import MessageStore

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.25

router = APIRouter()


class HealthCheckFilter(logging.Filter):
    """Keep liveness probes out of the access log."""

    def filter(self, record: logging.LogRecord) -> bool:
        return "/healthz" not in record.getMessage()


# ---------- Wiring ----------

def _wire(app: FastAPI, store: MessageStore) -> None:
    settings: Settings = app.state.settings
    executor = ResilientExecutor(
        app.state.provider,
        timeout=settings.llm_timeout,
        max_retries=settings.llm_max_retries,
        backoff_base=settings.llm_backoff_base,
    )
    app.state.store = store
    app.state.pipeline = SendPipeline(
        store,
        executor,
        duplicate_window=settings.duplicate_window_seconds,
        serialize=settings.serialize_sends,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = None
    if getattr(app.state, "store", None) is None:
        settings: Settings = app.state.settings
        client = AsyncIOMotorClient(settings.mongo_uri)
        _wire(app, MessageStore(client[settings.db_name]))
    await app.state.store.ensure_indexes()
    logger.info("convochat ready (provider=%s)", app.state.provider.name)
    try:
        yield
    finally:
        if client is not None:
            client.close()


async def _watch_disconnect(request: Request, token: CancelToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel("client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


# ---------- Error handlers ----------

async def chat_error_handler(request: Request, exc: ChatError):
    body = {"error": exc.public_message}
    if isinstance(exc, UpstreamUnavailableError):
        body["messageId"] = exc.message_id
    if exc.details is not None:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning("Validation error %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error %s %s", request.method, request.url.path)
    return await chat_error_handler(request, InternalError())


# ---------- API Endpoints ----------

@router.post("/conversations", response_model=ConversationOut, status_code=201)
async def create_conversation(request: Request, payload: Optional[ConversationCreate] = None):
    title = payload.title if payload else None
    return await request.app.state.store.create_conversation(title)


@router.get("/conversations", response_model=List[ConversationListItem])
async def list_conversations(request: Request):
    return await request.app.state.store.list_conversations()


@router.get("/conversations/{conversation_id}", response_model=ConversationWithMessages)
async def get_conversation(
    request: Request,
    conversation_id: str,
    cursor: Optional[str] = None,
    limit: int = Query(default=DEFAULT_LIMIT),
    direction: Literal["older", "newer"] = "older",
):
    settings: Settings = request.app.state.settings
    store: MessageStore = request.app.state.store
    boundary = decode_cursor(cursor, settings.cursor_secret) if cursor else None

    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError()

    take = clamp_limit(limit)
    rows = await store.list_messages_page(conversation_id, boundary, take, direction)
    page = build_page(rows, take, settings.cursor_secret, direction, had_cursor=boundary is not None)
    return ConversationWithMessages(**conversation.model_dump(), messages=page)


@router.patch("/conversations/{conversation_id}", response_model=ConversationOut)
async def rename_conversation(request: Request, conversation_id: str, payload: ConversationUpdate):
    updated = await request.app.state.store.rename_conversation(conversation_id, payload.title)
    if updated is None:
        raise NotFoundError()
    logger.info("Conversation renamed id=%s", conversation_id)
    return updated


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(request: Request, conversation_id: str):
    if not await request.app.state.store.delete_conversation(conversation_id):
        raise NotFoundError()
    return Response(status_code=204)


@router.post("/conversations/{conversation_id}/messages", response_model=SendMessageResponse, status_code=201)
async def send_message(request: Request, conversation_id: str, payload: MessageIn):
    token = CancelToken()
    watcher = asyncio.ensure_future(_watch_disconnect(request, token))
    try:
        result = await request.app.state.pipeline.send(
            conversation_id,
            payload.content,
            role=payload.role,
            existing_message_id=payload.existing_message_id,
            cancel_token=token,
        )
    finally:
        watcher.cancel()
    return SendMessageResponse(message=result.message, reply=result.reply)


# ---------- FastAPI ----------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[MessageStore] = None,
    provider: Optional[CompletionProvider] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="convochat", lifespan=lifespan)
    app.state.settings = settings
    app.state.provider = provider or create_provider(settings)
    app.state.store = None
    if store is not None:
        _wire(app, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    app.include_router(router, prefix="/api")
    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
