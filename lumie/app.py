from __future__ import annotations

import logging
import random
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from .answer_selector import AnswerSelector
from .config import Settings, load_settings
from .context_resolver import ContextResolver
from .engine import INVALID_INPUT_CONTEXT, INVALID_INTENT, ChatEngine, ChatOutcome, OutcomeStatus
from .intent_corpus import load_corpus
from .models import ChatRequest, ChatResponse, HealthResponse, RateLimitedResponse
from .rate_limiter import RateLimiter
from .session_store import SessionStore
from .sweeper import MaintenanceSweeper
from .utils import iso_timestamp

BASE_DIR = Path(__file__).resolve().parent
ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

logger = logging.getLogger("lumie.app")


def configure_logging(settings: Settings) -> None:
    """Purpose: Set up root logging and the optional intent audit file.
    Inputs/Outputs: Input is Settings; no return value.
    Side Effects / State: Configures the root logger once; attaches a FileHandler to
        the lumie.intents logger when INTENT_LOG_PATH is set and closes handlers
        left over from an earlier path.
    Dependencies: Standard library logging.
    Failure Modes: An unwritable intent log path raises OSError at startup.
    If Removed: Logs fall back to Python defaults and intent audit lines are lost.
    Testing Notes: Point INTENT_LOG_PATH at tmp_path and check appended lines.
    """
    # Respect handlers installed by the server runner; only fill in defaults.
    log_level = getattr(logging, settings.log_level, logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    logging.getLogger("lumie").setLevel(log_level)

    intent_logger = logging.getLogger("lumie.intents")
    intent_logger.propagate = False
    target = str(settings.intent_log_path.resolve()) if settings.intent_log_path is not None else None
    for stale in list(intent_logger.handlers):
        if isinstance(stale, logging.FileHandler) and stale.baseFilename != target:
            intent_logger.removeHandler(stale)
            stale.close()
    if target is None:
        intent_logger.disabled = True
        return
    intent_logger.disabled = False
    if any(getattr(handler, "baseFilename", None) == target for handler in intent_logger.handlers):
        return
    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    intent_logger.addHandler(handler)
    intent_logger.setLevel(logging.INFO)


def build_engine(settings: Settings, rng: Optional[random.Random] = None) -> ChatEngine:
    """Load the corpus and assemble the engine; CorpusLoadError aborts startup."""
    corpus = load_corpus(
        settings.training_files,
        fuzzy_score_limit=settings.fuzzy_score_limit,
        tie_margin=settings.fuzzy_tie_margin,
    )
    return ChatEngine(
        corpus=corpus,
        rate_limiter=RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_sec=settings.rate_limit_window_sec,
        ),
        sessions=SessionStore(
            session_ttl_sec=settings.session_ttl_sec,
            context_ttl_sec=settings.context_ttl_sec,
        ),
        selector=AnswerSelector(settings.max_recent_answers, rng=rng),
        context_resolver=ContextResolver(settings.general_intents),
    )


def _invalid_input_response(reply: str) -> JSONResponse:
    payload = ChatResponse(reply=reply, context=INVALID_INPUT_CONTEXT, intent=INVALID_INTENT, confidence=0)
    return JSONResponse(status_code=400, content=payload.model_dump())


def _outcome_response(outcome: ChatOutcome) -> Union[ChatResponse, JSONResponse]:
    if outcome.status is OutcomeStatus.INVALID:
        return _invalid_input_response(outcome.reply)
    if outcome.status is OutcomeStatus.RATE_LIMITED:
        payload = RateLimitedResponse(reply=outcome.reply, retry_at=iso_timestamp(outcome.retry_at))
        return JSONResponse(status_code=200, content=payload.model_dump(by_alias=True))
    return ChatResponse(
        reply=outcome.reply,
        context=outcome.context,
        intent=outcome.intent,
        confidence=outcome.confidence,
    )


def resolve_user_id(request: Request, payload: ChatRequest) -> str:
    """Caller identity: explicit userId, then the x-user-id header, then the client address."""
    for candidate in (payload.user_id, request.headers.get("x-user-id")):
        if candidate and candidate.strip():
            return candidate.strip()
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def create_app(engine: Optional[ChatEngine] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Purpose: Build the FastAPI application around a ChatEngine.
    Inputs/Outputs: Optional engine and settings; returns a configured FastAPI app.
    Side Effects / State: Loads the training corpus when no engine is given; registers
        the sweeper lifecycle, CORS, static files, and routes.
    Dependencies: FastAPI, build_engine, MaintenanceSweeper.
    Failure Modes: CorpusLoadError propagates so the process never serves a partial corpus.
    If Removed: The engine has no HTTP surface.
    Testing Notes: Pass a prebuilt engine and drive it with TestClient.
    """
    # Engine first: a corpus failure must stop startup before any route exists.
    settings = settings or load_settings()
    configure_logging(settings)
    engine = engine or build_engine(settings)
    sweeper = MaintenanceSweeper([engine.sessions, engine.rate_limiter], settings.sweep_interval_sec)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper.start()
        try:
            yield
        finally:
            sweeper.stop()
            engine.shutdown()

    app = FastAPI(title="Lumie Chatbot", lifespan=lifespan)
    app.state.engine = engine
    app.state.sweeper = sweeper
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    frontend_dir = settings.frontend_dir
    if frontend_dir.is_dir():
        app.mount("/static", StaticFiles(directory=frontend_dir), name="static")

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("invalid chat payload path=%s errors=%s", request.url.path, len(exc.errors()))
        return _invalid_input_response("Request body must be a JSON object with a text message.")

    @app.exception_handler(Exception)
    async def handle_unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        payload = ChatResponse(reply="Something went wrong. Please try again.", context="error", intent="Error", confidence=0)
        return JSONResponse(status_code=500, content=payload.model_dump())

    @app.get("/", include_in_schema=False, response_model=None)
    def serve_index() -> Union[FileResponse, PlainTextResponse]:
        index_path = frontend_dir / "index.html"
        if index_path.is_file():
            return FileResponse(index_path)
        return PlainTextResponse("Lumie API is running...")

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        stats = engine.stats()
        return HealthResponse(status="ok", intents=stats["intents"], sessions=stats["sessions"])

    @app.post("/api/chat", response_model=ChatResponse)
    def chat(request: Request, payload: ChatRequest) -> Union[ChatResponse, JSONResponse]:
        """Purpose: Resolve one chat message into a reply.
        Inputs/Outputs: Input is ChatRequest; output is ChatResponse, a rate limit payload,
            or a 400 invalid-input payload.
        Side Effects / State: Updates the caller's rate limit record and session.
        Dependencies: ChatEngine.handle_message and resolve_user_id.
        Failure Modes: Unexpected errors become a logged 500 via the exception handler.
        If Removed: Core chat functionality is unavailable.
        Testing Notes: Post {"message": "hi"} and verify the response schema.
        """
        # Identity is resolved at the transport edge; the engine only sees the key.
        user_id = resolve_user_id(request, payload)
        return _outcome_response(engine.handle_message(payload.message, user_id))

    return app


app = create_app()
