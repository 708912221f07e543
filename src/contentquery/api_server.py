"""
FastAPI service layer for ContentQuery.

Exposes content extraction (URL / PDF / topic-only), session transcripts,
question answering, MCQ generation and service metadata under /api.

Run with:
    uvicorn contentquery.api_server:app --host 0.0.0.0 --port 5000
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Literal

import httpx
import pydantic
import uvicorn
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from rich.panel import Panel

from . import config
from .analysis import analyze_content, answer_question, topic_session_overview
from .config import CORS_ORIGINS, HOST, MCQ_MAX_QUESTIONS, PORT, RELOAD, SESSION_STORE, console
from .errors import ContentQueryError, SessionNotFoundError, ValidationError
from .extraction import AcquiredContent, acquire_pdf, acquire_topic, acquire_url
from .mcq import MCQRequest, MCQResult, format_mcqs_for_display, generate_mcqs
from .metrics import MetricsCollector, metrics_collector
from .model_router import ModelFallbackInvoker
from .observability import get_logger
from .session_store import ContentSession, SessionStore, build_session_store
from .storage_provider import LocalUploadStorage, UploadStorageProvider, staged_upload

logger = get_logger(__name__)

PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class ExtractContentRequest(_CamelModel):
    url: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    preferred_model: str | None = Field(default=None, alias="preferredModel")


class TopicSessionRequest(_CamelModel):
    topic: str = Field(..., min_length=1)
    preferred_model: str | None = Field(default=None, alias="preferredModel")


class AskRequest(_CamelModel):
    question: str = Field(..., min_length=1)
    preferred_model: str | None = Field(default=None, alias="preferredModel")


class MCQOptions(_CamelModel):
    topic: str = Field(..., min_length=1)
    number_of_questions: int = Field(5, ge=1, le=MCQ_MAX_QUESTIONS, alias="numberOfQuestions")
    difficulty_level: Literal["easy", "medium", "hard"] = Field("medium", alias="difficultyLevel")
    include_answers: bool = Field(False, alias="includeAnswers")
    custom_header: str | None = Field(default=None, alias="customHeader")
    subtopic: str | None = None
    language: str = "english"
    preferred_model: str | None = Field(default=None, alias="preferredModel")


class MCQFromUrlRequest(MCQOptions):
    url: str = Field(..., min_length=1)


def _describe_validation_errors(errors: list[dict[str, Any]]) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "Invalid request: " + "; ".join(parts)


def _mcq_options_from_form(fields: dict[str, Any]) -> MCQOptions:
    data = {key: value for key, value in fields.items() if value is not None}
    try:
        return MCQOptions.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(_describe_validation_errors(exc.errors())) from exc


# ---------------------------------------------------------------------------
# Dependency accessors
# ---------------------------------------------------------------------------

def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_invoker(request: Request) -> ModelFallbackInvoker:
    return request.app.state.invoker


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_upload_storage(request: Request) -> UploadStorageProvider:
    return request.app.state.upload_storage


def _require_session(store: SessionStore, session_id: str) -> ContentSession:
    session = store.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


async def _read_pdf_upload(pdf: UploadFile) -> bytes:
    file_name = pdf.filename or ""
    if pdf.content_type not in PDF_CONTENT_TYPES and not file_name.lower().endswith(".pdf"):
        raise ValidationError("Only PDF files are allowed")
    limit = config.MAX_UPLOAD_BYTES
    data = await pdf.read(limit + 1)
    if len(data) > limit:
        raise ValidationError(f"PDF exceeds the {limit} byte upload limit", status_code=413)
    if not data:
        raise ValidationError("Uploaded PDF is empty")
    return data


async def _acquire_uploaded_pdf(storage: UploadStorageProvider, pdf: UploadFile) -> AcquiredContent:
    data = await _read_pdf_upload(pdf)
    file_name = pdf.filename or "upload.pdf"
    with staged_upload(storage, data, file_name) as path:
        return await acquire_pdf(path, file_name)


async def _analyzed_session(
    store: SessionStore,
    invoker: ModelFallbackInvoker,
    acquired: AcquiredContent,
    topic: str,
    preferred_model: str | None,
) -> dict[str, Any]:
    analysis = await analyze_content(invoker, acquired.text, topic, preferred_model)
    session = store.create_session(
        topic=topic,
        source_kind=acquired.source_kind,
        url=acquired.url,
        file_name=acquired.file_name,
        title=analysis.title,
        extracted_content=acquired.text,
        word_count=analysis.word_count,
        read_time=analysis.read_time,
        model_used=analysis.model_used,
    )
    return {"session": session.to_dict(), "analysis": analysis.to_dict()}


def _mcq_response(options: MCQOptions, result: MCQResult) -> dict[str, Any]:
    return {
        "questions": [question.to_dict() for question in result.questions],
        "formattedContent": format_mcqs_for_display(
            result.questions, options.include_answers, options.custom_header
        ),
        "modelUsed": result.model_used,
        "modelsUsed": list(result.models_used),
        "topic": options.topic,
        "subtopic": options.subtopic,
        "difficultyLevel": options.difficulty_level,
        "requestedCount": result.requested_count,
        "generatedCount": result.generated_count,
        "fallbackUsed": result.fallback_used,
        "warnings": list(result.warnings),
    }


async def _generate_mcq(
    invoker: ModelFallbackInvoker,
    options: MCQOptions,
    content: str | None,
) -> dict[str, Any]:
    request = MCQRequest(
        topic=options.topic,
        number_of_questions=options.number_of_questions,
        difficulty_level=options.difficulty_level,
        include_answers=options.include_answers,
        content=content,
        subtopic=options.subtopic or None,
        custom_header=options.custom_header or None,
        language=options.language,
        preferred_model=options.preferred_model or None,
    )
    result = await generate_mcqs(invoker, request)
    logger.info(
        "mcq_generated",
        requested=result.requested_count,
        generated=result.generated_count,
        fallback_used=result.fallback_used,
        model=result.model_used,
    )
    return _mcq_response(options, result)


def _print_startup_banner(models: list[str], store_kind: str):
    ordered = "\n".join(f"  {idx}. {model}" for idx, model in enumerate(models, start=1))
    console.print(
        Panel(
            f"[bold]Model priority[/bold]\n{ordered}\n\n[bold]Session store[/bold]: {store_kind}",
            title="ContentQuery API",
            border_style="cyan",
        )
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    *,
    store: SessionStore | None = None,
    invoker: ModelFallbackInvoker | None = None,
    http_client: httpx.AsyncClient | None = None,
    upload_storage: UploadStorageProvider | None = None,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    """Builds the app; anything not injected is created from config at startup."""
    collector = metrics or metrics_collector

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        state.metrics = collector
        # Credentials resolve here so a missing key stops startup, not a request.
        state.invoker = invoker if invoker is not None else ModelFallbackInvoker(
            config.resolve_model_credentials(), metrics=collector
        )
        state.store = store if store is not None else build_session_store()
        state.http_client = http_client if http_client is not None else httpx.AsyncClient(
            timeout=config.FETCH_TIMEOUT_S,
            follow_redirects=True,
            max_redirects=5,
            headers={"User-Agent": config.FETCH_USER_AGENT},
        )
        state.upload_storage = upload_storage if upload_storage is not None else LocalUploadStorage()
        state.upload_storage.ensure_ready()
        store_kind = SESSION_STORE if store is None else type(store).__name__
        _print_startup_banner(state.invoker.models, store_kind)

        yield

        if store is None:
            state.store.close()
        if http_client is None:
            await state.http_client.aclose()

    app = FastAPI(
        title="ContentQuery API",
        description="Content extraction, grounded Q&A and MCQ generation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.metrics = collector
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_request(request: Request, call_next):
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            if request.url.path.startswith("/api"):
                latency_ms = (time.perf_counter() - start) * 1000.0
                collector.record_request(request.url.path, latency_ms, status_code)
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status=status_code,
                    latency_ms=round(latency_ms, 2),
                )

    @app.exception_handler(ContentQueryError)
    async def content_query_error_handler(request: Request, exc: ContentQueryError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("request_failed", path=request.url.path, error=type(exc).__name__, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        message = _describe_validation_errors(list(exc.errors()))
        logger.warning("request_invalid", path=request.url.path, message=message)
        return JSONResponse(status_code=400, content={"message": message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("request_crashed", path=request.url.path, error=type(exc).__name__)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    # -----------------------------------------------------------------------
    # Content sessions
    # -----------------------------------------------------------------------

    @app.post("/api/extract-content")
    async def extract_content(
        body: ExtractContentRequest,
        store: SessionStore = Depends(get_store),
        invoker: ModelFallbackInvoker = Depends(get_invoker),
        client: httpx.AsyncClient = Depends(get_http_client),
    ):
        acquired = await acquire_url(body.url, client=client)
        return await _analyzed_session(store, invoker, acquired, body.topic, body.preferred_model)

    @app.post("/api/extract-pdf")
    async def extract_pdf(
        pdf: UploadFile = File(...),
        topic: str = Form(...),
        preferred_model: str | None = Form(None, alias="preferredModel"),
        store: SessionStore = Depends(get_store),
        invoker: ModelFallbackInvoker = Depends(get_invoker),
        storage: UploadStorageProvider = Depends(get_upload_storage),
    ):
        topic = topic.strip()
        if not topic:
            raise ValidationError("PDF file and topic are required")
        acquired = await _acquire_uploaded_pdf(storage, pdf)
        return await _analyzed_session(store, invoker, acquired, topic, preferred_model or None)

    @app.post("/api/create-topic-session")
    async def create_topic_session(
        body: TopicSessionRequest,
        store: SessionStore = Depends(get_store),
        invoker: ModelFallbackInvoker = Depends(get_invoker),
    ):
        acquired = acquire_topic()
        if body.preferred_model in invoker.models:
            model_used = body.preferred_model
        else:
            model_used = invoker.models[0]
        analysis = topic_session_overview(body.topic, model_used)
        session = store.create_session(
            topic=body.topic,
            source_kind=acquired.source_kind,
            title=analysis.title,
            extracted_content=None,
            word_count=0,
            read_time=0,
            model_used=model_used,
        )
        return {"session": session.to_dict(), "analysis": analysis.to_dict()}

    @app.get("/api/sessions")
    async def list_sessions(store: SessionStore = Depends(get_store)):
        return [session.to_dict() for session in store.list_sessions()]

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, store: SessionStore = Depends(get_store)):
        return _require_session(store, session_id).to_dict()

    @app.post("/api/sessions/{session_id}/ask")
    async def ask(
        session_id: str,
        body: AskRequest,
        store: SessionStore = Depends(get_store),
        invoker: ModelFallbackInvoker = Depends(get_invoker),
    ):
        session = _require_session(store, session_id)
        history = store.list_messages(session.id)
        user_message = store.append_message(session.id, "user", body.question)
        answer = await answer_question(
            invoker,
            body.question,
            session.extracted_content,
            session.topic,
            history,
            body.preferred_model,
        )
        assistant_message = store.append_message(
            session.id, "assistant", answer.text, model_used=answer.model_used
        )
        return {
            "userMessage": user_message.to_dict(),
            "assistantMessage": assistant_message.to_dict(),
        }

    @app.get("/api/sessions/{session_id}/messages")
    async def list_messages(session_id: str, store: SessionStore = Depends(get_store)):
        session = _require_session(store, session_id)
        return [message.to_dict() for message in store.list_messages(session.id)]

    @app.get("/api/sessions/{session_id}/export-pdf")
    async def export_pdf(session_id: str, store: SessionStore = Depends(get_store)):
        session = _require_session(store, session_id)
        messages = store.list_messages(session.id)
        payload = session.to_dict()
        return {
            "session": payload,
            "messages": [message.to_dict() for message in messages],
            "exportData": {
                "title": session.title or f"Session {session.id}",
                "topic": session.topic,
                "sourceType": session.source_kind,
                "fileName": session.file_name,
                "url": session.url,
                "wordCount": session.word_count,
                "readTime": session.read_time,
                "createdAt": payload["createdAt"],
                "exportedAt": _utc_iso(),
            },
        }

    # -----------------------------------------------------------------------
    # MCQ generation
    # -----------------------------------------------------------------------

    @app.post("/api/generate-mcq-url")
    async def generate_mcq_url(
        body: MCQFromUrlRequest,
        invoker: ModelFallbackInvoker = Depends(get_invoker),
        client: httpx.AsyncClient = Depends(get_http_client),
    ):
        acquired = await acquire_url(body.url, client=client)
        return await _generate_mcq(invoker, body, acquired.text)

    @app.post("/api/generate-mcq-pdf")
    async def generate_mcq_pdf(
        pdf: UploadFile = File(...),
        topic: str = Form(...),
        number_of_questions: str | None = Form(None, alias="numberOfQuestions"),
        difficulty_level: str | None = Form(None, alias="difficultyLevel"),
        include_answers: str | None = Form(None, alias="includeAnswers"),
        custom_header: str | None = Form(None, alias="customHeader"),
        subtopic: str | None = Form(None),
        language: str | None = Form(None),
        preferred_model: str | None = Form(None, alias="preferredModel"),
        invoker: ModelFallbackInvoker = Depends(get_invoker),
        storage: UploadStorageProvider = Depends(get_upload_storage),
    ):
        options = _mcq_options_from_form(
            {
                "topic": topic,
                "numberOfQuestions": number_of_questions,
                "difficultyLevel": difficulty_level,
                "includeAnswers": include_answers,
                "customHeader": custom_header,
                "subtopic": subtopic,
                "language": language,
                "preferredModel": preferred_model,
            }
        )
        acquired = await _acquire_uploaded_pdf(storage, pdf)
        return await _generate_mcq(invoker, options, acquired.text)

    @app.post("/api/generate-mcq-topic")
    async def generate_mcq_topic(
        body: MCQOptions,
        invoker: ModelFallbackInvoker = Depends(get_invoker),
    ):
        return await _generate_mcq(invoker, body, acquire_topic().text)

    # -----------------------------------------------------------------------
    # Service metadata
    # -----------------------------------------------------------------------

    @app.get("/api/models")
    async def list_models(invoker: ModelFallbackInvoker = Depends(get_invoker)):
        return {"models": invoker.models}

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "timestamp": _utc_iso()}

    @app.get("/api/metrics")
    async def service_metrics():
        """Return aggregated service metrics."""
        return collector.get_summary()

    return app


app = create_app()


def run():
    uvicorn.run("contentquery.api_server:app", host=HOST, port=PORT, reload=RELOAD)


if __name__ == "__main__":
    run()
