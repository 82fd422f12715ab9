from __future__ import annotations

import logging
import threading
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import Settings, configure_logging, load_settings
from .conversation import sanitize_and_build
from .errors import ConversationError, NumidChatError
from .gemini_client import GeminiClient
from .images import SVG_SYSTEM_PROMPT, VISION_SYSTEM_PROMPT, build_svg_prompt, build_vision_parts, extract_svg
from .models import ChatRequest, ChatResponse, SvgRequest, VisionRequest, VisionResponse
from .stream_relay import StreamRelay, error_event

logger = logging.getLogger("numid.app")

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

router = APIRouter()
_client_lock = threading.Lock()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gemini(request: Request) -> GeminiClient:
    """Purpose: Provide the shared Gemini client, building it on first use.
    Side Effects / State: Caches the client on app.state.
    Failure Modes: ConfigurationError (HTTP 500) when the API key is missing.
    Testing Notes: Override this dependency with a fake client.
    """
    client: Optional[GeminiClient] = getattr(request.app.state, "gemini", None)
    if client is None:
        with _client_lock:
            client = getattr(request.app.state, "gemini", None)
            if client is None:
                client = GeminiClient(request.app.state.settings)
                request.app.state.gemini = client
    return client


@router.get("/health")
def health() -> dict:
    return {"ok": True}


@router.post("/api/chat", response_model=ChatResponse)
def chat(
    payload: ChatRequest,
    settings: Settings = Depends(get_settings),
    gemini: GeminiClient = Depends(get_gemini),
) -> ChatResponse:
    """Purpose: Answer a conversation with one complete model reply.
    Inputs/Outputs: Input is ChatRequest; output is ChatResponse with `reply`.
    Failure Modes: ConversationError → 400, UpstreamError → 500.
    """
    built = sanitize_and_build(payload.messages)
    model = payload.model or settings.default_model
    logger.info("chat model=%s turns=%d", model, len(built.history) + 1)
    reply = gemini.send_chat(
        built.history,
        built.user_parts,
        model=model,
        system_instruction=settings.system_prompt,
    )
    return ChatResponse(reply=reply)


@router.post("/api/chat/stream")
@router.post("/api/chat-stream", include_in_schema=False)
def chat_stream(
    payload: ChatRequest,
    settings: Settings = Depends(get_settings),
    gemini: GeminiClient = Depends(get_gemini),
) -> StreamingResponse:
    """Purpose: Relay an incremental model reply as Server-Sent Events.
    Inputs/Outputs: Input is ChatRequest; output is a text/event-stream of
        fragment frames closed by a `done` or `error` event.
    Failure Modes: Sanitizer failures answer 400 with one error frame; upstream
        failures after the response starts arrive as an error frame.
    """
    try:
        built = sanitize_and_build(payload.messages)
    except ConversationError as exc:
        return StreamingResponse(
            iter([error_event(exc.message)]),
            status_code=exc.status_code,
            media_type="text/event-stream",
        )

    model = payload.model or settings.default_model
    label = uuid.uuid4().hex[:8]
    logger.info("stream=%s model=%s turns=%d", label, model, len(built.history) + 1)
    relay = StreamRelay(
        lambda: gemini.stream_chat(
            built.history,
            built.user_parts,
            model=model,
            system_instruction=settings.system_prompt,
        ),
        queue_size=settings.stream_queue_size,
        label=label,
    )
    return StreamingResponse(relay.frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/api/vision/describe", response_model=VisionResponse)
def describe_image(
    payload: VisionRequest,
    settings: Settings = Depends(get_settings),
    gemini: GeminiClient = Depends(get_gemini),
) -> VisionResponse:
    parts = build_vision_parts(payload.data_uri, payload.mime_type, payload.prompt)
    model = payload.model or settings.default_model
    logger.info("vision model=%s", model)
    text = gemini.generate_content(parts, model=model, system_instruction=VISION_SYSTEM_PROMPT)
    return VisionResponse(text=text)


@router.post("/api/images/svg")
def generate_svg(
    payload: SvgRequest,
    settings: Settings = Depends(get_settings),
    gemini: GeminiClient = Depends(get_gemini),
) -> Response:
    prompt = build_svg_prompt(payload.prompt)
    model = payload.model or settings.default_model
    logger.info("svg model=%s", model)
    generated = gemini.generate_text(prompt, model=model, system_instruction=SVG_SYSTEM_PROMPT)
    return Response(content=extract_svg(generated), media_type="image/svg+xml")


def handle_numid_error(request: Request, exc: NumidChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(item) for item in first.get("loc", ()) if item != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "invalid request body"
    logger.info("%s %s rejected: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Purpose: Build the FastAPI application.
    Inputs/Outputs: Optional Settings (loaded from the environment otherwise); returns the app.
    Side Effects / State: Configures logging. The Gemini client is created lazily,
        so a missing API key surfaces on the first model request.
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    application = FastAPI(title="Numid Chat API")
    application.state.settings = settings
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(NumidChatError, handle_numid_error)
    application.add_exception_handler(RequestValidationError, handle_validation_error)
    application.include_router(router)
    return application


app = create_app()
