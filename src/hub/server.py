import json
import logging
import math
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from typing_extensions import TypedDict

from .errors import HubError, ValidationError
from .hub import Hub
from .streaming import ChunkStream
from .types import ChatRequest, to_openai_chunk, to_openai_completion

logger = logging.getLogger(__name__)

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
PROVIDER_HEADER = "x-hub-provider"
CACHE_HEADER = "x-hub-cache"
REQUEST_ID_HEADER = "x-request-id"

_REQUEST_FIELDS = frozenset(ChatRequest.model_fields) - {"params"}
# OpenAI body keys that have no meaning for the gateway
_IGNORED_BODY_KEYS = frozenset({"n", "stream_options"})


class _ModelInfo(TypedDict):
    id: str
    object: Literal["model"]
    owned_by: str
    provider: str


class _ModelListResponse(TypedDict):
    object: Literal["list"]
    data: list[_ModelInfo]


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _error_response(exc: HubError, *, req_id: str | None = None) -> JSONResponse:
    headers: dict[str, str] = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(int(math.ceil(exc.retry_after)))
    if req_id:
        headers[REQUEST_ID_HEADER] = req_id
    return JSONResponse(exc.to_dict(), status_code=exc.http_status, headers=headers)


def _resolve_provider(hub: Hub, body: dict[str, Any], header_value: str | None) -> tuple[str, str]:
    model = body.get("model")
    if not isinstance(model, str) or not model.strip():
        raise ValidationError("model must be a non-empty string")
    provider = body.get("provider") or header_value
    if provider:
        return str(provider), model
    prefix, sep, rest = model.partition("/")
    if sep and prefix in hub.registry:
        return prefix, rest
    for name in hub.registry.names():
        if model in hub.registry.get(name).models:
            return name, model
    raise ValidationError(f"no provider serves model '{model}'", model=model)


def build_chat_request(
    hub: Hub,
    body: Any,
    *,
    provider_header: str | None = None,
    cache_header: str | None = None,
    req_id: str | None = None,
) -> dict[str, Any]:
    """Translate an OpenAI-style body into a hub request mapping.

    Unknown top-level keys become provider ``params``; ``user`` becomes the
    rate-limit caller.
    """
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    provider, model = _resolve_provider(hub, body, provider_header)
    request: dict[str, Any] = {"provider": provider, "model": model}
    params: dict[str, Any] = dict(body.get("params") or {})
    for key, value in body.items():
        if key in ("provider", "model", "params", "user") or key in _IGNORED_BODY_KEYS:
            continue
        if key in _REQUEST_FIELDS:
            request[key] = value
        elif value is not None:
            params[key] = value
    if params:
        request["params"] = params
    if body.get("user") and "caller" not in request:
        request["caller"] = body["user"]
    if cache_header:
        request["cache"] = {"mode": cache_header.strip().lower()}
    if req_id:
        metadata = dict(request.get("metadata") or {})
        metadata.setdefault("request_id", req_id)
        request["metadata"] = metadata
    return request


async def _sse_events(stream: ChunkStream, *, model: str, completion_id: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in stream:
            payload = to_openai_chunk(chunk, model=model, completion_id=completion_id)
            yield f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")
        yield b"data: [DONE]\n\n"
    finally:
        # client disconnects land here as GeneratorExit or cancellation
        await stream.aclose()


def create_app(hub: Hub | None = None) -> FastAPI:
    """Build the HTTP surface around ``hub`` (loaded from config when omitted)."""
    hub = hub or Hub.from_config()
    inbound_keys = frozenset(_parse_env_list(os.environ.get("HUB_INBOUND_API_KEYS", "")))
    api_key_header = os.environ.get("HUB_API_KEY_HEADER", "x-api-key")
    allowed_origins = _parse_env_list(os.environ.get("HUB_CORS_ALLOW_ORIGINS", ""))

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await hub.start()
        try:
            yield
        finally:
            await hub.aclose()

    app = FastAPI(title="llm-hub", lifespan=lifespan)
    app.state.hub = hub
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    def _unauthorized(req: Request) -> JSONResponse | None:
        if not inbound_keys:
            return None
        provided = req.headers.get(api_key_header)
        if provided is None:
            auth = req.headers.get("authorization", "")
            if auth.lower().startswith("bearer "):
                provided = auth[7:].strip()
        if provided in inbound_keys:
            return None
        body = {
            "error": {
                "message": "missing or invalid api key",
                "type": "authentication_error",
                "code": "invalid_api_key",
            }
        }
        return JSONResponse(body, status_code=401)

    @app.exception_handler(HubError)
    async def _hub_error_handler(req: Request, exc: HubError) -> JSONResponse:
        return _error_response(exc, req_id=req.headers.get(REQUEST_ID_HEADER))

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        health = hub.health.snapshot()
        return {
            "status": "ok",
            "providers": {name: entry["status"] for name, entry in health.items()},
        }

    @app.get("/metrics")
    async def metrics_endpoint(req: Request) -> Response:
        denied = _unauthorized(req)
        if denied is not None:
            return denied
        return Response(hub.metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)

    @app.get("/v1/snapshot")
    async def snapshot(req: Request) -> Any:
        denied = _unauthorized(req)
        if denied is not None:
            return denied
        return hub.snapshot()

    @app.get("/v1/models")
    async def list_models() -> _ModelListResponse:
        models: list[_ModelInfo] = []
        for name in sorted(hub.registry.names()):
            adapter = hub.registry.get(name)
            for model in adapter.models:
                models.append(
                    {"id": model, "object": "model", "owned_by": adapter.provider_type, "provider": name}
                )
        return {"object": "list", "data": models}

    @app.post("/v1/chat/completions")
    async def chat_completions(req: Request) -> Response:
        denied = _unauthorized(req)
        if denied is not None:
            return denied
        req_id = req.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        try:
            body = await req.json()
        except ValueError:
            return _error_response(ValidationError("request body is not valid JSON"), req_id=req_id)
        try:
            request = build_chat_request(
                hub,
                body,
                provider_header=req.headers.get(PROVIDER_HEADER),
                cache_header=req.headers.get(CACHE_HEADER),
                req_id=req_id,
            )
            result = await hub.submit(request)
        except HubError as exc:
            logger.info("chat.completions failure req_id=%s code=%s", req_id, exc.code)
            return _error_response(exc, req_id=req_id)
        headers = {REQUEST_ID_HEADER: req_id, PROVIDER_HEADER: request["provider"]}
        completion_id = f"chatcmpl-{req_id[:12]}"
        if isinstance(result, ChunkStream):
            return StreamingResponse(
                _sse_events(result, model=request["model"], completion_id=completion_id),
                media_type="text/event-stream",
                headers=headers,
            )
        return JSONResponse(to_openai_completion(result, completion_id=completion_id), headers=headers)

    return app
