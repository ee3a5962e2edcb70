from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping, Union

import pydantic

from .cache import fingerprint as compute_fingerprint
from .config import DefaultsSettings
from .errors import HubError, InternalError, ValidationError
from .middleware import MiddlewareContext, MiddlewarePipeline, Result
from .providers import ProviderRegistry
from .types import ChatRequest

logger = logging.getLogger(__name__)

RequestLike = Union[ChatRequest, Mapping[str, Any]]


def _format_pydantic_error(exc: pydantic.ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


class RequestRouter:
    """Validates and normalizes requests, then hands them to the pipeline.

    The router never retries or caches on its own; it only guarantees that a
    request reaching the pipeline is well formed and addressed to a
    registered adapter, and that callers only ever see ``HubError``.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        pipeline: MiddlewarePipeline,
        *,
        defaults: DefaultsSettings | None = None,
        fingerprint_prefix: str | None = None,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.defaults = defaults or DefaultsSettings()
        self.fingerprint_prefix = fingerprint_prefix

    def validate(self, request: RequestLike) -> ChatRequest:
        if isinstance(request, ChatRequest):
            parsed = request
        else:
            try:
                parsed = ChatRequest.model_validate(dict(request))
            except pydantic.ValidationError as exc:
                raise ValidationError(_format_pydantic_error(exc)) from exc
            except TypeError as exc:
                raise ValidationError(f"request must be a mapping: {exc}") from exc
        if not parsed.messages:
            raise ValidationError("messages must not be empty", provider=parsed.provider)
        if not parsed.model.strip():
            raise ValidationError("model must not be empty", provider=parsed.provider)
        adapter = self.registry.get(parsed.provider)
        if not adapter.supports_model(parsed.model):
            raise ValidationError(
                f"model '{parsed.model}' is not served by provider '{parsed.provider}'",
                provider=parsed.provider,
                model=parsed.model,
            )
        return parsed

    def normalize(self, request: ChatRequest) -> ChatRequest:
        updates: dict[str, Any] = {}
        if request.temperature is None:
            updates["temperature"] = float(self.defaults.temperature)
        if request.max_tokens is None:
            updates["max_tokens"] = int(self.defaults.max_tokens)
        params = {key: request.params[key] for key in sorted(request.params) if request.params[key] is not None}
        if params != request.params or list(params) != list(request.params):
            updates["params"] = params
        if not updates:
            return request
        return request.model_copy(update=updates)

    def fingerprint(self, request: ChatRequest) -> str:
        return compute_fingerprint(request, prefix=self.fingerprint_prefix)

    async def submit(self, request: RequestLike) -> Result:
        """Run one request through the pipeline.

        Returns a ``ChatResponse`` or, for ``stream=True``, a ``ChunkStream``
        that the caller must consume or close.
        """
        parsed = self.normalize(self.validate(request))
        ctx = MiddlewareContext(
            request=parsed,
            adapter=self.registry.get(parsed.provider),
            fingerprint=self.fingerprint(parsed),
            request_id=str(parsed.metadata.get("request_id") or uuid.uuid4().hex),
        )
        try:
            return await self.pipeline.run(ctx)
        except HubError:
            raise
        except Exception as exc:
            logger.exception("request.internal_error req_id=%s provider=%s", ctx.request_id, ctx.provider)
            raise InternalError(
                f"unexpected {type(exc).__name__}: {exc}",
                provider=ctx.provider,
                request_id=ctx.request_id,
            ) from exc
