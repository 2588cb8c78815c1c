from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Sequence, TypeVar

from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from .config import AppConfig, configure_logging
from .fallback import (
    AllProvidersFailedError,
    FallbackOutcome,
    ProviderFailure,
    analyze_with_fallback,
    classify_failure,
)
from .image_payload import ImagePayloadError, validate_image_payload
from .leaf_analysis import format_text_report, health_condition, normalize_analysis
from .prompt_assets import PromptAssetError, load_prompt_assets
from .vision_providers import VisionProviderError, build_default_providers

T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499

config = AppConfig.from_env()
configure_logging(config.log_level)
logger = logging.getLogger(__name__)

# Fail fast on startup if the prompt asset is missing or invalid.
try:
    PROMPT_ASSETS = load_prompt_assets()
except PromptAssetError as exc:
    raise RuntimeError(f"Prompt asset validation failed during startup: {exc}") from exc

providers = build_default_providers(prompt_assets=PROMPT_ASSETS)

app = FastAPI(title="Plant Doctor Leaf Analysis Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


class AnalyzeBody(BaseModel):
    image: str | None = None
    provider: str | None = None
    model: str | None = None


class ClientDisconnectedError(RuntimeError):
    pass


def _error_response(status_code: int, error: str, **extra: Any) -> JSONResponse:
    content: dict[str, Any] = {"error": error}
    content.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=content)


def _ordered_provider_ids(preferred: str | None) -> list[str]:
    ordered = [provider_id for provider_id in config.provider_order if provider_id in providers]
    ordered += [provider_id for provider_id in providers if provider_id not in ordered]
    if preferred and preferred in ordered:
        ordered.remove(preferred)
        ordered.insert(0, preferred)
    return ordered


def _user_message(failure: ProviderFailure) -> str:
    if failure.kind == "configuration":
        return f"{failure.label} is not configured."
    if failure.kind == "rate_limit":
        return f"{failure.label} rate limit reached. Please pick a different provider or try again later."
    if failure.kind == "malformed_response":
        return f"{failure.label} returned an unreadable analysis. Please try again."
    return f"{failure.label} could not analyze the image. Please try again."


def _failure_response(
    failures: Sequence[ProviderFailure],
    *,
    error: str,
    suggested_providers: list[str],
) -> JSONResponse:
    is_rate_limit = any(item.rate_limited for item in failures)
    status_code = 429 if failures and all(item.rate_limited for item in failures) else 500
    setup_guides = [item.setup_guide for item in failures if item.kind == "configuration" and item.setup_guide]
    return _error_response(
        status_code,
        error,
        details="; ".join(f"{item.label}: {item.message}" for item in failures),
        setupGuide=" ".join(setup_guides) or None,
        isRateLimit=is_rate_limit,
        suggestedProviders=suggested_providers if is_rate_limit and suggested_providers else None,
        failures=[item.to_dict() for item in failures],
    )


def _success_payload(outcome: FallbackOutcome) -> dict[str, Any]:
    payload = outcome.result.to_dict()
    payload["providerId"] = outcome.provider_id
    payload["fallbackUsed"] = outcome.fallback_used
    payload["healthCondition"] = (
        health_condition(outcome.result.health_percentage) if outcome.result.leaf_present else None
    )
    return payload


async def _run_until_disconnect(request: Request, awaitable: Awaitable[T]) -> T:
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                logger.info("Client disconnected, cancelled in-flight analysis")
                raise ClientDisconnectedError("Client disconnected during analysis.")
    finally:
        if not task.done():
            task.cancel()


def _read_image(body: AnalyzeBody) -> str:
    return validate_image_payload(body.image, max_bytes=config.max_image_bytes)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/providers")
async def list_providers():
    order = _ordered_provider_ids(None)
    return {
        "providers": [providers[provider_id].availability() for provider_id in order],
        "default_provider": order[0] if order else None,
        "provider_order": order,
        "prompt_version": PROMPT_ASSETS.version,
    }


@app.post("/api/analyze")
async def analyze_leaf(body: AnalyzeBody, request: Request):
    try:
        image = _read_image(body)
    except ImagePayloadError as exc:
        return _error_response(exc.status_code, str(exc))

    preferred = (body.provider or "").strip().lower() or None
    if preferred and preferred not in providers:
        return _error_response(400, f"provider must be one of: {', '.join(providers)}")

    ordered = [providers[provider_id] for provider_id in _ordered_provider_ids(preferred)]
    try:
        outcome = await _run_until_disconnect(
            request,
            analyze_with_fallback(image, ordered, model_override=body.model),
        )
    except ClientDisconnectedError:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except AllProvidersFailedError as exc:
        logger.error("Leaf analysis failed: %s", exc)
        return _failure_response(
            exc.failures,
            error="Analysis unavailable, please try again.",
            suggested_providers=[item.provider_id for item in exc.failures if not item.rate_limited],
        )

    return _success_payload(outcome)


@app.post("/api/analyze/{provider_id}")
async def analyze_leaf_with_provider(provider_id: str, body: AnalyzeBody, request: Request):
    provider = providers.get(provider_id.strip().lower())
    if provider is None:
        return _error_response(404, f"Unknown provider '{provider_id}'.")

    try:
        image = _read_image(body)
    except ImagePayloadError as exc:
        return _error_response(exc.status_code, str(exc))

    try:
        result = await _run_until_disconnect(
            request,
            provider.analyze(image, model_override=body.model),
        )
    except ClientDisconnectedError:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except VisionProviderError as exc:
        failure = classify_failure(provider, exc)
        logger.error("Leaf analysis with %s failed: %s", provider.route_id, exc)
        return _failure_response(
            [failure],
            error=_user_message(failure),
            suggested_providers=[other for other in _ordered_provider_ids(None) if other != provider.route_id],
        )

    return _success_payload(FallbackOutcome(result=result, provider_id=provider.route_id))


@app.post("/api/report")
async def render_text_report(payload: dict[str, Any] = Body(...)):
    return PlainTextResponse(format_text_report(normalize_analysis(payload)))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("plant_doctor.main:app", host="0.0.0.0", port=8000, reload=True)
