from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from .image_payload import ensure_data_url, split_data_url
from .leaf_analysis import AnalysisResult, normalize_analysis
from .model_output import ModelOutputError, clip_for_log, extract_json_object
from .prompt_assets import PromptAssets, build_system_prompt, load_prompt_assets

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "quota",
    "resource_exhausted",
    "too many requests",
)


class VisionProviderError(RuntimeError):
    kind = "provider"

    def __init__(self, message: str, *, provider_id: str = "") -> None:
        super().__init__(message)
        self.provider_id = provider_id


class ConfigurationError(VisionProviderError):
    kind = "configuration"

    def __init__(self, message: str, *, provider_id: str = "", setup_guide: str = "") -> None:
        super().__init__(message, provider_id=provider_id)
        self.setup_guide = setup_guide


class ProviderError(VisionProviderError):
    kind = "provider"

    def __init__(
        self,
        message: str,
        *,
        provider_id: str = "",
        status_code: int | None = None,
        rate_limited: bool = False,
    ) -> None:
        super().__init__(message, provider_id=provider_id)
        self.status_code = status_code
        self.rate_limited = rate_limited


class RateLimitError(ProviderError):
    kind = "rate_limit"

    def __init__(self, message: str, *, provider_id: str = "", status_code: int | None = 429) -> None:
        super().__init__(
            message,
            provider_id=provider_id,
            status_code=status_code,
            rate_limited=True,
        )


class MalformedResponseError(VisionProviderError):
    kind = "malformed_response"

    def __init__(self, message: str, *, provider_id: str = "", raw_text: str = "") -> None:
        super().__init__(message, provider_id=provider_id)
        self.raw_text = raw_text


class _BaseVisionProvider:
    route_id: str = ""
    label: str = ""
    badge: str = ""
    description: str = ""
    cost: str = ""
    api_key_env: str = ""
    api_key_url: str = ""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        default_model: str,
        timeout_seconds: float,
        prompt_assets: PromptAssets | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url.strip().rstrip("/")
        self.default_model = default_model.strip()
        self.timeout_seconds = timeout_seconds
        self.prompt_assets = prompt_assets or load_prompt_assets()
        self.system_prompt = build_system_prompt(self.prompt_assets)
        self.client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.default_model)

    @property
    def setup_guide(self) -> str:
        return (
            f"Add {self.api_key_env}=<your key> to your .env file and restart the server. "
            f"Keys are issued at {self.api_key_url}."
        )

    def availability(self) -> dict[str, Any]:
        return {
            "id": self.route_id,
            "label": self.label,
            "badge": self.badge,
            "description": self.description,
            "cost": self.cost,
            "configured": bool(self.configured),
            "default_model": self.default_model,
        }

    async def analyze(self, image: str, *, model_override: str | None = None) -> AnalysisResult:
        if not self.api_key:
            raise ConfigurationError(
                f"{self.label} provider is not configured (missing {self.api_key_env}).",
                provider_id=self.route_id,
                setup_guide=self.setup_guide,
            )

        model_used = (model_override or self.default_model).strip()
        if not model_used:
            raise ConfigurationError(
                f"{self.label} provider is not configured (missing model).",
                provider_id=self.route_id,
                setup_guide=self.setup_guide,
            )

        if not self.base_url.startswith("http"):
            raise ConfigurationError(
                f"Invalid {self.label} base URL.",
                provider_id=self.route_id,
                setup_guide=self.setup_guide,
            )

        url, headers, request_payload = self._build_request(image=image, model_used=model_used)
        logger.info("Sending leaf image to %s (model=%s)", self.label, model_used)
        response = await self._post_json(url=url, headers=headers, request_payload=request_payload)
        if response.status_code >= 400:
            raise self._classify_http_error(response)

        try:
            payload = response.json()
        except (ValueError, RecursionError) as exc:
            raise ProviderError(
                f"{self.label} response was not valid JSON: {exc}",
                provider_id=self.route_id,
                status_code=response.status_code,
            ) from exc

        text = self._extract_text(payload)
        try:
            raw_analysis = extract_json_object(text)
        except ModelOutputError as exc:
            logger.warning("%s returned unparseable output: %s", self.label, clip_for_log(text))
            raise MalformedResponseError(
                f"{self.label} response did not contain a JSON analysis: {exc}",
                provider_id=self.route_id,
                raw_text=text,
            ) from exc

        return normalize_analysis(
            raw_analysis,
            provider=self.label,
            cost=self.cost,
            model=model_used,
        )

    def _build_request(self, *, image: str, model_used: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        raise NotImplementedError

    def _extract_text(self, payload: Any) -> str:
        raise NotImplementedError

    async def _post_json(
        self,
        *,
        url: str,
        headers: dict[str, str],
        request_payload: dict[str, Any],
    ) -> httpx.Response:
        normalized_headers = dict(headers)
        normalized_headers.setdefault("Accept", "application/json")
        normalized_headers.setdefault("User-Agent", "PlantDoctor/1.0")

        try:
            if self.client is not None:
                return await self.client.post(
                    url,
                    headers=normalized_headers,
                    json=request_payload,
                    timeout=self.timeout_seconds,
                )
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await client.post(url, headers=normalized_headers, json=request_payload)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"{self.label} request timed out after {self.timeout_seconds:g}s.",
                provider_id=self.route_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"{self.label} HTTP request failed: {exc}",
                provider_id=self.route_id,
            ) from exc

    def _classify_http_error(self, response: httpx.Response) -> VisionProviderError:
        detail = _extract_error_detail(response)
        message = f"{self.label} request failed ({response.status_code}): {detail}"
        logger.warning("%s", message)
        if _looks_rate_limited(response.status_code, detail):
            return RateLimitError(message, provider_id=self.route_id, status_code=response.status_code)
        if response.status_code in (401, 403):
            return ConfigurationError(
                f"{self.label} rejected the API key ({response.status_code}): {detail}",
                provider_id=self.route_id,
                setup_guide=self.setup_guide,
            )
        return ProviderError(message, provider_id=self.route_id, status_code=response.status_code)


class GroqVisionProvider(_BaseVisionProvider):
    route_id = "groq"
    label = "Groq Llama 4 Scout"
    badge = "FAST"
    description = "Low-latency inference (default)"
    cost = "Free"
    api_key_env = "GROQ_API_KEY"
    api_key_url = "https://console.groq.com/keys"

    @classmethod
    def from_env(cls, *, prompt_assets: PromptAssets | None = None) -> "GroqVisionProvider":
        return cls(
            api_key=os.getenv("GROQ_API_KEY", ""),
            base_url=os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1"),
            default_model=os.getenv("GROQ_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct"),
            timeout_seconds=_parse_timeout_seconds(
                os.getenv("VISION_REQUEST_TIMEOUT_SECONDS"),
                fallback=45.0,
            ),
            prompt_assets=prompt_assets,
        )

    def _build_request(self, *, image: str, model_used: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        request_payload = {
            "model": model_used,
            "temperature": 0.2,
            "max_tokens": 1500,
            "messages": [
                {
                    "role": "system",
                    "content": self.system_prompt,
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.prompt_assets.user_instruction},
                        {
                            "type": "image_url",
                            "image_url": {"url": ensure_data_url(image)},
                        },
                    ],
                },
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        return _build_chat_completions_url(self.base_url), headers, request_payload

    def _extract_text(self, payload: Any) -> str:
        return _extract_openai_text(payload, provider=self)


class GeminiVisionProvider(_BaseVisionProvider):
    route_id = "gemini"
    label = "Gemini 2.5 Flash"
    badge = "ACCURATE"
    description = "High-accuracy vision model (free tier limits apply)"
    cost = "Free tier"
    api_key_env = "GOOGLE_GENERATIVE_AI_API_KEY"
    api_key_url = "https://aistudio.google.com/app/apikey"

    @classmethod
    def from_env(cls, *, prompt_assets: PromptAssets | None = None) -> "GeminiVisionProvider":
        return cls(
            api_key=os.getenv("GOOGLE_GENERATIVE_AI_API_KEY") or os.getenv("GEMINI_API_KEY", ""),
            base_url=os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
            default_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            timeout_seconds=_parse_timeout_seconds(
                os.getenv("VISION_REQUEST_TIMEOUT_SECONDS"),
                fallback=45.0,
            ),
            prompt_assets=prompt_assets,
        )

    def _build_request(self, *, image: str, model_used: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        media_type, encoded = split_data_url(image)
        request_payload = {
            "systemInstruction": {
                "parts": [{"text": self.system_prompt}],
            },
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": self.prompt_assets.user_instruction},
                        {"inlineData": {"mimeType": media_type, "data": encoded}},
                    ],
                }
            ],
            "generationConfig": {
                "temperature": 0.1,
                "maxOutputTokens": 2000,
            },
        }
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}/models/{model_used}:generateContent"
        return url, headers, request_payload

    def _extract_text(self, payload: Any) -> str:
        return _extract_gemini_text(payload, provider=self)


def build_default_providers(*, prompt_assets: PromptAssets | None = None) -> dict[str, _BaseVisionProvider]:
    assets = prompt_assets or load_prompt_assets()
    providers: dict[str, _BaseVisionProvider] = {
        "groq": GroqVisionProvider.from_env(prompt_assets=assets),
        "gemini": GeminiVisionProvider.from_env(prompt_assets=assets),
    }
    return providers


def _parse_timeout_seconds(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        parsed = float(raw_value)
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def _build_chat_completions_url(base_url: str) -> str:
    normalized = base_url.strip().rstrip("/")
    if normalized.endswith("/chat/completions"):
        return normalized
    return f"{normalized}/chat/completions"


def _looks_rate_limited(status_code: int, detail: str) -> bool:
    if status_code == 429:
        return True
    lowered = detail.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def _extract_openai_text(payload: Any, *, provider: _BaseVisionProvider) -> str:
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"Invalid {provider.label} response payload.", provider_id=provider.route_id)
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise MalformedResponseError(
            f"{provider.label} response does not contain choices.",
            provider_id=provider.route_id,
        )
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        raise MalformedResponseError(
            f"{provider.label} response missing message payload.",
            provider_id=provider.route_id,
        )

    content = message.get("content")
    if isinstance(content, str) and content.strip():
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
                chunks.append(item["text"])
        if chunks:
            return "\n".join(chunks)
    raise MalformedResponseError(
        f"{provider.label} response did not include text content.",
        provider_id=provider.route_id,
    )


def _extract_gemini_text(payload: Any, *, provider: _BaseVisionProvider) -> str:
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"Invalid {provider.label} response payload.", provider_id=provider.route_id)

    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = payload.get("promptFeedback")
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            raise ProviderError(
                f"{provider.label} blocked the request ({block_reason}).",
                provider_id=provider.route_id,
            )
        raise MalformedResponseError(
            f"{provider.label} response does not contain candidates.",
            provider_id=provider.route_id,
        )

    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    chunks: list[str] = []
    if isinstance(parts, list):
        for part in parts:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                chunks.append(part["text"])
    if not chunks:
        raise MalformedResponseError(
            f"{provider.label} response did not include text content.",
            provider_id=provider.route_id,
        )
    return "\n".join(chunks)


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except (ValueError, RecursionError):
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message:
                code = error.get("code") or error.get("status")
                if isinstance(code, str) and code and code.lower() not in message.lower():
                    return f"{message} [{code}]"
                return message
        if isinstance(error, str) and error:
            return error
        detail = payload.get("detail")
        if isinstance(detail, str) and detail:
            return detail
    body = response.text.strip()
    return body[:300] if body else "Unknown provider error"
