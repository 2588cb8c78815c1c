from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from .leaf_analysis import AnalysisResult
from .vision_providers import (
    ConfigurationError,
    MalformedResponseError,
    ProviderError,
    RateLimitError,
    VisionProviderError,
)

logger = logging.getLogger(__name__)

MIN_PROVIDERS = 2


class VisionAdapter(Protocol):
    route_id: str
    label: str

    async def analyze(self, image: str, *, model_override: str | None = None) -> AnalysisResult: ...


class LeafAnalysisError(RuntimeError):
    pass


@dataclass(frozen=True)
class ProviderFailure:
    provider_id: str
    label: str
    kind: str
    message: str
    setup_guide: str = ""

    @property
    def rate_limited(self) -> bool:
        return self.kind == "rate_limit"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "provider": self.provider_id,
            "label": self.label,
            "kind": self.kind,
            "message": self.message,
        }
        if self.setup_guide:
            payload["setupGuide"] = self.setup_guide
        return payload


class AllProvidersFailedError(LeafAnalysisError):
    def __init__(self, failures: Sequence[ProviderFailure]) -> None:
        self.failures = list(failures)
        summary = "; ".join(f"{item.label}: {item.kind}" for item in self.failures)
        super().__init__(f"Analysis unavailable, every provider failed ({summary}).")

    @property
    def kinds(self) -> list[str]:
        return [item.kind for item in self.failures]

    @property
    def rate_limited(self) -> bool:
        return any(item.rate_limited for item in self.failures)


@dataclass
class FallbackOutcome:
    result: AnalysisResult
    provider_id: str
    failures: list[ProviderFailure] = field(default_factory=list)

    @property
    def fallback_used(self) -> bool:
        return bool(self.failures)


def classify_failure(adapter: VisionAdapter, exc: VisionProviderError) -> ProviderFailure:
    if isinstance(exc, ConfigurationError):
        kind = "configuration"
    elif isinstance(exc, RateLimitError) or (isinstance(exc, ProviderError) and exc.rate_limited):
        kind = "rate_limit"
    elif isinstance(exc, MalformedResponseError):
        kind = "malformed_response"
    else:
        kind = "provider"
    return ProviderFailure(
        provider_id=getattr(adapter, "route_id", "") or exc.provider_id,
        label=getattr(adapter, "label", "") or exc.provider_id,
        kind=kind,
        message=str(exc),
        setup_guide=getattr(exc, "setup_guide", ""),
    )


async def analyze_with_fallback(
    image: str,
    providers: Sequence[VisionAdapter],
    *,
    model_override: str | None = None,
) -> FallbackOutcome:
    """Run ``providers`` one after another until one returns an analysis.

    A no-leaf result is a successful analysis and ends the chain. Each provider
    gets exactly one attempt. ``model_override`` only applies to the first
    provider, since model ids are provider specific.
    """
    if len(providers) < MIN_PROVIDERS:
        raise ValueError(f"At least {MIN_PROVIDERS} providers are required for fallback analysis.")

    failures: list[ProviderFailure] = []
    for index, adapter in enumerate(providers):
        try:
            result = await adapter.analyze(
                image,
                model_override=model_override if index == 0 else None,
            )
        except VisionProviderError as exc:
            failure = classify_failure(adapter, exc)
            failures.append(failure)
            logger.warning(
                "Provider %s failed (%s): %s",
                failure.provider_id,
                failure.kind,
                failure.message,
            )
            continue

        if failures:
            logger.info("Fallback provider %s produced the analysis", adapter.route_id)
        return FallbackOutcome(result=result, provider_id=adapter.route_id, failures=failures)

    raise AllProvidersFailedError(failures)
