from __future__ import annotations

import logging
import os
from dataclasses import dataclass

DEFAULT_PROVIDER_ORDER = ("groq", "gemini")
DEFAULT_MAX_IMAGE_MB = 10.0


@dataclass(frozen=True)
class AppConfig:
    provider_order: tuple[str, ...] = DEFAULT_PROVIDER_ORDER
    max_image_bytes: int = int(DEFAULT_MAX_IMAGE_MB * 1024 * 1024)
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> "AppConfig":
        max_image_mb = _parse_positive_float(
            os.getenv("PLANT_DOCTOR_MAX_IMAGE_MB"),
            fallback=DEFAULT_MAX_IMAGE_MB,
        )
        return cls(
            provider_order=_parse_csv(
                os.getenv("PLANT_DOCTOR_PROVIDER_ORDER"),
                fallback=DEFAULT_PROVIDER_ORDER,
            ),
            max_image_bytes=int(max_image_mb * 1024 * 1024),
            log_level=_parse_log_level(os.getenv("PLANT_DOCTOR_LOG_LEVEL")),
            cors_origins=_parse_csv(os.getenv("PLANT_DOCTOR_CORS_ORIGINS"), fallback=("*",)),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_csv(raw_value: str | None, *, fallback: tuple[str, ...]) -> tuple[str, ...]:
    if raw_value is None:
        return fallback
    items = tuple(item.strip().lower() for item in raw_value.split(",") if item.strip())
    return items or fallback


def _parse_positive_float(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        parsed = float(raw_value)
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def _parse_log_level(raw_value: str | None) -> str:
    value = (raw_value or "INFO").strip().upper()
    if value in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        return value
    return "INFO"
