"""Environment-driven settings for the lookup chain and the AI model stage."""

from __future__ import annotations

import os
from dataclasses import dataclass


_PLACEHOLDER_API_KEY = "your-openai-api-key"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class AIConfig:
    api_key: str = ""
    vision_model: str = "gpt-4o"
    text_model: str = "gpt-4o-mini"
    max_tokens: int = 500
    temperature: float = 0.3

    @property
    def is_configured(self) -> bool:
        key = (self.api_key or "").strip()
        return bool(key) and key != _PLACEHOLDER_API_KEY

    @classmethod
    def from_env(cls) -> "AIConfig":
        return cls(
            api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            vision_model=os.getenv("OPENAI_VISION_MODEL", "gpt-4o").strip() or "gpt-4o",
            text_model=os.getenv("OPENAI_TEXT_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
            max_tokens=_env_int("OPENAI_MAX_TOKENS", 500),
            temperature=_env_float("OPENAI_TEMPERATURE", 0.3),
        )


@dataclass
class LookupConfig:
    # Base URL of the warehouse web app serving /api/warehouse/barcodes; empty disables that stage.
    api_base_url: str = ""
    openfoodfacts_base_url: str = "https://world.openfoodfacts.org"
    timeout_seconds: float = 10.0
    user_agent: str = "SmartWarehouseIntake/1.0 (barcode lookup)"

    @classmethod
    def from_env(cls) -> "LookupConfig":
        return cls(
            api_base_url=os.getenv("INTAKE_API_BASE_URL", "").strip().rstrip("/"),
            openfoodfacts_base_url=(
                os.getenv("OPENFOODFACTS_BASE_URL", "https://world.openfoodfacts.org").strip().rstrip("/")
            ),
            timeout_seconds=_env_float("INTAKE_HTTP_TIMEOUT", 10.0),
        )
