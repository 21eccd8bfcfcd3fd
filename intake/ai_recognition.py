"""Item recognition through an OpenAI chat model (vision and text prompts).

All entry points return an `ItemRecognitionResult`; a missing API key or a
failed call produces a low-confidence placeholder instead of raising.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from intake.config import AIConfig
from intake.language import get_language_specific_prompt
from intake.log import log_debug, log_warn


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_NOT_CONFIGURED_DESCRIPTION = "AI recognition not available. Please configure your OpenAI API key."

_IMAGE_PROMPT = (
    "Analyze this image and identify the item. IMPORTANT: Include key identifying features in the name "
    "such as brand, color, size, material, or distinctive features for easy searching later. Provide a "
    "name, description, and suggest a category based on the ITEM TYPE (like Electronics, Drinkware, "
    "Cookware, Tools, Clothing, Books, etc. - NOT the location where it's stored). Also suggest a "
    "subcategory if applicable.\n\n"
    "CRITICAL: {language} ALL fields (name, description, category, subcategory) MUST be in the specified "
    "language. Do not mix languages.\n\n"
    "Respond in JSON format with fields: name (include brand/color/features), description, category "
    "(item type), subcategory (specific item type), confidence (0-100)."
)

_BARCODE_IMAGE_PROMPT = (
    "Analyze this image that contains a barcode. Please: 1) Read the barcode number if visible, "
    "2) Analyze the product packaging, text, and visual elements, 3) Identify the product type based on "
    "both barcode and visual information. Consider that barcodes starting with 471 are Taiwan-produced "
    "products. Respond in JSON format with fields: barcode (if readable), name, description, category "
    "(item type), subcategory (specific item type), confidence (0-100), packagingAnalysis."
)

_BARCODE_SYSTEM_PROMPT = (
    "You are an expert barcode analyst with access to comprehensive product databases. You identify "
    "products by their barcodes using GS1 country codes and manufacturer prefixes, common consumer "
    "products and brands, and regional product variations."
)

GS1_COUNTRY_PREFIXES = (
    ("471", "Taiwan"),
    ("762", "International (various countries)"),
    ("690-699", "China"),
    ("00-13", "USA/Canada"),
    ("20-29", "Restricted circulation"),
    ("30-37", "France"),
    ("400-440", "Germany"),
    ("450-459, 490-499", "Japan"),
    ("460-469", "Russia"),
    ("500-509", "UK"),
    ("57", "Denmark"),
    ("64", "Finland"),
    ("70", "Norway"),
    ("73", "Sweden"),
    ("750", "Mexico"),
    ("76", "Switzerland"),
    ("789-790", "Brazil"),
    ("80-83", "Italy"),
    ("84", "Spain"),
    ("87", "Netherlands"),
    ("880", "South Korea"),
    ("885", "Thailand"),
    ("888", "Singapore"),
    ("890", "India"),
    ("893", "Vietnam"),
    ("899", "Indonesia"),
    ("90-91", "Austria"),
    ("93", "Australia"),
    ("94", "New Zealand"),
    ("955", "Malaysia"),
    ("958", "Macau"),
)


@dataclass(frozen=True)
class ItemRecognitionResult:
    name: str
    description: str
    category: str
    confidence: int
    subcategory: Optional[str] = None
    language: Optional[str] = None
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "confidence": self.confidence,
        }
        if self.subcategory is not None:
            out["subcategory"] = self.subcategory
        if self.language is not None:
            out["language"] = self.language
        if self.source:
            out["source"] = self.source
        return out


class RecognitionError(Exception):
    """The model call failed or returned nothing."""


def create_openai_client(config: AIConfig) -> Any:
    try:
        from openai import OpenAI
    except ImportError:
        raise ImportError("openai SDK is required: pip install openai") from None
    return OpenAI(api_key=config.api_key)


def _to_confidence(value: Any, default: int) -> int:
    try:
        conf = int(float(value))
    except (TypeError, ValueError):
        return default
    if conf <= 0:
        return default
    return min(conf, 100)


def parse_recognition_json(content: str, *, source: str = "ai") -> ItemRecognitionResult:
    """Parse the first JSON object in a model reply.

    Raises ValueError when no parseable object is present.
    """
    text = (content or "").strip()
    m = _JSON_OBJECT_RE.search(text)
    if m:
        text = m.group(0)
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("model reply is not a JSON object")

    return ItemRecognitionResult(
        name=data.get("name") or "Unknown Item",
        description=data.get("description") or "No description available",
        category=data.get("category") or "Miscellaneous",
        subcategory=data.get("subcategory") or None,
        confidence=_to_confidence(data.get("confidence"), 50),
        source=source,
    )


def fallback_from_content(content: str, barcode: str) -> ItemRecognitionResult:
    """Best guess from a free-text reply that did not contain JSON."""
    lower = (content or "").lower()
    if "taiwan" in lower or "wet wipe" in lower or "tissue" in lower:
        return ItemRecognitionResult(
            name="Taiwan Product",
            description=content,
            category="Personal Care",
            subcategory="Wet Wipes",
            confidence=60,
            source="ai",
        )
    return ItemRecognitionResult(
        name=f"Product {barcode}",
        description=content,
        category="Miscellaneous",
        confidence=40,
        source="ai",
    )


def _complete(client: Any, *, model: str, messages: list[dict[str, Any]], config: AIConfig) -> str:
    response = client.chat.completions.create(
        model=model,
        messages=messages,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
    )
    choices = getattr(response, "choices", None) or []
    content = choices[0].message.content if choices else None
    if not content:
        raise RecognitionError("No response from AI")
    return content


def _image_message(prompt: str, image_base64: str) -> list[dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_base64}"}},
            ],
        }
    ]


def _recognize_image(
    prompt: str,
    image_base64: str,
    *,
    client: Any,
    config: Optional[AIConfig],
    failure_description: str,
) -> ItemRecognitionResult:
    config = config or AIConfig.from_env()
    if not config.is_configured:
        log_warn("OpenAI API key not configured")
        return ItemRecognitionResult(
            name="Unknown Item",
            description=_NOT_CONFIGURED_DESCRIPTION,
            category="Miscellaneous",
            confidence=0,
        )

    try:
        client = client or create_openai_client(config)
        content = _complete(
            client, model=config.vision_model, messages=_image_message(prompt, image_base64), config=config
        )
    except Exception as e:
        log_warn(f"AI image recognition failed: {e}")
        return ItemRecognitionResult(
            name="Unknown Item", description=failure_description, category="Miscellaneous", confidence=0
        )

    try:
        return parse_recognition_json(content)
    except ValueError:
        log_debug(f"AI reply was not JSON (len={len(content)})")
        return ItemRecognitionResult(
            name="Unknown Item", description=content, category="Miscellaneous", confidence=30, source="ai"
        )


def recognize_item_from_image(
    image_base64: str,
    user_language: str = "en",
    *,
    client: Any = None,
    config: Optional[AIConfig] = None,
) -> ItemRecognitionResult:
    prompt = _IMAGE_PROMPT.format(language=get_language_specific_prompt(user_language))
    return _recognize_image(
        prompt, image_base64, client=client, config=config, failure_description="Unable to recognize item"
    )


def recognize_item_from_barcode_image(
    image_base64: str,
    *,
    client: Any = None,
    config: Optional[AIConfig] = None,
) -> ItemRecognitionResult:
    return _recognize_image(
        _BARCODE_IMAGE_PROMPT,
        image_base64,
        client=client,
        config=config,
        failure_description="Unable to recognize item from image",
    )


def build_barcode_prompt(barcode: str, barcode_format: str, user_language: str = "en") -> str:
    prefixes = "\n".join(f"- {prefix} = {country}" for prefix, country in GS1_COUNTRY_PREFIXES)
    return (
        f"Analyze this barcode: {barcode} (Format: {barcode_format}).\n\n"
        f"GS1 country codes:\n{prefixes}\n\n"
        "If you recognize the specific product, include brand, color, size, flavor or other key features "
        "in the name. If you only know the brand, category or country of origin, say what you know.\n\n"
        f"CRITICAL: {get_language_specific_prompt(user_language)} ALL fields (name, description, category, "
        "subcategory) MUST be in the specified language. Do not mix languages.\n\n"
        "Respond in JSON format with fields: name, description, category, subcategory, confidence (0-100)."
    )


def describe_barcode(
    barcode: str,
    barcode_format: str,
    user_language: str = "en",
    *,
    client: Any,
    config: AIConfig,
) -> ItemRecognitionResult:
    """Ask the text model about a barcode.

    Raises RecognitionError (or the SDK's error) when the call fails; a reply
    without JSON is turned into a content-based guess.
    """
    messages = [
        {"role": "system", "content": _BARCODE_SYSTEM_PROMPT},
        {"role": "user", "content": build_barcode_prompt(barcode, barcode_format, user_language)},
    ]
    content = _complete(client, model=config.text_model, messages=messages, config=config)
    try:
        return parse_recognition_json(content)
    except ValueError:
        log_debug(f"AI barcode reply was not JSON (len={len(content)})")
        return fallback_from_content(content, barcode)
