"""Barcode -> product recognition through an ordered chain of resolvers.

Default order:
  Taiwan e-invoice decode -> warehouse barcode database -> static lookup table
  -> OpenFoodFacts -> AI text model -> GS1 prefix heuristic

Each resolver answers `try_resolve(barcode)` with a result or None; the first
answer wins. Network resolvers log and swallow their own I/O errors so a
flaky service only costs one stage.
"""

from __future__ import annotations

import re
from types import MappingProxyType
from urllib.parse import quote
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

import requests

from intake.ai_recognition import (
    ItemRecognitionResult,
    RecognitionError,
    create_openai_client,
    describe_barcode,
)
from intake.config import AIConfig, LookupConfig
from intake.log import log_debug, log_info, log_warn
from intake.tw_einvoice_qr import (
    decode_taiwan_einvoice,
    extract_items_from_taiwan_invoice,
    is_taiwan_einvoice,
)


class BarcodeLookupError(Exception):
    """A lookup service could not be reached or answered garbage."""


class BarcodeResolver(Protocol):
    name: str

    def try_resolve(self, barcode: str) -> Optional[ItemRecognitionResult]:
        ...


DEFAULT_BARCODE_LOOKUP: Mapping[str, ItemRecognitionResult] = MappingProxyType(
    {
        "4710901898748": ItemRecognitionResult(
            name="Taiwan Pure Water Wet Wipes",
            description=(
                "Taiwan-made pure water wet wipes with ultra-high filtration, no fluorescent agents, "
                "no harmful chemicals. Safe for babies and household use."
            ),
            category="Personal Care",
            subcategory="Wet Wipes",
            confidence=95,
            source="lookup_table",
        ),
        "7622300761349": ItemRecognitionResult(
            name="Mini Oreo Original Cookies",
            description="Mini Oreo Original Cookies - bite-sized chocolate cookies with vanilla cream filling.",
            category="Food & Beverages",
            subcategory="Cookies",
            confidence=95,
            source="lookup_table",
        ),
        "0123456789012": ItemRecognitionResult(
            name="Generic Consumer Product",
            description="Standard EAN-13 consumer product. Please verify product details manually.",
            category="Miscellaneous",
            subcategory="General",
            confidence=60,
            source="lookup_table",
        ),
    }
)


def detect_barcode_format(barcode: str) -> str:
    code = barcode or ""
    numeric = code.isdigit()
    if numeric and len(code) == 13:
        return "EAN-13"
    if numeric and len(code) == 12:
        return "UPC-A"
    if numeric and len(code) == 8:
        return "EAN-8"
    if numeric and len(code) <= 6:
        return "UPC-E"
    if code and re.fullmatch(r"[A-Z0-9]+", code):
        return "Code 39"
    return "Unknown"


def _get_json(url: str, *, params: Optional[dict[str, Any]] = None, config: LookupConfig) -> dict[str, Any]:
    try:
        resp = requests.get(
            url,
            params=params,
            headers={"User-Agent": config.user_agent, "Accept": "application/json"},
            timeout=config.timeout_seconds,
        )
        resp.raise_for_status()
        data = resp.json()
    except requests.RequestException as e:
        raise BarcodeLookupError(f"Request to {url} failed: {e}") from e
    except ValueError as e:
        raise BarcodeLookupError(f"Invalid JSON from {url}: {e}") from e
    if not isinstance(data, dict):
        raise BarcodeLookupError(f"Unexpected response shape from {url}")
    return data


def _to_confidence(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


class TaiwanEInvoiceResolver:
    """Scanned strings that are really e-invoice QR payloads."""

    name = "taiwan_einvoice"

    def __init__(self, user_language: str = "en") -> None:
        self.user_language = user_language

    def try_resolve(self, barcode: str) -> Optional[ItemRecognitionResult]:
        if not is_taiwan_einvoice(barcode, self.user_language):
            return None

        record = decode_taiwan_einvoice(barcode)
        if not record.is_valid:
            log_debug(f"Taiwan e-invoice decode failed: {record.error}")
            return None
        # Without a real invoice number this is an ordinary barcode the lenient gate let through.
        if record.is_defaulted("invoice_number"):
            return None

        items = extract_items_from_taiwan_invoice(record)
        if not items:
            return None
        item = items[0]
        return ItemRecognitionResult(
            name=item.name,
            description=item.description,
            category=item.category,
            confidence=95,
            language=self.user_language,
            source=self.name,
        )


class LocalDatabaseResolver:
    """Barcodes already confirmed in the warehouse database (via its REST API)."""

    name = "database"

    def __init__(self, config: LookupConfig) -> None:
        self.config = config

    def try_resolve(self, barcode: str) -> Optional[ItemRecognitionResult]:
        if not self.config.api_base_url:
            return None
        try:
            payload = _get_json(
                f"{self.config.api_base_url}/api/warehouse/barcodes",
                params={"barcode": barcode},
                config=self.config,
            )
        except BarcodeLookupError as e:
            log_warn(f"Database barcode lookup failed: {e}")
            return None

        data = payload.get("data")
        if not payload.get("found") or not isinstance(data, dict) or not data.get("name"):
            return None
        return ItemRecognitionResult(
            name=data["name"],
            description=data.get("description") or "",
            category=data.get("category") or "Miscellaneous",
            subcategory=data.get("subcategory") or "",
            confidence=_to_confidence(data.get("confidence"), 90),
            source=self.name,
        )


class LookupTableResolver:
    """Static, read-only barcode table supplied by the caller."""

    name = "lookup_table"

    def __init__(self, table: Mapping[str, ItemRecognitionResult] = DEFAULT_BARCODE_LOOKUP) -> None:
        self.table = table

    def try_resolve(self, barcode: str) -> Optional[ItemRecognitionResult]:
        return self.table.get(barcode)


class OpenFoodFactsResolver:
    name = "openfoodfacts"

    def __init__(self, config: LookupConfig) -> None:
        self.config = config

    def try_resolve(self, barcode: str) -> Optional[ItemRecognitionResult]:
        code = (barcode or "").strip()
        if not code:
            return None
        try:
            payload = _get_json(
                f"{self.config.openfoodfacts_base_url}/api/v0/product/{quote(code, safe='')}.json", config=self.config
            )
        except BarcodeLookupError as e:
            log_warn(f"OpenFoodFacts lookup failed: {e}")
            return None

        product = payload.get("product")
        if payload.get("status") != 1 or not isinstance(product, dict):
            return None

        tags = product.get("categories_tags")
        tags = [t for t in tags if isinstance(t, str)] if isinstance(tags, list) else []
        return ItemRecognitionResult(
            name=product.get("product_name") or product.get("product_name_en") or "Unknown Product",
            description=(
                product.get("generic_name") or product.get("product_name") or f"Product with barcode {code}"
            ),
            category=tags[0].replace("-", " ") if tags else "Miscellaneous",
            subcategory=tags[1].replace("-", " ") if len(tags) > 1 else "General",
            confidence=85,
            source=self.name,
        )


def save_barcode_to_database(barcode: str, result: ItemRecognitionResult, config: LookupConfig) -> bool:
    """POST an AI answer back to the warehouse database as an unverified mapping."""
    if not config.api_base_url:
        return False
    url = f"{config.api_base_url}/api/warehouse/barcodes"
    body = {
        "barcode": barcode,
        "name": result.name,
        "description": result.description,
        "category": result.category,
        "subcategory": result.subcategory,
        "confidence": result.confidence,
        "source": "ai",
        "isVerified": False,
    }
    try:
        resp = requests.post(url, json=body, timeout=config.timeout_seconds)
        resp.raise_for_status()
    except requests.RequestException as e:
        log_warn(f"Failed to save barcode {barcode} to database: {e}")
        return False
    log_info(f"Barcode saved to database: {barcode} -> {result.name}")
    return True


class AIModelResolver:
    """Ask the text model; skipped when no API key is configured."""

    name = "ai"
    save_threshold = 70

    def __init__(
        self,
        ai_config: AIConfig,
        lookup_config: LookupConfig,
        user_language: str = "en",
        *,
        client: Any = None,
    ) -> None:
        self.ai_config = ai_config
        self.lookup_config = lookup_config
        self.user_language = user_language
        self._client = client

    def try_resolve(self, barcode: str) -> Optional[ItemRecognitionResult]:
        if not self.ai_config.is_configured:
            log_debug("OpenAI API key not configured; skipping AI barcode stage")
            return None
        try:
            if self._client is None:
                self._client = create_openai_client(self.ai_config)
            result = describe_barcode(
                barcode,
                detect_barcode_format(barcode),
                self.user_language,
                client=self._client,
                config=self.ai_config,
            )
        except RecognitionError as e:
            log_warn(f"AI barcode recognition failed: {e}")
            return None
        except Exception as e:  # SDK errors (auth, rate limit, network) fall through to the heuristic
            log_warn(f"AI barcode recognition error: {type(e).__name__}: {e}")
            return None

        if result.confidence > self.save_threshold:
            save_barcode_to_database(barcode, result, self.lookup_config)
        return result


class PrefixFallbackResolver:
    """Last resort keyed on the GS1 prefix; always answers."""

    name = "prefix_fallback"

    def try_resolve(self, barcode: str) -> Optional[ItemRecognitionResult]:
        if barcode.startswith("471"):
            return ItemRecognitionResult(
                name=f"Taiwan Product ({barcode})",
                description=f"Taiwan-produced product with barcode {barcode}. 471 prefix indicates Taiwan origin.",
                category="Miscellaneous",
                subcategory="Taiwan Product",
                confidence=70,
                source=self.name,
            )
        if barcode.startswith("762"):
            return ItemRecognitionResult(
                name=f"Consumer Product ({barcode})",
                description=(
                    f"International consumer product with barcode {barcode}. "
                    "762 prefix indicates major brand products across various categories."
                ),
                category="Miscellaneous",
                subcategory="General",
                confidence=75,
                source=self.name,
            )
        return ItemRecognitionResult(
            name=f"Product {barcode}",
            description=f"{detect_barcode_format(barcode)} barcode product. Please verify product details manually.",
            category="Miscellaneous",
            confidence=50,
            source=self.name,
        )


def build_default_resolvers(
    user_language: str = "en",
    *,
    lookup_config: Optional[LookupConfig] = None,
    ai_config: Optional[AIConfig] = None,
    table: Mapping[str, ItemRecognitionResult] = DEFAULT_BARCODE_LOOKUP,
    ai_client: Any = None,
) -> list[BarcodeResolver]:
    lookup_config = lookup_config or LookupConfig.from_env()
    ai_config = ai_config or AIConfig.from_env()
    return [
        TaiwanEInvoiceResolver(user_language),
        LocalDatabaseResolver(lookup_config),
        LookupTableResolver(table),
        OpenFoodFactsResolver(lookup_config),
        AIModelResolver(ai_config, lookup_config, user_language, client=ai_client),
        PrefixFallbackResolver(),
    ]


def recognize_item_from_barcode(
    barcode: str,
    user_language: str = "en",
    *,
    resolvers: Optional[Sequence[BarcodeResolver]] = None,
) -> ItemRecognitionResult:
    """Run the resolver chain until one stage answers."""
    code = (barcode or "").strip()
    chain: Iterable[BarcodeResolver] = resolvers if resolvers is not None else build_default_resolvers(user_language)
    log_debug(f"Processing barcode len={len(code)} format={detect_barcode_format(code)}")

    for resolver in chain:
        result = resolver.try_resolve(code)
        if result is not None:
            log_debug(f"Barcode resolved by {resolver.name}: {result.name} ({result.confidence})")
            return result

    # Only reachable with a custom chain lacking PrefixFallbackResolver.
    return PrefixFallbackResolver().try_resolve(code)  # type: ignore[return-value]
