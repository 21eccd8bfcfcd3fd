import sys
import unittest
from pathlib import Path
from types import MappingProxyType, SimpleNamespace
from unittest.mock import patch

import requests


# Ensure repo root is on sys.path so we can import `intake.*`
_REPO_ROOT = Path(__file__).resolve().parents[2]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


from intake.ai_recognition import ItemRecognitionResult  # noqa: E402
from intake.barcode_lookup import (  # noqa: E402
    DEFAULT_BARCODE_LOOKUP,
    AIModelResolver,
    LocalDatabaseResolver,
    LookupTableResolver,
    OpenFoodFactsResolver,
    PrefixFallbackResolver,
    TaiwanEInvoiceResolver,
    build_default_resolvers,
    detect_barcode_format,
    recognize_item_from_barcode,
    save_barcode_to_database,
)
from intake.config import AIConfig, LookupConfig  # noqa: E402


HEADER_QR = "AB12345678" + "1130315" + "1234" + "00002710" + "00002AF8" + "87654321" + "12345678" + "A" * 24


class _FakeResponse:
    def __init__(self, *, json_data=None, status_code: int = 200):
        self._json_data = json_data
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._json_data is None:
            raise ValueError("No JSON object could be decoded")
        return self._json_data


class _FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(content=None, error=None):
    completions = _FakeCompletions(content=content, error=error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class _StaticResolver:
    def __init__(self, name, result):
        self.name = name
        self.result = result
        self.calls = 0

    def try_resolve(self, barcode):
        self.calls += 1
        return self.result


WAREHOUSE = LookupConfig(api_base_url="http://warehouse.test", openfoodfacts_base_url="http://off.test")
OFFLINE = LookupConfig(api_base_url="", openfoodfacts_base_url="http://off.test")


class TestDetectFormat(unittest.TestCase):
    def test_formats(self) -> None:
        self.assertEqual(detect_barcode_format("4710901898748"), "EAN-13")
        self.assertEqual(detect_barcode_format("012345678905"), "UPC-A")
        self.assertEqual(detect_barcode_format("96385074"), "EAN-8")
        self.assertEqual(detect_barcode_format("123456"), "UPC-E")
        self.assertEqual(detect_barcode_format("11406AB12345678"), "Code 39")
        self.assertEqual(detect_barcode_format("abc-123"), "Unknown")
        self.assertEqual(detect_barcode_format(""), "Unknown")


class TestTaiwanEInvoiceResolver(unittest.TestCase):
    def test_invoice_payload_resolves(self) -> None:
        result = TaiwanEInvoiceResolver("zh-TW").try_resolve(HEADER_QR)

        self.assertIsNotNone(result)
        self.assertEqual(result.name, "台灣商品購買")
        self.assertEqual(result.category, "Taiwan Import")
        self.assertEqual(result.confidence, 95)
        self.assertEqual(result.language, "zh-TW")
        self.assertEqual(result.source, "taiwan_einvoice")

    def test_product_barcode_is_not_swallowed_in_lenient_mode(self) -> None:
        # The zh-TW gate accepts it, but no invoice number can be read.
        self.assertIsNone(TaiwanEInvoiceResolver("zh-TW").try_resolve("4710901898748"))

    def test_strict_mode_rejects_product_barcode(self) -> None:
        self.assertIsNone(TaiwanEInvoiceResolver("en").try_resolve("7622300761349"))


class TestLocalDatabaseResolver(unittest.TestCase):
    def test_found(self) -> None:
        payload = {"found": True, "data": {"name": "Whole Milk", "category": "Dairy", "description": "1L"}}
        with patch("requests.get", return_value=_FakeResponse(json_data=payload)) as get:
            result = LocalDatabaseResolver(WAREHOUSE).try_resolve("4710000000001")

        self.assertEqual(get.call_count, 1)
        self.assertEqual(get.call_args.args[0], "http://warehouse.test/api/warehouse/barcodes")
        self.assertEqual(get.call_args.kwargs["params"], {"barcode": "4710000000001"})
        self.assertEqual(result.name, "Whole Milk")
        self.assertEqual(result.category, "Dairy")
        self.assertEqual(result.confidence, 90)
        self.assertEqual(result.source, "database")

    def test_confidence_from_database(self) -> None:
        for stored, expected in (("75", 75), (82.5, 82), ("high", 90), (None, 90)):
            with self.subTest(stored=stored):
                payload = {"found": True, "data": {"name": "Whole Milk", "confidence": stored}}
                with patch("requests.get", return_value=_FakeResponse(json_data=payload)):
                    result = LocalDatabaseResolver(WAREHOUSE).try_resolve("4710000000001")
                self.assertEqual(result.confidence, expected)

    def test_not_found(self) -> None:
        with patch("requests.get", return_value=_FakeResponse(json_data={"found": False})):
            self.assertIsNone(LocalDatabaseResolver(WAREHOUSE).try_resolve("4710000000001"))

    def test_found_without_name(self) -> None:
        with patch("requests.get", return_value=_FakeResponse(json_data={"found": True, "data": {}})):
            self.assertIsNone(LocalDatabaseResolver(WAREHOUSE).try_resolve("4710000000001"))

    def test_network_failure(self) -> None:
        with patch("requests.get", side_effect=requests.ConnectionError("down")):
            self.assertIsNone(LocalDatabaseResolver(WAREHOUSE).try_resolve("4710000000001"))

    def test_disabled_without_base_url(self) -> None:
        with patch("requests.get") as get:
            self.assertIsNone(LocalDatabaseResolver(OFFLINE).try_resolve("4710000000001"))
        get.assert_not_called()


class TestLookupTableResolver(unittest.TestCase):
    def test_default_table(self) -> None:
        result = LookupTableResolver().try_resolve("7622300761349")
        self.assertEqual(result.name, "Mini Oreo Original Cookies")
        self.assertEqual(result.confidence, 95)

    def test_injected_table(self) -> None:
        table = MappingProxyType(
            {"111": ItemRecognitionResult(name="Tape", description="", category="Tools", confidence=99)}
        )
        resolver = LookupTableResolver(table)
        self.assertEqual(resolver.try_resolve("111").name, "Tape")
        self.assertIsNone(resolver.try_resolve("7622300761349"))

    def test_default_table_is_read_only(self) -> None:
        with self.assertRaises(TypeError):
            DEFAULT_BARCODE_LOOKUP["999"] = None  # type: ignore[index]


class TestOpenFoodFactsResolver(unittest.TestCase):
    def test_product_found(self) -> None:
        payload = {
            "status": 1,
            "product": {
                "product_name": "Nutella",
                "generic_name": "Hazelnut spread",
                "categories_tags": ["en:breakfast-spreads", "en:sweet-spreads"],
            },
        }
        with patch("requests.get", return_value=_FakeResponse(json_data=payload)) as get:
            result = OpenFoodFactsResolver(WAREHOUSE).try_resolve("3017620422003")

        self.assertEqual(get.call_args.args[0], "http://off.test/api/v0/product/3017620422003.json")
        self.assertEqual(result.name, "Nutella")
        self.assertEqual(result.description, "Hazelnut spread")
        self.assertEqual(result.category, "en:breakfast spreads")
        self.assertEqual(result.subcategory, "en:sweet spreads")
        self.assertEqual(result.confidence, 85)

    def test_product_without_categories(self) -> None:
        payload = {"status": 1, "product": {"product_name_en": "Plain Crackers"}}
        with patch("requests.get", return_value=_FakeResponse(json_data=payload)):
            result = OpenFoodFactsResolver(WAREHOUSE).try_resolve("123")

        self.assertEqual(result.name, "Plain Crackers")
        self.assertEqual(result.description, "Product with barcode 123")
        self.assertEqual(result.category, "Miscellaneous")
        self.assertEqual(result.subcategory, "General")

    def test_code_is_escaped_in_path(self) -> None:
        with patch("requests.get", return_value=_FakeResponse(json_data={"status": 0})) as get:
            OpenFoodFactsResolver(WAREHOUSE).try_resolve("12/34?x")

        self.assertEqual(get.call_args.args[0], "http://off.test/api/v0/product/12%2F34%3Fx.json")

    def test_unknown_product(self) -> None:
        with patch("requests.get", return_value=_FakeResponse(json_data={"status": 0})):
            self.assertIsNone(OpenFoodFactsResolver(WAREHOUSE).try_resolve("3017620422003"))

    def test_http_error_and_bad_json(self) -> None:
        with patch("requests.get", return_value=_FakeResponse(status_code=503)):
            self.assertIsNone(OpenFoodFactsResolver(WAREHOUSE).try_resolve("3017620422003"))
        with patch("requests.get", return_value=_FakeResponse(json_data=None)):
            self.assertIsNone(OpenFoodFactsResolver(WAREHOUSE).try_resolve("3017620422003"))


class TestSaveBarcode(unittest.TestCase):
    def test_posts_unverified_mapping(self) -> None:
        result = ItemRecognitionResult(name="Oreo", description="Cookies", category="Food", confidence=88)
        with patch("requests.post", return_value=_FakeResponse(json_data={})) as post:
            self.assertTrue(save_barcode_to_database("7622300761349", result, WAREHOUSE))

        self.assertEqual(post.call_args.args[0], "http://warehouse.test/api/warehouse/barcodes")
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["barcode"], "7622300761349")
        self.assertEqual(body["source"], "ai")
        self.assertFalse(body["isVerified"])

    def test_failure_is_reported(self) -> None:
        result = ItemRecognitionResult(name="Oreo", description="", category="Food", confidence=88)
        with patch("requests.post", side_effect=requests.Timeout("slow")):
            self.assertFalse(save_barcode_to_database("7622300761349", result, WAREHOUSE))
        with patch("requests.post") as post:
            self.assertFalse(save_barcode_to_database("7622300761349", result, OFFLINE))
        post.assert_not_called()


class TestAIModelResolver(unittest.TestCase):
    def test_unconfigured_is_skipped(self) -> None:
        client, completions = _fake_client(content="{}")
        resolver = AIModelResolver(AIConfig(api_key="your-openai-api-key"), WAREHOUSE, client=client)
        self.assertIsNone(resolver.try_resolve("4710000000001"))
        self.assertEqual(completions.calls, [])

    def test_confident_answer_is_saved(self) -> None:
        content = 'Sure! {"name": "Oreo", "description": "Cookies", "category": "Food", "confidence": 80}'
        client, completions = _fake_client(content=content)
        resolver = AIModelResolver(AIConfig(api_key="sk-test"), WAREHOUSE, "en", client=client)

        with patch("requests.post", return_value=_FakeResponse(json_data={})) as post:
            result = resolver.try_resolve("7622300761349")

        self.assertEqual(result.name, "Oreo")
        self.assertEqual(result.confidence, 80)
        self.assertEqual(post.call_count, 1)
        self.assertEqual(completions.calls[0]["model"], "gpt-4o-mini")
        self.assertIn("7622300761349", completions.calls[0]["messages"][1]["content"])
        self.assertIn("EAN-13", completions.calls[0]["messages"][1]["content"])

    def test_low_confidence_answer_is_not_saved(self) -> None:
        client, _completions = _fake_client(content='{"name": "Snack", "confidence": 70}')
        resolver = AIModelResolver(AIConfig(api_key="sk-test"), WAREHOUSE, client=client)

        with patch("requests.post") as post:
            result = resolver.try_resolve("4710000000001")

        self.assertEqual(result.name, "Snack")
        post.assert_not_called()

    def test_free_text_reply(self) -> None:
        client, _completions = _fake_client(content="This looks like a Taiwan tissue pack.")
        resolver = AIModelResolver(AIConfig(api_key="sk-test"), OFFLINE, client=client)
        result = resolver.try_resolve("4710000000001")

        self.assertEqual(result.name, "Taiwan Product")
        self.assertEqual(result.confidence, 60)

    def test_sdk_error_falls_through(self) -> None:
        client, _completions = _fake_client(error=RuntimeError("rate limited"))
        resolver = AIModelResolver(AIConfig(api_key="sk-test"), OFFLINE, client=client)
        self.assertIsNone(resolver.try_resolve("4710000000001"))

    def test_empty_reply_falls_through(self) -> None:
        client, _completions = _fake_client(content="")
        resolver = AIModelResolver(AIConfig(api_key="sk-test"), OFFLINE, client=client)
        self.assertIsNone(resolver.try_resolve("4710000000001"))


class TestPrefixFallbackResolver(unittest.TestCase):
    def test_prefixes(self) -> None:
        resolver = PrefixFallbackResolver()

        taiwan = resolver.try_resolve("4710000000001")
        self.assertEqual(taiwan.name, "Taiwan Product (4710000000001)")
        self.assertEqual(taiwan.confidence, 70)

        brand = resolver.try_resolve("7620000000001")
        self.assertEqual(brand.confidence, 75)

        other = resolver.try_resolve("5000000000001")
        self.assertEqual(other.name, "Product 5000000000001")
        self.assertEqual(other.confidence, 50)
        self.assertIn("EAN-13", other.description)


class TestRecognizeItemFromBarcode(unittest.TestCase):
    def test_first_answer_wins(self) -> None:
        first = _StaticResolver("first", None)
        second = _StaticResolver(
            "second", ItemRecognitionResult(name="Hit", description="", category="X", confidence=77)
        )
        third = _StaticResolver(
            "third", ItemRecognitionResult(name="Late", description="", category="X", confidence=99)
        )

        result = recognize_item_from_barcode(" 123 ", resolvers=[first, second, third])

        self.assertEqual(result.name, "Hit")
        self.assertEqual((first.calls, second.calls, third.calls), (1, 1, 0))

    def test_empty_chain_still_answers(self) -> None:
        result = recognize_item_from_barcode("5000000000001", resolvers=[])
        self.assertEqual(result.confidence, 50)

    def test_default_chain_prefers_lookup_table_over_network(self) -> None:
        resolvers = build_default_resolvers("en", lookup_config=OFFLINE, ai_config=AIConfig())
        with patch("requests.get") as get:
            result = recognize_item_from_barcode("7622300761349", "en", resolvers=resolvers)

        self.assertEqual(result.name, "Mini Oreo Original Cookies")
        get.assert_not_called()

    def test_default_chain_ends_in_prefix_heuristic(self) -> None:
        resolvers = build_default_resolvers("en", lookup_config=OFFLINE, ai_config=AIConfig())
        with patch("requests.get", return_value=_FakeResponse(json_data={"status": 0})) as get:
            result = recognize_item_from_barcode("4710000000001", "en", resolvers=resolvers)

        self.assertEqual(get.call_count, 1)  # OpenFoodFacts only; database stage disabled
        self.assertEqual(result.name, "Taiwan Product (4710000000001)")
        self.assertEqual(result.source, "prefix_fallback")

    def test_default_chain_decodes_invoice_payloads_first(self) -> None:
        resolvers = build_default_resolvers("zh-TW", lookup_config=OFFLINE, ai_config=AIConfig())
        with patch("requests.get") as get:
            result = recognize_item_from_barcode(HEADER_QR, "zh-TW", resolvers=resolvers)

        self.assertEqual(result.source, "taiwan_einvoice")
        get.assert_not_called()


if __name__ == "__main__":
    unittest.main()
