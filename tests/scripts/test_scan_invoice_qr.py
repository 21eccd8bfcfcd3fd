import contextlib
import csv
import importlib.util
import io
import json
import sys
import tempfile
import unittest
from pathlib import Path


_REPO_ROOT = Path(__file__).resolve().parents[2]
_SCRIPT = _REPO_ROOT / "scripts" / "scan_invoice_qr.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("scan_invoice_qr", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


scan = _load_script()

from intake.tw_einvoice_qr import LineItem, TaiwanInvoiceRecord  # noqa: E402


HEADER_QR = "AB12345678" + "1130315" + "1234" + "00002710" + "00002AF8" + "87654321" + "12345678" + "A" * 24


class TestInvoiceToRow(unittest.TestCase):
    def test_row_layout(self) -> None:
        inv = TaiwanInvoiceRecord(
            invoice_number="CD87654321",
            invoice_date="2024-02-29",
            seller_name="全聯福利中心",
            seller_tax_id="12345678",
            total_amount=250.0,
            tax_amount=12.0,
            items=(
                LineItem(name="牛奶", quantity=2.0, price=45.0, amount=90.0),
                LineItem(name="九二無鉛", quantity=3.52, price=27.1, amount=95.392),
            ),
        )
        self.assertEqual(
            scan.invoice_to_row(inv),
            [
                "2024/02/29 00:00:00",
                "$250",
                "CD-87654321",
                "牛奶 : 2 * 45 = 90； 九二無鉛 : 3.52 * 27.1 = 95.39",
                "",
                "電子發票",
                "全聯福利中心",
                "12345678",
            ],
        )


class TestAppendRow(unittest.TestCase):
    def test_header_written_once(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "out" / "invoices.tsv"
            scan.append_row(path, ["a", "b"], delimiter="\t")
            scan.append_row(path, ["c", "d"], delimiter="\t")

            with path.open(encoding="utf-8-sig", newline="") as f:
                rows = list(csv.reader(f, delimiter="\t"))

        self.assertEqual(rows[0], scan.HEADERS)
        self.assertEqual(rows[1:], [["a", "b"], ["c", "d"]])


class TestMain(unittest.TestCase):
    def test_left_qr_to_csv(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "invoices.csv"
            with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
                code = scan.main(["--left", HEADER_QR, "--barcode", "11406AB12345678", "--output", str(out)])

            with out.open(encoding="utf-8-sig", newline="") as f:
                rows = list(csv.reader(f))

        self.assertEqual(code, 0)
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[1][:3], ["2024/03/15 00:00:00", "$110", "AB-12345678"])
        self.assertEqual(rows[1][6:], ["台灣商店", "12345678"])

    def test_left_qr_to_json(self) -> None:
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(io.StringIO()):
            code = scan.main(["--left", HEADER_QR])

        self.assertEqual(code, 0)
        data = json.loads(stdout.getvalue())
        self.assertEqual(data["invoiceNumber"], "AB12345678")
        self.assertEqual(data["leftQRCode"], HEADER_QR)
        self.assertIn("seller_name", data["defaultedFields"])

    def test_decode_failure_exit_code(self) -> None:
        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
            code = scan.main(["--left", "   "])
        self.assertEqual(code, 1)

    def test_missing_image_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
                code = scan.main(["--input-dir", str(Path(tmp) / "missing")])
        self.assertEqual(code, 2)

    def test_nothing_to_do(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                scan.parse_args([])


if __name__ == "__main__":
    unittest.main()
