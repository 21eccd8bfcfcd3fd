"""Decode Taiwan e-invoice codes and look up product barcodes for warehouse intake.

Modes
- QR text:    --left <payload> [--right <payload>] [--barcode <code>]
- Photos:     --input-dir <dir> (one receipt per image) or --image <file>
- Barcodes:   --lookup <code> [<code> ...]

Decoded invoices are printed as JSON, or appended to --output as CSV/TSV with
the columns (Traditional Chinese):
時間	金額	發票編號	購買清單 (單價 x 數量)	類型	發票類型	賣方	賣方統一編號

Dependencies
- Python packages: opencv-python, zxing-cpp, pyzbar (photo modes), openai (AI lookup stage)
- System (macOS): `brew install zbar` (required by pyzbar)
"""

from __future__ import annotations

import argparse
import base64
import csv
import json
import sys
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence


# When running `python scripts/scan_invoice_qr.py`, sys.path[0] is scripts/,
# not the repository root; add the root so `intake` imports resolve.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from intake.log import log_error, log_info, log_warn, set_debug  # noqa: E402
from intake.tw_einvoice_qr import (  # noqa: E402
    TaiwanInvoiceRecord,
    decode_taiwan_receipt,
    format_invoice_number,
    invoice_key_from_qr,
    is_taiwan_einvoice,
)


HEADERS = [
    "時間",
    "金額",
    "發票編號",
    "購買清單 (單價 x 數量)",
    "類型",
    "發票類型",
    "賣方",
    "賣方統一編號",
]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Decode Taiwan e-invoice QR codes and look up barcodes")
    parser.add_argument("--left", default="", help="Left (header) QR payload text")
    parser.add_argument("--right", default="", help="Right (items) QR payload text")
    parser.add_argument("--barcode", default="", help="1D barcode text printed on the invoice")
    parser.add_argument("--image", default="", help="Decode the codes from one receipt photo")
    parser.add_argument(
        "--input-dir",
        default="",
        help="Decode every receipt photo in a directory (one receipt per image).",
    )
    parser.add_argument(
        "--glob",
        default="*.png,*.jpg,*.jpeg,*.webp",
        help="Comma-separated glob(s) for --input-dir images (default: *.png,*.jpg,*.jpeg,*.webp)",
    )
    parser.add_argument("--lookup", nargs="+", default=[], help="Product barcode(s) to recognize")
    parser.add_argument(
        "--language",
        default="zh-TW",
        help="User language; zh-TW relaxes e-invoice detection (default: zh-TW)",
    )
    parser.add_argument(
        "--output",
        default="",
        help="Append decoded invoices to this file instead of printing JSON",
    )
    parser.add_argument(
        "--format",
        choices=["tsv", "csv"],
        default="csv",
        help="Output delimiter format (default: csv)",
    )
    parser.add_argument(
        "--max",
        type=int,
        default=0,
        help="Stop after N invoices are saved (0 = no limit)",
    )
    parser.add_argument("--debug", action="store_true", help="Print privacy-safe decode diagnostics")
    args = parser.parse_args(argv)
    if not (args.left or args.right or args.barcode or args.image or args.input_dir or args.lookup):
        parser.error("nothing to do: pass --left/--right, --image, --input-dir or --lookup")
    return args


def append_row(path: Path, row: list[str], delimiter: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    write_header = not path.exists() or path.stat().st_size == 0

    with path.open("a", encoding="utf-8-sig", newline="") as f:
        writer = csv.writer(f, delimiter=delimiter)
        if write_header:
            writer.writerow(HEADERS)
        writer.writerow(row)


def _fmt_number(x: float) -> str:
    text = f"{x:.2f}".rstrip("0").rstrip(".")
    return text or "0"


def invoice_to_row(inv: TaiwanInvoiceRecord) -> list[str]:
    items = "； ".join(
        f"{it.name} : {_fmt_number(it.quantity)} * {_fmt_number(it.price)} = {_fmt_number(it.amount)}"
        for it in inv.items
    )
    return [
        inv.invoice_date.replace("-", "/") + " 00:00:00",
        f"${int(inv.total_amount)}",
        format_invoice_number(inv.invoice_number),
        items,
        "",
        "電子發票",
        inv.seller_name or "",
        inv.seller_tax_id or "",
    ]


def emit_invoice(inv: TaiwanInvoiceRecord, args: argparse.Namespace) -> None:
    if args.output:
        delimiter = "\t" if args.format == "tsv" else ","
        append_row(Path(args.output), invoice_to_row(inv), delimiter=delimiter)
        log_info(f"Saved invoice {format_invoice_number(inv.invoice_number)} to {args.output}")
    else:
        print(json.dumps(inv.to_dict(), ensure_ascii=False, indent=2))


def run_qr_text(args: argparse.Namespace) -> bool:
    for label, payload in (("left", args.left), ("right", args.right)):
        if payload and not is_taiwan_einvoice(payload, args.language):
            log_warn(f"{label} QR does not look like a Taiwan e-invoice; decoding anyway")

    receipt = decode_taiwan_receipt(left_qr_code=args.left, right_qr_code=args.right, barcode=args.barcode)
    inv = receipt.invoice_data
    if not inv.is_valid:
        log_error(f"Decode failed: {inv.error}")
        return False
    if inv.defaulted_fields:
        log_warn(f"Fields filled with defaults: {', '.join(inv.defaulted_fields)}")
    emit_invoice(inv, args)
    return True


def iter_image_files(input_dir: Path, patterns: str) -> Iterable[Path]:
    globs = [p.strip() for p in (patterns or "").split(",") if p.strip()]
    seen: set[Path] = set()
    for g in globs:
        for p in sorted(input_dir.glob(g)):
            if p.is_file() and p not in seen:
                seen.add(p)
                yield p


def _decode_image_file(path: Path) -> Optional[TaiwanInvoiceRecord]:
    from intake.qr_image import extract_codes_from_image_base64

    try:
        codes = extract_codes_from_image_base64(base64.b64encode(path.read_bytes()).decode("ascii"))
    except ValueError as e:
        log_warn(f"Skip unreadable image {path}: {e}")
        return None

    if codes.is_empty():
        log_warn(f"No QR codes found in: {path}")
        return None

    receipt = decode_taiwan_receipt(
        left_qr_code=codes.left_qr_code, right_qr_code=codes.right_qr_code, barcode=codes.barcode
    )
    if not receipt.invoice_data.is_valid:
        log_warn(f"Decode failed for {path}: {receipt.invoice_data.error}")
        return None
    return receipt.invoice_data


def run_images(args: argparse.Namespace) -> int:
    if args.input_dir:
        input_dir = Path(args.input_dir)
        if not input_dir.is_dir():
            raise RuntimeError(f"--input-dir not found or not a directory: {input_dir}")
        paths = list(iter_image_files(input_dir, args.glob))
    else:
        paths = [Path(args.image)]
        if not paths[0].is_file():
            raise RuntimeError(f"--image not found: {paths[0]}")

    saved = 0
    saved_keys: set[str] = set()
    for path in paths:
        inv = _decode_image_file(path)
        if inv is None:
            continue

        key = invoice_key_from_qr(inv.left_qr_code) or inv.invoice_number
        if key in saved_keys:
            log_warn(f"Already saved invoice {format_invoice_number(inv.invoice_number)} in this run; skipping")
            continue

        emit_invoice(inv, args)
        saved += 1
        saved_keys.add(key)

        if args.max and saved >= args.max:
            log_info(f"Reached --max={args.max}; stopping")
            break

    log_info(f"Decoded {saved} invoice(s) from {len(paths)} image(s)")
    return saved


def run_lookup(args: argparse.Namespace) -> list[dict[str, Any]]:
    from intake.barcode_lookup import build_default_resolvers, recognize_item_from_barcode

    resolvers = build_default_resolvers(args.language)
    results = []
    for code in args.lookup:
        result = recognize_item_from_barcode(code, args.language, resolvers=resolvers)
        results.append({"barcode": code, **result.to_dict()})
    print(json.dumps(results, ensure_ascii=False, indent=2))
    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    set_debug(args.debug)
    try:
        ok = True
        if args.left or args.right or args.barcode:
            ok = run_qr_text(args)
        if args.image or args.input_dir:
            run_images(args)
        if args.lookup:
            run_lookup(args)
    except ModuleNotFoundError as e:
        log_error(str(e))
        if "pyzbar" in str(e) or "zbar" in str(e) or "cv2" in str(e) or "numpy" in str(e):
            log_error("Missing dependency. Try: `brew install zbar` then `poetry add pyzbar opencv-python`.")
        else:
            log_error("Missing module. Install dependencies and try again.")
        return 2
    except RuntimeError as e:
        log_error(str(e))
        return 2
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
