"""Taiwan e-invoice (電子發票) QR decoding for warehouse intake.

A best-effort decoder for the codes printed on Taiwan e-invoice paper:
- left QR: header (invoice number, ROC date, random number, hex amounts,
  buyer/seller identifiers, encrypted block) optionally followed by items
- right QR: item continuation (`**` + `name:qty:unitPrice` segments)
- 1D barcode: attached as-is

Payloads are not uniform across issuers and terminals, so every field is
recovered through an ordered cascade (labelled text -> bare patterns ->
fixed header positions -> placeholder). A record therefore carries
`defaulted_fields` listing what was guessed rather than read.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from intake.log import log_debug, mask_invoice_key


_INVOICE_NO_RE = re.compile(r"^[A-Z]{2}\d{8}$")
_ROC_DATE_RE = re.compile(r"^\d{7}$")
_RANDOM_RE = re.compile(r"^[0-9A-Za-z]{4}$")
_EINV_KEY_ANYWHERE_RE = re.compile(r"([A-Z]{2}\d{8}\d{7}[0-9A-Za-z]{4})")

# Fixed header layout:
# invoiceNumber(10) rocDate(7) random(4) salesHex(8) totalHex(8) buyerId(8) sellerId(8) aes(24)
_HEADER_DATE_RE = re.compile(r"[A-Z]{2}\d{8}(\d{7})")
_HEADER_TOTAL_RE = re.compile(r"[A-Z]{2}\d{8}\d{7}\d{4}[0-9a-fA-F]{8}([0-9a-fA-F]{8})")
_HEADER_IDS_RE = re.compile(r"[A-Z]{2}\d{8}\d{7}\d{4}[0-9a-fA-F]{16}(\d{8})(\d{8})")

_INVOICE_NUMBER_PATTERNS = (
    re.compile(r"發票號碼[：:]\s*([A-Z0-9]+)", re.I),
    re.compile(r"Invoice[：:]\s*([A-Z0-9]+)", re.I),
)
_LEADING_INVOICE_NO_RE = re.compile(r"[A-Z]{2}\d{8}")
_ANY_INVOICE_NO_RE = re.compile(r"([A-Z]{2}\d{8})")

_DATE_PATTERNS = (
    re.compile(r"發票日期[：:]\s*(\d{4}[-/]\d{2}[-/]\d{2})", re.I),
    re.compile(r"Date[：:]\s*(\d{4}[-/]\d{2}[-/]\d{2})", re.I),
    re.compile(r"(\d{4}[-/]\d{2}[-/]\d{2})"),
)

_SELLER_PATTERNS = (
    re.compile(r"賣方[：:]\s*([^\n\r]+)", re.I),
    re.compile(r"Seller[：:]\s*([^\n\r]+)", re.I),
    re.compile(r"店名[：:]\s*([^\n\r]+)", re.I),
    re.compile(r"商店[：:]\s*([^\n\r]+)", re.I),
)
_SELLER_TAX_PATTERNS = (
    re.compile(r"賣方統編[：:]\s*([0-9]+)", re.I),
    re.compile(r"Seller Tax ID[：:]\s*([0-9]+)", re.I),
    re.compile(r"統編[：:]\s*([0-9]+)", re.I),
    re.compile(r"Tax ID[：:]\s*([0-9]+)", re.I),
)
_BUYER_PATTERNS = (
    re.compile(r"買方[：:]\s*([^\n\r]+)", re.I),
    re.compile(r"Buyer[：:]\s*([^\n\r]+)", re.I),
    re.compile(r"消費者[：:]\s*([^\n\r]+)", re.I),
)
_BUYER_TAX_PATTERNS = (
    re.compile(r"買方統編[：:]\s*([0-9]+)", re.I),
    re.compile(r"Buyer Tax ID[：:]\s*([0-9]+)", re.I),
)

_LABELLED_TOTAL_PATTERNS = (
    re.compile(r"總金額[：:]\s*(\d+\.?\d*)", re.I),
    re.compile(r"Total[：:]\s*(\d+\.?\d*)", re.I),
    re.compile(r"Amount[：:]\s*(\d+\.?\d*)", re.I),
    re.compile(r"金額[：:]\s*(\d+\.?\d*)", re.I),
)
_CURRENCY_PATTERNS = (
    re.compile(r"\$(\d+\.?\d*)"),
    re.compile(r"NT\$(\d+\.?\d*)"),
)
_TAX_PATTERNS = (
    re.compile(r"稅額[：:]\s*(\d+\.?\d*)", re.I),
    re.compile(r"Tax[：:]\s*(\d+\.?\d*)", re.I),
    re.compile(r"稅[：:]\s*(\d+\.?\d*)", re.I),
)

# Item-line heuristics.
_METADATA_LABEL_RE = re.compile(
    r"(?:發票號碼|發票日期|賣方|買方|統編|稅額|總金額|Invoice|Date|Seller|Buyer|Tax ID|Total)[：:]"
)
_METADATA_KEYWORDS = ("發票", "統編", "稅額", "總金額", "賣方", "買方", "日期", "號碼")
_PRODUCT_HINTS = ("商品", "Item", "品名", "項目", "產品", "Product")
_TEXT_THEN_NUMBER_RE = re.compile(r"[a-zA-Z\u4e00-\u9fff].*\d")
_NAME_ONLY_RE = re.compile(r"^[^\d:]+$")
_ITEM_FULL_RE = re.compile(r"([^\d\s]+[\s\S]*?)\s+(\d+\.?\d*)\s+(\d+\.?\d*)\s+(\d+\.?\d*)")
_ITEM_NAME_AMOUNT_RE = re.compile(r"([^\d\s]+[\s\S]*?)\s+(\d+\.?\d*)")
_ITEM_MIXED_RE = re.compile(r"([a-zA-Z\u4e00-\u9fff\s]+?)\s*(\d+\.?\d*)")

_NON_INVOICE_MARKERS = (
    "http://", "https://", "www.", ".com", ".org", ".net",
    "begin:", "end:", "vcard", "wifi:", "sms:", "tel:", "mailto:",
)
_TAIWAN_INDICATORS = (
    "發票", "invoice", "統編", "tax id",
    "賣方", "seller", "買方", "buyer",
    "總金額", "total", "稅額", "tax",
    "台灣", "taiwan", "電子發票", "electronic invoice",
    "店名", "商店", "消費者", "金額",
)
_CJK_RE = re.compile(r"[\u4e00-\u9fff]")
_DATE_HINT_RE = re.compile(r"\d{4}[-/]\d{2}[-/]\d{2}|\d{8}")
_CURRENCY_HINT_RE = re.compile(r"\$|元|NT\$")

DEFAULT_SELLER_NAME = "台灣商店"
DEFAULT_TAX_RATE = 5.0
MAX_HEADER_AMOUNT_NTD = 100000
MAX_ITEM_PRICE = 1000000

TRACKED_FIELDS = (
    "invoice_number",
    "invoice_date",
    "seller_name",
    "seller_tax_id",
    "buyer_name",
    "buyer_tax_id",
    "total_amount",
    "tax_amount",
    "items",
)


@dataclass(frozen=True)
class LineItem:
    name: str
    quantity: float
    price: float
    amount: float
    unit: str = "piece"
    tax_rate: float = DEFAULT_TAX_RATE

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "price": self.price,
            "amount": self.amount,
            "taxRate": self.tax_rate,
        }


@dataclass(frozen=True)
class TaiwanInvoiceRecord:
    invoice_number: str
    invoice_date: str
    seller_name: str
    seller_tax_id: str
    total_amount: float
    tax_amount: float
    items: tuple[LineItem, ...] = ()
    is_valid: bool = True
    buyer_name: Optional[str] = None
    buyer_tax_id: Optional[str] = None
    error: Optional[str] = None
    defaulted_fields: tuple[str, ...] = ()

    left_qr_code: str = ""
    right_qr_code: str = ""
    barcode: str = ""

    @property
    def completeness(self) -> float:
        """Share of tracked fields that were read from the payload (0.0 - 1.0)."""
        if not self.is_valid:
            return 0.0
        guessed = sum(1 for f in TRACKED_FIELDS if f in self.defaulted_fields)
        return round(1 - guessed / len(TRACKED_FIELDS), 4)

    def is_defaulted(self, field_name: str) -> bool:
        return field_name in self.defaulted_fields

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "invoiceNumber": self.invoice_number,
            "invoiceDate": self.invoice_date,
            "sellerName": self.seller_name,
            "sellerTaxId": self.seller_tax_id,
            "buyerName": self.buyer_name,
            "buyerTaxId": self.buyer_tax_id,
            "totalAmount": self.total_amount,
            "taxAmount": self.tax_amount,
            "items": [it.to_dict() for it in self.items],
            "isValid": self.is_valid,
            "defaultedFields": list(self.defaulted_fields),
            "completeness": self.completeness,
            "leftQRCode": self.left_qr_code,
            "rightQRCode": self.right_qr_code,
            "barcode": self.barcode,
        }
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class TaiwanReceiptData:
    left_qr_code: str
    right_qr_code: str
    barcode: str
    invoice_data: TaiwanInvoiceRecord

    def to_dict(self) -> dict[str, Any]:
        return {
            "leftQRCode": self.left_qr_code,
            "rightQRCode": self.right_qr_code,
            "barcode": self.barcode,
            "invoiceData": self.invoice_data.to_dict(),
        }


@dataclass(frozen=True)
class WarehouseItem:
    """An inventory candidate derived from an invoice."""

    name: str
    quantity: float
    unit: str
    price: float
    description: str
    category: str = "Taiwan Import"
    source: str = "taiwan_einvoice"


def _clean_qr_text(value: str) -> str:
    """Drop BOM and other non-printable characters, keep line breaks."""
    s = (value or "").replace("\ufeff", "")
    s = "".join(ch for ch in s if ch.isprintable() or ch in "\r\n\t")
    return s.strip()


def _find_invoice_key(value: str) -> tuple[str, int] | tuple[None, None]:
    """Return (key, start_index) when an invoice key is found in `value`."""
    s = _clean_qr_text(value)
    if len(s) < 21:
        return None, None

    inv_no, roc_date, rnd = s[:10].upper(), s[10:17], s[17:21]
    if _INVOICE_NO_RE.fullmatch(inv_no) and _ROC_DATE_RE.fullmatch(roc_date) and _RANDOM_RE.fullmatch(rnd):
        return inv_no + roc_date + rnd, 0

    m = _EINV_KEY_ANYWHERE_RE.search(s)
    if not m:
        return None, None
    return m.group(1), m.start(1)


def invoice_key_from_qr(qr_text: str) -> Optional[str]:
    """Return the 21-char `invoiceNumber + rocDate + random` key, or None.

    Both QR codes of one invoice share this prefix, so it groups payloads.
    """
    key, _pos = _find_invoice_key(qr_text)
    return key


def roc_yyyymmdd_to_date(roc_yyyymmdd: str) -> date:
    """Convert a ROC date string (YYYMMDD) into a Gregorian date."""
    s = (roc_yyyymmdd or "").strip()
    if not _ROC_DATE_RE.fullmatch(s):
        raise ValueError(f"Invalid ROC date (expected 7 digits YYYMMDD): {roc_yyyymmdd!r}")
    return date(int(s[0:3]) + 1911, int(s[3:5]), int(s[5:7]))


def format_invoice_number(invoice_number: str) -> str:
    """Format as 'AB-12345678' when possible."""
    s = (invoice_number or "").strip().upper()
    if _INVOICE_NO_RE.fullmatch(s):
        return f"{s[:2]}-{s[2:]}"
    return s


def _score_readability(text: str) -> tuple[int, int, int]:
    """Return (cjk_count, ascii_count, weird_count) for a candidate string."""
    cjk = ascii_printable = weird = 0
    for ch in text or "":
        o = ord(ch)
        if 0x4E00 <= o <= 0x9FFF:
            cjk += 1
        elif 0x20 <= o <= 0x7E:
            ascii_printable += 1
        elif 0xFF61 <= o <= 0xFF9F:  # halfwidth katakana, typical of mojibake
            weird += 2
        else:
            weird += 1
    return cjk, ascii_printable, weird


def repair_item_name(text: str) -> str:
    """Undo CP950/Big5 item names that a scanner decoded as CP932/Latin-1.

    Returns the input unchanged unless a re-decoding has more CJK characters
    and no more odd symbols.
    """
    s = (text or "").strip()
    if not s:
        return ""

    base = _score_readability(s)
    if base[0] >= 2 and base[2] == 0:
        return s

    codec_pairs = [(w, r) for w in ("cp932", "shift_jis") for r in ("cp950", "big5")]
    codec_pairs += [("latin1", r) for r in ("cp950", "big5", "utf-8")]

    candidates = [s]
    for wrong, right in codec_pairs:
        try:
            candidates.append(s.encode(wrong).decode(right))
        except (UnicodeEncodeError, UnicodeDecodeError):
            continue

    def _rank(x: str) -> tuple[int, int, int, int]:
        cjk, ascii_printable, weird = _score_readability(x)
        return cjk, -weird, ascii_printable, -len(x)

    best = max(candidates, key=_rank)
    best_score = _score_readability(best)
    if best_score[0] > base[0] and best_score[2] <= base[2]:
        return best
    return s


def _to_decimal(value: str) -> Optional[Decimal]:
    try:
        return Decimal(value)
    except (InvalidOperation, ValueError):
        return None


def _looks_like_number(value: str) -> bool:
    return bool(re.fullmatch(r"-?\d+(?:\.\d+)?", (value or "").strip()))


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _first_group(patterns: Iterable[re.Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        m = pattern.search(text)
        if m:
            return m.group(1)
    return None


def _parse_number(value: str) -> float:
    """parseFloat-like: leading numeric prefix, 0.0 when there is none."""
    m = re.match(r"\s*(-?\d+(?:\.\d*)?)", value or "")
    return float(m.group(1)) if m else 0.0


def _normalize_date(date_str: str) -> str:
    if re.fullmatch(r"\d{8}", date_str):
        return f"{date_str[:4]}-{date_str[4:6]}-{date_str[6:8]}"
    return date_str.replace("/", "-")


def _header_date(data: str) -> Optional[str]:
    m = _HEADER_DATE_RE.match(data)
    if not m:
        return None
    try:
        return roc_yyyymmdd_to_date(m.group(1)).isoformat()
    except ValueError:
        return None


def _header_total(data: str) -> Optional[float]:
    """Total amount from the header hex field (cents), bounded to a sane NTD range."""
    m = _HEADER_TOTAL_RE.match(data)
    if not m:
        return None
    amount = int(m.group(1), 16) / 100
    if 0 < amount < MAX_HEADER_AMOUNT_NTD:
        return amount
    return None


def _header_identifiers(data: str) -> tuple[Optional[str], Optional[str]]:
    """(buyer_id, seller_id) from the header, None for absent or all-zero ids."""
    m = _HEADER_IDS_RE.match(data)
    if not m:
        return None, None
    buyer_id, seller_id = m.group(1), m.group(2)
    return (
        buyer_id if buyer_id != "00000000" else None,
        seller_id if seller_id != "00000000" else None,
    )


def create_error_result(error: str) -> TaiwanInvoiceRecord:
    return TaiwanInvoiceRecord(
        invoice_number="",
        invoice_date="",
        seller_name="",
        seller_tax_id="",
        total_amount=0,
        tax_amount=0,
        items=(),
        is_valid=False,
        error=error,
    )


def _align_to_invoice_key(data: str) -> str:
    """Drop scanner padding (BOM, blanks, stray bytes) ahead of the header key.

    The header fields are read at fixed positions, so they only line up when
    the text starts at the invoice key. Text whose key sits on a later line
    is labelled text and is returned as-is.
    """
    key, pos = _find_invoice_key(data)
    if key is None:
        return data
    cleaned = _clean_qr_text(data)
    if "\n" in cleaned[:pos]:
        return data
    return cleaned[pos:]


def _decode_payload(qr_data: str) -> str:
    """Return the working text: base64-decoded when that yields readable text."""
    if invoice_key_from_qr(qr_data):
        return qr_data
    try:
        raw = base64.b64decode(qr_data.strip(), validate=True)
        decoded = raw.decode("utf-8")
    except (binascii.Error, ValueError):
        return qr_data
    if not decoded.strip() or not all(ch.isprintable() or ch in "\r\n\t" for ch in decoded):
        return qr_data
    return decoded


def decode_taiwan_einvoice(qr_data: str, *, now: Optional[datetime] = None) -> TaiwanInvoiceRecord:
    """Decode one scanned e-invoice QR payload (base64 or raw text)."""
    if not qr_data or not qr_data.strip():
        return create_error_result("Empty QR code data")

    try:
        return parse_taiwan_invoice_data(_decode_payload(qr_data), now=now)
    except Exception as e:
        log_debug(f"e-invoice decode failed: {e}")
        return create_error_result(f"Decoding error: {e}")


def parse_taiwan_invoice_data(data: str, *, now: Optional[datetime] = None) -> TaiwanInvoiceRecord:
    """Extract invoice fields from decoded text, substituting defaults for misses."""
    data = _align_to_invoice_key(data)
    lines = [line for line in data.split("\n") if line.strip()]
    if not lines:
        return create_error_result("No data found in QR code")

    now = now or datetime.now()
    defaulted: list[str] = []

    invoice_number = _first_group(_INVOICE_NUMBER_PATTERNS, data)
    if invoice_number is None:
        m = _LEADING_INVOICE_NO_RE.match(data) or _ANY_INVOICE_NO_RE.search(data)
        invoice_number = m.group(0) if m else None
    if invoice_number is None:
        invoice_number = f"QR_{str(int(now.timestamp() * 1000))[-8:]}"
        defaulted.append("invoice_number")

    invoice_date = _first_group(_DATE_PATTERNS, data)
    if invoice_date is not None:
        invoice_date = _normalize_date(invoice_date)
    elif len(data) > 10:
        invoice_date = _header_date(data)
    if invoice_date is None:
        invoice_date = now.date().isoformat()
        defaulted.append("invoice_date")

    seller_name = _first_group(_SELLER_PATTERNS, data)
    seller_tax_id = _first_group(_SELLER_TAX_PATTERNS, data)
    buyer_name = _first_group(_BUYER_PATTERNS, data)
    buyer_tax_id = _first_group(_BUYER_TAX_PATTERNS, data)

    header_buyer_id, header_seller_id = _header_identifiers(data)
    buyer_tax_id = buyer_tax_id or header_buyer_id
    seller_tax_id = seller_tax_id or header_seller_id

    total_text = _first_group(_LABELLED_TOTAL_PATTERNS, data) or _first_group(_CURRENCY_PATTERNS, data)
    total_amount: Optional[float] = float(total_text) if total_text is not None else _header_total(data)

    tax_text = _first_group(_TAX_PATTERNS, data)

    if seller_name is None:
        defaulted.append("seller_name")
    if seller_tax_id is None:
        defaulted.append("seller_tax_id")
    if buyer_name is None:
        defaulted.append("buyer_name")
    if buyer_tax_id is None:
        defaulted.append("buyer_tax_id")
    if total_amount is None:
        total_amount = 0.0
        defaulted.append("total_amount")
    if tax_text is None:
        tax_amount = float(_round_half_up(total_amount * 0.05))
        defaulted.append("tax_amount")
    else:
        tax_amount = float(tax_text)

    items, synthetic = _parse_items(
        data,
        seller_name=seller_name.strip() if seller_name else None,
        total_amount=total_amount if "total_amount" not in defaulted else None,
    )
    if synthetic:
        defaulted.append("items")

    record = TaiwanInvoiceRecord(
        invoice_number=invoice_number,
        invoice_date=invoice_date,
        seller_name=seller_name.strip() if seller_name else DEFAULT_SELLER_NAME,
        seller_tax_id=seller_tax_id or "",
        buyer_name=buyer_name.strip() if buyer_name else None,
        buyer_tax_id=buyer_tax_id,
        total_amount=total_amount,
        tax_amount=tax_amount,
        items=tuple(items),
        is_valid=True,
        defaulted_fields=tuple(defaulted),
    )

    key = invoice_key_from_qr(data)
    log_debug(
        f"e-invoice parsed: len={len(data)} key={mask_invoice_key(key) if key else '<none>'} "
        f"total={record.total_amount} items={len(record.items)} defaulted={','.join(defaulted) or '-'}"
    )
    return record


def _is_metadata_name(name: str) -> bool:
    return any(k in name for k in _METADATA_KEYWORDS)


def _make_item(name: str, quantity: float, price: float, amount: float) -> Optional[LineItem]:
    name = name.strip()
    if len(name) < 2 or len(name) >= 100 or _is_metadata_name(name):
        return None
    if price >= MAX_ITEM_PRICE or amount >= MAX_ITEM_PRICE:
        return None
    if len(name) > 50:
        name = name[:47] + "..."
    return LineItem(name=name, quantity=quantity, price=price, amount=amount)


def _extract_colon_items(qr_text: str) -> list[LineItem]:
    """Items from `...:<name>:<qty>:<unitPrice>:...` segments.

    Metadata segments precede the items, so every starting offset is tried
    and the parse yielding the most items wins.
    """
    segments = [s.strip() for s in qr_text.split(":") if s.strip()]
    if len(segments) < 3:
        return []

    def parse_from(start: int) -> list[LineItem]:
        found: list[LineItem] = []
        i = start
        while i + 2 < len(segments):
            name = repair_item_name(segments[i])
            qty_s, unit_s = segments[i + 1], segments[i + 2]
            # Purely numeric or '*' names come from a wrong offset.
            if (
                name
                and re.search(r"[A-Za-z\u4e00-\u9fff]", name)
                and _looks_like_number(qty_s)
                and _looks_like_number(unit_s)
            ):
                qty, unit = _to_decimal(qty_s), _to_decimal(unit_s)
                if qty is not None and unit is not None:
                    item = _make_item(name, float(qty), float(unit), float(qty * unit))
                    if item is not None:
                        found.append(item)
                        i += 3
                        continue
            i += 1
        return found

    best: list[LineItem] = []
    for start in range(min(len(segments), 12)):
        cand = parse_from(start)
        if len(cand) > len(best):
            best = cand
    return best


def _is_candidate_line(trimmed: str) -> bool:
    if not trimmed:
        return False
    if _METADATA_LABEL_RE.search(trimmed) or "電子發票" in trimmed or "Electronic Invoice" in trimmed:
        return False
    if _INVOICE_NO_RE.fullmatch(trimmed):
        return False
    return (
        any(hint in trimmed for hint in _PRODUCT_HINTS)
        or (bool(_TEXT_THEN_NUMBER_RE.search(trimmed)) and len(trimmed) > 2)
        or (bool(_NAME_ONLY_RE.fullmatch(trimmed)) and 2 < len(trimmed) < 50)
    )


def _match_item_line(line: str) -> Optional[tuple[str, str, str, str]]:
    """Return (name, qty, price, amount) strings from the first pattern that fits."""
    m = _ITEM_FULL_RE.search(line)
    if m:
        return m.group(1), m.group(2), m.group(3), m.group(4)

    m = _ITEM_NAME_AMOUNT_RE.search(line)
    if m:
        return m.group(1), "1", m.group(2), m.group(2)

    if len(line) > 3:
        m = _ITEM_MIXED_RE.search(line)
        if m and not _is_metadata_name(m.group(1).strip()):
            return m.group(1), "1", m.group(2), m.group(2)

    name = line.strip()
    if 2 < len(line) < 50 and not _is_metadata_name(name):
        return name, "1", "0", "0"
    return None


def _fallback_item(data: str, seller_name: Optional[str], total_amount: Optional[float]) -> LineItem:
    if seller_name is None:
        seller_name = _first_group(_SELLER_PATTERNS[:2], data)
        seller_name = seller_name.strip() if seller_name else None
    if total_amount is None:
        total_text = _first_group(_LABELLED_TOTAL_PATTERNS[:3], data) or _first_group(_CURRENCY_PATTERNS, data)
        total_amount = float(total_text) if total_text is not None else 0.0

    if seller_name and total_amount > 0:
        return LineItem(name=f"來自 {seller_name} 的商品", quantity=1, price=total_amount, amount=total_amount)
    if total_amount > 0:
        return LineItem(name="台灣商品購買", quantity=1, price=total_amount, amount=total_amount)
    return LineItem(name="台灣商品", quantity=1, price=0, amount=0)


def _parse_items(
    data: str,
    *,
    seller_name: Optional[str] = None,
    total_amount: Optional[float] = None,
) -> tuple[list[LineItem], bool]:
    """Return (items, synthetic) where `synthetic` marks the fallback item."""
    items: list[LineItem] = []

    if ":" in data and invoice_key_from_qr(data):
        items = _extract_colon_items(data)

    if not items:
        for line in data.split("\n"):
            trimmed = line.strip()
            if not _is_candidate_line(trimmed) or len(line) < 3:
                continue
            matched = _match_item_line(line)
            if matched is None:
                continue
            name, qty_s, price_s, amount_s = matched
            quantity = _parse_number(qty_s) or 1
            price = _parse_number(price_s) or _parse_number(amount_s) or 0.0
            amount = _parse_number(amount_s) or price * quantity
            item = _make_item(name, quantity, price, amount)
            if item is not None:
                items.append(item)

    if items:
        return items, False
    return [_fallback_item(data, seller_name, total_amount)], True


def parse_items_from_data(
    data: str,
    *,
    seller_name: Optional[str] = None,
    total_amount: Optional[float] = None,
) -> list[LineItem]:
    """Segment decoded invoice text into line items.

    Never returns an empty list: when nothing matches, a single synthetic item
    is built from the seller name and total (taken from the keyword arguments
    when given, else from labelled text).
    """
    items, _synthetic = _parse_items(data, seller_name=seller_name, total_amount=total_amount)
    return items


def decode_taiwan_receipt(
    *,
    left_qr_code: Optional[str] = None,
    right_qr_code: Optional[str] = None,
    barcode: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TaiwanReceiptData:
    """Decode both QR codes of a receipt and keep the better record.

    Preference: valid left, valid right, any left, any right. The 1D barcode
    is attached without being decoded.
    """
    left = left_qr_code or ""
    right = right_qr_code or ""
    code = barcode or ""

    left_data = decode_taiwan_einvoice(left, now=now) if left else None
    right_data = decode_taiwan_einvoice(right, now=now) if right else None

    if left_data is not None and left_data.is_valid:
        best = left_data
    elif right_data is not None and right_data.is_valid:
        best = right_data
    elif left_data is not None:
        best = left_data
    elif right_data is not None:
        best = right_data
    else:
        best = create_error_result("No valid QR codes found")

    best = replace(best, left_qr_code=left, right_qr_code=right, barcode=code)
    log_debug(
        f"receipt decoded: left_len={len(left)} right_len={len(right)} barcode_len={len(code)} "
        f"valid={best.is_valid}"
    )
    return TaiwanReceiptData(left_qr_code=left, right_qr_code=right, barcode=code, invoice_data=best)


def is_taiwan_einvoice(qr_data: str, user_language: str = "en") -> bool:
    """Heuristic gate: could this scanned string be a Taiwan e-invoice?

    zh-TW users mostly scan invoices, so that mode only rejects obvious other
    formats (URLs, vCard, Wi-Fi, SMS, tel, mailto).
    """
    if not qr_data or not qr_data.strip():
        return False

    lower = qr_data.lower()
    if user_language == "zh-TW":
        return not any(marker in lower for marker in _NON_INVOICE_MARKERS)

    if len(qr_data) < 5:
        return False

    has_keyword = any(term in lower for term in _TAIWAN_INDICATORS)
    has_invoice_no = bool(_ANY_INVOICE_NO_RE.search(qr_data))
    has_date = bool(_DATE_HINT_RE.search(qr_data))
    has_cjk = bool(_CJK_RE.search(qr_data))
    has_currency = bool(_CURRENCY_HINT_RE.search(qr_data))

    return has_keyword or (has_invoice_no and has_date) or (has_cjk and (has_date or has_currency))


def extract_items_from_taiwan_invoice(record: TaiwanInvoiceRecord) -> list[WarehouseItem]:
    """Project a decoded invoice into warehouse inventory candidates."""
    if not record.is_valid:
        return []

    if record.items:
        return [
            WarehouseItem(
                name=it.name,
                quantity=it.quantity,
                unit=it.unit,
                price=it.price,
                description=f"Taiwan e-invoice item from {record.seller_name}",
            )
            for it in record.items
        ]

    return [
        WarehouseItem(
            name=f"Taiwan Import - {record.seller_name}",
            quantity=1,
            unit="piece",
            price=record.total_amount,
            description=f"Taiwan e-invoice from {record.seller_name} (Invoice: {record.invoice_number})",
        )
    ]


def parse_taiwan_invoice_to_database(
    record: TaiwanInvoiceRecord, *, now: Optional[datetime] = None
) -> Optional[dict[str, Any]]:
    """Row shape for the `taiwan_invoices` table; None for invalid records."""
    if not record.is_valid:
        return None

    stamp = (now or datetime.now()).isoformat()
    return {
        "invoice_number": record.invoice_number,
        "invoice_date": record.invoice_date,
        "seller_name": record.seller_name,
        "seller_tax_id": record.seller_tax_id,
        "buyer_name": record.buyer_name or None,
        "buyer_tax_id": record.buyer_tax_id or None,
        "total_amount": record.total_amount,
        "tax_amount": record.tax_amount,
        "is_valid": record.is_valid,
        "source": "taiwan_einvoice_decoder",
        "language": "zh-TW",
        "defaulted_fields": list(record.defaulted_fields),
        "items": [
            {
                "name": it.name,
                "quantity": it.quantity,
                "unit": it.unit,
                "price": it.price,
                "amount": it.amount,
                "tax_rate": it.tax_rate,
            }
            for it in record.items
        ],
        "created_at": stamp,
        "updated_at": stamp,
    }
