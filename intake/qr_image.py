"""Read the two QR codes and the 1D barcode off a photographed e-invoice.

Decoders, in order: ZXing (zxing-cpp) on the full frame, on perspective-
corrected QR crops and on crops/rotations; OpenCV's QR detector over
crops/rotations/contrast variants; pyzbar. ZXing and pyzbar are optional;
OpenCV is required.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable

from intake.log import log_debug
from intake.tw_einvoice_qr import invoice_key_from_qr


_DATA_URL_PREFIX_RE = re.compile(r"^data:image/[a-z]+;base64,", re.I)


@dataclass(frozen=True)
class CodeDetection:
    text: str
    kind: str  # "qr" or "barcode"
    x: float = 0.0


@dataclass(frozen=True)
class ReceiptCodes:
    left_qr_code: str = ""
    right_qr_code: str = ""
    barcode: str = ""

    def is_empty(self) -> bool:
        return not (self.left_qr_code or self.right_qr_code or self.barcode)


def _import_cv2() -> Any:
    try:
        import cv2
    except ImportError as e:
        raise RuntimeError("OpenCV not installed. Run: `poetry add opencv-python`.") from e
    return cv2


class _Collector:
    def __init__(self) -> None:
        self.detections: list[CodeDetection] = []
        self._seen: set[str] = set()

    def add(self, text: str, kind: str, x: float) -> bool:
        # Keep raw payloads (including padding), skip blanks and repeats.
        if not text or not text.strip() or text in self._seen:
            return False
        self._seen.add(text)
        self.detections.append(CodeDetection(text=text, kind=kind, x=float(x)))
        return True

    def qr_complete(self) -> bool:
        return sum(1 for d in self.detections if d.kind == "qr") >= 2

    def complete(self) -> bool:
        return self.qr_complete() and any(d.kind == "barcode" for d in self.detections)


def _roi_variants(cv2: Any, img: Any) -> list[tuple[Any, float]]:
    """Crops of the frame as (roi, x_offset), each also rotated by 90/180/270.

    The two QRs sit side by side near the bottom of the paper, so halves and
    bottom bands often decode when the full frame does not. Rotated views
    report the crop offset only.
    """
    h, w = img.shape[:2]
    mid = int(w * 0.50)
    y35, y50 = int(h * 0.35), int(h * 0.50)
    x10, x90 = int(w * 0.10), int(w * 0.90)
    crops = [
        (img, 0),
        (img[:, :mid], 0),
        (img[:, mid:], mid),
        (img[y35:, :], 0),
        (img[y50:, :], 0),
        (img[y50:, :mid], 0),
        (img[y50:, mid:], mid),
        (img[y50:, x10:x90], x10),
    ]

    out: list[tuple[Any, float]] = []
    for roi, x0 in crops:
        if roi.size == 0:
            continue
        out.append((roi, float(x0)))
        for rotation in (cv2.ROTATE_90_CLOCKWISE, cv2.ROTATE_180, cv2.ROTATE_90_COUNTERCLOCKWISE):
            out.append((cv2.rotate(roi, rotation), float(x0)))
    return out


def _import_zxing() -> Any:
    try:
        import zxingcpp  # type: ignore
    except ImportError:
        log_debug("zxing-cpp not installed; skipping ZXing decoder")
        return None
    return zxingcpp


def _zxing_kind(zxingcpp: Any, result: Any) -> str:
    return "qr" if result.format == zxingcpp.BarcodeFormat.QRCode else "barcode"


def _read_zxing(zxingcpp: Any, gray: Any, out: _Collector) -> None:
    results = zxingcpp.read_barcodes(
        gray,
        formats=(zxingcpp.BarcodeFormat.QRCode, zxingcpp.BarcodeFormat.Code39),
        try_rotate=True,
        try_downscale=True,
    )
    for r in results:
        out.add(r.text or "", _zxing_kind(zxingcpp, r), r.position.top_left.x)


def _read_zxing_warped(cv2: Any, zxingcpp: Any, image: Any, out: _Collector) -> None:
    """Locate QR corners with OpenCV, warp each to a square and decode it as a pure symbol."""
    import numpy as np

    try:
        ok, quads = cv2.QRCodeDetector().detectMulti(image)
    except cv2.error as e:
        log_debug(f"OpenCV QR corner detection failed: {e}")
        return
    if not ok or quads is None:
        return

    size = 900
    dst = np.array([[0, 0], [size - 1, 0], [size - 1, size - 1], [0, size - 1]], dtype="float32")
    for quad in quads:
        q = np.asarray(quad, dtype="float32")
        if q.shape != (4, 2):
            continue
        warped = cv2.warpPerspective(image, cv2.getPerspectiveTransform(q, dst), (size, size))
        if warped.ndim == 3:
            warped = cv2.cvtColor(warped, cv2.COLOR_BGR2GRAY)
        for fx in (1.0, 1.5, 2.0):
            g = warped if fx == 1.0 else cv2.resize(warped, None, fx=fx, fy=fx, interpolation=cv2.INTER_CUBIC)
            results = zxingcpp.read_barcodes(
                g,
                formats=(zxingcpp.BarcodeFormat.QRCode,),
                try_rotate=False,
                try_downscale=True,
                is_pure=True,
            )
            added = False
            for r in results:
                added = out.add(r.text or "", "qr", float(q[:, 0].min())) or added
            if added:
                break
        if out.qr_complete():
            return


def _read_zxing_rois(cv2: Any, zxingcpp: Any, gray: Any, out: _Collector) -> None:
    for roi, x0 in _roi_variants(cv2, gray):
        results = zxingcpp.read_barcodes(
            roi,
            formats=(zxingcpp.BarcodeFormat.QRCode, zxingcpp.BarcodeFormat.Code39),
            try_rotate=False,
            try_downscale=True,
        )
        for r in results:
            out.add(r.text or "", _zxing_kind(zxingcpp, r), x0 + r.position.top_left.x)
        if out.qr_complete():
            return


def _contrast_variants(cv2: Any, image: Any) -> Iterable[tuple[Any, float]]:
    """Yield (image, scale) variants; scale maps coordinates back to the input."""
    if image.ndim == 3:
        yield image, 1.0
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    else:
        gray = image
    yield gray, 1.0
    # Small QRs on receipts decode better upscaled.
    yield cv2.resize(gray, None, fx=2.2, fy=2.2, interpolation=cv2.INTER_CUBIC), 2.2

    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    eq = clahe.apply(gray)
    yield eq, 1.0
    yield cv2.adaptiveThreshold(eq, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, 31, 2), 1.0
    blur = cv2.GaussianBlur(eq, (0, 0), 1.0)
    yield cv2.addWeighted(eq, 1.8, blur, -0.8, 0), 1.0


def _read_opencv(cv2: Any, image: Any, out: _Collector) -> None:
    detector = cv2.QRCodeDetector()
    for roi, x0 in _roi_variants(cv2, image):
        for variant, scale in _contrast_variants(cv2, roi):
            try:
                ok, decoded, points, _ = detector.detectAndDecodeMulti(variant)
            except cv2.error as e:
                log_debug(f"OpenCV QR decode failed on a variant: {e}")
                continue
            if not ok or points is None:
                continue
            for txt, pts in zip(decoded, points):
                out.add(txt or "", "qr", x0 + min(p[0] for p in pts) / scale)
            if out.qr_complete():
                return


def _read_pyzbar(image_bgr: Any, out: _Collector) -> None:
    try:
        from pyzbar.pyzbar import ZBarSymbol, decode
    except ImportError:
        log_debug("pyzbar (or the zbar library) not installed; skipping pyzbar decoder")
        return

    # zbar prints noisy warnings on stderr for damaged symbols.
    with open(os.devnull, "w") as devnull, contextlib.redirect_stderr(devnull):
        objs = decode(image_bgr, symbols=[ZBarSymbol.QRCODE, ZBarSymbol.CODE39])

    for obj in objs:
        text = obj.data.decode("utf-8", errors="replace")
        kind = "qr" if obj.type == "QRCODE" else "barcode"
        out.add(text, kind, obj.rect.left)


def extract_detections(image_bgr: Any) -> list[CodeDetection]:
    """Decode every QR / Code 39 symbol found in a BGR (or grayscale) image.

    Stages run until both QRs are found: ZXing on the full frame, ZXing on
    perspective-corrected QR crops, ZXing on crops/rotations, then OpenCV on
    crops/rotations/contrast variants. pyzbar runs last while the 1D barcode
    is still missing.
    """
    cv2 = _import_cv2()
    out = _Collector()

    gray = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2GRAY) if image_bgr.ndim == 3 else image_bgr
    zxingcpp = _import_zxing()
    if zxingcpp is not None:
        _read_zxing(zxingcpp, gray, out)
        if not out.qr_complete():
            _read_zxing_warped(cv2, zxingcpp, image_bgr, out)
        if not out.qr_complete():
            _read_zxing_rois(cv2, zxingcpp, gray, out)
    if not out.qr_complete():
        _read_opencv(cv2, image_bgr, out)
    if not out.complete():
        _read_pyzbar(image_bgr, out)

    log_debug(f"image decode: {len(out.detections)} symbol(s)")
    return out.detections


def assign_receipt_codes(detections: Iterable[CodeDetection]) -> ReceiptCodes:
    """Map detections onto receipt positions.

    The QR carrying the invoice header key is the left code even when the
    photo is mirrored or rotated; otherwise QRs are taken left to right.
    """
    detections = list(detections)
    qrs = sorted((d for d in detections if d.kind == "qr"), key=lambda d: d.x)
    bars = [d for d in detections if d.kind == "barcode"]

    left = next((d for d in qrs if invoice_key_from_qr(d.text)), qrs[0] if qrs else None)
    right = next((d for d in qrs if d is not left), None)
    return ReceiptCodes(
        left_qr_code=left.text if left else "",
        right_qr_code=right.text if right else "",
        barcode=bars[0].text.strip() if bars else "",
    )


def extract_codes_from_image(image_bgr: Any) -> ReceiptCodes:
    return assign_receipt_codes(extract_detections(image_bgr))


def decode_image_base64(image_base64: str) -> Any:
    """Base64 (optionally a data URL) -> BGR image. Raises ValueError for bad data."""
    cv2 = _import_cv2()
    import numpy as np

    payload = _DATA_URL_PREFIX_RE.sub("", (image_base64 or "").strip())
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Image data is not valid base64: {e}") from e

    image = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError("Image data could not be decoded")
    return image


def extract_codes_from_image_base64(image_base64: str) -> ReceiptCodes:
    return extract_codes_from_image(decode_image_base64(image_base64))
