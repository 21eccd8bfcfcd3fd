"""Console logging helpers shared by the intake modules and scripts.

Lines are prefixed with the level (`[INFO]`, `[WARN]`, ...). Debug lines are
only printed when enabled via `set_debug(True)` or `INTAKE_DEBUG=1`.
"""

from __future__ import annotations

import os
import sys


_DEBUG = os.getenv("INTAKE_DEBUG", "0").strip().lower() in ("1", "true", "yes")


def set_debug(enabled: bool) -> None:
    global _DEBUG
    _DEBUG = bool(enabled)


def log_debug(message: str) -> None:
    if _DEBUG:
        print(f"[DEBUG] {message}", file=sys.stderr)


def log_info(message: str) -> None:
    print(f"[INFO] {message}")


def log_warn(message: str) -> None:
    print(f"[WARN] {message}", file=sys.stderr)


def log_error(message: str) -> None:
    print(f"[ERROR] {message}", file=sys.stderr)


def mask_invoice_key(key: str) -> str:
    """Mask a 21-char invoice key so it can be logged.

    AB12345678 1140103 1A2b -> AB******78 114**** ***b
    """
    s = (key or "").strip()
    if len(s) < 21:
        return "<invalid>"
    inv, roc, rnd = s[:10], s[10:17], s[17:21]
    return f"{inv[:2]}******{inv[-2:]}{roc[:3]}****{'***' + rnd[-1:]}"
