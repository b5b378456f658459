from __future__ import annotations

import math
import re
from typing import Any, Optional

_FRACTION_RE = re.compile(r"^(\d+)\s*/\s*(\d+)$")
_MIXED_RE = re.compile(r"^(\d+)\s+(\d+)\s*/\s*(\d+)$")
_DECIMAL_PREFIX_RE = re.compile(r"^[+-]?(?:\d+(?:[.,]\d*)?|[.,]\d+)(?:[eE][+-]?\d+)?")


def parse_quantity(value: Any) -> Optional[float]:
    """Convert a free-form quantity ("2", "1.5", "1/2", "1 1/2", "70g") to a number.

    Never raises; anything that cannot be read as a finite number becomes None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return _finite(float(value))
        return _parse_text(str(value).strip())
    except (OverflowError, ValueError):
        return None


def _parse_text(text: str) -> Optional[float]:
    if not text:
        return None

    fraction = _FRACTION_RE.match(text)
    if fraction:
        numerator, denominator = int(fraction.group(1)), int(fraction.group(2))
        return numerator / denominator if denominator != 0 else None

    mixed = _MIXED_RE.match(text)
    if mixed:
        whole, numerator, denominator = (int(part) for part in mixed.groups())
        return whole + numerator / denominator if denominator != 0 else None

    decimal = _DECIMAL_PREFIX_RE.match(text)
    if not decimal:
        return None
    return _finite(float(decimal.group(0).replace(",", ".")))


def _finite(number: float) -> Optional[float]:
    return number if math.isfinite(number) else None
