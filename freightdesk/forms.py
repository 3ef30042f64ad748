import math
import re
from typing import Dict, List, Optional

from .errors import ValidationFailed

LINE_FIELD = re.compile(r"^products\[(\d+)\]\[(\w+)\]$")


def blank(v: Optional[str]) -> bool:
    return not (v or "").strip()


def clean(v: Optional[str]) -> Optional[str]:
    """Stripped text, or None for blank input."""
    v = (v or "").strip()
    return v or None


def parse_int(v: Optional[str], label: str) -> Optional[int]:
    if blank(v):
        return None
    try:
        return int(v.strip())
    except ValueError:
        raise ValidationFailed(f"{label} must be a whole number")


def parse_number(v: Optional[str], label: str, default: float = 0.0) -> float:
    if blank(v):
        return default
    try:
        n = float(v.strip())
    except ValueError:
        raise ValidationFailed(f"{label} must be a number")
    if not math.isfinite(n):
        raise ValidationFailed(f"{label} must be a number")
    return n


def line_items(form) -> List[Dict[str, str]]:
    """``products[i][field]`` keys grouped per line, in index order.

    Lines are read from index 0 until the first one without a product name.
    """
    lines: Dict[int, Dict[str, str]] = {}
    for key, value in form.multi_items():
        m = LINE_FIELD.match(key)
        if m and isinstance(value, str):
            lines.setdefault(int(m.group(1)), {})[m.group(2)] = value
    out = []
    i = 0
    while not blank(lines.get(i, {}).get("product_name")):
        out.append(lines[i])
        i += 1
    return out
