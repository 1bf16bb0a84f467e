from __future__ import annotations

import re
from typing import Optional


_NUMBER_RE = re.compile(r"\d[\d.,]*")
_EGP_RE = re.compile(r"(\d[\d.,]*)\s*EGP", re.I)
_THOUSANDS_RE = re.compile(r"^\d{1,3}(?:,\d{3})+$")

# The portal occasionally renders Arabic-Indic digits when the UI language flips.
_ARABIC_DIGITS = str.maketrans("٠١٢٣٤٥٦٧٨٩", "0123456789")


def _normalize_number_token(token: str) -> Optional[str]:
    s = token.strip().rstrip(".,")
    if not s:
        return None
    if "," in s and "." in s:
        # "1,234.50" -> thousands separator + decimal point
        s = s.replace(",", "")
    elif "," in s:
        # "1,234" is a thousands group; "12,5" is a decimal comma.
        s = s.replace(",", "") if _THOUSANDS_RE.match(s) else s.replace(",", ".")
    if s.count(".") > 1:
        return None
    return s


def num_from_text(text: Optional[str]) -> Optional[float]:
    """
    Return the first number found in `text`, or None.

    Examples:
    - "361.56 GB Remaining" -> 361.56
    - "Current Balance 1,250.75 EGP" -> 1250.75
    - "12,5" -> 12.5
    """
    if text is None:
        return None
    s = str(text).replace("\u00a0", " ").translate(_ARABIC_DIGITS)
    m = _NUMBER_RE.search(s)
    if not m:
        return None
    token = _normalize_number_token(m.group(0))
    if token is None:
        return None
    try:
        return float(token)
    except ValueError:
        return None


def find_egp_amounts(text: Optional[str]) -> list[float]:
    """
    Every "<number> EGP" occurrence in page order (duplicates kept).
    """
    s = str(text or "").replace("\u00a0", " ").translate(_ARABIC_DIGITS)
    out: list[float] = []
    for m in _EGP_RE.finditer(s):
        value = num_from_text(m.group(1))
        if value is not None:
            out.append(value)
    return out
