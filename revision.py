"""Normalisation of lesson revision input.

Teachers type the next revision assignment in whatever shape is convenient:
free text such as ``"سورة يس 1-10"``, a partially filled object coming from
the front-end, or nothing at all. :func:`normalize_revision` turns that input
into a canonical range::

    {"surah": "يس", "fromAyah": 1, "toAyah": 10, "count": 10}

or ``None``. A range is all-or-nothing: anything that cannot be read with
confidence is discarded instead of being stored half-populated.
"""

from __future__ import annotations

import math
import re
from typing import Any, Mapping, Optional

# "1-10", "1 – 10"
_AYAH_RANGE_RE = re.compile(r"([0-9]+)\s*[-–]\s*([0-9]+)")
# Best-effort: a run of Arabic letters/digits, optionally after the word "سورة".
_SURAH_RE = re.compile(
    r"(?:سورة\s*)?"
    r"([ء-ي٠-٩\-\sءآأؤئ]+)"
)

_SURAH_KEYS = ("surah", "name", "sura")
_FROM_KEYS = ("fromAyah", "from", "start", "from_aayah")
_TO_KEYS = ("toAyah", "to", "end", "to_aayah")


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _tidy(number: float):
    return int(number) if float(number).is_integer() else number


def _range(surah: str, from_ayah: float, to_ayah: float, count: float) -> dict:
    result = {"surah": surah, "fromAyah": _tidy(from_ayah), "toAyah": _tidy(to_ayah)}
    # Bounds at opposite ends of the float range overflow the length.
    if math.isfinite(count):
        result["count"] = _tidy(count)
    return result


def _first_present(data: Mapping[str, Any], keys) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _from_text(text: str) -> Optional[dict]:
    text = text.strip()
    if not text:
        return None
    numbers = _AYAH_RANGE_RE.search(text)
    if not numbers:
        return None
    surah_match = _SURAH_RE.search(text)
    surah = surah_match.group(1).strip() if surah_match else ""
    if not surah:
        return None
    # Digit runs too long for a float are not a usable range.
    from_ayah = _to_number(numbers.group(1))
    to_ayah = _to_number(numbers.group(2))
    if from_ayah is None or to_ayah is None:
        return None
    return _range(surah, from_ayah, to_ayah, to_ayah - from_ayah + 1)


def _from_mapping(data: Mapping[str, Any]) -> Optional[dict]:
    surah = ""
    for key in _SURAH_KEYS:
        if data.get(key):
            try:
                surah = str(data[key]).strip()
            except ValueError:
                return None
            break
    if not surah:
        return None

    from_ayah = _to_number(_first_present(data, _FROM_KEYS))
    to_ayah = _to_number(_first_present(data, _TO_KEYS))
    if from_ayah is None or to_ayah is None:
        return None

    count = _to_number(data.get("count"))
    if count is None:
        count = to_ayah - from_ayah + 1
    return _range(surah, from_ayah, to_ayah, count)


def normalize_revision(value: Any) -> Optional[dict]:
    """Return a canonical revision range for ``value`` or ``None``.

    * ``None`` and blank strings give ``None``.
    * Strings must contain both an ayah range (``<int>-<int>``, first match
      wins) and an Arabic surah name; otherwise ``None``.
    * Mappings may use ``surah``/``name``/``sura``,
      ``fromAyah``/``from``/``start``/``from_aayah`` and
      ``toAyah``/``to``/``end``/``to_aayah``. A numeric ``count`` is kept as
      given, otherwise it is derived from the bounds.
    * Any other type gives ``None``.

    The surah name is not checked against a list of real surahs. This
    function never raises.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return _from_text(value)
    if isinstance(value, Mapping):
        return _from_mapping(value)
    return None


__all__ = ["normalize_revision"]
