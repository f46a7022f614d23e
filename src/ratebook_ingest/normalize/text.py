import re
from typing import Any, Dict, Optional

from unidecode import unidecode

_SEPARATORS = re.compile(r"[_\-/]+")
_SPACES = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^A-Z0-9 ]+")


def norm(value: Any) -> str:
    """Lowercase, accent-folded, whitespace-collapsed text."""
    if value is None:
        return ""
    return _SPACES.sub(" ", unidecode(str(value)).strip().lower())


def normalize_header(value: Any) -> str:
    """Header key used for pattern matching: separators become spaces."""
    return _SPACES.sub(" ", _SEPARATORS.sub(" ", norm(value))).strip()


def normalize_manufacturer(name: Any, aliases: Optional[Dict[str, str]] = None) -> str:
    """Normalize a manufacturer label taken from a sheet name or a cell.

    ``"Ford_"`` -> ``"Ford"``, ``"Omoda___Jaecoo"`` -> alias lookup on
    ``"Omoda Jaecoo"`` as well as the raw name.
    """
    raw = str(name or "").strip()
    cleaned = _SPACES.sub(" ", raw.rstrip("_").replace("_", " ")).strip()
    if aliases:
        lookup = {k.lower(): v for k, v in aliases.items()}
        for candidate in (raw, raw.rstrip("_"), cleaned):
            if candidate.lower() in lookup:
                return lookup[candidate.lower()]
    return cleaned


def match_key(value: Any) -> str:
    """Upper-case alphanumeric key used for source keys and similarity scoring."""
    folded = unidecode(str(value or "")).upper()
    return _SPACES.sub(" ", _NON_ALNUM.sub(" ", folded)).strip()
