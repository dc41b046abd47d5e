from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import List, Optional

_CAMEL_ACRONYM_PATTERN = re.compile(r"([A-Z]+)([A-Z][a-z])")
_CAMEL_PATTERN = re.compile(r"([a-z\d])([A-Z])")
_SEPARATOR_PATTERN = re.compile(r"[\s_/\-:\.]+")
# Keep unicode word characters and dashes; everything else is dropped from file names.
_UNSAFE_PATTERN = re.compile(r"[^\w\-]", re.UNICODE)
_MULTIDASH_PATTERN = re.compile(r"-{2,}")
_ARTIST_SEPARATOR_PATTERN = re.compile(r"\s*[,&]\s*")


def _strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(c for c in normalized if not unicodedata.combining(c))


def kebab_case(value: str) -> str:
    """Convert a display name such as 'My Fav Songs' or 'myFavSongs' to 'my-fav-songs'."""
    value = _strip_diacritics(value or "")
    value = _CAMEL_ACRONYM_PATTERN.sub(r"\1-\2", value)
    value = _CAMEL_PATTERN.sub(r"\1-\2", value)
    value = _SEPARATOR_PATTERN.sub("-", value)
    value = _UNSAFE_PATTERN.sub("", value)
    value = _MULTIDASH_PATTERN.sub("-", value)
    return value.strip("-").lower()


def split_artist_names(value: str) -> List[str]:
    """Split a combined credit such as 'Queen & David Bowie, Annie Lennox' into names."""
    return [name for name in _ARTIST_SEPARATOR_PATTERN.split(value or "") if name]


def parse_release_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a release date given with year, month or day precision ('1975', '1975-10', '1975-10-31')."""
    if not value:
        return None
    for fmt in ("%Y-%m-%d", "%Y-%m", "%Y"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None
