import re
import unicodedata
from typing import List, Optional, Union


_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")
_YEAR = re.compile(r"\d{4}")


def normalize_text(text: Optional[str]) -> str:
    """Case-fold, strip diacritics and punctuation, collapse whitespace"""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _NON_WORD.sub(" ", stripped).replace("_", " ")
    return _WHITESPACE.sub(" ", stripped).strip()


def tokenize(text: Optional[str]) -> List[str]:
    normalized = normalize_text(text)
    return normalized.split(" ") if normalized else []


def parse_year(value: Union[str, int, None]) -> int:
    """Extract a 4-digit year from '1977', '1977-05-01' or 1977. Missing years are 0."""
    if value is None:
        return 0
    match = _YEAR.search(str(value))
    return int(match.group()) if match else 0
