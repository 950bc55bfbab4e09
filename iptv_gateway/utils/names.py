"""
Channel name utilities

Normalization used for every name comparison in the service (hint lookups,
EPG identity resolution, duplicate detection) plus the lighter cleanup applied
to names before they are displayed.
"""
import re
import unicodedata


_DOT_SUFFIX_RE = re.compile(r"\s*(\.[a-z0-9]{1,3})+$", re.IGNORECASE)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_GENERIC_TOKENS_RE = re.compile(r"\b(hd|uhd|4k|tv|channel|plus)\b")
_SPORTS_RE = re.compile(r"\bsports\b")
_WHITESPACE_RE = re.compile(r"\s+")
_DUPLICATE_INDEX_RE = re.compile(r"\s\(\d+\)$")
_TRAILING_NUMBER_RE = re.compile(r"\s\d+$")


def normalize_channel_name(raw: str | None) -> str:
    """
    Reduce a raw channel or display name to its comparison key.

    Two names with the same key are treated as the same channel. The
    function is total and idempotent; an empty result must never be used
    as a lookup key.

    Args:
        raw: Name as received from the upstream catalog, an XMLTV feed or a list

    Returns:
        Lowercase, space-separated alphanumeric key (possibly empty)
    """
    if not raw:
        return ""
    value = raw.lower()
    value = _DOT_SUFFIX_RE.sub("", value)
    value = _NON_ALNUM_RE.sub(" ", value)
    value = _GENERIC_TOKENS_RE.sub(" ", value)
    value = _SPORTS_RE.sub("sport", value)
    value = _WHITESPACE_RE.sub(" ", value)
    return value.strip()


def cleanup_channel_name(name: str | None) -> str:
    """Strip trailing dot-codes like ' .c' or '.s .b' from a display name."""
    if not name:
        return "Unknown"
    return _DOT_SUFFIX_RE.sub("", name).strip()


def strip_duplicate_suffix(name: str) -> str:
    """Remove the ' (n)' numbering added to duplicate listings, or a legacy ' n'."""
    without_index = _DUPLICATE_INDEX_RE.sub("", name)
    return _TRAILING_NUMBER_RE.sub("", without_index)


def strip_trailing_number(key: str) -> str:
    return re.sub(r"\s+\d+$", "", key)


def collation_key(value: str) -> str:
    """Accent- and case-insensitive key for alphabetical ordering."""
    decomposed = unicodedata.normalize("NFKD", value or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()
