"""
Fuzzy name matching

Dice coefficient over character bigrams of normalized names, and the
best-match search built on top of it.
"""
from collections import Counter
from collections.abc import Callable, Iterable
from typing import TypeVar

from iptv_gateway.utils.names import normalize_channel_name, strip_trailing_number


T = TypeVar("T")

DEFAULT_THRESHOLD = 0.85


def _bigrams(value: str) -> list[str]:
    text = normalize_channel_name(value)
    if len(text) < 2:
        return [text] if text else []
    return [text[i:i + 2] for i in range(len(text) - 1)]


def similarity(a: str, b: str) -> float:
    """
    Dice coefficient of two names, in [0, 1].

    Both names empty after normalization count as identical; exactly one
    empty scores 0.
    """
    grams_a = _bigrams(a)
    grams_b = _bigrams(b)
    if not grams_a and not grams_b:
        return 1.0
    if not grams_a or not grams_b:
        return 0.0

    remaining = Counter(grams_b)
    intersection = 0
    for gram in grams_a:
        if remaining[gram] > 0:
            intersection += 1
            remaining[gram] -= 1
    return (2 * intersection) / (len(grams_a) + len(grams_b))


def best_match(
    target: str,
    candidates: Iterable[T],
    key: Callable[[T], str] | None = None,
    threshold: float = DEFAULT_THRESHOLD,
) -> tuple[T, float] | None:
    """
    Find the candidate whose name scores highest against target.

    Args:
        target: Name to look up
        candidates: Objects to score, in priority order
        key: Extracts the name to compare from a candidate (identity by default)
        threshold: Minimum accepted score

    Returns:
        (candidate, score) for the first candidate reaching the maximum score,
        or None when nothing reaches the threshold
    """
    best: T | None = None
    best_score = 0.0
    found = False
    for candidate in candidates:
        name = key(candidate) if key else candidate
        score = similarity(target, name or "")
        if score > best_score:
            best, best_score, found = candidate, score, True
    if not found or best_score < threshold:
        return None
    return best, best_score


def pick_tvg_id_for_name(name: str, candidates: list[str]) -> str | None:
    """
    Choose the preferred candidate for a channel name.

    Exact normalized match wins; otherwise numbered variants ("X 1", "X 2")
    match after dropping the trailing number; otherwise the first candidate.
    """
    norm = normalize_channel_name(name)
    for candidate in candidates:
        if normalize_channel_name(candidate) == norm:
            return candidate

    stripped = strip_trailing_number(norm)
    for candidate in candidates:
        if strip_trailing_number(normalize_channel_name(candidate)) == stripped:
            return candidate

    return candidates[0] if candidates else None
