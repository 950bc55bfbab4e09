"""
EPG Query Service

Read-side helpers over the published EPG index: map catalog channel names to
EPG channel ids and turn their now/next programmes into descriptions.
"""
import logging

from iptv_gateway.services.epg_service import compute_now_next
from iptv_gateway.services.fetch_types import EpgIndex, NowNext, Programme
from iptv_gateway.utils.names import normalize_channel_name
from iptv_gateway.utils.similarity import DEFAULT_THRESHOLD, best_match, pick_tvg_id_for_name
from iptv_gateway.utils.timezone import now_ms

logger = logging.getLogger(__name__)

LISTING_DESCRIPTION_MAX = 280
META_DESCRIPTION_MAX = 400


def _shorten(text: str | None, max_len: int) -> str:
    if not text:
        return ""
    text = text.strip()
    return text[:max_len] if len(text) > max_len else text


def format_description(now_next: NowNext, max_len: int, separator: str = "  •  ") -> str | None:
    """
    Render now/next as a one-line description.

    Returns:
        '🔴 title — desc' and '➡️ title — desc' joined by separator, or None
        when neither programme carries text
    """
    parts = []
    for marker, programme in (("🔴", now_next.now), ("➡️", now_next.next)):
        if programme is None:
            continue
        pieces = [p for p in (programme.title, _shorten(programme.desc, max_len)) if p]
        if pieces:
            parts.append(f"{marker} {' — '.join(pieces)}")
    return separator.join(parts) if parts else None


class EpgLookup:
    """
    Resolves catalog names against an EPG index.

    Exact normalized names are looked up directly; otherwise the closest
    display name sharing the first word is accepted above the similarity
    threshold. Results are memoized until a new index is published.
    """

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold
        self._index: EpgIndex | None = None
        self._memo: dict[str, list[str]] = {}
        self._by_first_token: dict[str, list[str]] = {}

    def _sync(self, index: EpgIndex) -> None:
        if self._index is index:
            return
        self._index = index
        self._memo = {}
        self._by_first_token = {}
        for key in index.name_to_ids:
            self._by_first_token.setdefault(key.split(" ", 1)[0], []).append(key)

    def find_channel_ids(self, index: EpgIndex, name: str) -> list[str]:
        """Candidate EPG channel ids for a catalog name, preferred first."""
        key = normalize_channel_name(name)
        if not key:
            return []
        self._sync(index)
        if key in self._memo:
            return self._memo[key]

        candidates = list(index.name_to_ids.get(key, []))
        if not candidates:
            bucket = self._by_first_token.get(key.split(" ", 1)[0], [])
            match = best_match(key, bucket, threshold=self.threshold)
            if match:
                logger.debug("EPG fuzzy match '%s' -> '%s' (%.2f)", key, match[0], match[1])
                candidates = list(index.name_to_ids[match[0]])

        preferred = pick_tvg_id_for_name(name, candidates)
        if preferred and candidates[0] != preferred:
            candidates.remove(preferred)
            candidates.insert(0, preferred)
        self._memo[key] = candidates
        return candidates

    def lookup_now_next(self, index: EpgIndex, name: str, now: int | None = None) -> NowNext:
        """First 'now' and first 'next' found across the name's candidate channels."""
        instant = now if now is not None else now_ms()
        current: Programme | None = None
        following: Programme | None = None
        for channel_id in self.find_channel_ids(index, name):
            timeline = index.by_channel.get(channel_id)
            if not timeline:
                continue
            found = compute_now_next(timeline, instant)
            if current is None and found.now is not None:
                current = found.now
            if following is None and found.next is not None:
                following = found.next
            if current and following:
                break
        return NowNext(now=current, next=following)

    def describe(self, index: EpgIndex, name: str, max_len: int, separator: str = "  •  ") -> str | None:
        return format_description(self.lookup_now_next(index, name), max_len, separator)

    def lookup_candidates(self, index: EpgIndex, name: str) -> list[dict]:
        """Per-candidate now/next snapshot for diagnostics."""
        instant = now_ms()
        result = []
        for channel_id in self.find_channel_ids(index, name):
            found = compute_now_next(index.by_channel.get(channel_id, []), instant)
            result.append({
                "id": channel_id,
                "now": found.now.to_dict() if found.now else None,
                "next": found.next.to_dict() if found.next else None,
            })
        return result
