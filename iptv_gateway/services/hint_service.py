"""
Enrichment Hint Service

Attaches a logo and a category to catalog channel names. The home country
is served from a curated name map (refreshed at runtime from a public M3U
list); every other country from a static provider list. Each resolution is
memoized per (country, name) and written through to disk, so a name is
fuzzy-matched once per deployment.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Iterable

import httpx

from iptv_gateway.config import CustomSettings, country_name_to_id
from iptv_gateway.services.fetch_types import ResolvedHint, StaticEntry
from iptv_gateway.utils.file_operations import read_json_file, write_json_file
from iptv_gateway.utils.names import cleanup_channel_name, collation_key, normalize_channel_name
from iptv_gateway.utils.similarity import best_match


logger = logging.getLogger(__name__)

ALL_CATEGORIES = "Tutti"
BANNED_CATEGORIES = frozenset({"pluto tv italia", "eventi live"})

_M3U_LOGO_RE = re.compile(r'tvg-logo="([^"]+)"')
_M3U_GROUP_RE = re.compile(r'group-title="([^"]+)"')


def normalize_category(value: str | None) -> str:
    return (value or "").strip().lower()


def is_banned_category(value: str | None) -> bool:
    return normalize_category(value) in BANNED_CATEGORIES


def _sorted_category_options(categories: Iterable[str]) -> list[str]:
    distinct = {c.strip() for c in categories if c and c.strip() and not is_banned_category(c)}
    return [ALL_CATEGORIES, *sorted(distinct, key=collation_key)]


def _to_static_entry(raw: dict) -> StaticEntry | None:
    name = raw.get("name")
    if not name:
        return None
    return StaticEntry(
        name=str(name),
        country=str(raw.get("country") or ""),
        logo=raw.get("logo") or None,
        category=raw.get("category") or None,
    )


class HintResolver:
    """Resolves and memoizes logo/category hints per country."""

    def __init__(self, settings: CustomSettings, http: httpx.AsyncClient | None = None):
        self.settings = settings
        self.http = http
        self.threshold = settings.similarity_threshold
        self.home_country = settings.home_country
        self.logos: dict[str, str] = {}
        self.categories: dict[str, str] = {}
        self.static_by_country: dict[str, list[StaticEntry]] = {}
        self._resolved: dict[str, dict[str, ResolvedHint]] = {}
        self._bucket_lock = asyncio.Lock()
        self._last_m3u_update = 0.0

    async def load(self) -> None:
        """Load the curated home map and the combined static list from disk."""
        home = await read_json_file(self.settings.home_hints_file)
        if isinstance(home, dict):
            logos = home.get("logos")
            categories = home.get("categories")
            self.logos = {str(k): str(v) for k, v in logos.items()} if isinstance(logos, dict) else {}
            self.categories = {str(k): str(v) for k, v in categories.items()} if isinstance(categories, dict) else {}
        logger.info("Home hints loaded: %s logos, %s categories", len(self.logos), len(self.categories))

        combined = await read_json_file(self.settings.static_lists_dir / "lists.json")
        by_country: dict[str, list[StaticEntry]] = {}
        if isinstance(combined, list):
            for raw in combined:
                if not isinstance(raw, dict):
                    continue
                entry = _to_static_entry(raw)
                cid = country_name_to_id(entry.country) if entry else None
                if entry and cid and cid != self.home_country:
                    by_country.setdefault(cid, []).append(entry)
        self.static_by_country = by_country
        logger.info("Static channel lists loaded for: %s", sorted(by_country) or "none")

    async def _ensure_static(self, country_id: str) -> list[StaticEntry]:
        """Return the static list for a country, loading its shard on first use."""
        if not country_id or country_id == self.home_country:
            return []
        entries = self.static_by_country.get(country_id)
        if entries:
            return entries

        shard = await read_json_file(self.settings.static_lists_dir / "by-country" / f"{country_id}.json")
        if not isinstance(shard, list):
            return []
        entries = []
        for raw in shard:
            entry = _to_static_entry(raw) if isinstance(raw, dict) else None
            if entry:
                entries.append(entry)
        self.static_by_country[country_id] = entries
        logger.debug("Shard loaded for %s: %s entries", country_id, len(entries))
        return entries

    def _best_from_map(self, mapping: dict[str, str], country_id: str, base_name: str) -> str | None:
        exact = mapping.get(f"{country_id}:{base_name.lower()}")
        if exact:
            return exact
        prefix = f"{country_id}:"
        keys = [key for key in mapping if key.startswith(prefix)]
        match = best_match(base_name, keys, key=lambda k: k[len(prefix):], threshold=self.threshold)
        return mapping[match[0]] if match else None

    def find_best_logo(self, country_id: str, base_name: str) -> str | None:
        return self._best_from_map(self.logos, country_id, base_name)

    def find_best_category(self, country_id: str, base_name: str) -> str | None:
        return self._best_from_map(self.categories, country_id, base_name)

    def find_logo_any(self, base_name: str) -> str | None:
        """Best curated logo across every country (used when the country is unknown)."""
        if not normalize_channel_name(base_name):
            return None
        match = best_match(
            base_name,
            self.logos.items(),
            key=lambda item: item[0].split(":", 1)[1] if ":" in item[0] else "",
            threshold=self.threshold,
        )
        return match[0][1] if match else None

    async def find_static_best(self, country_id: str, base_name: str) -> StaticEntry | None:
        entries = await self._ensure_static(country_id)
        if not entries:
            return None
        match = best_match(base_name, entries, key=lambda e: e.name, threshold=self.threshold)
        return match[0] if match else None

    async def lookup_hint(self, country_id: str, base_name: str) -> ResolvedHint:
        """Compute a hint without consulting the memo."""
        if not normalize_channel_name(base_name):
            return ResolvedHint()
        if country_id == self.home_country:
            return ResolvedHint(
                logo=self.find_best_logo(country_id, base_name),
                cat=self.find_best_category(country_id, base_name),
            )
        entry = await self.find_static_best(country_id, base_name)
        if entry is None:
            return ResolvedHint()
        return ResolvedHint(logo=entry.logo or None, cat=entry.category or None)

    async def _bucket(self, country_id: str) -> dict[str, ResolvedHint]:
        bucket = self._resolved.get(country_id)
        if bucket is not None:
            return bucket
        async with self._bucket_lock:
            bucket = self._resolved.get(country_id)
            if bucket is None:
                stored = await read_json_file(self.settings.hints_cache_dir / f"{country_id}.json")
                bucket = {}
                if isinstance(stored, dict):
                    bucket = {str(k): ResolvedHint.from_dict(v) for k, v in stored.items()}
                self._resolved[country_id] = bucket
        return bucket

    async def _persist_bucket(self, country_id: str, bucket: dict[str, ResolvedHint]) -> None:
        payload = {name: hint.to_dict() for name, hint in bucket.items()}
        await write_json_file(self.settings.hints_cache_dir / f"{country_id}.json", payload)

    async def get_resolved_hint(self, country_id: str, base_name: str) -> ResolvedHint:
        """
        Memoized hint for a channel name within a country.

        The first lookup fuzzy-matches and writes the result through to disk;
        later lookups are served from memory.
        """
        key = base_name.lower()
        bucket = await self._bucket(country_id)
        hint = bucket.get(key)
        if hint is not None:
            return hint

        hint = await self.lookup_hint(country_id, base_name)
        bucket[key] = hint
        await self._persist_bucket(country_id, bucket)
        return hint

    async def get_resolved_hints(self, country_id: str, base_names: Iterable[str]) -> dict[str, ResolvedHint]:
        """Resolve many names at once, writing the memo to disk a single time."""
        bucket = await self._bucket(country_id)
        resolved: dict[str, ResolvedHint] = {}
        added = 0
        for base_name in base_names:
            key = base_name.lower()
            hint = bucket.get(key)
            if hint is None:
                hint = await self.lookup_hint(country_id, base_name)
                bucket[key] = hint
                added += 1
            resolved[base_name] = hint
        if added:
            logger.debug("Resolved %s new hint(s) for %s", added, country_id)
            await self._persist_bucket(country_id, bucket)
        return resolved

    async def category_options(self, country_id: str) -> list[str]:
        """Genre filter options for a country catalog, 'Tutti' first."""
        if country_id == self.home_country:
            prefix = f"{country_id}:"
            return _sorted_category_options(v for k, v in self.categories.items() if k.startswith(prefix))
        entries = await self._ensure_static(country_id)
        return _sorted_category_options(e.category or "" for e in entries)

    def home_hints_stale(self) -> bool:
        if not self._last_m3u_update:
            return True
        max_age = self.settings.home_m3u_refresh_hours * 3600
        return time.monotonic() - self._last_m3u_update > max_age

    async def update_home_hints_from_m3u(self) -> int:
        """
        Add missing home-country logos/categories from the public M3U list.

        Returns:
            Number of logos added (0 on any failure)
        """
        if self.http is None:
            return 0
        try:
            response = await self.http.get(self.settings.home_m3u_url, timeout=self.settings.home_m3u_timeout_sec)
        except httpx.HTTPError as exc:
            logger.warning("Home M3U download failed: %s", type(exc).__name__)
            return 0
        if not response.is_success:
            logger.warning("Home M3U download returned HTTP %s", response.status_code)
            return 0

        logos_added, categories_added = self.merge_m3u(response.text)
        self._last_m3u_update = time.monotonic()
        if logos_added or categories_added:
            await write_json_file(
                self.settings.home_hints_file,
                {"logos": self.logos, "categories": self.categories},
                indent=2,
            )
            logger.info(
                "Home hints updated from M3U: %s logos, %s categories added",
                logos_added,
                categories_added,
            )
        return logos_added

    def merge_m3u(self, text: str) -> tuple[int, int]:
        """Merge #EXTINF logo/group data into the home maps; existing keys win."""
        logos_added = 0
        categories_added = 0
        for line in text.splitlines():
            if not line.startswith("#EXTINF"):
                continue
            comma = line.find(",")
            channel_name = line[comma + 1:].strip() if comma >= 0 else ""
            if not channel_name:
                continue
            key = f"{self.home_country}:{cleanup_channel_name(channel_name).lower()}"

            logo = _M3U_LOGO_RE.search(line)
            if logo and key not in self.logos:
                self.logos[key] = logo.group(1)
                logos_added += 1

            group = _M3U_GROUP_RE.search(line)
            if group and group.group(1).strip() and key not in self.categories:
                self.categories[key] = group.group(1).strip()
                categories_added += 1
        return logos_added, categories_added
