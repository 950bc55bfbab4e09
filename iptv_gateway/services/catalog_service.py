"""
Catalog Cache Service

Per-country channel catalogs served from three tiers: memory, the on-disk
cache and the upstream provider. At most one upstream fetch per country is in
flight, and all fetches together share a bounded pool of slots.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from iptv_gateway.config import COUNTRIES_BY_ID, Country, CustomSettings
from iptv_gateway.services.fetch_coordinator import FetchSlotPool, InflightFetches, RefreshGuard
from iptv_gateway.services.fetch_types import ChannelEntry, CountryCatalog, Ok
from iptv_gateway.services.hint_service import HintResolver
from iptv_gateway.services.upstream_client import UpstreamClient
from iptv_gateway.utils.file_operations import read_json_file, write_json_file
from iptv_gateway.utils.names import cleanup_channel_name
from iptv_gateway.utils.timezone import now_ms


logger = logging.getLogger(__name__)

_PLAY_REF_FIELDS = ("url", "play", "href", "link")
_POSTER_FIELDS = ("poster", "image")


def slim_item(raw: dict[str, Any]) -> ChannelEntry:
    """Reduce an upstream catalog item to the fields the service keeps."""
    play_ref = next((raw[f] for f in _PLAY_REF_FIELDS if raw.get(f)), "")
    poster = next((raw[f] for f in _POSTER_FIELDS if raw.get(f)), None)
    return ChannelEntry(
        name=cleanup_channel_name(str(raw.get("name") or "Unknown")),
        play_ref=str(play_ref),
        poster=str(poster) if poster else None,
    )


class CatalogCache:
    """Memory/disk/upstream catalog tiers with shared in-flight fetches."""

    def __init__(self, settings: CustomSettings, upstream: UpstreamClient, hints: HintResolver):
        self.settings = settings
        self.upstream = upstream
        self.hints = hints
        self._memory: dict[str, CountryCatalog] = {}
        self._pool = FetchSlotPool(settings.max_catalog_fetches)
        self._inflight: InflightFetches[list[ChannelEntry]] = InflightFetches()
        self._guard = RefreshGuard("Catalog refresh")

    def _cache_file(self, country_id: str):
        return self.settings.catalog_cache_dir / f"{country_id}.json"

    async def _load_from_disk(self, country_id: str) -> CountryCatalog | None:
        stored = await read_json_file(self._cache_file(country_id))
        if not isinstance(stored, dict) or not isinstance(stored.get("items"), list):
            return None
        items = [ChannelEntry.from_dict(raw) for raw in stored["items"] if isinstance(raw, dict)]
        return CountryCatalog(updated_at=int(stored.get("updatedAt") or 0), items=items)

    async def get_or_fetch_country_catalog(self, country_id: str) -> list[ChannelEntry]:
        """
        Return a country's catalog, fetching it from upstream only on a full miss.

        Concurrent callers for the same country share one fetch. Failures of
        any kind produce an empty list.
        """
        if country_id not in COUNTRIES_BY_ID:
            return []

        cached = self._memory.get(country_id)
        if cached is not None:
            return cached.items

        try:
            from_disk = await self._load_from_disk(country_id)
            if from_disk is not None:
                cached = self._memory.setdefault(country_id, from_disk)
                logger.debug("Catalog %s loaded from disk (%s items)", country_id, len(cached.items))
                return cached.items

            # another caller may have filled memory while we were reading disk
            cached = self._memory.get(country_id)
            if cached is not None:
                return cached.items

            return await self._shared_fetch(country_id)
        except Exception as exc:  # Catch-all so a listing request never fails on a fetch bug
            logger.error("Catalog load for %s failed: %s", country_id, exc, exc_info=True)
            return []

    async def _shared_fetch(self, country_id: str) -> list[ChannelEntry]:
        if country_id in self._inflight:
            logger.debug("Joining in-flight catalog fetch for %s", country_id)
        country = COUNTRIES_BY_ID[country_id]
        task = self._inflight.start(country_id, lambda: self._pool.run(lambda: self._fetch_and_store(country)))
        # shield so one cancelled caller does not cancel the fetch for everyone
        return await asyncio.shield(task)

    async def _fetch_and_store(self, country: Country) -> list[ChannelEntry]:
        logger.info("Catalog fetch started: %s (%s)", country.id, country.group)
        signature = await self.upstream.fetch_signature(None, forward_ip=False)
        if not isinstance(signature, Ok):
            logger.warning("Catalog fetch for %s aborted, no signature: %s", country.id, signature)
            return []

        raw_items: list[dict] = []
        for group in country.group_candidates:
            result = await self.upstream.fetch_catalog_group(group, signature.value)
            if isinstance(result, Ok) and result.value:
                raw_items = result.value
                if group != country.group:
                    logger.info("Catalog %s served by alias group '%s'", country.id, group)
                break
        if not raw_items:
            result = await self.upstream.fetch_catalog_group(country.group, signature.value)
            if isinstance(result, Ok):
                raw_items = result.value

        items = [slim_item(raw) for raw in raw_items]
        await self._store(country.id, items)
        logger.info("Catalog fetch done: %s (%s items)", country.id, len(items))

        if country.id == self.settings.home_country and self.hints.home_hints_stale():
            await self.hints.update_home_hints_from_m3u()
        return items

    async def _store(self, country_id: str, items: list[ChannelEntry]) -> None:
        catalog = CountryCatalog(updated_at=now_ms(), items=items)
        self._memory[country_id] = catalog
        await write_json_file(
            self._cache_file(country_id),
            {"updatedAt": catalog.updated_at, "items": [item.to_dict() for item in items]},
        )

    async def refresh_country(self, country_id: str) -> list[ChannelEntry]:
        """Re-fetch a country from upstream regardless of cached tiers."""
        if country_id not in COUNTRIES_BY_ID:
            return []
        try:
            return await self._shared_fetch(country_id)
        except Exception as exc:  # Catch-all, same contract as get_or_fetch_country_catalog
            logger.error("Catalog refresh for %s failed: %s", country_id, exc, exc_info=True)
            return []

    async def refresh_all(self) -> dict:
        """Refresh every (allowed) country, then the home-country hints."""
        return await self._guard.execute(self._refresh_all)

    async def _refresh_all(self) -> dict:
        started_at = datetime.now(timezone.utc)
        country_ids = self.settings.refresh_countries or list(COUNTRIES_BY_ID)
        logger.info("Full catalog refresh started for: %s", ", ".join(country_ids))

        results = await asyncio.gather(*(self.refresh_country(cid) for cid in country_ids))
        counts = {cid: len(items) for cid, items in zip(country_ids, results)}
        logos_added = await self.hints.update_home_hints_from_m3u()

        return {
            "status": "success",
            "started_at": started_at.isoformat(),
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "countries": counts,
            "logos_added": logos_added,
        }

    def is_refreshing(self) -> bool:
        return self._guard.is_running()

    def catalog_version(self, country_id: str) -> int:
        cached = self._memory.get(country_id)
        return cached.updated_at if cached else 0

    async def guess_country_for_play_ref(self, play_ref: str) -> str | None:
        """Find which cached country lists play_ref (memory first, then disk)."""
        if not play_ref:
            return None
        for country_id, catalog in self._memory.items():
            if any(item.play_ref == play_ref for item in catalog.items):
                return country_id
        for country_id in COUNTRIES_BY_ID:
            if country_id in self._memory:
                continue
            from_disk = await self._load_from_disk(country_id)
            if from_disk is None:
                continue
            self._memory.setdefault(country_id, from_disk)
            if any(item.play_ref == play_ref for item in from_disk.items):
                return country_id
        return None

    def cache_status(self) -> dict:
        return {
            "countries": {
                cid: {"updatedAt": catalog.updated_at, "items": len(catalog.items)}
                for cid, catalog in sorted(self._memory.items())
            },
            "inflight": self._inflight.keys(),
            "fetchSlots": {
                "size": self._pool.size,
                "active": self._pool.active,
                "waiting": self._pool.waiting,
            },
            "refreshing": self.is_refreshing(),
        }

    async def close(self) -> None:
        await self._inflight.cancel_all()
