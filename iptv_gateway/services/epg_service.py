"""
EPG Indexing Service

Downloads the XMLTV feed, parses it off the event loop and publishes a
fresh now/next index. A failed cycle never touches the published index;
readers always see the last fully built one.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import httpx
from lxml import etree # type: ignore

from iptv_gateway.config import CustomSettings
from iptv_gateway.services.fetch_coordinator import RefreshGuard
from iptv_gateway.services.fetch_types import EpgIndex, EpgState, NowNext, Programme
from iptv_gateway.services.xmltv_parser_service import parse_xmltv_file
from iptv_gateway.utils.file_operations import cleanup_temp_file, download_file
from iptv_gateway.utils.logging_helpers import sanitize_url_for_logging
from iptv_gateway.utils.names import normalize_channel_name
from iptv_gateway.utils.timezone import now_ms


logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000


def compute_now_next(programmes: list[Programme], now: int) -> NowNext:
    """
    Find the airing and the following programme in a start-sorted timeline.

    'now' covers the instant (start <= now < stop); 'next' is the first
    programme starting after the instant, with or without a 'now'.
    """
    current: Programme | None = None
    following: Programme | None = None
    for programme in programmes:
        if current is None and programme.start <= now < programme.stop:
            current = programme
            continue
        if programme.start > now:
            following = programme
            break
    return NowNext(now=current, next=following)


def build_index(
    by_channel: dict[str, list[Programme]],
    channel_names: dict[str, list[str]],
    now: int,
) -> EpgIndex:
    """Sort timelines, reduce them to now/next and build the name reverse index."""
    now_next: dict[str, NowNext] = {}
    for channel_id, programmes in by_channel.items():
        programmes.sort(key=lambda p: p.start)
        now_next[channel_id] = compute_now_next(programmes, now)

    name_to_ids: dict[str, list[str]] = {}
    for channel_id, names in channel_names.items():
        for name in names:
            key = normalize_channel_name(name)
            if not key:
                continue
            ids = name_to_ids.setdefault(key, [])
            if channel_id not in ids:
                ids.append(channel_id)

    return EpgIndex(
        by_channel=by_channel,
        now_next=now_next,
        channel_names=channel_names,
        name_to_ids=name_to_ids,
        updated_at=now_ms(),
    )


def _fallback_filter(suffixes: list[str]) -> Callable[[str], bool] | None:
    if not suffixes:
        return None
    lowered = tuple(s.lower() for s in suffixes)
    return lambda channel_id: channel_id.lower().endswith(lowered)


class EPGService:
    """Owns the EPG index and its refresh cycle (idle -> fetching -> parsing -> ready)."""

    def __init__(self, settings: CustomSettings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http
        self.url = settings.epg_url
        self.past_ms = settings.epg_prune_past_hours * HOUR_MS
        self.future_ms = settings.epg_prune_future_hours * HOUR_MS
        self.fallback_zone = ZoneInfo(settings.epg_fallback_timezone) if settings.epg_fallback_timezone else None
        self.fallback_filter = _fallback_filter(settings.epg_fallback_timezone_channels)
        self.state = EpgState.IDLE
        self.last_error: str | None = None
        self._index = EpgIndex()
        self._guard = RefreshGuard("EPG refresh")

    def get_index(self) -> EpgIndex:
        """Last fully built index (empty before the first successful refresh)."""
        return self._index

    def is_refreshing(self) -> bool:
        return self._guard.is_running()

    async def refresh(self) -> dict:
        """
        Fetch, parse and publish a new index unless a refresh is already running.

        Returns:
            Status dictionary; failures are reported here, never raised
        """
        if not self.settings.epg_enabled:
            return {"status": "skipped", "message": "EPG disabled"}
        return await self._guard.execute(self._refresh)

    async def _refresh(self) -> dict:
        started_at = datetime.now(timezone.utc)
        sanitized_url = sanitize_url_for_logging(self.url)
        logger.info("EPG refresh started: %s", sanitized_url)

        self.state = EpgState.FETCHING
        temp_file = None
        try:
            try:
                temp_file = await download_file(
                    self.http,
                    self.url,
                    "epg_feed.xml",
                    timeout=self.settings.epg_fetch_timeout_sec,
                )
            except (httpx.HTTPError, OSError) as exc:
                return self._fail(f"EPG fetch failed: {type(exc).__name__}: {exc}")

            self.state = EpgState.PARSING
            try:
                index = await self._parse_and_build(temp_file)
            except asyncio.TimeoutError:
                return self._fail(f"EPG parsing timed out after {self.settings.epg_parse_timeout_sec}s")
            except (etree.XMLSyntaxError, OSError, ValueError) as exc:
                return self._fail(f"EPG parse failed: {exc}")
        finally:
            if temp_file:
                cleanup_temp_file(temp_file)

        self._index = index
        self.state = EpgState.READY
        self.last_error = None
        programmes = sum(len(p) for p in index.by_channel.values())
        logger.info(
            "EPG index published: %s channels with programmes, %s programmes, %s names",
            len(index.by_channel),
            programmes,
            len(index.name_to_ids),
        )
        return {
            "status": "success",
            "started_at": started_at.isoformat(),
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "channels": len(index.channel_names),
            "programmes": programmes,
            "updated_at": index.updated_at,
        }

    async def _parse_and_build(self, file_path) -> EpgIndex:
        """Parse in the thread pool so a large feed never blocks the event loop."""
        now = now_ms()
        timeout = self.settings.epg_parse_timeout_sec or None
        loop = asyncio.get_running_loop()

        def work() -> EpgIndex:
            by_channel, channel_names = parse_xmltv_file(
                file_path,
                now,
                self.past_ms,
                self.future_ms,
                self.fallback_zone,
                self.fallback_filter,
            )
            return build_index(by_channel, channel_names, now)

        task = loop.run_in_executor(None, work)
        if timeout:
            return await asyncio.wait_for(task, timeout=timeout)
        return await task

    def _fail(self, message: str) -> dict:
        self.state = EpgState.FAILED
        self.last_error = message
        logger.error("%s (keeping index from %s)", message, self._index.updated_at or "never")
        return {"status": "failed", "error": message}

    def status(self) -> dict:
        index = self._index
        return {
            "state": self.state.value,
            "updatedAt": index.updated_at,
            "channels": len(index.by_channel),
            "refreshing": self.is_refreshing(),
            "lastError": self.last_error,
        }
