"""
Pipeline State

Composition root of the service: owns the shared HTTP client, the catalog
cache, the hint resolver, the EPG indexer, the stream resolver and the
scheduler, and renders client-facing listings from them. One instance is
built per application and lives on app.state.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from urllib.parse import quote, unquote

import httpx

from iptv_gateway.config import COUNTRIES_BY_ID, SUPPORTED_COUNTRIES, CustomSettings
from iptv_gateway.schemas import (
    CatalogExtra,
    ChannelMeta,
    Manifest,
    ManifestCatalog,
    StreamBehaviorHints,
    StreamRecord,
)
from iptv_gateway.services.catalog_service import CatalogCache
from iptv_gateway.services.epg_query_service import (
    LISTING_DESCRIPTION_MAX,
    META_DESCRIPTION_MAX,
    EpgLookup,
)
from iptv_gateway.services.epg_service import EPGService
from iptv_gateway.services.hint_service import ALL_CATEGORIES, HintResolver, is_banned_category, normalize_category
from iptv_gateway.services.scheduler_service import PipelineScheduler
from iptv_gateway.services.stream_resolver import StreamResolver
from iptv_gateway.services.upstream_client import UpstreamClient
from iptv_gateway.utils.names import (
    cleanup_channel_name,
    collation_key,
    normalize_channel_name,
    strip_duplicate_suffix,
)


logger = logging.getLogger(__name__)

APP_VERSION = "1.2.23"
CATALOG_ID_PREFIX = "vavoo_tv_"
LEGACY_REF_PREFIXES = ("vavoo:", "vavoo_", "vavoo")
MANIFEST_ID = "org.stremio.vavoo.clean"
MANIFEST_NAME = "TvVoo"
MANIFEST_DESCRIPTION = "Lists VAVOO TV channels and resolves clean HLS using the viewer's IP."
MANIFEST_BACKGROUND = "https://raw.githubusercontent.com/qwertyuiop8899/StreamViX/refs/heads/main/public/backround.png"
MANIFEST_LOGO = "https://raw.githubusercontent.com/qwertyuiop8899/StreamViX/refs/heads/main/public/icon.png"

# same unescaped set as JavaScript's encodeURIComponent
_URI_COMPONENT_SAFE = "-_.!~*'()"

LISTING_SEPARATOR = "  •  "
META_SEPARATOR = " • "


def catalog_id_for(country_id: str) -> str:
    return f"{CATALOG_ID_PREFIX}{country_id}"


def country_for_catalog_id(catalog_id: str) -> str | None:
    if not catalog_id.startswith(CATALOG_ID_PREFIX):
        return None
    country_id = catalog_id[len(CATALOG_ID_PREFIX):]
    return country_id if country_id in COUNTRIES_BY_ID else None


def build_channel_ref(prefix: str, name: str, play_ref: str) -> str:
    """Encode a display name and play reference into an opaque channel ref."""
    return f"{prefix}{quote(name, safe=_URI_COMPONENT_SAFE)}|{quote(play_ref, safe=_URI_COMPONENT_SAFE)}"


def parse_channel_ref(channel_ref: str, prefixes: tuple[str, ...] = LEGACY_REF_PREFIXES) -> tuple[str, str] | None:
    """
    Split a channel ref back into (display name, play reference).

    Prefixes are tried in order, so longer ones must come first.

    Returns:
        Decoded pair, or None when no known prefix matches
    """
    for prefix in prefixes:
        if prefix and channel_ref.startswith(prefix):
            rest = channel_ref[len(prefix):]
            break
    else:
        return None
    name_part, _, ref_part = rest.partition("|")
    return unquote(name_part), unquote(ref_part)


class PipelineState:
    """Everything a request handler needs, built once per application."""

    def __init__(self, settings: CustomSettings, http: httpx.AsyncClient | None = None):
        self.settings = settings
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(follow_redirects=True)

        self.upstream = UpstreamClient(self.http, settings)
        self.hints = HintResolver(settings, self.http)
        self.catalog = CatalogCache(settings, self.upstream, self.hints)
        self.epg = EPGService(settings, self.http)
        self.epg_lookup = EpgLookup(settings.similarity_threshold)
        self.resolver = StreamResolver(self.upstream, settings)
        self.scheduler = PipelineScheduler(settings, self.epg.refresh, self.catalog.refresh_all)

        self._priority_patterns = [re.compile(p, re.IGNORECASE) for p in settings.sort_priority_patterns]
        self._ref_prefixes = tuple(dict.fromkeys((settings.channel_id_prefix, *LEGACY_REF_PREFIXES)))
        # country id -> (catalog version, EPG version, rendered listing)
        self._listing_memo: dict[str, tuple[int, int, list[ChannelMeta]]] = {}

    async def start(self, run_scheduler: bool = True) -> None:
        await self.hints.load()
        if run_scheduler:
            self.scheduler.start()

    async def shutdown(self) -> None:
        self.scheduler.shutdown()
        await self.catalog.close()
        if self._owns_http:
            await self.http.aclose()

    def _priority(self, base_name: str) -> int:
        for tier, pattern in enumerate(self._priority_patterns):
            if pattern.search(base_name):
                return tier
        return len(self._priority_patterns)

    def _describe(self, base_name: str, max_len: int, separator: str) -> str | None:
        index = self.epg.get_index()
        if not index.updated_at:
            return None
        return self.epg_lookup.describe(index, base_name, max_len, separator)

    async def list_catalog(self, catalog_id: str, genre: str | None = None) -> list[ChannelMeta]:
        """
        Render a country catalog as client metas.

        Rows are ordered by priority tier then alphabetically; names listed
        more than once become 'Base (1)', 'Base (2)', ... in that order. The
        unfiltered listing is memoized until the catalog or EPG index changes.
        """
        country_id = country_for_catalog_id(catalog_id)
        if country_id is None:
            logger.debug("Unknown catalog id: %s", catalog_id)
            return []

        items = await self.catalog.get_or_fetch_country_catalog(country_id)
        filtered = bool(genre) and normalize_category(genre) != normalize_category(ALL_CATEGORIES)

        versions = (self.catalog.catalog_version(country_id), self.epg.get_index().updated_at)
        if not filtered:
            memo = self._listing_memo.get(country_id)
            if memo and memo[:2] == versions:
                return memo[2]

        base_names = [cleanup_channel_name(item.name) for item in items]
        totals = Counter(base_names)
        hints = await self.hints.get_resolved_hints(country_id, dict.fromkeys(base_names))

        rows = list(zip(items, base_names))
        if filtered:
            wanted = normalize_category(genre)
            rows = [row for row in rows if hints[row[1]].cat and normalize_category(hints[row[1]].cat) == wanted]
        rows.sort(key=lambda row: (self._priority(row[1].lower()), collation_key(row[1])))

        fallback = self.settings.fallback_artwork_url
        used: Counter[str] = Counter()
        metas = []
        for item, base_name in rows:
            display_name = base_name
            if totals[base_name] > 1:
                used[base_name] += 1
                display_name = f"{base_name} ({used[base_name]})"

            hint = hints[base_name]
            artwork = hint.logo or item.poster or fallback
            metas.append(ChannelMeta(
                id=build_channel_ref(self.settings.channel_id_prefix, display_name, item.play_ref),
                name=display_name,
                poster=artwork,
                logo=hint.logo or fallback,
                background=hint.logo or fallback,
                description=self._describe(base_name, LISTING_DESCRIPTION_MAX, LISTING_SEPARATOR),
                genres=[hint.cat] if hint.cat and not is_banned_category(hint.cat) else None,
            ))

        if not filtered:
            self._listing_memo[country_id] = (*versions, metas)
        logger.debug("Catalog %s rendered: %s metas (genre=%s)", country_id, len(metas), genre or "all")
        return metas

    async def get_meta(self, channel_ref: str) -> ChannelMeta | None:
        parsed = parse_channel_ref(channel_ref, self._ref_prefixes)
        if parsed is None:
            return None
        name, play_ref = parsed
        name = name or "Unknown"
        base_name = strip_duplicate_suffix(cleanup_channel_name(name))
        fallback = self.settings.fallback_artwork_url

        country_id = await self.catalog.guess_country_for_play_ref(play_ref)
        genres = None
        if country_id:
            hint = await self.hints.get_resolved_hint(country_id, base_name)
            poster = hint.logo or fallback
            if hint.cat and not is_banned_category(hint.cat):
                genres = [hint.cat]
        else:
            poster = self.hints.find_logo_any(base_name) or fallback

        return ChannelMeta(
            id=channel_ref,
            name=name,
            poster=poster,
            logo=poster,
            background=poster,
            description=self._describe(base_name, META_DESCRIPTION_MAX, META_SEPARATOR),
            genres=genres,
        )

    async def resolve_stream(
        self,
        channel_ref: str,
        client_ip: str | None,
        include_headers: bool | None = None,
    ) -> list[StreamRecord]:
        """Resolve a channel ref for the viewer; an empty list when anything fails."""
        parsed = parse_channel_ref(channel_ref, self._ref_prefixes)
        if parsed is None:
            return []
        name, play_ref = parsed

        resolved = await self.resolver.resolve_clean_url(play_ref, client_ip)
        if resolved is None:
            return []

        if include_headers is None:
            include_headers = self.settings.include_stream_headers
        hints = StreamBehaviorHints()
        if include_headers:
            hints = StreamBehaviorHints(
                headers=resolved.headers,
                proxy_headers=resolved.headers,
                proxy_use_fallback=True,
            )
        return [StreamRecord(title=f"[🏠] {name}", url=resolved.url, behavior_hints=hints)]

    async def build_manifest(self, include: list[str] | None = None, exclude: list[str] | None = None) -> Manifest:
        excluded = set(exclude or [])
        catalogs = []
        for country in SUPPORTED_COUNTRIES:
            if include is not None and country.id not in include:
                continue
            if country.id in excluded:
                continue
            options = await self.hints.category_options(country.id)
            catalogs.append(ManifestCatalog(
                id=catalog_id_for(country.id),
                name=f"Vavoo TV • {country.name}",
                extra=[CatalogExtra(options=options)] if options else [],
            ))

        prefixes = list(dict.fromkeys(("vavoo", self.settings.channel_id_prefix)))
        return Manifest(
            id=MANIFEST_ID,
            version=APP_VERSION,
            name=MANIFEST_NAME,
            description=MANIFEST_DESCRIPTION,
            background=MANIFEST_BACKGROUND,
            logo=MANIFEST_LOGO,
            id_prefixes=prefixes,
            catalogs=catalogs,
        )

    def epg_lookup_candidates(self, name: str) -> dict:
        index = self.epg.get_index()
        return {
            "name": name,
            "key": normalize_channel_name(name),
            "updatedAt": index.updated_at,
            "candidates": self.epg_lookup.lookup_candidates(index, name),
        }


def create_pipeline(settings: CustomSettings, http: httpx.AsyncClient | None = None) -> PipelineState:
    return PipelineState(settings, http)
