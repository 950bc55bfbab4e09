"""
Tests for the per-country catalog cache.
"""
import asyncio
import json

import httpx

from iptv_gateway.services.catalog_service import CatalogCache, slim_item
from iptv_gateway.services.fetch_types import ChannelEntry
from iptv_gateway.services.hint_service import HintResolver
from iptv_gateway.services.upstream_client import UpstreamClient

from conftest import M3U_URL, PING_URL, FakeUpstream


ITALY = [
    [
        {"name": "Rai 1 .c", "url": "https://vavoo.to/play/1/index.m3u8", "poster": "https://img.test/1.png"},
        {"name": "Canale 5", "play": "https://vavoo.to/play/2/index.m3u8"},
    ],
    [
        {"name": "Real Time", "href": "https://vavoo.to/play/3/index.m3u8", "image": "https://img.test/3.png"},
    ],
]


def make_cache(settings, fake: FakeUpstream) -> CatalogCache:
    http = fake.client()
    return CatalogCache(settings, UpstreamClient(http, settings), HintResolver(settings, http))


class TestSlimItem:
    """Test reduction of upstream items."""

    def test_alternative_fields(self):
        """Test play and artwork fields fall back to their alternatives."""
        entry = slim_item({"name": "Rai 1 .c", "play": "https://vavoo.to/play/1", "image": "https://img.test/1.png"})
        assert entry == ChannelEntry("Rai 1", "https://vavoo.to/play/1", "https://img.test/1.png")

    def test_missing_fields(self):
        """Test unnamed items without links still produce an entry."""
        assert slim_item({}) == ChannelEntry("Unknown", "", None)


class TestGetOrFetchCountryCatalog:
    """Test the memory, disk and upstream tiers."""

    def test_fetches_all_pages_and_persists(self, settings):
        """Test a miss fetches, cleans and stores the catalog."""
        fake = FakeUpstream(catalogs={"Italy": ITALY})
        cache = make_cache(settings, fake)

        items = asyncio.run(cache.get_or_fetch_country_catalog("it"))

        assert [i.name for i in items] == ["Rai 1", "Canale 5", "Real Time"]
        assert items[2].poster == "https://img.test/3.png"
        stored = json.loads((settings.catalog_cache_dir / "it.json").read_text(encoding="utf-8"))
        assert stored["updatedAt"] > 0
        assert stored["items"][0] == {
            "name": "Rai 1",
            "url": "https://vavoo.to/play/1/index.m3u8",
            "poster": "https://img.test/1.png",
        }
        assert cache.catalog_version("it") == stored["updatedAt"]

    def test_ping_without_client_ip(self, settings):
        """Test catalog signatures are requested for the server, not a viewer."""
        fake = FakeUpstream(catalogs={"Italy": ITALY})
        asyncio.run(make_cache(settings, fake).get_or_fetch_country_catalog("it"))
        ping = fake.calls_to(PING_URL)[0]
        assert json.loads(ping.content)["ipLocation"] == ""
        assert "x-forwarded-for" not in ping.headers

    def test_concurrent_requests_share_one_fetch(self, settings):
        """Test simultaneous misses for one country cause a single upstream fetch."""
        fake = FakeUpstream(catalogs={"Italy": ITALY})
        fake.catalog_delay = 0.02
        cache = make_cache(settings, fake)

        async def scenario():
            return await asyncio.gather(*(cache.get_or_fetch_country_catalog("it") for _ in range(5)))

        results = asyncio.run(scenario())

        assert all(r == results[0] for r in results)
        assert len(results[0]) == 3
        assert len(fake.calls_to(PING_URL)) == 1
        assert fake.catalog_groups == ["Italy", "Italy"]

    def test_memory_hit_makes_no_requests(self, settings):
        """Test a cached country is served from memory."""
        fake = FakeUpstream(catalogs={"Italy": ITALY})
        cache = make_cache(settings, fake)

        async def scenario():
            await cache.get_or_fetch_country_catalog("it")
            before = len(fake.requests)
            await cache.get_or_fetch_country_catalog("it")
            return before

        before = asyncio.run(scenario())
        assert len(fake.requests) == before

    def test_disk_tier_survives_restart(self, settings):
        """Test a new cache instance reads the persisted catalog."""
        asyncio.run(make_cache(settings, FakeUpstream(catalogs={"Italy": ITALY})).get_or_fetch_country_catalog("it"))

        offline = FakeUpstream()
        offline.ping_status = 500
        items = asyncio.run(make_cache(settings, offline).get_or_fetch_country_catalog("it"))

        assert [i.name for i in items] == ["Rai 1", "Canale 5", "Real Time"]
        assert offline.requests == []

    def test_alias_group_used_when_primary_empty(self, settings):
        """Test alias groups are tried in order after an empty primary group."""
        fake = FakeUpstream(catalogs={"Netherlands": [[{"name": "NPO 1", "url": "https://vavoo.to/play/9"}]]})
        items = asyncio.run(make_cache(settings, fake).get_or_fetch_country_catalog("nl"))

        assert [i.name for i in items] == ["NPO 1"]
        assert fake.catalog_groups == ["Nederland", "Netherlands"]

    def test_empty_result_is_cached(self, settings):
        """Test a country with no channels anywhere is cached as empty."""
        fake = FakeUpstream()
        cache = make_cache(settings, fake)

        async def scenario():
            first = await cache.get_or_fetch_country_catalog("nl")
            calls = len(fake.requests)
            second = await cache.get_or_fetch_country_catalog("nl")
            return first, second, calls

        first, second, calls = asyncio.run(scenario())
        assert first == [] and second == []
        assert fake.catalog_groups == ["Nederland", "Netherlands", "Holland", "Nederland"]
        assert len(fake.requests) == calls
        assert (settings.catalog_cache_dir / "nl.json").exists()

    def test_signature_failure_caches_nothing(self, settings):
        """Test a failed ping yields an empty list and is retried next time."""
        fake = FakeUpstream(catalogs={"Italy": ITALY})
        fake.ping_status = 500
        cache = make_cache(settings, fake)

        async def scenario():
            first = await cache.get_or_fetch_country_catalog("it")
            fake.ping_status = 200
            second = await cache.get_or_fetch_country_catalog("it")
            return first, second

        first, second = asyncio.run(scenario())
        assert first == []
        assert len(second) == 3
        assert len(fake.calls_to(PING_URL)) == 2

    def test_unknown_country(self, settings, upstream):
        """Test unsupported countries return nothing without upstream calls."""
        assert asyncio.run(make_cache(settings, upstream).get_or_fetch_country_catalog("xx")) == []
        assert upstream.requests == []

    def test_unexpected_error_yields_empty(self, settings):
        """Test a transport bug is contained."""
        def handler(request):
            raise RuntimeError("transport bug")

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        cache = CatalogCache(settings, UpstreamClient(http, settings), HintResolver(settings, http))
        assert asyncio.run(cache.get_or_fetch_country_catalog("uk")) == []

    def test_fetch_slots_bound_concurrency(self, make_settings):
        """Test fetches for many countries never exceed the slot pool."""
        settings = make_settings(max_catalog_fetches=2)
        groups = ["United Kingdom", "France", "Germany", "Spain", "Portugal"]
        fake = FakeUpstream(catalogs={g: [[{"name": f"{g} 1", "url": "https://vavoo.to/p"}]] for g in groups})
        fake.catalog_delay = 0.02
        cache = make_cache(settings, fake)

        async def scenario():
            return await asyncio.gather(*(cache.get_or_fetch_country_catalog(cid) for cid in ["uk", "fr", "de", "es", "pt"]))

        results = asyncio.run(scenario())
        assert all(len(r) == 1 for r in results)
        assert fake.max_active_catalog_calls == 2

    def test_home_country_fetch_refreshes_hints(self, settings):
        """Test fetching the home country pulls the enrichment M3U once."""
        fake = FakeUpstream(catalogs={"Italy": ITALY})
        fake.m3u_text = '#EXTINF:-1 tvg-logo="https://logos.test/rai1.png" group-title="Generalisti",Rai 1\n'
        cache = make_cache(settings, fake)

        async def scenario():
            await cache.get_or_fetch_country_catalog("it")
            await cache.refresh_country("it")

        asyncio.run(scenario())
        assert len(fake.calls_to(M3U_URL)) == 1
        assert cache.hints.logos["it:rai 1"] == "https://logos.test/rai1.png"


class TestCatalogMaintenance:
    """Test explicit refreshes and status reporting."""

    def test_refresh_country_bypasses_cache(self, settings):
        """Test an explicit refresh goes upstream even when cached."""
        fake = FakeUpstream(catalogs={"United Kingdom": [[{"name": "BBC One", "url": "https://vavoo.to/p/1"}]]})
        cache = make_cache(settings, fake)

        async def scenario():
            await cache.get_or_fetch_country_catalog("uk")
            fake.catalogs["United Kingdom"] = [[{"name": "BBC Two", "url": "https://vavoo.to/p/2"}]]
            return await cache.refresh_country("uk")

        items = asyncio.run(scenario())
        assert [i.name for i in items] == ["BBC Two"]
        assert len(fake.calls_to(PING_URL)) == 2

    def test_refresh_all_respects_allow_list(self, make_settings):
        """Test a full refresh only touches the configured countries."""
        settings = make_settings(refresh_countries="uk,fr")
        fake = FakeUpstream(catalogs={
            "United Kingdom": [[{"name": "BBC One", "url": "https://vavoo.to/p/1"}]],
            "France": [[{"name": "TF1", "url": "https://vavoo.to/p/2"}, {"name": "M6", "url": "https://vavoo.to/p/3"}]],
        })
        cache = make_cache(settings, fake)

        result = asyncio.run(cache.refresh_all())

        assert result["status"] == "success"
        assert result["countries"] == {"uk": 1, "fr": 2}
        assert set(fake.catalog_groups) == {"United Kingdom", "France"}
        assert len(fake.calls_to(M3U_URL)) == 1

    def test_cache_status_and_guess(self, settings):
        """Test status lists cached countries and play refs map back to them."""
        fake = FakeUpstream(catalogs={"Italy": ITALY})
        cache = make_cache(settings, fake)

        async def scenario():
            await cache.get_or_fetch_country_catalog("it")
            found = await cache.guess_country_for_play_ref("https://vavoo.to/play/2/index.m3u8")
            missing = await cache.guess_country_for_play_ref("https://vavoo.to/play/404")
            return found, missing

        found, missing = asyncio.run(scenario())
        status = cache.cache_status()
        assert found == "it"
        assert missing is None
        assert status["countries"]["it"]["items"] == 3
        assert status["fetchSlots"] == {"size": 3, "active": 0, "waiting": 0}
        assert status["inflight"] == []

    def test_guess_reads_disk_tier(self, settings):
        """Test play refs of countries only on disk are found."""
        asyncio.run(make_cache(settings, FakeUpstream(catalogs={"Italy": ITALY})).get_or_fetch_country_catalog("it"))
        fresh = make_cache(settings, FakeUpstream())
        assert asyncio.run(fresh.guess_country_for_play_ref("https://vavoo.to/play/3/index.m3u8")) == "it"
