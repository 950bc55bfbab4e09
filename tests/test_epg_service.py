"""
Tests for the EPG indexer, now/next reduction and name lookups.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import httpx

from iptv_gateway.services.epg_query_service import EpgLookup, format_description
from iptv_gateway.services.epg_service import EPGService, build_index, compute_now_next
from iptv_gateway.services.fetch_types import EpgIndex, EpgState, NowNext, Programme


def xmltv_time(dt: datetime) -> str:
    return dt.strftime("%Y%m%d%H%M%S +0000")


def live_feed() -> bytes:
    """A feed whose programmes surround the current time."""
    now = datetime.now(timezone.utc).replace(microsecond=0)
    slots = [
        (now - timedelta(hours=1), now + timedelta(hours=1), "TG1", "Le notizie"),
        (now + timedelta(hours=1), now + timedelta(hours=2), "Film", "Un film"),
    ]
    programmes = "".join(
        f'<programme channel="rai1.it" start="{xmltv_time(start)}" stop="{xmltv_time(stop)}">'
        f"<title>{title}</title><desc>{desc}</desc></programme>"
        for start, stop, title, desc in slots
    )
    return (
        '<tv><channel id="rai1.it"><display-name>Rai 1</display-name></channel>'
        f"{programmes}</tv>"
    ).encode("utf-8")


def programme(start, stop, title="T", channel="ch"):
    return Programme(channel_id=channel, start=start, stop=stop, title=title)


class TestComputeNowNext:
    """Test now/next reduction of a sorted timeline."""

    def setup_method(self):
        self.timeline = [programme(0, 10, "A"), programme(10, 20, "B"), programme(20, 30, "C")]

    def test_inside_programme(self):
        """Test the covering programme is now and the following one next."""
        result = compute_now_next(self.timeline, 15)
        assert result.now.title == "B"
        assert result.next.title == "C"

    def test_boundary_belongs_to_later_programme(self):
        """Test start <= now < stop at a programme boundary."""
        result = compute_now_next(self.timeline, 10)
        assert result.now.title == "B"

    def test_before_schedule(self):
        """Test next exists without a now."""
        result = compute_now_next(self.timeline, -5)
        assert result.now is None
        assert result.next.title == "A"

    def test_after_schedule(self):
        """Test nothing airs after the last programme."""
        assert compute_now_next(self.timeline, 35) == NowNext()


class TestBuildIndex:
    """Test index construction."""

    def test_sorts_and_reverse_indexes(self):
        """Test timelines are sorted and display names map to deduplicated ids."""
        by_channel = {"rai1.it": [programme(10, 20, "B", "rai1.it"), programme(0, 10, "A", "rai1.it")]}
        names = {"rai1.it": ["Rai 1", "RAI 1 HD"], "rai1b.it": ["Rai 1"]}
        index = build_index(by_channel, names, now=5)
        assert [p.title for p in index.by_channel["rai1.it"]] == ["A", "B"]
        assert index.now_next["rai1.it"].now.title == "A"
        assert index.name_to_ids == {"rai 1": ["rai1.it", "rai1b.it"]}
        assert index.updated_at > 0


class TestEPGServiceRefresh:
    """Test the refresh cycle and its failure handling."""

    def make_service(self, make_settings, handler):
        settings = make_settings(epg_enabled=True)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return EPGService(settings, client)

    def test_successful_refresh_publishes_index(self, make_settings):
        """Test a good feed produces a ready index."""
        service = self.make_service(make_settings, lambda request: httpx.Response(200, content=live_feed()))
        assert service.get_index().updated_at == 0

        result = asyncio.run(service.refresh())

        assert result["status"] == "success"
        assert service.state == EpgState.READY
        index = service.get_index()
        assert index.updated_at > 0
        assert index.now_next["rai1.it"].now.title == "TG1"
        assert index.now_next["rai1.it"].next.title == "Film"
        assert index.name_to_ids["rai 1"] == ["rai1.it"]

    def test_failed_refresh_keeps_previous_index(self, make_settings):
        """Test a failing cycle leaves the last good index published."""
        responses = [httpx.Response(200, content=live_feed()), httpx.Response(500)]
        service = self.make_service(make_settings, lambda request: responses.pop(0))

        asyncio.run(service.refresh())
        published = service.get_index()
        result = asyncio.run(service.refresh())

        assert result["status"] == "failed"
        assert service.state == EpgState.FAILED
        assert service.last_error
        assert service.get_index() is published

    def test_malformed_feed_fails(self, make_settings):
        """Test a parse error aborts the cycle."""
        service = self.make_service(make_settings, lambda request: httpx.Response(200, content=b"<tv><oops></tv>"))
        result = asyncio.run(service.refresh())
        assert result["status"] == "failed"
        assert service.get_index().updated_at == 0

    def test_network_error_fails(self, make_settings):
        """Test an unreachable feed aborts the cycle."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = self.make_service(make_settings, handler)
        result = asyncio.run(service.refresh())
        assert result["status"] == "failed"
        assert "ConnectError" in result["error"]

    def test_concurrent_refresh_is_skipped(self, make_settings):
        """Test a trigger during a running refresh returns immediately."""
        async def scenario():
            gate = asyncio.Event()

            async def handler(request):
                await gate.wait()
                return httpx.Response(200, content=live_feed())

            service = self.make_service(make_settings, handler)
            first = asyncio.create_task(service.refresh())
            await asyncio.sleep(0.05)
            assert service.is_refreshing()
            second = await service.refresh()
            gate.set()
            return await first, second

        first, second = asyncio.run(scenario())
        assert first["status"] == "success"
        assert second["status"] == "skipped"

    def test_disabled_refresh_is_skipped(self, make_settings):
        """Test nothing is fetched when the EPG is disabled."""
        calls = []
        settings = make_settings(epg_enabled=False)
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(500)))
        service = EPGService(settings, client)

        result = asyncio.run(service.refresh())

        assert result["status"] == "skipped"
        assert calls == []
        assert service.status()["state"] == "idle"


class TestEpgLookup:
    """Test catalog name to EPG channel resolution."""

    def setup_method(self):
        by_channel = {
            "rai1.it": [programme(0, 100, "TG1", "rai1.it"), programme(100, 200, "Film", "rai1.it")],
            "rai1.alt": [programme(0, 50, "Other", "rai1.alt")],
            "skyuno.it": [programme(0, 100, "MasterChef", "skyuno.it")],
        }
        names = {
            "rai1.alt": ["Rai 1 Backup"],
            "rai1.it": ["Rai 1"],
            "skyuno.it": ["Sky Sport Uno"],
        }
        self.index = build_index(by_channel, names, now=50)
        self.lookup = EpgLookup()

    def test_exact_name(self):
        """Test an exact normalized name finds its channel."""
        assert self.lookup.find_channel_ids(self.index, "RAI 1 HD") == ["rai1.it"]

    def test_fuzzy_name_sharing_first_word(self):
        """Test a close name sharing the first word matches."""
        assert self.lookup.find_channel_ids(self.index, "Sky Sport Unoo") == ["skyuno.it"]

    def test_dissimilar_name(self):
        """Test an unrelated name finds nothing."""
        assert self.lookup.find_channel_ids(self.index, "Rai 2") == []
        assert self.lookup.find_channel_ids(self.index, "") == []

    def test_lookup_now_next(self):
        """Test now/next are computed at the requested instant."""
        result = self.lookup.lookup_now_next(self.index, "Rai 1", now=150)
        assert result.now.title == "Film"
        assert result.next is None

    def test_memo_resets_with_new_index(self):
        """Test a new index is not answered from the old memo."""
        assert self.lookup.find_channel_ids(self.index, "Rai 1") == ["rai1.it"]
        assert self.lookup.find_channel_ids(EpgIndex(), "Rai 1") == []

    def test_lookup_candidates(self):
        """Test the diagnostic view lists each candidate."""
        candidates = self.lookup.lookup_candidates(self.index, "Rai 1")
        assert [c["id"] for c in candidates] == ["rai1.it"]


class TestFormatDescription:
    """Test now/next description rendering."""

    def test_now_and_next(self):
        """Test both parts are rendered with their markers."""
        now_next = NowNext(
            now=Programme("c", 0, 1, "TG1", "News"),
            next=Programme("c", 1, 2, "Film", None),
        )
        assert format_description(now_next, 280) == "🔴 TG1 — News  •  ➡️ Film"

    def test_custom_separator(self):
        """Test meta descriptions use a tighter separator."""
        now_next = NowNext(now=Programme("c", 0, 1, "A"), next=Programme("c", 1, 2, "B"))
        assert format_description(now_next, 400, " • ") == "🔴 A • ➡️ B"

    def test_description_truncated(self):
        """Test long descriptions are cut to the limit."""
        now_next = NowNext(now=Programme("c", 0, 1, None, "x" * 500))
        assert format_description(now_next, 280) == "🔴 " + "x" * 280

    def test_nothing_to_describe(self):
        """Test an empty now/next has no description."""
        assert format_description(NowNext(), 280) is None
        assert format_description(NowNext(now=Programme("c", 0, 1)), 280) is None
