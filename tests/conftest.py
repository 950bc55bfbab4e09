"""
Shared fixtures: isolated settings and a scriptable fake upstream.
"""
import asyncio
import base64
import json

import httpx
import pytest

from iptv_gateway.config import CustomSettings


PING_URL = "https://ping.test/api/app/ping"
CATALOG_URL = "https://catalog.test/mediahubmx-catalog.json"
RESOLVE_URL = "https://catalog.test/mediahubmx-resolve.json"
EPG_URL = "https://epg.test/epg.xml"
M3U_URL = "https://m3u.test/lista.m3u"


def make_signature(ips=None, **extra) -> str:
    """Build a signature shaped like the provider's: base64 JSON with a JSON 'data' string."""
    data = {"ips": ips if ips is not None else ["1.1.1.1"], **extra}
    envelope = {"data": json.dumps(data), "signed": "abc123"}
    return base64.b64encode(json.dumps(envelope).encode("utf-8")).decode("ascii")


def decode_signature(signature: str) -> dict:
    envelope = json.loads(base64.b64decode(signature))
    return json.loads(envelope["data"])


@pytest.fixture
def make_settings(tmp_path):
    """Factory for settings rooted in a temporary data directory."""
    def factory(**overrides) -> CustomSettings:
        values = {
            "data_dir": str(tmp_path / "data"),
            "upstream_ping_url": PING_URL,
            "upstream_catalog_url": CATALOG_URL,
            "upstream_resolve_url": RESOLVE_URL,
            "upstream_play_host": "vavoo.to",
            "epg_url": EPG_URL,
            "home_m3u_url": M3U_URL,
            "epg_enabled": False,
        }
        values.update(overrides)
        return CustomSettings(**values)

    return factory


@pytest.fixture
def settings(make_settings) -> CustomSettings:
    return make_settings()


class FakeUpstream:
    """
    Scriptable stand-in for the provider, served through httpx.MockTransport.

    catalogs maps group name -> list of pages (each page a list of items).
    """

    def __init__(self, signature=None, catalogs=None, resolved_url="https://cdn.test/live/index.m3u8"):
        self.signature = signature or make_signature()
        self.catalogs = catalogs or {}
        self.resolved_url = resolved_url
        self.m3u_text = ""
        self.ping_status = 200
        self.reject_forwarded_ping = False
        self.catalog_delay = 0.0
        self.requests: list[httpx.Request] = []
        self.catalog_groups: list[str] = []
        self.active_catalog_calls = 0
        self.max_active_catalog_calls = 0

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url == PING_URL:
            if self.ping_status != 200:
                return httpx.Response(self.ping_status, text="denied")
            if self.reject_forwarded_ping and "x-forwarded-for" in request.headers:
                return httpx.Response(403, text="forwarded ip rejected")
            return httpx.Response(200, json={"addonSig": self.signature})

        if url == CATALOG_URL:
            body = json.loads(request.content)
            group = body["filter"]["group"]
            self.catalog_groups.append(group)
            self.active_catalog_calls += 1
            self.max_active_catalog_calls = max(self.max_active_catalog_calls, self.active_catalog_calls)
            try:
                if self.catalog_delay:
                    await asyncio.sleep(self.catalog_delay)
                pages = self.catalogs.get(group, [])
                cursor = int(body.get("cursor") or 0)
                if cursor >= len(pages):
                    return httpx.Response(200, json={"items": []})
                payload = {"items": pages[cursor]}
                if cursor + 1 < len(pages):
                    payload["nextCursor"] = cursor + 1
                return httpx.Response(200, json=payload)
            finally:
                self.active_catalog_calls -= 1

        if url == RESOLVE_URL:
            return httpx.Response(200, json=[{"url": self.resolved_url}])

        if url == M3U_URL:
            return httpx.Response(200, text=self.m3u_text)

        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()
