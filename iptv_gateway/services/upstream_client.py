"""
Upstream Provider Client

Thin async wrapper over the provider's three endpoints (signature ping,
cursor-paged catalog, play resolve). Every call carries its own timeout and
reports its outcome as Ok / Empty / Failure instead of raising.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from iptv_gateway.config import CustomSettings
from iptv_gateway.services.fetch_types import Empty, Failure, Ok, UpstreamResult
from iptv_gateway.utils.logging_helpers import signature_preview
from iptv_gateway.utils.timezone import now_ms


logger = logging.getLogger(__name__)

CLIENT_VERSION = "3.1.21"
APP_TOKEN = (
    "tosFwQCJMS8qrW_AjLoHPQ41646J5dRNha6ZWHnijoYQQQoADQoXYSo7ki7O5-CsgN4CH0uRk6EEoJ0728ar9scCRQW3"
    "ZkbfrPfeCXW2VgopSW2FWDqPOoVYIuVPAOnXCZ5g"
)
SIGNATURE_HEADER = "mediahubmx-signature"

PING_HEADERS = {
    "user-agent": "okhttp/4.11.0",
    "accept": "application/json",
    "content-type": "application/json; charset=utf-8",
    "accept-encoding": "gzip",
}
RESOLVE_HEADERS = {
    "user-agent": "MediaHubMX/2",
    "accept": "application/json",
    "content-type": "application/json; charset=utf-8",
    "accept-encoding": "gzip",
}


def build_ping_payload(ip_location: str | None) -> dict[str, Any]:
    """Device/app fingerprint expected by the signature endpoint."""
    started = now_ms()
    return {
        "token": APP_TOKEN,
        "reason": "app-blur",
        "locale": "de",
        "theme": "dark",
        "metadata": {
            "device": {
                "type": "Handset",
                "brand": "google",
                "model": "Pixel",
                "name": "sdk_gphone64_arm64",
                "uniqueId": "d10e5d99ab665233",
            },
            "os": {
                "name": "android",
                "version": "13",
                "abis": ["arm64-v8a", "armeabi-v7a", "armeabi"],
                "host": "android",
            },
            "app": {
                "platform": "android",
                "version": CLIENT_VERSION,
                "buildId": "289515000",
                "engine": "hbc85",
                "signatures": ["6e8a975e3cbf07d5de823a760d4c2547f86c1403105020adee5de67ac510999e"],
                "installer": "app.revanced.manager.flutter",
            },
            "version": {"package": "tv.vavoo.app", "binary": CLIENT_VERSION, "js": CLIENT_VERSION},
        },
        "appFocusTime": 0,
        "playerActive": False,
        "playDuration": 0,
        "devMode": False,
        "hasAddon": True,
        "castConnected": False,
        "package": "tv.vavoo.app",
        "version": CLIENT_VERSION,
        "process": "app",
        "firstAppStart": started,
        "lastAppStart": started,
        "ipLocation": ip_location or "",
        "adblockEnabled": True,
        "proxy": {
            "supported": ["ss", "openvpn"],
            "engine": "ss",
            "ssVersion": 1,
            "enabled": True,
            "autoServer": True,
            "id": "de-fra",
        },
        "iap": {"supported": False},
    }


def forwarding_headers(client_ip: str | None) -> dict[str, str]:
    """Minimal client-IP forwarding headers (kept small to avoid WAF blocks)."""
    if not client_ip:
        return {}
    return {"x-forwarded-for": client_ip, "x-real-ip": client_ip}


def extract_resolved_url(payload: Any) -> UpstreamResult[str]:
    """Accept exactly the two known resolve shapes: [{url}] or {url}."""
    if isinstance(payload, list):
        if payload and isinstance(payload[0], dict) and payload[0].get("url"):
            return Ok(str(payload[0]["url"]))
        return Failure("resolve list carries no url")
    if isinstance(payload, dict):
        if payload.get("url"):
            return Ok(str(payload["url"]))
        return Failure("resolve object carries no url")
    return Failure(f"unexpected resolve payload type {type(payload).__name__}")


class UpstreamClient:
    """Calls the provider's ping, catalog and resolve endpoints."""

    def __init__(self, http: httpx.AsyncClient, settings: CustomSettings):
        self.http = http
        self.settings = settings

    async def fetch_signature(self, client_ip: str | None = None, *, forward_ip: bool = True) -> UpstreamResult[str]:
        """
        Obtain a fresh signature from the ping endpoint.

        Args:
            client_ip: Viewer IP placed in ipLocation (and forwarding headers)
            forward_ip: Send x-forwarded-for/x-real-ip when client_ip is known
        """
        headers = dict(PING_HEADERS)
        if forward_ip:
            headers.update(forwarding_headers(client_ip))
        payload = build_ping_payload(client_ip)
        logger.debug("Ping POST %s (ipLocation=%s)", self.settings.upstream_ping_url, payload["ipLocation"] or "(server)")

        try:
            response = await self.http.post(
                self.settings.upstream_ping_url,
                json=payload,
                headers=headers,
                timeout=self.settings.ping_timeout_sec,
            )
        except httpx.HTTPError as exc:
            logger.warning("Ping request failed: %s: %s", type(exc).__name__, exc)
            return Failure(f"ping transport error: {type(exc).__name__}")

        if not response.is_success:
            logger.warning("Ping returned HTTP %s: %s", response.status_code, response.text[:300])
            return Failure(f"ping HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            return Failure("ping returned non-JSON body")

        signature = data.get("addonSig") if isinstance(data, dict) else None
        if not signature or not isinstance(signature, str):
            logger.warning("Ping OK but addonSig missing")
            return Empty()

        logger.debug("Ping OK, addonSig %s", signature_preview(signature, self.settings.log_signature_full))
        return Ok(signature)

    async def fetch_catalog_group(self, group: str, signature: str) -> UpstreamResult[list[dict]]:
        """
        Page through the catalog endpoint for one group until the cursor runs out.

        A failing page ends paging; items gathered so far are kept.
        """
        headers = {**PING_HEADERS, SIGNATURE_HEADER: signature}
        items: list[dict] = []
        cursor: Any = 0
        pages = 0

        while True:
            body = {
                "language": "de",
                "region": "AT",
                "catalogId": "iptv",
                "id": "iptv",
                "adult": False,
                "search": "",
                "sort": "name",
                "filter": {"group": group},
                "cursor": cursor,
                "clientVersion": CLIENT_VERSION,
            }
            try:
                response = await self.http.post(
                    self.settings.upstream_catalog_url,
                    json=body,
                    headers=headers,
                    timeout=self.settings.catalog_timeout_sec,
                )
            except httpx.HTTPError as exc:
                logger.warning("Catalog page %s for '%s' failed: %s", pages + 1, group, type(exc).__name__)
                return Ok(items) if items else Failure(f"catalog transport error: {type(exc).__name__}")

            if not response.is_success:
                logger.warning("Catalog page %s for '%s' returned HTTP %s", pages + 1, group, response.status_code)
                return Ok(items) if items else Failure(f"catalog HTTP {response.status_code}")

            try:
                data = response.json()
            except ValueError:
                return Ok(items) if items else Failure("catalog returned non-JSON body")
            if not isinstance(data, dict):
                return Ok(items) if items else Failure("unexpected catalog payload")

            page_items = data.get("items") or []
            if isinstance(page_items, list):
                items.extend(item for item in page_items if isinstance(item, dict))
            pages += 1
            cursor = data.get("nextCursor")
            if not cursor:
                break

        logger.debug("Catalog group '%s': %s items over %s page(s)", group, len(items), pages)
        return Ok(items) if items else Empty()

    async def resolve_play(self, play_ref: str, signature: str, client_ip: str | None = None) -> UpstreamResult[str]:
        """Resolve a play reference into a directly playable URL."""
        headers = {**RESOLVE_HEADERS, SIGNATURE_HEADER: signature, **forwarding_headers(client_ip)}
        body = {"language": "de", "region": "AT", "url": play_ref, "clientVersion": CLIENT_VERSION}
        logger.debug(
            "Resolve POST %s (url=%s, headers=%s)",
            self.settings.upstream_resolve_url,
            play_ref[:120],
            sorted(headers),
        )
        try:
            response = await self.http.post(
                self.settings.upstream_resolve_url,
                json=body,
                headers=headers,
                timeout=self.settings.resolve_timeout_sec,
            )
        except httpx.HTTPError as exc:
            logger.warning("Resolve request failed: %s: %s", type(exc).__name__, exc)
            return Failure(f"resolve transport error: {type(exc).__name__}")

        if not response.is_success:
            logger.warning("Resolve returned HTTP %s: %s", response.status_code, response.text[:300])
            return Failure(f"resolve HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            return Failure("resolve returned non-JSON body")
        return extract_resolved_url(payload)
