"""
Stream Signature Resolver

Turns a channel's internal play reference into a playable URL tied to the
viewer's network location: fetch a signature on behalf of the viewer, push
the viewer's IP to the front of the signature's IP list, then resolve.
Every step fails soft; callers get None, never an exception.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import time

from iptv_gateway.config import CustomSettings
from iptv_gateway.services.fetch_types import Ok, ResolvedStream
from iptv_gateway.services.upstream_client import UpstreamClient
from iptv_gateway.utils.logging_helpers import signature_preview


logger = logging.getLogger(__name__)

PLAYER_USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 13; Pixel Build/TQ3A.230805.001; wv) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Version/4.0 Chrome/120.0.0.0 Mobile Safari/537.36"
)
PLAYER_REFERER = "https://vavoo.to/"


def playback_headers() -> dict[str, str]:
    """Headers a player must send for a resolved URL to play."""
    return {"User-Agent": PLAYER_USER_AGENT, "Referer": PLAYER_REFERER}


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded)


def rewrite_signature_ips(signature: str, client_ip: str | None) -> str:
    """
    Put client_ip first in the signature's nested 'ips' list.

    The signature is base64 JSON whose 'data' member is itself a JSON
    string. When that payload carries an 'ips' list, the client IP is
    prepended (existing copies removed) and a string 'ip' field, if any, is
    replaced. Anything that cannot be decoded returns the signature untouched.
    """
    if not client_ip:
        logger.debug("No client IP observed, signature not rewritten")
        return signature

    try:
        envelope = json.loads(_b64decode(signature).decode("utf-8"))
        if not isinstance(envelope, dict):
            return signature
        data = json.loads(envelope.get("data") or "{}")
        if not isinstance(data, dict) or not isinstance(data.get("ips"), list):
            return signature

        before = data["ips"]
        data["ips"] = [client_ip, *(ip for ip in before if ip and ip != client_ip)]
        if isinstance(data.get("ip"), str):
            data["ip"] = client_ip
        envelope["data"] = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
        encoded = json.dumps(envelope, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        rewritten = base64.b64encode(encoded).decode("ascii")
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError, AttributeError) as exc:
        logger.debug("Signature rewrite skipped: %s", exc)
        return signature

    logger.debug("Signature ips %s -> %s", before, data["ips"])
    return rewritten


class StreamResolver:
    """Resolves play references with a viewer-biased signature."""

    def __init__(self, upstream: UpstreamClient, settings: CustomSettings):
        self.upstream = upstream
        self.settings = settings

    def _preview(self, signature: str) -> str:
        return signature_preview(signature, self.settings.log_signature_full)

    async def acquire_signature(self, client_ip: str | None) -> str | None:
        """
        Ping for a signature with the viewer's IP, retrying once without it.

        The retry drops ipLocation and forwarding headers, which the upstream
        sometimes rejects.
        """
        result = await self.upstream.fetch_signature(client_ip, forward_ip=True)
        if isinstance(result, Ok):
            return result.value

        logger.info("Ping without success (%s), retrying without client IP", result)
        fallback = await self.upstream.fetch_signature(None, forward_ip=False)
        if isinstance(fallback, Ok):
            return fallback.value
        logger.warning("Ping fallback failed: %s", fallback)
        return None

    async def resolve_clean_url(self, play_ref: str, client_ip: str | None) -> ResolvedStream | None:
        """
        Resolve play_ref into a playable URL for the viewer at client_ip.

        Returns:
            ResolvedStream, or None if any step fails
        """
        if not play_ref or self.settings.upstream_play_host not in play_ref:
            logger.debug("Not an upstream play reference: %s", (play_ref or "")[:120])
            return None

        started = time.monotonic()
        logger.info("Clean resolve start (url=%s, ip=%s)", play_ref[:120], client_ip or "(none)")
        try:
            signature = await self.acquire_signature(client_ip)
            if not signature:
                return None
            logger.debug("Signature acquired: %s", self._preview(signature))

            signature = rewrite_signature_ips(signature, client_ip)
            logger.debug("Resolving with signature: %s", self._preview(signature))

            result = await self.upstream.resolve_play(play_ref, signature, client_ip)
            if not isinstance(result, Ok):
                logger.warning("Resolve failed for %s: %s", play_ref[:120], result)
                return None
        except Exception as exc:  # Catch-all so a resolve never escapes to the transport
            logger.error("Clean resolve error: %s", exc, exc_info=True)
            return None

        logger.info(
            "Clean resolve success in %.0f ms: %s",
            (time.monotonic() - started) * 1000,
            result.value[:200],
        )
        return ResolvedStream(url=result.value, headers=playback_headers())
