from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from zoneinfo import ZoneInfo
import logging

from lxml import etree # type: ignore

from iptv_gateway.services.fetch_types import Programme
from iptv_gateway.utils.timezone import parse_xmltv_time

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def iter_xmltv_events(chunks: Iterable[bytes]) -> Iterator[tuple[str, etree._Element]]:
    """
    Pull (event, element) pairs from an XMLTV byte stream.

    The document is fed to the parser chunk by chunk; only the elements not
    yet cleared by the consumer stay in memory.

    Raises:
        etree.XMLSyntaxError: If XML is malformed
    """
    parser = etree.XMLPullParser(events=("start", "end"), resolve_entities=False, huge_tree=True)
    for chunk in chunks:
        parser.feed(chunk)
        yield from parser.read_events()
    parser.close()
    yield from parser.read_events()


def _release(element: etree._Element) -> None:
    """Drop a processed element and its already-processed siblings."""
    element.clear()
    parent = element.getparent()
    if parent is None:
        return
    while element.getprevious() is not None:
        del parent[0]


def _text(element: etree._Element) -> str:
    return (element.text or "").strip()


def parse_xmltv_events(
    events: Iterable[tuple[str, etree._Element]],
    now: int,
    past_ms: int,
    future_ms: int,
    fallback_zone: ZoneInfo | None = None,
    fallback_filter: Callable[[str], bool] | None = None,
) -> tuple[dict[str, list[Programme]], dict[str, list[str]]]:
    """
    Collect programmes and channel display names from XMLTV parse events.

    Programmes whose window does not intersect [now - past_ms, now + future_ms]
    are discarded as soon as their start tag is seen.

    Args:
        events: (event, element) pairs from iter_xmltv_events
        now: Reference instant, epoch ms
        past_ms: Pruning horizon behind now
        future_ms: Pruning horizon ahead of now
        fallback_zone: Zone for timestamps without an offset
        fallback_filter: Limits fallback_zone to matching channel ids

    Returns:
        Tuple of (programmes by channel id, display names by channel id)
    """
    min_start = now - past_ms
    max_stop = now + future_ms

    by_channel: dict[str, list[Programme]] = {}
    channel_names: dict[str, list[str]] = {}

    current: dict | None = None
    channel_id: str | None = None
    kept = 0
    skipped = 0

    for event, element in events:
        tag = element.tag
        if not isinstance(tag, str):
            continue

        if event == "start":
            if tag == "programme":
                programme_channel = element.get("channel") or ""
                zone = None
                if fallback_zone and (fallback_filter is None or fallback_filter(programme_channel)):
                    zone = fallback_zone
                start = parse_xmltv_time(element.get("start"), zone, now=now)
                stop = parse_xmltv_time(element.get("stop"), zone, now=now)
                if programme_channel and stop >= min_start and start <= max_stop:
                    current = {"channel_id": programme_channel, "start": start, "stop": stop}
                else:
                    current = None
                    skipped += 1
            elif tag == "channel":
                channel_id = element.get("id") or None
                if channel_id:
                    channel_names.setdefault(channel_id, [])
            continue

        # end events
        if tag in ("title", "desc") and current is not None:
            # first non-empty value wins when several languages are present
            if not current.get(tag):
                current[tag] = _text(element) or None
        elif tag == "display-name" and channel_id:
            name = _text(element)
            if name:
                channel_names[channel_id].append(name)
        elif tag == "channel":
            channel_id = None
            _release(element)
        elif tag == "programme":
            if current is not None:
                by_channel.setdefault(current["channel_id"], []).append(Programme(**current))
                kept += 1
            current = None
            _release(element)

    logger.debug("XMLTV events processed: %s programmes kept, %s pruned", kept, skipped)
    return by_channel, channel_names


def _read_chunks(file_path: Path) -> Iterator[bytes]:
    with open(file_path, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


def parse_xmltv_file(
    file_path: str | Path,
    now: int,
    past_ms: int,
    future_ms: int,
    fallback_zone: ZoneInfo | None = None,
    fallback_filter: Callable[[str], bool] | None = None,
) -> tuple[dict[str, list[Programme]], dict[str, list[str]]]:
    """
    Stream-parse an XMLTV file without building the whole document

    Raises:
        etree.XMLSyntaxError: If XML is malformed
        FileNotFoundError: If file doesn't exist
        OSError: If file can't be read
    """
    logger.debug(f"Parsing XMLTV file: {file_path}")
    by_channel, channel_names = parse_xmltv_events(
        iter_xmltv_events(_read_chunks(Path(file_path))),
        now,
        past_ms,
        future_ms,
        fallback_zone,
        fallback_filter,
    )
    logger.info(
        f"XMLTV parsing complete: {len(channel_names)} channels, "
        f"{sum(len(p) for p in by_channel.values())} programmes in window"
    )
    return by_channel, channel_names
