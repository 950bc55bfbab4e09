"""
Shared dataclasses used across the catalog, EPG and stream pipelines.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union


T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Upstream call succeeded with a usable value."""
    value: T


@dataclass(frozen=True, slots=True)
class Empty:
    """Upstream call succeeded but returned nothing usable."""


@dataclass(frozen=True, slots=True)
class Failure:
    """Upstream call failed (network, timeout, status or unexpected shape)."""
    reason: str


UpstreamResult = Union[Ok[T], Empty, Failure]


@dataclass(frozen=True, slots=True)
class ChannelEntry:
    """Slim catalog item kept in memory and on disk."""
    name: str
    play_ref: str
    poster: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "url": self.play_ref}
        if self.poster:
            payload["poster"] = self.poster
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelEntry:
        return cls(
            name=str(data.get("name") or "Unknown"),
            play_ref=str(data.get("url") or ""),
            poster=data.get("poster") or None,
        )


@dataclass(slots=True)
class CountryCatalog:
    """One country's cached catalog."""
    updated_at: int
    items: list[ChannelEntry]


@dataclass(slots=True)
class ResolvedHint:
    """Logo/category enrichment for one (country, base name)."""
    logo: str | None = None
    cat: str | None = None

    def to_dict(self) -> dict[str, str]:
        payload = {}
        if self.logo:
            payload["logo"] = self.logo
        if self.cat:
            payload["cat"] = self.cat
        return payload

    @classmethod
    def from_dict(cls, data: Any) -> ResolvedHint:
        if not isinstance(data, dict):
            return cls()
        return cls(logo=data.get("logo") or None, cat=data.get("cat") or None)


@dataclass(frozen=True, slots=True)
class StaticEntry:
    """Static provider list entry used to enrich non-home countries."""
    name: str
    country: str
    logo: str | None = None
    category: str | None = None


@dataclass(frozen=True, slots=True)
class Programme:
    """One programme within a channel timeline; times are epoch milliseconds."""
    channel_id: str
    start: int
    stop: int
    title: str | None = None
    desc: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel_id,
            "start": self.start,
            "stop": self.stop,
            "title": self.title,
            "desc": self.desc,
        }


@dataclass(frozen=True, slots=True)
class NowNext:
    now: Programme | None = None
    next: Programme | None = None


@dataclass(frozen=True, slots=True)
class EpgIndex:
    """Fully built EPG index; replaced wholesale on every refresh."""
    by_channel: dict[str, list[Programme]] = field(default_factory=dict)
    now_next: dict[str, NowNext] = field(default_factory=dict)
    channel_names: dict[str, list[str]] = field(default_factory=dict)
    name_to_ids: dict[str, list[str]] = field(default_factory=dict)
    updated_at: int = 0


class EpgState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ResolvedStream:
    """Directly playable URL plus headers the player must send."""
    url: str
    headers: dict[str, str]


__all__ = [
    "Ok",
    "Empty",
    "Failure",
    "UpstreamResult",
    "ChannelEntry",
    "CountryCatalog",
    "ResolvedHint",
    "StaticEntry",
    "Programme",
    "NowNext",
    "EpgIndex",
    "EpgState",
    "ResolvedStream",
]
