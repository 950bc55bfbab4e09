from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import re

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Country:
    """A supported catalog country and the upstream group(s) that list it."""
    id: str
    name: str
    group: str
    aliases: tuple[str, ...] = field(default_factory=tuple)

    @property
    def group_candidates(self) -> list[str]:
        return [self.group, *self.aliases]


SUPPORTED_COUNTRIES: tuple[Country, ...] = (
    Country("it", "Italia", "Italy"),
    Country("uk", "United Kingdom", "United Kingdom"),
    Country("fr", "France", "France"),
    Country("de", "Germany", "Germany"),
    Country("pt", "Portugal", "Portugal"),
    Country("es", "Spain", "Spain"),
    Country("al", "Albania", "Albania"),
    Country("tr", "Turkey", "Turkey"),
    Country("nl", "Nederland", "Nederland", ("Netherlands", "Holland")),
    Country("ar", "Arabia", "Arabia"),
    Country("bk", "Balkans", "Balkans"),
    Country("ru", "Russia", "Russia"),
    Country("ro", "Romania", "Romania"),
    Country("pl", "Poland", "Poland"),
    Country("bg", "Bulgaria", "Bulgaria"),
)

# Country names as they appear in static channel lists
COUNTRY_NAME_TO_ID: dict[str, str] = {
    "italy": "it", "italia": "it", "it": "it",
    "france": "fr", "fr": "fr",
    "germany": "de", "de": "de",
    "spain": "es", "es": "es",
    "portugal": "pt", "pt": "pt",
    "netherlands": "nl", "nederland": "nl", "nl": "nl",
    "albania": "al", "al": "al",
    "turkey": "tr", "türkiye": "tr", "tr": "tr",
    "united kingdom": "uk", "uk": "uk", "england": "uk", "great britain": "uk",
    "arabia": "ar", "arabic": "ar", "saudi arabia": "ar",
    "balkans": "bk",
    "russia": "ru", "ru": "ru",
    "romania": "ro", "ro": "ro",
    "poland": "pl", "pl": "pl",
    "bulgaria": "bg", "bg": "bg",
}


def _validate_countries(countries: tuple[Country, ...]) -> dict[str, Country]:
    """Index the country table by id, rejecting a table the service cannot run with."""
    by_id: dict[str, Country] = {}
    for country in countries:
        if not country.id or not country.group.strip():
            raise ValueError(f"Invalid supported country entry: {country!r}")
        if country.id in by_id:
            raise ValueError(f"Duplicate supported country id: {country.id}")
        by_id[country.id] = country
    return by_id


COUNTRIES_BY_ID = _validate_countries(SUPPORTED_COUNTRIES)


def country_name_to_id(name: str | None) -> str | None:
    return COUNTRY_NAME_TO_ID.get((name or "").strip().lower())


def _split_csv(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    data_dir: str = "./data"
    log_level: str = "INFO"
    home_country: str = "it"

    upstream_ping_url: str = "https://www.vavoo.tv/api/app/ping"
    upstream_catalog_url: str = "https://vavoo.to/mediahubmx-catalog.json"
    upstream_resolve_url: str = "https://vavoo.to/mediahubmx-resolve.json"
    upstream_play_host: str = "vavoo.to"
    ping_timeout_sec: float = 12.0
    catalog_timeout_sec: float = 10.0
    resolve_timeout_sec: float = 12.0

    max_catalog_fetches: int = 3
    catalog_refresh_cron: str = "0 2 * * *"  # Daily at 2 AM
    catalog_boot_refresh: bool = False
    catalog_schedule_refresh: bool = False
    refresh_countries: Annotated[list[str] | None, NoDecode] = None

    epg_enabled: bool = True
    epg_url: str = "https://raw.githubusercontent.com/qwertyuiop8899/TV/refs/heads/main/epg.xml"
    epg_refresh_cron: str = "0 */3 * * *"  # Every 3 hours
    epg_fetch_timeout_sec: float = 20.0
    epg_parse_timeout_sec: int = 300  # XML parsing timeout, 0 disables timeout
    epg_prune_past_hours: int = 8
    epg_prune_future_hours: int = 8
    epg_fallback_timezone: str | None = None
    epg_fallback_timezone_channels: Annotated[list[str], NoDecode] = []

    scheduler_timezone: str = "Europe/Rome"
    scheduler_misfire_grace_sec: int = 600

    similarity_threshold: float = 0.85
    sort_priority_patterns: Annotated[list[str], NoDecode] = [r"\bsky\b", r"\beurosport\b", r"\bdazn\b"]

    home_m3u_url: str = "https://raw.githubusercontent.com/nzo66/TV/main/lista.m3u"
    home_m3u_refresh_hours: float = 6.0
    home_m3u_timeout_sec: float = 8.0

    include_stream_headers: bool = False
    log_signature_full: bool = False
    fallback_artwork_url: str = "https://raw.githubusercontent.com/qwertyuiop8899/tvvoo/refs/heads/main/public/tvvoo.png"
    channel_id_prefix: str = "vavoo_"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("refresh_countries", mode="before")
    @classmethod
    def parse_refresh_countries(cls, value):
        """Parse comma-separated country ids; empty means no allow-list."""
        ids = _split_csv(value)
        return ids or None

    @field_validator("refresh_countries", mode="after")
    @classmethod
    def validate_refresh_countries(cls, value):
        if not value:
            return value
        unknown = [cid for cid in value if cid not in COUNTRIES_BY_ID]
        if unknown:
            raise ValueError(f"Unknown country ids in refresh_countries: {unknown}")
        return value

    @field_validator("epg_fallback_timezone_channels", "sort_priority_patterns", mode="before")
    @classmethod
    def parse_csv_lists(cls, value):
        """Parse comma-separated values or list."""
        return _split_csv(value)

    @field_validator("sort_priority_patterns")
    @classmethod
    def validate_sort_patterns(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid sort priority pattern '{pattern}': {exc}") from exc
        return value

    @field_validator("data_dir")
    @classmethod
    def validate_data_dir(cls, value: str) -> str:
        """Validate the data directory is accessible."""
        path = Path(value)
        try:
            path.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access data directory '{value}': {exc}") from exc

    @field_validator("upstream_ping_url", "upstream_catalog_url", "upstream_resolve_url", "epg_url", "home_m3u_url")
    @classmethod
    def validate_urls(cls, value: str, info) -> str:
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError(f"{info.field_name} must be HTTP/HTTPS: {value}")
        return value

    @field_validator("home_country")
    @classmethod
    def validate_home_country(cls, value: str) -> str:
        if value not in COUNTRIES_BY_ID:
            raise ValueError(f"home_country must be a supported country id, got '{value}'")
        return value

    @field_validator("max_catalog_fetches")
    @classmethod
    def validate_max_fetches(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_catalog_fetches must be >= 1")
        return value

    @field_validator(
        "ping_timeout_sec",
        "catalog_timeout_sec",
        "resolve_timeout_sec",
        "epg_fetch_timeout_sec",
        "home_m3u_timeout_sec",
    )
    @classmethod
    def validate_timeouts(cls, value: float, info) -> float:
        """Ensure every outbound call carries a positive timeout."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("epg_parse_timeout_sec", "scheduler_misfire_grace_sec")
    @classmethod
    def validate_non_negative(cls, value: int, info) -> int:
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("epg_prune_past_hours")
    @classmethod
    def validate_past_horizon(cls, value: int) -> int:
        if value < 0:
            raise ValueError("epg_prune_past_hours must be >= 0")
        return value

    @field_validator("epg_prune_future_hours")
    @classmethod
    def validate_future_horizon(cls, value: int) -> int:
        if value < 1:
            raise ValueError("epg_prune_future_hours must be >= 1")
        return value

    @field_validator("similarity_threshold")
    @classmethod
    def validate_threshold(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("similarity_threshold must be in (0, 1]")
        return value

    @field_validator("epg_fallback_timezone", "scheduler_timezone")
    @classmethod
    def validate_timezone(cls, value: str | None, info) -> str | None:
        """Validate IANA timezone names."""
        if value is None or value == "UTC":
            return value
        try:
            ZoneInfo(value)
            return value
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Invalid timezone for {info.field_name}: {value}") from exc

    @field_validator("epg_refresh_cron", "catalog_refresh_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_refresh_configuration(self):
        """Validate cross-field configuration."""
        if not self.epg_enabled:
            logger.warning("EPG disabled - listings will carry no now/next data")
        if self.epg_fallback_timezone_channels and not self.epg_fallback_timezone:
            logger.warning(
                "epg_fallback_timezone_channels set without epg_fallback_timezone - ignored"
            )
        return self

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def catalog_cache_dir(self) -> Path:
        return self.data_path / "cache" / "catalog"

    @property
    def hints_cache_dir(self) -> Path:
        return self.data_path / "cache" / "hints"

    @property
    def home_hints_file(self) -> Path:
        return self.data_path / "logo-hints.json"

    @property
    def static_lists_dir(self) -> Path:
        return self.data_path / "channels"

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Data directory: %s", self.data_dir)
        logger.info("  Home country: %s", self.home_country)
        logger.info("  Catalog fetch slots: %s", self.max_catalog_fetches)
        logger.info(
            "  Catalog refresh: %s (boot=%s, scheduled=%s)",
            self.catalog_refresh_cron,
            self.catalog_boot_refresh,
            self.catalog_schedule_refresh,
        )
        logger.info(
            "  Refresh countries: %s",
            ", ".join(self.refresh_countries) if self.refresh_countries else "all",
        )
        logger.info("  EPG: %s", "enabled" if self.epg_enabled else "disabled")
        logger.info("  EPG Schedule: %s", self.epg_refresh_cron)
        logger.info(
            "  EPG Pruning: %sh back, %sh forward",
            self.epg_prune_past_hours,
            self.epg_prune_future_hours,
        )
        logger.info(
            "  EPG Parse Timeout: %s seconds",
            self.epg_parse_timeout_sec or "disabled",
        )
        logger.info("  Similarity threshold: %.2f", self.similarity_threshold)


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
