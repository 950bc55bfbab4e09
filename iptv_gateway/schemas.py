from pydantic import BaseModel, ConfigDict, Field


class AliasedModel(BaseModel):
    """Response model serialized with the client's camelCase field names."""
    model_config = ConfigDict(populate_by_name=True)


class ChannelMeta(AliasedModel):
    """Channel entry in a catalog listing or a meta response"""
    id: str = Field(..., description="Channel ref: <prefix><name>|<play ref>, both URL-encoded")
    type: str = "tv"
    name: str = Field(..., description="Display name, numbered '(n)' when duplicated")
    poster: str | None = None
    poster_shape: str = Field("landscape", alias="posterShape")
    logo: str | None = None
    background: str | None = None
    description: str | None = Field(None, description="Now/next programme summary")
    genres: list[str] | None = None


class CatalogResponse(BaseModel):
    metas: list[ChannelMeta]


class MetaResponse(BaseModel):
    meta: ChannelMeta | None


class StreamBehaviorHints(AliasedModel):
    not_web_ready: bool = Field(True, alias="notWebReady")
    headers: dict[str, str] | None = None
    proxy_headers: dict[str, str] | None = Field(None, alias="proxyHeaders")
    proxy_use_fallback: bool | None = Field(None, alias="proxyUseFallback")


class StreamRecord(AliasedModel):
    """Playable stream handed to the client"""
    name: str = "Vavoo"
    title: str
    url: str
    behavior_hints: StreamBehaviorHints = Field(default_factory=StreamBehaviorHints, alias="behaviorHints")


class StreamResponse(BaseModel):
    streams: list[StreamRecord]


class CatalogExtra(AliasedModel):
    name: str = "genre"
    options: list[str]
    is_required: bool = Field(False, alias="isRequired")


class ManifestCatalog(BaseModel):
    id: str
    type: str = "tv"
    name: str
    extra: list[CatalogExtra] = Field(default_factory=list)


class Manifest(AliasedModel):
    """Add-on manifest listing one catalog per selected country"""
    id: str
    version: str
    name: str
    description: str
    background: str
    logo: str
    types: list[str] = Field(default_factory=lambda: ["tv"])
    id_prefixes: list[str] = Field(alias="idPrefixes")
    catalogs: list[ManifestCatalog]
    resources: list[str] = Field(default_factory=lambda: ["catalog", "meta", "stream"])
    behavior_hints: dict[str, bool] = Field(
        default_factory=lambda: {"configurable": True, "configurationRequired": False},
        alias="behaviorHints",
    )


class ProgrammeResponse(BaseModel):
    channel: str
    start: int = Field(..., description="Epoch milliseconds")
    stop: int = Field(..., description="Epoch milliseconds")
    title: str | None
    desc: str | None


class EpgCandidate(BaseModel):
    id: str = Field(..., description="XMLTV channel id")
    now: ProgrammeResponse | None
    next: ProgrammeResponse | None


class EpgLookupResponse(BaseModel):
    """EPG channels matched for a catalog name, preferred first"""
    name: str
    key: str = Field(..., description="Normalized lookup key")
    updated_at: int = Field(..., alias="updatedAt")
    candidates: list[EpgCandidate]

    model_config = ConfigDict(populate_by_name=True)


class EpgStatusResponse(BaseModel):
    state: str
    updated_at: int = Field(..., alias="updatedAt")
    channels: int
    refreshing: bool
    last_error: str | None = Field(None, alias="lastError")
    next_refresh: str | None = Field(None, alias="nextRefresh")

    model_config = ConfigDict(populate_by_name=True)
