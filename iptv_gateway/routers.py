import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from iptv_gateway.dependencies import ClientIpDep, PipelineDep
from iptv_gateway.schemas import (
    CatalogResponse,
    EpgLookupResponse,
    EpgStatusResponse,
    Manifest,
    MetaResponse,
    StreamResponse,
)
from iptv_gateway.services.pipeline import APP_VERSION
from iptv_gateway.services.scheduler_service import CATALOG_JOB_ID, EPG_JOB_ID
from iptv_gateway.utils.network import FORWARDING_HEADERS


logger = logging.getLogger(__name__)

main_router = APIRouter()

NO_STORE = {"Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate"}

_TRUE_VALUES = {"1", "true", "yes"}
_FALSE_VALUES = {"0", "false", "no"}


def _split_query_list(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_header_flag(value: str | None) -> bool | None:
    """'1'/'true' include playback headers, '0'/'false' omit them, anything else defers to settings."""
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


def _isoformat(value) -> str | None:
    return value.isoformat() if value else None


@main_router.get("/")
async def root(pipeline: PipelineDep) -> dict:
    """Root endpoint with service information"""
    return {
        "service": "IPTV Gateway",
        "version": APP_VERSION,
        "next_epg_refresh": _isoformat(pipeline.scheduler.get_next_run_time(EPG_JOB_ID)),
        "next_catalog_refresh": _isoformat(pipeline.scheduler.get_next_run_time(CATALOG_JOB_ID)),
        "endpoints": {
            "manifest": "/manifest.json - Add-on manifest (?include=it,uk&exclude=de)",
            "catalog": "/catalog/tv/{catalog_id}.json - Country channel listing",
            "meta": "/meta/tv/{channel_ref}.json - Channel details",
            "stream": "/stream/tv/{channel_ref}.json - Resolve a playable stream",
            "cache": "/cache/status, /cache/refresh (POST)",
            "epg": "/epg/status, /epg/lookup?name=, /epg/refresh (POST)",
            "health": "/health - Health check",
            "debug": "/debug/ip - Client IP used for stream resolution",
        },
    }


@main_router.get("/health")
async def health_check(pipeline: PipelineDep) -> dict:
    """Health check endpoint"""
    return {
        "status": "ok",
        "scheduler_running": pipeline.scheduler.is_running(),
        "epg_state": pipeline.epg.state.value,
        "next_epg_refresh": _isoformat(pipeline.scheduler.get_next_run_time(EPG_JOB_ID)),
    }


@main_router.get("/debug/ip")
async def debug_client_ip(request: Request, client_ip: ClientIpDep) -> dict:
    """Show which viewer IP stream resolution would use and the headers it came from"""
    return {
        "clientIp": client_ip,
        "headers": {name: request.headers.get(name) for name in FORWARDING_HEADERS},
        "peer": request.client.host if request.client else None,
    }


@main_router.get("/manifest.json", response_model=Manifest, response_model_by_alias=True)
async def manifest(
    pipeline: PipelineDep,
    include: str | None = Query(None, description="Comma list of country ids to list"),
    exclude: str | None = Query(None, description="Comma list of country ids to hide"),
):
    result = await pipeline.build_manifest(_split_query_list(include), _split_query_list(exclude))
    return JSONResponse(result.model_dump(by_alias=True), headers=NO_STORE)


@main_router.get(
    "/catalog/tv/{catalog_id}.json",
    response_model=CatalogResponse,
    response_model_exclude_none=True,
)
async def catalog(catalog_id: str, pipeline: PipelineDep) -> CatalogResponse:
    return CatalogResponse(metas=await pipeline.list_catalog(catalog_id))


@main_router.get(
    "/catalog/tv/{catalog_id}/genre={genre}.json",
    response_model=CatalogResponse,
    response_model_exclude_none=True,
)
async def catalog_by_genre(catalog_id: str, genre: str, pipeline: PipelineDep) -> CatalogResponse:
    return CatalogResponse(metas=await pipeline.list_catalog(catalog_id, genre))


@main_router.get("/meta/tv/{channel_ref:path}.json", response_model=MetaResponse)
async def meta(channel_ref: str, pipeline: PipelineDep):
    result = await pipeline.get_meta(channel_ref)
    if result is None:
        return JSONResponse({"meta": None})
    return JSONResponse({"meta": result.model_dump(by_alias=True, exclude_none=True)})


@main_router.get(
    "/stream/tv/{channel_ref:path}.json",
    response_model=StreamResponse,
    response_model_exclude_none=True,
)
async def stream(
    channel_ref: str,
    pipeline: PipelineDep,
    client_ip: ClientIpDep,
    hdr: str | None = Query(None, description="1/true to include playback headers, 0/false to omit them"),
) -> StreamResponse:
    streams = await pipeline.resolve_stream(channel_ref, client_ip, _parse_header_flag(hdr))
    return StreamResponse(streams=streams)


@main_router.get("/cache/status")
async def cache_status(pipeline: PipelineDep) -> dict:
    return pipeline.catalog.cache_status()


@main_router.post("/cache/refresh")
async def trigger_cache_refresh(pipeline: PipelineDep) -> dict:
    """
    Manually trigger a full catalog refresh

    Re-fetches every allowed country from upstream and refreshes the home
    country hints.
    """
    logger.info("Manual catalog refresh triggered via API")
    return await pipeline.catalog.refresh_all()


@main_router.get("/epg/status", response_model=EpgStatusResponse)
async def epg_status(pipeline: PipelineDep) -> EpgStatusResponse:
    return EpgStatusResponse(
        **pipeline.epg.status(),
        next_refresh=_isoformat(pipeline.scheduler.get_next_run_time(EPG_JOB_ID)),
    )


@main_router.get("/epg/lookup", response_model=EpgLookupResponse)
async def epg_lookup(pipeline: PipelineDep, name: str = Query(..., min_length=1)) -> EpgLookupResponse:
    """EPG channels matched for a channel name, with their now/next programmes"""
    return EpgLookupResponse(**pipeline.epg_lookup_candidates(name))


@main_router.post("/epg/refresh")
async def trigger_epg_refresh(pipeline: PipelineDep) -> dict:
    """
    Manually trigger an EPG refresh

    This will download and parse the feed and publish a new index
    """
    logger.info("Manual EPG refresh triggered via API")
    result = await pipeline.epg.refresh()

    if result.get("status") == "failed":
        raise HTTPException(status_code=502, detail=result["error"])

    return result
