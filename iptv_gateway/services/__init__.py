"""
Services package for IPTV Gateway

This package contains the catalog, enrichment, EPG and stream-resolution
layers plus the pipeline state that wires them together.
"""
from iptv_gateway.services.catalog_service import CatalogCache
from iptv_gateway.services.epg_query_service import EpgLookup, format_description
from iptv_gateway.services.epg_service import EPGService
from iptv_gateway.services.hint_service import HintResolver
from iptv_gateway.services.pipeline import PipelineState, create_pipeline
from iptv_gateway.services.scheduler_service import PipelineScheduler
from iptv_gateway.services.stream_resolver import StreamResolver
from iptv_gateway.services.xmltv_parser_service import parse_xmltv_file

__all__ = [
    'CatalogCache',
    'EpgLookup',
    'format_description',
    'EPGService',
    'HintResolver',
    'PipelineState',
    'create_pipeline',
    'PipelineScheduler',
    'StreamResolver',
    'parse_xmltv_file',
]
