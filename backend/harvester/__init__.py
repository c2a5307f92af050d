"""
Gallery harvester.

Crawl-and-extract core: discovers every item on an infinitely scrolling or
paginated gallery listing and extracts one normalized metadata record per item.

Usage:
    from harvester import ScrapeManager, build_scrape_config

    manager = ScrapeManager(store)
    job = manager.start(build_scrape_config({'url': 'https://smartframe.com/search?q=x'}))
"""

from .base import (
    CancelToken,
    ExtractedRecord,
    HarvesterError,
    InvalidConfiguration,
    ItemReference,
    JobStatus,
    NavigationError,
    ScrapeCancelledException,
    ScrapeConfig,
)
from .config import SITES, GallerySite, build_scrape_config, get_site_for_url
from .discovery import LinkDiscoveryEngine
from .extraction import MetadataExtractor
from .manager import ScrapeManager
from .orchestrator import ProgressChannel, ScrapeOrchestrator

__all__ = [
    'CancelToken',
    'ExtractedRecord',
    'HarvesterError',
    'InvalidConfiguration',
    'ItemReference',
    'JobStatus',
    'NavigationError',
    'ScrapeCancelledException',
    'ScrapeConfig',
    'SITES',
    'GallerySite',
    'build_scrape_config',
    'get_site_for_url',
    'LinkDiscoveryEngine',
    'MetadataExtractor',
    'ScrapeManager',
    'ProgressChannel',
    'ScrapeOrchestrator',
]
