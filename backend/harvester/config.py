"""
Gallery site profiles.

Each supported gallery has a GallerySite entry that defines:
- How item references are found on the listing page
- What the item detail URL looks like
- Which responses carry metadata worth intercepting
- Where labels, captions and hydration data live on the detail page
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import ValidationError

from .base import InvalidConfiguration, ScrapeConfig


@dataclass(frozen=True)
class GallerySite:
    """Selectors and URL patterns for one gallery frontend."""
    key: str                                # Registry key (e.g., 'smartframe')
    name: str                               # Display name
    hosts: Tuple[str, ...]                  # Hostnames whose listing pages we accept
    detail_url_template: str                # Built with {namespace} and {item_id}
    detail_path_pattern: str                # Regex with (namespace, item_id) groups

    # Listing page
    embed_selector: str = ''                # Embedded item components
    embed_id_attr: str = ''
    embed_namespace_attr: str = ''
    link_selector: str = ''                 # Anchors pointing at detail pages
    container_selector: str = ''            # Containers with explicit data attributes
    container_id_attr: str = ''
    container_namespace_attrs: Tuple[str, ...] = ()
    item_count_selector: str = 'img'        # What "visible items" means for the loop guard
    ready_selector: str = ''                # Waited on after listing navigation

    # Network interception
    api_host_marker: str = ''
    api_path_markers: Tuple[str, ...] = ()

    # Detail page
    label_item_selector: str = 'li'
    label_marker_selector: str = 'strong'
    label_value_selector: str = 'button'
    title_selector: str = 'h1'
    caption_selector: str = ''
    hydration_selector: str = ''
    hydration_path: Tuple[str, ...] = ()

    # Site chrome that shows up next to metadata and must never be captured
    ui_phrases: Tuple[str, ...] = ()

    def detail_url(self, namespace: str, item_id: str) -> str:
        return self.detail_url_template.format(namespace=namespace, item_id=item_id)

    def match_detail_path(self, href: str) -> Optional[Tuple[str, str]]:
        """Return (namespace, item_id) if href points at an item detail page."""
        match = re.search(self.detail_path_pattern, href or '')
        if not match:
            return None
        return match.group(1), match.group(2)

    @property
    def label_wait_selector(self) -> str:
        return f"{self.label_item_selector} {self.label_marker_selector}"

    def serves(self, url: str) -> bool:
        host = (urlparse(url).hostname or '').lower()
        return any(host == h or host.endswith('.' + h) for h in self.hosts)

    def is_metadata_api_url(self, url: str) -> bool:
        """True for responses that may carry item metadata as JSON."""
        if not url or self.api_host_marker not in url:
            return False
        return any(marker in url for marker in self.api_path_markers)


# ============================================================
# SITE CONFIGURATIONS
# ============================================================

SITES: Dict[str, GallerySite] = {
    'smartframe': GallerySite(
        key='smartframe',
        name='SmartFrame',
        hosts=('smartframe.com', 'smartframe.io'),
        detail_url_template='https://smartframe.com/search/image/{namespace}/{item_id}',
        detail_path_pattern=r'/search/image/([^/?#]+)/([^/?#]+)',
        embed_selector='smartframe-embed',
        embed_id_attr='image-id',
        embed_namespace_attr='customer-id',
        link_selector='a[href*="/search/image/"]',
        container_selector='[data-image-id], .sf-thumbnail',
        container_id_attr='data-image-id',
        container_namespace_attrs=('data-customer-id', 'data-hash'),
        item_count_selector='img',
        ready_selector='smartframe-embed, .sf-thumbnail, [data-testid="image-card"]',
        api_host_marker='smartframe.',
        api_path_markers=('/api/', '/metadata', '/image/'),
        label_item_selector='li',
        label_marker_selector='strong',
        label_value_selector='button',
        title_selector='h1',
        caption_selector='p.text-iy-midnight-400',
        hydration_selector='script#__NEXT_DATA__',
        hydration_path=('props', 'pageProps', 'image', 'metadata'),
        ui_phrases=('google tag manager', 'smartframe content partner'),
    ),
}


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def get_site_config(site_key: str) -> GallerySite:
    """
    Get configuration for a site by its key.

    Raises:
        ValueError: If site_key is not found
    """
    if site_key not in SITES:
        valid_keys = ', '.join(sorted(SITES.keys()))
        raise ValueError(f"Unknown site: '{site_key}'. Valid sites: {valid_keys}")
    return SITES[site_key]


def get_site_for_url(url: str) -> Optional[GallerySite]:
    """Find the site profile whose hosts serve this URL."""
    for site in SITES.values():
        if site.serves(url):
            return site
    return None


def list_sites() -> list:
    """List all site keys."""
    return list(SITES.keys())


def get_site_summary() -> list:
    """Get a summary of all sites for display."""
    return [
        {'key': key, 'name': site.name, 'hosts': list(site.hosts)}
        for key, site in SITES.items()
    ]


def build_scrape_config(data: Mapping[str, Any]) -> ScrapeConfig:
    """
    Validate raw request data into a ScrapeConfig.

    Raises:
        InvalidConfiguration: on schema violations or an unsupported host
    """
    if not data or not data.get('url'):
        raise InvalidConfiguration("URL is required")
    try:
        config = ScrapeConfig.model_validate(dict(data))
    except ValidationError as e:
        problems = '; '.join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidConfiguration(problems) from e

    if get_site_for_url(config.url) is None:
        hosts = ', '.join(h for site in SITES.values() for h in site.hosts)
        raise InvalidConfiguration(f"URL must be from a supported gallery ({hosts})")
    return config
