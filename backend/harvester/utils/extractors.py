"""
Data extraction utilities for gallery pages.

These functions pull raw values out of rendered HTML snapshots and
intercepted payloads. They never sanitize; callers pass every captured
string through the Sanitizer.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..base import ExtractionParseFailure, ItemReference, RawDetailFields
from ..config import GallerySite


def _soup(html) -> BeautifulSoup:
    if isinstance(html, BeautifulSoup):
        return html
    return BeautifulSoup(html or '', 'html.parser')


# ============================================================
# LISTING PAGE
# ============================================================

def _references_from_embeds(soup: BeautifulSoup, site: GallerySite) -> List[ItemReference]:
    """Strategy 1: embedded item components carrying id and namespace attributes."""
    refs = []
    if not site.embed_selector:
        return refs
    for embed in soup.select(site.embed_selector):
        item_id = (embed.get(site.embed_id_attr) or '').strip()
        namespace = (embed.get(site.embed_namespace_attr) or '').strip()
        if item_id and namespace:
            refs.append(ItemReference(item_id, namespace, site.detail_url(namespace, item_id)))
    return refs


def _references_from_links(soup: BeautifulSoup, site: GallerySite, page_url: str) -> List[ItemReference]:
    """Strategy 2: anchors whose href matches the item detail URL pattern."""
    refs = []
    if not site.link_selector:
        return refs
    for link in soup.select(site.link_selector):
        href = urljoin(page_url or '', link.get('href') or '')
        parts = site.match_detail_path(href)
        if parts:
            namespace, item_id = parts
            refs.append(ItemReference(item_id, namespace, site.detail_url(namespace, item_id)))
    return refs


def _references_from_containers(soup: BeautifulSoup, site: GallerySite) -> List[ItemReference]:
    """Strategy 3: item containers with explicit data attributes."""
    refs = []
    if not site.container_selector:
        return refs
    for container in soup.select(site.container_selector):
        item_id = (container.get(site.container_id_attr) or '').strip()
        namespace = ''
        for attr in site.container_namespace_attrs:
            namespace = (container.get(attr) or '').strip()
            if namespace:
                break
        if item_id and namespace:
            refs.append(ItemReference(item_id, namespace, site.detail_url(namespace, item_id)))
    return refs


def extract_item_references(html, site: GallerySite, page_url: str = '') -> List[ItemReference]:
    """
    Collect item references visible in a listing page snapshot.

    Runs the three lookup strategies independently and merges them,
    keeping the first reference seen for each item id.

    Args:
        html: Rendered listing HTML (or an existing BeautifulSoup)
        site: Gallery site profile
        page_url: URL of the snapshot, used to resolve relative links

    Returns:
        References in document order, unique by item_id
    """
    soup = _soup(html)
    seen = {}
    for batch in (
        _references_from_embeds(soup, site),
        _references_from_links(soup, site, page_url),
        _references_from_containers(soup, site),
    ):
        for ref in batch:
            seen.setdefault(ref.item_id, ref)
    return list(seen.values())


def extract_thumbnails(html, site: GallerySite) -> Dict[str, str]:
    """Map item id to the thumbnail image URL inside its embedded component."""
    soup = _soup(html)
    thumbnails = {}
    if not site.embed_selector:
        return thumbnails
    for embed in soup.select(site.embed_selector):
        item_id = (embed.get(site.embed_id_attr) or '').strip()
        img = embed.find('img')
        src = (img.get('src') or '').strip() if img else ''
        if item_id and src and not src.startswith('data:'):
            thumbnails.setdefault(item_id, src)
    return thumbnails


# ============================================================
# DETAIL PAGE
# ============================================================

def _label_value(item, marker, site: GallerySite) -> Optional[str]:
    """Value next to a label marker: a clickable sub-element, else the following text."""
    if site.label_value_selector:
        clickable = item.select_one(site.label_value_selector)
        if clickable is not None:
            return clickable.get_text()
    sibling = marker.next_sibling
    if sibling is None:
        return None
    if isinstance(sibling, str):
        return str(sibling)
    return sibling.get_text()


def extract_detail_fields(html, site: GallerySite) -> RawDetailFields:
    """
    Read raw title, caption, label/value pairs and hydration payload.

    Examples:
        <li><strong>Credit:</strong> Jane Doe</li> -> ('Credit', ' Jane Doe')
        <li><strong>City:</strong><button>Paris</button></li> -> ('City', 'Paris')
    """
    soup = _soup(html)
    raw = RawDetailFields()

    if site.title_selector:
        title_el = soup.select_one(site.title_selector)
        raw.title = title_el.get_text() if title_el else None
    if site.caption_selector:
        caption_el = soup.select_one(site.caption_selector)
        raw.caption = caption_el.get_text() if caption_el else None

    for item in soup.select(site.label_item_selector):
        marker = item.select_one(site.label_marker_selector)
        if marker is None:
            continue
        label = marker.get_text().replace(':', '').strip()
        value = _label_value(item, marker, site)
        if label and value:
            raw.label_values.append((label, value))

    if site.hydration_selector:
        script = soup.select_one(site.hydration_selector)
        if script is not None:
            raw.hydration_json = script.string or script.get_text() or None

    return raw


# Caption sub-line labels and the slot each one fills
CAPTION_LABELS = {
    'credit': 'credit',
    'photographer': 'credit',
    'photo by': 'credit',
    'where': 'location',
    'location': 'location',
    'when': 'date',
    'date': 'date',
    'featuring': 'subject',
    'subject': 'subject',
}

_CAPTION_SEGMENT_SPLIT = re.compile(r'\s+/\s+|\s+\|\s+|\n')
_CAPTION_LINE = re.compile(
    r'^(' + '|'.join(sorted((re.escape(k) for k in CAPTION_LABELS), key=len, reverse=True)) + r')\s*:\s*(.+)$',
    re.IGNORECASE,
)


def extract_caption_fields(caption: Optional[str]) -> Dict[str, str]:
    """
    Extract labeled sub-lines from a free-text caption.

    Sub-lines are separated by " / ", " | " or newlines; a sub-line counts
    when it starts with a known label (case-insensitive). The first match
    per slot wins.

    Examples:
        "Where: Paris, France / When: 2021-05-01 / Credit: J. Doe"
            -> {'location': 'Paris, France', 'date': '2021-05-01', 'credit': 'J. Doe'}
    """
    fields: Dict[str, str] = {}
    if not caption:
        return fields
    for segment in _CAPTION_SEGMENT_SPLIT.split(caption):
        match = _CAPTION_LINE.match(segment.strip())
        if not match:
            continue
        slot = CAPTION_LABELS[match.group(1).lower()]
        fields.setdefault(slot, match.group(2).strip())
    return fields


def split_location(location: str) -> Tuple[str, Optional[str]]:
    """
    Split a location line on its first comma into (city, country).

    Examples:
        "Paris, France" -> ("Paris", "France")
        "London" -> ("London", None)
    """
    if ',' not in location:
        return location.strip(), None
    city, country = location.split(',', 1)
    return city.strip(), country.strip() or None


def parse_hydration_payload(raw_json: Optional[str], path: Tuple[str, ...]) -> Dict[str, Any]:
    """
    Parse an embedded hydration script and walk to the metadata object.

    Raises:
        ExtractionParseFailure: if the payload is missing, not JSON, or the
            path does not lead to an object
    """
    if not raw_json:
        raise ExtractionParseFailure("No hydration payload on page")
    try:
        node = json.loads(raw_json)
    except (TypeError, ValueError) as e:
        raise ExtractionParseFailure(f"Hydration payload is not valid JSON: {e}") from e
    for key in path:
        if not isinstance(node, dict) or key not in node:
            raise ExtractionParseFailure(f"Hydration payload has no '{'.'.join(path)}'")
        node = node[key]
    if not isinstance(node, dict):
        raise ExtractionParseFailure("Hydration metadata is not an object")
    return node


# ============================================================
# INTERCEPTED PAYLOADS
# ============================================================

PAYLOAD_ID_KEYS = ('imageId', 'image_id', 'id')


def identify_metadata_payload(data: Any) -> Optional[str]:
    """Return the item id a JSON payload describes, if it has a recognizable one."""
    if not isinstance(data, dict):
        return None
    for key in PAYLOAD_ID_KEYS:
        value = data.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None


def lookup_path(data: Dict[str, Any], dotted: str) -> Any:
    """Read 'location.city' style keys from nested dicts."""
    node: Any = data
    for key in dotted.split('.'):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node
