"""
Per-item metadata extraction.

Four tiers fill one ExtractedRecord, in priority order:
    0. network cache   - JSON intercepted by the session for this item id
    1. label list      - <li><strong>Label:</strong> value</li> on the detail page
    2. caption regex   - labeled sub-lines inside the free-text caption
    3. hydration JSON  - the page's embedded data script

For every field the first tier that supplies a sanitized, non-null value wins;
later tiers only fill what is still empty.
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .base import (
    DETAIL_PROFILE,
    ExtractedRecord,
    ExtractionParseFailure,
    ItemReference,
    RawDetailFields,
    ScrapeCancelledException,
)
from .config import GallerySite
from .utils.extractors import (
    extract_caption_fields,
    extract_detail_fields,
    lookup_path,
    parse_hydration_payload,
    split_location,
)
from .utils.sanitizer import Sanitizer

logger = logging.getLogger(__name__)


# Detail page label (lowercased, colon removed) -> record field
LABEL_SYNONYMS = {
    'photographer': 'credit_name',
    'credit': 'credit_name',
    'image size': 'dimensions',
    'size': 'dimensions',
    'dimensions': 'dimensions',
    'file size': 'file_size',
    'country': 'country',
    'city': 'city',
    'location': 'city',
    'date': 'captured_date',
    'date taken': 'captured_date',
    'event': 'event_title',
    'title': 'event_title',
    'caption': 'event_title',
    'description': 'event_title',
}

# Record field -> keys tried, in order, on an intercepted API payload
NETWORK_ALIASES: Dict[str, Tuple[str, ...]] = {
    'credit_name': ('photographer', 'credit', 'author'),
    'dimensions': ('dimensions', 'size', 'imageSize'),
    'file_size': ('fileSize', 'file_size'),
    'country': ('country', 'location.country'),
    'city': ('city', 'location.city'),
    'captured_date': ('date', 'dateCreated', 'createdAt', 'created_at'),
    'event_title': ('title', 'event', 'description'),
}

# Record field -> keys tried on the hydration metadata object
HYDRATION_ALIASES: Dict[str, Tuple[str, ...]] = {
    'credit_name': ('photographer',),
    'dimensions': ('dimensions',),
    'file_size': ('fileSize',),
    'country': ('country',),
    'city': ('city',),
    'captured_date': ('date',),
    'event_title': ('eventTitle', 'title', 'caption'),
}


class RecordBuilder:
    """Applies the first-non-null-wins rule while tiers offer values."""

    def __init__(self, record: ExtractedRecord, sanitizer: Sanitizer):
        self.record = record
        self.sanitizer = sanitizer
        self.sources: Dict[str, str] = {}     # field -> tier that filled it

    def offer(self, field_name: str, raw: Any, tier: str = '') -> bool:
        """Set field_name from raw if it is still empty and raw survives sanitizing."""
        if getattr(self.record, field_name) is not None:
            return False
        value = self.sanitizer.clean(raw)
        if value is None:
            return False
        setattr(self.record, field_name, value)
        self.sources[field_name] = tier
        return True

    def offer_aliases(self, data: Mapping[str, Any], aliases: Mapping[str, Iterable[str]], tier: str):
        for field_name, keys in aliases.items():
            for key in keys:
                if self.offer(field_name, lookup_path(data, key), tier):
                    break


# ============================================================
# TIERS
# ============================================================

def apply_network_payload(builder: RecordBuilder, payload: Any):
    """Tier 0: intercepted JSON for this item."""
    if isinstance(payload, dict):
        builder.offer_aliases(payload, NETWORK_ALIASES, 'network')


def apply_label_values(builder: RecordBuilder, label_values: Iterable[Tuple[str, str]]):
    """Tier 1: structured label/value list on the detail page."""
    for label, value in label_values:
        field_name = LABEL_SYNONYMS.get(label.strip().lower())
        if field_name:
            builder.offer(field_name, value, 'labels')


def apply_caption(builder: RecordBuilder, caption: Optional[str], title: Optional[str] = None):
    """
    Tier 2: labeled sub-lines in the caption.

    The event title falls back from a featuring/subject line to the page
    title and finally to the whole caption when it is short enough to pass
    the sanitizer.
    """
    fields = extract_caption_fields(caption)

    if 'credit' in fields:
        builder.offer('credit_name', fields['credit'], 'caption')
    if 'location' in fields:
        city, country = split_location(fields['location'])
        builder.offer('city', city, 'caption')
        builder.offer('country', country, 'caption')
    if 'date' in fields:
        builder.offer('captured_date', fields['date'], 'caption')

    for candidate in (fields.get('subject'), title, caption):
        if builder.offer('event_title', candidate, 'caption'):
            break


def apply_hydration(builder: RecordBuilder, raw_json: Optional[str], path: Tuple[str, ...]):
    """Tier 3: embedded hydration script. Parse failures leave fields untouched."""
    if not raw_json:
        return
    try:
        metadata = parse_hydration_payload(raw_json, path)
    except ExtractionParseFailure as e:
        logger.debug(f"Skipping hydration tier: {e}")
        return
    builder.offer_aliases(metadata, HYDRATION_ALIASES, 'hydration')


# ============================================================
# EXTRACTOR
# ============================================================

class MetadataExtractor:
    """
    Builds one normalized record per item reference.

    Reads intercepted payloads from the session's own metadata cache, so
    nothing captured for one job can show up in another job's records.
    """

    def __init__(
        self,
        session,
        site: GallerySite,
        sanitizer: Optional[Sanitizer] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.site = site
        self.sanitizer = sanitizer or Sanitizer(site.ui_phrases)
        self.log = log or logger
        self.last_sources: Dict[str, str] = {}

    async def extract(
        self,
        ref: ItemReference,
        detail_extraction_enabled: bool = True,
        thumbnail_hint: Optional[str] = None,
    ) -> ExtractedRecord:
        """
        Run all tiers for one item.

        Never raises on navigation or parse trouble; a detail page that cannot
        be loaded yields whatever the network cache supplied (possibly only
        id and url). Cancellation does propagate.
        """
        record = ExtractedRecord.for_reference(ref, thumbnail_hint)
        builder = RecordBuilder(record, self.sanitizer)

        raw = None
        if detail_extraction_enabled:
            raw = await self._load_detail(ref)

        # Read after the detail visit so responses it triggered are included
        payload = self.session.metadata_cache.get(ref.item_id)
        if payload is not None:
            apply_network_payload(builder, payload)

        if raw is not None:
            apply_label_values(builder, raw.label_values)
            apply_caption(builder, raw.caption, raw.title)
            apply_hydration(builder, raw.hydration_json, self.site.hydration_path)

        self.last_sources = dict(builder.sources)
        return record

    async def _load_detail(self, ref: ItemReference) -> Optional[RawDetailFields]:
        try:
            await self.session.navigate(ref.canonical_url, DETAIL_PROFILE)
            if not await self.session.wait_for_selector(self.site.label_wait_selector):
                self.log.debug(f"No label markers rendered for {ref.item_id}, continuing")
            html = await self.session.content()
        except ScrapeCancelledException:
            raise
        except Exception as e:
            self.log.warning(f"Detail page unavailable for {ref.item_id}: {e}")
            return None
        return extract_detail_fields(html, self.site)
