"""Shared utilities for the harvester."""

from .sanitizer import Sanitizer, clean_text
from .extractors import (
    extract_item_references,
    extract_thumbnails,
    extract_detail_fields,
    extract_caption_fields,
    split_location,
    parse_hydration_payload,
    identify_metadata_payload,
)

__all__ = [
    'Sanitizer',
    'clean_text',
    'extract_item_references',
    'extract_thumbnails',
    'extract_detail_fields',
    'extract_caption_fields',
    'split_location',
    'parse_hydration_payload',
    'identify_metadata_payload',
]
