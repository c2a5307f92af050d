"""
Job export renderers: JSON envelope and flat CSV.
"""

import csv
import io
import json
from typing import Any, Dict, List, Optional

from api.jobs import CrawlJob


class ExportError(ValueError):
    """The job has nothing to export."""


# (CSV header, record key) in fixed column order
CSV_COLUMNS = [
    ('Image ID', 'item_id'),
    ('Photographer', 'credit_name'),
    ('Size', 'dimensions'),
    ('File Size', 'file_size'),
    ('City', 'city'),
    ('Country', 'country'),
    ('Date', 'captured_date'),
    ('Event', 'event_title'),
    ('URL', 'url'),
    ('Copy Link', 'copy_link'),
    ('Thumbnail URL', 'thumbnail_url'),
]

# Record key -> exported JSON key
JSON_KEYS = {
    'item_id': 'imageId',
    'namespace_hash': 'hash',
    'url': 'url',
    'copy_link': 'copyLink',
    'credit_name': 'photographer',
    'dimensions': 'imageSize',
    'file_size': 'fileSize',
    'country': 'country',
    'city': 'city',
    'captured_date': 'date',
    'event_title': 'eventTitle',
    'thumbnail_url': 'thumbnailUrl',
}


def _require_records(job: CrawlJob) -> List[Dict[str, Any]]:
    if not job.records:
        raise ExportError("No images to export")
    return job.records


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def render_json(job: CrawlJob) -> str:
    records = _require_records(job)
    envelope = {
        'jobId': job.id,
        'url': job.url,
        'totalImages': len(records),
        'scrapedAt': _iso(job.started_at),
        'completedAt': _iso(job.completed_at),
        'images': [
            {exported: record.get(key) for key, exported in JSON_KEYS.items()}
            for record in records
        ],
    }
    return json.dumps(envelope, indent=2)


def render_csv(job: CrawlJob) -> str:
    records = _require_records(job)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([header for header, _ in CSV_COLUMNS])
    for record in records:
        writer.writerow([record.get(key) or '' for _, key in CSV_COLUMNS])
    return buffer.getvalue()


EXPORT_FORMATS = {
    'json': (render_json, 'application/json'),
    'csv': (render_csv, 'text/csv'),
}
