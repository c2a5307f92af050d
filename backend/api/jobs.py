"""
Crawl job registry.

JobStore persists CrawlJob state in the scrape_jobs table and enforces the
job lifecycle: pending -> scraping -> completed | error. Terminal jobs are
immutable and progress never moves backwards.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.database import ScrapeJob, utc_now
from harvester.base import JobStatus, ScrapeConfig

logger = logging.getLogger(__name__)


class InvalidJobTransition(ValueError):
    """A status change outside the job lifecycle, or an update to a finished job."""


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.SCRAPING, JobStatus.ERROR},
    JobStatus.SCRAPING: {JobStatus.COMPLETED, JobStatus.ERROR},
    JobStatus.COMPLETED: set(),
    JobStatus.ERROR: set(),
}

UPDATABLE_FIELDS = {
    'status',
    'progress',
    'discovered_items',
    'total_items',
    'scraped_items',
    'records',
    'error',
    'completed_at',
}


class CrawlJob(BaseModel):
    """Snapshot of one job as stored."""
    id: str
    url: str
    config: ScrapeConfig
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    discovered_items: int = 0
    total_items: int = 0
    scraped_items: int = 0
    records: List[Dict[str, Any]] = []
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def _to_model(row: ScrapeJob) -> CrawlJob:
    return CrawlJob(
        id=row.id,
        url=row.url,
        config=ScrapeConfig.model_validate_json(row.config_json),
        status=JobStatus(row.status),
        progress=row.progress or 0.0,
        discovered_items=row.discovered_items or 0,
        total_items=row.total_items or 0,
        scraped_items=row.scraped_items or 0,
        records=json.loads(row.records_json or '[]'),
        error=row.error,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class JobStore:
    """
    Job collaborator backed by SQLAlchemy.

    Opens a short-lived session per call, so it can be shared between
    request handlers and background crawl tasks.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def create(self, url: str, config: ScrapeConfig) -> CrawlJob:
        db = self.session_factory()
        try:
            row = ScrapeJob(
                id=str(uuid.uuid4()),
                url=url,
                config_json=config.model_dump_json(),
                status=JobStatus.PENDING.value,
                progress=0.0,
                discovered_items=0,
                total_items=0,
                scraped_items=0,
                records_json='[]',
                started_at=utc_now(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.debug(f"Created job {row.id} for {url}")
            return _to_model(row)
        finally:
            db.close()

    def get(self, job_id: str) -> Optional[CrawlJob]:
        db = self.session_factory()
        try:
            row = db.get(ScrapeJob, job_id)
            return _to_model(row) if row else None
        finally:
            db.close()

    def list(self) -> List[CrawlJob]:
        """All jobs, newest first."""
        db = self.session_factory()
        try:
            rows = db.query(ScrapeJob).order_by(ScrapeJob.started_at.desc()).all()
            return [_to_model(row) for row in rows]
        finally:
            db.close()

    def update(self, job_id: str, **fields) -> Optional[CrawlJob]:
        """
        Apply a partial update.

        Returns:
            The updated job, or None if no job has this id

        Raises:
            ValueError: for fields outside UPDATABLE_FIELDS
            InvalidJobTransition: for an illegal status change or any
                update to a job that already finished
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        db = self.session_factory()
        try:
            row = db.get(ScrapeJob, job_id)
            if row is None:
                return None

            current = JobStatus(row.status)
            if current.is_terminal:
                raise InvalidJobTransition(f"Job {job_id} is already {current.value}")

            if 'status' in fields:
                new_status = JobStatus(fields['status'])
                if new_status != current and new_status not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidJobTransition(
                        f"Job {job_id} cannot go from {current.value} to {new_status.value}"
                    )
                row.status = new_status.value

            if 'progress' in fields and fields['progress'] is not None:
                progress = min(100.0, max(0.0, float(fields['progress'])))
                if progress >= (row.progress or 0.0):
                    row.progress = progress

            for name in ('discovered_items', 'total_items', 'scraped_items'):
                if name in fields:
                    setattr(row, name, int(fields[name]))

            if 'records' in fields:
                row.records_json = json.dumps(fields['records'] or [])
            if 'error' in fields:
                row.error = fields['error']
            if 'completed_at' in fields:
                row.completed_at = fields['completed_at']

            db.commit()
            db.refresh(row)
            return _to_model(row)
        finally:
            db.close()
