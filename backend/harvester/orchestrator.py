"""
Job orchestration.

ScrapeOrchestrator runs one crawl job end-to-end against one browser tab:
listing navigation, discovery, sequential extraction with randomized pacing,
and job finalization. Job state changes are written to a ProgressChannel and
applied to the job store, in order, by a drain task.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .base import (
    Colors,
    CancelToken,
    ExtractedRecord,
    ItemReference,
    JobStatus,
    LISTING_PROFILE,
    ScrapeCancelledException,
    ScrapeConfig,
)
from .config import GallerySite
from .discovery import LinkDiscoveryEngine
from .extraction import MetadataExtractor
from .utils.sanitizer import Sanitizer

logger = logging.getLogger(__name__)


def utc_now():
    return datetime.now(timezone.utc)


# ============================================================
# PROGRESS CHANNEL
# ============================================================

@dataclass
class JobUpdate:
    """A partial update for one job, applied to the store as-is."""
    job_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


class ProgressChannel:
    """
    Ordered stream of job updates.

    The orchestrator publishes; a single consumer drains. Updates come out in
    exactly the order they were published.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def publish(self, job_id: str, **fields):
        if self.closed:
            raise RuntimeError("Progress channel is closed")
        self._queue.put_nowait(JobUpdate(job_id, fields))

    def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(self._CLOSED)

    async def updates(self):
        """Yield updates until the channel is closed."""
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item

    async def drain(self, apply: Callable[[JobUpdate], None]):
        async for update in self.updates():
            apply(update)


def log_record_extraction(log: logging.Logger, record: ExtractedRecord, sources: Optional[Dict[str, str]] = None):
    """Log which metadata fields were captured for one record, and from where."""
    captured = record.captured_fields()
    missing = record.missing_fields()
    if sources:
        detail = ', '.join(f"{name}<{sources.get(name, '?')}>" for name in captured)
    else:
        detail = ', '.join(captured)
    if captured:
        log.info(f"    {Colors.green('captured')}: {detail}")
    if missing:
        log.info(f"    {Colors.gray('missing')}: {', '.join(missing)}")


# ============================================================
# ORCHESTRATOR
# ============================================================

class ScrapeOrchestrator:
    """
    Runs one crawl job.

    Args:
        store: Job collaborator (get/update)
        session_factory: Zero-arg coroutine function returning a fresh session
        site: Gallery site profile for the job's URL
        cancel_token: Token shared with the session
        delay_range: Inter-item pause bounds in seconds
        ready_timeout: Seconds to wait for the listing readiness selector
        final_settle: Seconds to wait before the final reference sweep
        max_iterations: Discovery iteration ceiling
    """

    NOT_READY_PAUSE = 3.0

    def __init__(
        self,
        store,
        session_factory: Callable[[], Awaitable[Any]],
        site: GallerySite,
        cancel_token: Optional[CancelToken] = None,
        delay_range: Tuple[float, float] = (1.0, 3.0),
        ready_timeout: float = 15.0,
        final_settle: float = 3.0,
        max_iterations: int = 1000,
    ):
        self.store = store
        self.session_factory = session_factory
        self.site = site
        self.cancel_token = cancel_token or CancelToken()
        self.delay_range = delay_range
        self.ready_timeout = ready_timeout
        self.final_settle = final_settle
        self.max_iterations = max_iterations
        self.sanitizer = Sanitizer(site.ui_phrases)

    async def run(self, job_id: str):
        """Run the job to a terminal status. Never raises for job-level failures."""
        job = self.store.get(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found, nothing to run")
            return
        config: ScrapeConfig = job.config
        log = logging.getLogger(f"scraper.{job_id[:8]}")

        channel = ProgressChannel()
        drainer = asyncio.create_task(channel.drain(self._apply_update))
        session = None
        started = utc_now()

        log.info("=" * 60)
        log.info(Colors.bold(f"SCRAPE JOB {job_id}"))
        log.info(f"URL: {config.url}")
        log.info(
            f"Max items: {config.max_items or 'unlimited'}, details: {config.extract_details}, "
            f"auto-scroll: {config.auto_scroll}, scroll delay: {config.scroll_delay_ms}ms"
        )
        log.info("=" * 60)

        try:
            channel.publish(job_id, status=JobStatus.SCRAPING)
            session = await self.session_factory()
            await session.navigate(config.url, LISTING_PROFILE)

            references, thumbnails = await self._discover(job_id, session, config, channel, log)
            records = await self._extract_all(job_id, session, config, references, thumbnails, channel, log)

            channel.publish(
                job_id,
                status=JobStatus.COMPLETED,
                progress=100,
                completed_at=utc_now(),
            )
            elapsed = (utc_now() - started).total_seconds()
            log.info(Colors.green(f"Job complete: {len(records)} records in {elapsed:.1f}s"))

        except ScrapeCancelledException:
            log.warning(Colors.yellow("Job cancelled"))
            channel.publish(job_id, status=JobStatus.ERROR, error="Scrape cancelled", completed_at=utc_now())

        except asyncio.CancelledError:
            # Task cancelled from outside (manager shutdown); the job still gets a terminal status
            log.warning(Colors.yellow("Job task cancelled"))
            channel.publish(job_id, status=JobStatus.ERROR, error="Scrape cancelled", completed_at=utc_now())
            raise

        except Exception as e:
            log.error(Colors.red(f"Job failed: {e}"))
            channel.publish(job_id, status=JobStatus.ERROR, error=str(e) or e.__class__.__name__, completed_at=utc_now())

        finally:
            if session is not None:
                await session.close()
            channel.close()
            await drainer

    # ---------------- phases ----------------

    async def _discover(self, job_id, session, config: ScrapeConfig, channel: ProgressChannel, log):
        """Returns (capped references in discovery order, thumbnails by item id)."""
        if not await session.wait_for_selector(self.site.ready_selector, self.ready_timeout):
            log.info(f"Listing not ready after {self.ready_timeout}s, pausing before discovery")
            await session.sleep(self.NOT_READY_PAUSE)

        engine = LinkDiscoveryEngine(
            session,
            self.site,
            scroll_delay=config.scroll_delay,
            max_items=config.max_items,
            on_progress=lambda found, target: channel.publish(job_id, discovered_items=found),
            max_iterations=self.max_iterations,
            log=log,
        )

        await engine.sweep()
        log.info(f"Initial sweep: {len(engine.accumulator)} references")

        if config.auto_scroll:
            await engine.run()
            await session.sleep(self.final_settle)

        await engine.sweep()
        result = engine.result()

        references = result.references
        if not config.is_unlimited:
            references = references[:config.max_items]

        log.info(
            f"Discovered {len(result.references)} references "
            f"({result.pagination_clicks} pagination clicks), processing {len(references)}"
        )
        return references, result.thumbnails

    async def _extract_all(
        self,
        job_id: str,
        session,
        config: ScrapeConfig,
        references: List[ItemReference],
        thumbnails: Dict[str, str],
        channel: ProgressChannel,
        log,
    ) -> List[ExtractedRecord]:
        extractor = MetadataExtractor(session, self.site, self.sanitizer, log=log)
        total = len(references)
        records: List[ExtractedRecord] = []
        channel.publish(job_id, total_items=total)

        for idx, ref in enumerate(references, 1):
            log.info(f"[{idx}/{total}] {Colors.cyan(ref.item_id)}")
            try:
                record = await extractor.extract(ref, config.extract_details, thumbnails.get(ref.item_id))
                records.append(record)
                log_record_extraction(log, record, extractor.last_sources)
            except ScrapeCancelledException:
                raise
            except Exception as e:
                log.error(Colors.red(f"[{idx}/{total}] Failed to extract {ref.item_id}: {e}"))

            channel.publish(
                job_id,
                progress=int(idx * 100 / total),
                scraped_items=len(records),
                records=[r.to_dict() for r in records],
            )

            if idx < total:
                await self.cancel_token.sleep(random.uniform(*self.delay_range))

        return records

    # ---------------- store ----------------

    STATUS_FIELDS = ('status', 'error', 'completed_at')

    def _apply_update(self, update: JobUpdate):
        try:
            self.store.update(update.job_id, **update.fields)
        except ValueError as e:
            # Illegal transitions are rejected by the store; the job keeps its state
            logger.warning(f"Rejected update for job {update.job_id}: {e}")
        except Exception as e:
            logger.error(f"Failed to store update for job {update.job_id}: {e}")
            status_fields = {k: v for k, v in update.fields.items() if k in self.STATUS_FIELDS}
            if 'status' in status_fields and len(status_fields) < len(update.fields):
                # Retry the status change on its own so the job still leaves its state
                try:
                    self.store.update(update.job_id, **status_fields)
                except Exception as retry_error:
                    logger.error(f"Failed to store status for job {update.job_id}: {retry_error}")
