"""
Scrape Manager

Owns the shared browser and every running crawl job. Each job runs as its
own asyncio task with its own tab and cancel token.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from .base import CancelToken, InvalidConfiguration, ScrapeConfig
from .config import get_site_for_url
from .crawlers.stealth import StealthBrowser
from .orchestrator import ScrapeOrchestrator

logger = logging.getLogger(__name__)


class ScrapeManager:
    """
    Starts, tracks and cancels crawl jobs.

    Jobs may run concurrently; they share one Chromium process but each
    gets an isolated browser context.
    """

    def __init__(
        self,
        store,
        browser: Optional[StealthBrowser] = None,
        delay_range: Tuple[float, float] = (1.0, 3.0),
        ready_timeout: float = 15.0,
        final_settle: float = 3.0,
        max_iterations: int = 1000,
    ):
        self.store = store
        self.browser = browser or StealthBrowser()
        self.delay_range = delay_range
        self.ready_timeout = ready_timeout
        self.final_settle = final_settle
        self.max_iterations = max_iterations
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancelToken] = {}

    def start(self, config: ScrapeConfig):
        """
        Create a job and schedule it on the running event loop.

        Returns:
            The newly created CrawlJob (status pending)

        Raises:
            InvalidConfiguration: if no site profile serves config.url
        """
        site = get_site_for_url(config.url)
        if site is None:
            raise InvalidConfiguration(f"No gallery profile serves {config.url}")

        job = self.store.create(config.url, config)
        token = CancelToken()

        async def open_session():
            return await self.browser.open_session(site, token)

        orchestrator = ScrapeOrchestrator(
            self.store,
            open_session,
            site,
            cancel_token=token,
            delay_range=self.delay_range,
            ready_timeout=self.ready_timeout,
            final_settle=self.final_settle,
            max_iterations=self.max_iterations,
        )
        self._tokens[job.id] = token
        self._tasks[job.id] = asyncio.create_task(self._launch(job.id, orchestrator))
        logger.info(f"Scheduled job {job.id} for {config.url} ({site.name})")
        return job

    async def _launch(self, job_id: str, orchestrator: ScrapeOrchestrator):
        try:
            await orchestrator.run(job_id)
        except Exception as e:
            logger.error(f"Job {job_id} crashed outside the orchestrator: {e}")
        finally:
            self._tasks.pop(job_id, None)
            self._tokens.pop(job_id, None)

    def cancel(self, job_id: str) -> bool:
        """Signal a running job to stop. False if this manager is not running it."""
        token = self._tokens.get(job_id)
        if token is None:
            return False
        logger.info(f"Cancelling job {job_id}")
        token.cancel()
        return True

    def list_running(self) -> List[str]:
        return list(self._tasks.keys())

    async def shutdown(self, timeout: float = 10.0):
        """Cancel every running job, wait for them to close their tabs, close the browser."""
        for token in self._tokens.values():
            token.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"Waiting for {len(tasks)} job(s) to stop")
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                # Let cancelled jobs record their status and close their tabs
                await asyncio.wait(pending, timeout=timeout)
        await self.browser.close()
