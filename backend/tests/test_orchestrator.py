"""
Tests for job orchestration, the progress channel and the scrape manager.
"""

import asyncio

import pytest

from harvester.base import CancelToken, JobStatus, METADATA_FIELDS, NavigationError, ScrapeConfig
from harvester.manager import ScrapeManager
from harvester.orchestrator import JobUpdate, ProgressChannel, ScrapeOrchestrator

from fakes import FakeSession, FakeSessionFactory, LISTING_URL, SITE, detail_page, detail_url, item_id


def make_job(store, **config):
    config.setdefault('url', LISTING_URL)
    return store.create(LISTING_URL, ScrapeConfig(**config))


def run_job(store, job, session=None, factory=None, token=None):
    orchestrator = ScrapeOrchestrator(
        store,
        factory or FakeSessionFactory(session),
        SITE,
        cancel_token=token or (session.cancel_token if session else None),
        delay_range=(0, 0),
        final_settle=0,
    )
    asyncio.run(orchestrator.run(job.id))
    return store.get(job.id)


class FailingOnceStore:
    """Job store whose first update carrying `failing_field` raises."""

    def __init__(self, store, failing_field, with_extra_fields=False):
        self.store = store
        self.failing_field = failing_field
        self.with_extra_fields = with_extra_fields
        self.failures = 0

    def get(self, job_id):
        return self.store.get(job_id)

    def update(self, job_id, **fields):
        # with_extra_fields: only fail updates that carry more than the status change
        should_fail = self.failing_field in fields and not self.failures
        if self.with_extra_fields and set(fields) <= set(ScrapeOrchestrator.STATUS_FIELDS):
            should_fail = False
        if should_fail:
            self.failures += 1
            raise RuntimeError("database is locked")
        return self.store.update(job_id, **fields)


class TestProgressChannel:
    """Test ordered delivery of job updates."""

    def test_drains_in_publish_order(self):
        async def go():
            channel = ProgressChannel()
            seen = []
            drainer = asyncio.create_task(channel.drain(seen.append))
            for i in range(5):
                channel.publish("job", progress=i * 10)
            channel.close()
            await drainer
            return seen

        seen = asyncio.run(go())
        assert [u.fields["progress"] for u in seen] == [0, 10, 20, 30, 40]
        assert all(isinstance(u, JobUpdate) and u.job_id == "job" for u in seen)

    def test_publish_after_close_raises(self):
        async def go():
            channel = ProgressChannel()
            channel.close()
            channel.publish("job", progress=1)

        with pytest.raises(RuntimeError):
            asyncio.run(go())


class TestOrchestratorHappyPath:
    """Jobs that run to completion."""

    def test_cap_with_failing_detail_pages(self, job_store):
        """Five items, cap of two, every detail page 404s: two id/url-only records."""
        job = make_job(job_store, maxItems=2, extractDetails=True)
        session = FakeSession(items=5, mode='static', markup='link', detail_status=404)

        final = run_job(job_store, job, session)

        assert final.status == JobStatus.COMPLETED
        assert final.progress == 100
        assert final.completed_at is not None
        assert len(final.records) == 2
        for i, record in enumerate(final.records):
            assert record["item_id"] == item_id(i)
            assert record["url"] == detail_url(i)
            assert all(record[name] is None for name in METADATA_FIELDS)
            assert record["thumbnail_url"] is None

    def test_records_and_counters(self, job_store):
        job = make_job(job_store, extractDetails=True)
        pages = {
            detail_url(0): detail_page(labels={"Photographer": "Jane Doe"}),
            detail_url(1): detail_page(caption="Where: Paris, France"),
        }
        session = FakeSession(items=3, mode='infinite', batch=2, detail_pages=pages)

        final = run_job(job_store, job, session)

        assert final.status == JobStatus.COMPLETED
        assert final.discovered_items == 3
        assert final.total_items == 3
        assert final.scraped_items == 3
        assert [r["item_id"] for r in final.records] == [item_id(i) for i in range(3)]
        assert final.records[0]["credit_name"] == "Jane Doe"
        assert final.records[1]["city"] == "Paris"
        assert final.records[0]["thumbnail_url"].endswith(f"{item_id(0)}.jpg")
        assert session.closed is True

    def test_no_auto_scroll_only_sweeps(self, job_store):
        job = make_job(job_store, autoScroll=False, extractDetails=False)
        session = FakeSession(items=6, mode='infinite', batch=2)

        final = run_job(job_store, job, session)

        assert final.status == JobStatus.COMPLETED
        assert len(final.records) == 2
        assert session.scrolls == 0
        assert session.navigations == [(LISTING_URL, "listing")]

    def test_listing_not_ready_pauses(self, job_store):
        job = make_job(job_store, autoScroll=False, extractDetails=False)
        session = FakeSession(items=1, ready=False)

        run_job(job_store, job, session)

        assert ScrapeOrchestrator.NOT_READY_PAUSE in session.sleeps

    def test_empty_listing_completes(self, job_store):
        job = make_job(job_store)
        session = FakeSession(items=0)

        final = run_job(job_store, job, session)

        assert final.status == JobStatus.COMPLETED
        assert final.records == []
        assert final.progress == 100


class TestOrchestratorFailures:
    """Failures that end a job, and failures that must not."""

    def test_listing_navigation_failure_is_job_fatal(self, job_store):
        job = make_job(job_store)
        session = FakeSession(listing_error=True)

        final = run_job(job_store, job, session)

        assert final.status == JobStatus.ERROR
        assert "Failed to navigate" in final.error
        assert final.records == []
        assert session.closed is True

    def test_session_open_failure(self, job_store):
        job = make_job(job_store)
        factory = FakeSessionFactory(error=RuntimeError("Chromium browser not found"))

        final = run_job(job_store, job, factory=factory)

        assert final.status == JobStatus.ERROR
        assert final.error == "Chromium browser not found"

    def test_single_item_failure_does_not_abort(self, job_store, monkeypatch):
        job = make_job(job_store, extractDetails=False)
        session = FakeSession(items=3)

        from harvester import extraction
        original = extraction.MetadataExtractor.extract

        async def flaky(self, ref, *args, **kwargs):
            if ref.item_id == item_id(1):
                raise RuntimeError("boom")
            return await original(self, ref, *args, **kwargs)

        monkeypatch.setattr(extraction.MetadataExtractor, "extract", flaky)
        final = run_job(job_store, job, session)

        assert final.status == JobStatus.COMPLETED
        assert [r["item_id"] for r in final.records] == [item_id(0), item_id(2)]
        assert final.progress == 100

    def test_cancellation_marks_job_and_closes_tab(self, job_store):
        job = make_job(job_store, extractDetails=True)
        token = CancelToken()
        session = FakeSession(items=4, cancel_token=token, on_detail=lambda url: token.cancel())

        final = run_job(job_store, job, session, token=token)

        assert final.status == JobStatus.ERROR
        assert final.error == "Scrape cancelled"
        assert session.closed is True
        assert len(session.navigations) == 2   # listing + the first detail page

    def test_store_failure_does_not_strand_job(self, job_store):
        """A store error on one update is logged; later updates and the final status still land."""
        job = make_job(job_store, autoScroll=False, extractDetails=False)
        session = FakeSession(items=2)
        store = FailingOnceStore(job_store, failing_field="records")

        final = run_job(store, job, session)

        assert store.failures == 1
        assert final.status == JobStatus.COMPLETED
        assert [r["item_id"] for r in final.records] == [item_id(0), item_id(1)]
        assert session.closed is True

    def test_final_status_written_when_full_update_fails(self, job_store):
        job = make_job(job_store, autoScroll=False, extractDetails=False)
        session = FakeSession(items=1)
        store = FailingOnceStore(job_store, failing_field="completed_at", with_extra_fields=True)

        final = run_job(store, job, session)

        assert store.failures == 1
        assert final.status == JobStatus.COMPLETED

    def test_task_cancellation_marks_job(self, job_store):
        """Cancelling the task itself, as manager shutdown does, still finalizes the job."""
        job = make_job(job_store, autoScroll=False, extractDetails=False)
        session = FakeSession(items=3)
        orchestrator = ScrapeOrchestrator(
            job_store, FakeSessionFactory(session), SITE,
            cancel_token=session.cancel_token, delay_range=(0.5, 0.5), final_settle=0,
        )

        async def go():
            task = asyncio.create_task(orchestrator.run(job.id))
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(go())
        final = job_store.get(job.id)

        assert final.status == JobStatus.ERROR
        assert final.error == "Scrape cancelled"
        assert final.completed_at is not None
        assert session.closed is True

    def test_missing_job_is_a_no_op(self, job_store):
        factory = FakeSessionFactory(FakeSession())
        orchestrator = ScrapeOrchestrator(job_store, factory, SITE)
        asyncio.run(orchestrator.run("does-not-exist"))

        assert factory.calls == 0


class FakeBrowser:
    """Hands out FakeSessions the way StealthBrowser hands out real tabs."""

    def __init__(self, **session_kwargs):
        self.session_kwargs = session_kwargs
        self.sessions = []
        self.closed = False

    async def open_session(self, site, cancel_token=None):
        session = FakeSession(cancel_token=cancel_token, **self.session_kwargs)
        self.sessions.append(session)
        return session

    async def close(self):
        self.closed = True


class TestScrapeManager:
    """Test job scheduling, isolation and cancellation."""

    def test_concurrent_jobs_get_separate_sessions(self, job_store):
        browser = FakeBrowser(items=2)
        manager = ScrapeManager(job_store, browser, delay_range=(0, 0), final_settle=0)

        async def go():
            first = manager.start(ScrapeConfig(url=LISTING_URL, extractDetails=False))
            second = manager.start(ScrapeConfig(url=LISTING_URL, extractDetails=False))
            while manager.list_running():
                await asyncio.sleep(0.01)
            await manager.shutdown()
            return first, second

        first, second = asyncio.run(go())

        assert len(browser.sessions) == 2
        assert browser.sessions[0] is not browser.sessions[1]
        assert all(s.closed for s in browser.sessions)
        assert browser.closed is True
        assert job_store.get(first.id).status == JobStatus.COMPLETED
        assert job_store.get(second.id).status == JobStatus.COMPLETED

    def test_cancel_running_job(self, job_store):
        browser = FakeBrowser(items=3)
        manager = ScrapeManager(job_store, browser, delay_range=(0.5, 0.5), final_settle=0)

        async def go():
            job = manager.start(ScrapeConfig(url=LISTING_URL, extractDetails=False))
            await asyncio.sleep(0.1)
            assert manager.cancel(job.id) is True
            while manager.list_running():
                await asyncio.sleep(0.01)
            return job

        job = asyncio.run(go())
        final = job_store.get(job.id)

        assert final.status == JobStatus.ERROR
        assert final.error == "Scrape cancelled"
        assert manager.cancel(job.id) is False

    def test_rejects_unsupported_host(self, job_store):
        from harvester.base import InvalidConfiguration

        manager = ScrapeManager(job_store, FakeBrowser())
        with pytest.raises(InvalidConfiguration):
            manager.start(ScrapeConfig(url="https://example.com/gallery"))
        assert job_store.list() == []
