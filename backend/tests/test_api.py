"""
Tests for API endpoints.
"""

import pytest
from fastapi import status

from harvester.base import JobStatus

URL = "https://smartframe.com/search?searchQuery=test"


class TestRootEndpoint:
    """Test the root endpoint."""

    def test_root_returns_json(self, client):
        """Test that root endpoint returns expected JSON."""
        response = client.get("/")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["message"] == "Gallery Harvester API"
        assert "version" in data


class TestStartScrape:
    """Test job creation."""

    def test_start_creates_job(self, client, fake_manager):
        response = client.post("/api/scrape/start", json={"url": URL, "maxItems": 5})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "started"
        assert fake_manager.started == [data["job_id"]]

    def test_missing_url(self, client):
        response = client.post("/api/scrape/start", json={"maxItems": 5})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "URL is required"

    def test_invalid_options(self, client):
        response = client.post("/api/scrape/start", json={"url": URL, "scrollDelay": 100})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_unsupported_host(self, client, fake_manager):
        response = client.post("/api/scrape/start", json={"url": "https://example.com/gallery"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert fake_manager.started == []

    def test_rate_limit(self, client, fake_manager):
        for _ in range(3):
            assert client.post("/api/scrape/start", json={"url": URL}).status_code == 200

        response = client.post("/api/scrape/start", json={"url": URL})

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.json()["detail"]["retry_after"] > 0
        assert len(fake_manager.started) == 3

    def test_rate_limit_checked_before_validation(self, client):
        for _ in range(3):
            client.post("/api/scrape/start", json={"url": "bad"})

        response = client.post("/api/scrape/start", json={"url": "bad"})
        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS


class TestJobEndpoints:
    """Test reading jobs."""

    def test_get_job(self, client, completed_job):
        response = client.get(f"/api/scrape/job/{completed_job.id}")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["id"] == completed_job.id
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert len(data["records"]) == 2
        assert data["config"]["max_items"] == 2

    def test_get_unknown_job(self, client):
        response = client.get("/api/scrape/job/nope")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_list_jobs(self, client, completed_job):
        client.post("/api/scrape/start", json={"url": URL})
        response = client.get("/api/scrape/jobs")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert len(data) == 2
        assert data[1]["id"] == completed_job.id


class TestCancelEndpoint:
    """Test job cancellation."""

    def test_cancel_running_job(self, client, fake_manager):
        job_id = client.post("/api/scrape/start", json={"url": URL}).json()["job_id"]
        response = client.post(f"/api/scrape/job/{job_id}/cancel")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "cancelling"
        assert fake_manager.cancelled == [job_id]

    def test_cancel_orphaned_pending_job(self, client, job_store, sample_config):
        job = job_store.create(sample_config.url, sample_config)
        response = client.post(f"/api/scrape/job/{job.id}/cancel")

        assert response.status_code == status.HTTP_200_OK
        final = job_store.get(job.id)
        assert final.status == JobStatus.ERROR
        assert final.error == "Scrape cancelled"

    def test_cancel_finished_job(self, client, completed_job):
        response = client.post(f"/api/scrape/job/{completed_job.id}/cancel")
        assert response.status_code == status.HTTP_409_CONFLICT

    def test_cancel_unknown_job(self, client):
        response = client.post("/api/scrape/job/nope/cancel")
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestExportEndpoint:
    """Test export downloads."""

    def test_json_download(self, client, completed_job):
        response = client.get(f"/api/export/{completed_job.id}?format=json")

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("application/json")
        assert "attachment" in response.headers["content-disposition"]
        assert response.json()["totalImages"] == 2

    def test_csv_download(self, client, completed_job):
        response = client.get(f"/api/export/{completed_job.id}?format=csv")

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[0].startswith("Image ID,Photographer,Size")

    def test_default_format_is_json(self, client, completed_job):
        response = client.get(f"/api/export/{completed_job.id}")
        assert response.json()["jobId"] == completed_job.id

    def test_unknown_format(self, client, completed_job):
        response = client.get(f"/api/export/{completed_job.id}?format=xml")
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_job_without_records(self, client, job_store, sample_config):
        job = job_store.create(sample_config.url, sample_config)
        response = client.get(f"/api/export/{job.id}")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "No images to export"

    def test_unknown_job(self, client):
        response = client.get("/api/export/nope")
        assert response.status_code == status.HTTP_404_NOT_FOUND
