from contextlib import asynccontextmanager
from fastapi import FastAPI, Body, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from typing import Any, Dict, List, Optional
import asyncio
import logging
import re

from api.config import settings
from api.database import SessionLocal, engine, init_db
from api.export import EXPORT_FORMATS, ExportError
from api.jobs import JobStore, InvalidJobTransition
from api.rate_limiter import RateLimiter, RateLimited
from harvester import ScrapeManager, JobStatus, InvalidConfiguration, build_scrape_config
from harvester.crawlers import StealthBrowser
from harvester.orchestrator import utc_now

# Setup logging directory
settings.log_dir.mkdir(exist_ok=True)


# Custom formatter to strip ANSI color codes from file logs
class ColorStripFormatter(logging.Formatter):
    """Formatter that strips ANSI color codes from log messages."""
    ansi_escape = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')

    def format(self, record):
        message = super().format(record)
        return self.ansi_escape.sub('', message)

# Color support for console, stripped for file
file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
file_handler.setFormatter(ColorStripFormatter(settings.log_format))

console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter(settings.log_format))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[file_handler, console_handler],
    force=True  # Override any existing configuration
)

# Per-job loggers live under 'scraper'; give them their own handlers so
# messages appear once
scraper_logger = logging.getLogger('scraper')
scraper_logger.propagate = False
# Only add handlers if not already present (prevents duplicates on module reload)
if not scraper_logger.handlers:
    scraper_file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
    scraper_file_handler.setFormatter(ColorStripFormatter(settings.log_format))
    scraper_logger.addHandler(scraper_file_handler)

    scraper_console_handler = logging.StreamHandler()
    scraper_console_handler.setFormatter(logging.Formatter(settings.log_format))
    scraper_logger.addHandler(scraper_console_handler)
scraper_logger.setLevel(getattr(logging, settings.log_level.upper()))

logger = logging.getLogger(__name__)


# Filter to suppress noisy polling endpoint access logs
class PollingEndpointFilter(logging.Filter):
    # The frontend polls job status every second while a crawl runs
    SUPPRESSED_ENDPOINTS = ['/api/scrape/job/']

    def filter(self, record):
        msg = record.getMessage()
        for endpoint in self.SUPPRESSED_ENDPOINTS:
            if endpoint in msg and 'GET' in msg:
                return False
        return True

# Apply filter to uvicorn access logger at module load time
uvicorn_access_logger = logging.getLogger("uvicorn.access")
uvicorn_access_logger.addFilter(PollingEndpointFilter())


# Shared service objects
job_store = JobStore(SessionLocal)
manager = ScrapeManager(
    job_store,
    StealthBrowser(
        headless=settings.browser_headless,
        max_attempts=settings.navigation_attempts,
        backoff_seconds=settings.navigation_backoff,
        listing_timeout=settings.listing_timeout,
        detail_timeout=settings.detail_timeout,
        selector_timeout=settings.selector_timeout,
    ),
    delay_range=settings.item_delay_range,
    ready_timeout=settings.selector_timeout,
    final_settle=settings.final_settle,
    max_iterations=settings.discovery_max_iterations,
)
rate_limiter = RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window)


def get_job_store() -> JobStore:
    return job_store


def get_manager() -> ScrapeManager:
    return manager


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


async def cleanup_resources():
    """Stop running jobs, close the browser and the database pool."""
    logger.info("Cleaning up resources...")

    try:
        await manager.shutdown()
    except Exception as e:
        logger.warning(f"Error stopping scrape manager: {e}")

    try:
        logger.info("Closing database connections...")
        engine.dispose(close=True)
        logger.info("Database connections closed")
    except Exception as e:
        logger.warning(f"Error closing database connections: {e}")

    logger.info("Resource cleanup complete")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info("Gallery Harvester Starting Up")
    logger.info("=" * 60)
    logger.info(f"Log file: {settings.log_file}")
    logger.info(f"Database: {settings.database_url}")
    logger.info(f"CORS origins: {settings.cors_origins}")
    init_db()
    logger.info("Database initialized successfully")
    logger.info("Backend ready to accept requests")

    yield  # Application runs here

    # Shutdown
    logger.info("=" * 60)
    logger.info("Gallery Harvester Shutting Down")
    logger.info("=" * 60)

    try:
        await asyncio.wait_for(cleanup_resources(), timeout=15.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown cleanup timed out, forcing exit")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Gallery Harvester API",
    version="1.0.0",
    lifespan=lifespan
)

# Note: allow_credentials must be False when allow_origins is ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    """Return empty response for favicon requests"""
    return Response(status_code=204)


@app.get("/")
async def root():
    return {"message": "Gallery Harvester API", "version": app.version}


@app.post("/api/scrape/start")
async def start_scrape(
    request: Request,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    scrape_manager: ScrapeManager = Depends(get_manager),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Validate a scrape configuration and start a crawl job in the background.

    Rate limiting is checked before the body is validated, so rejected
    clients never cause any work.
    """
    client_key = request.client.host if request.client else "unknown"
    try:
        limiter.check(client_key)
    except RateLimited as e:
        logger.warning(f"Rate limited scrape request from {client_key}")
        raise HTTPException(status_code=429, detail={"error": str(e), "retry_after": e.retry_after})

    try:
        config = build_scrape_config(payload or {})
        job = scrape_manager.start(config)
    except InvalidConfiguration as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Started scrape job {job.id} for {config.url}")
    return {"job_id": job.id, "status": "started"}


@app.get("/api/scrape/job/{job_id}")
async def get_job(job_id: str, store: JobStore = Depends(get_job_store)):
    job = store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.model_dump(mode="json")


@app.get("/api/scrape/jobs")
async def list_jobs(store: JobStore = Depends(get_job_store)) -> List[Dict[str, Any]]:
    return [job.model_dump(mode="json") for job in store.list()]


@app.post("/api/scrape/job/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    scrape_manager: ScrapeManager = Depends(get_manager),
):
    job = store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status.is_terminal:
        raise HTTPException(status_code=409, detail=f"Job is already {job.status.value}")

    if not scrape_manager.cancel(job_id):
        # Not running here (e.g. scheduled before a restart): finish it directly
        try:
            store.update(job_id, status=JobStatus.ERROR, error="Scrape cancelled", completed_at=utc_now())
        except InvalidJobTransition as e:
            raise HTTPException(status_code=409, detail=str(e))

    return {"job_id": job_id, "status": "cancelling"}


@app.get("/api/export/{job_id}")
async def export_job(
    job_id: str,
    format: str = Query("json"),
    store: JobStore = Depends(get_job_store),
):
    if format not in EXPORT_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported format: {format}. Use json or csv")

    job = store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    render, media_type = EXPORT_FORMATS[format]
    try:
        body = render(job)
    except ExportError as e:
        raise HTTPException(status_code=400, detail=str(e))

    filename = f"smartframe-{job_id[:8]}.{format}"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        access_log=True,
        log_config=None,  # Use default but our filter will handle it
        timeout_keep_alive=5,  # Reduce keep-alive timeout
        timeout_graceful_shutdown=5.0,  # Graceful shutdown timeout (5 seconds)
    )
