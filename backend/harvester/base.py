"""
Core data structures for the gallery harvester.

Defines the item reference and record types shared by discovery, extraction
and orchestration, the scrape configuration model, the exception hierarchy
and the cancellation token honoured at every suspension point.
"""

import asyncio
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for colorized logging."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @staticmethod
    def green(text):
        return f"{Colors.GREEN}{text}{Colors.RESET}"

    @staticmethod
    def yellow(text):
        return f"{Colors.YELLOW}{text}{Colors.RESET}"

    @staticmethod
    def red(text):
        return f"{Colors.RED}{text}{Colors.RESET}"

    @staticmethod
    def blue(text):
        return f"{Colors.BLUE}{text}{Colors.RESET}"

    @staticmethod
    def cyan(text):
        return f"{Colors.CYAN}{text}{Colors.RESET}"

    @staticmethod
    def gray(text):
        return f"{Colors.GRAY}{text}{Colors.RESET}"

    @staticmethod
    def bold(text):
        return f"{Colors.BOLD}{text}{Colors.RESET}"


# ============================================================
# EXCEPTIONS
# ============================================================

class HarvesterError(Exception):
    """Base class for harvester failures."""


class NavigationError(HarvesterError):
    """Navigation did not succeed within the allowed attempts."""

    def __init__(self, message: str, url: str = '', attempts: int = 0, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.attempts = attempts
        self.status = status


class InvalidConfiguration(HarvesterError, ValueError):
    """Scrape configuration rejected before any browser resource is allocated."""


class ExtractionParseFailure(HarvesterError):
    """A tier could not parse its input. Always contained at the tier level."""


class ScrapeCancelledException(HarvesterError):
    """The job's cancel token was triggered."""


# ============================================================
# CANCELLATION
# ============================================================

class CancelToken:
    """
    Cooperative cancellation signal for one job.

    Every suspension point (navigation, selector wait, timed delay, click)
    goes through `sleep()` or `guard()` so a cancelled job stops at the next
    await instead of running to completion.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ScrapeCancelledException("Scrape cancelled")

    async def sleep(self, seconds: float):
        """Sleep for `seconds`, waking early (and raising) on cancellation."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise ScrapeCancelledException("Scrape cancelled")

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable`, abandoning it if the token is cancelled first."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ScrapeCancelledException("Scrape cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        raise ScrapeCancelledException("Scrape cancelled")


# ============================================================
# DATA MODEL
# ============================================================

class JobStatus(str, Enum):
    """Lifecycle of a crawl job: pending -> scraping -> completed | error."""
    PENDING = "pending"
    SCRAPING = "scraping"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


@dataclass(frozen=True)
class ItemReference:
    """Identity of one gallery item as discovered on the listing page."""
    item_id: str
    namespace_hash: str
    canonical_url: str


# Metadata fields filled by the extraction tiers, in export order
METADATA_FIELDS: Tuple[str, ...] = (
    'credit_name',
    'dimensions',
    'file_size',
    'country',
    'city',
    'captured_date',
    'event_title',
)


@dataclass
class ExtractedRecord:
    """
    One normalized record per item.

    item_id and url are always present; every metadata field may be None.
    Partial records are valid output and are never discarded.
    """
    item_id: str
    url: str
    namespace_hash: Optional[str] = None
    copy_link: Optional[str] = None
    credit_name: Optional[str] = None
    dimensions: Optional[str] = None
    file_size: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    captured_date: Optional[str] = None
    event_title: Optional[str] = None
    thumbnail_url: Optional[str] = None

    @classmethod
    def for_reference(cls, ref: ItemReference, thumbnail_url: Optional[str] = None) -> 'ExtractedRecord':
        return cls(
            item_id=ref.item_id,
            url=ref.canonical_url,
            namespace_hash=ref.namespace_hash,
            copy_link=ref.canonical_url,
            thumbnail_url=thumbnail_url or None,
        )

    def captured_fields(self) -> List[str]:
        return [name for name in METADATA_FIELDS if getattr(self, name) is not None]

    def missing_fields(self) -> List[str]:
        return [name for name in METADATA_FIELDS if getattr(self, name) is None]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NavigationProfile:
    """How long and for what a navigation waits."""
    name: str
    wait_until: str     # Playwright load state
    timeout: float      # Seconds per attempt


# Listing pages keep loading results over XHR; wait for the network to settle.
LISTING_PROFILE = NavigationProfile('listing', 'networkidle', 45.0)
# Detail pages hydrate client-side; DOM parse is enough, but hydration can lag.
DETAIL_PROFILE = NavigationProfile('detail', 'domcontentloaded', 60.0)


@dataclass(frozen=True)
class ControlCandidate:
    """A clickable element on the listing page, as seen by the pagination matchers."""
    index: int                      # Position among all `button, a` elements
    text: str = ''
    aria_label: str = ''
    classes: Tuple[str, ...] = ()
    tag: str = 'button'
    disabled: bool = False
    visible: bool = True


@dataclass
class RawDetailFields:
    """
    Raw strings read from a rendered detail page.

    Extraction tiers operate on this value rather than on a live page, so
    they can be exercised without a browser.
    """
    title: Optional[str] = None
    caption: Optional[str] = None
    label_values: List[Tuple[str, str]] = field(default_factory=list)
    hydration_json: Optional[str] = None


class ScrapeConfig(BaseModel):
    """Options recognised for one crawl job."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    url: str
    max_items: int = Field(0, ge=0, le=5000, alias='maxItems')
    extract_details: bool = Field(True, alias='extractDetails')
    auto_scroll: bool = Field(True, alias='autoScroll')
    scroll_delay_ms: int = Field(1000, ge=500, le=5000, alias='scrollDelay')

    @field_validator('url')
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError("Please enter a valid URL")
        return value

    @property
    def is_unlimited(self) -> bool:
        return self.max_items == 0

    @property
    def scroll_delay(self) -> float:
        """Scroll delay in seconds."""
        return self.scroll_delay_ms / 1000.0
