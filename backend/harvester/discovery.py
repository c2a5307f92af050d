"""
Listing page discovery.

Drives scroll and pagination on a gallery listing page until no more items
appear, collecting a deduplicated, ordered set of item references.

State machine:
    SCANNING        -> sweep references, try a pagination control, scroll
    AWAITING_GROWTH -> patience rounds waiting for the document to grow
    DONE            -> terminal; reaching it is a normal outcome
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .base import Colors, ControlCandidate, ItemReference
from .config import GallerySite
from .utils.extractors import extract_item_references, extract_thumbnails

logger = logging.getLogger(__name__)


class DiscoveryState(str, Enum):
    SCANNING = "scanning"
    AWAITING_GROWTH = "awaiting_growth"
    DONE = "done"


# ============================================================
# PAGINATION CONTROL MATCHERS
# ============================================================

class PaginationMatcher:
    """One strategy for recognizing a pagination control. First match wins."""
    name = 'base'

    def matches(self, control: ControlCandidate) -> bool:
        raise NotImplementedError


class NextLabelMatcher(PaginationMatcher):
    """Text or aria-label is exactly "next" (case-insensitive)."""
    name = 'next'

    def matches(self, control: ControlCandidate) -> bool:
        return (
            control.text.strip().lower() == 'next'
            or control.aria_label.strip().lower() == 'next'
        )


class LoadMoreMatcher(PaginationMatcher):
    """Generic load-more / show-more / pagination markers in text, class or aria-label."""
    name = 'load_more'

    TEXT_MARKERS = ('load more', 'show more', 'load all')
    CLASS_MARKERS = ('load', 'pagination', 'rounded-r-md')
    ARIA_MARKERS = ('load', 'more')

    def matches(self, control: ControlCandidate) -> bool:
        text = control.text.lower()
        if any(marker in text for marker in self.TEXT_MARKERS):
            return True
        classes = ' '.join(control.classes).lower()
        if any(marker in classes for marker in self.CLASS_MARKERS):
            return True
        aria = control.aria_label.lower()
        return any(marker in aria for marker in self.ARIA_MARKERS)


PAGINATION_MATCHERS: Tuple[PaginationMatcher, ...] = (
    NextLabelMatcher(),
    LoadMoreMatcher(),
)


def find_pagination_control(
    candidates: Iterable[ControlCandidate],
    matchers: Sequence[PaginationMatcher] = PAGINATION_MATCHERS,
) -> Optional[ControlCandidate]:
    """
    Pick the control to click, trying matchers in priority order.

    Disabled and out-of-band candidates are never returned.
    """
    usable = [c for c in candidates if c.visible and not c.disabled]
    for matcher in matchers:
        for control in usable:
            if matcher.matches(control):
                return control
    return None


# ============================================================
# REFERENCE ACCUMULATION
# ============================================================

class ReferenceAccumulator:
    """Ordered set of item references, unique by item_id."""

    def __init__(self):
        self._refs: Dict[str, ItemReference] = {}
        self.thumbnails: Dict[str, str] = {}

    def add(self, refs: Iterable[ItemReference]) -> int:
        """Merge refs in; return how many were new."""
        added = 0
        for ref in refs:
            if ref.item_id not in self._refs:
                self._refs[ref.item_id] = ref
                added += 1
        return added

    def add_thumbnails(self, thumbnails: Dict[str, str]):
        for item_id, src in thumbnails.items():
            self.thumbnails.setdefault(item_id, src)

    @property
    def references(self) -> List[ItemReference]:
        return list(self._refs.values())

    def __len__(self):
        return len(self._refs)


@dataclass
class DiscoveryResult:
    references: List[ItemReference] = field(default_factory=list)
    thumbnails: Dict[str, str] = field(default_factory=dict)
    iterations: int = 0
    pagination_clicks: int = 0
    stop_reason: str = ''


# ============================================================
# ENGINE
# ============================================================

class LinkDiscoveryEngine:
    """
    Surfaces every item on a listing page that loads more on scroll or click.

    The session must already be on the listing page. `sweep()` can be called
    on its own (before and after `run()`) to pick up references that need no
    scrolling at all.
    """

    PATIENCE_ROUNDS = 5
    CLICK_SETTLE_BUFFER = 2.0   # Seconds added to the scroll delay after a click

    def __init__(
        self,
        session,
        site: GallerySite,
        scroll_delay: float = 1.0,
        max_items: int = 0,
        on_progress: Optional[Callable[[int, int], None]] = None,
        max_iterations: int = 1000,
        matchers: Sequence[PaginationMatcher] = PAGINATION_MATCHERS,
        log: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.site = site
        self.scroll_delay = scroll_delay
        self.max_items = max_items
        self.on_progress = on_progress
        self.max_iterations = max_iterations
        self.matchers = matchers
        self.log = log or logger

        self.accumulator = ReferenceAccumulator()
        self.state = DiscoveryState.SCANNING
        self.iterations = 0
        self.pagination_clicks = 0
        self.stop_reason = ''

    # ---------------- public ----------------

    async def sweep(self) -> int:
        """Collect references currently in the DOM. Returns the number of new ones."""
        html = await self.session.content()
        refs = extract_item_references(html, self.site, self.session.current_url)
        added = self.accumulator.add(refs)
        self.accumulator.add_thumbnails(extract_thumbnails(html, self.site))
        if added:
            self.log.debug(f"Sweep found {added} new references ({len(self.accumulator)} total)")
            if self.on_progress:
                self.on_progress(len(self.accumulator), self.max_items)
        return added

    async def run(self) -> DiscoveryResult:
        """Run the state machine to DONE (or until the cap is reached)."""
        visited: Set[Tuple[str, int]] = set()
        just_paginated = False
        self.state = DiscoveryState.SCANNING

        while self.state is not DiscoveryState.DONE:
            if self._cap_reached():
                self._finish(f"reached cap of {self.max_items} items")
                break
            if self.iterations >= self.max_iterations:
                self.log.warning(Colors.yellow(f"Discovery stopped after {self.iterations} iterations"))
                self._finish("iteration ceiling")
                break
            self.iterations += 1

            if self.state is DiscoveryState.SCANNING:
                just_paginated = await self._scan(visited, just_paginated)
            else:
                await self._await_growth()

        return self.result()

    def result(self) -> DiscoveryResult:
        return DiscoveryResult(
            references=self.accumulator.references,
            thumbnails=dict(self.accumulator.thumbnails),
            iterations=self.iterations,
            pagination_clicks=self.pagination_clicks,
            stop_reason=self.stop_reason,
        )

    # ---------------- states ----------------

    async def _scan(self, visited: Set[Tuple[str, int]], just_paginated: bool) -> bool:
        """One SCANNING iteration. Returns whether it ended with a successful pagination."""
        url = self.session.current_url
        count = await self.session.count_items()
        key = (url, count)

        if key in visited and not just_paginated:
            self._finish(f"page state repeated ({count} items at {url})")
            return False
        visited.add(key)

        await self.sweep()
        if self._cap_reached():
            self._finish(f"reached cap of {self.max_items} items")
            return False

        control = find_pagination_control(await self.session.describe_controls(), self.matchers)
        if control is not None and await self._click(control, url, count):
            return True

        height_before = await self.session.document_height()
        await self.session.scroll_to_bottom()
        await self.session.sleep(self.scroll_delay)
        height_after = await self.session.document_height()

        if height_after == height_before:
            self.log.debug(f"No growth after scroll (height {height_after}), waiting for more content")
            self.state = DiscoveryState.AWAITING_GROWTH
        return False

    async def _click(self, control: ControlCandidate, url: str, count: int) -> bool:
        label = control.text or control.aria_label or control.tag
        self.log.info(f"Clicking pagination control: {label!r}")
        if not await self.session.click_control(control):
            return False

        await self.session.sleep(self.scroll_delay + self.CLICK_SETTLE_BUFFER)
        new_url = self.session.current_url
        new_count = await self.session.count_items()

        if new_url != url or new_count > count:
            self.pagination_clicks += 1
            self.log.info(f"Pagination advanced: {count} -> {new_count} items")
            return True

        self.log.debug(f"Control {label!r} produced no change")
        return False

    async def _await_growth(self):
        baseline = await self.session.document_height()
        for round_num in range(1, self.PATIENCE_ROUNDS + 1):
            await self.session.sleep(self.scroll_delay * 2)
            await self.session.scroll_to_bottom()
            height = await self.session.document_height()
            if height > baseline:
                self.log.debug(f"Content grew during patience round {round_num}")
                self.state = DiscoveryState.SCANNING
                return
            self.log.debug(f"Patience round {round_num}/{self.PATIENCE_ROUNDS}: no growth")
        self._finish("no new content")

    # ---------------- helpers ----------------

    def _cap_reached(self) -> bool:
        return self.max_items > 0 and len(self.accumulator) >= self.max_items

    def _finish(self, reason: str):
        self.state = DiscoveryState.DONE
        self.stop_reason = reason
        self.log.info(f"Discovery done: {reason}")
