"""
Demand sampling for the fleet controller.

A DemandSource reports a scalar demand signal (for example the number of
concurrently active users). The DemandSampler polls it once per cycle and
keeps exactly the current and the previous sample so policies can react
to the change between cycles.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


class SampleUnavailable(Exception):
    """Raised when the demand signal cannot be retrieved completely"""
    pass


@dataclass(frozen=True)
class DemandSample:
    """A single observation of the demand signal"""
    value: float
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "observed_at": self.observed_at.isoformat()}


class DemandSource(ABC):
    """Abstract source of the demand signal"""

    @abstractmethod
    def count_active(self) -> int:
        """
        Return the current demand count.

        Raises:
            SampleUnavailable: If the source is unreachable or the count is incomplete
        """
        pass


def count_paginated(fetch_page: Callable[[int, int], Sequence[Any]], page_size: int) -> int:
    """
    Count rows across fixed-size pages until a short page is returned.

    Args:
        fetch_page: Callable taking (offset, limit) and returning the rows of that window
        page_size: Number of rows requested per page

    Returns:
        Total number of rows over all pages
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")

    total = 0
    offset = 0
    while True:
        rows = fetch_page(offset, page_size)
        if rows is None:
            raise SampleUnavailable(f"Page at offset {offset} returned no data")

        total += len(rows)
        if len(rows) < page_size:
            return total
        offset += page_size


class DemandSampler:
    """
    Polls a DemandSource and retains the current and previous samples.

    On failure the previous samples are kept untouched, so a transient
    outage never looks like demand dropping to zero.
    """

    def __init__(self, source: DemandSource):
        self.source = source
        self._current: Optional[DemandSample] = None
        self._previous: Optional[DemandSample] = None
        self._last_error: Optional[str] = None
        self._fresh = False
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[DemandSample]:
        return self._current

    @property
    def previous(self) -> Optional[DemandSample]:
        return self._previous

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def fresh(self) -> bool:
        """True if the most recent sample() call succeeded"""
        return self._fresh

    @property
    def delta(self) -> Optional[float]:
        """Change between previous and current sample, None until two samples exist"""
        with self._lock:
            if self._current is None or self._previous is None:
                return None
            return self._current.value - self._previous.value

    def sample(self) -> DemandSample:
        """
        Take a new sample, shifting the current one into previous.

        Raises:
            SampleUnavailable: If the source failed; stored samples are unchanged
        """
        try:
            value = self.source.count_active()
        except SampleUnavailable as e:
            self._last_error = str(e)
            self._fresh = False
            raise
        except Exception as e:
            self._last_error = str(e)
            self._fresh = False
            raise SampleUnavailable(f"Demand source failed: {e}") from e

        new_sample = DemandSample(value=value)
        with self._lock:
            self._previous = self._current
            self._current = new_sample
            self._last_error = None
            self._fresh = True

        logger.debug(f"Demand sample {new_sample.value} (previous: "
                     f"{self._previous.value if self._previous else None})")
        return new_sample

    def refresh(self) -> Optional[DemandSample]:
        """Sample, falling back to the last good sample when the source fails"""
        try:
            return self.sample()
        except SampleUnavailable as e:
            logger.warning(f"Demand sample unavailable, reusing previous sample: {e}")
            return self._current

    def get_state(self) -> Dict[str, Any]:
        """Get sampler state for status reporting"""
        with self._lock:
            return {
                "current": self._current.to_dict() if self._current else None,
                "previous": self._previous.to_dict() if self._previous else None,
                "last_error": self._last_error,
                "fresh": self._fresh,
            }
