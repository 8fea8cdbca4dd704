"""Bookkeeping of requested time windows.

The render loop's prefetch check and explicit loads both ask for windows of
playback time; this keeps them from requesting the same range twice.
In-progress and done intervals count as coverage.  A failed interval keeps
counting for ``retry_delay`` seconds after it failed, then the next prefetch
check may retry it.  Intervals separated by at most ``merge_gap`` seconds are
treated as one continuous range.
"""
import logging
import time
from typing import Callable, List, Optional, Tuple

from .models import FetchInterval, IntervalStatus

log = logging.getLogger("intervals")

_ACTIVE = (IntervalStatus.IN_PROGRESS, IntervalStatus.DONE)


class FetchIntervals:
    def __init__(
        self,
        merge_gap: float = 10.0,
        retry_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.merge_gap = merge_gap
        self.retry_delay = retry_delay
        self.clock = clock
        self._intervals: List[FetchInterval] = []

    def __len__(self) -> int:
        return len(self._intervals)

    def __iter__(self):
        return iter(list(self._intervals))

    def clear(self):
        self._intervals.clear()

    def _counts(self, interval: FetchInterval, now: float) -> bool:
        if interval.status in _ACTIVE:
            return True
        return interval.failed_at is not None and now - interval.failed_at < self.retry_delay

    def coverage(self) -> List[Tuple[float, float]]:
        """Merged ``(start, end)`` ranges of in-progress, done and recently failed intervals."""
        now = self.clock()
        spans = sorted((i.start, i.end) for i in self._intervals if self._counts(i, now))
        merged: List[Tuple[float, float]] = []
        for start, end in spans:
            if merged and start - merged[-1][1] <= self.merge_gap:
                merged[-1] = (merged[-1][0], max(merged[-1][1], end))
            else:
                merged.append((start, end))
        return merged

    def is_requested(self, start: float, end: float) -> bool:
        return any(s <= start and end <= e for s, e in self.coverage())

    def request(self, start: float, end: float) -> Optional[FetchInterval]:
        """Record ``[start, end]`` as in progress, or return ``None`` if it is already covered."""
        if self.is_requested(start, end):
            log.debug("interval %.1f-%.1f already requested", start, end)
            return None
        # a new request supersedes failed attempts it fully covers
        self._intervals = [
            i for i in self._intervals
            if not (i.status is IntervalStatus.FAILED and start <= i.start and i.end <= end)
        ]
        interval = FetchInterval(start=start, end=end, requested_at=self.clock())
        self._intervals.append(interval)
        log.debug("interval %.1f-%.1f in progress", start, end)
        return interval

    def mark_done(self, interval: FetchInterval):
        interval.status = IntervalStatus.DONE
        self._coalesce()

    def mark_failed(self, interval: FetchInterval):
        interval.status = IntervalStatus.FAILED
        interval.failed_at = self.clock()
        log.debug("interval %.1f-%.1f failed, retry in %.0fs", interval.start, interval.end, self.retry_delay)

    def _coalesce(self):
        done = sorted((i for i in self._intervals if i.status is IntervalStatus.DONE), key=lambda i: i.start)
        merged: List[FetchInterval] = []
        for i in done:
            if merged and i.start - merged[-1].end <= self.merge_gap:
                merged[-1].end = max(merged[-1].end, i.end)
            else:
                merged.append(FetchInterval(start=i.start, end=i.end, status=IntervalStatus.DONE))
        self._intervals = [i for i in self._intervals if i.status is not IntervalStatus.DONE] + merged

    def next_fetch_start(self, pos: float, threshold: float) -> Optional[float]:
        """Where the next window should start, or ``None`` if *pos* is comfortably covered.

        Nothing requested yet, or *pos* outside every range → *pos*.
        Inside a range but within *threshold* of its end → that end.
        """
        for start, end in self.coverage():
            if start <= pos < end:
                if end - pos >= threshold:
                    return None
                return end
        return pos
