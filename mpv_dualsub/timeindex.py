"""Coarse time → entries index.

Entries are dropped into fixed-width buckets (``floor(t / bucket_seconds)``);
an entry is stored in every bucket its ``[start, end]`` span touches, so a
lookup only scans the one or two buckets around the query time.
"""
import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence

from .models import SubtitleEntry

log = logging.getLogger("timeindex")

BUCKET_SECONDS = 10.0
MAX_TIMESTAMP = 86400.0


def _plausible(value: Optional[float], max_timestamp: float) -> bool:
    return value is not None and not math.isnan(value) and 0.0 <= value <= max_timestamp


class TimeIndex:
    def __init__(self, bucket_seconds: float = BUCKET_SECONDS):
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        self.bucket_seconds = bucket_seconds
        self._buckets: Dict[int, List[SubtitleEntry]] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def bucket_of(self, pos: float) -> int:
        return math.floor(pos / self.bucket_seconds)

    def add(self, entry: SubtitleEntry):
        for b in range(self.bucket_of(entry.start_time), self.bucket_of(entry.end_time) + 1):
            self._buckets.setdefault(b, []).append(entry)

    def bucket(self, number: int) -> List[SubtitleEntry]:
        return list(self._buckets.get(number, ()))

    def lookup(self, pos: float, tolerance: float = 0.0) -> Optional[SubtitleEntry]:
        """First entry whose ``[start - tolerance, end + tolerance]`` contains *pos*."""
        first = self.bucket_of(pos - tolerance)
        last = self.bucket_of(pos + tolerance)
        for b in range(first, last + 1):
            for entry in self._buckets.get(b, ()):
                if entry.contains(pos, tolerance):
                    return entry
        return None


def build_time_index(
    subtitles: Iterable[SubtitleEntry],
    bucket_seconds: float = BUCKET_SECONDS,
    max_timestamp: float = MAX_TIMESTAMP,
) -> TimeIndex:
    index = TimeIndex(bucket_seconds)
    skipped = 0
    for entry in subtitles:
        if not (_plausible(entry.start_time, max_timestamp) and _plausible(entry.end_time, max_timestamp)):
            log.debug(
                "skipping entry with anomalous timestamps: start=%r end=%r text=%r",
                entry.start_time, entry.end_time, (entry.text or "")[:50],
            )
            skipped += 1
            continue
        index.add(entry)
    if skipped:
        log.warning("time index: skipped %d entries with anomalous timestamps", skipped)
    log.debug("time index covers %d buckets of %.0fs", len(index), bucket_seconds)
    return index


def lookup(index: TimeIndex, pos: float, tolerance: float = 0.0) -> Optional[SubtitleEntry]:
    return index.lookup(pos, tolerance)


def find_subtitle_by_time(
    subtitles: Sequence[SubtitleEntry], pos: float, tolerance: float = 0.0
) -> Optional[SubtitleEntry]:
    """Linear scan, for callers that have no index yet."""
    for entry in subtitles:
        if entry.contains(pos, tolerance):
            return entry
    return None
