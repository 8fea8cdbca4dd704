"""
Render loop.

Every ``render.interval`` seconds: read the playback position, look up the
primary and secondary entries, and emit a :class:`DualSubtitleData` when the
pair of texts differs from the last one emitted.  Position or timestamp
changes alone never cause an emit.

The same tick checks whether playback is getting close to the end of the
requested window and, if so, starts the next fetch as a separate task.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from attr import dataclass, field

from .config import IndexConfig, RenderConfig
from .errors import RuntimeModeFailure
from .intervals import FetchIntervals
from .models import CacheEntry, DualSubtitleData, RegionConfig, SubtitleEntry
from .scheduler import Periodic, bounded
from .timeindex import TimeIndex, find_subtitle_by_time

log = logging.getLogger("render")


@dataclass(kw_only=True)
class Track:
    """The entries currently bound to one display line."""

    language: Optional[str] = None
    video_id: Optional[str] = None
    subtitles: Tuple[SubtitleEntry, ...] = ()
    time_index: Optional[TimeIndex] = None
    region_configs: Dict[str, RegionConfig] = field(factory=dict)

    @classmethod
    def from_entry(cls, entry: CacheEntry) -> "Track":
        return cls(
            language=entry.language,
            video_id=entry.video_id,
            subtitles=entry.subtitles,
            time_index=entry.time_index,
            region_configs=dict(entry.region_configs),
        )

    def __len__(self) -> int:
        return len(self.subtitles)

    def clear(self):
        self.video_id = None
        self.subtitles = ()
        self.time_index = None
        self.region_configs = {}

    def lookup(self, pos: float, tolerance: float) -> Optional[SubtitleEntry]:
        if self.time_index is not None:
            try:
                return self.time_index.lookup(pos, tolerance)
            except Exception:
                log.warning("%s: index lookup failed, scanning", self.language, exc_info=True)
        return find_subtitle_by_time(self.subtitles, pos, tolerance)


Emit = Callable[[DualSubtitleData], Any]
Prefetch = Callable[[float], Awaitable[Any]]


class RenderLoop:
    def __init__(
        self,
        bridge: Any,
        emit: Emit,
        intervals: FetchIntervals,
        prefetch: Optional[Prefetch] = None,
        on_failure: Optional[Callable[[Exception], Any]] = None,
        config: Optional[RenderConfig] = None,
        index_config: Optional[IndexConfig] = None,
        prefetch_threshold: float = 60.0,
    ):
        self.bridge = bridge
        self.emit = emit
        self.intervals = intervals
        self.prefetch = prefetch
        self.on_failure = on_failure
        self.config = config or RenderConfig()
        self.tolerance = (index_config or IndexConfig()).tolerance
        self.prefetch_threshold = prefetch_threshold

        self.primary = Track()
        self.secondary = Track()
        self.dual_enabled = True

        self.current_time: float = 0.0
        self.last_emitted: Optional[DualSubtitleData] = None
        self.failures = 0
        self._periodic: Optional[Periodic] = None
        self._prefetch_task: Optional[asyncio.Task] = None

    # ── lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._periodic is not None and self._periodic.running

    def start(self):
        if self.running:
            return
        log.debug("render loop started (%.0fms)", self.config.interval * 1000)
        self.failures = 0
        self._periodic = Periodic(
            self._run_tick, self.config.interval, name="render", initial_delay=0.0,
        ).start()

    def stop(self):
        if self._periodic is not None:
            self._periodic.cancel()
            self._periodic = None
            log.debug("render loop stopped")
        if self._prefetch_task is not None and not self._prefetch_task.done():
            self._prefetch_task.cancel()
        self._prefetch_task = None
        self.current_time = 0.0
        self.last_emitted = None

    # ── tick ─────────────────────────────────────────────────────────────────

    async def _run_tick(self) -> bool:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            log.warning("render tick failed (%d/%d): %s", self.failures, self.config.max_failures, e)
            if self.failures >= self.config.max_failures:
                self._report(RuntimeModeFailure(f"{self.failures} consecutive render failures: {e}"))
                return True
            return False
        self.failures = 0
        return False

    def _report(self, error: Exception):
        if self.on_failure is None:
            log.error("render loop failed: %s", error)
            return
        self.on_failure(error)

    async def tick(self) -> Optional[DualSubtitleData]:
        """Sample the playback position once; return the emitted data, if any."""
        pos = await bounded(self.bridge.get_current_time(), max(self.config.interval * 10, 1.0), "get_current_time")
        if pos is None:
            return None
        self.current_time = pos

        primary = self.primary.lookup(pos, self.tolerance)
        secondary = self.secondary.lookup(pos, self.tolerance) if self.dual_enabled else None
        data = DualSubtitleData(
            primary_text=primary.text if primary else "",
            secondary_text=secondary.text if secondary else "",
            primary_language=self.primary.language or "",
            secondary_language=self.secondary.language or "",
            timestamp=pos,
            primary_entry=primary,
            secondary_entry=secondary,
            dual_enabled=self.dual_enabled,
        )

        self.check_prefetch(pos)

        if not self.should_emit(data):
            return None
        self.last_emitted = data
        self.emit(data)
        return data

    def should_emit(self, data: DualSubtitleData) -> bool:
        last = self.last_emitted
        if last is None:
            return True
        return last.primary_text != data.primary_text or last.secondary_text != data.secondary_text

    # ── prefetch ─────────────────────────────────────────────────────────────

    def check_prefetch(self, pos: float) -> Optional[asyncio.Task]:
        if self.prefetch is None:
            return None
        if self._prefetch_task is not None and not self._prefetch_task.done():
            return None
        start = self.intervals.next_fetch_start(pos, self.prefetch_threshold)
        if start is None:
            return None
        log.debug("prefetching window from %.1fs (position %.1fs)", start, pos)
        self._prefetch_task = asyncio.get_running_loop().create_task(self._prefetch(start), name="prefetch")
        return self._prefetch_task

    async def _prefetch(self, start: float):
        try:
            await self.prefetch(start)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.warning("prefetch from %.1fs failed", start, exc_info=True)
