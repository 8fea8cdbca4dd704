"""Data types shared by the parser, cache, sources and coordinator."""
import enum
import time
from typing import Any, Dict, Optional, Tuple

from attr import dataclass, field


class DisplayAlign(str, enum.Enum):
    BEFORE = "before"
    CENTER = "center"
    AFTER = "after"
    UNSET = "unset"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DisplayAlign":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNSET


class Mode(str, enum.Enum):
    """Where subtitles come from."""

    INTERCEPT = "intercept"
    DOM = "dom"


class ModeState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    DOM_ACTIVE = "dom-active"
    INTERCEPT_ACTIVE = "intercept-active"

    @property
    def mode(self) -> Optional[Mode]:
        if self is ModeState.DOM_ACTIVE:
            return Mode.DOM
        if self is ModeState.INTERCEPT_ACTIVE:
            return Mode.INTERCEPT
        return None

    @classmethod
    def for_mode(cls, mode: Mode) -> "ModeState":
        return cls.INTERCEPT_ACTIVE if mode is Mode.INTERCEPT else cls.DOM_ACTIVE


class Strategy(str, enum.Enum):
    USE_CACHE_ONLY = "USE_CACHE_ONLY"
    FETCH_PRIMARY = "FETCH_PRIMARY"
    FETCH_SECONDARY = "FETCH_SECONDARY"
    FETCH_BOTH = "FETCH_BOTH"


class IntervalStatus(str, enum.Enum):
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Point:
    x: float = 0.0
    y: float = 0.0


@dataclass(frozen=True)
class Extent:
    w: float = 0.0
    h: float = 0.0


@dataclass(frozen=True, kw_only=True)
class RegionConfig:
    """A named placement area; origin and extent are fractions of the video frame."""

    id: str
    origin: Point = field(factory=Point)
    extent: Extent = field(factory=Extent)
    display_align: DisplayAlign = DisplayAlign.UNSET


@dataclass(frozen=True, kw_only=True)
class SubtitleEntry:
    id: Optional[str]
    start_time: float
    end_time: float
    text: str
    region_id: Optional[str] = None

    @property
    def has_region(self) -> bool:
        return bool(self.region_id)

    def contains(self, pos: float, tolerance: float = 0.0) -> bool:
        return self.start_time - tolerance <= pos <= self.end_time + tolerance


@dataclass(frozen=True)
class CacheKey:
    """``{language}_{videoId}[_extra...]``"""

    language: str
    video_id: str
    extra: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["CacheKey"]:
        if not raw:
            return None
        parts = raw.split("_")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            return None
        return cls(parts[0], parts[1], tuple(parts[2:]))

    def __str__(self) -> str:
        return "_".join((self.language, self.video_id) + self.extra)


@dataclass(kw_only=True)
class CacheEntry:
    key: CacheKey
    language: str
    subtitles: Tuple[SubtitleEntry, ...]
    time_index: Any  # timeindex.TimeIndex
    region_configs: Dict[str, RegionConfig] = field(factory=dict)
    digest: str = ""
    fetched_at: float = field(factory=time.time)

    @property
    def video_id(self) -> str:
        return self.key.video_id


@dataclass(kw_only=True)
class FetchInterval:
    start: float
    end: float
    status: IntervalStatus = IntervalStatus.IN_PROGRESS
    requested_at: float = field(factory=time.monotonic)
    failed_at: Optional[float] = None

    def covers(self, pos: float) -> bool:
        return self.start <= pos < self.end


@dataclass(frozen=True)
class Position:
    top: float = 0.0
    left: float = 0.0
    width: float = 0.0
    height: float = 0.0


# ── source events ────────────────────────────────────────────────────────────
# Each source reports its own event type; the coordinator turns either into a
# SubtitlePayload.


@dataclass(frozen=True, kw_only=True)
class DualSubtitleData:
    primary_text: str
    secondary_text: str
    primary_language: str
    secondary_language: str
    timestamp: float
    primary_entry: Optional[SubtitleEntry] = None
    secondary_entry: Optional[SubtitleEntry] = None
    dual_enabled: bool = True

    @property
    def is_empty(self) -> bool:
        return not self.primary_text and not self.secondary_text


@dataclass(frozen=True, kw_only=True)
class InterceptedCaption:
    dual: DualSubtitleData
    video_id: Optional[str]
    position: Optional[Position] = None
    region_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class RenderedCaption:
    """Caption text as the host player currently shows it."""

    text: str
    html_content: str = ""
    position: Optional[Position] = None
    timestamp: float = field(factory=time.time)
    video_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.text


@dataclass(frozen=True, kw_only=True)
class SubtitlePayload:
    """The one event shape handed to the display surface."""

    text: str
    html_content: str
    position: Position
    timestamp: float
    mode: Mode
    video_id: Optional[str]
    is_dual_subtitle: bool = False
    dual_subtitle_data: Optional[DualSubtitleData] = None
    region_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        if self.dual_subtitle_data is not None:
            return self.dual_subtitle_data.is_empty
        return not self.text
