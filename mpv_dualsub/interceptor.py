"""
Interception source.

Turns intercepted timed-text documents into dual-subtitle events:

  DocumentIntercepted   → parse + index into the cache, rebind the tracks
  VideoIdentityChanged  → purge the old video's entries, empty the tracks,
                          reload if active
  settings change       → rebind the tracks, reload if active

Loads (cache check, strategy, fetch, restore) are queued so that at most one
runs at a time; the render loop's prefetch goes through the same queue.
Load failures and a render loop that keeps failing are reported through
:meth:`InterceptSource.on_failure` as :class:`RuntimeModeFailure`.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .bridge import DocumentIntercepted, HostBridge, NotificationHub, VideoIdentityChanged
from .cache import LanguageCache
from .config import Config
from .errors import RuntimeModeFailure
from .intervals import FetchIntervals
from .models import DualSubtitleData, InterceptedCaption, Position, RegionConfig
from .planner import FetchPlanner, FetchResult
from .render import RenderLoop, Track
from .scheduler import bounded
from .settings import DUAL_ENABLED, KEYS, PRIMARY_LANGUAGE, SECONDARY_LANGUAGE, SettingsStore

log = logging.getLogger("interceptor")

PositionResolver = Callable[[Optional[str]], Optional[Position]]
RegionSink = Callable[[Mapping[str, RegionConfig]], Any]


class InterceptSource:
    def __init__(
        self,
        bridge: HostBridge,
        hub: NotificationHub,
        settings: SettingsStore,
        config: Config,
        cache: Optional[LanguageCache] = None,
        intervals: Optional[FetchIntervals] = None,
        position_resolver: Optional[PositionResolver] = None,
        region_sink: Optional[RegionSink] = None,
    ):
        self.bridge = bridge
        self.hub = hub
        self.settings = settings
        self.config = config
        self.cache = cache or LanguageCache(config.index.bucket_seconds, config.index.max_timestamp)
        self.intervals = intervals or FetchIntervals(config.fetch.merge_gap, config.fetch.retry_delay)
        self.planner = FetchPlanner(bridge, hub, self.cache, self.intervals, config.fetch)
        self.render = RenderLoop(
            bridge,
            self._on_render,
            self.intervals,
            prefetch=self._prefetch,
            on_failure=self._fail,
            config=config.render,
            index_config=config.index,
            prefetch_threshold=config.fetch.prefetch_threshold,
        )
        self.position_resolver = position_resolver
        self.region_sink = region_sink

        self.video_id: Optional[str] = None
        self.active = False
        self.initialized = False
        self._callback: Optional[Callable[[InterceptedCaption], Any]] = None
        self._failure_callback: Optional[Callable[[Exception], Any]] = None
        self._unsubscribe: List[Callable[[], None]] = []
        self._load_task: Optional[asyncio.Task] = None

    # ── callbacks ────────────────────────────────────────────────────────────

    def on_subtitle(self, callback: Callable[[InterceptedCaption], Any]):
        self._callback = callback

    def on_failure(self, callback: Callable[[Exception], Any]):
        self._failure_callback = callback

    def _fail(self, error: Exception):
        if not isinstance(error, RuntimeModeFailure):
            error = RuntimeModeFailure(str(error) or type(error).__name__)
        log.warning("interception failed: %s", error)
        if self._failure_callback is not None:
            self._failure_callback(error)

    # ── lifecycle ────────────────────────────────────────────────────────────

    async def initialize(self):
        """Subscribe to notifications and settings and check the player answers.

        Raises :class:`RuntimeModeFailure` when the player lists no languages.
        """
        if self.initialized:
            return
        self._unsubscribe.append(self.hub.subscribe(DocumentIntercepted, self._on_document))
        self._unsubscribe.append(self.hub.subscribe(VideoIdentityChanged, self._on_video_changed))
        for key in KEYS:
            self._unsubscribe.append(self.settings.subscribe(key, self._on_setting))

        try:
            await self.wait_for_player_ready()
            self.video_id = await bounded(self.bridge.get_video_id(), self.config.fetch.command_timeout, "get_video_id")
        except Exception as e:
            self._drop_subscriptions()
            if isinstance(e, RuntimeModeFailure):
                raise
            raise RuntimeModeFailure(f"player not ready: {e}") from e

        self.cache.video_id = self.video_id
        self.bind_languages()
        self.initialized = True
        log.info("interception initialized for video %s", self.video_id)

    async def wait_for_player_ready(self):
        languages = await bounded(
            self.bridge.fetch_available_languages(), self.config.detector.probe_timeout, "fetch_available_languages"
        )
        if not languages:
            raise RuntimeModeFailure("player lists no subtitle languages")
        log.debug("player ready, languages: %s", list(languages))

    def start(self):
        if self.active:
            log.debug("interception already active")
            return
        if not self.initialized:
            log.error("interception source started before initialization")
            return
        self.active = True
        self.queue_load()
        self.render.start()
        log.info("interception started")

    def stop(self):
        if not self.active:
            return
        self.active = False
        self.render.stop()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None
        log.info("interception stopped")

    def _drop_subscriptions(self):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def cleanup(self):
        self.stop()
        self._drop_subscriptions()
        self._callback = self._failure_callback = None
        self.initialized = False
        self.render.primary.clear()
        self.render.secondary.clear()
        self.cache.clear()
        self.intervals.clear()
        log.debug("interception cleaned up")

    # ── loading ──────────────────────────────────────────────────────────────

    @property
    def primary_language(self) -> str:
        return self.settings.primary_language

    @property
    def secondary_language(self) -> str:
        return self.settings.secondary_language

    @property
    def dual_enabled(self) -> bool:
        return self.settings.dual_enabled

    @property
    def has_primary(self) -> bool:
        return len(self.render.primary) > 0

    async def load(self, start: Optional[float] = None) -> Optional[FetchResult]:
        """Fetch whatever the cache is missing for the window at *start* and rebind the tracks."""
        if self.video_id is None:
            self.video_id = await bounded(self.bridge.get_video_id(), self.config.fetch.command_timeout, "get_video_id")
        if self.video_id is None:
            log.info("no video playing, nothing to load")
            return None
        if start is None:
            start = self.render.current_time
        try:
            return await self.planner.load(
                self.video_id, start, self.primary_language, self.secondary_language, self.dual_enabled,
            )
        finally:
            self.bind_languages()

    def queue_load(self, start: Optional[float] = None) -> asyncio.Task:
        """Run :meth:`load` after any load already in flight."""
        previous = self._load_task
        self._load_task = asyncio.get_running_loop().create_task(self._queued_load(previous, start), name="load")
        return self._load_task

    async def _queued_load(self, previous: Optional[asyncio.Task], start: Optional[float]):
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await self.load(start)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("loading subtitles failed")
            if self.active:
                self._fail(e)

    async def _prefetch(self, start: float):
        await self.queue_load(start)

    def bind_languages(self):
        """Point the render tracks at the cached entries for the configured languages."""
        video_id = self.video_id
        primary = self.cache.entry_for(self.primary_language, video_id)
        self.render.primary = Track.from_entry(primary) if primary else Track(language=self.primary_language)
        secondary = self.cache.entry_for(self.secondary_language, video_id) if self.dual_enabled else None
        self.render.secondary = Track.from_entry(secondary) if secondary else Track(language=self.secondary_language)
        self.render.dual_enabled = self.dual_enabled

    # ── notifications ────────────────────────────────────────────────────────

    def _on_document(self, message: DocumentIntercepted):
        entry = self.cache.store(message.cache_key, message.raw_document, message.language)
        if entry is None:
            return
        if entry.language == self.primary_language and entry.region_configs and self.region_sink is not None:
            log.debug("forwarding %d regions of %s", len(entry.region_configs), entry.language)
            self.region_sink(entry.region_configs)
        if entry.language in (self.primary_language, self.secondary_language):
            self.bind_languages()

    def _on_video_changed(self, message: VideoIdentityChanged):
        log.info("video changed: %s → %s", message.old_id, message.new_id)
        self.video_id = message.new_id
        if message.new_id is not None:
            self.cache.purge_stale(message.new_id)
        else:
            self.cache.clear()
        self.intervals.clear()
        for track in (self.render.primary, self.render.secondary):
            if track.video_id is not None and track.video_id != message.new_id:
                track.clear()
        self.render.last_emitted = None
        if self.active:
            self.queue_load(0.0)

    def _on_setting(self, key: str, old: Any, new: Any):
        log.debug("setting %s changed, rebinding", key)
        self.intervals.clear()
        self.bind_languages()
        if self.active and key in (PRIMARY_LANGUAGE, SECONDARY_LANGUAGE, DUAL_ENABLED):
            self.queue_load()

    # ── output ───────────────────────────────────────────────────────────────

    def _on_render(self, data: DualSubtitleData):
        if self._callback is None:
            return
        region_id = data.primary_entry.region_id if data.primary_entry is not None else None
        position = None
        if self.position_resolver is not None:
            try:
                position = self.position_resolver(region_id)
            except Exception:
                log.debug("position lookup failed for region %s", region_id, exc_info=True)
        self._callback(InterceptedCaption(dual=data, video_id=self.video_id, position=position, region_id=region_id))

    def get_status(self) -> Dict[str, Any]:
        last = self.render.last_emitted
        return {
            "active": self.active,
            "initialized": self.initialized,
            "video_id": self.video_id,
            "dual_enabled": self.dual_enabled,
            "primary_language": self.primary_language,
            "secondary_language": self.secondary_language,
            "current_time": self.render.current_time,
            "primary_count": len(self.render.primary),
            "secondary_count": len(self.render.secondary),
            "has_time_index": {
                "primary": self.render.primary.time_index is not None,
                "secondary": self.render.secondary.time_index is not None,
            },
            "cached_keys": self.cache.keys(),
            "last_subtitle": None if last is None else {
                "primary_text": last.primary_text[:50],
                "secondary_text": last.secondary_text[:50],
                "timestamp": last.timestamp,
            },
        }
