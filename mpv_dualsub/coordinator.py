"""
Mode coordination.

Owns which source is authoritative and turns its events into
:class:`SubtitlePayload` objects:

  uninitialized ──► intercept-active ──► dom-active    (runtime downgrade)
        │                                    │
        └──────────► dom-active ─────────────┘──► intercept-active (silent upgrade)

On start the detector picks the initial mode.  In DOM mode a background loop
keeps asking the host whether languages can be listed; once they can, a fresh
interception source is built and loaded out of sight, and the coordinator
switches over only if that source produced primary entries.  A failing
interception source downgrades to DOM mode with a notice; a failing DOM
source is reported through ``on_error`` since nothing is left to fall back
to.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Union

from .bridge import HostBridge, NotificationHub, VideoIdentityChanged
from .config import Config
from .detector import ModeDetector
from .dom_monitor import DomMonitor
from .errors import DomModeFailure, RuntimeModeFailure
from .interceptor import InterceptSource
from .models import InterceptedCaption, Mode, ModeState, Position, RenderedCaption, SubtitlePayload
from .scheduler import Periodic, bounded
from .settings import SettingsStore

log = logging.getLogger("coordinator")

TRANSITIONS = {
    ModeState.UNINITIALIZED: frozenset({ModeState.DOM_ACTIVE, ModeState.INTERCEPT_ACTIVE}),
    ModeState.INTERCEPT_ACTIVE: frozenset({ModeState.DOM_ACTIVE}),
    ModeState.DOM_ACTIVE: frozenset({ModeState.INTERCEPT_ACTIVE}),
}

DOWNGRADE_NOTICE = "Dual subtitles unavailable, showing the player's captions"
UPGRADE_NOTICE = "Dual subtitles enabled"

InterceptFactory = Callable[[], InterceptSource]


class ModeCoordinator:
    def __init__(
        self,
        bridge: HostBridge,
        hub: NotificationHub,
        settings: SettingsStore,
        config: Config,
        detector: Optional[ModeDetector] = None,
        dom_monitor: Optional[DomMonitor] = None,
        intercept_factory: Optional[InterceptFactory] = None,
    ):
        self.bridge = bridge
        self.hub = hub
        self.settings = settings
        self.config = config
        self.detector = detector or ModeDetector(bridge, config.detector)
        self.dom_monitor = dom_monitor or DomMonitor(bridge, hub, config.render)
        self.intercept_factory = intercept_factory or (lambda: InterceptSource(bridge, hub, settings, config))

        self.state = ModeState.UNINITIALIZED
        self.interceptor: Optional[InterceptSource] = None
        self.video_id: Optional[str] = None
        self.last_payload: Optional[SubtitlePayload] = None
        self.last_error: Optional[Exception] = None
        self.upgrades = 0
        self.downgrades = 0

        self._upgrade: Optional[Periodic] = None
        self._tasks: set = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._on_subtitle_changed: Optional[Callable[[SubtitlePayload], Any]] = None
        self._on_mode_changed: Optional[Callable[[Mode], Any]] = None
        self._on_error: Optional[Callable[[Exception], Any]] = None
        self._on_notice: Optional[Callable[[str], Any]] = None

    # ── callbacks ────────────────────────────────────────────────────────────

    def on_subtitle_changed(self, callback: Callable[[SubtitlePayload], Any]):
        self._on_subtitle_changed = callback

    def on_mode_changed(self, callback: Callable[[Mode], Any]):
        self._on_mode_changed = callback

    def on_error(self, callback: Callable[[Exception], Any]):
        self._on_error = callback

    def on_notice(self, callback: Callable[[str], Any]):
        self._on_notice = callback

    @property
    def mode(self) -> Optional[Mode]:
        return self.state.mode

    # ── startup ──────────────────────────────────────────────────────────────

    async def start(self) -> ModeState:
        """Pick the initial mode and start its source.

        Raises :class:`DomModeFailure` if DOM mode is needed and cannot start.
        """
        if self.state is not ModeState.UNINITIALIZED:
            return self.state
        self._unsubscribe = self.hub.subscribe(VideoIdentityChanged, self._on_video_changed)
        self.dom_monitor.on_subtitle(self._on_rendered)
        self.dom_monitor.on_error(self._on_dom_error)
        await self.dom_monitor.initialize()

        try:
            self.video_id = await bounded(self.bridge.get_video_id(), self.config.detector.probe_timeout, "get_video_id")
        except Exception as e:
            log.debug("video id unavailable at start: %s", e)

        mode = await self.detector.detect_optimal_mode()
        log.info("initial mode: %s", mode.value)
        if mode is Mode.INTERCEPT:
            await self.set_mode(Mode.INTERCEPT)
            if self.state is ModeState.INTERCEPT_ACTIVE:
                return self.state
            log.info("interception could not start, using rendered captions")

        if self.state is not ModeState.DOM_ACTIVE:
            await self.set_mode(Mode.DOM)
        if self.state is ModeState.DOM_ACTIVE:
            self.start_background_upgrade()
        return self.state

    # ── transitions ──────────────────────────────────────────────────────────

    def _transition(self, target: ModeState):
        if target not in TRANSITIONS[self.state]:
            raise ValueError(f"illegal mode transition {self.state.value} → {target.value}")
        log.info("mode %s → %s", self.state.value, target.value)
        self.state = target

    async def set_mode(self, mode: Union[Mode, str]):
        """Make *mode* the active source; a no-op if it already is."""
        mode = Mode(mode)
        if self.state.mode is mode:
            log.debug("mode %s already active", mode.value)
            return

        if mode is Mode.INTERCEPT and (self.interceptor is None or not self.interceptor.initialized):
            if not await self._build_interceptor():
                if self.state is ModeState.UNINITIALIZED:
                    await self.set_mode(Mode.DOM)
                return

        self._stop_current()
        self._transition(ModeState.for_mode(mode))
        try:
            self._start_current()
        except Exception as e:
            if mode is Mode.INTERCEPT:
                log.warning("interception failed to start: %s", e)
                await self.handle_mode_failure(RuntimeModeFailure(str(e)))
                return
            self._fatal(DomModeFailure(f"rendered-caption observer failed to start: {e}"))
            raise self.last_error from e

        if mode is Mode.INTERCEPT:
            self._cancel_upgrade()
        if self._on_mode_changed is not None:
            self._on_mode_changed(mode)

    async def switch_mode(self, target: str):
        """Manual switch; *target* is ``"dom"`` or ``"intercept"``."""
        if target not in (Mode.DOM.value, Mode.INTERCEPT.value):
            raise ValueError(f"unsupported mode: {target!r}")
        log.info("manual switch to %s", target)
        await self.set_mode(Mode(target))

    def _stop_current(self):
        try:
            if self.state is ModeState.DOM_ACTIVE:
                self.dom_monitor.stop()
            elif self.state is ModeState.INTERCEPT_ACTIVE and self.interceptor is not None:
                self.interceptor.stop()
        except Exception:
            log.warning("stopping %s failed", self.state.value, exc_info=True)

    def _start_current(self):
        if self.state is ModeState.DOM_ACTIVE:
            self.dom_monitor.start()
        elif self.state is ModeState.INTERCEPT_ACTIVE:
            self.interceptor.start()

    # ── interception source ──────────────────────────────────────────────────

    def _wire(self, source: InterceptSource):
        source.on_subtitle(lambda caption: self._on_intercepted(source, caption))
        source.on_failure(lambda error: self._on_intercept_failure(source, error))

    async def _build_interceptor(self, load: bool = False) -> bool:
        source = self.intercept_factory()
        self._wire(source)
        try:
            await source.initialize()
            if load:
                await source.load()
                if not source.has_primary:
                    raise RuntimeModeFailure("no usable entries for the primary language")
        except Exception as e:
            log.info("interception source unavailable: %s", e)
            source.cleanup()
            return False
        if self.state is ModeState.INTERCEPT_ACTIVE and self.interceptor is not None and self.interceptor.active:
            log.debug("interception became active meanwhile, dropping the new source")
            source.cleanup()
            return True
        if self.interceptor is not None and self.interceptor is not source:
            self.interceptor.cleanup()
        self.interceptor = source
        return True

    def _on_intercept_failure(self, source: InterceptSource, error: Exception):
        if source is not self.interceptor or self.state is not ModeState.INTERCEPT_ACTIVE:
            log.debug("ignoring failure of inactive interception source: %s", error)
            return
        self._spawn(self.handle_mode_failure(error))

    async def handle_mode_failure(self, error: Exception):
        if self.state is ModeState.INTERCEPT_ACTIVE:
            log.warning("interception failed, downgrading: %s", error)
            self.downgrades += 1
            self.last_error = error
            await self.set_mode(Mode.DOM)
            if self.interceptor is not None:
                self.interceptor.cleanup()
                self.interceptor = None
            self._notice(DOWNGRADE_NOTICE)
        else:
            self._fatal(error if isinstance(error, DomModeFailure) else DomModeFailure(str(error)))

    def _on_dom_error(self, error: Exception):
        if self.state is not ModeState.DOM_ACTIVE:
            log.debug("ignoring rendered-caption failure outside DOM mode: %s", error)
            return
        self._fatal(error if isinstance(error, DomModeFailure) else DomModeFailure(str(error)))

    def _fatal(self, error: DomModeFailure):
        self.last_error = error
        log.error("no subtitle source left: %s", error)
        if self._on_error is not None:
            self._on_error(error)

    def _notice(self, message: str):
        log.info("notice: %s", message)
        if self._on_notice is not None:
            self._on_notice(message)

    # ── background upgrade ───────────────────────────────────────────────────

    @property
    def upgrading(self) -> bool:
        return self._upgrade is not None and self._upgrade.running

    def start_background_upgrade(self):
        self._cancel_upgrade()
        cfg = self.config.upgrade
        log.info("watching for interception capability (every %.1fs, up to %.0fs)", cfg.interval, cfg.max_elapsed)
        self._upgrade = Periodic(
            self._upgrade_attempt,
            cfg.interval,
            max_attempts=cfg.max_attempts,
            max_elapsed=cfg.max_elapsed,
            name="upgrade",
        ).start()

    def _cancel_upgrade(self):
        if self._upgrade is None:
            return
        if not self._upgrade.is_current():
            self._upgrade.cancel()
        self._upgrade = None

    async def _upgrade_attempt(self) -> bool:
        if self.state is not ModeState.DOM_ACTIVE:
            return True
        try:
            languages = await bounded(
                self.bridge.fetch_available_languages(), self.config.detector.probe_timeout, "fetch_available_languages"
            )
        except Exception as e:
            log.debug("upgrade poll: %s", e)
            return False
        if not languages:
            return False
        return await self.silent_upgrade()

    async def silent_upgrade(self) -> bool:
        """Build and load a fresh interception source; switch to it only if it has primary entries."""
        log.info("languages available, trying interception in the background")
        if not await self._build_interceptor(load=True):
            return False
        if self.state is not ModeState.DOM_ACTIVE:
            return True
        await self.set_mode(Mode.INTERCEPT)
        if self.state is ModeState.INTERCEPT_ACTIVE:
            self.upgrades += 1
            self._notice(UPGRADE_NOTICE)
            return True
        return False

    # ── events ───────────────────────────────────────────────────────────────

    def normalize(self, caption: Union[InterceptedCaption, RenderedCaption]) -> SubtitlePayload:
        if isinstance(caption, InterceptedCaption):
            dual = caption.dual
            return SubtitlePayload(
                text=dual.primary_text,
                html_content=dual.primary_text,
                position=caption.position or Position(),
                timestamp=dual.timestamp,
                mode=Mode.INTERCEPT,
                video_id=caption.video_id or self.video_id,
                is_dual_subtitle=True,
                dual_subtitle_data=dual,
                region_id=caption.region_id,
            )
        if isinstance(caption, RenderedCaption):
            return SubtitlePayload(
                text=caption.text,
                html_content=caption.html_content or caption.text,
                position=caption.position or Position(),
                timestamp=caption.timestamp,
                mode=Mode.DOM,
                video_id=caption.video_id or self.video_id,
                is_dual_subtitle=False,
                dual_subtitle_data=None,
            )
        raise TypeError(f"unknown caption type {type(caption).__name__}")

    def _deliver(self, caption: Union[InterceptedCaption, RenderedCaption]):
        payload = self.normalize(caption)
        self.last_payload = payload
        if self._on_subtitle_changed is not None:
            self._on_subtitle_changed(payload)

    def _on_intercepted(self, source: InterceptSource, caption: InterceptedCaption):
        if self.state is ModeState.INTERCEPT_ACTIVE and source is self.interceptor:
            self._deliver(caption)

    def _on_rendered(self, caption: RenderedCaption):
        if self.state is ModeState.DOM_ACTIVE:
            self._deliver(caption)

    def _on_video_changed(self, message: VideoIdentityChanged):
        self.video_id = message.new_id
        self.last_payload = None
        if self.state is ModeState.DOM_ACTIVE:
            log.debug("video changed in DOM mode, watching for interception again")
            self.start_background_upgrade()

    # ── housekeeping ─────────────────────────────────────────────────────────

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cleanup(self):
        log.info("cleaning up")
        self._cancel_upgrade()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._stop_current()
        self.dom_monitor.cleanup()
        if self.interceptor is not None:
            self.interceptor.cleanup()
            self.interceptor = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.state = ModeState.UNINITIALIZED
        self._on_subtitle_changed = self._on_mode_changed = self._on_error = self._on_notice = None

    def get_status(self) -> Dict[str, Any]:
        last = self.last_payload
        return {
            "state": self.state.value,
            "mode": self.mode.value if self.mode else None,
            "video_id": self.video_id,
            "available_modes": [m.value for m in Mode],
            "upgrading": self.upgrading,
            "upgrades": self.upgrades,
            "downgrades": self.downgrades,
            "last_error": str(self.last_error) if self.last_error else None,
            "detection": self.detector.detection_history(),
            "source": (
                self.interceptor.get_status()
                if self.state is ModeState.INTERCEPT_ACTIVE and self.interceptor is not None
                else self.dom_monitor.get_status()
            ),
            "last_subtitle": None if last is None else {
                "text": last.text[:50],
                "timestamp": last.timestamp,
                "mode": last.mode.value,
            },
        }
