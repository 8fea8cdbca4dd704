"""
Rendered-caption observation.

Polls the caption the host is currently showing and reports it when the text
changes or the caption moves by 5px or more.  When the caption disappears a
single empty event is reported so the display surface can hide.  Repeated
polling failures are fatal: this source is the last fallback.
"""
import logging
from typing import Any, Callable, Dict, Optional

from .bridge import HostBridge, NotificationHub, VideoIdentityChanged
from .config import RenderConfig
from .errors import DomModeFailure
from .models import Position, RenderedCaption
from .scheduler import Periodic, bounded

log = logging.getLogger("dom_monitor")

POSITION_SLACK = 5.0


def _same_place(a: Optional[Position], b: Optional[Position]) -> bool:
    if a is None or b is None:
        return a is b
    return abs(a.top - b.top) < POSITION_SLACK and abs(a.left - b.left) < POSITION_SLACK


class DomMonitor:
    def __init__(self, bridge: HostBridge, hub: Optional[NotificationHub] = None, config: Optional[RenderConfig] = None):
        self.bridge = bridge
        self.hub = hub
        self.config = config or RenderConfig()
        self.active = False
        self.initialized = False
        self.failures = 0
        self.last_text: Optional[str] = None
        self.last_position: Optional[Position] = None
        self._callback: Optional[Callable[[RenderedCaption], Any]] = None
        self._error_callback: Optional[Callable[[Exception], Any]] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._periodic: Optional[Periodic] = None

    def on_subtitle(self, callback: Callable[[RenderedCaption], Any]):
        self._callback = callback

    def on_error(self, callback: Callable[[Exception], Any]):
        self._error_callback = callback

    async def initialize(self):
        if self.initialized:
            return
        if self.hub is not None:
            self._unsubscribe = self.hub.subscribe(VideoIdentityChanged, self._on_video_changed)
        self.initialized = True
        log.debug("rendered-caption observer initialized")

    def start(self):
        if self.active:
            log.debug("rendered-caption observer already active")
            return
        if not self.initialized:
            log.error("rendered-caption observer started before initialization")
            return
        self.active = True
        self._observe()
        log.info("observing rendered captions")

    def _observe(self):
        if self._periodic is not None:
            self._periodic.cancel()
        self.failures = 0
        self._periodic = Periodic(self.scan, self.config.interval, name="dom-monitor", initial_delay=0.0).start()

    def stop(self):
        if not self.active:
            return
        self.active = False
        if self._periodic is not None:
            self._periodic.cancel()
            self._periodic = None
        self.last_text = None
        self.last_position = None
        log.info("stopped observing rendered captions")

    def cleanup(self):
        self.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._callback = self._error_callback = None
        self.initialized = False

    def _on_video_changed(self, message: VideoIdentityChanged):
        if not self.active:
            return
        log.debug("video changed to %s, restarting observer", message.new_id)
        self.last_text = None
        self.last_position = None
        self._observe()

    # ── polling ──────────────────────────────────────────────────────────────

    async def scan(self) -> bool:
        """Poll once.  Returns ``True`` once the observer has given up."""
        if not self.active:
            return True
        try:
            caption = await bounded(
                self.bridge.get_rendered_caption(), max(self.config.interval * 10, 1.0), "get_rendered_caption"
            )
        except Exception as e:
            self.failures += 1
            log.warning("reading rendered caption failed (%d/%d): %s", self.failures, self.config.max_failures, e)
            if self.failures >= self.config.max_failures:
                self._report(DomModeFailure(f"rendered captions unreadable: {e}"))
                return True
            return False
        self.failures = 0
        self.process(caption)
        return False

    def process(self, caption: Optional[RenderedCaption]):
        if caption is None or caption.is_empty:
            if self.last_text == "":
                return
            self.last_text = ""
            self.last_position = None
            self._emit(RenderedCaption(text="", video_id=caption.video_id if caption else None))
            return
        if caption.text == self.last_text and _same_place(caption.position, self.last_position):
            return
        self.last_text = caption.text
        self.last_position = caption.position
        log.debug("caption: %r", caption.text[:60])
        self._emit(caption)

    def _emit(self, caption: RenderedCaption):
        if self._callback is not None:
            self._callback(caption)

    def _report(self, error: DomModeFailure):
        log.error("%s", error)
        if self._error_callback is not None:
            self._error_callback(error)

    def get_status(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "initialized": self.initialized,
            "observing": self._periodic is not None and self._periodic.running,
            "failures": self.failures,
            "last_subtitle": None if not self.last_text else {
                "text": self.last_text[:50],
                "position": self.last_position,
            },
        }
