"""
Dual-line subtitle display via MPV's osd-overlay API.

The primary text is drawn at the configured size and the secondary text
below it at ``secondary_font_scale`` of that size.  Placement follows the
primary entry's region when its layout is known (origin/extent are fractions
of the frame, mapped onto the 1280×720 virtual OSD space); otherwise the
lines sit ``margin_bottom`` above the bottom edge.

Only changes are pushed, so repeated identical payloads cost nothing.
"""
import logging
from typing import Callable, Dict, Mapping, Optional

from .config import OverlayConfig
from .models import DisplayAlign, Position, RegionConfig, SubtitlePayload

log = logging.getLogger("overlay")

_OVERLAY_ID = 1

# Virtual coordinate space used for the osd-overlay res_x/res_y parameters.
# MPV scales this to the actual display size, so positions are resolution-independent.
_OSD_RES_X = 1280
_OSD_RES_Y = 720

# MPV's default osd-font-size, used to scale the secondary line when font_size is 0
_DEFAULT_FONT_SIZE = 55


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("{", "\\{").replace("}", "\\}").replace("\n", "\\N")


def _anchor(position: Optional[Position], align: DisplayAlign, margin_bottom: int) -> str:
    """ASS alignment + position override for a block of lines.

    \\an2 = bottom-centre, \\an5 = middle-centre, \\an8 = top-centre.
    """
    if position is None or position.width <= 0:
        return "\\an2\\pos(%d,%d)" % (_OSD_RES_X // 2, _OSD_RES_Y - margin_bottom)
    x = int(position.left + position.width / 2)
    if align is DisplayAlign.BEFORE:
        return "\\an8\\pos(%d,%d)" % (x, int(position.top))
    if align is DisplayAlign.CENTER:
        return "\\an5\\pos(%d,%d)" % (x, int(position.top + position.height / 2))
    return "\\an2\\pos(%d,%d)" % (x, int(position.top + position.height))


def ass_dual_event(
    primary: str,
    secondary: str = "",
    position: Optional[Position] = None,
    align: DisplayAlign = DisplayAlign.UNSET,
    margin_bottom: int = 50,
    font_size: int = 0,
    secondary_scale: float = 0.75,
) -> str:
    """Format one or two lines for osd-overlay ass-events."""
    fs = "\\fs%d" % font_size if font_size > 0 else ""
    out = "{%s%s}" % (_anchor(position, align, margin_bottom), fs) + _escape(primary)
    if secondary:
        secondary_fs = int((font_size or _DEFAULT_FONT_SIZE) * secondary_scale)
        sep = "\\N" if primary else ""
        out += sep + "{\\fs%d}" % secondary_fs + _escape(secondary)
    return out


class OsdSurface:
    """Drives a single MPV osd-overlay for normalized subtitle payloads."""

    def __init__(self, command: Callable, config: Optional[OverlayConfig] = None):
        """
        Args:
            command: MpvHostBridge.command, forwards calls to MPV JSON IPC.
            config:  margins and font sizes in the 1280×720 virtual OSD space.
        """
        self._cmd = command
        self.config = config or OverlayConfig()
        self._regions: Dict[str, RegionConfig] = {}
        self._current: Optional[str] = None

    # ── public API ───────────────────────────────────────────────────────────

    def set_region_configs(self, regions: Mapping[str, RegionConfig]):
        self._regions = dict(regions)
        log.debug("using %d layout regions", len(self._regions))

    def position_for(self, region_id: Optional[str]) -> Optional[Position]:
        """Where *region_id* lies in the virtual OSD space, if its layout is known."""
        region = self._regions.get(region_id) if region_id else None
        if region is None:
            return None
        return Position(
            top=region.origin.y * _OSD_RES_Y,
            left=region.origin.x * _OSD_RES_X,
            width=region.extent.w * _OSD_RES_X,
            height=region.extent.h * _OSD_RES_Y,
        )

    def show(self, payload: SubtitlePayload):
        if payload.is_empty:
            self._push("")
            return
        dual = payload.dual_subtitle_data
        secondary = dual.secondary_text if dual is not None and dual.dual_enabled else ""
        region = self._regions.get(payload.region_id) if payload.region_id else None
        position = payload.position if payload.position.width > 0 else None
        self._push(ass_dual_event(
            payload.text,
            secondary,
            position=position,
            align=region.display_align if region else DisplayAlign.UNSET,
            margin_bottom=self.config.margin_bottom,
            font_size=self.config.font_size,
            secondary_scale=self.config.secondary_font_scale,
        ))

    def clear(self):
        """Hide the overlay immediately."""
        self._push("")

    def shutdown(self):
        self.clear()
        self._regions.clear()

    # ── internals ────────────────────────────────────────────────────────────

    def _push(self, data: str):
        """Send an osd-overlay command only when the displayed text changes."""
        if data == self._current:
            return
        self._current = data
        try:
            self._cmd("osd-overlay", _OVERLAY_ID, "ass-events", data, _OSD_RES_X, _OSD_RES_Y, 0, False, False)
        except Exception:
            log.debug("osd-overlay update failed", exc_info=True)
