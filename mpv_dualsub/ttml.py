"""
Timed-text (TTML / DFXP) parsing.

Only the parts needed for overlay display are read:

  • ``ttp:tickRate`` on the root, used for ``<N>t`` timestamps
  • every ``<p>`` with both ``begin`` and ``end``: text (``<br/>`` → newline,
    ``<span>`` flattened) and its optional ``region`` reference
  • ``<layout>/<region>``: ``tts:origin``, ``tts:extent`` and ``tts:displayAlign``

Malformed documents produce an empty result, never an exception.
"""
import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

from attr import dataclass, field

from .errors import ParseError
from .models import DisplayAlign, Extent, Point, RegionConfig, SubtitleEntry

log = logging.getLogger("ttml")

DEFAULT_TICK_RATE = 10_000_000

_CLOCK_RE = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")
_OFFSET_RE = re.compile(r"^(\d+(?:\.\d+)?)(s|ms)?$")


@dataclass(kw_only=True)
class ParseResult:
    subtitles: List[SubtitleEntry] = field(factory=list)
    region_configs: Dict[str, RegionConfig] = field(factory=dict)


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def _get_attr(elem: ET.Element, name: str) -> Optional[str]:
    if name in elem.attrib:
        return elem.attrib[name]
    for k, v in elem.attrib.items():
        if _strip_ns(k) == name:
            return v
    return None


def _find_child(parent: ET.Element, tag: str) -> Optional[ET.Element]:
    for child in parent:
        if _strip_ns(child.tag) == tag:
            return child
    return None


def parse_tick_rate(root: ET.Element) -> int:
    raw = _get_attr(root, "tickRate")
    if not raw:
        return DEFAULT_TICK_RATE
    try:
        rate = int(raw.strip())
    except ValueError:
        log.debug("bad tickRate %r, using default", raw)
        return DEFAULT_TICK_RATE
    return rate if rate > 0 else DEFAULT_TICK_RATE


def parse_time(value: Optional[str], tick_rate: int = DEFAULT_TICK_RATE) -> Optional[float]:
    """Convert a TTML time expression to seconds.

    Accepts tick counts (``"915080832t"``), clock times (``"00:01:31.508"``)
    and plain or ``s``/``ms``-suffixed offsets (``"91.5"``, ``"91.5s"``).
    Returns ``None`` for anything else.
    """
    if not value:
        return None
    value = value.strip()
    if value.endswith("t"):
        try:
            return int(value[:-1]) / tick_rate
        except ValueError:
            return None
    m = _CLOCK_RE.match(value)
    if m:
        h, mi, s = m.groups()
        return int(h) * 3600 + int(mi) * 60 + float(s)
    m = _OFFSET_RE.match(value)
    if m:
        number, unit = m.groups()
        return float(number) / 1000.0 if unit == "ms" else float(number)
    return None


def parse_percentage_pair(value: Optional[str]) -> Tuple[float, float]:
    """``"10.000% 50.000%"`` → ``(0.1, 0.5)``; anything malformed → ``(0.0, 0.0)``."""
    parts = (value or "").split()
    if len(parts) != 2:
        log.debug("invalid percentage pair %r", value)
        return 0.0, 0.0
    out = []
    for part in parts:
        try:
            out.append(float(part.rstrip("%")) / 100.0)
        except ValueError:
            out.append(0.0)
    return out[0], out[1]


def extract_text(elem: ET.Element) -> str:
    """Concatenate the text of *elem*, mapping ``<br/>`` to newlines."""
    return _collect_text(elem).strip()


def _collect_text(elem: ET.Element) -> str:
    text = elem.text or ""
    for child in elem:
        tag = _strip_ns(child.tag)
        if tag == "br":
            text += "\n"
        elif tag == "span":
            text += _collect_text(child)
        text += child.tail or ""
    return text


def _parse_paragraph(p: ET.Element, tick_rate: int) -> Optional[SubtitleEntry]:
    entry_id = _get_attr(p, "id")
    begin = p.attrib.get("begin")
    end = p.attrib.get("end")
    if not begin or not end:
        log.debug("skipping paragraph without timing: %s", entry_id)
        return None
    start_time = parse_time(begin, tick_rate)
    end_time = parse_time(end, tick_rate)
    if start_time is None or end_time is None:
        log.debug("unparseable timing on %s: begin=%r end=%r", entry_id, begin, end)
        return None
    if end_time < start_time:
        log.debug("skipping %s: end %.3f before start %.3f", entry_id, end_time, start_time)
        return None
    return SubtitleEntry(
        id=entry_id,
        start_time=start_time,
        end_time=end_time,
        text=extract_text(p),
        region_id=p.attrib.get("region") or None,
    )


def parse_region_configs(root: ET.Element) -> Dict[str, RegionConfig]:
    head = _find_child(root, "head")
    layout = _find_child(head, "layout") if head is not None else None
    if layout is None:
        log.debug("no <layout> section")
        return {}
    regions: Dict[str, RegionConfig] = {}
    for elem in layout:
        if _strip_ns(elem.tag) != "region":
            continue
        region_id = _get_attr(elem, "id")
        if not region_id:
            continue
        ox, oy = parse_percentage_pair(_get_attr(elem, "origin"))
        ew, eh = parse_percentage_pair(_get_attr(elem, "extent"))
        regions[region_id] = RegionConfig(
            id=region_id,
            origin=Point(ox, oy),
            extent=Extent(ew, eh),
            display_align=DisplayAlign.parse(_get_attr(elem, "displayAlign")),
        )
    return regions


def _parse_root(document: str) -> ET.Element:
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise ParseError(f"malformed timed-text document: {e}") from e
    if _strip_ns(root.tag) != "tt":
        raise ParseError(f"unexpected root element <{_strip_ns(root.tag)}>")
    return root


def parse(document: Optional[str]) -> ParseResult:
    """Parse a timed-text document into entries (sorted by start) and regions."""
    if not document or not isinstance(document, str):
        log.debug("empty timed-text document")
        return ParseResult()
    try:
        root = _parse_root(document.lstrip("\ufeff"))
    except ParseError as e:
        log.warning("%s", e)
        return ParseResult()

    tick_rate = parse_tick_rate(root)
    subtitles = []
    for elem in root.iter():
        if _strip_ns(elem.tag) != "p":
            continue
        entry = _parse_paragraph(elem, tick_rate)
        if entry is not None:
            subtitles.append(entry)
    subtitles.sort(key=lambda e: e.start_time)

    regions = parse_region_configs(root)
    log.debug("parsed %d entries, %d regions (tickRate=%d)", len(subtitles), len(regions), tick_rate)
    return ParseResult(subtitles=subtitles, region_configs=regions)


def detect_language(document: str) -> Optional[str]:
    """Return the root ``xml:lang`` of *document*, if it has one."""
    try:
        root = _parse_root(document.lstrip("\ufeff"))
    except ParseError:
        return None
    return _get_attr(root, "lang")
