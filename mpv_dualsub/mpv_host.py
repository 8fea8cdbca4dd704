"""
MPV as the host player.

Implements :class:`~mpv_dualsub.bridge.HostBridge` over MPV's JSON IPC:

  languages         → ``lang`` of the subtitle tracks in ``track-list``
  active language   → ``lang`` of the selected subtitle track
  switch            → set ``sid`` (``no`` to switch subtitles off)
  rendered caption  → ``sub-text``
  playback time     → ``time-pos``
  video identity    → short hash of ``path``

Interception: whenever ``sid`` changes to an external timed-text file, the
file is read and published as a :class:`DocumentIntercepted` keyed
``{language}_{videoId}_{trackId}``.  Every published document is retained so
it can be listed again later.

MPV callbacks arrive on the IPC thread; they are handed to the asyncio loop
with ``call_soon_threadsafe``.  Blocking IPC calls run in a worker thread.
"""
import asyncio
import hashlib
import logging
import pathlib
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from python_mpv_jsonipc import MPV, MPVError

from . import ttml
from .bridge import DocumentIntercepted, NotificationHub, VideoIdentityChanged
from .config import Config, get_config
from .errors import BridgeError
from .models import CacheKey, RenderedCaption

log = logging.getLogger("mpv_host")


def _unstructure(arg: Any) -> Any:
    if isinstance(arg, pathlib.Path):
        return str(arg)
    return arg


def video_id_for(path: str) -> str:
    return hashlib.sha1(path.encode("utf8", "replace")).hexdigest()[:12]


def _language_code(track: Mapping[str, Any]) -> Optional[str]:
    lang = track.get("lang")
    return lang.replace("_", "-") if lang else None


def _video_of(cache_key: str) -> Optional[str]:
    key = CacheKey.parse(cache_key)
    return key.video_id if key else None


def select_track(tracks: Sequence[Mapping[str, Any]], language: str) -> Optional[Mapping[str, Any]]:
    """Best subtitle track for *language*: default and not forced, then not forced, then any."""
    matches = [t for t in tracks if t.get("type") == "sub" and _language_code(t) == language]
    for wanted in (
        lambda t: t.get("default") and not t.get("forced"),
        lambda t: not t.get("forced"),
    ):
        for t in matches:
            if wanted(t):
                return t
    return matches[0] if matches else None


class MpvHostBridge:
    def __init__(self, hub: NotificationHub, config: Optional[Config] = None, mpv: Optional[MPV] = None):
        self.config = config or get_config()
        self.hub = hub
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed: Optional[asyncio.Event] = None
        self.mpv = mpv or MPV(
            mpv_location=self.config.mpv.executable,
            start_mpv=self.config.mpv.start_mpv,
            ipc_socket=self.config.mpv.ipc_socket,
            quit_callback=self._on_quit,
            **self.config.mpv.start_args,
        )
        self.on_toggle: Optional[Callable[[], Any]] = None
        self._video_id: Optional[str] = None
        self._retained: Dict[str, DocumentIntercepted] = {}
        self._tasks: set = set()

    # ── MPV interface ────────────────────────────────────────────────────────

    def command(self, name: str, *args: Any) -> Any:
        return self.mpv.command(name, *map(_unstructure, args))  # type: ignore

    async def _call(self, name: str, *args: Any) -> Any:
        return await asyncio.to_thread(self.command, name, *args)

    async def _get(self, prop: str, default: Any = None) -> Any:
        try:
            value = await self._call("get_property", prop)
        except MPVError:
            return default
        return default if value is None else value

    async def _tracks(self) -> List[Dict[str, Any]]:
        tracks = await self._get("track-list", [])
        return [t for t in tracks if isinstance(t, dict)]

    def show_text(self, message: str):
        try:
            self.command("show-text", f"mpv-dualsub: {message}")
        except MPVError:
            log.debug("show-text failed", exc_info=True)

    def set_native_visibility(self, visible: bool):
        try:
            self.command("set_property", "sub-visibility", visible)
        except MPVError:
            log.warning("could not set sub-visibility")

    # ── event registration ───────────────────────────────────────────────────

    async def attach(self):
        """Start forwarding MPV events to the running loop."""
        self._loop = asyncio.get_running_loop()
        self._closed = asyncio.Event()
        cfg = self.config.mpv
        self.mpv.bind_key_press(cfg.toggle_binding, self._threadsafe(self._fire_toggle))
        self.mpv.bind_event("file-loaded", self._threadsafe(lambda *_: self._spawn(self.refresh_video())))
        self.mpv.bind_property_observer("sid", self._threadsafe(lambda _name, sid: self._spawn(self.capture(sid))))
        await self.refresh_video()

    def _threadsafe(self, fn: Callable[..., Any]) -> Callable[..., None]:
        def handler(*args: Any):
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(fn, *args)

        return handler

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("mpv event handler failed", exc_info=task.exception())

    def _on_quit(self):
        if self._loop is not None and self._closed is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._closed.set)

    def _fire_toggle(self, *_: Any):
        if self.on_toggle is not None:
            self.on_toggle()

    @property
    def closed(self) -> bool:
        return self._closed is not None and self._closed.is_set()

    async def wait_closed(self):
        """Block until MPV quits."""
        if self._closed is None:
            raise RuntimeError("bridge is not attached")
        await self._closed.wait()

    def close(self):
        for task in list(self._tasks):
            task.cancel()
        self._retained.clear()

    # ── notifications ────────────────────────────────────────────────────────

    async def refresh_video(self):
        path = await self._get("path")
        new_id = video_id_for(path) if path else None
        if new_id == self._video_id:
            return
        old_id, self._video_id = self._video_id, new_id
        self._retained = {k: v for k, v in self._retained.items() if _video_of(k) == new_id}
        log.info("video %s → %s (%s)", old_id, new_id, path)
        self.hub.publish(VideoIdentityChanged(old_id, new_id))
        await self.capture(await self._get("sid"))

    async def capture(self, sid: Any):
        """Publish the document behind subtitle track *sid*, if it is a timed-text file."""
        if sid in (None, False, "no", "auto"):
            return
        track = next((t for t in await self._tracks() if t.get("type") == "sub" and t.get("id") == sid), None)
        if track is None or not track.get("external"):
            return
        filename = track.get("external-filename")
        if not filename or pathlib.Path(filename).suffix.lower() not in self.config.mpv.supported_suffixes:
            log.debug("track %s is not a timed-text file: %s", sid, filename)
            return
        try:
            document = await asyncio.to_thread(pathlib.Path(filename).read_text, encoding="utf8")
        except OSError as e:
            log.warning("could not read %s: %s", filename, e)
            return
        language = _language_code(track) or ttml.detect_language(document)
        video_id = await self.get_video_id()
        if not language or not video_id:
            log.debug("track %s: no language or no video, ignoring", sid)
            return
        message = DocumentIntercepted(f"{language.replace('_', '-')}_{video_id}_{sid}", document, language)
        self._retained[message.cache_key] = message
        log.info("intercepted %s", message.cache_key)
        self.hub.publish(message)

    # ── HostBridge ───────────────────────────────────────────────────────────

    async def is_supported_host(self) -> bool:
        return await self.ping()

    async def ping(self) -> bool:
        try:
            return bool(await self._call("get_property", "mpv-version"))
        except MPVError:
            return False

    async def inject(self) -> bool:
        # nothing to inject into MPV; re-check the connection
        return await self.ping()

    async def check_capability_api_available(self) -> bool:
        try:
            return isinstance(await self._call("get_property", "track-list"), list)
        except MPVError:
            return False

    async def check_player_ready(self) -> bool:
        return bool(await self._get("path")) and await self._get("time-pos") is not None

    async def fetch_available_languages(self) -> List[str]:
        languages: List[str] = []
        for t in await self._tracks():
            code = _language_code(t)
            if t.get("type") == "sub" and code and code not in languages:
                languages.append(code)
        return languages

    async def get_current_active_language(self) -> Optional[str]:
        """Language of the selected subtitle track, ``None`` when none is selected.

        Raises :class:`BridgeError` when the track list cannot be read.
        """
        try:
            tracks = await self._call("get_property", "track-list")
        except MPVError as e:
            raise BridgeError(f"could not read track-list: {e}") from e
        for t in tracks or ():
            if not isinstance(t, dict):
                continue
            if t.get("type") == "sub" and t.get("selected"):
                return _language_code(t)
        return None

    async def switch_active_language(self, code: Optional[str]) -> bool:
        if code is None:
            await self._call("set_property", "sid", "no")
            return True
        track = select_track(await self._tracks(), code)
        if track is None:
            log.info("no subtitle track for %s", code)
            return False
        await self._call("set_property", "sid", track["id"])
        return True

    async def test_fetch_capability(self) -> bool:
        suffixes = self.config.mpv.supported_suffixes
        return any(
            t.get("type") == "sub" and t.get("external")
            and pathlib.Path(t.get("external-filename") or "").suffix.lower() in suffixes
            for t in await self._tracks()
        )

    async def get_current_time(self) -> Optional[float]:
        pos = await self._get("time-pos")
        return None if pos is None else float(pos)

    async def get_video_id(self) -> Optional[str]:
        if self._video_id is None:
            path = await self._get("path")
            self._video_id = video_id_for(path) if path else None
        return self._video_id

    async def get_rendered_caption(self) -> Optional[RenderedCaption]:
        text = str(await self._get("sub-text", "")).strip()
        return RenderedCaption(text=text, html_content=text, video_id=self._video_id)

    async def list_intercepted(self) -> Mapping[str, DocumentIntercepted]:
        return dict(self._retained)
