"""
Host bridge protocol and notification hub.

A host bridge is the only thing that talks to the player.  It answers
capability probes and track commands, and it publishes notifications into a
:class:`NotificationHub`:

  DocumentIntercepted   → a raw timed-text document became available
  VideoIdentityChanged  → the playing video changed

The hub also resolves correlation waits: :meth:`NotificationHub.wait_for`
suspends until a document for a given language (and video) arrives, matched
on the language part of its cache key.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Type, TypeVar

from attr import dataclass

from .models import CacheKey, RegionConfig, RenderedCaption

log = logging.getLogger("bridge")

T = TypeVar("T")


@dataclass(frozen=True)
class DocumentIntercepted:
    cache_key: str
    raw_document: str
    language: Optional[str] = None

    @property
    def key(self) -> Optional[CacheKey]:
        return CacheKey.parse(self.cache_key)


@dataclass(frozen=True)
class VideoIdentityChanged:
    old_id: Optional[str]
    new_id: Optional[str]


class HostBridge(Protocol):
    # capability probes
    async def is_supported_host(self) -> bool: ...

    async def ping(self) -> bool: ...

    async def inject(self) -> bool: ...

    async def check_capability_api_available(self) -> bool: ...

    async def check_player_ready(self) -> bool: ...

    async def test_fetch_capability(self) -> bool: ...

    # track commands
    async def fetch_available_languages(self) -> Sequence[str]: ...

    async def get_current_active_language(self) -> Optional[str]: ...

    async def switch_active_language(self, code: Optional[str]) -> bool: ...

    # playback
    async def get_current_time(self) -> float: ...

    async def get_video_id(self) -> Optional[str]: ...

    async def get_rendered_caption(self) -> Optional[RenderedCaption]: ...

    async def list_intercepted(self) -> Mapping[str, DocumentIntercepted]: ...


class DisplaySurface(Protocol):
    def show(self, payload: Any): ...

    def clear(self): ...

    def set_region_configs(self, regions: Mapping[str, RegionConfig]): ...


Unsubscribe = Callable[[], None]


class NotificationHub:
    def __init__(self):
        self._subscribers: Dict[type, List[Callable[[Any], Any]]] = {}
        self._waiters: List[Tuple[str, Optional[str], asyncio.Future]] = []
        self._tasks: set = set()

    def subscribe(self, kind: Type[T], callback: Callable[[T], Any]) -> Unsubscribe:
        """Call *callback* for every published message of type *kind*.

        Coroutine callbacks are scheduled as tasks on the running loop.
        """
        self._subscribers.setdefault(kind, []).append(callback)

        def unsubscribe():
            try:
                self._subscribers.get(kind, []).remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, message: Any):
        for callback in list(self._subscribers.get(type(message), ())):
            try:
                result = callback(message)
            except Exception:
                log.exception("subscriber %r failed on %r", callback, type(message).__name__)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        if isinstance(message, DocumentIntercepted):
            self._resolve(message)

    def _task_done(self, task: asyncio.Future):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("subscriber task failed", exc_info=task.exception())

    def _resolve(self, message: DocumentIntercepted):
        key = message.key
        if key is None:
            log.debug("document with malformed key %r", message.cache_key)
            return
        language = message.language or key.language
        remaining = []
        for lang, video_id, fut in self._waiters:
            if fut.done():
                continue
            if lang in (language, key.language) and (video_id is None or video_id == key.video_id):
                fut.set_result(message)
            else:
                remaining.append((lang, video_id, fut))
        self._waiters = remaining

    def expect(self, language: str, video_id: Optional[str] = None) -> asyncio.Future:
        """Register interest in the next document for *language* before triggering it."""
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((language, video_id, fut))
        return fut

    def discard(self, fut: asyncio.Future):
        self._waiters = [w for w in self._waiters if w[2] is not fut]
        if not fut.done():
            fut.cancel()

    async def wait_for(
        self,
        language: str,
        timeout: float,
        video_id: Optional[str] = None,
        future: Optional[asyncio.Future] = None,
    ) -> Optional[DocumentIntercepted]:
        """Wait up to *timeout* seconds for a document in *language*; ``None`` on timeout."""
        fut = future if future is not None else self.expect(language, video_id)
        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout)
        except asyncio.TimeoutError:
            log.debug("no %s document within %.1fs", language, timeout)
            return None
        finally:
            self.discard(fut)

    def close(self):
        for _, _, fut in self._waiters:
            if not fut.done():
                fut.cancel()
        self._waiters.clear()
        for task in list(self._tasks):
            task.cancel()
        self._subscribers.clear()
