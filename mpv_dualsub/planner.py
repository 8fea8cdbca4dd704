"""
Fetch strategy planning.

Decides which languages are missing from the cache for the playing video and
fetches them through the host, one at a time:

  1. check the cache (materialising documents the host already retained)
  2. record the host's active language
  3. pick a strategy from the cache coverage
  4. fetch each missing language: passively wait if it is already the active
     track, otherwise switch to it and wait for its document
  5. switch back to the recorded language, even if a fetch failed

When the active language could not be read there would be nothing to switch
back to, so only passive waits run and the track is left alone.

Languages the host does not list are not switched to; the window is marked
failed and retried later like any other failed fetch.

The host has exactly one active text track, so fetches never overlap: each
language is awaited to completion before the next one starts.
"""
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from attr import dataclass, field

from .bridge import HostBridge, NotificationHub
from .cache import LanguageCache
from .config import FetchConfig
from .errors import FetchFailure, ProbeTimeout
from .intervals import FetchIntervals
from .models import CacheEntry, Strategy
from .scheduler import bounded

log = logging.getLogger("planner")


class _Unknown:
    def __repr__(self):
        return "<unknown>"


# the active language could not be read
UNKNOWN = _Unknown()


@dataclass(frozen=True, kw_only=True)
class CacheStatus:
    has_primary: bool
    has_secondary: bool
    needs_primary: bool
    needs_secondary: bool
    available_languages: Tuple[str, ...] = ()


def analyze_cache_status(
    cache_map: Mapping[str, CacheEntry], primary: str, secondary: str, dual_enabled: bool
) -> CacheStatus:
    has_primary = primary in cache_map
    has_secondary = secondary in cache_map
    status = CacheStatus(
        has_primary=has_primary,
        has_secondary=has_secondary,
        needs_primary=not has_primary,
        needs_secondary=dual_enabled and not has_secondary,
        available_languages=tuple(sorted(cache_map)),
    )
    log.debug(
        "cache status: primary %s (%s), secondary %s (%s), available=%s",
        primary, "cached" if has_primary else "missing",
        secondary, "cached" if has_secondary else ("missing" if dual_enabled else "not needed"),
        list(status.available_languages),
    )
    return status


def determine_strategy(status: CacheStatus) -> Strategy:
    if status.needs_primary and status.needs_secondary:
        return Strategy.FETCH_BOTH
    if status.needs_primary:
        return Strategy.FETCH_PRIMARY
    if status.needs_secondary:
        return Strategy.FETCH_SECONDARY
    return Strategy.USE_CACHE_ONLY


def languages_for(strategy: Strategy, primary: str, secondary: str) -> List[str]:
    if strategy is Strategy.FETCH_BOTH:
        return [primary] if primary == secondary else [primary, secondary]
    if strategy is Strategy.FETCH_PRIMARY:
        return [primary]
    if strategy is Strategy.FETCH_SECONDARY:
        return [secondary]
    return []


@dataclass(kw_only=True)
class FetchResult:
    strategy: Strategy
    fetched: List[str] = field(factory=list)
    failed: List[str] = field(factory=list)
    # not listed by the host, nothing was switched for them
    unavailable: List[str] = field(factory=list)
    switched: bool = False
    restored: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.unavailable


class FetchPlanner:
    def __init__(
        self,
        bridge: HostBridge,
        hub: NotificationHub,
        cache: LanguageCache,
        intervals: FetchIntervals,
        config: Optional[FetchConfig] = None,
    ):
        self.bridge = bridge
        self.hub = hub
        self.cache = cache
        self.intervals = intervals
        self.config = config or FetchConfig()
        self._video_id: Optional[str] = None

    # ── cache ────────────────────────────────────────────────────────────────

    async def check_existing_cache(self, video_id: str) -> Dict[str, CacheEntry]:
        try:
            documents = await bounded(self.bridge.list_intercepted(), self.config.command_timeout, "list_intercepted")
        except Exception as e:
            log.warning("could not list retained documents: %s", e)
            documents = {}
        return self.cache.check_existing(video_id, documents)

    # ── host track ───────────────────────────────────────────────────────────

    async def record_active_language(self) -> Union[str, None, _Unknown]:
        """The host's active language, ``None`` when no track is selected, or :data:`UNKNOWN`."""
        try:
            language = await bounded(
                self.bridge.get_current_active_language(), self.config.command_timeout, "get_current_active_language"
            )
        except Exception as e:
            log.warning("could not read active language: %s", e)
            return UNKNOWN
        log.debug("active language before fetch: %s", language)
        return language

    async def available_languages(self) -> Optional[List[str]]:
        """Languages the host lists, or ``None`` if it could not be asked."""
        try:
            languages = await bounded(
                self.bridge.fetch_available_languages(), self.config.command_timeout, "fetch_available_languages"
            )
        except Exception as e:
            log.warning("could not list languages: %s", e)
            return None
        return list(languages)

    async def restore(self, original: Optional[str]) -> bool:
        log.info("restoring active language %s", original or "(none)")
        try:
            ok = await bounded(
                self.bridge.switch_active_language(original), self.config.command_timeout, "switch_active_language"
            )
        except Exception as e:
            log.warning("restoring %s failed: %s", original, e)
            return False
        if not ok:
            log.warning("host refused to restore %s", original)
        return bool(ok)

    # ── fetching ─────────────────────────────────────────────────────────────

    async def fetch_language(self, language: str, active: Union[str, None, _Unknown]) -> bool:
        """Make sure a document for *language* reaches the cache.

        Returns ``True`` when the host accepted a switch, so the caller knows
        the active track has to be restored.  Raises :class:`FetchFailure`
        when no document arrived in time; its ``switched`` flag is set when
        the active track may have changed before the failure.
        """
        video_id = self._video_id
        if self.cache.entry_for(language, video_id) is not None:
            log.debug("%s already cached", language)
            return False

        if active == language:
            log.info("%s is already active, waiting for its document", language)
            doc = await self.hub.wait_for(language, self.config.passive_wait, video_id)
            if doc is None and self.cache.entry_for(language, video_id) is None:
                raise FetchFailure(f"no {language} document within {self.config.passive_wait:.1f}s")
            return False

        if active is UNKNOWN:
            raise FetchFailure(f"active language unknown, not switching to {language}")

        fut = self.hub.expect(language, video_id)
        log.info("switching to %s", language)
        try:
            ok = await bounded(
                self.bridge.switch_active_language(language), self.config.command_timeout, "switch_active_language"
            )
        except ProbeTimeout as e:
            self.hub.discard(fut)
            raise FetchFailure(f"switch to {language}: {e}", switched=True) from e
        except Exception as e:
            self.hub.discard(fut)
            raise FetchFailure(f"could not switch to {language}: {e}") from e
        if not ok:
            self.hub.discard(fut)
            raise FetchFailure(f"host refused switch to {language}")
        doc = await self.hub.wait_for(language, self.config.switch_wait, video_id, future=fut)
        if doc is None and self.cache.entry_for(language, video_id) is None:
            raise FetchFailure(
                f"no {language} document within {self.config.switch_wait:.1f}s of switching", switched=True
            )
        return True

    async def execute_strategy(
        self,
        strategy: Strategy,
        original_language: Union[str, None, _Unknown],
        primary: str,
        secondary: str,
        available: Optional[Sequence[str]] = None,
    ) -> FetchResult:
        result = FetchResult(strategy=strategy)
        targets = languages_for(strategy, primary, secondary)
        if not targets:
            log.debug("%s: nothing to fetch", strategy.value)
            return result

        log.info("executing %s for %s", strategy.value, targets)
        active = original_language
        try:
            for language in targets:
                if available is not None and language not in available:
                    log.info("host lists no %s track, not fetching it", language)
                    result.unavailable.append(language)
                    continue
                try:
                    if await self.fetch_language(language, active):
                        result.switched = True
                        active = language
                    result.fetched.append(language)
                except FetchFailure as e:
                    log.warning("fetch %s failed: %s", language, e)
                    if e.switched:
                        result.switched = True
                        active = language
                    result.failed.append(language)
        finally:
            if result.switched and active != original_language:
                result.restored = await self.restore(original_language)
        return result

    async def load(
        self,
        video_id: str,
        start: float,
        primary: str,
        secondary: str,
        dual_enabled: bool,
    ) -> Optional[FetchResult]:
        """Run the whole pipeline for the window starting at *start*.

        Returns ``None`` when that window was already requested, or failed
        too recently to be retried.
        """
        interval = self.intervals.request(start, start + self.config.window)
        if interval is None:
            return None
        self._video_id = video_id
        try:
            coverage = await self.check_existing_cache(video_id)
            status = analyze_cache_status(coverage, primary, secondary, dual_enabled)
            strategy = determine_strategy(status)
            original = available = None
            if strategy is not Strategy.USE_CACHE_ONLY:
                available = await self.available_languages()
                original = await self.record_active_language()
            result = await self.execute_strategy(strategy, original, primary, secondary, available)
        except Exception:
            self.intervals.mark_failed(interval)
            raise
        if result.ok:
            self.intervals.mark_done(interval)
        else:
            self.intervals.mark_failed(interval)
        log.info(
            "load %s @ %.1fs: %s fetched=%s failed=%s unavailable=%s",
            video_id, start, result.strategy.value, result.fetched, result.failed, result.unavailable,
        )
        return result
