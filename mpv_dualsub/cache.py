"""
Per-(language, video) store of parsed timed-text documents.

Keys have the form ``{language}_{videoId}[_extra...]``.  The cache only ever
serves entries for the video that is currently playing: documents for other
videos are skipped on the way in, and :meth:`LanguageCache.purge_stale` drops
whatever is left over when the video changes.
"""
import hashlib
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .errors import StaleCacheMismatch
from .models import CacheEntry, CacheKey
from .timeindex import BUCKET_SECONDS, MAX_TIMESTAMP, build_time_index
from . import ttml

log = logging.getLogger("cache")


def _digest(raw_document: str) -> str:
    return hashlib.sha1(raw_document.encode("utf8", "replace")).hexdigest()


class LanguageCache:
    def __init__(self, bucket_seconds: float = BUCKET_SECONDS, max_timestamp: float = MAX_TIMESTAMP):
        self.bucket_seconds = bucket_seconds
        self.max_timestamp = max_timestamp
        self.video_id: Optional[str] = None
        self._entries: Dict[str, CacheEntry] = {}

    def __contains__(self, cache_key: str) -> bool:
        return cache_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries)

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        return self._entries.get(cache_key)

    # ── validation ───────────────────────────────────────────────────────────

    def validate_key(self, cache_key: str, video_id: Optional[str] = None) -> CacheKey:
        """Parse *cache_key* and check it belongs to *video_id* (default: the current video).

        Raises ``ValueError`` for malformed keys and :class:`StaleCacheMismatch`
        for keys of another video.
        """
        key = CacheKey.parse(cache_key)
        if key is None:
            raise ValueError(f"malformed cache key: {cache_key!r}")
        expected = video_id if video_id is not None else self.video_id
        if expected is not None and key.video_id != expected:
            raise StaleCacheMismatch(cache_key, expected, key.video_id)
        return key

    # ── ingestion ────────────────────────────────────────────────────────────

    def store(self, cache_key: str, raw_document: str, language: Optional[str] = None) -> Optional[CacheEntry]:
        """Parse and index *raw_document* under *cache_key*.

        Storing the same document under the same key again is a no-op; a
        different document replaces the old entry.  Returns the stored entry,
        or ``None`` when the key is malformed, stale or the document yields no
        entries.
        """
        try:
            key = self.validate_key(cache_key)
        except StaleCacheMismatch as e:
            log.debug("ignoring document: %s", e)
            return None
        except ValueError as e:
            log.debug("ignoring document: %s", e)
            return None

        digest = _digest(raw_document or "")
        existing = self._entries.get(cache_key)
        if existing is not None and existing.digest == digest:
            log.debug("%s already cached", cache_key)
            return existing

        result = ttml.parse(raw_document)
        if not result.subtitles:
            log.warning("%s: document has no usable entries", cache_key)
            return None

        entry = CacheEntry(
            key=key,
            language=language or key.language,
            subtitles=tuple(result.subtitles),
            time_index=build_time_index(result.subtitles, self.bucket_seconds, self.max_timestamp),
            region_configs=dict(result.region_configs),
            digest=digest,
        )
        self._entries[cache_key] = entry
        log.info(
            "cached %s: %d entries, %d regions",
            cache_key, len(entry.subtitles), len(entry.region_configs),
        )
        return entry

    def check_existing(
        self, video_id: str, documents: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, CacheEntry]:
        """Coverage of *video_id*, keyed by language.

        *documents* maps cache keys to objects with ``raw_document`` and
        ``language`` attributes (documents the host retained before anyone
        asked).  Keys of other videos are skipped, not deleted.  Keys already
        parsed are not parsed again but still count toward coverage.
        """
        self.video_id = video_id
        coverage: Dict[str, CacheEntry] = {}
        stale = processed = reused = 0
        pending = dict(documents or {})
        for cache_key in list(self._entries) + [k for k in pending if k not in self._entries]:
            try:
                self.validate_key(cache_key, video_id)
            except StaleCacheMismatch as e:
                log.debug("stale-skip: %s", e)
                stale += 1
                continue
            except ValueError as e:
                log.debug("skip: %s", e)
                continue

            entry = self._entries.get(cache_key)
            if entry is not None:
                reused += 1
            else:
                doc = pending[cache_key]
                entry = self.store(cache_key, getattr(doc, "raw_document", ""), getattr(doc, "language", None))
                if entry is None:
                    continue
                processed += 1
            coverage.setdefault(entry.language, entry)

        log.info(
            "cache check for %s: %d new, %d reused, %d stale, languages=%s",
            video_id, processed, reused, stale, sorted(coverage),
        )
        return coverage

    # ── lookup ───────────────────────────────────────────────────────────────

    def entry_for(self, language: str, video_id: Optional[str] = None) -> Optional[CacheEntry]:
        video_id = video_id if video_id is not None else self.video_id
        for entry in self._entries.values():
            if entry.language == language and (video_id is None or entry.video_id == video_id):
                return entry
        return None

    def languages(self, video_id: Optional[str] = None) -> Set[str]:
        video_id = video_id if video_id is not None else self.video_id
        return {e.language for e in self._entries.values() if video_id is None or e.video_id == video_id}

    def is_valid_for(self, language: str, video_id: str) -> bool:
        return self.entry_for(language, video_id) is not None

    # ── eviction ─────────────────────────────────────────────────────────────

    def _drop(self, keys: Iterable[str]) -> List[str]:
        dropped = []
        for k in keys:
            if self._entries.pop(k, None) is not None:
                dropped.append(k)
                log.debug("evicted %s", k)
        return dropped

    def evict(self, video_id: str) -> List[str]:
        """Remove every entry cached for *video_id*."""
        dropped = self._drop([k for k, e in self._entries.items() if e.video_id == video_id])
        if dropped:
            log.info("evicted %d entries for video %s", len(dropped), video_id)
        return dropped

    def purge_stale(self, current_video_id: str) -> List[str]:
        """Make *current_video_id* current and remove every entry of any other video."""
        self.video_id = current_video_id
        dropped = self._drop([k for k, e in self._entries.items() if e.video_id != current_video_id])
        if dropped:
            log.info("purged %d entries of previous videos", len(dropped))
        return dropped

    def clear(self):
        self._entries.clear()
