import pytest

from mpv_dualsub.bridge import DocumentIntercepted
from mpv_dualsub.cache import LanguageCache
from mpv_dualsub.errors import StaleCacheMismatch
from mpv_dualsub.models import CacheKey

from tests.fakes import EN_CUES, ttml_document


class TestCacheKey:
    def test_parse(self):
        key = CacheKey.parse("zh-Hant_vid1_3_extra")
        assert key == CacheKey("zh-Hant", "vid1", ("3", "extra"))
        assert str(key) == "zh-Hant_vid1_3_extra"

    @pytest.mark.parametrize("raw", [None, "", "en", "_vid1", "en_"])
    def test_malformed(self, raw):
        assert CacheKey.parse(raw) is None


class TestStore:
    def test_store_parses_and_indexes(self, en_document):
        cache = LanguageCache()
        cache.video_id = "vid1"
        entry = cache.store("en_vid1_1", en_document)
        assert entry is not None
        assert entry.language == "en"
        assert entry.video_id == "vid1"
        assert len(entry.subtitles) == 3
        assert entry.time_index.lookup(1.0).text == "Hello"
        assert "bottom" in entry.region_configs
        assert "en_vid1_1" in cache

    def test_same_document_is_stored_once(self, en_document):
        cache = LanguageCache()
        first = cache.store("en_vid1_1", en_document)
        assert cache.store("en_vid1_1", en_document) is first
        assert len(cache) == 1

    def test_new_document_replaces_entry(self, en_document):
        cache = LanguageCache()
        cache.store("en_vid1_1", en_document)
        replacement = cache.store("en_vid1_1", ttml_document("en", EN_CUES[:1]))
        assert len(cache.get("en_vid1_1").subtitles) == 1
        assert cache.get("en_vid1_1") is replacement

    def test_explicit_language_overrides_key(self, en_document):
        entry = LanguageCache().store("en_vid1_1", en_document, language="en-US")
        assert entry.language == "en-US"

    def test_document_of_other_video_is_skipped(self, en_document):
        cache = LanguageCache()
        cache.video_id = "vid1"
        assert cache.store("en_vid2_1", en_document) is None
        assert len(cache) == 0

    def test_malformed_key_is_skipped(self, en_document):
        assert LanguageCache().store("garbage", en_document) is None

    def test_document_without_entries_is_skipped(self):
        cache = LanguageCache()
        assert cache.store("en_vid1_1", "<tt") is None
        assert cache.store("en_vid1_2", ttml_document("en", [])) is None
        assert len(cache) == 0


class TestValidateKey:
    def test_stale(self):
        cache = LanguageCache()
        cache.video_id = "vid1"
        with pytest.raises(StaleCacheMismatch) as info:
            cache.validate_key("en_vid2")
        assert info.value.expected == "vid1"
        assert info.value.actual == "vid2"

    def test_malformed(self):
        with pytest.raises(ValueError):
            LanguageCache().validate_key("nounderscore")

    def test_explicit_video(self):
        assert LanguageCache().validate_key("en_vid3", "vid3").video_id == "vid3"


class TestCheckExisting:
    def test_materialises_retained_documents_of_current_video(self, en_document, zh_document):
        cache = LanguageCache()
        documents = {
            "en_vid1_1": DocumentIntercepted("en_vid1_1", en_document, "en"),
            "zh-Hant_vid2_2": DocumentIntercepted("zh-Hant_vid2_2", zh_document, "zh-Hant"),
        }
        coverage = cache.check_existing("vid1", documents)
        assert set(coverage) == {"en"}
        assert cache.keys() == ["en_vid1_1"]
        assert cache.video_id == "vid1"

    def test_reuses_parsed_entries(self, en_document):
        cache = LanguageCache()
        documents = {"en_vid1_1": DocumentIntercepted("en_vid1_1", en_document, "en")}
        first = cache.check_existing("vid1", documents)["en"]
        again = cache.check_existing("vid1", {})["en"]
        assert again is first

    def test_stale_entries_are_skipped_not_deleted(self, en_document):
        cache = LanguageCache()
        cache.store("en_vid1_1", en_document)
        assert cache.check_existing("vid2") == {}
        assert "en_vid1_1" in cache


class TestEviction:
    def _two_videos(self, en_document, zh_document) -> LanguageCache:
        cache = LanguageCache()
        cache.store("en_vid1_1", en_document)
        cache.store("zh-Hant_vid1_2", zh_document)
        cache.store("en_vid2_3", en_document)
        return cache

    def test_purge_stale(self, en_document, zh_document):
        cache = self._two_videos(en_document, zh_document)
        assert cache.purge_stale("vid2") == ["en_vid1_1", "zh-Hant_vid1_2"]
        assert cache.keys() == ["en_vid2_3"]
        assert cache.video_id == "vid2"

    def test_evict(self, en_document, zh_document):
        cache = self._two_videos(en_document, zh_document)
        assert cache.evict("vid2") == ["en_vid2_3"]
        assert cache.languages("vid1") == {"en", "zh-Hant"}

    def test_lookup_by_language(self, en_document, zh_document):
        cache = self._two_videos(en_document, zh_document)
        assert cache.entry_for("zh-Hant", "vid1").key == CacheKey("zh-Hant", "vid1", ("2",))
        assert cache.entry_for("zh-Hant", "vid2") is None
        assert cache.is_valid_for("en", "vid2")
        assert not cache.is_valid_for("ja", "vid1")
