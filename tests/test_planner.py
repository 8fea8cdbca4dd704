import asyncio

import pytest

from mpv_dualsub.bridge import DocumentIntercepted, NotificationHub
from mpv_dualsub.cache import LanguageCache
from mpv_dualsub.config import FetchConfig
from mpv_dualsub.intervals import FetchIntervals
from mpv_dualsub.models import IntervalStatus, Strategy
from mpv_dualsub.planner import UNKNOWN, FetchPlanner, analyze_cache_status, determine_strategy, languages_for

from tests.fakes import DOCUMENTS, FakeBridge

FAST = FetchConfig(passive_wait=0.05, switch_wait=0.3, command_timeout=0.3)


def strategy_for(cached, dual_enabled=True, primary="zh-Hant", secondary="en"):
    cache_map = {lang: object() for lang in cached}
    return determine_strategy(analyze_cache_status(cache_map, primary, secondary, dual_enabled))


class TestStrategy:
    @pytest.mark.parametrize(
        "cached, dual_enabled, expected",
        [
            ((), True, Strategy.FETCH_BOTH),
            (("zh-Hant",), True, Strategy.FETCH_SECONDARY),
            (("en",), True, Strategy.FETCH_PRIMARY),
            (("zh-Hant", "en"), True, Strategy.USE_CACHE_ONLY),
            ((), False, Strategy.FETCH_PRIMARY),
            (("zh-Hant",), False, Strategy.USE_CACHE_ONLY),
            (("ja",), True, Strategy.FETCH_BOTH),
        ],
    )
    def test_table(self, cached, dual_enabled, expected):
        assert strategy_for(cached, dual_enabled) is expected

    def test_deterministic(self):
        assert {strategy_for(("en",)) for _ in range(10)} == {Strategy.FETCH_PRIMARY}

    def test_status_fields(self):
        status = analyze_cache_status({"en": object(), "ja": object()}, "zh-Hant", "en", False)
        assert not status.has_primary and status.has_secondary
        assert status.needs_primary and not status.needs_secondary
        assert status.available_languages == ("en", "ja")

    def test_languages_for(self):
        assert languages_for(Strategy.FETCH_BOTH, "zh-Hant", "en") == ["zh-Hant", "en"]
        assert languages_for(Strategy.FETCH_BOTH, "en", "en") == ["en"]
        assert languages_for(Strategy.FETCH_SECONDARY, "zh-Hant", "en") == ["en"]
        assert languages_for(Strategy.USE_CACHE_ONLY, "zh-Hant", "en") == []


def make_planner(bridge: FakeBridge, hub: NotificationHub, store: bool = True):
    cache = LanguageCache()
    cache.video_id = bridge.video_id
    if store:
        hub.subscribe(DocumentIntercepted, lambda m: cache.store(m.cache_key, m.raw_document, m.language))
    planner = FetchPlanner(bridge, hub, cache, FetchIntervals(), FAST)
    planner._video_id = bridge.video_id
    return planner


class TestExecuteStrategy:
    def test_fetches_in_order_and_stays_when_already_on_original(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, active="en")
            planner = make_planner(bridge, hub)
            result = await planner.execute_strategy(Strategy.FETCH_BOTH, "en", "zh-Hant", "en")
            return bridge, planner, result

        bridge, planner, result = asyncio.run(main())
        assert bridge.switches == ["zh-Hant", "en"]
        assert result.fetched == ["zh-Hant", "en"]
        assert result.switched and not result.restored
        assert planner.cache.languages("vid1") == {"zh-Hant", "en"}

    def test_restores_original_language(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, extra_languages=["ja"], active="ja")
            planner = make_planner(bridge, hub)
            result = await planner.execute_strategy(Strategy.FETCH_BOTH, "ja", "zh-Hant", "en")
            return bridge, result

        bridge, result = asyncio.run(main())
        assert bridge.switches == ["zh-Hant", "en", "ja"]
        assert bridge.active == "ja"
        assert result.ok and result.restored

    def test_restores_when_nothing_was_active(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub)
            planner = make_planner(bridge, hub)
            return bridge, await planner.execute_strategy(Strategy.FETCH_PRIMARY, None, "zh-Hant", "en")

        bridge, result = asyncio.run(main())
        assert bridge.switches == ["zh-Hant", None]
        assert bridge.active is None
        assert result.restored

    def test_restores_after_a_failed_fetch(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, extra_languages=["zh-Hant", "ja"], active="ja")
            del bridge.documents["zh-Hant"]
            planner = make_planner(bridge, hub)
            return bridge, await planner.execute_strategy(Strategy.FETCH_BOTH, "ja", "zh-Hant", "en")

        bridge, result = asyncio.run(main())
        assert result.failed == ["zh-Hant"]
        assert result.fetched == ["en"]
        assert bridge.switches == ["zh-Hant", "en", "ja"]
        assert result.restored and not result.ok

    def test_restores_when_only_the_switch_happened(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, extra_languages=["ja"], active="ja")
            bridge.publish_on_switch = False
            planner = make_planner(bridge, hub)
            return bridge, await planner.execute_strategy(Strategy.FETCH_PRIMARY, "ja", "zh-Hant", "en")

        bridge, result = asyncio.run(main())
        assert result.failed == ["zh-Hant"]
        assert bridge.switches == ["zh-Hant", "ja"]
        assert bridge.active == "ja"

    def test_refused_switch_counts_as_failure(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, active="en")
            planner = make_planner(bridge, hub)
            return bridge, await planner.execute_strategy(Strategy.FETCH_PRIMARY, "en", "ko", "en")

        bridge, result = asyncio.run(main())
        assert result.failed == ["ko"]
        assert bridge.active == "en"
        assert bridge.switches == ["ko"]
        assert not result.switched and not result.restored

    def test_active_language_is_waited_for_without_switching(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, active="en")
            planner = make_planner(bridge, hub)
            asyncio.get_running_loop().call_later(0.01, bridge.publish, "en")
            return bridge, await planner.execute_strategy(Strategy.FETCH_SECONDARY, "en", "zh-Hant", "en")

        bridge, result = asyncio.run(main())
        assert bridge.switches == []
        assert result.fetched == ["en"]
        assert not result.switched

    def test_passive_wait_times_out(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, active="en")
            planner = make_planner(bridge, hub)
            return bridge, await planner.execute_strategy(Strategy.FETCH_SECONDARY, "en", "zh-Hant", "en")

        bridge, result = asyncio.run(main())
        assert result.failed == ["en"]
        assert bridge.switches == []
        assert not result.restored


class TestLoad:
    def test_load_marks_interval_and_skips_repeats(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, active="en")
            planner = make_planner(bridge, hub)
            first = await planner.load("vid1", 0.0, "zh-Hant", "en", True)
            repeat = await planner.load("vid1", 0.0, "zh-Hant", "en", True)
            later = await planner.load("vid1", 400.0, "zh-Hant", "en", True)
            return bridge, planner, first, repeat, later

        bridge, planner, first, repeat, later = asyncio.run(main())
        assert first.strategy is Strategy.FETCH_BOTH and first.ok
        assert repeat is None
        assert later.strategy is Strategy.USE_CACHE_ONLY
        assert bridge.switches == ["zh-Hant", "en"]
        assert [i.status for i in planner.intervals] == [IntervalStatus.DONE, IntervalStatus.DONE]

    def test_retained_documents_avoid_fetching(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, active="en")
            bridge.publish("zh-Hant")
            bridge.publish("en")
            planner = make_planner(bridge, hub, store=False)
            return bridge, await planner.load("vid1", 0.0, "zh-Hant", "en", True)

        bridge, result = asyncio.run(main())
        assert result.strategy is Strategy.USE_CACHE_ONLY
        assert bridge.switches == []
        assert "get_current_active_language" not in bridge.calls

    def test_failed_load_marks_interval_failed(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, active="en")
            bridge.publish_on_switch = False
            planner = make_planner(bridge, hub)
            result = await planner.load("vid1", 0.0, "zh-Hant", "en", False)
            return planner, result

        planner, result = asyncio.run(main())
        assert not result.ok
        assert [i.status for i in planner.intervals] == [IntervalStatus.FAILED]

    def test_unreadable_active_language_leaves_the_track_alone(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, extra_languages=["ja"], active="ja")
            bridge.fail.add("get_current_active_language")
            planner = make_planner(bridge, hub)
            original = await planner.record_active_language()
            result = await planner.load("vid1", 0.0, "zh-Hant", "en", False)
            return bridge, planner, original, result

        bridge, planner, original, result = asyncio.run(main())
        assert original is UNKNOWN
        assert bridge.switches == []
        assert bridge.active == "ja"
        assert result.failed == ["zh-Hant"]
        assert not result.restored
        assert [i.status for i in planner.intervals] == [IntervalStatus.FAILED]

    def test_nothing_selected_is_not_unknown(self):
        async def main():
            hub = NotificationHub()
            planner = make_planner(FakeBridge(hub), hub)
            return await planner.record_active_language()

        assert asyncio.run(main()) is None

    def test_unlisted_language_is_never_switched_to(self):
        async def main():
            hub = NotificationHub()
            bridge = FakeBridge(hub, documents={"zh-Hant": DOCUMENTS["zh-Hant"]}, extra_languages=["ja"], active="ja")
            planner = make_planner(bridge, hub)
            result = await planner.load("vid1", 0.0, "zh-Hant", "en", True)
            repeat = await planner.load("vid1", 0.0, "zh-Hant", "en", True)
            return bridge, planner, result, repeat

        bridge, planner, result, repeat = asyncio.run(main())
        assert result.fetched == ["zh-Hant"]
        assert result.unavailable == ["en"]
        assert not result.ok
        assert bridge.switches == ["zh-Hant", "ja"]
        assert repeat is None
        assert [i.status for i in planner.intervals] == [IntervalStatus.FAILED]
