import asyncio

from mpv_dualsub.bridge import NotificationHub
from mpv_dualsub.cache import LanguageCache
from mpv_dualsub.config import RenderConfig
from mpv_dualsub.errors import RuntimeModeFailure
from mpv_dualsub.intervals import FetchIntervals
from mpv_dualsub.render import RenderLoop, Track

from tests.fakes import DOCUMENTS, FakeBridge


def tracks():
    cache = LanguageCache()
    zh = cache.store("zh-Hant_vid1_1", DOCUMENTS["zh-Hant"])
    en = cache.store("en_vid1_2", DOCUMENTS["en"])
    return Track.from_entry(zh), Track.from_entry(en)


def make_loop(bridge, emitted, **kwargs):
    loop = RenderLoop(bridge, emitted.append, FetchIntervals(), config=RenderConfig(interval=0.01, max_failures=3), **kwargs)
    loop.primary, loop.secondary = tracks()
    return loop


class TestTrack:
    def test_lookup_without_index_scans(self):
        primary, _ = tracks()
        primary.time_index = None
        assert primary.lookup(1.0, 0.1).text == "你好"

    def test_clear_keeps_language(self):
        primary, _ = tracks()
        primary.clear()
        assert len(primary) == 0
        assert primary.language == "zh-Hant"
        assert primary.lookup(1.0, 0.1) is None


class TestTick:
    def test_emits_only_when_text_changes(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            emitted = []
            loop = make_loop(bridge, emitted)
            for pos in (1.0, 1.2, 1.9, 3.0, 3.5):
                bridge.time = pos
                await loop.tick()
            return emitted

        emitted = asyncio.run(main())
        assert [(d.primary_text, d.secondary_text) for d in emitted] == [("你好", "Hello"), ("再見", "Goodbye")]
        assert emitted[0].primary_language == "zh-Hant"
        assert emitted[0].primary_entry.region_id == "bottom"

    def test_gap_emits_empty_once(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            emitted = []
            loop = make_loop(bridge, emitted)
            for pos in (1.0, 2.3, 2.35, 2.6):
                bridge.time = pos
                await loop.tick()
            return emitted

        emitted = asyncio.run(main())
        assert [d.primary_text for d in emitted] == ["你好", "", "再見"]
        assert emitted[1].is_empty

    def test_dual_disabled_hides_secondary(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            emitted = []
            loop = make_loop(bridge, emitted)
            loop.dual_enabled = False
            bridge.time = 1.0
            return await loop.tick()

        data = asyncio.run(main())
        assert data.primary_text == "你好"
        assert data.secondary_text == ""
        assert not data.dual_enabled

    def test_tolerance_applies(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            loop = make_loop(bridge, [])
            bridge.time = 2.05
            return await loop.tick()

        assert asyncio.run(main()).primary_text == "你好"

    def test_no_position_no_emit(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            bridge.time = None
            emitted = []
            loop = make_loop(bridge, emitted)
            return await loop.tick(), emitted

        data, emitted = asyncio.run(main())
        assert data is None and emitted == []


class TestPrefetch:
    def test_prefetch_near_end_of_window(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            starts = []

            async def prefetch(start):
                starts.append(start)

            loop = make_loop(bridge, [], prefetch=prefetch, prefetch_threshold=60.0)
            loop.intervals.mark_done(loop.intervals.request(0.0, 180.0))
            bridge.time = 100.0
            await loop.tick()
            bridge.time = 150.0
            await loop.tick()
            await asyncio.sleep(0)
            return starts

        assert asyncio.run(main()) == [180.0]

    def test_one_prefetch_at_a_time(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            starts = []
            release = asyncio.Event()

            async def prefetch(start):
                starts.append(start)
                await release.wait()

            loop = make_loop(bridge, [], prefetch=prefetch)
            bridge.time = 500.0
            for _ in range(3):
                await loop.tick()
                await asyncio.sleep(0)
            release.set()
            loop.stop()
            return starts

        assert asyncio.run(main()) == [500.0]


class TestRunLoop:
    def test_repeated_failures_are_reported(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            bridge.fail.add("get_current_time")
            failures = []
            loop = make_loop(bridge, [], on_failure=failures.append)
            results = [await loop._run_tick() for _ in range(3)]
            return results, failures

        results, failures = asyncio.run(main())
        assert results == [False, False, True]
        assert len(failures) == 1
        assert isinstance(failures[0], RuntimeModeFailure)

    def test_success_resets_failure_count(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            bridge.fail.add("get_current_time")
            loop = make_loop(bridge, [], on_failure=lambda e: None)
            await loop._run_tick()
            await loop._run_tick()
            bridge.fail.clear()
            await loop._run_tick()
            return loop.failures

        assert asyncio.run(main()) == 0

    def test_start_and_stop(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            bridge.time = 1.0
            emitted = []
            loop = make_loop(bridge, emitted)
            loop.start()
            await asyncio.sleep(0.05)
            running = loop.running
            loop.stop()
            return running, loop, emitted

        running, loop, emitted = asyncio.run(main())
        assert running and not loop.running
        assert [d.primary_text for d in emitted] == ["你好"]
        assert loop.last_emitted is None
