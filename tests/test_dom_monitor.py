import asyncio

from mpv_dualsub.bridge import NotificationHub
from mpv_dualsub.config import RenderConfig
from mpv_dualsub.dom_monitor import DomMonitor
from mpv_dualsub.errors import DomModeFailure
from mpv_dualsub.models import Position, RenderedCaption

from tests.fakes import FakeBridge

CONFIG = RenderConfig(interval=0.01, max_failures=2)


def caption(text, top=600.0, left=100.0):
    return RenderedCaption(text=text, position=Position(top=top, left=left))


class TestProcess:
    def test_dedupes_text_and_small_moves(self):
        monitor = DomMonitor(FakeBridge(NotificationHub()), config=CONFIG)
        seen = []
        monitor.on_subtitle(seen.append)
        monitor.process(caption("a"))
        monitor.process(caption("a", top=603.0))
        monitor.process(caption("a", top=610.0))
        monitor.process(caption("b", top=610.0))
        assert [(c.text, c.position.top) for c in seen] == [("a", 600.0), ("a", 610.0), ("b", 610.0)]

    def test_disappearing_caption_emits_one_empty_event(self):
        monitor = DomMonitor(FakeBridge(NotificationHub()), config=CONFIG)
        seen = []
        monitor.on_subtitle(seen.append)
        monitor.process(caption("a"))
        monitor.process(None)
        monitor.process(RenderedCaption(text=""))
        assert [c.text for c in seen] == ["a", ""]


class TestPolling:
    def test_scan_reports_after_repeated_failures(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            bridge.fail.add("get_rendered_caption")
            errors = []
            monitor = DomMonitor(bridge, config=CONFIG)
            monitor.on_error(errors.append)
            await monitor.initialize()
            monitor.active = True
            results = [await monitor.scan(), await monitor.scan()]
            return results, errors

        results, errors = asyncio.run(main())
        assert results == [False, True]
        assert len(errors) == 1 and isinstance(errors[0], DomModeFailure)

    def test_start_stop(self):
        async def main():
            bridge = FakeBridge(NotificationHub())
            bridge.caption = RenderedCaption(text="hello")
            seen = []
            monitor = DomMonitor(bridge, config=CONFIG)
            monitor.on_subtitle(seen.append)
            monitor.start()
            started_uninitialized = monitor.active
            await monitor.initialize()
            monitor.start()
            await asyncio.sleep(0.05)
            status = monitor.get_status()
            monitor.cleanup()
            return seen, started_uninitialized, status, monitor

        seen, started_uninitialized, status, monitor = asyncio.run(main())
        assert not started_uninitialized
        assert [c.text for c in seen] == ["hello"]
        assert status["observing"] and status["last_subtitle"]["text"] == "hello"
        assert not monitor.active and not monitor.initialized
