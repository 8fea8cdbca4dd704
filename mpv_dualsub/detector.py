"""
Capability probing.

Decides whether subtitles can be obtained by interception or have to be read
from the host's rendered captions:

  1. supported host?                    no → dom
  2. capability script reachable?       ping, else inject + wait + ping again
  3. player API available?
  4. player ready?                      one retry after a short pause
  5. languages listed + fetch self-test

Every probe has its own time bound and the whole run has another one.  A
probe that fails, times out or raises counts as "capability absent";
:meth:`ModeDetector.detect_optimal_mode` itself never raises.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Dict, List, Optional

from attr import dataclass

from .bridge import HostBridge
from .config import DetectorConfig
from .errors import ProbeTimeout
from .models import Mode
from .scheduler import bounded

log = logging.getLogger("detector")


@dataclass(frozen=True, kw_only=True)
class DetectionResult:
    mode: Mode
    failed_check: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0
    timestamp: float = 0.0


class ModeDetector:
    def __init__(self, bridge: HostBridge, config: Optional[DetectorConfig] = None):
        self.bridge = bridge
        self.config = config or DetectorConfig()
        self.last_result: Optional[DetectionResult] = None
        self.history: List[DetectionResult] = []
        self.retry_count = 0
        self._failed_check: Optional[str] = None

    async def _probe(self, name: str, awaitable: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run one probe; ``None`` when it timed out or raised."""
        timeout = self.config.probe_timeout if timeout is None else timeout
        try:
            return await bounded(awaitable, timeout, name)
        except ProbeTimeout as e:
            log.info("%s", e)
        except Exception as e:
            log.info("%s failed: %s", name, e)
        return None

    # ── checks ───────────────────────────────────────────────────────────────

    async def ensure_script_injected(self) -> bool:
        if await self._probe("ping", self.bridge.ping(), self.config.ping_timeout):
            log.debug("capability script present")
            return True
        log.info("capability script not answering, injecting")
        if not await self._probe("inject", self.bridge.inject()):
            return False
        await asyncio.sleep(self.config.reinject_delay)
        if await self._probe("ping", self.bridge.ping(), self.config.verify_timeout):
            log.info("capability script injected")
            return True
        log.info("capability script still not answering after injection")
        return False

    async def check_api_available(self) -> bool:
        return bool(await self._probe("check_capability_api_available", self.bridge.check_capability_api_available()))

    async def check_player_ready(self) -> bool:
        if await self._probe("check_player_ready", self.bridge.check_player_ready()):
            return True
        log.debug("player not ready, retrying in %.1fs", self.config.player_retry_delay)
        await asyncio.sleep(self.config.player_retry_delay)
        return bool(await self._probe("check_player_ready", self.bridge.check_player_ready()))

    async def check_fetch_capability(self) -> bool:
        languages = await self._probe("fetch_available_languages", self.bridge.fetch_available_languages())
        if not languages:
            log.info("no languages available")
            return False
        log.debug("%d languages available: %s", len(languages), list(languages))
        return bool(await self._probe("test_fetch_capability", self.bridge.test_fetch_capability()))

    async def _intercept_available(self) -> bool:
        checks = (
            ("script", self.ensure_script_injected),
            ("api", self.check_api_available),
            ("player", self.check_player_ready),
            ("fetch", self.check_fetch_capability),
        )
        for name, check in checks:
            if not await check():
                self._failed_check = name
                log.info("interception unavailable: %s check failed", name)
                return False
        return True

    # ── public API ───────────────────────────────────────────────────────────

    async def detect_optimal_mode(self) -> Mode:
        started = time.monotonic()
        self._failed_check = None
        mode, error = Mode.DOM, None
        try:
            if not await self._probe("is_supported_host", self.bridge.is_supported_host()):
                self._failed_check = "host"
                log.info("unsupported host, using rendered captions")
            elif await asyncio.wait_for(self._intercept_available(), self.config.overall_timeout):
                mode = Mode.INTERCEPT
        except asyncio.TimeoutError:
            error = f"detection exceeded {self.config.overall_timeout:.1f}s"
            log.warning("%s", error)
        except Exception as e:
            error = str(e) or type(e).__name__
            log.warning("detection failed, using rendered captions", exc_info=True)

        result = DetectionResult(
            mode=mode,
            failed_check=self._failed_check,
            error=error,
            duration=time.monotonic() - started,
            timestamp=time.time(),
        )
        self.last_result = result
        self.history.append(result)
        log.info("detected mode %s in %.2fs", mode.value, result.duration)
        return mode

    async def redetect(self) -> Mode:
        self.retry_count += 1
        return await self.detect_optimal_mode()

    def detection_history(self) -> Dict[str, Any]:
        return {
            "last_check": self.last_result,
            "retry_count": self.retry_count,
            "checks": len(self.history),
            "probe_timeout": self.config.probe_timeout,
            "overall_timeout": self.config.overall_timeout,
        }
