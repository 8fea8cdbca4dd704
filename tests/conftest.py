# tests/conftest.py
import pytest

from mpv_dualsub.config import (
    Config,
    DetectorConfig,
    FetchConfig,
    LanguageConfig,
    RenderConfig,
    UpgradeConfig,
)

from tests.fakes import DOCUMENTS


@pytest.fixture
def fast_config() -> Config:
    """Defaults with every wait shrunk so async tests finish in milliseconds."""
    return Config(
        languages=LanguageConfig(primary="zh-Hant", secondary="en", dual_enabled=True),
        fetch=FetchConfig(passive_wait=0.05, switch_wait=0.3, command_timeout=0.3),
        detector=DetectorConfig(
            probe_timeout=0.2,
            ping_timeout=0.05,
            verify_timeout=0.05,
            reinject_delay=0.0,
            player_retry_delay=0.0,
            overall_timeout=2.0,
        ),
        upgrade=UpgradeConfig(interval=0.01, max_elapsed=2.0, max_attempts=100),
        render=RenderConfig(interval=0.01, max_failures=3),
    )


@pytest.fixture
def zh_document() -> str:
    return DOCUMENTS["zh-Hant"]


@pytest.fixture
def en_document() -> str:
    return DOCUMENTS["en"]
