import logging
import os.path
import pathlib
import tomllib
from functools import cache
from typing import Any, List, Optional

import cattrs
from attr import dataclass, field


def expand_path(path: str) -> pathlib.Path:
    return pathlib.Path(os.path.expandvars(os.path.expanduser(path)))


@dataclass(kw_only=True)
class LanguageConfig:
    # Language shown on the main line (BCP-47 code as reported by the host)
    primary: str = "zh-Hant"
    # Language shown on the smaller second line when dual mode is on
    secondary: str = "en"
    # Show both languages at once
    dual_enabled: bool = True


@dataclass(kw_only=True)
class IndexConfig:
    # Width of one time-index bucket (seconds)
    bucket_seconds: float = 10.0
    # Entries with timestamps beyond this are treated as corrupt (seconds)
    max_timestamp: float = 86400.0
    # Matching slack around an entry's [start, end] window (seconds).
    # Used by every lookup, indexed or linear.
    tolerance: float = 0.1


@dataclass(kw_only=True)
class FetchConfig:
    # How long to wait for a document when the wanted language is already active
    passive_wait: float = 3.0
    # How long to wait for a document after switching the active track
    switch_wait: float = 10.0
    # Upper bound for a single switch command to be acknowledged
    command_timeout: float = 5.0
    # Length of one requested time window (seconds)
    window: float = 180.0
    # Requested intervals closer than this are treated as one (seconds)
    merge_gap: float = 10.0
    # Prefetch the next window when playback gets this close to the end of the current one
    prefetch_threshold: float = 60.0
    # A failed window is not requested again until this long after it failed
    retry_delay: float = 30.0


@dataclass(kw_only=True)
class DetectorConfig:
    # Default bound for one capability probe
    probe_timeout: float = 5.0
    # Bound for the first "is the capability script there" probe
    ping_timeout: float = 1.0
    # Bound for the probe after re-injection
    verify_timeout: float = 2.0
    # Pause between re-injection and verification
    reinject_delay: float = 1.0
    # Pause before re-checking a player that was not ready
    player_retry_delay: float = 2.0
    # Bound for the whole detection run
    overall_timeout: float = 20.0


@dataclass(kw_only=True)
class UpgradeConfig:
    # Seconds between capability polls while observing rendered captions
    interval: float = 1.0
    # Give up upgrading after this long (seconds)
    max_elapsed: float = 30.0
    # Give up upgrading after this many polls
    max_attempts: int = 30


@dataclass(kw_only=True)
class RenderConfig:
    # Render loop period (seconds)
    interval: float = 0.1
    # Consecutive failing ticks before the source is reported as broken
    max_failures: int = 20


@dataclass(kw_only=True)
class MpvConfig:
    executable: Optional[str] = None
    start_mpv: bool = False
    start_args: dict[str, Any] = field(factory=dict)
    ipc_socket: Optional[str] = "mpvsocket"
    toggle_binding: str = "ctrl+."
    # External subtitle files with these suffixes are treated as timed-text documents
    supported_suffixes: List[str] = field(factory=lambda: [".ttml", ".dfxp", ".xml"])


@dataclass(kw_only=True)
class OverlayConfig:
    # Pixels from the bottom edge in a 1280×720 virtual space (proportionally scaled).
    margin_bottom: int = 50
    # Font size in the 1280×720 virtual OSD space (0 = MPV default)
    font_size: int = 0
    # Secondary line size relative to the primary line
    secondary_font_scale: float = 0.75


@dataclass(kw_only=True)
class Config:
    languages: LanguageConfig = field(factory=LanguageConfig)
    index: IndexConfig = field(factory=IndexConfig)
    fetch: FetchConfig = field(factory=FetchConfig)
    detector: DetectorConfig = field(factory=DetectorConfig)
    upgrade: UpgradeConfig = field(factory=UpgradeConfig)
    render: RenderConfig = field(factory=RenderConfig)
    mpv: MpvConfig = field(factory=MpvConfig)
    overlay: OverlayConfig = field(factory=OverlayConfig)


def load_config_paths(*paths: pathlib.Path) -> "Config":
    for p in paths:
        if not p.exists():
            continue
        logging.getLogger("config").info("using configuration from %s", p)
        raw: Any = tomllib.loads(p.read_text(encoding="utf8"))
        conv = cattrs.GenConverter(forbid_extra_keys=True)
        return conv.structure(raw, Config)
    raise RuntimeError("could not find configuration file")


def config_paths() -> List[pathlib.Path]:
    return [
        expand_path("~/.config/mpv-dualsub") / "config.toml",
        expand_path(".") / "mpv-dualsub.toml",
        expand_path(__file__).parent / "config.toml",
    ]


def user_config_path() -> pathlib.Path:
    return config_paths()[0]


def get_config_path() -> Optional[pathlib.Path]:
    """The file :func:`get_config` loads from, if any."""
    return next((p for p in config_paths() if p.exists()), None)


@cache
def get_config() -> Config:
    return load_config_paths(*config_paths())
