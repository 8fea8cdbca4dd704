"""Error taxonomy.

Everything except :class:`DomModeFailure` is recoverable: the component that
catches it logs and degrades (empty result, capability absent, entry ignored,
downgrade, interval marked failed).  A DOM failure has no fallback left and is
surfaced to the UI layer.
"""


class DualSubError(Exception):
    """Base class for all errors raised by mpv-dualsub."""


class ParseError(DualSubError):
    """A timed-text document could not be parsed."""


class ProbeTimeout(DualSubError):
    """A capability probe did not answer within its bound."""

    def __init__(self, probe: str, timeout: float):
        super().__init__(f"{probe} did not respond within {timeout:.1f}s")
        self.probe = probe
        self.timeout = timeout


class StaleCacheMismatch(DualSubError):
    """A cache key belongs to a different video than the one playing."""

    def __init__(self, cache_key: str, expected: str, actual: str):
        super().__init__(f"{cache_key}: cached for video {actual}, playing {expected}")
        self.cache_key = cache_key
        self.expected = expected
        self.actual = actual


class RuntimeModeFailure(DualSubError):
    """The interception source broke while it was the active source."""


class DomModeFailure(DualSubError):
    """Rendered-caption observation broke; there is nothing left to fall back to."""


class FetchFailure(DualSubError):
    """A language switch or document fetch did not complete."""

    def __init__(self, message: str, switched: bool = False):
        super().__init__(message)
        # a switch command was issued before the failure, so the active track may have changed
        self.switched = switched


class BridgeError(DualSubError):
    """The host rejected or could not execute a bridge command."""
