"""In-memory language preferences with change subscriptions."""
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import LanguageConfig

log = logging.getLogger("settings")

PRIMARY_LANGUAGE = "primary_language"
SECONDARY_LANGUAGE = "secondary_language"
DUAL_ENABLED = "dual_enabled"

KEYS = (PRIMARY_LANGUAGE, SECONDARY_LANGUAGE, DUAL_ENABLED)

Listener = Callable[[str, Any, Any], Any]


class SettingsStore:
    def __init__(self, languages: Optional[LanguageConfig] = None):
        languages = languages or LanguageConfig()
        self._values: Dict[str, Any] = {
            PRIMARY_LANGUAGE: languages.primary,
            SECONDARY_LANGUAGE: languages.secondary,
            DUAL_ENABLED: languages.dual_enabled,
        }
        self._listeners: Dict[str, List[Listener]] = {}

    @property
    def primary_language(self) -> str:
        return self._values[PRIMARY_LANGUAGE]

    @property
    def secondary_language(self) -> str:
        return self._values[SECONDARY_LANGUAGE]

    @property
    def dual_enabled(self) -> bool:
        return bool(self._values[DUAL_ENABLED])

    def get(self, key: str) -> Any:
        if key not in self._values:
            raise KeyError(key)
        return self._values[key]

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    def set(self, key: str, value: Any):
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]):
        """Update several keys, then notify listeners of the ones that changed."""
        changed = []
        for key, value in values.items():
            if key not in self._values:
                raise KeyError(key)
            old = self._values[key]
            if old != value:
                self._values[key] = value
                changed.append((key, old, value))
        for key, old, value in changed:
            log.info("%s: %r → %r", key, old, value)
            for listener in list(self._listeners.get(key, ())):
                try:
                    listener(key, old, value)
                except Exception:
                    log.exception("settings listener failed for %s", key)

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        if key not in self._values:
            raise KeyError(key)
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe():
            try:
                self._listeners.get(key, []).remove(listener)
            except ValueError:
                pass

        return unsubscribe
