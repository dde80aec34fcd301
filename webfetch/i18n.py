"""
Message catalogs for user-facing text (continuation notes, error messages).

Catalogs live in locales/<locale>.yaml as nested mappings; keys are addressed
with dots, e.g. translate("chunk.last", {"current": 2, "total": 2}).
"""

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import structlog
import yaml

logger = structlog.get_logger(__name__)

LOCALES_DIR = Path(__file__).parent / "locales"
DEFAULT_LOCALE = "en"


class _KeepMissing(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def _flatten(tree: Mapping[str, Any], prefix: str = "") -> Dict[str, str]:
    flat = {}
    for key, value in tree.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, dotted + "."))
        else:
            flat[dotted] = str(value)
    return flat


def load_catalog(locale: str) -> Dict[str, str]:
    """Load a locale catalog; an unknown or broken locale yields an empty catalog."""
    path = LOCALES_DIR / f"{locale}.yaml"
    try:
        with open(path, "r", encoding="utf-8") as f:
            return _flatten(yaml.safe_load(f) or {})
    except FileNotFoundError:
        logger.warning("locale_not_found", locale=locale, path=str(path))
    except yaml.YAMLError as e:
        logger.error("locale_invalid", locale=locale, error=str(e))
    return {}


class Translator:
    def __init__(self, locale: str = DEFAULT_LOCALE):
        self.locale = locale
        self._messages = load_catalog(locale)
        self._fallback = self._messages if locale == DEFAULT_LOCALE else load_catalog(DEFAULT_LOCALE)

    def __call__(self, key: str, params: Optional[Mapping[str, Any]] = None) -> str:
        return self.translate(key, params)

    def translate(self, key: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Render a message; returns the key itself when no catalog has it."""
        template = self._messages.get(key) or self._fallback.get(key)
        if template is None:
            return key
        if not params:
            return template
        try:
            return template.format_map(_KeepMissing(params))
        except (ValueError, IndexError, AttributeError):
            return template


_translators: Dict[str, Translator] = {}


def get_translator(locale: str = DEFAULT_LOCALE) -> Translator:
    if locale not in _translators:
        _translators[locale] = Translator(locale)
    return _translators[locale]


def translate(key: str, params: Optional[Mapping[str, Any]] = None, locale: str = DEFAULT_LOCALE) -> str:
    return get_translator(locale).translate(key, params)
