import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from vidrelay.config.settings import config

logger = logging.getLogger(__name__)

LOCALES_DIR = Path(__file__).resolve().parent.parent / "locales"


def _lookup(catalog: Dict[str, Any], key: str) -> Optional[str]:
    """Resolve a dotted key such as "error.rate_limit" in a nested catalog"""
    value: Any = catalog
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value if isinstance(value, str) else None


class I18n:
    """Message catalogs loaded from vidrelay/locales/<code>.json"""

    def __init__(self, locales_dir: Path = LOCALES_DIR, default_locale: Optional[str] = None):
        self.default_locale = default_locale or config.i18n.default_locale
        self.locales: Dict[str, Dict[str, Any]] = {}
        self.load_locales(locales_dir)

    def load_locales(self, locales_dir: Path) -> None:
        if not locales_dir.is_dir():
            logger.warning(f"Locales directory not found at {locales_dir}")
            return

        for path in sorted(locales_dir.glob("*.json")):
            try:
                self.locales[path.stem] = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.error(f"Error loading locale {path.stem}: {e}")

    def get(self, key: str, locale: Optional[str] = None, **kwargs) -> str:
        """
        Translated message for key, falling back to the default locale and
        finally to the key itself. Missing placeholders leave the template as is.
        """
        message = None
        for code in (locale, self.default_locale):
            if code in self.locales:
                message = _lookup(self.locales[code], key)
                if message is not None:
                    break
        if message is None:
            return key

        try:
            return message.format(**kwargs)
        except (KeyError, IndexError):
            return message


i18n = I18n()
