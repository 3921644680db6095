from typing import List, Optional, Tuple
from urllib.parse import urlparse

from vidrelay.config.settings import config


def _parse_accept_language(header: str) -> List[Tuple[str, float]]:
    """Primary language subtags with their q weights, highest first"""
    weighted = []
    for position, item in enumerate(header.split(",")):
        parts = [p.strip() for p in item.split(";")]
        tag = parts[0].split("-")[0].lower()
        if not tag:
            continue
        q = 1.0
        for param in parts[1:]:
            if param.startswith("q="):
                try:
                    q = float(param[2:])
                except ValueError:
                    q = 0.0
        weighted.append((tag, q, position))

    # stable on position for equal weights
    weighted.sort(key=lambda entry: (-entry[1], entry[2]))
    return [(tag, q) for tag, q, _ in weighted if q > 0]


def get_locale(accept_language: Optional[str] = None) -> str:
    """Best supported locale for an Accept-Language header"""
    if accept_language:
        for tag, _ in _parse_accept_language(accept_language):
            if tag in config.i18n.supported_locales:
                return tag
    return config.i18n.default_locale


def safe_url_for_log(url: str) -> str:
    """Scheme, host and path only; query strings carry signatures and tokens"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "invalid_url"

    host = parsed.netloc.rpartition("@")[2]
    base_url = f"{parsed.scheme}://{host}{parsed.path}"
    if parsed.query:
        return f"{base_url}?..."
    return base_url
