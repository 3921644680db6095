"""URL policy: tracking-parameter cleanup, domain allow-lists and SSRF checks.

``normalize_url`` fails open (unparseable input is returned unchanged) while
``is_private_or_local_target`` fails closed (unparseable input counts as
private). Callers on the source path follow ``normalize_url`` with
``is_allowed_source``, which rejects anything it cannot parse.
"""
import asyncio
import ipaddress
import re
import socket
from enum import Enum, auto
from typing import Iterable, Optional
from urllib.parse import urlparse

from vidrelay.config.settings import config

HTTP_SCHEMES = ("http", "https")

_LEGACY_IPV4 = re.compile(r"^[0-9a-fA-FxX.]+$")


class UrlValidationResult(Enum):
    """URL validation result without throwing exceptions"""
    OK = auto()
    BLOCKED = auto()
    INVALID = auto()


def _hostname(url: str) -> Optional[str]:
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname.rstrip(".").lower()


def host_matches(hostname: str, domains: Iterable[str]) -> bool:
    """True if hostname equals one of the domains or is a subdomain of one."""
    for domain in domains:
        domain = domain.lower()
        if hostname == domain or hostname.endswith("." + domain):
            return True
    return False


def is_absolute_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in HTTP_SCHEMES and bool(parsed.hostname)


def normalize_url(url: str, tracking_domains: Optional[Iterable[str]] = None) -> str:
    """Drop query and fragment for platforms that put tracking data there."""
    if tracking_domains is None:
        tracking_domains = config.policy.tracking_param_domains
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    hostname = _hostname(url)
    if not hostname or not parsed.scheme:
        return url
    if not host_matches(hostname, tracking_domains):
        return url

    # netloc without userinfo keeps host and port exactly as submitted
    host = parsed.netloc.rpartition("@")[2]
    return f"{parsed.scheme}://{host}{parsed.path}"


def is_allowed_source(url: str, domains: Optional[Iterable[str]] = None) -> bool:
    if domains is None:
        domains = config.policy.allowed_source_domains
    if not is_absolute_url(url):
        return False
    hostname = _hostname(url)
    return hostname is not None and host_matches(hostname, domains)


def is_allowed_relay_target(url: str, domains: Optional[Iterable[str]] = None) -> bool:
    if domains is None:
        domains = config.policy.allowed_relay_domains
    if not is_absolute_url(url):
        return False
    hostname = _hostname(url)
    return hostname is not None and host_matches(hostname, domains)


def _parse_ip(hostname: str):
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        pass
    # inet_aton accepts shorthand spellings such as 127.1 or 2130706433
    if _LEGACY_IPV4.match(hostname):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(hostname))
        except OSError:
            return None
    return None


def is_private_ip(ip) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_multicast
        or ip.is_reserved
    )


def is_private_or_local_target(url: str) -> bool:
    hostname = _hostname(url)
    if hostname is None:
        return True

    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True

    ip = _parse_ip(hostname)
    if ip is None:
        return False
    return is_private_ip(ip)


async def resolves_to_private(hostname: str) -> bool:
    """
    Resolve hostname off the event loop and check every address.
    DNS failures are not treated as blocked; the fetch itself will fail.
    """
    try:
        addr_info = await asyncio.to_thread(socket.getaddrinfo, hostname, None)
    except socket.gaierror:
        return False

    for info in addr_info:
        try:
            ip = ipaddress.ip_address(info[4][0].split("%", 1)[0])
        except ValueError:
            continue
        if is_private_ip(ip):
            return True
    return False


async def validate_relay_target(url: str) -> UrlValidationResult:
    """Full relay-path check: syntax, private targets, CDN allow-list, DNS."""
    hostname = _hostname(url)
    if hostname is None or not is_absolute_url(url):
        return UrlValidationResult.INVALID

    if hostname in (h.lower() for h in config.security.trusted_relay_hosts):
        return UrlValidationResult.OK

    ssrf = config.security.enable_ssrf_protection

    if ssrf and is_private_or_local_target(url):
        return UrlValidationResult.BLOCKED
    if not is_allowed_relay_target(url):
        return UrlValidationResult.BLOCKED
    if ssrf and config.security.resolve_dns and await resolves_to_private(hostname):
        return UrlValidationResult.BLOCKED

    return UrlValidationResult.OK
