"""
URL batch validation and SSRF screening.

Every URL submitted for auditing passes through `validate_urls` before a job
is admitted, and the crawler calls `ensure_public_host` again on every
redirect hop so a public URL cannot bounce the fetch onto an internal host.
`ScreeningResolver` sits under the crawler's connections themselves, so a
name that re-resolves to an internal address between check and connect
is still refused.
"""

import ipaddress
import logging
import re
import socket
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from aiohttp.abc import AbstractResolver

import config
from errors import UnsafeUrlError
from models import UrlValidationResult

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "metadata",
    "metadata.google.internal",
    "instance-data",
}

METADATA_ADDRESSES = {
    ipaddress.ip_address("169.254.169.254"),
    ipaddress.ip_address("169.254.170.2"),
    ipaddress.ip_address("100.100.100.200"),
    ipaddress.ip_address("fd00:ec2::254"),
}

CGNAT_NETWORK = ipaddress.ip_network("100.64.0.0/10")

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")
_SPLIT_RE = re.compile(r"[\n\r,]+")

HostResolver = Callable[[str], Awaitable[List[str]]]


async def resolve_host_addresses(hostname: str) -> List[str]:
    """Resolve every A/AAAA address for a hostname."""
    resolver = aiohttp.ThreadedResolver()
    try:
        records = await resolver.resolve(hostname, 0, family=socket.AF_UNSPEC)
    finally:
        await resolver.close()
    return sorted({record["host"] for record in records})


def blocked_address_reason(address: str) -> Optional[str]:
    """Return why an IP address must not be fetched, or None if it is public."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return "unparseable address"

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped

    if ip in METADATA_ADDRESSES:
        return "metadata service address"
    if ip.is_loopback:
        return "loopback address"
    if ip.is_link_local:
        return "link-local address"
    if ip.is_multicast:
        return "multicast address"
    if ip.is_unspecified:
        return "unspecified address"
    if isinstance(ip, ipaddress.IPv4Address) and ip in CGNAT_NETWORK:
        return "carrier-grade NAT address"
    if ip.is_private:
        return "private address"
    if ip.is_reserved or not ip.is_global:
        return "reserved address"
    return None


class ScreeningResolver(AbstractResolver):
    """
    aiohttp resolver that only hands out public addresses.

    Installed on the crawler's connector so the address a connection is made
    to is the one that was screened, even if DNS answers differently between
    `ensure_public_host` and the connect.
    """

    def __init__(self, resolver: Optional[AbstractResolver] = None):
        self._resolver = resolver or aiohttp.ThreadedResolver()

    async def resolve(self, host: str, port: int = 0, family: int = socket.AF_INET):
        records = await self._resolver.resolve(host, port, family=family)
        allowed = [record for record in records if not blocked_address_reason(record["host"])]
        if not allowed:
            blocked = ", ".join(sorted({record["host"] for record in records}))
            raise OSError(f"All addresses for {host} are blocked ({blocked})")
        if len(allowed) < len(records):
            logger.warning(f"Dropped non-public addresses resolved for {host}")
        return allowed

    async def close(self) -> None:
        await self._resolver.close()


def normalize_url(raw: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Parse and normalize a single URL.

    Returns:
        (normalized_url, None) on success or (None, error_message).
    """
    url_str = raw.strip()
    if not _SCHEME_RE.match(url_str):
        url_str = f"https://{url_str}"

    if len(url_str) > MAX_URL_LENGTH:
        return None, f"URL too long ({len(url_str)} chars): {url_str[:80]}..."

    try:
        parts = urlsplit(url_str)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None, f"Invalid URL: {raw}"

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        return None, f'Invalid protocol "{scheme}:" for: {raw}'

    if not hostname or re.search(r"\s", hostname):
        return None, f"Invalid URL: {raw}"

    host = hostname.lower().rstrip(".")
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}" if port else host
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, "")), None


def dedupe_key(url: str) -> str:
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    return f"{parts.scheme}://{parts.netloc}{path}?{parts.query}"


async def check_host(hostname: str, resolve: Optional[HostResolver] = None) -> Optional[str]:
    """
    Screen a hostname for SSRF.

    Returns:
        None if every resolved address is public, otherwise an error message.
    """
    host = hostname.strip("[]").lower().rstrip(".")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return f"Blocked hostname: {hostname}"

    try:
        addresses = [str(ipaddress.ip_address(host))]
    except ValueError:
        try:
            addresses = await (resolve or resolve_host_addresses)(host)
        except OSError:
            return f"Cannot resolve hostname: {hostname}"
        if not addresses:
            return f"Cannot resolve hostname: {hostname}"

    for address in addresses:
        reason = blocked_address_reason(address)
        if reason:
            return f"URL resolves to {reason} ({address}): {hostname}"
    return None


async def ensure_public_host(url: str, resolve: Optional[HostResolver] = None) -> None:
    """
    Raise UnsafeUrlError unless the URL is http(s) and its host is public.

    Args:
        url: Absolute URL about to be fetched
        resolve: Optional resolver override

    Raises:
        UnsafeUrlError: If the URL must not be fetched
    """
    normalized, error = normalize_url(url)
    if error:
        raise UnsafeUrlError(error)
    hostname = urlsplit(normalized).hostname or ""
    error = await check_host(hostname, resolve)
    if error:
        raise UnsafeUrlError(error)


async def validate_urls(
    raw_input: str,
    max_urls: Optional[int] = None,
    resolve: Optional[HostResolver] = None,
) -> UrlValidationResult:
    """
    Validate and sanitize a newline/comma separated list of URLs.

    Args:
        raw_input: Raw text as submitted by the user
        max_urls: Batch size above which the list is truncated with a warning
        resolve: Optional resolver override

    Returns:
        UrlValidationResult; `valid` is False if any entry was rejected
    """
    max_urls = max_urls if max_urls is not None else config.SEO_AUDIT_MAX_URLS
    errors: List[str] = []
    warnings: List[str] = []

    lines = [line.strip() for line in _SPLIT_RE.split(raw_input or "")]
    lines = [line for line in lines if line]

    if not lines:
        return UrlValidationResult(valid=False, errors=["No URLs provided"])

    valid_urls: List[str] = []
    seen = set()

    for line in lines:
        normalized, error = normalize_url(line)
        if error:
            errors.append(error)
            continue

        key = dedupe_key(normalized)
        if key in seen:
            warnings.append(f"Duplicate URL removed: {line}")
            continue
        seen.add(key)

        error = await check_host(urlsplit(normalized).hostname or "", resolve)
        if error:
            errors.append(error)
            continue

        valid_urls.append(normalized)

    if len(valid_urls) > max_urls:
        warnings.append(
            f"Too many URLs. Maximum is {max_urls}, got {len(valid_urls)}; "
            f"only the first {max_urls} will be audited"
        )
        valid_urls = valid_urls[:max_urls]

    if errors:
        logger.info(f"Rejected URL batch: {len(errors)} error(s)")

    return UrlValidationResult(
        valid=bool(valid_urls) and not errors,
        urls=valid_urls,
        errors=errors,
        warnings=warnings,
    )
