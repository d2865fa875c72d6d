"""Image acquisition: turn a path or URL into bounded, typed image bytes."""

import asyncio
import ipaddress
import logging
import os
import re
import socket
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import aiohttp
from aiohttp.abc import AbstractResolver
from yarl import URL

from ..config import DownloadLimits
from ..errors import (
    DownloadError,
    DownloadTimeoutError,
    MissingInputError,
    NotFoundError,
    TooLargeError,
    TransportError,
    UnsafeURLError,
    UnsupportedFormatError,
)

logger = logging.getLogger(__name__)

_DNS_TIMEOUT = 5

# Chunk size for streaming downloads (64KB)
_DOWNLOAD_CHUNK_SIZE = 64 * 1024

_REDIRECT_STATUSES = (301, 302, 303, 307, 308)

_EXTENSION_MIME = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
_FALLBACK_MIME = "image/jpeg"

_BLOCKED_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "169.254.169.254"}

# Literal dotted prefixes of the RFC 1918 ranges
_PRIVATE_PREFIX_RE = re.compile(r"^(10\.|172\.(1[6-9]|2[0-9]|3[01])\.|192\.168\.)")

_SHARED_ADDRESS_SPACE = ipaddress.ip_network("100.64.0.0/10")  # Carrier-grade NAT


class ReferenceKind(Enum):
    URL = "url"
    LOCAL_PATH = "file"


@dataclass
class AcquiredImage:
    """An acquired image ready for API submission."""

    data: bytes
    mime_type: str
    source: str  # 'file' or 'url'
    original_path: str


def classify_reference(ref: str) -> ReferenceKind:
    """Decide whether ``ref`` is an http(s) URL or a local path.

    Anything that does not parse as an http/https URL with a network
    location is treated as a path, unvalidated.
    """
    try:
        parsed = urlparse(ref)
    except ValueError:
        return ReferenceKind.LOCAL_PATH

    if parsed.scheme in ("http", "https") and parsed.netloc:
        return ReferenceKind.URL
    return ReferenceKind.LOCAL_PATH


def _normalize_ip(
    ip_str: str,
) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    """Parse an IP literal, including encodings that ipaddress rejects.

    Handles decimal (2130706433), hex (0x7f.0.0.1), octal (0177.0.0.1),
    IPv6 zone ids (::1%eth0) and IPv4-mapped IPv6 (::ffff:127.0.0.1).

    Returns:
        The address, or None when ``ip_str`` is not an IP literal
    """
    ip_str = ip_str.split("%")[0].strip("[]")

    try:
        ip = ipaddress.ip_address(ip_str)
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
            return ip.ipv4_mapped
        return ip
    except ValueError:
        pass

    if ip_str.isdigit():
        value = int(ip_str)
        if value <= 0xFFFFFFFF:
            return ipaddress.IPv4Address(value)
        return None

    parts = ip_str.split(".")
    if len(parts) != 4:
        return None

    octets = []
    for part in parts:
        try:
            if part.lower().startswith("0x"):
                octets.append(int(part, 16))
            elif part.startswith("0") and len(part) > 1 and part.isdigit():
                octets.append(int(part, 8))
            else:
                octets.append(int(part))
        except ValueError:
            return None

    if not all(0 <= o <= 255 for o in octets):
        return None
    return ipaddress.IPv4Address(
        (octets[0] << 24) | (octets[1] << 16) | (octets[2] << 8) | octets[3]
    )


def _is_private_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    """True for loopback, private, link-local and other non-public addresses."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped

    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or (isinstance(ip, ipaddress.IPv4Address) and ip in _SHARED_ADDRESS_SPACE)
    )


def is_safe_url(url: str) -> bool:
    """Return False for URLs that could reach internal services.

    This is a textual check on the hostname; resolved addresses are
    checked separately right before connecting.
    """
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https") or not hostname:
        return False

    hostname = hostname.lower().split("%")[0]

    if hostname in _BLOCKED_HOSTS:
        return False

    if _PRIVATE_PREFIX_RE.match(hostname):
        return False

    ip = _normalize_ip(hostname)
    if ip is not None and _is_private_ip(ip):
        return False

    return True


def validate_format(path: str, limits: DownloadLimits) -> str:
    """Check the extension of ``path`` against the allow-list.

    For URLs pass only the path component so query strings and fragments
    do not leak into the extension.

    Returns:
        MIME type derived from the extension

    Raises:
        UnsupportedFormatError: If the extension is not allowed
    """
    ext = os.path.splitext(path)[1].lower()
    if ext not in limits.allowed_extensions:
        raise UnsupportedFormatError(path, limits.allowed_extensions)
    return _EXTENSION_MIME.get(ext, _FALLBACK_MIME)


async def load_local_image(path: str, limits: DownloadLimits) -> bytes:
    """Read a local image after checking its size on disk.

    Raises:
        NotFoundError: If the file is missing or unreadable
        TooLargeError: If the file exceeds ``limits.max_bytes``
    """
    file_path = Path(path)

    try:
        file_stat = file_path.stat()
    except OSError:
        raise NotFoundError(f"File not found: {path}")

    if not stat.S_ISREG(file_stat.st_mode):
        raise NotFoundError(f"Not a regular file: {path}")

    if file_stat.st_size > limits.max_bytes:
        raise TooLargeError(
            f"File too large: {file_stat.st_size} bytes (max {limits.max_bytes} bytes)",
            size=file_stat.st_size,
            limit=limits.max_bytes,
        )

    loop = asyncio.get_running_loop()
    try:
        data = await loop.run_in_executor(None, file_path.read_bytes)
    except OSError as e:
        raise NotFoundError(f"Failed to read file '{path}': {e}")

    # The file may have grown between stat() and read
    if len(data) > limits.max_bytes:
        raise TooLargeError(
            f"File too large: {len(data)} bytes (max {limits.max_bytes} bytes)",
            size=len(data),
            limit=limits.max_bytes,
        )

    return data


def _address_family(address: str) -> int:
    if isinstance(ipaddress.ip_address(address), ipaddress.IPv6Address):
        return socket.AF_INET6
    return socket.AF_INET


def _wire_host(url: str) -> Tuple[str, int]:
    """Host and port of ``url`` in the form aiohttp hands to its resolver.

    yarl lowercases the host and IDNA-encodes internationalized names,
    so ``bücher.example`` comes out as ``xn--bcher-kva.example``.
    """
    try:
        target = URL(url)
        host, port = target.raw_host, target.port
    except ValueError as e:
        raise TransportError(f"transport: invalid URL '{url}': {e}")

    if not host:
        raise TransportError(f"transport: no host in '{url}'")
    return host, port or (443 if target.scheme == "https" else 80)


class _PinnedResolver(AbstractResolver):
    """Answers for a single host with addresses that were checked up front.

    The connector never does its own lookup, so DNS cannot change
    between the safety check and the connect.
    """

    def __init__(self, hostname: str, addresses: List[str], port: int):
        self.hostname = hostname.lower()
        self.addresses = addresses
        self.port = port

    async def resolve(
        self, host: str, port: int = 0, family: int = socket.AF_INET
    ) -> List[Dict[str, Any]]:
        if host.lower() != self.hostname:
            raise OSError(f"Resolver is pinned to '{self.hostname}', got '{host}'")

        entries = [
            {
                "hostname": host,
                "host": address,
                "port": port or self.port,
                "family": _address_family(address),
                "proto": 0,
                "flags": socket.AI_NUMERICHOST,
            }
            for address in self.addresses
            if family == socket.AF_UNSPEC or _address_family(address) == family
        ]
        if not entries:
            raise OSError(f"No checked address for '{host}' in family {family}")
        return entries

    async def close(self) -> None:
        pass


async def _lookup_addresses(host: str) -> List[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await asyncio.wait_for(
            loop.getaddrinfo(host, None, type=socket.SOCK_STREAM),
            timeout=_DNS_TIMEOUT,
        )
    except asyncio.TimeoutError:
        raise TransportError(
            f"transport: DNS lookup for '{host}' took longer than {_DNS_TIMEOUT}s"
        )
    except socket.gaierror as e:
        raise TransportError(f"transport: failed to resolve '{host}': {e}")

    return sorted({info[4][0] for info in infos})


async def _resolve_safe_addresses(url: str) -> _PinnedResolver:
    """Look up the URL's host and pin it, refusing internal addresses.

    Raises:
        UnsafeURLError: If any address for the host is private/internal
        TransportError: If the host cannot be resolved
    """
    host, port = _wire_host(url)

    literal = _normalize_ip(host)
    if literal is not None:
        if _is_private_ip(literal):
            raise UnsafeURLError(url)
        return _PinnedResolver(host, [str(literal)], port)

    addresses = await _lookup_addresses(host)
    if not addresses:
        raise TransportError(f"transport: no addresses found for '{host}'")

    for address in addresses:
        resolved = _normalize_ip(address)
        if resolved is None or _is_private_ip(resolved):
            raise UnsafeURLError(
                url, f"URL resolves to private/internal address {address}"
            )

    return _PinnedResolver(host, addresses, port)


def _open_session(resolver: _PinnedResolver, limits: DownloadLimits):
    connector = aiohttp.TCPConnector(
        resolver=resolver, ttl_dns_cache=0, use_dns_cache=False
    )
    timeout = aiohttp.ClientTimeout(total=limits.timeout_seconds)
    return aiohttp.ClientSession(timeout=timeout, connector=connector)


def _check_declared_size(
    content_length: Optional[str], url: str, limits: DownloadLimits
) -> None:
    if not content_length:
        return
    try:
        declared = int(content_length)
    except ValueError:
        return  # Unparseable; the streamed size is still enforced

    if declared > limits.max_bytes:
        raise TooLargeError(
            f"Image too large: {declared} bytes declared (max {limits.max_bytes} bytes): {url}",
            size=declared,
            limit=limits.max_bytes,
        )


async def _read_bounded(response, url: str, limits: DownloadLimits) -> bytes:
    chunks = []
    received = 0

    async for chunk in response.content.iter_chunked(_DOWNLOAD_CHUNK_SIZE):
        received += len(chunk)
        if received > limits.max_bytes:
            # Drop the connection instead of draining the rest of the body
            response.close()
            raise TooLargeError(
                f"Image exceeds size limit of {limits.max_bytes} bytes during download: {url}",
                size=received,
                limit=limits.max_bytes,
            )
        chunks.append(chunk)

    return b"".join(chunks)


async def _fetch_once(
    url: str, resolver: _PinnedResolver, limits: DownloadLimits
) -> Tuple[bytes, Optional[str]]:
    """Perform a single GET.

    Returns:
        (body, None) on 200, or (b"", absolute_location) on a redirect
    """
    async with _open_session(resolver, limits) as session:
        async with session.get(url, allow_redirects=False) as response:
            if response.status in _REDIRECT_STATUSES:
                location = response.headers.get("Location")
                if not location:
                    raise DownloadError(
                        f"Redirect without Location header from '{url}'",
                        status_code=response.status,
                    )
                return b"", urljoin(url, location)

            if response.status != 200:
                raise DownloadError(
                    f"Download failed: HTTP {response.status}",
                    status_code=response.status,
                )

            _check_declared_size(response.headers.get("Content-Length"), url, limits)
            return await _read_bounded(response, url, limits), None


async def _download_following_redirects(url: str, limits: DownloadLimits) -> bytes:
    current_url = url
    redirects = 0

    try:
        while True:
            resolver = await _resolve_safe_addresses(current_url)
            data, location = await _fetch_once(current_url, resolver, limits)
            if location is None:
                return data

            redirects += 1
            if redirects > limits.max_redirects:
                raise DownloadError(
                    f"Too many redirects ({limits.max_redirects}) fetching '{url}'"
                )
            if not is_safe_url(location):
                raise UnsafeURLError(location, "Redirect to unsupported or unsafe URL")

            logger.debug(f"Following redirect to: {location}")
            current_url = location

    except asyncio.TimeoutError:
        raise DownloadTimeoutError(
            f"Download timed out after {limits.timeout_seconds:g}s: {url}",
            timeout=limits.timeout_seconds,
        )
    except aiohttp.ClientError as e:
        raise TransportError(f"transport: {e}")


async def download_image(url: str, limits: DownloadLimits) -> bytes:
    """Download ``url`` with a size cap, deadline and checked redirects.

    The deadline covers every redirect hop. On timeout or size overflow
    the connection is closed before the error propagates.

    Raises:
        UnsafeURLError: If a redirect target or resolved address is internal
        DownloadError: On unexpected HTTP status or too many redirects
        TooLargeError: If declared or streamed size exceeds the limit
        DownloadTimeoutError: If the deadline expires
        TransportError: On network failures
    """
    try:
        return await asyncio.wait_for(
            _download_following_redirects(url, limits),
            timeout=limits.timeout_seconds,
        )
    except asyncio.TimeoutError:
        raise DownloadTimeoutError(
            f"Download timed out after {limits.timeout_seconds:g}s: {url}",
            timeout=limits.timeout_seconds,
        )


async def acquire_image(reference: str, limits: DownloadLimits) -> AcquiredImage:
    """Resolve a path or URL into image bytes and a MIME type.

    URLs are checked for safety and extension before any network I/O.
    Local paths are checked for existence, extension and size before
    reading.
    """
    if not reference or not reference.strip():
        raise MissingInputError("image_path must not be empty")

    if classify_reference(reference) is ReferenceKind.URL:
        if not is_safe_url(reference):
            raise UnsafeURLError(reference)

        mime_type = validate_format(urlparse(reference).path, limits)
        logger.info(f"Downloading image: {reference}")
        data = await download_image(reference, limits)
        source = ReferenceKind.URL.value
    else:
        logger.info(f"Reading local image: {reference}")
        if not os.path.exists(reference):
            raise NotFoundError(f"File not found: {reference}")

        mime_type = validate_format(reference, limits)
        data = await load_local_image(reference, limits)
        source = ReferenceKind.LOCAL_PATH.value

    logger.info(f"Image format: {mime_type}, size: {len(data)} bytes")
    return AcquiredImage(
        data=data,
        mime_type=mime_type,
        source=source,
        original_path=reference,
    )
