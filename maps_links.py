"""
Google Maps link parsing.

Users paste whatever their browser or phone gave them: full
``google.com/maps/...`` URLs, ``?q=lat,lng`` search links, or shortened
``goo.gl`` / ``maps.app.goo.gl`` share links. Short links are expanded
server-side by following redirects; when the final URL carries no
coordinates, the page body is searched instead.
"""

import logging
import re
import time
from typing import Optional

import requests
from bs4 import BeautifulSoup

import health_monitor
from geo import Coordinates
from pc_trace import get_trace

logger = logging.getLogger(__name__)

MIN_LINK_LENGTH_FOR_ERROR = 10
LINK_PARSE_ERROR = (
    "Could not extract coordinates. Try copying the URL from your browser's "
    "address bar."
)

_RESOLVE_TIMEOUT = 10
_USER_AGENT = "Mozilla/5.0 (compatible; ParcelCheck/1.0)"

_NUM = r"(-?\d+\.?\d*)"

# Tried in order; first match with in-range values wins.
COORDINATE_PATTERNS = [
    re.compile(rf"@{_NUM},{_NUM}"),
    re.compile(rf"/place/[^/]+/@{_NUM},{_NUM}"),
    re.compile(rf"[?&]q={_NUM},{_NUM}"),
    re.compile(rf"/maps/place/{_NUM},{_NUM}"),
    re.compile(rf"ll={_NUM},{_NUM}"),
]

_AT_PATTERN = COORDINATE_PATTERNS[0]
_META_MAPS_PATTERN = re.compile(rf"^https://www\.google\.com/maps[^\"]*@{_NUM},{_NUM}")


class LinkResolutionError(Exception):
    """A short link could not be expanded."""


def is_short_link(url: str) -> bool:
    return "goo.gl" in (url or "")


def _to_coordinates(match) -> Optional[Coordinates]:
    try:
        return Coordinates(lat=float(match.group(1)), lng=float(match.group(2)))
    except ValueError:
        return None


def extract_coordinates(url: str) -> Optional[Coordinates]:
    """Pull lat/lng out of a Google Maps URL, or None."""
    if not url:
        return None
    for pattern in COORDINATE_PATTERNS:
        match = pattern.search(url)
        if not match:
            continue
        coords = _to_coordinates(match)
        if coords is not None:
            return coords
    return None


def coordinates_from_html(html: str) -> Optional[Coordinates]:
    """Search an expanded short-link page for coordinates.

    Looks for an ``@lat,lng`` fragment anywhere in the body first, then
    for a ``<meta content="https://www.google.com/maps...@lat,lng">`` tag.
    """
    if not html:
        return None
    match = _AT_PATTERN.search(html)
    if match:
        return _to_coordinates(match)

    soup = BeautifulSoup(html, "html.parser")
    for meta in soup.find_all("meta", content=True):
        match = _META_MAPS_PATTERN.search(meta["content"])
        if match:
            return _to_coordinates(match)
    return None


def _record(endpoint: str, elapsed_ms: int, status_code: int, success: bool,
            error: Optional[str] = None) -> None:
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service="link_resolver",
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status="" if success else "error",
        )
    health_monitor.record_call("link_resolver", success, elapsed_ms, error)


def resolve_short_link(url: str, timeout: int = _RESOLVE_TIMEOUT) -> str:
    """Follow redirects and return the final URL.

    HEAD first; some shorteners refuse HEAD, so a 4xx/5xx falls back to GET.

    Raises:
        LinkResolutionError: on transport errors or an empty/invalid URL.
    """
    if not url or not url.startswith(("http://", "https://")):
        raise LinkResolutionError("Missing or invalid 'url' query parameter")

    headers = {"User-Agent": _USER_AGENT}
    start = time.monotonic()
    try:
        resp = requests.head(url, allow_redirects=True, timeout=timeout, headers=headers)
        if resp.status_code >= 400:
            resp = requests.get(url, allow_redirects=True, timeout=timeout, headers=headers)
    except requests.RequestException as e:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        _record("resolve", elapsed_ms, 0, False, str(e))
        raise LinkResolutionError(str(e)) from e

    elapsed_ms = int((time.monotonic() - start) * 1000)
    _record("resolve", elapsed_ms, resp.status_code, True)
    return resp.url


def _fetch_page(url: str, timeout: int = _RESOLVE_TIMEOUT) -> str:
    start = time.monotonic()
    try:
        resp = requests.get(
            url, allow_redirects=True, timeout=timeout,
            headers={"User-Agent": _USER_AGENT},
        )
    except requests.RequestException as e:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        _record("page", elapsed_ms, 0, False, str(e))
        raise LinkResolutionError(str(e)) from e
    elapsed_ms = int((time.monotonic() - start) * 1000)
    _record("page", elapsed_ms, resp.status_code, True)
    return resp.text


def parse_google_maps_link(url: str) -> Optional[Coordinates]:
    """Turn any pasted Google Maps link into coordinates, or None.

    Short links are expanded first; if expansion fails it is logged and
    the original string is parsed as-is.
    """
    if not url or not url.strip():
        return None
    url = url.strip()

    if is_short_link(url):
        try:
            final_url = resolve_short_link(url)
            coords = extract_coordinates(final_url)
            if coords:
                return coords
            coords = coordinates_from_html(_fetch_page(final_url))
            if coords:
                return coords
        except LinkResolutionError as e:
            logger.warning("Error expanding shortened URL %s: %s", url, e)

    return extract_coordinates(url)


def link_error_message(url: str) -> Optional[str]:
    """User-facing message for a link that yielded no coordinates.

    Very short inputs are treated as still being typed and get no message.
    """
    if url and len(url) > MIN_LINK_LENGTH_FOR_ERROR:
        return LINK_PARSE_ERROR
    return None
