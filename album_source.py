"""Album discovery and per-candidate suitability checks.

Google Photos has no public API for shared albums, so discovery scrapes the
album page.  Two strategies exist:

* the lightweight fetch downloads the album page once and reads the item
  list embedded in its ``AF_initDataCallback`` payload.  It is fast and
  carries width/height for each item, but the page only embeds roughly the
  first 300 items.
* the heavy scrape drives a headless Chromium through Playwright and scrolls
  the album grid until no new items appear.  It is slow but unbounded.

:class:`AlbumResolver` picks between them using the URL cache and the
persisted album size hint.  :class:`SuitabilityFilter` decides whether one
candidate may be fetched at all and keeps the durable blocklist.
"""

import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from frame_errors import DiscoveryError

logger = logging.getLogger('inkframe.album')

LIGHTWEIGHT_CEILING = 300
USER_AGENT = ('Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 '
              '(KHTML, like Gecko) Chrome/124.0 Safari/537.36')
PHOTO_HOST = 'googleusercontent.com'

_INIT_DATA_RE = re.compile(
    r"AF_initDataCallback\(\{key:\s*'(?P<key>ds:\d+)'.*?data:(?P<data>\[.*?\]),\s*sideChannel:",
    re.DOTALL,
)


@dataclass(frozen=True)
class CandidateURL:
    url: str
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def has_dimensions(self):
        return bool(self.width) and bool(self.height)

    def is_portrait_or_square(self):
        """True only when dimensions are known and height >= width."""
        return self.has_dimensions and self.height >= self.width


class Suitability(NamedTuple):
    eligible: bool
    reason: Optional[str] = None


def build_session():
    session = requests.Session()
    retries = Retry(total=3, backoff_factor=0.5, status_forcelist=[429, 500, 502, 503, 504])
    adapter = HTTPAdapter(max_retries=retries, pool_connections=10, pool_maxsize=10)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    session.headers.update({'User-Agent': USER_AGENT})
    return session


def base_url(url):
    """Strip Google Photos size/format parameters (everything after '=')."""
    return url.split('=', 1)[0]


def video_variant(url):
    return f"{base_url(url)}=dv"


def sized_variant(url, width, height):
    # 2x the target box so the cover crop never has to upscale
    if PHOTO_HOST not in url:
        return url
    return f"{base_url(url)}=w{width * 2}-h{height * 2}"


def _to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_album_page(html):
    """Extract ``CandidateURL`` items from a shared album page.

    Raises ``ValueError`` when the page carries no recognizable item list.
    """
    for match in _INIT_DATA_RE.finditer(html):
        try:
            data = json.loads(match.group('data'))
        except ValueError:
            continue
        if len(data) < 2 or not isinstance(data[1], list):
            continue
        candidates = []
        for item in data[1]:
            try:
                media = item[1]
                url = media[0]
            except (IndexError, TypeError):
                continue
            if not isinstance(url, str) or not url.startswith('https://'):
                continue
            candidates.append(CandidateURL(url, _to_int(media[1]), _to_int(media[2])))
        if candidates:
            return candidates
    raise ValueError('No album item list found in page')


def fetch_lightweight(album_url, session=None, timeout=15):
    """Single page fetch; returns at most ~300 items with dimensions."""
    session = session or build_session()
    resp = session.get(album_url, timeout=timeout)
    resp.raise_for_status()
    return parse_album_page(resp.text)


_COLLECT_JS = """
() => {
  const urls = [];
  document.querySelectorAll('img[src]').forEach(e => urls.push(e.src));
  document.querySelectorAll('[data-latest-bg]').forEach(e => urls.push(e.getAttribute('data-latest-bg')));
  return urls;
}
"""


def fetch_heavy(album_url, timeout=120, scroll_pause=1.0, idle_rounds=3):
    """Scroll the album in headless Chromium and collect every photo URL."""
    from playwright.sync_api import sync_playwright

    seen = OrderedDict()
    deadline = time.monotonic() + timeout
    with sync_playwright() as playwright:
        browser = playwright.chromium.launch(headless=True)
        try:
            page = browser.new_page(user_agent=USER_AGENT)
            page.set_default_navigation_timeout(timeout * 1000)
            logger.info(f"Heavy scrape loading {album_url}")
            page.goto(album_url, wait_until='networkidle')
            stale = 0
            while stale < idle_rounds and time.monotonic() < deadline:
                before = len(seen)
                for src in page.evaluate(_COLLECT_JS):
                    if src and PHOTO_HOST in src and '/a/' not in src:
                        seen.setdefault(base_url(src), None)
                stale = stale + 1 if len(seen) == before else 0
                page.mouse.wheel(0, 4000)
                page.wait_for_timeout(int(scroll_pause * 1000))
            if time.monotonic() >= deadline:
                logger.warning(f"Heavy scrape hit the {timeout}s deadline with {len(seen)} items")
        finally:
            browser.close()
    return list(seen)


class AlbumResolver:
    """Turn an album reference into candidate URLs, cheapest source first."""

    def __init__(self, url_cache, metadata_store, lightweight=None, heavy=None,
                 landscape_only=True, clock=time.time):
        self.url_cache = url_cache
        self.metadata = metadata_store
        self._lightweight = lightweight or fetch_lightweight
        self._heavy = heavy or fetch_heavy
        self.landscape_only = landscape_only
        self._clock = clock

    def resolve(self, album_ref) -> List[CandidateURL]:
        cached = self.url_cache.get(album_ref)
        if cached is not None:
            logger.info(f"Using cached URLs ({len(cached)})")
            return list(cached)

        observed = self.observed_size(album_ref)
        if observed >= LIGHTWEIGHT_CEILING:
            logger.info(f"Album known to hold {observed} items, skipping lightweight fetch")
            return self._resolve_heavy(album_ref)

        try:
            items = self._lightweight(album_ref)
        except Exception as e:  # pylint: disable=broad-except
            logger.warning(f"Lightweight fetch failed, escalating to full scrape: {e}")
            return self._resolve_heavy(album_ref)

        if not items:
            logger.warning("Lightweight fetch returned no items, escalating to full scrape")
            return self._resolve_heavy(album_ref)
        if len(items) >= LIGHTWEIGHT_CEILING:
            logger.info(f"Lightweight fetch returned {len(items)} items (truncated), escalating to full scrape")
            return self._resolve_heavy(album_ref)

        candidates = list(items)
        if self.landscape_only:
            candidates = [c for c in candidates if not c.is_portrait_or_square()]
        logger.info(f"Found {len(candidates)} valid images out of {len(items)} total images")
        self._record_size(album_ref, len(items))
        if not candidates:
            raise DiscoveryError(f"No landscape images among {len(items)} album items")
        self.url_cache.set(album_ref, candidates)
        return candidates

    def _resolve_heavy(self, album_ref):
        try:
            urls = self._heavy(album_ref)
        except Exception as e:  # pylint: disable=broad-except
            logger.error(f"Full scrape failed: {e}")
            raise DiscoveryError(f"Album scrape failed: {e}") from e
        if not urls:
            raise DiscoveryError('No images found in album')
        candidates = [u if isinstance(u, CandidateURL) else CandidateURL(u) for u in urls]
        logger.info(f"Full scrape found {len(candidates)} images")
        self.url_cache.set(album_ref, candidates)
        self._record_size(album_ref, len(candidates))
        return candidates

    def observed_size(self, album_ref):
        meta = self.metadata.get(album_ref) or {}
        return _to_int(meta.get('observed_size')) or 0

    def _record_size(self, album_ref, count):
        self.metadata.set(album_ref, {'observed_size': count, 'updated_ts': int(self._clock())})


class SuitabilityFilter:
    """Cheap eligibility checks run before any image bytes are fetched."""

    def __init__(self, blocklist, session=None, timeout=15):
        self.blocklist = blocklist
        self.session = session or build_session()
        self.timeout = timeout

    def check(self, url) -> Suitability:
        if url in self.blocklist:
            return Suitability(False, 'blocklisted')
        if self.is_video(url):
            logger.info(f"Skipping video/motion photo: {url}")
            self.block(url, 'video')
            return Suitability(False, 'video')
        return Suitability(True)

    def is_video(self, url):
        """HEAD the video stream variant; any failure counts as not a video."""
        try:
            resp = self.session.head(video_variant(url), timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            logger.debug(f"Video check failed for {url}: {e}")
            return False
        return 200 <= resp.status_code < 300

    def reject_orientation(self, url, width, height):
        logger.info(f"Skipping portrait/square image ({width}x{height}): {url}")
        self.block(url, 'orientation')

    def block(self, url, reason):
        self.blocklist.set(url, {'blocked': True, 'reason': reason})


def download_image(session, url, width, height, timeout=15):
    resp = session.get(sized_variant(url, width, height), timeout=timeout)
    resp.raise_for_status()
    return resp.content
