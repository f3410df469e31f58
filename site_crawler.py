"""
Crawl stage: fetch one page, extract its SEO elements and screenshot it.
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urljoin, urlparse

import aiohttp
from bs4 import BeautifulSoup

import config
from blob_store import LocalBlobStore, job_namespace
from errors import CrawlError, UnsafeUrlError
from models import CrawlResult
from screenshot_service import DESKTOP_VIEWPORT, MOBILE_VIEWPORT, ScreenshotService
from url_validator import ScreeningResolver, ensure_public_host

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 5
MAX_BODY_WORDS = 3000
PATH_CHECK_TIMEOUT = 5
REDIRECT_STATUSES = {301, 302, 303, 307, 308}

HostGuard = Callable[[str], Awaitable[None]]


def _meta_content(soup: BeautifulSoup, name: str) -> str:
    pattern = re.compile(f"^{re.escape(name)}$", re.I)
    tag = soup.find("meta", attrs={"name": pattern}) or soup.find(
        "meta", attrs={"property": pattern}
    )
    if tag and tag.get("content"):
        return tag["content"].strip()
    return ""


def parse_html(html: str, page_url: str) -> Dict[str, Any]:
    """
    Extract SEO elements from an HTML document.

    Args:
        html: Raw HTML
        page_url: Final URL of the document, used to classify links

    Returns:
        Dictionary of CrawlResult fields (snake_case keys)
    """
    soup = BeautifulSoup(html, "html.parser")
    page_host = (urlparse(page_url).hostname or "").lower()

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    og_tags = {}
    for og_tag in soup.find_all("meta", property=re.compile(r"^og:")):
        content = og_tag.get("content", "")
        if content:
            og_tags[og_tag["property"]] = content

    canonical = ""
    canonical_tag = soup.find("link", rel="canonical")
    if canonical_tag:
        canonical = canonical_tag.get("href", "")

    headings = [
        {"level": int(h.name[1]), "text": h.get_text().strip()[:200]}
        for h in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"])
    ]

    images = []
    for img in soup.find_all("img"):
        alt = img.get("alt", "")
        images.append({"src": img.get("src", ""), "alt": alt, "has_alt": bool(alt.strip())})

    links = []
    for link in soup.find_all("a", href=True):
        href = link["href"]
        target = urlparse(urljoin(page_url, href))
        is_external = (
            target.scheme in ("http", "https")
            and bool(target.hostname)
            and target.hostname.lower() != page_host
        )
        links.append(
            {"href": href, "text": link.get_text().strip()[:200], "is_external": is_external}
        )

    structured_data = []
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            structured_data.append(json.loads(script.string or script.get_text()))
        except ValueError:
            continue

    html_tag = soup.find("html")
    html_lang = html_tag.get("lang", "").strip() if html_tag else ""
    has_viewport = soup.find("meta", attrs={"name": re.compile("^viewport$", re.I)}) is not None

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    body = soup.body or soup
    words = body.get_text(" ").split()
    body_text = " ".join(words[:MAX_BODY_WORDS])
    if len(words) > MAX_BODY_WORDS:
        body_text += "..."

    return {
        "title": title,
        "meta_description": _meta_content(soup, "description"),
        "meta_keywords": _meta_content(soup, "keywords"),
        "canonical_url": canonical,
        "robots_meta": _meta_content(soup, "robots"),
        "og_tags": og_tags,
        "headings": headings,
        "images": images,
        "links": links,
        "word_count": len(words),
        "has_viewport_meta": has_viewport,
        "html_lang": html_lang,
        "structured_data": structured_data,
        "body_text": body_text,
    }


class SiteCrawler:
    """Fetches pages with SSRF-guarded redirects and stores their screenshots."""

    def __init__(
        self,
        blob_store: LocalBlobStore,
        screenshots: Optional[ScreenshotService] = None,
        timeout: Optional[float] = None,
        host_guard: Optional[HostGuard] = None,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self.blob_store = blob_store
        self.screenshots = screenshots
        self.timeout = timeout or config.SEO_CRAWL_TIMEOUT
        self.host_guard = host_guard or ensure_public_host
        self.max_redirects = max_redirects

    def _session(self, timeout: float) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(resolver=ScreeningResolver()),
            timeout=aiohttp.ClientTimeout(total=timeout),
            headers={"User-Agent": config.USER_AGENT},
        )

    async def _open(
        self, session: aiohttp.ClientSession, method: str, url: str
    ) -> Tuple[str, aiohttp.ClientResponse]:
        """Issue a request, following redirects only to public hosts."""
        current = url
        for _ in range(self.max_redirects + 1):
            await self.host_guard(current)
            response = await session.request(method, current, allow_redirects=False)
            location = response.headers.get("Location")
            if response.status in REDIRECT_STATUSES and location:
                response.release()
                current = urljoin(current, location)
                continue
            return current, response
        raise CrawlError(f"Too many redirects (>{self.max_redirects}) for {url}")

    async def fetch(self, url: str) -> Dict[str, Any]:
        """
        Fetch a page and measure timing.

        Raises:
            CrawlError: On network errors, timeouts or unsafe redirects
        """
        try:
            async with self._session(self.timeout) as session:
                start = time.perf_counter()
                final_url, response = await self._open(session, "GET", url)
                try:
                    ttfb = time.perf_counter() - start
                    body = await response.read()
                    load_time = time.perf_counter() - start
                    try:
                        html = body.decode(response.charset or "utf-8", errors="replace")
                    except LookupError:
                        html = body.decode("utf-8", errors="replace")
                    encoding = response.headers.get("Content-Encoding", "").lower()
                    return {
                        "final_url": final_url,
                        "status_code": response.status,
                        "html": html,
                        "ttfb_ms": int(ttfb * 1000),
                        "load_time_ms": int(load_time * 1000),
                        "response_size_bytes": len(body),
                        "is_compressed": encoding in ("gzip", "br", "deflate", "zstd"),
                        "has_cache_headers": bool(
                            response.headers.get("Cache-Control") or response.headers.get("Expires")
                        ),
                    }
                finally:
                    response.release()
        except UnsafeUrlError as e:
            raise CrawlError(f"Blocked request: {str(e)}") from e
        except asyncio.TimeoutError as e:
            raise CrawlError(f"Timeout fetching {url} after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise CrawlError(f"Failed to fetch {url}: {str(e)}") from e

    async def _screenshot(self, url: str, path: str, viewport: Dict[str, int]) -> Optional[str]:
        if self.screenshots is None:
            return None
        data = await self.screenshots.capture(url, viewport)
        if not data:
            return None
        try:
            return self.blob_store.put(path, data)
        except OSError as e:
            logger.warning(f"Could not store screenshot {path}: {str(e)}")
            return None

    async def crawl(self, url: str, job_id: str, index: int) -> CrawlResult:
        """
        Crawl one URL: fetch, parse and capture desktop/mobile screenshots.

        Args:
            url: Validated URL
            job_id: Owning job, used as the screenshot namespace
            index: Position of the URL in the batch

        Returns:
            CrawlResult

        Raises:
            CrawlError: If the page could not be fetched
        """
        logger.info(f"Crawling {url}")
        fetched = await self.fetch(url)
        parsed = parse_html(fetched.pop("html"), fetched["final_url"])

        namespace = job_namespace(job_id)
        desktop_path, mobile_path = await asyncio.gather(
            self._screenshot(url, f"{namespace}/{index}_desktop.png", DESKTOP_VIEWPORT),
            self._screenshot(url, f"{namespace}/{index}_mobile.png", MOBILE_VIEWPORT),
        )

        return CrawlResult(
            url=url,
            is_https=urlparse(fetched["final_url"]).scheme == "https",
            desktop_screenshot_path=desktop_path,
            mobile_screenshot_path=mobile_path,
            **fetched,
            **parsed,
        )

    async def _path_exists(self, url: str, path: str) -> bool:
        parsed = urlparse(url)
        target = f"{parsed.scheme}://{parsed.netloc}{path}"
        try:
            async with self._session(PATH_CHECK_TIMEOUT) as session:
                _, response = await self._open(session, "HEAD", target)
                try:
                    return 200 <= response.status < 300
                finally:
                    response.release()
        except (aiohttp.ClientError, asyncio.TimeoutError, UnsafeUrlError, CrawlError):
            return False

    async def check_sitemap(self, url: str) -> bool:
        """Whether <origin>/sitemap.xml answers with a 2xx status."""
        return await self._path_exists(url, "/sitemap.xml")

    async def check_robots_txt(self, url: str) -> bool:
        """Whether <origin>/robots.txt answers with a 2xx status."""
        return await self._path_exists(url, "/robots.txt")
