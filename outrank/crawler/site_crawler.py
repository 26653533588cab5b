from __future__ import annotations

import logging
import re
import time
import urllib.parse
from typing import Callable, List, Optional, Set

import requests

from .. import config
from ..models import CrawlResult, CrawledPage
from .extractor import extract_page

logger = logging.getLogger(__name__)

_LOC_RE = re.compile(r"<loc>\s*(.*?)\s*</loc>", re.I | re.S)
_HREF_RE = re.compile(r"""<a[^>]+href\s*=\s*["']([^"']+)["']""", re.I)

_RESOURCE_EXT_RE = re.compile(r"\.(jpg|jpeg|png|gif|pdf|css|js|ico|svg|woff|woff2|ttf|webp|mp4|zip)$", re.I)
_SITEMAP_EXT_RE = re.compile(r"\.xml(\.gz)?$", re.I)

_SKIP_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:")
_SKIP_PATH_PREFIXES = ("/api/", "/admin/", "/_")

# sitemap_index.xml usually points at child sitemaps; follow a few of them.
_MAX_CHILD_SITEMAPS = 3


def normalize_domain(raw: str) -> str:
    """'https://www.Example.com/about' -> 'example.com'"""
    s = (raw or "").strip().lower()
    if "://" in s:
        s = urllib.parse.urlparse(s).netloc or ""
    s = s.split("/", 1)[0].split(":", 1)[0]
    if s.startswith("www."):
        s = s[4:]
    return s


def _is_resource(path: str) -> bool:
    return bool(_RESOURCE_EXT_RE.search(path))


class SiteCrawler:
    """
    Polite, bounded crawler for one business website.

    Order of attempts:
      1) sitemap.xml / sitemap_index.xml / www. variant
      2) breadth-first link discovery from the homepage
      3) the homepage itself

    Never raises: fetch and parse failures drop the page and the crawl carries on.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout_s: float = config.CRAWL_TIMEOUT_S,
        discovery_delay_s: float = config.CRAWL_DISCOVERY_DELAY_S,
        page_delay_s: float = config.CRAWL_PAGE_DELAY_S,
        max_sitemap_urls: int = config.CRAWL_MAX_SITEMAP_URLS,
        max_discovered: int = config.CRAWL_MAX_DISCOVERED,
        max_pages: int = config.CRAWL_MAX_PAGES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.discovery_delay_s = discovery_delay_s
        self.page_delay_s = page_delay_s
        self.max_sitemap_urls = max_sitemap_urls
        self.max_discovered = max_discovered
        self.max_pages = max_pages
        self.sleep = sleep
        self.headers = {
            "User-Agent": config.CRAWLER_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }

    def _fetch(self, url: str) -> Optional[str]:
        try:
            resp = self.session.get(url, headers=self.headers, timeout=self.timeout_s, allow_redirects=True)
        except requests.RequestException as e:
            logger.debug("fetch failed %s: %s", url, e)
            return None
        if not resp.ok:
            logger.debug("fetch %s -> HTTP %s", url, resp.status_code)
            return None
        return resp.text

    # -----------------------------
    # 1) sitemap
    # -----------------------------
    def _sitemap_locs(self, url: str) -> List[str]:
        xml = self._fetch(url)
        if not xml:
            return []
        return [m.strip() for m in _LOC_RE.findall(xml) if m.strip()]

    def fetch_sitemap(self, domain: str) -> List[str]:
        candidates = (
            f"https://{domain}/sitemap.xml",
            f"https://{domain}/sitemap_index.xml",
            f"https://www.{domain}/sitemap.xml",
        )
        for sitemap_url in candidates:
            locs = self._sitemap_locs(sitemap_url)
            children = [u for u in locs if _SITEMAP_EXT_RE.search(urllib.parse.urlparse(u).path)]
            pages = [u for u in locs if u not in children and not _is_resource(urllib.parse.urlparse(u).path)]

            for child in children[:_MAX_CHILD_SITEMAPS]:
                if len(pages) >= self.max_sitemap_urls:
                    break
                for u in self._sitemap_locs(child):
                    path = urllib.parse.urlparse(u).path
                    if not _SITEMAP_EXT_RE.search(path) and not _is_resource(path):
                        pages.append(u)

            if pages:
                logger.debug("sitemap %s -> %d urls", sitemap_url, len(pages))
                return pages[: self.max_sitemap_urls]
        return []

    # -----------------------------
    # 2) discovery
    # -----------------------------
    def _internal_link(self, domain: str, base_url: str, href: str) -> Optional[str]:
        href = href.strip()
        if not href or href.lower().startswith(_SKIP_HREF_PREFIXES):
            return None
        try:
            absolute = urllib.parse.urlparse(urllib.parse.urljoin(base_url, href))
        except ValueError:
            return None
        host = (absolute.hostname or "").lower()
        if host not in (domain, f"www.{domain}"):
            return None
        path = absolute.path.lower()
        if _is_resource(path) or path.startswith(_SKIP_PATH_PREFIXES):
            return None
        return f"{absolute.scheme}://{absolute.netloc}{absolute.path}".rstrip("/")

    def discover_pages(self, domain: str) -> List[str]:
        discovered: List[str] = []
        seen: Set[str] = set()
        to_visit: List[str] = [f"https://{domain}", f"https://www.{domain}"]

        while to_visit and len(discovered) < self.max_discovered:
            url = to_visit.pop(0)
            normalized = url.rstrip("/")
            if normalized in seen:
                continue

            html = self._fetch(url)
            if self.discovery_delay_s:
                self.sleep(self.discovery_delay_s)
            if html is None:
                continue

            seen.add(normalized)
            discovered.append(normalized)

            for href in _HREF_RE.findall(html):
                link = self._internal_link(domain, url, href)
                if link and link not in seen and link not in to_visit:
                    to_visit.append(link)

        return discovered

    # -----------------------------
    # 4) extraction
    # -----------------------------
    def extract(self, url: str) -> Optional[CrawledPage]:
        html = self._fetch(url)
        if html is None:
            return None
        try:
            return extract_page(url, html)
        except Exception as e:
            logger.debug("extract failed %s: %s", url, e)
            return None

    def crawl(self, raw_domain: str) -> CrawlResult:
        domain = normalize_domain(raw_domain)
        if not domain:
            return CrawlResult(domain=raw_domain, pages=[], total_pages=0)

        urls = self.fetch_sitemap(domain)
        has_sitemap = bool(urls)

        if not urls:
            urls = self.discover_pages(domain)

        if not urls:
            urls = [f"https://{domain}", f"https://www.{domain}"]

        pages: List[CrawledPage] = []
        for url in urls[: self.max_pages]:
            page = self.extract(url)
            if page is not None:
                pages.append(page)
            if self.page_delay_s:
                self.sleep(self.page_delay_s)

        logger.info("crawl %s: %d/%d pages (sitemap=%s)", domain, len(pages), len(urls[: self.max_pages]), has_sitemap)
        return CrawlResult(domain=domain, pages=pages, total_pages=len(pages), has_sitemap=has_sitemap)


def crawl_site(domain: str, crawler: Optional[SiteCrawler] = None) -> CrawlResult:
    """Crawl `domain` with default limits. Never raises."""
    try:
        return (crawler or SiteCrawler()).crawl(domain)
    except Exception:
        logger.exception("crawl %s aborted; returning no pages", domain)
        return CrawlResult(domain=domain, pages=[], total_pages=0)
