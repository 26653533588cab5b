"""
Crawler subsystem.

- site_crawler.py: sitemap / discovery / homepage fallbacks, polite fetching
- extractor.py: HTML -> CrawledPage, and the combined text the analyzer reads
"""

from .extractor import combine_crawled_content, extract_page
from .site_crawler import SiteCrawler, crawl_site, normalize_domain

__all__ = ["SiteCrawler", "combine_crawled_content", "crawl_site", "extract_page", "normalize_domain"]
