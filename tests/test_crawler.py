from __future__ import annotations

import requests

from conftest import FakeResponse, FakeSession
from outrank.crawler import SiteCrawler, combine_crawled_content, crawl_site, extract_page, normalize_domain
from outrank.models import CrawlResult


def _page(title: str, body: str = "Plumbing and drainage in Sydney.", links: str = "") -> str:
    return (
        f"<html><head><title>{title}</title>"
        f'<meta name="description" content="{title} description"></head>'
        f"<body><nav>Home About</nav><h1>{title}</h1><p>{body}</p>{links}"
        "<script>var x = 1;</script><footer>Copyright</footer></body></html>"
    )


def _sitemap(urls) -> str:
    locs = "".join(f"<url><loc>{u}</loc></url>" for u in urls)
    return f'<?xml version="1.0"?><urlset>{locs}</urlset>'


def _crawler(session) -> SiteCrawler:
    return SiteCrawler(session=session, discovery_delay_s=0, page_delay_s=0)


class TestNormalizeDomain:
    def test_strips_scheme_path_and_www(self):
        assert normalize_domain("https://www.Example.com/about") == "example.com"

    def test_strips_port(self):
        assert normalize_domain("acme.com.au:8443") == "acme.com.au"

    def test_empty(self):
        assert normalize_domain("   ") == ""


class TestSitemap:
    def test_five_url_sitemap_yields_five_pages(self):
        urls = [f"https://acme.com/page-{i}" for i in range(5)]
        pages = {"https://acme.com/sitemap.xml": _sitemap(urls)}
        pages.update({u: _page(f"Page {i}") for i, u in enumerate(urls)})

        result = _crawler(FakeSession(pages)).crawl("acme.com")

        assert result.has_sitemap is True
        assert result.total_pages == 5
        assert [p.path for p in result.pages] == [f"/page-{i}" for i in range(5)]

    def test_crawl_is_bounded(self):
        urls = [f"https://acme.com/p{i}" for i in range(40)]
        pages = {"https://acme.com/sitemap.xml": _sitemap(urls)}
        pages.update({u: _page(u) for u in urls})
        session = FakeSession(pages)

        result = _crawler(session).crawl("acme.com")

        assert result.total_pages == 15
        assert len([u for u in session.requested if "/p" in u]) == 15

    def test_resources_are_skipped(self):
        urls = ["https://acme.com/", "https://acme.com/brochure.pdf", "https://acme.com/logo.PNG"]
        pages = {"https://acme.com/sitemap.xml": _sitemap(urls), "https://acme.com/": _page("Home")}

        result = _crawler(FakeSession(pages)).crawl("acme.com")

        assert [p.url for p in result.pages] == ["https://acme.com/"]

    def test_falls_through_to_www_sitemap(self):
        pages = {
            "https://www.acme.com/sitemap.xml": _sitemap(["https://www.acme.com/contact"]),
            "https://www.acme.com/contact": _page("Contact"),
        }

        result = _crawler(FakeSession(pages)).crawl("acme.com")

        assert result.has_sitemap is True
        assert result.pages[0].title == "Contact"

    def test_follows_child_sitemaps(self):
        pages = {
            "https://acme.com/sitemap.xml": _sitemap(["https://acme.com/post-sitemap.xml"]),
            "https://acme.com/post-sitemap.xml": _sitemap(["https://acme.com/blog/a", "https://acme.com/blog/b"]),
            "https://acme.com/blog/a": _page("A"),
            "https://acme.com/blog/b": _page("B"),
        }

        result = _crawler(FakeSession(pages)).crawl("acme.com")

        assert [p.title for p in result.pages] == ["A", "B"]


class TestDiscovery:
    def test_discovers_internal_links_only(self):
        links = (
            '<a href="/about">About</a>'
            '<a href="/services/">Services</a>'
            '<a href="https://other.com/x">Elsewhere</a>'
            '<a href="/logo.png">Logo</a>'
            '<a href="mailto:hi@acme.com">Mail</a>'
            '<a href="/admin/login">Admin</a>'
            '<a href="#top">Top</a>'
        )
        pages = {
            "https://acme.com": _page("Home", links=links),
            "https://acme.com/about": _page("About"),
            "https://acme.com/services": _page("Services"),
        }

        result = _crawler(FakeSession(pages)).crawl("acme.com")

        assert result.has_sitemap is False
        assert [p.url for p in result.pages] == [
            "https://acme.com",
            "https://acme.com/about",
            "https://acme.com/services",
        ]
        assert result.pages[0].path == "/"

    def test_discovery_sleeps_between_fetches(self):
        slept = []
        crawler = SiteCrawler(
            session=FakeSession({"https://acme.com": _page("Home")}),
            discovery_delay_s=0.2,
            page_delay_s=0.1,
            sleep=slept.append,
        )

        crawler.crawl("acme.com")

        assert slept.count(0.2) == 2  # bare and www homepage
        assert slept.count(0.1) == 1


class _HomepageOnlyLater(FakeSession):
    """Homepage errors during discovery, then answers."""

    def __init__(self, pages):
        super().__init__(pages)
        self.homepage_hits = 0

    def get(self, url, headers=None, timeout=None, allow_redirects=True):
        if url == "https://acme.com":
            self.homepage_hits += 1
            if self.homepage_hits == 1:
                self.requested.append(url)
                return FakeResponse(503)
        return super().get(url, headers=headers, timeout=timeout, allow_redirects=allow_redirects)


class TestFallbacks:
    def test_homepage_fallback(self):
        session = _HomepageOnlyLater({"https://acme.com": _page("Home")})

        result = _crawler(session).crawl("acme.com")

        assert result.total_pages == 1
        assert result.pages[0].title == "Home"

    def test_unreachable_site_gives_zero_pages(self):
        session = FakeSession({"https://acme.com/sitemap.xml": requests.ConnectionError("refused")})

        result = _crawler(session).crawl("acme.com")

        assert result.pages == []
        assert result.total_pages == 0

    def test_crawl_site_never_raises(self):
        session = FakeSession({"https://acme.com/sitemap.xml": RuntimeError("boom")})

        result = crawl_site("acme.com", crawler=_crawler(session))

        assert result.total_pages == 0
        assert result.domain == "acme.com"


class TestExtractor:
    def test_extracts_fields_and_strips_boilerplate(self):
        html = (
            "<html><head><title> Acme  Plumbing </title>"
            '<meta name="Description" content="Blocked drains fixed fast"></head>'
            "<body><header>Call now</header><h1>Sydney plumbers</h1>"
            "<h2>Hot water</h2><h3>Gas fitting</h3><h2>Drains</h2>"
            "<p>We fix   things.</p><script>track()</script><footer>ABN 123</footer></body></html>"
        )

        page = extract_page("https://acme.com/services", html)

        assert page.title == "Acme Plumbing"
        assert page.description == "Blocked drains fixed fast"
        assert page.h1 == "Sydney plumbers"
        assert page.headings == ("Hot water", "Drains", "Gas fitting")
        assert "track()" not in page.body_text
        assert "ABN" not in page.body_text
        assert "Call now" not in page.body_text
        assert "We fix things." in page.body_text
        assert page.path == "/services"
        assert page.has_meta_description is True

    def test_body_truncated_but_word_count_is_full(self):
        page = extract_page("https://acme.com", "<body><p>" + "word " * 2000 + "</p></body>")

        assert len(page.body_text) == 5000
        assert page.word_count == 2000

    def test_combined_content_lists_every_page(self):
        pages = [
            extract_page("https://acme.com/", _page("Home")),
            extract_page("https://acme.com/about", _page("About")),
        ]
        text = combine_crawled_content(CrawlResult(domain="acme.com", pages=pages, total_pages=2))

        assert text.startswith("Domain: acme.com\nPages crawled: 2")
        assert "--- Page: / ---" in text
        assert "--- Page: /about ---" in text
        assert "Title: About" in text
