"""
Tests for sitemap discovery and frontier seeding.
"""

import httpx
import pytest

from conftest import FakeSite, html_page
from linkscan.engines.crawler.engine import ScanCoordinator
from linkscan.engines.crawler.sitemap import SitemapParser

ROOT = "https://site.test/"
XML = {"content-type": "application/xml"}

INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://site.test/sitemap-pages.xml</loc></sitemap>
</sitemapindex>"""

PAGES = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://site.test/orphan</loc></url>
  <url><loc>https://site.test/Orphan#frag</loc></url>
  <url><loc>https://elsewhere.test/page</loc></url>
</urlset>"""


class TestSitemapParser:

    @pytest.mark.asyncio
    async def test_follows_index_to_url_sets(self):
        site = FakeSite({
            ROOT + "sitemap.xml": (200, INDEX, XML),
            ROOT + "sitemap-pages.xml": (200, PAGES, XML),
        })
        async with httpx.AsyncClient(transport=site.transport) as client:
            urls = await SitemapParser(client).discover(ROOT)
        assert urls == [
            "https://site.test/orphan",
            "https://site.test/Orphan",
            "https://elsewhere.test/page",
        ]

    @pytest.mark.asyncio
    async def test_missing_sitemap_yields_nothing(self):
        site = FakeSite()
        async with httpx.AsyncClient(transport=site.transport) as client:
            assert await SitemapParser(client).discover(ROOT) == []

    @pytest.mark.asyncio
    async def test_max_urls(self):
        site = FakeSite({ROOT + "sitemap.xml": (200, PAGES, XML)})
        async with httpx.AsyncClient(transport=site.transport) as client:
            urls = await SitemapParser(client, max_urls=1).discover(ROOT)
        assert urls == ["https://site.test/orphan"]


class TestSitemapSeeding:

    @pytest.mark.asyncio
    async def test_unlinked_pages_are_crawled(self, settings):
        site = FakeSite({
            ROOT: (200, html_page("<p>no links</p>")),
            ROOT + "sitemap.xml": (200, PAGES, XML),
            ROOT + "orphan": (200, html_page("<p>orphan</p>")),
        })
        coordinator = ScanCoordinator(settings, transport=site.transport)
        report = await coordinator.run_scan({"url": ROOT, "config": {"seedFromSitemap": True}})

        crawled = [p.url for p in report.pages]
        assert ROOT + "orphan" in crawled
        assert "https://elsewhere.test/page" not in crawled
        assert not site.fetched("https://elsewhere.test/page")
