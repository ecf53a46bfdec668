import pytest

from aeo.crawler.collaborators import HttpFetcher, SitemapDiscovery, extract_text_and_links
from aeo.crawler.scoring import overall_from_criteria, parse_score_payload
from aeo.crawler.urls import (
    content_hash,
    detect_page_type,
    is_excluded,
    is_same_site,
    normalize_url,
    url_hash,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("http://Example.COM:80/Blog/", "https://example.com/Blog"),
        ("https://example.com", "https://example.com/"),
        ("https://example.com/a?b=2&a=1#top", "https://example.com/a?a=1&b=2"),
        ("https://example.com/a?utm_source=x&id=7", "https://example.com/a?id=7"),
        ("https://example.com:8443/a", "https://example.com:8443/a"),
    ],
)
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


def test_normalize_url_rejects_other_schemes():
    assert normalize_url("mailto:someone@example.com") is None
    assert normalize_url("javascript:void(0)") is None
    assert normalize_url("") is None


def test_url_hash_is_stable_across_equivalent_forms():
    assert url_hash("http://example.com/docs/") == url_hash("https://EXAMPLE.com/docs#intro")


def test_content_hash_ignores_whitespace_layout():
    assert content_hash("Hello   world\n\n") == content_hash("Hello world")
    assert content_hash("Hello world") != content_hash("Hello World")


def test_exclusion_patterns():
    url = "https://example.com/blog/2021/post"
    assert is_excluded(url, ["/blog/*"])
    assert is_excluded(url, ["*/2021/*"])
    assert is_excluded(url, ["2021"])
    assert not is_excluded(url, ["/docs/*", "careers"])
    assert not is_excluded(url, [])


def test_same_site_ignores_www():
    assert is_same_site("https://www.example.com/a", "https://example.com/")
    assert not is_same_site("https://other.com/a", "https://example.com/")


@pytest.mark.parametrize(
    "url, page_type",
    [
        ("https://example.com/", "homepage"),
        ("https://example.com/pricing", "conversion"),
        ("https://example.com/product/widget", "product"),
        ("https://example.com/solutions/retail", "solution"),
        ("https://example.com/blog/launch", "blog"),
        ("https://example.com/about", "resource"),
    ],
)
def test_detect_page_type(url, page_type):
    assert detect_page_type(url) == page_type


def test_extract_text_and_links():
    html = """
    <html><head><style>.x{}</style></head>
    <body><h1>Title</h1><script>var a=1;</script>
    <p>Body text</p><a href="/about">About</a><a href="https://other.com/x">X</a><a href="/about">dup</a>
    </body></html>
    """
    text, links = extract_text_and_links(html, "https://example.com/")
    assert "Title" in text and "Body text" in text
    assert "var a" not in text
    assert links == ["https://example.com/about", "https://other.com/x"]


def test_sitemap_parse_distinguishes_index():
    urlset = (
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        "<url><loc>https://example.com/a</loc></url><url><loc>https://example.com/b</loc></url>"
        "</urlset>"
    )
    index = (
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        "<sitemap><loc>https://example.com/sitemap-1.xml</loc></sitemap>"
        "</sitemapindex>"
    )
    assert SitemapDiscovery._parse(urlset) == (["https://example.com/a", "https://example.com/b"], [])
    assert SitemapDiscovery._parse(index) == ([], ["https://example.com/sitemap-1.xml"])
    assert SitemapDiscovery._parse("not xml") == ([], [])


def test_parse_score_payload_clamps_and_fills_missing():
    raw = '```json\n{"criteriaScores": {"structure": 130, "authority": "40"}, "recommendations": [{"criterion": "structure"}, "x"]}\n```'
    criteria, overall, recommendations = parse_score_payload(raw, "v1")
    assert criteria["structure"] == 100
    assert criteria["authority"] == 40
    assert criteria["freshness"] == 0
    assert overall == overall_from_criteria(criteria)
    assert recommendations == [{"criterion": "structure"}]


class FakeResponse:
    def __init__(self, text, status_code=200):
        self.text = text
        self.status_code = status_code


class FakeSession:
    def __init__(self, robots_text, status_code=200):
        self.headers = {}
        self.robots_text = robots_text
        self.status_code = status_code
        self.requested = []

    def get(self, url, timeout=None, **kwargs):
        self.requested.append(url)
        return FakeResponse(self.robots_text, self.status_code)


def test_http_fetcher_reads_robots_crawl_delay():
    session = FakeSession("User-agent: *\nCrawl-delay: 3\nDisallow: /private\n")
    fetcher = HttpFetcher(user_agent="AEO-Platform-Bot/1.0", session=session)

    assert fetcher.crawl_delay("https://example.com/page") == 3.0
    assert not fetcher.is_allowed("https://example.com/private/x")
    # robots.txt 按 host 只读取一次
    assert session.requested == ["https://example.com/robots.txt"]


def test_http_fetcher_without_robots_has_no_crawl_delay():
    fetcher = HttpFetcher(user_agent="AEO-Platform-Bot/1.0", session=FakeSession("", status_code=404))
    assert fetcher.crawl_delay("https://example.com/") is None
    assert fetcher.is_allowed("https://example.com/anything")
