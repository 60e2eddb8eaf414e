import time

import pytest

from vulnradar.domain_crawler import (
    discover,
    extract_links,
    is_clean_href,
    is_valid_url,
    main,
    normalize_url,
    registrable_domain,
)
from vulnradar.exceptions import InvalidUrlError

from conftest import FakeFetcher, html_page

SEED = "https://example.com/"


def _links(*hrefs):
    return "<html><body>" + "".join(f'<a class="nav" href="{href}">x</a>' for href in hrefs) + "</body></html>"


def test_is_valid_url():
    assert is_valid_url("https://example.com")
    assert is_valid_url("http://example.com:8080/path?q=1")
    assert not is_valid_url("ftp://example.com")
    assert not is_valid_url("example.com")
    assert not is_valid_url("https://")
    assert not is_valid_url("https://example.com:99999999/")
    assert not is_valid_url(None)
    assert not is_valid_url(42)


def test_registrable_domain_uses_last_two_labels():
    assert registrable_domain("www.blog.Example.com") == "example.com"
    assert registrable_domain("example.com") == "example.com"
    assert registrable_domain(None) == ""


def test_normalize_url_drops_fragment_and_default_port():
    assert normalize_url("HTTPS://Example.com:443/a?x=1#top") == "https://example.com/a?x=1"
    assert normalize_url("http://example.com") == "http://example.com/"
    assert normalize_url("http://example.com:8080/a") == "http://example.com:8080/a"


def test_extract_links_strips_fragments():
    html = "<a href='/one#frag'>1</a><A HREF=\"/two\">2</A><a name=x>none</a><a href=\"#top\">t</a>"
    assert extract_links(html) == ["/one", "/two"]


def test_extract_links_skips_data_href_attributes():
    html = '<a data-href="/tracking-only" href="/real-page">go</a><a data-href="/nothing">x</a>'
    assert extract_links(html) == ["/real-page"]


def test_extract_links_is_linear_on_unclosed_anchor_tags():
    started = time.monotonic()
    assert extract_links("<a " * 170_000) == []
    assert extract_links('<a href="' * 60_000 + '<a href="/last">') == ["/last"]
    assert time.monotonic() - started < 2.0


def test_is_clean_href_rejects_pseudo_schemes_and_encoded_injection():
    assert is_clean_href("/about")
    assert not is_clean_href("")
    assert not is_clean_href("javascript:alert(1)")
    assert not is_clean_href("mailto:me@example.com")
    assert not is_clean_href("/search?q=%3Cscript%3E")


def test_invalid_seed_raises():
    with pytest.raises(InvalidUrlError):
        discover("not a url", fetch=FakeFetcher())


def test_discovers_same_site_pages_breadth_first():
    fetcher = FakeFetcher(
        {
            SEED: html_page(SEED, _links("/about", "https://blog.example.com/post", "https://other.org/", "/about#team")),
            "https://example.com/about": html_page("https://example.com/about", _links("/contact", "/")),
            "https://blog.example.com/post": html_page("https://blog.example.com/post", _links("/archive")),
        }
    )
    urls = discover(SEED, 10, fetch=fetcher)
    assert urls == [
        SEED,
        "https://example.com/about",
        "https://blog.example.com/post",
        "https://example.com/contact",
        "https://blog.example.com/archive",
    ]


def test_skips_assets_and_skip_listed_paths():
    fetcher = FakeFetcher(
        {
            SEED: html_page(
                SEED,
                _links(
                    "/logo.png",
                    "/static/app.html",
                    "/api/users",
                    "/feed.xml",
                    "data:text/html,hi",
                    "tel:123",
                    "/pricing",
                ),
            )
        }
    )
    assert discover(SEED, 10, fetch=fetcher) == [SEED, "https://example.com/pricing"]


def test_respects_page_cap_even_with_many_links():
    fetcher = FakeFetcher({SEED: html_page(SEED, _links(*[f"/page-{i}" for i in range(200)]))})
    urls = discover(SEED, 5, fetch=fetcher)
    assert len(urls) == 5
    assert len(set(urls)) == 5
    assert len(fetcher.calls) == 1


def test_cap_of_one_returns_only_seed_without_fetching():
    fetcher = FakeFetcher()
    assert discover(SEED, 1, fetch=fetcher) == [SEED]
    assert fetcher.calls == []


def test_unreachable_seed_returns_seed_only():
    assert discover(SEED, 10, fetch=FakeFetcher()) == [SEED]


def test_off_site_redirect_discards_page():
    fetcher = FakeFetcher(
        {SEED: html_page(SEED, _links("/should-not-appear"), final_url="https://elsewhere.net/")}
    )
    assert discover(SEED, 10, fetch=fetcher) == [SEED]


def test_same_site_redirect_target_is_recorded():
    fetcher = FakeFetcher(
        {SEED: html_page(SEED, _links("/docs"), final_url="https://www.example.com/home")}
    )
    urls = discover(SEED, 10, fetch=fetcher)
    assert urls == [SEED, "https://www.example.com/home", "https://www.example.com/docs"]


def test_non_html_response_is_not_parsed():
    page = html_page(SEED, _links("/hidden"), {"content-type": "application/json"})
    assert discover(SEED, 10, fetch=FakeFetcher({SEED: page})) == [SEED]


def test_probe_uses_crawler_budget():
    fetcher = FakeFetcher({SEED: html_page(SEED, "")})
    discover(SEED, 10, per_request_timeout=3, max_bytes=2048, fetch=fetcher)
    assert fetcher.calls[0]["timeout"] == 3
    assert fetcher.calls[0]["max_bytes"] == 2048
    assert "Crawler" in fetcher.calls[0]["user_agent"]


def test_cli_rejects_invalid_seed(capsys):
    assert main(["nope"]) == 2
    assert "Invalid URL" in capsys.readouterr().err
