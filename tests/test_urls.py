import asyncio
import time
from urllib.parse import urlsplit

import pytest

from sescraper import (
    ClassificationError,
    ConfigError,
    ConnectionTimer,
    PageKind,
    UrlClassifier,
    UrlSet,
    check_site_url,
    remove_string_duplicates,
    resolve_link,
)


@pytest.mark.parametrize(
    "url, kind",
    [
        ("https://standardebooks.org/ebooks/jane-austen/emma", PageKind.EBOOK),
        ("https://standardebooks.org/ebooks/jane-austen/emma/", PageKind.EBOOK),
        ("https://standardebooks.org/ebooks/some-slug/", PageKind.EBOOK),
        ("https://standardebooks.org/ebooks/h-g-wells/the-time-machine/text", PageKind.EBOOK),
        ("https://standardebooks.org/ebooks/jane-austen", PageKind.AUTHOR),
        ("https://standardebooks.org/collections/the-bbcs-100-greatest-british-novels", PageKind.COLLECTION),
        ("https://standardebooks.org/collections/", PageKind.COLLECTION),
        ("https://standardebooks.org/about", PageKind.INVALID),
        ("https://standardebooks.org/ebooks", PageKind.INVALID),
        ("https://standardebooks.org/ebooks/", PageKind.INVALID),
        ("https://standardebooks.org/ebooks/jane-austen-2", PageKind.INVALID),
    ],
)
def test_classify(url, kind):
    assert UrlClassifier().classify(url) is kind


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com/ebooks/jane-austen/emma",
        "http://standardebooks.org/ebooks/jane-austen/emma",
        "https://standardebooks.org.example.com/ebooks/jane-austen",
        "see https://standardebooks.org/ebooks/jane-austen",
        "https://standardebooks.org",
        "",
    ],
)
def test_classify_rejects_other_sites(url):
    with pytest.raises(ClassificationError, match="not a valid Standard Ebooks URL"):
        UrlClassifier().classify(url)


def test_classifier_for_another_origin():
    classifier = UrlClassifier("http://localhost:8080/")
    assert classifier.site_url == "http://localhost:8080"
    assert classifier.classify("http://localhost:8080/ebooks/a-b/c") is PageKind.EBOOK


@pytest.mark.parametrize("site_url", ["standardebooks.org", "ftp://standardebooks.org", "https://standardebooks.org/ebooks", ""])
def test_bad_site_url(site_url):
    with pytest.raises(ConfigError):
        check_site_url(site_url)
    with pytest.raises(ConfigError):
        UrlClassifier(site_url)


def test_resolve_link():
    site = "https://standardebooks.org"
    assert resolve_link(site, urlsplit("/ebooks/a/b")) == "https://standardebooks.org/ebooks/a/b"
    assert resolve_link(site, "downloads/x.epub") == "https://standardebooks.org/downloads/x.epub"
    assert resolve_link(site, "https://cdn.example.com/x.epub") == "https://cdn.example.com/x.epub"


def test_remove_string_duplicates():
    assert remove_string_duplicates(["a", "b", "a", "c"]) == ["a", "b", "c"]
    once = remove_string_duplicates(["c", "c", "a", "b", "a"])
    assert once == ["c", "a", "b"]
    assert remove_string_duplicates(once) == once
    assert remove_string_duplicates([]) == []


def test_url_set_is_idempotent():
    urls = UrlSet()
    urls.add(urlsplit("/a.epub"), urlsplit("/b.epub"))
    urls.add(urlsplit("/a.epub"))
    assert len(urls) == 2
    assert len(urls.to_list()) == 2
    assert sorted(u.geturl() for u in urls) == ["/a.epub", "/b.epub"]
    assert "/a.epub" in urls
    assert urlsplit("/b.epub") in urls
    assert "/c.epub" not in urls


def test_url_set_keys_by_string_form():
    urls = UrlSet()
    urls.add(urlsplit("/a.epub"), urlsplit("https://standardebooks.org/a.epub"))
    assert len(urls) == 2


def test_timer_fires_immediately_then_waits_after_reset():
    async def scenario():
        timer = ConnectionTimer(0.05)
        start = time.monotonic()
        await timer.wait()
        first = time.monotonic() - start
        timer.reset()
        await timer.wait()
        second = time.monotonic() - start
        timer.reset(0)
        await timer.wait()
        third = time.monotonic() - start
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first < 0.04
    assert second >= 0.04
    assert third - second < 0.04


def test_timer_clamps_negative_interval():
    assert ConnectionTimer(-3).interval == 0.0
