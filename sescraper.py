# sescraper.py
#!/usr/bin/env python3
"""
Standard Ebooks scraper.

Give it one or more Standard Ebooks URLs and it downloads the ebook files
behind them. Three kinds of page are understood:

    https://standardebooks.org/ebooks/<author>/<title>   a single ebook
    https://standardebooks.org/ebooks/<author>           every ebook by an author
    https://standardebooks.org/collections/<name>        every ebook in a collection

Author and collection pages are expanded into their individual ebook pages,
and every ebook page is scanned for download links in the requested formats
(epub, epub3 a.k.a. "advanced epub", kepub, azw3).

As of this writing Standard Ebooks leaves its robots.txt blank. We still keep
every connection one at a time, with a fixed idle gap between the end of one
response and the start of the next request:

- The gap is measured from the moment the previous response body was fully
  read, not from when the previous request was issued.
- There are no retries. The first failure (bad format name, unknown URL,
  HTTP error, malformed link) aborts the whole run.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import enum
import logging
import posixpath
import re
import sys
import time
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Optional, Union
from urllib.parse import SplitResult, urljoin, urlsplit

import httpx
import yaml
from bs4 import BeautifulSoup, Tag
from bs4.builder import ParserRejectedMarkup


# ------------------------------- Errors ------------------------------------ #


class ScraperError(Exception):
    """Base class for every failure the scraper raises.

    Errors are created where the problem is found and then located by the
    orchestrator, which records which page was being handled (``url``), what
    it was doing with it (``action``) and, for book pages reached through an
    author or collection page, that parent page.
    """

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.url = url
        self.action: Optional[str] = None
        self.parent: Optional[tuple[str, str]] = None  # (page kind label, url)

    @property
    def role(self) -> str:
        return "book page" if self.parent else "top-level"

    def locate(self, action: str, url: str, parent: Optional[tuple[str, str]] = None) -> "ScraperError":
        self.action = action
        self.url = url
        self.parent = parent
        return self

    def __str__(self) -> str:
        if not self.action:
            return self.message
        where = self.url
        if self.parent:
            where = f"{where} ({self.parent[0]}: {self.parent[1]})"
        return f"while {self.action} {where}: {self.message}"


class ConfigError(ScraperError):
    pass


class UnsupportedFormatError(ScraperError):
    def __init__(self, token: str) -> None:
        super().__init__(f'the format "{token}" is not supported')
        self.token = token


class InvalidURLError(ScraperError):
    """An href (or input URL) that is not syntactically a URL."""

    def __init__(self, href: str, reason: str) -> None:
        super().__init__(f"while processing {href}: {reason}")
        self.href = href
        self.reason = reason


class ClassificationError(ScraperError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url} {reason}", url=url)


class FetchError(ScraperError):
    def __init__(self, url: str, reason: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(reason, url=url)
        self.status_code = status_code


class ParseError(ScraperError):
    pass


# --------------------------- Configuration --------------------------------- #


def check_site_url(site_url: str) -> str:
    """Return ``site_url`` without a trailing slash, or raise ConfigError if it is not an origin."""
    site_url = (site_url or "").strip().rstrip("/")
    try:
        parts = urlsplit(site_url)
    except ValueError as e:
        raise ConfigError(f"invalid site URL {site_url!r}: {e}") from e
    if parts.scheme not in ("http", "https") or not parts.netloc or parts.path or parts.query or parts.fragment:
        raise ConfigError(f"invalid site URL {site_url!r}: expected scheme://host")
    return site_url


SITE_URL = check_site_url("https://standardebooks.org")

FORMAT_NAMES: tuple[str, ...] = ("epub", "epub3", "kepub", "azw3")


@dataclasses.dataclass(frozen=True)
class Config:
    formats: str = ",".join(FORMAT_NAMES)
    out_dir: str = "."
    connection_wait: float = 1.0  # seconds of idle time between connections
    trim_kepub: bool = False
    site_url: str = SITE_URL
    user_agent: str = "sescraper/1.0 (+https://github.com/)"
    timeout: int = 30  # seconds per request
    urls: tuple[str, ...] = ()

    @staticmethod
    def from_yaml(path: Path) -> "Config":
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping at the top level")
        formats = data.get("formats", ",".join(FORMAT_NAMES))
        if isinstance(formats, (list, tuple)):
            formats = ",".join(str(f) for f in formats)
        urls = data.get("urls") or ()
        if isinstance(urls, str):
            urls = (urls,)
        if not isinstance(urls, (list, tuple)) or not all(isinstance(u, str) for u in urls):
            raise ConfigError(f"{path}: urls must be a URL or a list of URLs")
        try:
            return Config(
                formats=str(formats),
                out_dir=str(data.get("dir", ".")),
                connection_wait=float(data.get("connection_wait", 1.0)),
                trim_kepub=bool(data.get("trim_kepub", False)),
                site_url=str(data.get("site_url", SITE_URL)),
                user_agent=str(data.get("user_agent", "sescraper/1.0 (+https://github.com/)")),
                timeout=int(data.get("timeout", 30)),
                urls=tuple(urls),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{path}: {e}") from e

    def validate(self) -> "Config":
        if self.connection_wait < 0:
            raise ConfigError("time between connections can't be a negative number")
        if not self.out_dir:
            raise ConfigError("base directory can't be empty")
        check_site_url(self.site_url)
        return self


# ----------------------------- Utilities ----------------------------------- #


def remove_string_duplicates(items: Iterable[str]) -> list[str]:
    """Drop repeated strings, keeping the first occurrence of each in order."""
    seen: set[str] = set()
    out: list[str] = []
    for s in items:
        if s not in seen:
            seen.add(s)
            out.append(s)
    return out


_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def parse_link(href: str) -> SplitResult:
    """Parse an href into a link, raising InvalidURLError if it is not a valid URL."""
    if _CONTROL_CHARS_RE.search(href):
        raise InvalidURLError(href, "invalid control character in URL")
    m = _BAD_ESCAPE_RE.search(href)
    if m:
        raise InvalidURLError(href, f'invalid URL escape "{href[m.start():m.start() + 3]}"')
    try:
        link = urlsplit(href)
        link.port  # raises on a non-numeric port
    except ValueError as e:
        raise InvalidURLError(href, str(e)) from e
    return link


def link_filename(href: str) -> str:
    """Last path segment of an href, without query or fragment."""
    path = href.split("#", 1)[0].split("?", 1)[0]
    return posixpath.basename(path)


def resolve_link(site_url: str, link: Union[SplitResult, str]) -> str:
    ref = link.geturl() if isinstance(link, SplitResult) else link
    return urljoin(site_url + "/", ref)


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


# ----------------------------- Logging ------------------------------------- #


LOG_FORMAT = "%(asctime)s %(levelname)s [%(stage)s] %(message)s"


def setup_logger(verbose: bool = False) -> logging.Logger:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger("sescraper")
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    ch = logging.StreamHandler(stream=sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(formatter)
    root_logger.addHandler(ch)
    return root_logger


def get_logger(stage: str) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(logging.getLogger(f"sescraper.{stage}"), extra={"stage": stage})


# ------------------------------- Formats ----------------------------------- #


class Format(str, enum.Enum):
    EPUB = "epub"  # standard reflowable epub
    EPUB3 = "epub3"  # "advanced" epub
    KEPUB = "kepub"  # Kobo epub
    AZW3 = "azw3"  # Kindle


def _is_azw3(name: str) -> bool:
    return name.endswith(".azw3")


def _is_epub3(name: str) -> bool:
    return name.endswith("_advanced.epub") or name.endswith(".epub3")


def _is_kepub(name: str) -> bool:
    return name.endswith(".kepub.epub")


def _is_epub(name: str) -> bool:
    return name.endswith(".epub") and not _is_kepub(name) and not _is_epub3(name)


# Predicates are mutually exclusive.
FORMAT_TESTERS: "MappingProxyType[Format, Callable[[str], bool]]" = MappingProxyType(
    {
        Format.AZW3: _is_azw3,
        Format.EPUB3: _is_epub3,
        Format.KEPUB: _is_kepub,
        Format.EPUB: _is_epub,
    }
)


class FormatMatcher:
    """Decide which ebook format a filename is, and whether it was requested.

    ``formats`` is a comma-separated list of format names, e.g. "epub,kepub,azw3".
    """

    def __init__(
        self,
        formats: str,
        testers: "MappingProxyType[Format, Callable[[str], bool]]" = FORMAT_TESTERS,
    ) -> None:
        self.testers = testers
        active: list[Format] = []
        for token in formats.split(","):
            name = token.strip()
            try:
                fmt = Format(name.lower())
            except ValueError:
                raise UnsupportedFormatError(name) from None
            if fmt not in testers:
                raise UnsupportedFormatError(name)
            if fmt not in active:
                active.append(fmt)
        self.active: tuple[Format, ...] = tuple(active)

    def classify(self, filename: str) -> Optional[Format]:
        name = filename.lower()
        for fmt, test in self.testers.items():
            if test(name):
                return fmt
        return None

    def matches(self, filename: str) -> bool:
        return self.classify(filename) in self.active


# ------------------------------- HTML Parsing ------------------------------- #


Document = Union[str, bytes, BeautifulSoup]


def make_soup(document: Document) -> BeautifulSoup:
    """Build the tree with lxml. ParseError only covers markup the builder rejects outright."""
    if isinstance(document, BeautifulSoup):
        return document
    try:
        return BeautifulSoup(document, "lxml")
    except (ParserRejectedMarkup, TypeError, ValueError) as e:
        raise ParseError(f"malformed HTML: {e}") from e


def iter_elements(root: Tag) -> Iterator[Tag]:
    """Yield ``root`` and every element below it in depth-first pre-order."""
    stack: list[Tag] = [root]
    while stack:
        node = stack.pop()
        yield node
        children = [c for c in node.children if isinstance(c, Tag)]
        stack.extend(reversed(children))


class PageParser:
    """Collect links from the anchors of a page that ``wants`` accepts.

    Links come back in document order. Any malformed href among the accepted
    anchors raises InvalidURLError and nothing is returned.
    """

    def wants(self, anchor: Tag, href: str) -> bool:
        raise NotImplementedError

    def parse(self, document: Document) -> list[SplitResult]:
        soup = make_soup(document)
        links: list[SplitResult] = []
        for node in iter_elements(soup):
            if node.name != "a":
                continue
            href = node.get("href")
            if href is None:
                continue
            href = href.strip()
            if self.wants(node, href):
                links.append(parse_link(href))
        return links


def _inside_plain_paragraph_of_list_item(anchor: Tag) -> bool:
    p = anchor.parent
    if p is None or p.name != "p" or p.attrs:
        return False
    li = p.parent
    return li is not None and li.name == "li"


class EbookPageParser(PageParser):
    """Extract the download links of an individual ebook page."""

    def __init__(self, formats: Union[str, FormatMatcher]) -> None:
        self.matcher = formats if isinstance(formats, FormatMatcher) else FormatMatcher(formats)

    def wants(self, anchor: Tag, href: str) -> bool:
        return self.matcher.matches(link_filename(href))


class CollectionPageParser(PageParser):
    """Extract the ebook pages listed on a collection page.

    A book link is an <a> inside a <p> with no attributes, inside an <li>.
    """

    def wants(self, anchor: Tag, href: str) -> bool:
        return _inside_plain_paragraph_of_list_item(anchor)


class AuthorPageParser(PageParser):
    """Extract the ebook pages listed on an author page.

    Same rule as for collections today; kept on its own since the two page
    layouts are maintained separately on the site.
    """

    def wants(self, anchor: Tag, href: str) -> bool:
        return _inside_plain_paragraph_of_list_item(anchor)


# ------------------------------ URL Classifier ------------------------------ #


class PageKind(enum.Enum):
    EBOOK = "ebook"
    AUTHOR = "author"
    COLLECTION = "collection"
    INVALID = "invalid"


class UrlClassifier:
    """Tell ebook, author and collection pages apart from their URL alone."""

    def __init__(self, site_url: str = SITE_URL) -> None:
        self.site_url = check_site_url(site_url)
        origin = re.escape(self.site_url)
        self.site_re = re.compile(rf"{origin}/.*")
        # The ebook shape must be tried before the looser author shape.
        self.ebook_re = re.compile(rf"{origin}/ebooks/[A-Za-z\-]+/.*")
        self.author_re = re.compile(rf"{origin}/ebooks/[A-Za-z\-]+/?")
        self.collection_re = re.compile(rf"{origin}/collections/.*")

    def classify(self, raw_url: str) -> PageKind:
        if not self.site_re.match(raw_url):
            raise ClassificationError(raw_url, "is not a valid Standard Ebooks URL")
        if self.ebook_re.match(raw_url):
            return PageKind.EBOOK
        if self.author_re.fullmatch(raw_url):
            return PageKind.AUTHOR
        if self.collection_re.match(raw_url):
            return PageKind.COLLECTION
        return PageKind.INVALID


# --------------------------------- URL Set ---------------------------------- #


class UrlSet:
    """Links without repeats, keyed by their string form. Order is not kept."""

    def __init__(self) -> None:
        self._links: dict[str, SplitResult] = {}

    def add(self, *links: SplitResult) -> None:
        for link in links:
            self._links[link.geturl()] = link

    def to_list(self) -> list[SplitResult]:
        return list(self._links.values())

    def __len__(self) -> int:
        return len(self._links)

    def __iter__(self) -> Iterator[SplitResult]:
        return iter(self.to_list())

    def __contains__(self, item: object) -> bool:
        if isinstance(item, SplitResult):
            item = item.geturl()
        return item in self._links


# ------------------------------ Rate Limiter -------------------------------- #


class ConnectionTimer:
    """One shared gate in front of every outbound connection.

    ``wait`` blocks until the next slot; ``reset`` opens the next slot
    ``interval`` seconds from now. A new timer fires immediately.
    """

    def __init__(self, interval: float) -> None:
        self.interval = max(0.0, interval)
        self._lock = asyncio.Lock()
        self._ready_at: float = 0.0

    async def wait(self) -> None:
        async with self._lock:
            wait_for = self._ready_at - time.monotonic()
            if wait_for > 0:
                await asyncio.sleep(wait_for)

    def reset(self, interval: Optional[float] = None) -> None:
        interval = self.interval if interval is None else max(0.0, interval)
        self._ready_at = time.monotonic() + interval


def build_client(cfg: Config) -> httpx.AsyncClient:
    headers = {
        "User-Agent": cfg.user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    }
    return httpx.AsyncClient(headers=headers, timeout=httpx.Timeout(cfg.timeout), follow_redirects=True)


async def fetch_page(
    client: httpx.AsyncClient,
    url: str,
    timer: ConnectionTimer,
    connection_wait: Optional[float] = None,
) -> bytes:
    """GET ``url`` once the timer allows it and return the whole body.

    The timer is reset only after the body has been read.
    """
    await timer.wait()
    try:
        resp = await client.get(url)
    except httpx.HTTPError as e:
        raise FetchError(url, str(e) or type(e).__name__) from e
    except (httpx.InvalidURL, ValueError) as e:
        raise InvalidURLError(url, str(e) or type(e).__name__) from e
    if not resp.is_success:
        raise FetchError(url, f"server answered {resp.status_code}", status_code=resp.status_code)
    body = resp.content
    timer.reset(connection_wait)
    return body


# ------------------------------ Orchestration ------------------------------- #


async def _fetch_links(
    client: httpx.AsyncClient,
    url: str,
    parser: PageParser,
    timer: ConnectionTimer,
    connection_wait: float,
    parent: Optional[tuple[str, str]] = None,
) -> list[SplitResult]:
    try:
        body = await fetch_page(client, url, timer, connection_wait)
    except ScraperError as e:
        raise e.locate("getting", url, parent)
    try:
        return parser.parse(body)
    except ScraperError as e:
        raise e.locate("parsing", url, parent)


async def normalize_urls(
    raw_urls: Iterable[str],
    formats: str,
    connection_wait: float,
    timer: ConnectionTimer,
    client: httpx.AsyncClient,
    *,
    classifier: Optional[UrlClassifier] = None,
) -> UrlSet:
    """Turn ebook, author and collection URLs into the set of their ebook file links.

    Every HTTP connection goes through ``timer``, which is reset with
    ``connection_wait`` after each response body has been read. The timer
    must be ready to fire before the first call.

    Book pages found on author and collection pages are resolved against the
    site URL. The returned links are as they appear on the ebook pages,
    usually relative to the site URL. The first error aborts the whole batch.
    """
    logger = get_logger("expand")
    classifier = classifier or UrlClassifier()
    site_url = classifier.site_url
    final_urls = UrlSet()

    ebook_parser = EbookPageParser(formats)
    listing_parsers: dict[PageKind, PageParser] = {
        PageKind.AUTHOR: AuthorPageParser(),
        PageKind.COLLECTION: CollectionPageParser(),
    }

    # Book pages are not deduplicated across inputs; only the inputs themselves are.
    for raw_url in remove_string_duplicates(raw_urls):
        kind = classifier.classify(raw_url)

        if kind is PageKind.EBOOK:
            logger.debug(f"Ebook page: {raw_url}")
            links = await _fetch_links(client, raw_url, ebook_parser, timer, connection_wait)
            final_urls.add(*links)

        elif kind in listing_parsers:
            book_links = await _fetch_links(client, raw_url, listing_parsers[kind], timer, connection_wait)
            logger.debug(f"{kind.value.capitalize()} page {raw_url}: {len(book_links)} book(s)")
            parent = (kind.value, raw_url)
            for book_link in book_links:
                book_url = resolve_link(site_url, book_link)
                links = await _fetch_links(client, book_url, ebook_parser, timer, connection_wait, parent)
                final_urls.add(*links)

        else:
            raise ClassificationError(raw_url, "was not recognized as a valid URL format")

    logger.debug(f"{len(final_urls)} file link(s) found")
    return final_urls


# -------------------------------- Downloads --------------------------------- #


def local_filename(url: str, trim_kepub: bool = False) -> str:
    filename = link_filename(url)
    if trim_kepub and filename.endswith(".kepub.epub"):
        filename = filename[: -len(".epub")]
    return filename


async def download_files(
    urls: Iterable[SplitResult],
    cfg: Config,
    timer: ConnectionTimer,
    client: httpx.AsyncClient,
) -> list[Path]:
    """Stream every file link into ``cfg.out_dir``, one connection at a time."""
    logger = get_logger("download")
    out_dir = Path(cfg.out_dir)
    written: list[Path] = []
    for link in urls:
        file_url = resolve_link(cfg.site_url, link)
        filename = local_filename(file_url, cfg.trim_kepub)
        if not filename:
            raise FetchError(file_url, "no filename in URL").locate("downloading", file_url)
        path = out_dir / filename

        await timer.wait()
        logger.info(f"Downloading {file_url} -> {path}")
        try:
            async with client.stream("GET", file_url) as resp:
                if not resp.is_success:
                    raise FetchError(file_url, f"server answered {resp.status_code}", status_code=resp.status_code)
                with path.open("wb") as f:
                    async for chunk in resp.aiter_bytes():
                        if chunk:
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise FetchError(file_url, str(e) or type(e).__name__).locate("downloading", file_url) from e
        except (httpx.InvalidURL, ValueError) as e:
            raise InvalidURLError(file_url, str(e) or type(e).__name__).locate("downloading", file_url) from e
        except FetchError as e:
            raise e.locate("downloading", file_url)
        timer.reset(cfg.connection_wait)
        written.append(path)
    return written


# ------------------------------- CLI --------------------------------------- #


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sescraper",
        description="Scrape ebook files from Standard Ebooks.",
        epilog=(
            "As of this date, Standard Ebooks robots.txt is intentionally left blank. "
            "Nevertheless, all connections are made one at a time, with a wait between them."
        ),
    )
    parser.add_argument("urls", nargs="*", metavar="URL", help="ebook, author or collection page")
    parser.add_argument(
        "--formats",
        help=f"formats to look for, separated by commas (default: {','.join(FORMAT_NAMES)})",
    )
    parser.add_argument("--dir", dest="out_dir", help="directory to download into; created if needed (default: .)")
    parser.add_argument(
        "--connection-wait",
        type=float,
        help="seconds to wait between *every* HTTP connection, page parsing included (default: 1)",
    )
    parser.add_argument(
        "--trim-kepub",
        action="store_true",
        default=None,
        help='save kepub files as ".kepub" instead of ".kepub.epub"',
    )
    parser.add_argument(
        "--in",
        dest="in_files",
        action="append",
        type=Path,
        default=[],
        metavar="FILE",
        help="file with links to process, one per line; may be repeated",
    )
    parser.add_argument("--config", "-c", type=Path, help="Path to YAML configuration file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="log every page fetched")
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(argv)


def read_url_file(path: Path) -> list[str]:
    with path.open("r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def load_config(args: argparse.Namespace) -> Config:
    cfg = Config.from_yaml(args.config) if args.config else Config()
    overrides = {
        name: getattr(args, name)
        for name in ("formats", "out_dir", "connection_wait", "trim_kepub")
        if getattr(args, name) is not None
    }
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)
    return cfg.validate()


def collect_urls(args: argparse.Namespace, cfg: Config) -> list[str]:
    """Command-line URLs first, then those from ``--in`` files, then the config file."""
    urls = list(args.urls)
    for path in args.in_files:
        urls.extend(read_url_file(path))
    urls.extend(cfg.urls)
    return urls


async def run(urls: list[str], cfg: Config) -> list[Path]:
    timer = ConnectionTimer(cfg.connection_wait)
    classifier = UrlClassifier(cfg.site_url)
    async with build_client(cfg) as client:
        file_links = await normalize_urls(
            urls, cfg.formats, cfg.connection_wait, timer, client, classifier=classifier
        )
        return await download_files(file_links, cfg, timer, client)


def main(argv: Optional[Iterable[str]] = None) -> int:
    arg_parser = build_arg_parser()
    args = arg_parser.parse_args(argv)
    setup_logger(args.verbose)
    logger = get_logger("main")

    try:
        cfg = load_config(args)
        urls = collect_urls(args, cfg)
    except (ConfigError, OSError, yaml.YAMLError) as e:
        logger.error(f"error: {e}")
        arg_parser.print_usage(sys.stderr)
        return 2

    # No URLs at all is the same as asking for help
    if not urls:
        arg_parser.print_help()
        return 0

    out_dir = Path(cfg.out_dir).resolve()
    try:
        ensure_dir(out_dir)
    except OSError as e:
        logger.error(f"error: {e}")
        return 1
    cfg = dataclasses.replace(cfg, out_dir=str(out_dir))

    try:
        written = asyncio.run(run(urls, cfg))
    except ScraperError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    logger.info(f"Done: {len(written)} file(s) downloaded to {out_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
