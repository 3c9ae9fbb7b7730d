"""Canned Standard Ebooks pages, a fake site and a timer that never sleeps."""

from __future__ import annotations

import httpx

import sescraper


SITE = "https://standardebooks.org"


def book_page(*hrefs: str) -> str:
    links = "\n".join(f'<li><a href="{h}" class="epub">{h}</a></li>' for h in hrefs)
    return f"""<!doctype html>
<html><head><title>Book</title></head>
<body><main>
<section id="download"><ul>
{links}
</ul></section>
<a href="/about">About</a>
</main></body></html>"""


def listing_page(*hrefs: str) -> str:
    items = "\n".join(
        f'<li><a href="{h}" tabindex="-1"><img src="{h}/cover.jpg"/></a>'
        f'<p><a href="{h}">Title</a></p>'
        f'<p class="author"><a href="/ebooks/someone">Someone</a></p></li>'
        for h in hrefs
    )
    return f"""<!doctype html>
<html><body><main>
<ol class="ebooks-list">
{items}
</ol>
</main></body></html>"""


class RecordingTimer(sescraper.ConnectionTimer):
    """ConnectionTimer that records calls instead of sleeping."""

    def __init__(self, interval: float = 0.0, events: list | None = None) -> None:
        super().__init__(interval)
        self.events = events if events is not None else []

    async def wait(self) -> None:
        self.events.append("wait")

    def reset(self, interval=None) -> None:
        self.events.append("reset")


class FakeSite:
    """Serves canned pages through httpx.MockTransport and records each request."""

    def __init__(self, pages: dict[str, object], events: list | None = None) -> None:
        self.pages = pages
        self.events = events if events is not None else []
        self.requested: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requested.append(url)
        self.events.append(f"get {url}")
        page = self.pages.get(url)
        if page is None:
            return httpx.Response(404, text="not found")
        if isinstance(page, int):
            return httpx.Response(page, text="error")
        if isinstance(page, bytes):
            return httpx.Response(200, content=page)
        return httpx.Response(200, text=str(page), headers={"Content-Type": "text/html"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
