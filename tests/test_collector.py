# -*- coding: utf-8 -*-
"""
tests/test_collector.py
RSS 解析与抓取（httpx.MockTransport，不联网）。
"""

import asyncio

import httpx
import pytest

from impacthub import collector
from impacthub.collector import fetch_rss
from impacthub.models import NewsSource
from impacthub.parsers.rss_default import parse_rss

FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Markets</title>
    <link>https://www.cnbc.com/markets</link>
    <description>Market news</description>
    <item>
      <title>$AAPL and $MSFT lead tech rally after earnings</title>
      <link>https://www.cnbc.com/2025/10/30/tech-rally.html</link>
      <description>&lt;p&gt;Shares of &lt;b&gt;Apple&lt;/b&gt; rose.&lt;/p&gt;</description>
      <pubDate>Thu, 30 Oct 2025 13:30:00 GMT</pubDate>
      <category>earnings</category>
    </item>
    <item>
      <title>Headline without a link</title>
      <description>nothing to point at</description>
    </item>
    <item>
      <title>Treasury yields climb</title>
      <link>https://www.cnbc.com/2025/10/30/yields.html</link>
    </item>
  </channel>
</rss>
"""

SOURCE = NewsSource("CNBC", 2, 4.2, url="https://www.cnbc.com/id/100003114/device/rss/rss.html", kind="rss")


def test_parse_rss_fields():
    items = parse_rss(FEED, SOURCE)
    assert [i["title"] for i in items] == [
        "$AAPL and $MSFT lead tech rally after earnings",
        "Treasury yields climb",
    ]
    first = items[0]
    assert first["url"] == "https://www.cnbc.com/2025/10/30/tech-rally.html"
    assert first["published_at"] == 1761831000000
    assert first["symbols"] == ["AAPL", "MSFT"]
    assert first["source"] == "CNBC"
    assert first["tier"] == 2
    assert first["tags"] == ["earnings"]
    assert "<" not in first["summary"]
    assert "Apple" in first["summary"]


def test_parse_rss_without_date_uses_fetch_time():
    items = parse_rss(FEED, SOURCE)
    assert isinstance(items[1]["published_at"], int)
    assert items[1]["symbols"] == []


def test_parse_rss_max_items():
    assert len(parse_rss(FEED, SOURCE, max_items=1)) == 1


def test_parse_rss_garbage_returns_empty():
    assert parse_rss("this is not a feed", SOURCE) == []


async def test_fetch_rss_with_mock_transport():
    def handler(request):
        assert request.url == httpx.URL(SOURCE.url)
        return httpx.Response(200, text=FEED, headers={"Content-Type": "application/rss+xml"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        items = await fetch_rss(SOURCE, client)
    assert len(items) == 2


async def test_fetch_rss_non_200_is_empty():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        assert await fetch_rss(SOURCE, client) == []


async def test_poller_survives_unexpected_errors(monkeypatch, caplog):
    real_sleep = asyncio.sleep
    sleeps = []
    calls = {"n": 0}

    async def fake_sleep(sec):
        sleeps.append(sec)
        await real_sleep(0)

    async def flaky_fetch(src, client, max_items=20):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("feed body is not text")
        if calls["n"] == 2:
            return [{"url": "https://www.cnbc.com/a.html", "title": "Treasury yields climb"}]
        return []

    monkeypatch.setattr(collector, "fetch_rss", flaky_fetch)
    monkeypatch.setattr(asyncio, "sleep", fake_sleep)

    queue: asyncio.Queue = asyncio.Queue()
    src = NewsSource("CNBC", 2, 4.2, url=SOURCE.url, kind="rss", interval_sec=10)
    task = asyncio.create_task(collector._poll_rss(src, queue, client=None))
    got = await asyncio.wait_for(queue.get(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert got["title"] == "Treasury yields climb"
    assert sleeps[0] == 10
    assert "feed body is not text" in caplog.text
