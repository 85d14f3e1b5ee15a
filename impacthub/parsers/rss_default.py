# -*- coding: utf-8 -*-
"""
RSS/Atom 默认解析器：feed 文本 -> 候选条目 dict 列表（ingest 的输入格式）
"""

import calendar
import logging
import re
from typing import Any, Dict, List, Optional

import feedparser

from ..models import NewsSource
from ..utils import now_ms

logger = logging.getLogger(__name__)

# 标题里的 $TICKER 写法
_CASHTAG = re.compile(r"\$([A-Z]{1,5})\b")
_TAGS = re.compile(r"<[^>]+>")


def _published_ms(entry: Any) -> Optional[int]:
    """
    feedparser 的 *_parsed 是 UTC 的 struct_time；没有就返回 None
    """
    for key in ("published_parsed", "updated_parsed"):
        st = entry.get(key)
        if st:
            return int(calendar.timegm(st) * 1000)
    return None


def _summary(entry: Any, limit: int = 1000) -> str:
    text = _TAGS.sub(" ", entry.get("summary", "") or "")
    return " ".join(text.split())[:limit]


def parse_rss(text: str, source: NewsSource, max_items: int = 20) -> List[Dict[str, Any]]:
    """
    解析RSS/Atom内容，返回候选条目列表

    每个条目包含:
        - title / url / summary
        - published_at: UTC毫秒（或原始时间字符串；都没有时用当前时间）
        - source / tier: 来自来源目录
        - symbols: 标题里的 $TICKER
    缺标题或链接的条目直接跳过。
    """
    feed = feedparser.parse(text)
    if feed.get("bozo") and not feed.get("entries"):
        logger.warning("[rss] %s 解析失败: %r", source.name, feed.get("bozo_exception"))
        return []

    out: List[Dict[str, Any]] = []
    for entry in feed.get("entries", [])[:max_items]:
        title = (entry.get("title") or "").strip()
        link = (entry.get("link") or entry.get("id") or "").strip()
        if not title or not link:
            continue
        # 没有时间就用抓取时间
        published = _published_ms(entry) or entry.get("published") or entry.get("updated") or now_ms()
        out.append({
            "title": title,
            "url": link,
            "summary": _summary(entry),
            "published_at": published,
            "source": source.name,
            "tier": source.tier,
            "symbols": sorted(set(_CASHTAG.findall(title))),
            "tags": [t.get("term") for t in entry.get("tags", []) if t.get("term")],
        })
    return out
