# -*- coding: utf-8 -*-
"""
impacthub/collector.py
采集器：按 ops/sources.yml 里启用的 RSS 源轮询，把候选条目放进队列，
由 pipeline 的 ingest worker 消费。
其它类型（api / manual）由外部直接调用 ingest，这里跳过。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .models import NewsSource
from .parsers.rss_default import parse_rss
from .sources import SourceRegistry

logger = logging.getLogger(__name__)

USER_AGENT = "impact-hub/0.3"


def make_client(timeout: float = 15.0) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, headers={"User-Agent": USER_AGENT}, follow_redirects=True)


async def fetch_rss(src: NewsSource, client: httpx.AsyncClient, max_items: int = 20) -> List[Dict[str, Any]]:
    """抓一次 feed；非 200 返回空列表"""
    resp = await client.get(src.url)
    if resp.status_code != 200:
        logger.warning("[rss] %s 响应失败 status=%s", src.name, resp.status_code)
        return []
    return parse_rss(resp.text, src, max_items=max_items)


async def _poll_rss(src: NewsSource, queue: "asyncio.Queue", client: httpx.AsyncClient) -> None:
    """
    轮询单个 RSS 源；运行期内同一链接只入队一次（跨轮次的去重交给 DedupeIndex）
    """
    interval = max(int(src.interval_sec), 10)
    seen: set = set()
    logger.info("[collector] RSS 启动 %s 每 %ss", src.name, interval)

    while True:
        try:
            for cand in await fetch_rss(src, client):
                if cand["url"] in seen:
                    continue
                seen.add(cand["url"])
                await queue.put(cand)
                logger.debug("[rss] %s 捕获 %s", src.name, cand["title"][:60])
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("[rss] %s 任务已取消", src.name)
            raise
        except httpx.HTTPError as e:
            logger.warning("[rss] %s 网络异常: %r", src.name, e)
            await asyncio.sleep(min(interval, 60))
        except Exception:
            logger.exception("[rss] %s 异常", src.name)
            # 出错做退避，避免频繁报错刷屏
            await asyncio.sleep(min(interval, 60))


async def run_collectors(
    queue: "asyncio.Queue",
    registry: SourceRegistry,
    client: Optional[httpx.AsyncClient] = None,
) -> List[asyncio.Task]:
    """按来源类型启动采集任务；目前实现了 rss"""
    client = client or make_client()
    tasks: List[asyncio.Task] = []
    for src in registry.enabled():
        if src.kind == "rss" and src.url:
            tasks.append(asyncio.create_task(_poll_rss(src, queue, client)))
        elif src.kind in ("api", "manual", ""):
            continue
        else:
            logger.warning("[collector] 未知类型: %s (%s)", src.kind, src.name)
    logger.info("[collector] 已启动 %s 个采集任务", len(tasks))
    return tasks
