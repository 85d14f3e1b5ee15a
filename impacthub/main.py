# -*- coding: utf-8 -*-
"""
impacthub/main.py
串起：collector -> ingest worker（去重/打分/路由/落库）-> 各通道推送循环 -> housekeeper

    python -m impacthub.main --run-seconds 60
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .collector import run_collectors
from .config import ROOT, load_cfg
from .dedupe import DedupeIndex
from .models import DIGEST_2H, DIGEST_4H
from .notifier import Notifier
from .pipeline import IngestionPipeline, run_ingest_worker
from .recorder import DeliveryRecorder
from .router import RoutingEngine
from .scorer import ImpactRanker, ScoringConfig
from .sources import SourceRegistry
from .storage import NewsStore

logger = logging.getLogger("impacthub")

DIGEST_PERIOD_SEC = {
    DIGEST_2H: 2 * 3600,
    DIGEST_4H: 4 * 3600,
}


def setup_logging() -> None:
    level = os.environ.get("IMPACTHUB_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # httpx 每个请求一条 INFO，太吵
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class Services:
    store: NewsStore
    registry: SourceRegistry
    dedupe: DedupeIndex
    router: RoutingEngine
    recorder: DeliveryRecorder
    pipeline: IngestionPipeline
    notifier: Notifier

    async def close(self) -> None:
        await self.notifier.close()
        await self.store.close()


async def build_services(cfg: dict, db_path: Optional[Path] = None) -> Services:
    path = db_path or Path(cfg["storage"]["db_path"])
    if not path.is_absolute() and str(path) != ":memory:":
        path = ROOT / path
    store = await NewsStore.open(path)
    registry = SourceRegistry.from_yaml()
    dedupe = DedupeIndex.from_cfg(store, cfg)
    router = RoutingEngine.from_cfg(store, cfg)
    recorder = DeliveryRecorder(store)
    ranker = ImpactRanker(ScoringConfig())
    pipeline = IngestionPipeline(store, registry, dedupe, ranker, router)
    notifier = Notifier.from_cfg(store, router, recorder, cfg)
    return Services(store, registry, dedupe, router, recorder, pipeline, notifier)


async def run_fastlane_loop(notifier: Notifier, every_sec: float = 15) -> None:
    logger.info("[fastlane] started (every %ss)", every_sec)
    try:
        while True:
            try:
                await notifier.flush_fastlane()
            except Exception as e:
                logger.exception("[fastlane] flush error: %r", e)
            await asyncio.sleep(every_sec)
    except asyncio.CancelledError:
        logger.info("[fastlane] cancelled")
        raise


async def run_digest_loop(notifier: Notifier, channel: str, every_sec: float) -> None:
    logger.info("[%s] started (every %ss)", channel, every_sec)
    try:
        while True:
            await asyncio.sleep(every_sec)
            try:
                await notifier.flush_digest(channel)
            except Exception as e:
                logger.exception("[%s] flush error: %r", channel, e)
    except asyncio.CancelledError:
        logger.info("[%s] cancelled", channel)
        raise


async def run_housekeeper(dedupe: DedupeIndex, every_sec: int = 600) -> None:
    """定期清理窗口外的去重缓存，避免库膨胀。"""
    logger.info("[housekeeper] started")
    try:
        while True:
            try:
                await dedupe.sweep()
            except Exception as e:
                logger.exception("[housekeeper] sweep error: %r", e)
            await asyncio.sleep(every_sec)
    except asyncio.CancelledError:
        logger.info("[housekeeper] cancelled")
        raise


async def main(run_seconds: int = 0, db_path: Optional[str] = None) -> None:
    cfg = load_cfg()
    svc = await build_services(cfg, Path(db_path) if db_path else None)
    n_cfg = cfg["notifier"]

    q_raw: asyncio.Queue = asyncio.Queue()
    tasks: List[asyncio.Task] = []
    logger.info("[main] creating tasks…")

    # 1) 采集器 -> q_raw
    tasks.extend(await run_collectors(q_raw, svc.registry))
    # 2) ingest worker 消费 q_raw
    tasks.append(asyncio.create_task(run_ingest_worker(q_raw, svc.pipeline)))
    # 3) 推送循环
    tasks.append(asyncio.create_task(run_fastlane_loop(svc.notifier, float(n_cfg["fastlane_poll_sec"]))))
    for channel, period in DIGEST_PERIOD_SEC.items():
        tasks.append(asyncio.create_task(run_digest_loop(svc.notifier, channel, period)))
    # 4) 清理器
    tasks.append(asyncio.create_task(run_housekeeper(svc.dedupe, int(cfg["housekeeper"]["every_sec"]))))

    logger.info("[main] running for %ss …", run_seconds or "∞")
    try:
        if run_seconds and run_seconds > 0:
            await asyncio.sleep(run_seconds)
        else:
            # 0 或负数 => 常驻
            await asyncio.Event().wait()
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await svc.close()
        logger.info("[main] finished")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--run-seconds", type=int, default=0)
    parser.add_argument("--db", default=None, help="SQLite 路径（默认取 ops/config.yml 的 storage.db_path）")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(main(run_seconds=args.run_seconds, db_path=args.db))
