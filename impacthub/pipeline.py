# -*- coding: utf-8 -*-
"""
impacthub/pipeline.py
入库流水线：校验 -> 去重 -> 打分 -> 路由 -> 一次事务落库
- 不合法的候选直接 rejected（不写任何东西）
- 重复条目 skipped；近似重复会触发原条目重新打分（佐证），可能升级到 fastlane
- 落库失败整体回滚，并撤销本次的去重登记，抛 PersistenceFailure
推送不在这里做，由 notifier 轮询各通道。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import aiosqlite

from .dedupe import DedupeIndex
from .errors import PersistenceFailure, ValidationError
from .models import (
    ADMITTED, REJECTED, SKIPPED, SUPPRESSED, Candidate, DedupeCacheEntry,
    IngestResult, NewsItem, NewsScore, NewsSource,
)
from .router import RoutingEngine
from .scorer import ImpactRanker, ScoreContext
from .sources import DEFAULT_TIER, SourceRegistry
from .storage import NewsStore
from .utils import md5_hex, normalize_link, now_ms, parse_published, sha1_hex

logger = logging.getLogger(__name__)

HOUR_MS = 3600 * 1000

MAX_TITLE = 500
MAX_SOURCE = 100


def item_id_for(url: str) -> str:
    """条目主键：规范化链接的 sha1 前缀（同一链接永远得到同一个 id）"""
    return sha1_hex(normalize_link(url))[:16]


def external_id_for(source: str, url: str) -> str:
    return f"{source}:{md5_hex(normalize_link(url))[:12]}"


def _require_str(raw: Dict[str, Any], key: str, max_len: int) -> str:
    v = raw.get(key)
    if not isinstance(v, str) or not v.strip():
        raise ValidationError(key, f"{key} is required")
    v = v.strip()
    if len(v) > max_len:
        raise ValidationError(key, f"{key} longer than {max_len} characters")
    return v


def _str_list(raw: Dict[str, Any], key: str) -> list:
    v = raw.get(key)
    if v is None:
        return []
    if not isinstance(v, (list, tuple)) or not all(isinstance(s, str) for s in v):
        raise ValidationError(key, f"{key} must be a list of strings")
    return [s.strip() for s in v if s.strip()]


class IngestionPipeline:
    def __init__(
        self,
        store: NewsStore,
        registry: SourceRegistry,
        dedupe: DedupeIndex,
        ranker: ImpactRanker,
        router: RoutingEngine,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.registry = registry
        self.dedupe = dedupe
        self.ranker = ranker
        self.router = router
        self._clock = clock

    # --------- 校验 ---------
    def validate(self, raw: Dict[str, Any]) -> Candidate:
        """原始 dict -> Candidate；不合法抛 ValidationError"""
        if not isinstance(raw, dict):
            raise ValidationError("raw", "candidate must be a mapping")

        title = _require_str(raw, "title", MAX_TITLE)
        source = _require_str(raw, "source", MAX_SOURCE)

        url_raw = raw.get("url")
        u = urlparse(url_raw.strip()) if isinstance(url_raw, str) else None
        if u is None or u.scheme.lower() not in ("http", "https") or not u.netloc:
            raise ValidationError("url", "url must be an absolute http(s) URL")
        url = normalize_link(url_raw)

        published_at = parse_published(raw.get("published_at"))
        if published_at is None:
            raise ValidationError("published_at", "published_at must be ISO-8601 or an epoch timestamp")

        tier_raw = raw.get("tier")
        if tier_raw is None:
            known = self.registry.get(source)
            tier = known.tier if known else DEFAULT_TIER
        else:
            if isinstance(tier_raw, bool) or not isinstance(tier_raw, (int, str)):
                raise ValidationError("tier", "tier must be an integer 1-5")
            try:
                tier = int(tier_raw)
            except ValueError as e:
                raise ValidationError("tier", "tier must be an integer 1-5") from e
            if not 1 <= tier <= 5:
                raise ValidationError("tier", "tier must be an integer 1-5")

        symbols = [s.upper() for s in _str_list(raw, "symbols")]
        primary = raw.get("primary_symbol")
        if primary is not None and not isinstance(primary, str):
            raise ValidationError("primary_symbol", "primary_symbol must be a string")
        primary = (primary or "").strip().upper() or (symbols[0] if symbols else None)

        summary = raw.get("summary") or ""
        if not isinstance(summary, str):
            raise ValidationError("summary", "summary must be a string")
        entities = raw.get("entities") or {}
        if not isinstance(entities, dict):
            raise ValidationError("entities", "entities must be a mapping")

        return Candidate(
            news_item_id=item_id_for(url),
            external_id=external_id_for(source, url),
            title=title,
            url=url,
            published_at=published_at,
            source=source,
            tier=tier,
            summary=summary.strip(),
            body=str(raw.get("body") or ""),
            symbols=symbols,
            primary_symbol=primary,
            entities=entities,
            region=raw.get("region"),
            lang=str(raw.get("lang") or "en"),
            tags=_str_list(raw, "tags"),
        )

    # --------- 打分上下文 ---------
    async def _context(self, item: NewsItem, external_id: str, reason: str) -> ScoreContext:
        sightings = await self.dedupe.corroboration_context(external_id)
        related = 0
        if item.primary_symbol:
            hours = float(self.ranker.config.scoring.get("novelty", {}).get("related_window_hours", 6))
            related = await self.store.count_recent_by_symbol(
                item.primary_symbol, self._clock() - int(hours * HOUR_MS), exclude_id=item.id,
            )
        return ScoreContext(sightings=sightings, related_recent=related, reason=reason)

    async def _source_for(self, name: str) -> NewsSource:
        src = self.registry.get(name)
        if src is not None:
            return src
        stored = await self.store.get_source(name)
        return stored or self.registry.resolve(name)

    async def rescore(self, entry: DedupeCacheEntry) -> Optional[NewsScore]:
        """
        近似重复出现后给原条目重新打分（新版本），并让路由考虑升级。
        原条目还没落库（并发写入中或已失败）时跳过。
        """
        item = await self.store.get_item(entry.news_item_id)
        if item is None:
            return None
        source = await self._source_for(item.source)
        ctx = await self._context(item, entry.external_id, reason="corroboration")
        score = self.ranker.score(item, source, ctx)
        score = await self.store.add_score_version(score)
        logger.info(
            "[pipeline] 重新打分 %s v%s -> %.2f (corroboration=%.2f)",
            item.id, score.version, score.composite_score, score.corroboration,
        )
        await self.router.consider_upgrade(item.id, score)
        return score

    # --------- 主流程 ---------
    async def ingest(self, raw: Dict[str, Any], dry_run: bool = False) -> IngestResult:
        try:
            cand = self.validate(raw)
        except ValidationError as e:
            logger.info("[pipeline] rejected (%s): %s", e.field, e.message)
            return IngestResult(REJECTED, f"invalid_{e.field}", details={"field": e.field, "message": e.message})

        source = self.registry.resolve(cand.source, cand.tier)
        if not source.enabled:
            return IngestResult(REJECTED, "source_disabled", details={"source": source.name})
        cand.tier = source.tier

        admit = await self.dedupe.admit(cand, dry_run=dry_run)
        if not admit.admitted:
            matched = admit.matched_entry
            details: Dict[str, Any] = {"url_hash": admit.url_hash, "topic_hash": admit.topic_hash}
            if admit.reason == "topic_match" and matched is not None and not dry_run:
                new_score = await self.rescore(matched)
                if new_score is not None:
                    details["rescored_version"] = new_score.version
                    details["rescored_composite"] = new_score.composite_score
            return IngestResult(
                SKIPPED, admit.reason,
                news_item_id=matched.news_item_id if matched else None,
                details=details,
            )

        # 去重窗口已过但条目早已入库（同一链接很久之后再次出现）
        if await self.store.item_exists(cand.news_item_id):
            return IngestResult(SKIPPED, "known_item", news_item_id=cand.news_item_id)

        now = self._clock()
        item = NewsItem(
            id=cand.news_item_id,
            source=cand.source,
            title=cand.title,
            url=cand.url,
            published_at=cand.published_at,
            fetched_at=now,
            external_id=cand.external_id,
            summary=cand.summary,
            body=cand.body,
            primary_symbol=cand.primary_symbol,
            symbols=cand.symbols,
            entities=cand.entities,
            region=cand.region,
            lang=cand.lang,
            tags=cand.tags,
        )
        ctx = await self._context(item, cand.external_id, reason="initial")
        score = self.ranker.score(item, source, ctx)
        state = self.router.initial_state(score, now)
        channel = state.channel or SUPPRESSED
        details = {"degraded": score.degraded, "dry_run": dry_run}

        if dry_run:
            return IngestResult(ADMITTED, "dry_run", item.id, score.composite_score, channel, details)

        try:
            await self.store.persist_admitted(item, source, score, state)
        except aiosqlite.Error as e:
            await self.dedupe.forget(cand.external_id)
            logger.error("[pipeline] 落库失败 %s: %r", item.id, e)
            raise PersistenceFailure(f"{item.id}: {e}") from e
        self.registry.register(source)

        logger.info(
            "[pipeline] %s [%.2f] -> %s | %s",
            item.id, score.composite_score, channel, item.title[:60],
        )
        return IngestResult(ADMITTED, "new", item.id, score.composite_score, channel, details)


async def run_ingest_worker(q_in: "asyncio.Queue", pipeline: IngestionPipeline) -> None:
    """常驻：消费 collector 放进队列的原始条目"""
    logger.info("[pipeline] worker started")
    try:
        while True:
            raw = await q_in.get()
            try:
                await pipeline.ingest(raw)
            except PersistenceFailure as e:
                logger.error("[pipeline] %s", e)
            finally:
                q_in.task_done()
    except asyncio.CancelledError:
        logger.info("[pipeline] worker cancelled")
        raise
