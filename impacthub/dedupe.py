# -*- coding: utf-8 -*-
"""
impacthub/dedupe.py
时间窗口去重（默认 24 小时）：
- url_hash：规范化链接（去 utm_*/ref、小写、去空白）后 md5，命中即拒绝
- topic_hash：标题关键词指纹 + primary symbol；命中视为近似重复，
  不新建条目，但记录一次“佐证”（corroboration），并可能提升 authority_level

topic 指纹的取舍：标题去停用词、轻度词干化后，取前 8 个关键词排序再哈希。
同一事件换个说法（同义改写、增删关键词）不会命中（漏判），
但不同事件几乎不会撞到同一指纹（误判少）。关键词少于 3 个时不做 topic 去重。

窗口边界在查询时判断，过期条目不主动删除；sweep() 可选做清理。
"""

from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional

from .models import AdmitResult, Candidate, DedupeCacheEntry, DedupeSighting
from .storage import NewsStore
from .utils import md5_hex, normalize_link, norm_text_for_match, now_ms, sha1_hex

logger = logging.getLogger(__name__)

HOUR_MS = 3600 * 1000

STOPWORDS = {
    "the", "and", "but", "for", "with", "from", "into", "onto", "over", "after",
    "before", "about", "amid", "are", "was", "were", "been", "has", "have", "had",
    "its", "his", "her", "their", "this", "that", "these", "those", "will", "would",
    "can", "could", "may", "might", "says", "said", "say", "new", "report", "reports",
    "via", "per", "than", "then", "not", "all", "out", "off", "who", "what", "why", "how",
}

MIN_TOPIC_TOKENS = 3
MAX_TOPIC_TOKENS = 8


def url_hash(url: str) -> str:
    return md5_hex(normalize_link(url).lower())


def _stem(tok: str) -> str:
    for suf in ("ing", "ed", "es", "s"):
        if tok.endswith(suf) and len(tok) - len(suf) >= 3:
            return tok[: -len(suf)]
    return tok


def topic_tokens(title: str) -> List[str]:
    lower, _ = norm_text_for_match(title)
    norm = re.sub(r"[^a-z0-9\s]", " ", lower)
    return [_stem(t) for t in norm.split() if len(t) > 2 and t not in STOPWORDS]


def topic_hash(title: str, primary_symbol: Optional[str] = None) -> Optional[str]:
    """
    标题关键词指纹；关键词太少返回 None（无法可靠判断近似重复）
    """
    tokens = topic_tokens(title)
    if len(tokens) < MIN_TOPIC_TOKENS:
        return None
    key = sorted(set(tokens[:MAX_TOPIC_TOKENS]))
    if primary_symbol:
        key.append(primary_symbol.upper())
    return sha1_hex(" ".join(key))


def authority_for_tier(tier: int) -> int:
    # tier 1（官方）= 5，tier 5（社交）= 1
    return 6 - int(tier)


class DedupeIndex:
    def __init__(
        self,
        store: NewsStore,
        *,
        window_hours: float = 24,
        topic_window_hours: Optional[float] = None,
        corroboration_window_hours: float = 6,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.window_ms = int(window_hours * HOUR_MS)
        self.topic_window_ms = int((topic_window_hours or window_hours) * HOUR_MS)
        self.corroboration_window_ms = int(corroboration_window_hours * HOUR_MS)
        self._clock = clock

    @classmethod
    def from_cfg(cls, store: NewsStore, cfg: dict, clock: Callable[[], int] = now_ms) -> "DedupeIndex":
        d = cfg.get("dedupe", {})
        return cls(
            store,
            window_hours=float(d.get("window_hours", 24)),
            topic_window_hours=float(d.get("topic_window_hours", d.get("window_hours", 24))),
            corroboration_window_hours=float(d.get("corroboration_window_hours", 6)),
            clock=clock,
        )

    async def admit(self, cand: Candidate, dry_run: bool = False) -> AdmitResult:
        """
        原子的 check-and-insert：同一连接上的写锁保证两个几乎同时到达的
        重复条目不会都被放行。dry_run 只判断不写入。
        """
        now = self._clock()
        u_hash = url_hash(cand.url)
        t_hash = topic_hash(cand.title, cand.primary_symbol)
        authority = authority_for_tier(cand.tier)

        async with self.store.transaction():
            # 1) 链接命中：直接拒绝
            existing = await self.store._find_dedupe_by_url(u_hash, now - self.window_ms)
            if existing is not None:
                if not dry_run:
                    await self.store._touch_dedupe(existing.external_id, now, existing.authority_level)
                    existing.seen_count += 1
                    existing.last_seen_at = now
                logger.info("[dedupe] 链接重复: %s (seen=%s)", cand.title[:50], existing.seen_count)
                return AdmitResult(False, "url_match", u_hash, t_hash, existing)

            # 2) 话题命中：近似重复，记一次佐证
            if t_hash:
                existing = await self.store._find_dedupe_by_topic(t_hash, now - self.topic_window_ms)
                if existing is not None:
                    if not dry_run:
                        if authority > existing.authority_level:
                            logger.info(
                                "[dedupe] 权威升级: %s authority %s -> %s",
                                existing.external_id, existing.authority_level, authority,
                            )
                        await self.store._touch_dedupe(existing.external_id, now, authority)
                        if cand.source != existing.source:
                            await self.store._insert_sighting(DedupeSighting(
                                external_id=existing.external_id,
                                source=cand.source,
                                tier=cand.tier,
                                url_hash=u_hash,
                                seen_at=now,
                            ))
                        existing.seen_count += 1
                        existing.last_seen_at = now
                        existing.authority_level = max(existing.authority_level, authority)
                    logger.info("[dedupe] 近似重复: %s -> %s", cand.title[:50], existing.news_item_id)
                    return AdmitResult(False, "topic_match", u_hash, t_hash, existing)

            # 3) 新条目
            entry = DedupeCacheEntry(
                external_id=cand.external_id,
                url_hash=u_hash,
                topic_hash=t_hash,
                news_item_id=cand.news_item_id,
                source=cand.source,
                first_seen_at=now,
                last_seen_at=now,
                authority_level=authority,
                seen_count=1,
            )
            if not dry_run:
                await self.store._upsert_dedupe(entry)
            return AdmitResult(True, "new", u_hash, t_hash, entry)

    async def forget(self, external_id: str) -> None:
        """回滚一次放行（后续持久化失败时调用）"""
        async with self.store.transaction():
            await self.store._delete_dedupe(external_id)

    async def corroboration_context(self, external_id: str) -> List[DedupeSighting]:
        since = self._clock() - self.corroboration_window_ms
        return await self.store.get_sightings(external_id, since)

    async def sweep(self) -> int:
        """清理窗口外的缓存条目（可选，不影响正确性）"""
        before = self._clock() - max(self.window_ms, self.topic_window_ms)
        async with self.store.transaction():
            n = await self.store._delete_dedupe_before(before)
        if n:
            logger.info("[dedupe] 清理 %s 条过期缓存", n)
        return n
