# -*- coding: utf-8 -*-
"""
impacthub/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表（sources / items / scores / routing / push history / dedupe / analyst notes）
- 写事务：同一连接上的所有写操作串行化（asyncio.Lock），失败整体回滚
- 查询：通道待推送 Top-N、按 id 取条目+评分、按 symbol 取近期条目

写操作的 _insert_* / _update_* 辅助方法必须在 transaction() 内调用，
它们本身不加锁也不提交。
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import aiosqlite

from .models import (
    PENDING, SUCCESS, AnalystNote, DedupeCacheEntry, DedupeSighting, NewsItem,
    NewsScore, NewsSource, PushHistory, RoutingState,
)
from .utils import join_multi, split_multi

logger = logging.getLogger(__name__)

# --------- 建表 SQL ---------
SCHEMA = """
CREATE TABLE IF NOT EXISTS news_sources (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    name                TEXT NOT NULL UNIQUE,
    tier                INTEGER NOT NULL CHECK (tier BETWEEN 1 AND 5),
    reliability_score   REAL CHECK (reliability_score BETWEEN 1.0 AND 5.0),
    rate_limit_per_hour INTEGER DEFAULT 60,
    enabled             INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS news_items (
    id             TEXT PRIMARY KEY,
    source_id      INTEGER NOT NULL REFERENCES news_sources(id),
    source         TEXT NOT NULL,
    external_id    TEXT,
    title          TEXT NOT NULL,
    summary        TEXT,
    body           TEXT,
    url            TEXT NOT NULL UNIQUE,
    published_at   INTEGER NOT NULL,
    fetched_at     INTEGER NOT NULL,
    primary_symbol TEXT,
    symbols        TEXT,
    entities       TEXT,
    region         TEXT,
    lang           TEXT DEFAULT 'en',
    tags           TEXT
);

CREATE TABLE IF NOT EXISTS news_scores (
    news_item_id    TEXT NOT NULL REFERENCES news_items(id),
    version         INTEGER NOT NULL DEFAULT 1,
    freshness       REAL CHECK (freshness BETWEEN 0 AND 1),
    source_quality  REAL CHECK (source_quality BETWEEN 0 AND 1),
    relevance       REAL CHECK (relevance BETWEEN 0 AND 1),
    impact          REAL CHECK (impact BETWEEN 0 AND 1),
    novelty         REAL CHECK (novelty BETWEEN 0 AND 1),
    corroboration   REAL CHECK (corroboration BETWEEN 0 AND 1),
    attention       REAL CHECK (attention BETWEEN 0 AND 1),
    composite_score REAL CHECK (composite_score BETWEEN 0 AND 10),
    weights         TEXT,
    scoring_details TEXT,
    scored_at       INTEGER NOT NULL,
    PRIMARY KEY (news_item_id, version)
);

CREATE TABLE IF NOT EXISTS news_routing_state (
    news_item_id TEXT PRIMARY KEY REFERENCES news_items(id),
    channel      TEXT CHECK (channel IN ('fastlane', 'digest_2h', 'digest_4h')),
    status       TEXT NOT NULL CHECK (status IN ('pending', 'sent', 'suppressed')),
    routed_at    INTEGER NOT NULL,
    fade_level   INTEGER NOT NULL DEFAULT 0,
    upgrade_flag INTEGER NOT NULL DEFAULT 0,
    last_updated INTEGER NOT NULL,
    reason       TEXT
);

CREATE TABLE IF NOT EXISTS news_push_history (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    news_item_id  TEXT NOT NULL REFERENCES news_items(id),
    channel       TEXT NOT NULL CHECK (channel IN ('fastlane', 'digest_2h', 'digest_4h')),
    sent_at       INTEGER NOT NULL,
    message_id    TEXT,
    outcome       TEXT NOT NULL CHECK (outcome IN ('success', 'failed', 'throttled')),
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS news_dedupe_cache (
    external_id     TEXT PRIMARY KEY,
    url_hash        TEXT NOT NULL,
    topic_hash      TEXT,
    news_item_id    TEXT NOT NULL,
    source          TEXT NOT NULL,
    first_seen_at   INTEGER NOT NULL,
    last_seen_at    INTEGER NOT NULL,
    authority_level INTEGER NOT NULL DEFAULT 1,
    seen_count      INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS news_dedupe_sightings (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL,
    source      TEXT NOT NULL,
    tier        INTEGER NOT NULL,
    url_hash    TEXT NOT NULL,
    seen_at     INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS news_analyst_notes (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    news_item_id TEXT NOT NULL REFERENCES news_items(id),
    model        TEXT NOT NULL,
    content      TEXT NOT NULL,
    action_hint  TEXT,
    confidence   REAL CHECK (confidence BETWEEN 0 AND 1),
    generated_at INTEGER NOT NULL
);
"""

SCHEMA_IDX = """
CREATE INDEX IF NOT EXISTS idx_items_published   ON news_items(published_at DESC);
CREATE INDEX IF NOT EXISTS idx_items_symbol      ON news_items(primary_symbol);
CREATE INDEX IF NOT EXISTS idx_scores_composite  ON news_scores(composite_score DESC);
CREATE INDEX IF NOT EXISTS idx_routing_channel   ON news_routing_state(channel, status);
CREATE INDEX IF NOT EXISTS idx_push_item         ON news_push_history(news_item_id);
CREATE INDEX IF NOT EXISTS idx_push_sent         ON news_push_history(sent_at DESC);
CREATE INDEX IF NOT EXISTS idx_dedupe_url_hash   ON news_dedupe_cache(url_hash);
CREATE INDEX IF NOT EXISTS idx_dedupe_topic      ON news_dedupe_cache(topic_hash);
CREATE INDEX IF NOT EXISTS idx_dedupe_first_seen ON news_dedupe_cache(first_seen_at DESC);
CREATE INDEX IF NOT EXISTS idx_sightings_ext     ON news_dedupe_sightings(external_id);
CREATE INDEX IF NOT EXISTS idx_notes_item        ON news_analyst_notes(news_item_id);
"""

# 取最新版本评分
_LATEST_SCORE_JOIN = """
JOIN news_scores ns
  ON ns.news_item_id = ni.id
 AND ns.version = (SELECT MAX(version) FROM news_scores WHERE news_item_id = ni.id)
"""


def _statements(sql: str) -> List[str]:
    return [s.strip() for s in sql.split(";") if s.strip()]


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """
    初始化数据库并返回连接。
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    # 性能相关 pragma
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute("PRAGMA foreign_keys=ON;")
    for stmt in _statements(SCHEMA) + _statements(SCHEMA_IDX):
        await db.execute(stmt)
    await db.commit()
    return db


# --------- 行 -> 模型 ---------
def _row_to_item(r: aiosqlite.Row) -> NewsItem:
    return NewsItem(
        id=r["id"],
        source=r["source"],
        source_id=r["source_id"],
        external_id=r["external_id"] or "",
        title=r["title"],
        summary=r["summary"] or "",
        body=r["body"] or "",
        url=r["url"],
        published_at=int(r["published_at"]),
        fetched_at=int(r["fetched_at"]),
        primary_symbol=r["primary_symbol"],
        symbols=split_multi(r["symbols"]),
        entities=json.loads(r["entities"] or "{}"),
        region=r["region"],
        lang=r["lang"] or "en",
        tags=split_multi(r["tags"]),
    )


def _row_to_score(r: aiosqlite.Row) -> NewsScore:
    return NewsScore(
        news_item_id=r["news_item_id"],
        version=int(r["version"]),
        freshness=r["freshness"],
        source_quality=r["source_quality"],
        relevance=r["relevance"],
        impact=r["impact"],
        novelty=r["novelty"],
        corroboration=r["corroboration"],
        attention=r["attention"],
        composite_score=r["composite_score"],
        weights=json.loads(r["weights"] or "{}"),
        scoring_details=json.loads(r["scoring_details"] or "{}"),
        scored_at=int(r["scored_at"]),
    )


def _row_to_routing(r: aiosqlite.Row) -> RoutingState:
    return RoutingState(
        news_item_id=r["news_item_id"],
        channel=r["channel"],
        status=r["status"],
        routed_at=int(r["routed_at"]),
        fade_level=int(r["fade_level"]),
        upgrade_flag=bool(r["upgrade_flag"]),
        last_updated=int(r["last_updated"]),
        reason=r["reason"] or "",
    )


def _row_to_dedupe(r: aiosqlite.Row) -> DedupeCacheEntry:
    return DedupeCacheEntry(
        external_id=r["external_id"],
        url_hash=r["url_hash"],
        topic_hash=r["topic_hash"],
        news_item_id=r["news_item_id"],
        source=r["source"],
        first_seen_at=int(r["first_seen_at"]),
        last_seen_at=int(r["last_seen_at"]),
        authority_level=int(r["authority_level"]),
        seen_count=int(r["seen_count"]),
    )


def _row_to_push(r: aiosqlite.Row) -> PushHistory:
    return PushHistory(
        id=r["id"],
        news_item_id=r["news_item_id"],
        channel=r["channel"],
        sent_at=int(r["sent_at"]),
        message_id=r["message_id"],
        outcome=r["outcome"],
        error_message=r["error_message"],
    )


def _row_to_digest_entry(r: aiosqlite.Row) -> Dict[str, Any]:
    """查询结果给推送/看板用：条目字段 + 最新评分 + 路由状态"""
    item = _row_to_item(r)
    out = dict(item.__dict__)
    out.update({
        "composite_score": r["composite_score"],
        "channel": r["channel"],
        "status": r["status"],
        "routed_at": r["routed_at"],
        "fade_level": r["fade_level"],
        "upgrade_flag": bool(r["upgrade_flag"]),
    })
    return out


class NewsStore:
    """
    持有一个 aiosqlite 连接；所有写事务通过 transaction() 串行化。
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: Union[str, Path]) -> "NewsStore":
        return cls(await init_db(db_path))

    async def close(self) -> None:
        await self.db.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            try:
                yield self.db
            except BaseException:
                await self.db.rollback()
                raise
            else:
                await self.db.commit()

    async def _fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self.db.execute(sql, params) as cur:
            return await cur.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        async with self.db.execute(sql, params) as cur:
            return list(await cur.fetchall())

    # --------- sources ---------
    async def _ensure_source(self, src: NewsSource) -> int:
        await self.db.execute(
            """
            INSERT INTO news_sources(name, tier, reliability_score, rate_limit_per_hour, enabled)
            VALUES(?,?,?,?,?)
            ON CONFLICT(name) DO NOTHING
            """,
            (src.name, src.tier, src.reliability_score, src.rate_limit_per_hour, int(src.enabled)),
        )
        row = await self._fetchone("SELECT id FROM news_sources WHERE name=?", (src.name,))
        src.id = int(row["id"])
        return src.id

    # --------- items / scores / routing ---------
    async def _insert_item(self, item: NewsItem) -> None:
        await self.db.execute(
            """
            INSERT INTO news_items(
                id, source_id, source, external_id, title, summary, body, url,
                published_at, fetched_at, primary_symbol, symbols, entities, region, lang, tags
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                item.id, item.source_id, item.source, item.external_id, item.title,
                item.summary, item.body, item.url, item.published_at, item.fetched_at,
                item.primary_symbol, join_multi(item.symbols),
                json.dumps(item.entities, ensure_ascii=False), item.region, item.lang,
                join_multi(item.tags),
            ),
        )

    async def _insert_score(self, score: NewsScore) -> None:
        await self.db.execute(
            """
            INSERT INTO news_scores(
                news_item_id, version, freshness, source_quality, relevance, impact,
                novelty, corroboration, attention, composite_score, weights, scoring_details, scored_at
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                score.news_item_id, score.version, score.freshness, score.source_quality,
                score.relevance, score.impact, score.novelty, score.corroboration,
                score.attention, score.composite_score, json.dumps(score.weights),
                json.dumps(score.scoring_details, ensure_ascii=False), score.scored_at,
            ),
        )

    async def _insert_routing(self, state: RoutingState) -> None:
        await self.db.execute(
            """
            INSERT INTO news_routing_state(
                news_item_id, channel, status, routed_at, fade_level, upgrade_flag, last_updated, reason
            ) VALUES(?,?,?,?,?,?,?,?)
            """,
            (
                state.news_item_id, state.channel, state.status, state.routed_at,
                state.fade_level, int(state.upgrade_flag), state.last_updated, state.reason,
            ),
        )

    async def _update_routing(self, state: RoutingState) -> None:
        await self.db.execute(
            """
            UPDATE news_routing_state
               SET channel=?, status=?, fade_level=?, upgrade_flag=?, last_updated=?, reason=?
             WHERE news_item_id=?
            """,
            (
                state.channel, state.status, state.fade_level, int(state.upgrade_flag),
                state.last_updated, state.reason, state.news_item_id,
            ),
        )

    async def persist_admitted(self, item: NewsItem, source: NewsSource,
                               score: NewsScore, state: RoutingState) -> None:
        """item + score + routing 一次事务写入，任何一步失败整体回滚。"""
        async with self.transaction():
            item.source_id = await self._ensure_source(source)
            await self._insert_item(item)
            await self._insert_score(score)
            await self._insert_routing(state)

    async def add_score_version(self, score: NewsScore) -> NewsScore:
        """重新打分：插入新版本，不改旧版本。"""
        async with self.transaction():
            row = await self._fetchone(
                "SELECT COALESCE(MAX(version), 0) AS v FROM news_scores WHERE news_item_id=?",
                (score.news_item_id,),
            )
            score.version = int(row["v"]) + 1
            await self._insert_score(score)
        return score

    async def save_routing(self, state: RoutingState) -> None:
        async with self.transaction():
            await self._update_routing(state)

    async def item_exists(self, item_id: str) -> bool:
        row = await self._fetchone("SELECT 1 FROM news_items WHERE id=?", (item_id,))
        return row is not None

    async def get_item(self, item_id: str) -> Optional[NewsItem]:
        row = await self._fetchone("SELECT * FROM news_items WHERE id=?", (item_id,))
        return _row_to_item(row) if row else None

    async def enrich_item(self, item_id: str, *, entities: Optional[Dict[str, Any]] = None,
                          tags: Optional[List[str]] = None) -> None:
        """条目写入后只允许补充 entities / tags"""
        async with self.transaction():
            if entities is not None:
                await self.db.execute(
                    "UPDATE news_items SET entities=? WHERE id=?",
                    (json.dumps(entities, ensure_ascii=False), item_id),
                )
            if tags is not None:
                await self.db.execute(
                    "UPDATE news_items SET tags=? WHERE id=?", (join_multi(tags), item_id)
                )

    async def get_latest_score(self, item_id: str) -> Optional[NewsScore]:
        row = await self._fetchone(
            "SELECT * FROM news_scores WHERE news_item_id=? ORDER BY version DESC LIMIT 1",
            (item_id,),
        )
        return _row_to_score(row) if row else None

    async def get_score_versions(self, item_id: str) -> List[NewsScore]:
        rows = await self._fetchall(
            "SELECT * FROM news_scores WHERE news_item_id=? ORDER BY version", (item_id,)
        )
        return [_row_to_score(r) for r in rows]

    async def get_routing_state(self, item_id: str) -> Optional[RoutingState]:
        row = await self._fetchone(
            "SELECT * FROM news_routing_state WHERE news_item_id=?", (item_id,)
        )
        return _row_to_routing(row) if row else None

    async def get_source(self, name: str) -> Optional[NewsSource]:
        row = await self._fetchone("SELECT * FROM news_sources WHERE name=?", (name,))
        if row is None:
            return None
        return NewsSource(
            id=row["id"], name=row["name"], tier=int(row["tier"]),
            reliability_score=float(row["reliability_score"]),
            rate_limit_per_hour=int(row["rate_limit_per_hour"]),
            enabled=bool(row["enabled"]),
        )

    async def count_items(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM news_items")
        return int(row["n"])

    # --------- push history（只追加） ---------
    async def _insert_push(self, row: PushHistory) -> int:
        cur = await self.db.execute(
            """
            INSERT INTO news_push_history(news_item_id, channel, sent_at, message_id, outcome, error_message)
            VALUES(?,?,?,?,?,?)
            """,
            (row.news_item_id, row.channel, row.sent_at, row.message_id, row.outcome, row.error_message),
        )
        return int(cur.lastrowid)

    async def _last_push_at(self, item_id: str) -> Optional[int]:
        row = await self._fetchone(
            "SELECT MAX(sent_at) AS t FROM news_push_history WHERE news_item_id=?", (item_id,)
        )
        return int(row["t"]) if row and row["t"] is not None else None

    async def get_push_history(self, item_id: str) -> List[PushHistory]:
        rows = await self._fetchall(
            "SELECT * FROM news_push_history WHERE news_item_id=? ORDER BY sent_at, id", (item_id,)
        )
        return [_row_to_push(r) for r in rows]

    async def has_success(self, item_id: str, channel: str) -> bool:
        row = await self._fetchone(
            """
            SELECT 1 FROM news_push_history
             WHERE news_item_id=? AND channel=? AND outcome=?
             LIMIT 1
            """,
            (item_id, channel, SUCCESS),
        )
        return row is not None

    async def push_stats(self, since_ms: int) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT channel, outcome, COUNT(*) AS count, MAX(sent_at) AS last_sent
              FROM news_push_history
             WHERE sent_at >= ?
             GROUP BY channel, outcome
             ORDER BY channel, outcome
            """,
            (since_ms,),
        )
        return [dict(r) for r in rows]

    # --------- dedupe cache ---------
    async def _find_dedupe_by_url(self, url_hash: str, since_ms: int) -> Optional[DedupeCacheEntry]:
        row = await self._fetchone(
            """
            SELECT * FROM news_dedupe_cache
             WHERE url_hash=? AND first_seen_at >= ?
             ORDER BY first_seen_at LIMIT 1
            """,
            (url_hash, since_ms),
        )
        return _row_to_dedupe(row) if row else None

    async def _find_dedupe_by_topic(self, topic_hash: str, since_ms: int) -> Optional[DedupeCacheEntry]:
        row = await self._fetchone(
            """
            SELECT * FROM news_dedupe_cache
             WHERE topic_hash=? AND first_seen_at >= ?
             ORDER BY first_seen_at LIMIT 1
            """,
            (topic_hash, since_ms),
        )
        return _row_to_dedupe(row) if row else None

    async def get_dedupe_entry(self, external_id: str) -> Optional[DedupeCacheEntry]:
        row = await self._fetchone(
            "SELECT * FROM news_dedupe_cache WHERE external_id=?", (external_id,)
        )
        return _row_to_dedupe(row) if row else None

    async def get_dedupe_by_item(self, item_id: str) -> Optional[DedupeCacheEntry]:
        row = await self._fetchone(
            "SELECT * FROM news_dedupe_cache WHERE news_item_id=? ORDER BY first_seen_at DESC LIMIT 1",
            (item_id,),
        )
        return _row_to_dedupe(row) if row else None

    async def _upsert_dedupe(self, e: DedupeCacheEntry) -> None:
        # 过期条目（窗口外）以同一 external_id 重新出现时重置
        await self.db.execute(
            """
            INSERT INTO news_dedupe_cache(
                external_id, url_hash, topic_hash, news_item_id, source,
                first_seen_at, last_seen_at, authority_level, seen_count
            ) VALUES(?,?,?,?,?,?,?,?,?)
            ON CONFLICT(external_id) DO UPDATE SET
                url_hash        = excluded.url_hash,
                topic_hash      = excluded.topic_hash,
                news_item_id    = excluded.news_item_id,
                source          = excluded.source,
                first_seen_at   = excluded.first_seen_at,
                last_seen_at    = excluded.last_seen_at,
                authority_level = excluded.authority_level,
                seen_count      = excluded.seen_count
            """,
            (
                e.external_id, e.url_hash, e.topic_hash, e.news_item_id, e.source,
                e.first_seen_at, e.last_seen_at, e.authority_level, e.seen_count,
            ),
        )

    async def _touch_dedupe(self, external_id: str, now_ms: int, authority_level: int) -> None:
        await self.db.execute(
            """
            UPDATE news_dedupe_cache
               SET last_seen_at = ?,
                   seen_count = seen_count + 1,
                   authority_level = MAX(authority_level, ?)
             WHERE external_id = ?
            """,
            (now_ms, authority_level, external_id),
        )

    async def _insert_sighting(self, s: DedupeSighting) -> None:
        await self.db.execute(
            """
            INSERT INTO news_dedupe_sightings(external_id, source, tier, url_hash, seen_at)
            VALUES(?,?,?,?,?)
            """,
            (s.external_id, s.source, s.tier, s.url_hash, s.seen_at),
        )

    async def _delete_dedupe(self, external_id: str) -> None:
        await self.db.execute("DELETE FROM news_dedupe_sightings WHERE external_id=?", (external_id,))
        await self.db.execute("DELETE FROM news_dedupe_cache WHERE external_id=?", (external_id,))

    async def _delete_dedupe_before(self, before_ms: int) -> int:
        await self.db.execute(
            """
            DELETE FROM news_dedupe_sightings
             WHERE external_id IN (SELECT external_id FROM news_dedupe_cache WHERE first_seen_at < ?)
            """,
            (before_ms,),
        )
        cur = await self.db.execute("DELETE FROM news_dedupe_cache WHERE first_seen_at < ?", (before_ms,))
        return cur.rowcount

    async def get_sightings(self, external_id: str, since_ms: int = 0) -> List[DedupeSighting]:
        rows = await self._fetchall(
            """
            SELECT * FROM news_dedupe_sightings
             WHERE external_id=? AND seen_at >= ?
             ORDER BY seen_at, id
            """,
            (external_id, since_ms),
        )
        return [
            DedupeSighting(
                external_id=r["external_id"], source=r["source"], tier=int(r["tier"]),
                url_hash=r["url_hash"], seen_at=int(r["seen_at"]),
            )
            for r in rows
        ]

    # --------- 查询接口 ---------
    async def get_top_unsent(self, channel: str, limit: int = 10) -> List[Dict[str, Any]]:
        """通道内待推送的 Top-N（分数高优先，其次发布时间新）"""
        rows = await self._fetchall(
            f"""
            SELECT ni.*, ns.composite_score, nrs.channel, nrs.status, nrs.routed_at,
                   nrs.fade_level, nrs.upgrade_flag
              FROM news_items ni
              JOIN news_routing_state nrs ON nrs.news_item_id = ni.id
              {_LATEST_SCORE_JOIN}
             WHERE nrs.channel = ? AND nrs.status = ?
             ORDER BY ns.composite_score DESC, ni.published_at DESC
             LIMIT ?
            """,
            (channel, PENDING, int(limit)),
        )
        return [_row_to_digest_entry(r) for r in rows]

    async def get_pending(self, channel: str, older_than_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        """通道内 routed_at 早于 older_than_ms 的待推送条目（None 表示全部）"""
        cutoff = older_than_ms if older_than_ms is not None else 2 ** 62
        rows = await self._fetchall(
            f"""
            SELECT ni.*, ns.composite_score, nrs.channel, nrs.status, nrs.routed_at,
                   nrs.fade_level, nrs.upgrade_flag
              FROM news_items ni
              JOIN news_routing_state nrs ON nrs.news_item_id = ni.id
              {_LATEST_SCORE_JOIN}
             WHERE nrs.channel = ? AND nrs.status = ? AND nrs.routed_at <= ?
             ORDER BY nrs.routed_at
            """,
            (channel, PENDING, cutoff),
        )
        return [_row_to_digest_entry(r) for r in rows]

    async def get_item_with_score(self, item_id: str) -> Optional[Dict[str, Any]]:
        item = await self.get_item(item_id)
        if item is None:
            return None
        return {
            "item": item,
            "score": await self.get_latest_score(item_id),
            "routing": await self.get_routing_state(item_id),
        }

    async def get_recent_by_symbol(self, symbol: str, since_ms: int, limit: int = 50) -> List[Dict[str, Any]]:
        sym = symbol.upper()
        rows = await self._fetchall(
            f"""
            SELECT ni.*, ns.composite_score, nrs.channel, nrs.status, nrs.routed_at,
                   nrs.fade_level, nrs.upgrade_flag
              FROM news_items ni
              JOIN news_routing_state nrs ON nrs.news_item_id = ni.id
              {_LATEST_SCORE_JOIN}
             WHERE ni.published_at >= ?
               AND (ni.primary_symbol = ? OR (';' || ni.symbols || ';') LIKE ?)
             ORDER BY ni.published_at DESC
             LIMIT ?
            """,
            (since_ms, sym, f"%;{sym};%", int(limit)),
        )
        return [_row_to_digest_entry(r) for r in rows]

    async def count_recent_by_symbol(self, symbol: str, since_ms: int, exclude_id: Optional[str] = None) -> int:
        row = await self._fetchone(
            """
            SELECT COUNT(*) AS n FROM news_items
             WHERE primary_symbol = ? AND published_at >= ? AND id != ?
            """,
            (symbol.upper(), since_ms, exclude_id or ""),
        )
        return int(row["n"])

    async def find_superseding(self, item: Dict[str, Any], margin: float) -> Optional[Dict[str, Any]]:
        """同 primary_symbol、发布更晚、分数至少高 margin 的条目"""
        if not item.get("primary_symbol"):
            return None
        row = await self._fetchone(
            f"""
            SELECT ni.id, ns.composite_score
              FROM news_items ni
              JOIN news_routing_state nrs ON nrs.news_item_id = ni.id
              {_LATEST_SCORE_JOIN}
             WHERE ni.primary_symbol = ?
               AND ni.id != ?
               AND ni.published_at > ?
               AND ns.composite_score >= ?
               AND nrs.status != 'suppressed'
             ORDER BY ns.composite_score DESC
             LIMIT 1
            """,
            (item["primary_symbol"], item["id"], item["published_at"],
             float(item["composite_score"]) + margin),
        )
        return dict(row) if row else None

    async def routing_stats(self, since_ms: int) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT channel, status, COUNT(*) AS count, AVG(fade_level) AS avg_fade,
                   SUM(upgrade_flag) AS upgrades
              FROM news_routing_state
             WHERE routed_at >= ?
             GROUP BY channel, status
             ORDER BY channel, status
            """,
            (since_ms,),
        )
        return [dict(r) for r in rows]

    # --------- analyst notes（外部生成，只存取） ---------
    async def add_analyst_note(self, note: AnalystNote) -> int:
        if not 0.0 <= note.confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")
        async with self.transaction():
            cur = await self.db.execute(
                """
                INSERT INTO news_analyst_notes(news_item_id, model, content, action_hint, confidence, generated_at)
                VALUES(?,?,?,?,?,?)
                """,
                (note.news_item_id, note.model, note.content, note.action_hint,
                 note.confidence, note.generated_at),
            )
            note.id = int(cur.lastrowid)
        return note.id

    async def get_analyst_notes(self, item_id: str) -> List[AnalystNote]:
        rows = await self._fetchall(
            "SELECT * FROM news_analyst_notes WHERE news_item_id=? ORDER BY generated_at", (item_id,)
        )
        return [
            AnalystNote(
                id=r["id"], news_item_id=r["news_item_id"], model=r["model"],
                content=r["content"], action_hint=r["action_hint"],
                confidence=float(r["confidence"]), generated_at=int(r["generated_at"]),
            )
            for r in rows
        ]
