# -*- coding: utf-8 -*-
"""
公共 fixture：假时钟、临时 SQLite、来源目录、打分器、流水线。
"""

import pytest
import pytest_asyncio

from impacthub.dedupe import DedupeIndex
from impacthub.models import PENDING, NewsItem, NewsScore, NewsSource, RoutingState
from impacthub.pipeline import IngestionPipeline
from impacthub.recorder import DeliveryRecorder
from impacthub.router import RoutingEngine
from impacthub.scorer import ImpactRanker, ScoringConfig
from impacthub.sources import SourceRegistry
from impacthub.storage import NewsStore

T0 = 1_760_000_000_000  # 2025-10-09 UTC


class FakeClock:
    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, *, hours: float = 0, minutes: float = 0, seconds: float = 0) -> None:
        self.now += int((hours * 3600 + minutes * 60 + seconds) * 1000)


def make_sources():
    return [
        NewsSource("Fed", 1, 5.0),
        NewsSource("SEC", 1, 5.0),
        NewsSource("Treasury", 1, 5.0),
        NewsSource("CNBC", 2, 4.2),
        NewsSource("Seeking Alpha", 3, 3.5),
        NewsSource("Investing.com", 4, 2.5),
        NewsSource("social_feed", 5, 1.5),
        NewsSource("Retired Wire", 3, 3.5, enabled=False),
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path):
    s = await NewsStore.open(tmp_path / "test.db")
    yield s
    await s.close()


@pytest.fixture
def registry():
    return SourceRegistry(make_sources())


@pytest.fixture
def scoring_config():
    return ScoringConfig()


@pytest.fixture
def ranker(scoring_config, clock):
    return ImpactRanker(scoring_config, clock=clock)


@pytest.fixture
def dedupe(store, clock):
    return DedupeIndex(store, clock=clock)


@pytest.fixture
def router(store, clock):
    return RoutingEngine(store, clock=clock)


@pytest.fixture
def recorder(store, clock):
    return DeliveryRecorder(store, clock=clock)


@pytest.fixture
def pipeline(store, registry, dedupe, ranker, router, clock):
    return IngestionPipeline(store, registry, dedupe, ranker, router, clock=clock)


@pytest.fixture
def make_raw(clock):
    def _make(title, url, source="CNBC", *, tier=None, symbols=None, **extra):
        raw = {
            "title": title,
            "url": url,
            "source": source,
            "published_at": clock.now,
            "symbols": symbols or [],
        }
        if tier is not None:
            raw["tier"] = tier
        raw.update(extra)
        return raw
    return _make


@pytest.fixture
def seed(store, clock):
    """
    直接写入一条已打分、已路由的条目（绕过打分，分数由调用方指定）
    """
    counter = {"n": 0}

    async def _seed(composite, channel, *, status=PENDING, symbol=None, published_at=None,
                    source=None, item_id=None):
        counter["n"] += 1
        n = counter["n"]
        item_id = item_id or f"item{n:04d}"
        src = source or NewsSource("CNBC", 2, 4.2)
        item = NewsItem(
            id=item_id,
            source=src.name,
            title=f"Seeded headline number {n}",
            url=f"https://news.example.com/{item_id}",
            published_at=published_at if published_at is not None else clock.now,
            fetched_at=clock.now,
            external_id=f"{src.name}:{item_id}",
            primary_symbol=symbol,
            symbols=[symbol] if symbol else [],
        )
        score = NewsScore(
            news_item_id=item_id,
            freshness=0.5, source_quality=0.5, relevance=0.5, impact=0.5,
            novelty=0.5, corroboration=0.0, attention=0.5,
            composite_score=composite,
            weights={}, scoring_details={}, scored_at=clock.now,
        )
        state = RoutingState(
            news_item_id=item_id, channel=channel, status=status,
            routed_at=clock.now, last_updated=clock.now,
        )
        await store.persist_admitted(item, src, score, state)
        return item_id

    return _seed
