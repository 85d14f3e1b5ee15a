# -*- coding: utf-8 -*-
"""
tests/test_scorer.py
ImpactRank：校准区间、新鲜度单调、降级兜底、权重配置。
"""

import pytest

from impacthub.errors import ConfigError
from impacthub.models import FACTORS, DedupeSighting, NewsItem, NewsSource
from impacthub.scorer import ImpactRanker, ScoreContext, ScoringConfig

FED = NewsSource("Fed", 1, 5.0)
CNBC = NewsSource("CNBC", 2, 4.2)
SA = NewsSource("Seeking Alpha", 3, 3.5)
SOCIAL = NewsSource("social_feed", 5, 1.5)


def item(title, source, published_at, symbols=()):
    syms = list(symbols)
    return NewsItem(
        id="it-" + title[:12].replace(" ", "_"),
        source=source.name,
        title=title,
        url="https://example.com/x",
        published_at=published_at,
        fetched_at=published_at,
        primary_symbol=syms[0] if syms else None,
        symbols=syms,
    )


@pytest.mark.parametrize("title,source,symbols,low,high", [
    # 例行公事
    ("Local Coffee Shop Opens New Branch", SOCIAL, [], 0.0, 3.0),
    ("Microsoft to present at investor conference", SA, ["MSFT"], 1.0, 4.0),
    # 单个公司的重要消息
    ("Apple Reports Record Q4 Earnings, Beats EPS Estimates", CNBC, ["AAPL"], 4.0, 6.0),
    # 宏观 / 监管
    ("Federal Reserve raises interest rates by 75 basis points", FED, ["SPY"], 7.0, 8.0),
    # 系统性事件
    ("URGENT: Emergency Fed Meeting Called, Markets Halt Trading", SOCIAL, ["SPY", "QQQ", "DIA"], 9.0, 10.0),
])
def test_calibration_bands(ranker, clock, title, source, symbols, low, high):
    s = ranker.score(item(title, source, clock.now, symbols), source)
    assert low <= s.composite_score <= high, s.scoring_details
    assert s.degraded == []


def test_factors_are_clamped(ranker, clock):
    s = ranker.score(
        item("URGENT: Emergency Fed Meeting Called, Markets Halt Trading", SOCIAL, clock.now, ["SPY", "QQQ", "DIA"]),
        SOCIAL,
    )
    for f, v in s.factors().items():
        assert 0.0 <= v <= 1.0, f
    assert s.relevance == 1.0
    assert s.attention == 1.0


def test_freshness_monotonic(ranker, clock):
    it = item("Apple Reports Record Q4 Earnings, Beats EPS Estimates", CNBC, clock.now, ["AAPL"])
    scores = []
    for minutes in (0, 10, 15, 30, 60, 120, 360, 720, 1440, 3000):
        it.published_at = clock.now - minutes * 60 * 1000
        s = ranker.score(it, CNBC)
        scores.append((s.freshness, s.composite_score))
    assert scores[0][0] == 1.0 and scores[1][0] == 1.0
    for (f1, c1), (f2, c2) in zip(scores, scores[1:]):
        assert f2 <= f1
        assert c2 <= c1
    assert scores[-1][0] == pytest.approx(0.0, abs=1e-3)


def test_future_timestamp_counts_as_fresh(ranker, clock):
    s = ranker.score(item("Apple Reports Record Q4 Earnings", CNBC, clock.now + 60_000, ["AAPL"]), CNBC)
    assert s.freshness == 1.0


def test_source_quality_orders_by_tier(ranker, clock):
    title = "Apple Reports Record Q4 Earnings, Beats EPS Estimates"
    q = [ranker.score(item(title, src, clock.now, ["AAPL"]), src).source_quality for src in (FED, CNBC, SA, SOCIAL)]
    assert q == sorted(q, reverse=True)
    assert q[0] == pytest.approx(1.0)


def test_watchlist_symbol_detection_is_word_bounded(scoring_config):
    assert scoring_config.extract_symbols("$NVDA jumps after AMD guidance") == ["AMD", "NVDA"]
    assert scoring_config.extract_symbols("Nvidia and AAPLX rally; spy novel") == []


def test_corroboration_counts_distinct_independent_sources(ranker, clock):
    it = item("Federal Reserve raises interest rates by 75 basis points", FED, clock.now, ["SPY"])
    base = ranker.score(it, FED)
    ctx = ScoreContext(sightings=[
        DedupeSighting("Fed:x", "SEC", 1, "h1", clock.now),
        DedupeSighting("Fed:x", "SEC", 1, "h2", clock.now),
        DedupeSighting("Fed:x", "CNBC", 2, "h3", clock.now),
        DedupeSighting("Fed:x", "Fed", 1, "h4", clock.now),
    ])
    s = ranker.score(it, FED, ctx)
    assert base.corroboration == 0.0
    assert s.corroboration == pytest.approx(0.75)
    assert s.novelty < base.novelty


def test_factor_failure_degrades_to_neutral(scoring_config, clock):
    def broken(text):
        raise RuntimeError("entity service down")

    ranker = ImpactRanker(scoring_config, entity_extractor=broken, clock=clock)
    s = ranker.score(item("Federal Reserve raises interest rates by 75 basis points", FED, clock.now, ["SPY"]), FED)
    assert set(s.degraded) == {"relevance", "attention"}
    assert s.relevance == 0.4
    assert s.scoring_details["relevance"]["degraded"] is True
    assert s.scoring_details["impact"]["degraded"] is False
    assert 0.0 <= s.composite_score <= 10.0


def test_weights_come_from_config(clock):
    only_impact = {f: 0.0 for f in FACTORS}
    only_impact["impact"] = 2.0
    cfg = ScoringConfig(overrides={"scoring": {"weights": only_impact}})
    assert cfg.weights["impact"] == 1.0

    ranker = ImpactRanker(cfg, clock=clock)
    s = ranker.score(item("Apple Reports Record Q4 Earnings, Beats EPS Estimates", CNBC, clock.now, ["AAPL"]), CNBC)
    assert s.composite_score == round(10 * s.impact, 2)
    assert s.weights == cfg.weights


def test_all_zero_weights_rejected():
    with pytest.raises(ConfigError):
        ScoringConfig(overrides={"scoring": {"weights": {f: 0 for f in FACTORS}}})


def test_scoring_details_explain_each_factor(ranker, clock):
    s = ranker.score(item("Apple Reports Record Q4 Earnings, Beats EPS Estimates", CNBC, clock.now, ["AAPL"]), CNBC)
    for f in FACTORS:
        assert set(s.scoring_details[f]) == {"value", "reason", "degraded"}
    assert "earnings" in s.scoring_details["impact"]["reason"]
    assert s.scoring_details["context"]["reason"] == "initial"
