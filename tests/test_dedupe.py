# -*- coding: utf-8 -*-
"""
tests/test_dedupe.py
链接 / 话题去重、窗口边界、佐证记录、dry run。
"""

from impacthub.dedupe import authority_for_tier, topic_hash, topic_tokens, url_hash
from impacthub.models import Candidate


def cand(title, url, source="CNBC", tier=2, symbol=None, ext=None):
    return Candidate(
        news_item_id=f"id-{url[-8:]}",
        external_id=ext or f"{source}:{url[-12:]}",
        title=title,
        url=url,
        published_at=0,
        source=source,
        tier=tier,
        symbols=[symbol] if symbol else [],
        primary_symbol=symbol,
    )


def test_url_hash_ignores_tracking_and_cosmetics():
    a = url_hash("https://www.reuters.com/markets/fed-hike/?utm_source=twitter&utm_medium=social")
    b = url_hash("HTTPS://reuters.com/markets/fed-hike#top")
    c = url_hash("https://reuters.com/markets/fed-hike?ref=homepage")
    assert a == b == c
    assert url_hash("https://reuters.com/markets/fed-cut") != a


def test_topic_hash_is_order_insensitive_keyword_bag():
    t1 = topic_hash("Fed raises interest rates by 75 basis points", "SPY")
    t2 = topic_hash("Interest rates raised by Fed: 75 basis points", "SPY")
    assert t1 == t2
    # 不同标的不算同一话题
    assert topic_hash("Fed raises interest rates by 75 basis points", "QQQ") != t1


def test_topic_hash_needs_enough_keywords():
    assert topic_hash("Markets up", None) is None
    assert topic_tokens("The Fed and the ECB") == ["fed", "ecb"]


def test_authority_levels():
    assert authority_for_tier(1) == 5
    assert authority_for_tier(5) == 1


async def test_new_then_url_match(dedupe, store):
    c = cand("Apple reports record quarterly earnings", "https://cnbc.com/apple-q4")
    r1 = await dedupe.admit(c)
    assert r1.admitted and r1.reason == "new"

    again = cand("Apple reports record quarterly earnings", "https://www.cnbc.com/apple-q4/?utm_source=x",
                 source="Investing.com", tier=4)
    r2 = await dedupe.admit(again)
    assert not r2.admitted
    assert r2.reason == "url_match"

    entry = await store.get_dedupe_entry(c.external_id)
    assert entry.seen_count == 2


async def test_topic_match_records_sighting_and_raises_authority(dedupe, store, clock):
    first = cand("Regional bank halts withdrawals amid liquidity crunch",
                 "https://social.example.com/p/1", source="social_feed", tier=5)
    assert (await dedupe.admit(first)).admitted

    clock.advance(minutes=5)
    second = cand("Liquidity crunch: regional bank halts withdrawals",
                  "https://www.sec.gov/news/press-2025-1", source="SEC", tier=1)
    r = await dedupe.admit(second)
    assert not r.admitted
    assert r.reason == "topic_match"
    assert r.matched_entry.news_item_id == first.news_item_id

    entry = await store.get_dedupe_entry(first.external_id)
    assert entry.authority_level == 5
    assert entry.seen_count == 2
    assert entry.last_seen_at == clock.now

    sightings = await dedupe.corroboration_context(first.external_id)
    assert [(s.source, s.tier) for s in sightings] == [("SEC", 1)]


async def test_same_source_topic_repeat_is_not_a_sighting(dedupe):
    a = cand("Tesla recalls vehicles over steering defect", "https://cnbc.com/tsla-1")
    b = cand("Tesla recalls vehicles over steering defect", "https://cnbc.com/tsla-2")
    await dedupe.admit(a)
    r = await dedupe.admit(b)
    assert r.reason == "topic_match"
    assert await dedupe.corroboration_context(a.external_id) == []


async def test_window_expiry_allows_readmission(dedupe, clock):
    c = cand("Oil prices slide on OPEC supply outlook", "https://cnbc.com/oil")
    assert (await dedupe.admit(c)).admitted

    clock.advance(hours=23, minutes=59)
    assert (await dedupe.admit(c)).reason == "url_match"

    clock.advance(hours=1)
    r = await dedupe.admit(c)
    assert r.admitted and r.reason == "new"


async def test_dry_run_writes_nothing(dedupe, store):
    c = cand("Nvidia unveils new data center chip lineup", "https://cnbc.com/nvda")
    r = await dedupe.admit(c, dry_run=True)
    assert r.admitted
    assert await store.get_dedupe_entry(c.external_id) is None


async def test_forget_and_sweep(dedupe, store, clock):
    a = cand("Microsoft signs cloud contract with defense agency", "https://cnbc.com/msft")
    b = cand("Amazon opens logistics hub in northern Texas", "https://cnbc.com/amzn")
    await dedupe.admit(a)
    await dedupe.forget(a.external_id)
    assert await store.get_dedupe_entry(a.external_id) is None

    await dedupe.admit(b)
    clock.advance(hours=25)
    assert await dedupe.sweep() == 1
    assert await store.get_dedupe_entry(b.external_id) is None
