# -*- coding: utf-8 -*-
"""
tests/test_router.py
阈值边界、状态机迁移、升级、fade 与被取代。
"""

import pytest

from impacthub.errors import InvalidTransition
from impacthub.models import (
    DIGEST_2H, DIGEST_4H, FASTLANE, PENDING, SENT, SUCCESS, SUPPRESSED, NewsScore,
)


def score_of(item_id, composite):
    return NewsScore(
        news_item_id=item_id, freshness=1, source_quality=1, relevance=1, impact=1,
        novelty=1, corroboration=0, attention=1, composite_score=composite,
        weights={}, scoring_details={}, scored_at=0,
    )


@pytest.mark.parametrize("composite,channel", [
    (10.0, FASTLANE),
    (7.0, FASTLANE),
    (6.99, DIGEST_2H),
    (5.0, DIGEST_2H),
    (4.99, DIGEST_4H),
    (3.0, DIGEST_4H),
    (2.99, None),
    (0.0, None),
])
def test_threshold_boundaries(router, composite, channel):
    assert router.determine_channel(composite) == channel


def test_initial_state(router, clock):
    st = router.initial_state(score_of("a", 7.5))
    assert (st.channel, st.status, st.fade_level, st.upgrade_flag) == (FASTLANE, PENDING, 0, False)
    assert st.routed_at == clock.now

    low = router.initial_state(score_of("b", 1.2))
    assert low.channel is None
    assert low.status == SUPPRESSED


async def test_mark_sent_requires_successful_delivery(router, recorder, seed):
    item_id = await seed(8.0, FASTLANE)
    with pytest.raises(InvalidTransition):
        await router.mark_sent(item_id, FASTLANE)

    await recorder.record_attempt(item_id, FASTLANE, "failed", error="boom")
    with pytest.raises(InvalidTransition):
        await router.mark_sent(item_id, FASTLANE)

    await recorder.record_attempt(item_id, FASTLANE, SUCCESS, message_id="m1")
    st = await router.mark_sent(item_id, FASTLANE)
    assert st.status == SENT


async def test_no_transition_out_of_terminal_states(router, recorder, seed, store):
    sent = await seed(8.0, FASTLANE)
    await recorder.record_attempt(sent, FASTLANE, SUCCESS)
    await router.mark_sent(sent, FASTLANE)
    with pytest.raises(InvalidTransition):
        await router.suppress(sent, "manual")
    with pytest.raises(InvalidTransition):
        await router.mark_sent(sent, FASTLANE)

    gone = await seed(4.0, DIGEST_4H)
    await router.suppress(gone, "manual")
    with pytest.raises(InvalidTransition):
        await router.suppress(gone, "manual")
    assert (await store.get_routing_state(gone)).reason == "manual"


async def test_mark_sent_on_wrong_channel(router, recorder, seed):
    item_id = await seed(5.5, DIGEST_2H)
    await recorder.record_attempt(item_id, FASTLANE, SUCCESS)
    with pytest.raises(InvalidTransition):
        await router.mark_sent(item_id, FASTLANE)


async def test_upgrade_digest_item_to_fastlane(router, seed, store):
    item_id = await seed(6.2, DIGEST_2H)
    assert await router.consider_upgrade(item_id, score_of(item_id, 6.8)) is None

    st = await router.consider_upgrade(item_id, score_of(item_id, 7.3))
    assert st.channel == FASTLANE
    assert st.upgrade_flag is True
    assert st.fade_level == 0
    assert (await store.get_routing_state(item_id)).channel == FASTLANE


async def test_fastlane_item_is_not_upgraded_again(router, seed):
    item_id = await seed(7.5, FASTLANE)
    assert await router.consider_upgrade(item_id, score_of(item_id, 9.0)) is None


async def test_fade_then_suppress_after_ceiling(router, seed, store, clock):
    delivered = await seed(4.5, DIGEST_4H)
    stale = await seed(3.2, DIGEST_4H)

    for cycle in range(1, 4):
        clock.advance(hours=4)
        out = await router.close_digest_cycle(DIGEST_4H, [delivered])
        assert out == {"faded": [stale], "suppressed": []}
        st = await store.get_routing_state(stale)
        assert (st.status, st.fade_level) == (PENDING, cycle)

    clock.advance(hours=4)
    out = await router.close_digest_cycle(DIGEST_4H, [delivered])
    assert stale in out["suppressed"]
    st = await store.get_routing_state(stale)
    assert (st.status, st.fade_level, st.reason) == (SUPPRESSED, 4, "faded")


async def test_superseded_item_is_suppressed(router, seed, store, clock):
    old = await seed(4.0, DIGEST_4H, symbol="AAPL", published_at=clock.now)
    clock.advance(minutes=30)
    newer = await seed(6.5, DIGEST_2H, symbol="AAPL", published_at=clock.now)
    other = await seed(3.5, DIGEST_4H, symbol="MSFT", published_at=clock.now - 60_000)

    out = await router.close_digest_cycle(DIGEST_4H)
    assert out["suppressed"] == [old]
    assert other in out["faded"]

    st = await store.get_routing_state(old)
    assert st.status == SUPPRESSED
    assert st.reason == f"superseded_by:{newer}"


async def test_close_cycle_rejects_fastlane(router):
    with pytest.raises(ValueError):
        await router.close_digest_cycle(FASTLANE)
