# -*- coding: utf-8 -*-
"""
impacthub/router.py
按综合分路由：
- >= 7.0  fastlane（实时推送）
- >= 5.0  digest_2h
- >= 3.0  digest_4h
- 其它    suppressed（不推送）

状态机：pending -> sent | suppressed；sent / suppressed 为终态。
digest 每个周期结束后，未推送的条目 fade_level + 1，超过上限或被同标的
更高分的新条目取代时 suppressed。
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from .errors import InvalidTransition
from .models import (
    DIGEST_CHANNELS, DIGEST_2H, DIGEST_4H, FASTLANE, PENDING, SENT, SUPPRESSED,
    NewsScore, RoutingState,
)
from .storage import NewsStore
from .utils import now_ms

logger = logging.getLogger(__name__)


class RoutingEngine:
    def __init__(
        self,
        store: NewsStore,
        *,
        fastlane_threshold: float = 7.0,
        digest_2h_threshold: float = 5.0,
        digest_4h_threshold: float = 3.0,
        fade_ceiling: int = 3,
        supersede_margin: float = 2.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.fastlane_threshold = fastlane_threshold
        self.digest_2h_threshold = digest_2h_threshold
        self.digest_4h_threshold = digest_4h_threshold
        self.fade_ceiling = fade_ceiling
        self.supersede_margin = supersede_margin
        self._clock = clock

    @classmethod
    def from_cfg(cls, store: NewsStore, cfg: dict, clock: Callable[[], int] = now_ms) -> "RoutingEngine":
        r = cfg.get("routing", {})
        return cls(
            store,
            fastlane_threshold=float(r.get("fastlane_threshold", 7.0)),
            digest_2h_threshold=float(r.get("digest_2h_threshold", 5.0)),
            digest_4h_threshold=float(r.get("digest_4h_threshold", 3.0)),
            fade_ceiling=int(r.get("fade_ceiling", 3)),
            supersede_margin=float(r.get("supersede_margin", 2.0)),
            clock=clock,
        )

    def determine_channel(self, composite: float) -> Optional[str]:
        """综合分 -> 通道；None 表示直接 suppressed"""
        if composite >= self.fastlane_threshold:
            return FASTLANE
        if composite >= self.digest_2h_threshold:
            return DIGEST_2H
        if composite >= self.digest_4h_threshold:
            return DIGEST_4H
        return None

    def initial_state(self, score: NewsScore, now: Optional[int] = None) -> RoutingState:
        now = self._clock() if now is None else now
        channel = self.determine_channel(score.composite_score)
        if channel is None:
            return RoutingState(
                news_item_id=score.news_item_id, channel=None, status=SUPPRESSED,
                routed_at=now, last_updated=now, reason="below_threshold",
            )
        return RoutingState(
            news_item_id=score.news_item_id, channel=channel, status=PENDING,
            routed_at=now, last_updated=now, reason="initial",
        )

    async def _load_pending(self, item_id: str) -> RoutingState:
        state = await self.store.get_routing_state(item_id)
        if state is None:
            raise InvalidTransition(f"{item_id}: no routing state")
        if state.is_terminal:
            raise InvalidTransition(f"{item_id}: already {state.status}")
        return state

    # --------- 迁移 ---------
    async def mark_sent(self, item_id: str, channel: str) -> RoutingState:
        """pending -> sent；必须已有该通道的 success 推送记录"""
        state = await self._load_pending(item_id)
        if state.channel != channel:
            raise InvalidTransition(f"{item_id}: routed to {state.channel}, not {channel}")
        if not await self.store.has_success(item_id, channel):
            raise InvalidTransition(f"{item_id}: no successful delivery on {channel}")
        state.status = SENT
        state.last_updated = self._clock()
        state.reason = "delivered"
        await self.store.save_routing(state)
        return state

    async def suppress(self, item_id: str, reason: str) -> RoutingState:
        state = await self._load_pending(item_id)
        state.status = SUPPRESSED
        state.last_updated = self._clock()
        state.reason = reason
        await self.store.save_routing(state)
        logger.info("[router] suppressed %s (%s)", item_id, reason)
        return state

    async def consider_upgrade(self, item_id: str, new_score: NewsScore) -> Optional[RoutingState]:
        """
        重新打分后：仍在 digest 等待的条目若达到 fastlane 阈值则升级。
        返回升级后的状态；不满足条件返回 None。
        """
        state = await self.store.get_routing_state(item_id)
        if state is None or state.is_terminal or state.channel not in DIGEST_CHANNELS:
            return None
        if new_score.composite_score < self.fastlane_threshold:
            return None
        logger.info(
            "[router] 升级 %s: %s -> fastlane (score=%.2f)",
            item_id, state.channel, new_score.composite_score,
        )
        state.channel = FASTLANE
        state.upgrade_flag = True
        state.fade_level = 0
        state.last_updated = self._clock()
        state.reason = "upgraded"
        await self.store.save_routing(state)
        return state

    async def close_digest_cycle(self, channel: str, delivered_ids: Iterable[str] = ()) -> Dict[str, List[str]]:
        """
        一个 digest 周期结束：本轮没推送的条目要么被取代，要么 fade。
        返回 {"faded": [...], "suppressed": [...]}
        """
        if channel not in DIGEST_CHANNELS:
            raise ValueError(f"not a digest channel: {channel}")
        delivered = set(delivered_ids)
        out: Dict[str, List[str]] = {"faded": [], "suppressed": []}
        now = self._clock()

        for entry in await self.store.get_pending(channel):
            item_id = entry["id"]
            if item_id in delivered:
                continue
            state = await self.store.get_routing_state(item_id)
            if state is None or state.is_terminal:
                continue

            newer = await self.store.find_superseding(entry, self.supersede_margin)
            if newer is not None:
                state.status = SUPPRESSED
                state.reason = f"superseded_by:{newer['id']}"
                out["suppressed"].append(item_id)
            else:
                state.fade_level += 1
                if state.fade_level > self.fade_ceiling:
                    state.status = SUPPRESSED
                    state.reason = "faded"
                    out["suppressed"].append(item_id)
                else:
                    out["faded"].append(item_id)
            state.last_updated = now
            await self.store.save_routing(state)

        if out["faded"] or out["suppressed"]:
            logger.info(
                "[router] %s 周期结束: faded=%s suppressed=%s",
                channel, len(out["faded"]), len(out["suppressed"]),
            )
        return out

