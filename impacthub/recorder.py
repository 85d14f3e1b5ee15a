# -*- coding: utf-8 -*-
"""
impacthub/recorder.py
推送结果记录（只追加）：每次尝试一行，成功/失败/限流都记；
重复推送也保留。同一条目的 sent_at 单调不减（时钟回拨时取上一次的时间）。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .models import CHANNELS, OUTCOMES, SUCCESS, PushHistory
from .storage import NewsStore
from .utils import now_ms

logger = logging.getLogger(__name__)


class DeliveryRecorder:
    def __init__(self, store: NewsStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self._clock = clock

    async def record_attempt(
        self,
        news_item_id: str,
        channel: str,
        outcome: str,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> PushHistory:
        if outcome not in OUTCOMES:
            raise ValueError(f"invalid outcome: {outcome!r}")
        if channel not in CHANNELS:
            raise ValueError(f"invalid channel: {channel!r}")

        async with self.store.transaction():
            sent_at = self._clock()
            last = await self.store._last_push_at(news_item_id)
            if last is not None and sent_at < last:
                sent_at = last
            row = PushHistory(
                news_item_id=news_item_id,
                channel=channel,
                sent_at=sent_at,
                outcome=outcome,
                message_id=message_id,
                error_message=(error or None) and str(error)[:500],
            )
            row.id = await self.store._insert_push(row)

        if outcome == SUCCESS:
            logger.info("[recorder] %s %s -> %s (msg=%s)", channel, news_item_id, outcome, message_id)
        else:
            logger.warning("[recorder] %s %s -> %s: %s", channel, news_item_id, outcome, error)
        return row

    async def history(self, news_item_id: str) -> List[PushHistory]:
        return await self.store.get_push_history(news_item_id)

    async def stats(self, since_ms: int) -> List[Dict[str, Any]]:
        return await self.store.push_stats(since_ms)
