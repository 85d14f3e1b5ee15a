# -*- coding: utf-8 -*-
"""
impacthub/policy.py
推送的重试与熔断策略，按协作方（每个 transport 一份）注入，不用模块级全局状态。
- RetryPolicy：指数退避 + 抖动，尊重服务端的 retry_after，单次尝试有超时
- CircuitBreaker：连续失败达到阈值后打开，冷却期内直接限流，冷却后放一次试探
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import DeliveryFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_sec: float = 2.0
    max_backoff_sec: float = 30.0
    jitter_sec: float = 0.6
    timeout_sec: float = 15.0

    @classmethod
    def from_cfg(cls, d: Optional[dict]) -> "RetryPolicy":
        d = d or {}
        return cls(
            max_attempts=max(1, int(d.get("max_attempts", d.get("max_times", 3)))),
            backoff_sec=float(d.get("backoff_sec", 2)),
            max_backoff_sec=float(d.get("max_backoff_sec", 30)),
            jitter_sec=float(d.get("jitter_sec", 0.6)),
            timeout_sec=float(d.get("timeout_sec", 15)),
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """第 attempt 次失败后的等待秒数；优先使用服务端给的 retry_after"""
        base = retry_after if retry_after else self.backoff_sec * (2 ** (attempt - 1))
        base = min(base, self.max_backoff_sec)
        if self.jitter_sec > 0:
            base += random.uniform(0, self.jitter_sec)
        return base

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        执行 fn，失败按退避重试；最终失败抛出最后一次的 DeliveryFailure。
        不可重试的错误（retryable=False）立即抛出。
        """
        last: Optional[DeliveryFailure] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(fn(), timeout=self.timeout_sec)
            except asyncio.TimeoutError:
                last = DeliveryFailure(f"timeout after {self.timeout_sec}s")
            except DeliveryFailure as e:
                last = e
                if not e.retryable:
                    raise
            if attempt < self.max_attempts:
                delay = self.delay_for(attempt, last.retry_after)
                logger.debug("[policy] attempt %s failed (%s), retry in %.1fs", attempt, last, delay)
                await sleep(delay)
        if last is None:
            raise DeliveryFailure("no delivery attempt made", retryable=False)
        raise last


@dataclass
class CircuitBreaker:
    failure_threshold: int = 5
    cooldown_sec: float = 300.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    failures: int = 0
    opened_at: Optional[float] = None

    @classmethod
    def from_cfg(cls, d: Optional[dict], clock: Callable[[], float] = time.monotonic) -> "CircuitBreaker":
        d = d or {}
        return cls(
            failure_threshold=max(1, int(d.get("failure_threshold", 5))),
            cooldown_sec=float(d.get("cooldown_sec", 300)),
            clock=clock,
        )

    @property
    def is_open(self) -> bool:
        if self.opened_at is None:
            return False
        # 冷却结束：半开，允许试探
        return self.clock() - self.opened_at < self.cooldown_sec

    def allow(self) -> bool:
        return not self.is_open

    def record_success(self) -> None:
        if self.opened_at is not None:
            logger.info("[policy] circuit closed")
        self.failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.failure_threshold:
            if not self.is_open:
                logger.warning("[policy] circuit open after %s failures (cooldown %.0fs)",
                               self.failures, self.cooldown_sec)
            self.opened_at = self.clock()
