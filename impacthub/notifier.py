# -*- coding: utf-8 -*-
"""
impacthub/notifier.py
推送模块：把路由结果发出去（Telegram，缺凭据时回退到 stdout）
- flush_fastlane()：fastlane 通道的待推送条目逐条发送
- flush_digest(channel)：digest 通道取 Top-N 合并成一条摘要发送，发送成功后结束本周期（fade）
- 每次尝试都写 push history（success / failed / throttled）；成功后路由状态 -> sent
- 重试/熔断由注入的 RetryPolicy / CircuitBreaker 负责；推送失败不会改路由
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytz

from .errors import DeliveryFailure, InvalidTransition
from .models import DIGEST_2H, DIGEST_4H, FAILED, FASTLANE, SUCCESS, THROTTLED
from .policy import CircuitBreaker, RetryPolicy
from .recorder import DeliveryRecorder
from .router import RoutingEngine
from .storage import NewsStore

logger = logging.getLogger(__name__)

MAX_TEXT = 3500

DIGEST_TITLES = {
    DIGEST_2H: "📰 2小时摘要",
    DIGEST_4H: "🗞 4小时摘要",
}


def _truncate(s: str, limit: int = MAX_TEXT) -> str:
    if s is None:
        return ""
    return s if len(s) <= limit else s[:limit - 3] + "..."


def _fmt_ts(ms: Optional[int], tz_name: str) -> str:
    if not ms:
        return "-"
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    return datetime.fromtimestamp(ms / 1000, tz).strftime("%Y-%m-%d %H:%M %Z")


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

class TelegramTransport:
    """
    单次发送；返回 Telegram 的 message_id。
    429 带 retry_after 时标记为限流，5xx/网络错误可重试，其它 4xx 不重试。
    """

    def __init__(self, token: str, chat_id: str, client: Optional[httpx.AsyncClient] = None,
                 timeout_sec: float = 15.0):
        self._token = token
        self._chat_id = chat_id
        self._client = client
        self._timeout_sec = timeout_sec

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池，读取系统代理
        if self._client is None:
            timeout = httpx.Timeout(self._timeout_sec, connect=5.0)
            self._client = httpx.AsyncClient(timeout=timeout, trust_env=True)
        return self._client

    async def send(self, text: str) -> Optional[str]:
        url = f"https://api.telegram.org/bot{self._token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        try:
            r = await self._client_get().post(url, data=payload)
        except httpx.HTTPError as e:
            raise DeliveryFailure(f"telegram network error: {e!r}") from e

        # Telegram 常见：非 200 也会给 JSON
        try:
            data = r.json()
        except ValueError:
            data = None

        if r.status_code == 200 and (data is None or data.get("ok", True) is True):
            result = (data or {}).get("result") or {}
            msg_id = result.get("message_id")
            return str(msg_id) if msg_id is not None else None

        if r.status_code == 429:
            retry_after = None
            if isinstance(data, dict):
                retry_after = (data.get("parameters") or {}).get("retry_after")
            raise DeliveryFailure(
                f"telegram rate limited (retry_after={retry_after})",
                throttled=True,
                retry_after=float(retry_after) if retry_after else None,
            )
        if 500 <= r.status_code < 600:
            raise DeliveryFailure(f"telegram http {r.status_code}")

        # 其他 4xx：直接失败，只保留头 300 字符
        raise DeliveryFailure(f"http {r.status_code}: {(r.text or '')[:300]}", retryable=False)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class StdoutTransport:
    def __init__(self):
        self._n = 0

    async def send(self, text: str) -> Optional[str]:
        self._n += 1
        print("\n" + text + "\n")
        return f"stdout-{self._n}"

    async def close(self) -> None:
        return


def build_transport(cfg: dict, retry: Optional[RetryPolicy] = None):
    """按 notify_channels + 环境变量选择渠道；缺 token/chat_id 自动降级为 stdout"""
    n = cfg.get("notifier", cfg)
    token = n.get("token") or os.environ.get("TELEGRAM_BOT_TOKEN", "").strip()
    chat_id = n.get("chat_id") or os.environ.get("TELEGRAM_CHAT_ID", "").strip()
    channels = n.get("notify_channels") or []
    if "telegram" in channels and token and chat_id:
        timeout = retry.timeout_sec if retry else 15.0
        return TelegramTransport(token, chat_id, timeout_sec=timeout)
    if "telegram" in channels:
        logger.warning("[notifier] TELEGRAM_BOT_TOKEN/CHAT_ID 缺失，自动降级为 stdout")
    return StdoutTransport()


# ------------------------------------------------------------
# Notifier 主体
# ------------------------------------------------------------

class Notifier:
    def __init__(
        self,
        store: NewsStore,
        router: RoutingEngine,
        recorder: DeliveryRecorder,
        transport: Any,
        *,
        retry: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        display_timezone: str = "UTC",
        digest_top_n: int = 10,
        sleep: Optional[Callable] = None,
    ):
        self.store = store
        self.router = router
        self.recorder = recorder
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()
        self.display_timezone = display_timezone
        self.digest_top_n = digest_top_n
        self._sleep = sleep

    @classmethod
    def from_cfg(cls, store: NewsStore, router: RoutingEngine, recorder: DeliveryRecorder,
                 cfg: dict, transport: Any = None) -> "Notifier":
        n = cfg.get("notifier", {})
        retry = RetryPolicy.from_cfg(n.get("retry"))
        return cls(
            store, router, recorder,
            transport or build_transport(cfg, retry),
            retry=retry,
            breaker=CircuitBreaker.from_cfg(n.get("circuit")),
            display_timezone=n.get("display_timezone", "UTC"),
            digest_top_n=int(n.get("digest_top_n", 10)),
        )

    # --------------- 格式化 ---------------
    def format_fastlane(self, entry: Dict[str, Any]) -> str:
        score = float(entry.get("composite_score") or 0.0)
        level = "🔴特别重要" if score >= 9.0 else "🟠重要"
        syms = entry.get("symbols") or []
        tags = " ".join(f"#{s}" for s in syms)
        text = f"{level} {tags}".rstrip() + f"\n{entry.get('title', '')}"
        if entry.get("upgrade_flag"):
            text += "\n(多源佐证，已升级为快讯)"
        text += (
            f"\nSource: {entry.get('source', '-')} | Score: {score:.1f}"
            f"\nTicker: {', '.join(syms) or '-'}"
            f"\nLink: {entry.get('url') or '-'}"
            f"\nPublished: {_fmt_ts(entry.get('published_at'), self.display_timezone)}"
        )
        return _truncate(text)

    def format_digest(self, channel: str, entries: List[Dict[str, Any]]) -> str:
        head = f"{DIGEST_TITLES.get(channel, channel)}（{len(entries)} 条）"
        lines = [head]
        for i, e in enumerate(entries, 1):
            sym = e.get("primary_symbol") or ",".join(e.get("symbols") or []) or "-"
            lines.append(f"{i}. [{float(e.get('composite_score') or 0):.1f}] {e.get('title', '')} ({sym})")
            lines.append(f"   {e.get('url') or '-'}")
        return _truncate("\n".join(lines))

    # --------------- 发送 ---------------
    async def _send(self, text: str) -> Optional[str]:
        """经过熔断 + 重试发送；失败抛 DeliveryFailure"""
        if not self.breaker.allow():
            raise DeliveryFailure("circuit open", throttled=True, retryable=False)
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        try:
            msg_id = await self.retry.run(lambda: self.transport.send(text), **kwargs)
        except DeliveryFailure:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return msg_id

    async def _record_failure(self, item_ids: List[str], channel: str, err: DeliveryFailure) -> None:
        outcome = THROTTLED if err.throttled else FAILED
        for item_id in item_ids:
            await self.recorder.record_attempt(item_id, channel, outcome, error=str(err))

    async def flush_fastlane(self, limit: int = 50) -> List[str]:
        """逐条发送 fastlane 待推送条目；返回发送成功的 id"""
        delivered: List[str] = []
        for entry in await self.store.get_top_unsent(FASTLANE, limit):
            item_id = entry["id"]
            try:
                msg_id = await self._send(self.format_fastlane(entry))
            except DeliveryFailure as e:
                await self._record_failure([item_id], FASTLANE, e)
                continue
            await self.recorder.record_attempt(item_id, FASTLANE, SUCCESS, message_id=msg_id)
            await self.router.mark_sent(item_id, FASTLANE)
            delivered.append(item_id)
        return delivered

    async def flush_digest(self, channel: str, top_n: Optional[int] = None) -> List[str]:
        """
        一个 digest 周期：Top-N 合并成一条发送；成功后其余待推送条目 fade。
        发送失败时不结束周期，下个周期重试。返回已标记 sent 的 id。
        """
        entries = await self.store.get_top_unsent(channel, top_n or self.digest_top_n)
        if not entries:
            return []
        ids = [e["id"] for e in entries]
        try:
            msg_id = await self._send(self.format_digest(channel, entries))
        except DeliveryFailure as e:
            await self._record_failure(ids, channel, e)
            return []
        # 先把这条消息带出去的条目全部记账，再逐条改路由
        for item_id in ids:
            await self.recorder.record_attempt(item_id, channel, SUCCESS, message_id=msg_id)
        sent: List[str] = []
        for item_id in ids:
            try:
                await self.router.mark_sent(item_id, channel)
            except InvalidTransition as e:
                # 发送途中被升级到 fastlane 等情况：保留其新路由
                logger.warning("[notifier] %s 跳过 mark_sent: %s", item_id, e)
                continue
            sent.append(item_id)
        await self.router.close_digest_cycle(channel, ids)
        logger.info("[notifier] %s 已推送 %s 条", channel, len(ids))
        return sent

    async def close(self) -> None:
        await self.transport.close()
