# -*- coding: utf-8 -*-
"""
models.py
定义新闻流水线的数据模型（对齐 storage.py 的建表字段）。
时间字段统一为 UTC 毫秒（int）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# 推送通道
FASTLANE = "fastlane"
DIGEST_2H = "digest_2h"
DIGEST_4H = "digest_4h"
CHANNELS = (FASTLANE, DIGEST_2H, DIGEST_4H)
DIGEST_CHANNELS = (DIGEST_2H, DIGEST_4H)

# 路由状态（sent / suppressed 为终态）
PENDING = "pending"
SENT = "sent"
SUPPRESSED = "suppressed"
TERMINAL_STATUSES = (SENT, SUPPRESSED)

# 推送结果
SUCCESS = "success"
FAILED = "failed"
THROTTLED = "throttled"
OUTCOMES = (SUCCESS, FAILED, THROTTLED)

# ingest() 的返回动作
ADMITTED = "admitted"
SKIPPED = "skipped"
REJECTED = "rejected"

FACTORS = (
    "freshness", "source_quality", "relevance", "impact",
    "novelty", "corroboration", "attention",
)


@dataclass
class NewsSource:
    name: str
    tier: int                      # 1=官方/监管 ... 5=社交/聚合
    reliability_score: float       # 1.0 ~ 5.0
    rate_limit_per_hour: int = 60
    enabled: bool = True
    id: Optional[int] = None
    # 采集配置（可选）
    url: str = ""
    kind: str = ""                 # rss / api / manual
    interval_sec: int = 300


@dataclass
class NewsItem:
    # 主键：规范化链接的哈希（内容派生，稳定）
    id: str
    source: str
    title: str
    url: str
    published_at: int
    fetched_at: int
    external_id: str = ""
    source_id: Optional[int] = None
    summary: str = ""
    body: str = ""
    primary_symbol: Optional[str] = None
    symbols: List[str] = field(default_factory=list)
    entities: Dict[str, Any] = field(default_factory=dict)
    region: Optional[str] = None
    lang: str = "en"
    tags: List[str] = field(default_factory=list)


@dataclass
class Candidate:
    """校验通过的候选条目（ingest 边界的规范化结果）"""
    news_item_id: str
    external_id: str
    title: str
    url: str                       # 已规范化
    published_at: int
    source: str
    tier: int
    summary: str = ""
    body: str = ""
    symbols: List[str] = field(default_factory=list)
    primary_symbol: Optional[str] = None
    entities: Dict[str, Any] = field(default_factory=dict)
    region: Optional[str] = None
    lang: str = "en"
    tags: List[str] = field(default_factory=list)


@dataclass
class NewsScore:
    news_item_id: str
    freshness: float
    source_quality: float
    relevance: float
    impact: float
    novelty: float
    corroboration: float
    attention: float
    composite_score: float
    weights: Dict[str, float]
    scoring_details: Dict[str, Any]
    scored_at: int
    # 重新打分产生新版本，不覆盖旧版本
    version: int = 1

    def factors(self) -> Dict[str, float]:
        return {f: getattr(self, f) for f in FACTORS}

    @property
    def degraded(self) -> List[str]:
        return list(self.scoring_details.get("degraded", []))


@dataclass
class DedupeCacheEntry:
    external_id: str
    url_hash: str
    topic_hash: Optional[str]
    news_item_id: str
    source: str
    first_seen_at: int
    last_seen_at: int
    authority_level: int           # 6 - tier，数值越大越权威
    seen_count: int = 1


@dataclass
class DedupeSighting:
    external_id: str
    source: str
    tier: int
    url_hash: str
    seen_at: int


@dataclass
class AdmitResult:
    admitted: bool
    reason: str                    # new / url_match / topic_match
    url_hash: str
    topic_hash: Optional[str]
    matched_entry: Optional[DedupeCacheEntry] = None


@dataclass
class RoutingState:
    news_item_id: str
    channel: Optional[str]         # 低于 3 分直接 suppressed 时为 None
    status: str
    routed_at: int
    last_updated: int
    fade_level: int = 0
    upgrade_flag: bool = False
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class PushHistory:
    news_item_id: str
    channel: str
    sent_at: int
    outcome: str
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    id: Optional[int] = None


@dataclass
class AnalystNote:
    news_item_id: str
    model: str
    content: str
    confidence: float
    generated_at: int
    action_hint: Optional[str] = None
    id: Optional[int] = None


@dataclass
class IngestResult:
    action: str                    # admitted / skipped / rejected
    reason: str
    news_item_id: Optional[str] = None
    score: Optional[float] = None
    channel: Optional[str] = None  # fastlane / digest_2h / digest_4h / suppressed
    details: Dict[str, Any] = field(default_factory=dict)
