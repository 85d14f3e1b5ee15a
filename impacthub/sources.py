# -*- coding: utf-8 -*-
"""
impacthub/sources.py
新闻源目录（ops/sources.yml）：
- tier 1 官方/监管，2 一线媒体，3 行业权威，4 聚合，5 社交
- reliability_score 1.0~5.0
未登记的来源按候选条目自带的 tier 临时处理，条目落库后才登记。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import load_yaml, ops_dir
from .errors import ConfigError
from .models import NewsSource

logger = logging.getLogger(__name__)

# 各层级的默认可靠度
TIER_RELIABILITY = {
    1: 5.0,
    2: 4.2,
    3: 3.5,
    4: 2.5,
    5: 1.5,
}
DEFAULT_TIER = 4


def reliability_for_tier(tier: int) -> float:
    return TIER_RELIABILITY.get(int(tier), 3.0)


def _source_from_dict(d: Dict[str, Any]) -> NewsSource:
    name = str(d.get("name") or d.get("id") or "").strip()
    if not name:
        raise ConfigError("sources.yml: source without name")
    try:
        tier = int(d.get("tier", DEFAULT_TIER))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"sources.yml: {name}: tier must be an integer") from e
    if not 1 <= tier <= 5:
        raise ConfigError(f"sources.yml: {name}: tier must be 1-5, got {tier}")
    reliability = float(d.get("reliability_score", reliability_for_tier(tier)))
    if not 1.0 <= reliability <= 5.0:
        raise ConfigError(f"sources.yml: {name}: reliability_score must be 1.0-5.0")
    return NewsSource(
        name=name,
        tier=tier,
        reliability_score=reliability,
        rate_limit_per_hour=int(d.get("rate_limit_per_hour", 60)),
        enabled=bool(d.get("enabled", True)),
        url=str(d.get("url", "") or ""),
        kind=str(d.get("type", "") or "").strip().lower(),
        interval_sec=int(d.get("interval_sec", 300)),
    )


class SourceRegistry:
    def __init__(self, sources: Iterable[NewsSource] = ()):
        self._sources: Dict[str, NewsSource] = {}
        for src in sources:
            if src.name in self._sources:
                raise ConfigError(f"duplicate source name: {src.name}")
            self._sources[src.name] = src

    @classmethod
    def from_yaml(cls, path: Optional[Union[str, Path]] = None) -> "SourceRegistry":
        p = Path(path) if path else ops_dir() / "sources.yml"
        if not p.exists():
            logger.warning("[sources] 未找到 %s，来源目录为空", p)
            return cls()
        data = load_yaml(p)
        return cls(_source_from_dict(d) for d in data.get("sources", []) or [])

    def get(self, name: str) -> Optional[NewsSource]:
        return self._sources.get(name)

    def resolve(self, name: str, tier: Optional[int] = None) -> NewsSource:
        """
        已登记的来源以目录为准；未登记的按候选条目的 tier 生成一个临时来源（不登记）。
        条目真正落库后由调用方 register()。
        """
        src = self._sources.get(name)
        if src is not None:
            return src
        t = int(tier) if tier is not None else DEFAULT_TIER
        return NewsSource(name=name, tier=t, reliability_score=reliability_for_tier(t), kind="manual")

    def register(self, src: NewsSource) -> None:
        if src.name in self._sources:
            return
        self._sources[src.name] = src
        logger.info("[sources] 登记新来源 %s (tier %s)", src.name, src.tier)

    def enabled(self) -> List[NewsSource]:
        return [s for s in self._sources.values() if s.enabled]

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, name: object) -> bool:
        return name in self._sources
