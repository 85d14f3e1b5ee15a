# -*- coding: utf-8 -*-
"""
impacthub/scorer.py
ImpactRank：7 因子评分（每个因子 0~1），加权合成 0~10 分。
- freshness       发布时间衰减（15 分钟内满分，之后指数+线性混合衰减）
- source_quality  来源层级 + 可靠度
- relevance       识别到的 symbols / 市场实体（watchlist 命中加分）
- impact          影响力关键词类别（危机/监管/并购/财报…），例行公事类词扣分
- novelty         话题已被看到的次数越多越低
- corroboration   独立来源（tier 1~3 为主）佐证越多越高
- attention       紧急词（breaking/halt/emergency…）+ 热门标的/实体

权重、关键词、watchlist 全部来自 ops/*.yml，30 秒热加载，调参不用改代码。
某个因子计算出错时取中性值（默认 0.4）并在 scoring_details 标记 degraded，
评分本身永远有结果。
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .config import deep_merge, load_cfg, load_yaml, ops_dir
from .errors import ConfigError, ScoringDegraded
from .models import FACTORS, DedupeSighting, NewsItem, NewsScore, NewsSource
from .utils import clamp01, compile_english_stem, norm_text_for_match, now_ms

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000

# 层级基础分：tier 1 官方 ≈ 1.0，tier 5 社交为低基线
TIER_QUALITY = {1: 1.0, 2: 0.85, 3: 0.65, 4: 0.4, 5: 0.2}

# 佐证来源的层级权重
CORROBORATION_TIER_WEIGHT = {1: 0.4, 2: 0.35, 3: 0.25, 4: 0.1, 5: 0.1}

ATTENTION_PER_KEYWORD = 0.25
ATTENTION_PER_WATCHED = 0.1


class ScoringConfig:
    """评分器配置类，支持热加载（config.yml / keywords.yml / universe.yml）"""

    FILES = ("config.yml", "keywords.yml", "universe.yml")

    def __init__(self, root: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None):
        self.root = Path(root) if root else ops_dir()
        self.overrides = overrides or {}
        self.last_reload = 0.0
        self._mtimes: Dict[str, Optional[float]] = {}

        self.scoring: Dict[str, Any] = {}
        self.keywords: Dict[str, Any] = {}
        self.universe: Dict[str, Any] = {}
        self.weights: Dict[str, float] = {}

        # 编译后的正则表达式缓存
        self.impact_classes: List[Tuple[str, float, List[re.Pattern]]] = []
        self.routine_patterns: List[re.Pattern] = []
        self.attention_patterns: List[Tuple[str, re.Pattern]] = []
        self.entity_patterns: List[Tuple[str, List[re.Pattern]]] = []
        self.watched_entities: set = set()
        self.watchlist: set = set()
        self.large_caps: set = set()

        self._load_all_configs()

    @property
    def reload_interval(self) -> float:
        return float(self.scoring.get("reload_interval_sec", 30))

    def _mtime(self, name: str) -> Optional[float]:
        p = self.root / name
        return p.stat().st_mtime if p.exists() else None

    def _load_all_configs(self) -> None:
        """加载所有配置文件"""
        cfg = load_cfg(self.root / "config.yml")
        self.scoring = deep_merge(cfg["scoring"], self.overrides.get("scoring"))
        kw_path = self.root / "keywords.yml"
        uni_path = self.root / "universe.yml"
        self.keywords = deep_merge(load_yaml(kw_path) if kw_path.exists() else {},
                                   self.overrides.get("keywords"))
        self.universe = deep_merge(load_yaml(uni_path) if uni_path.exists() else {},
                                   self.overrides.get("universe"))

        self.weights = self._normalized_weights(self.scoring.get("weights", {}))
        self._compile_patterns()

        self._mtimes = {name: self._mtime(name) for name in self.FILES}
        self.last_reload = time.time()
        logger.info("[scorer] 配置加载完成 weights=%s", self.weights)

    @staticmethod
    def _normalized_weights(raw: Dict[str, Any]) -> Dict[str, float]:
        weights = {f: float(raw.get(f, 0.0)) for f in FACTORS}
        if any(w < 0 for w in weights.values()):
            raise ConfigError("scoring.weights must be non-negative")
        total = sum(weights.values())
        if total <= 0:
            raise ConfigError("scoring.weights must not all be zero")
        return {f: w / total for f, w in weights.items()}

    def _compile_patterns(self) -> None:
        """编译英文关键词的正则表达式"""
        self.impact_classes = []
        for name, klass in (self.keywords.get("impact_classes") or {}).items():
            words = [w for w in klass.get("keywords", []) if isinstance(w, str)]
            self.impact_classes.append(
                (name, float(klass.get("weight", 0.5)), [compile_english_stem(w.lower()) for w in words])
            )
        self.routine_patterns = [
            compile_english_stem(w.lower()) for w in self.keywords.get("routine_keywords", []) or []
        ]
        self.attention_patterns = [
            (w, compile_english_stem(w.lower())) for w in self.keywords.get("attention_keywords", []) or []
        ]
        self.entity_patterns = []
        self.watched_entities = set()
        for name, ent in (self.keywords.get("entities") or {}).items():
            aliases = ent.get("aliases", [name]) if isinstance(ent, dict) else [name]
            self.entity_patterns.append((name, [compile_english_stem(a.lower()) for a in aliases]))
            if isinstance(ent, dict) and ent.get("watched"):
                self.watched_entities.add(name)
        self.watchlist = {str(s).upper() for s in self.universe.get("watchlist", []) or []}
        self.large_caps = {str(s).upper() for s in self.universe.get("large_caps", []) or []}

    def reload_if_needed(self) -> None:
        """到了检查间隔且文件有变化则重新加载；新配置有问题时保留旧配置"""
        if time.time() - self.last_reload < self.reload_interval:
            return
        changed = any(self._mtime(n) != self._mtimes.get(n) for n in self.FILES)
        self.last_reload = time.time()
        if not changed:
            return
        try:
            self._load_all_configs()
        except ConfigError as e:
            logger.error("[scorer] 配置热加载失败，保留旧配置: %s", e)
            self._mtimes = {name: self._mtime(name) for name in self.FILES}

    # --------- 文本匹配 ---------
    def extract_entities(self, text: str) -> List[str]:
        lower, _ = norm_text_for_match(text)
        return [name for name, pats in self.entity_patterns if any(p.search(lower) for p in pats)]

    def extract_symbols(self, text: str) -> List[str]:
        """
        从标题中提取 watchlist 里的股票代码（大写整词或 $前缀，避免子串误命中）
        """
        found = []
        for sym in sorted(self.watchlist):
            if len(sym) < 2:
                continue
            if re.search(rf"(?<![A-Za-z0-9])\$?{re.escape(sym)}(?![A-Za-z0-9])", text or ""):
                found.append(sym)
        return found


@dataclass
class ScoreContext:
    """打分时的近期上下文：佐证记录 + 同 symbol 的近期条目数"""
    sightings: List[DedupeSighting] = field(default_factory=list)
    related_recent: int = 0
    reason: str = "initial"


EntityExtractor = Callable[[str], Iterable[str]]


class ImpactRanker:
    def __init__(
        self,
        config: ScoringConfig,
        *,
        entity_extractor: Optional[EntityExtractor] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self._entity_extractor = entity_extractor or config.extract_entities
        self._clock = clock

    # --------- 单因子 ---------
    def freshness(self, item: NewsItem, now: int) -> Tuple[float, str]:
        curve = self.config.scoring.get("freshness", {})
        full = float(curve.get("full_minutes", 15))
        tau = float(curve.get("tau_minutes", 120))
        horizon = float(curve.get("horizon_hours", 24)) * 60
        age = max(0.0, (now - item.published_at) / MINUTE_MS)
        if age <= full:
            return 1.0, f"age={age:.0f}m<= {full:.0f}m"
        t = age - full
        exp_part = math.exp(-t / tau)
        lin_part = max(0.0, 1.0 - t / max(horizon - full, 1.0))
        return 0.5 * exp_part + 0.5 * lin_part, f"age={age:.0f}m"

    def source_quality(self, source: NewsSource) -> Tuple[float, str]:
        tier_score = TIER_QUALITY.get(source.tier, 0.5)
        rel = (float(source.reliability_score) - 1.0) / 4.0
        return 0.7 * tier_score + 0.3 * rel, f"tier={source.tier} reliability={source.reliability_score}"

    def _symbols(self, item: NewsItem) -> List[str]:
        syms = {s.upper() for s in item.symbols}
        if item.primary_symbol:
            syms.add(item.primary_symbol.upper())
        syms.update(self.config.extract_symbols(item.title))
        return sorted(syms)

    def _entities(self, item: NewsItem) -> List[str]:
        text = f"{item.title} {item.summary or ''}"
        found = set(self._entity_extractor(text))
        found.update(k for k in (item.entities or {}) if isinstance(k, str))
        return sorted(found)

    def relevance(self, item: NewsItem) -> Tuple[float, str]:
        syms = self._symbols(item)
        ents = self._entities(item)
        n = len(syms) + len(ents)
        if n == 0:
            return 0.0, "no market entity"
        score = 0.4 + 0.15 * (n - 1)
        watched = [s for s in syms if s in self.config.watchlist]
        if watched:
            score += 0.2
        return score, f"symbols={','.join(syms) or '-'} entities={','.join(ents) or '-'} watchlist={len(watched)}"

    def impact(self, item: NewsItem) -> Tuple[float, str]:
        lower, _ = norm_text_for_match(f"{item.title} {item.summary or ''}")
        matched = [
            (name, weight) for name, weight, pats in self.config.impact_classes
            if any(p.search(lower) for p in pats)
        ]
        score = max((w for _, w in matched), default=0.1)
        if len(matched) >= 2:
            score += 0.1
        large = [s for s in self._symbols(item) if s in self.config.large_caps]
        if large:
            score += 0.1
        routine = sum(1 for p in self.config.routine_patterns if p.search(lower))
        score -= 0.2 * routine
        classes = ",".join(n for n, _ in matched) or "none"
        return score, f"classes={classes} large_cap={len(large)} routine={routine}"

    def novelty(self, ctx: ScoreContext) -> Tuple[float, str]:
        cfg = self.config.scoring.get("novelty", {})
        sightings = len(ctx.sightings)
        score = (1.0
                 - float(cfg.get("per_sighting", 0.1)) * sightings
                 - float(cfg.get("per_related", 0.05)) * ctx.related_recent)
        return score, f"sightings={sightings} related={ctx.related_recent}"

    def corroboration(self, item: NewsItem, ctx: ScoreContext) -> Tuple[float, str]:
        best: Dict[str, int] = {}
        for s in ctx.sightings:
            if s.source == item.source:
                continue
            best[s.source] = min(best.get(s.source, 5), s.tier)
        score = sum(CORROBORATION_TIER_WEIGHT.get(t, 0.1) for t in best.values())
        strong = sum(1 for t in best.values() if t <= 3)
        return score, f"sources={len(best)} tier1-3={strong}"

    def attention(self, item: NewsItem) -> Tuple[float, str]:
        lower, _ = norm_text_for_match(f"{item.title} {item.summary or ''}")
        hits = [w for w, p in self.config.attention_patterns if p.search(lower)]
        watched_syms = [s for s in self._symbols(item) if s in self.config.large_caps]
        watched_ents = [e for e in self._entities(item) if e in self.config.watched_entities]
        score = ATTENTION_PER_KEYWORD * len(hits) + ATTENTION_PER_WATCHED * (len(watched_syms) + len(watched_ents))
        return score, f"keywords={','.join(hits) or '-'} watched={len(watched_syms) + len(watched_ents)}"

    # --------- 合成 ---------
    def _safe_factor(self, name: str, fn: Callable[[], Tuple[float, str]],
                     details: Dict[str, Any], degraded: List[str]) -> float:
        try:
            value, reason = fn()
            value = clamp01(value)
            details[name] = {"value": round(value, 4), "reason": reason, "degraded": False}
        except Exception as e:
            err = ScoringDegraded(name, e)
            neutral = clamp01(self.config.scoring.get("neutral_value", 0.4))
            logger.warning("[scorer] 因子降级 %s", err)
            details[name] = {"value": neutral, "reason": f"degraded: {e!r}", "degraded": True}
            degraded.append(name)
            value = neutral
        return value

    def score(self, item: NewsItem, source: NewsSource, ctx: Optional[ScoreContext] = None) -> NewsScore:
        """
        计算 7 个因子并合成 0~10 分；任何单因子失败都不会中断打分
        """
        self.config.reload_if_needed()
        ctx = ctx or ScoreContext()
        now = self._clock()
        details: Dict[str, Any] = {}
        degraded: List[str] = []

        factors = {
            "freshness": self._safe_factor("freshness", lambda: self.freshness(item, now), details, degraded),
            "source_quality": self._safe_factor("source_quality", lambda: self.source_quality(source), details, degraded),
            "relevance": self._safe_factor("relevance", lambda: self.relevance(item), details, degraded),
            "impact": self._safe_factor("impact", lambda: self.impact(item), details, degraded),
            "novelty": self._safe_factor("novelty", lambda: self.novelty(ctx), details, degraded),
            "corroboration": self._safe_factor("corroboration", lambda: self.corroboration(item, ctx), details, degraded),
            "attention": self._safe_factor("attention", lambda: self.attention(item), details, degraded),
        }

        weights = dict(self.config.weights)
        composite = round(10.0 * sum(weights[f] * factors[f] for f in FACTORS), 2)
        composite = max(0.0, min(10.0, composite))

        details["degraded"] = degraded
        details["weights"] = weights
        details["context"] = {
            "reason": ctx.reason,
            "sightings": len(ctx.sightings),
            "related_recent": ctx.related_recent,
        }

        return NewsScore(
            news_item_id=item.id,
            composite_score=composite,
            weights=weights,
            scoring_details=details,
            scored_at=now,
            **{f: round(factors[f], 4) for f in FACTORS},
        )
