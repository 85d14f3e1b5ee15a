# -*- coding: utf-8 -*-
"""
impacthub/config.py
读取 ops/config.yml；不存在就用默认。
ops 目录可用环境变量 IMPACTHUB_OPS_DIR 覆盖（测试/部署用）。
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]

DEFAULT_CFG: Dict[str, Any] = {
    "storage": {
        "db_path": "intel.db",
    },
    "dedupe": {
        "window_hours": 24,
        "topic_window_hours": 24,
        "corroboration_window_hours": 6,
    },
    "scoring": {
        "reload_interval_sec": 30,
        # 权重会被归一化到总和为 1
        "weights": {
            "freshness": 0.15,
            "source_quality": 0.05,
            "relevance": 0.15,
            "impact": 0.30,
            "novelty": 0.10,
            "corroboration": 0.05,
            "attention": 0.20,
        },
        # 因子计算失败时的中性值
        "neutral_value": 0.4,
        "freshness": {"full_minutes": 15, "tau_minutes": 120, "horizon_hours": 24},
        "novelty": {"per_sighting": 0.1, "per_related": 0.05, "related_window_hours": 6},
    },
    "routing": {
        "fastlane_threshold": 7.0,
        "digest_2h_threshold": 5.0,
        "digest_4h_threshold": 3.0,
        "fade_ceiling": 3,
        "supersede_margin": 2.0,
    },
    "notifier": {
        "notify_channels": ["telegram"],
        "display_timezone": "Asia/Shanghai",
        "fastlane_poll_sec": 15,
        "digest_top_n": 10,
        "retry": {
            "max_attempts": 3,
            "backoff_sec": 2,
            "max_backoff_sec": 30,
            "jitter_sec": 0.6,
            "timeout_sec": 15,
        },
        "circuit": {"failure_threshold": 5, "cooldown_sec": 300},
    },
    "housekeeper": {
        "every_sec": 600,
    },
}


def ops_dir() -> Path:
    env = os.environ.get("IMPACTHUB_OPS_DIR", "").strip()
    return Path(env) if env else ROOT / "ops"


def deep_merge(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{p.name}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{p.name}: top level must be a mapping")
    return data


def load_cfg(path: Optional[Union[str, Path]] = None,
             overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """ops/config.yml 可选；不存在就用默认。overrides 最后合并（测试用）。"""
    cfg_path = Path(path) if path else ops_dir() / "config.yml"
    data: Dict[str, Any] = {}
    if cfg_path.exists():
        data = load_yaml(cfg_path)
    else:
        logger.info("[config] %s 不存在，使用默认配置", cfg_path)
    return deep_merge(deep_merge(DEFAULT_CFG, data), overrides)
