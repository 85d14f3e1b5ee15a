# -*- coding: utf-8 -*-
"""
impacthub/utils.py
通用辅助函数：
- UTC 毫秒时间戳
- 英文词形匹配（单复数、时态）
- 链接规范化（去掉 utm_* 等统计参数）
- 发布时间解析（ISO-8601 / 秒 / 毫秒）
"""

from __future__ import annotations

import hashlib
import re
import time
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

# 统计/追踪参数：不影响正文内容
TRACKING_PARAMS = {
    "ref", "ref_src", "fbclid", "gclid", "mc_cid", "mc_eid",
    "cmpid", "ocid", "taid", "src", "cid", "smid",
}


def now_ms() -> int:
    """
    获取当前时间的UTC毫秒时间戳
    """
    return int(time.time() * 1000)


def compile_english_stem(stem: str) -> re.Pattern:
    """
    为英文词根编译正则，支持词形变化匹配

    参数:
        stem: 英文词根（小写，允许短语）

    返回:
        编译后的正则表达式，匹配词根及其变形
    """
    pattern = rf'\b{re.escape(stem)}(s|es|ed|ing)?\b'
    return re.compile(pattern, re.IGNORECASE)


def norm_text_for_match(s: str) -> Tuple[str, str]:
    lower = (s or "").lower()
    # 避免 ray-ban 命中 ban
    lower = lower.replace("ray-ban", "rayban")
    return lower, s or ""


def normalize_link(url: Optional[str]) -> str:
    """
    规范化链接：小写 scheme/host、去掉 www.、去掉 utm_* / ref 等统计参数、
    去掉 fragment 和结尾斜杠，剩余参数排序。
    让“同文不同链”更容易被识别为同一条。
    """
    if not url:
        return ""
    u = urlparse(url.strip())
    netloc = u.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]
    qs = sorted(
        (k, v)
        for (k, v) in parse_qsl(u.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in TRACKING_PARAMS
    )
    path = u.path.rstrip("/")
    return urlunparse((u.scheme.lower(), netloc, path, u.params, urlencode(qs, doseq=True), ""))


def md5_hex(s: str) -> str:
    return hashlib.md5(s.encode("utf-8")).hexdigest()


def sha1_hex(s: str) -> str:
    return hashlib.sha1(s.encode("utf-8")).hexdigest()


def parse_published(value: Any) -> Optional[int]:
    """
    发布时间 -> UTC毫秒。支持:
      - int/float: 大于 1e12 视为毫秒，否则视为秒
      - str: ISO-8601（允许结尾 Z）或纯数字
      - datetime: 无时区时按 UTC 处理
    无法解析返回 None。
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, (int, float)):
        v = float(value)
        if v <= 0:
            return None
        return int(v) if v > 1e12 else int(v * 1000)
    if isinstance(value, str):
        s = value.strip()
        if re.fullmatch(r"\d+(\.\d+)?", s):
            return parse_published(float(s))
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return parse_published(datetime.fromisoformat(s))
        except ValueError:
            return None
    return None


def split_multi(value: Any) -> List[str]:
    """分号/逗号分隔的字符串或列表 -> 去空白的列表"""
    if not value:
        return []
    if isinstance(value, str):
        parts: Iterable[str] = re.split(r"[;,]", value)
    else:
        parts = value
    return [str(p).strip() for p in parts if str(p).strip()]


def join_multi(values: Iterable[str]) -> str:
    return ";".join(v for v in values if v)


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))
