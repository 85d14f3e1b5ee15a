# -*- coding: utf-8 -*-
"""
impacthub/errors.py
错误分类：
- ValidationError     候选条目格式不合法（rejected，不落库）
- ScoringDegraded     某个因子计算失败，用中性值兜底（不会向外抛出，只在 scoring_details 标记）
- PersistenceFailure  item+score+routing 原子写入失败（整体回滚）
- DeliveryFailure     推送失败（记入 push history，不改路由）
- InvalidTransition   路由状态机的非法迁移
- ConfigError         ops/*.yml 配置不合法
重复条目（skipped）是正常结果，不是异常。
"""

from __future__ import annotations

from typing import Optional


class ImpactHubError(Exception):
    pass


class ValidationError(ImpactHubError):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class ScoringDegraded(ImpactHubError):
    def __init__(self, factor: str, cause: BaseException):
        super().__init__(f"{factor}: {cause!r}")
        self.factor = factor
        self.cause = cause


class PersistenceFailure(ImpactHubError):
    pass


class DeliveryFailure(ImpactHubError):
    def __init__(self, message: str, *, throttled: bool = False,
                 retry_after: Optional[float] = None, retryable: bool = True):
        super().__init__(message)
        self.throttled = throttled
        self.retry_after = retry_after
        self.retryable = retryable


class InvalidTransition(ImpactHubError):
    pass


class ConfigError(ImpactHubError):
    pass
