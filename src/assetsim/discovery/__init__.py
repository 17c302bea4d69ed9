"""
Discovery - 资产前置条件发现

模拟 -> 诊断 -> 搜索最小数量 -> 累积覆盖，直到交易成功或进入诊断类终止状态。
"""

from .models import (
    DiscoveryConfig,
    DiscoveryResult,
    DiscoveryStatus,
    FailureInfo,
    Requirement,
)
from .diagnosis import Diagnoser, Diagnosis, FailureSite
from .search import RequirementSearch, SearchResult, SearchVerdict
from .engine import AssetDiscovery, RunState

__all__ = [
    "AssetDiscovery",
    "RunState",
    "Diagnoser",
    "Diagnosis",
    "FailureSite",
    "RequirementSearch",
    "SearchResult",
    "SearchVerdict",
    "DiscoveryConfig",
    "DiscoveryResult",
    "DiscoveryStatus",
    "FailureInfo",
    "Requirement",
]
