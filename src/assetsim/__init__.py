"""
assetsim - EVM 交易资产前置条件发现

在分叉状态上反复模拟交易，诊断因余额 / 授权不足导致的失败，
找出交易成功所需的最小资产前置条件。
"""

__version__ = "0.1.0"

from .discovery import AssetDiscovery, DiscoveryConfig, DiscoveryResult, DiscoveryStatus
from .simulation import AssetKey, RpcExecutionAdapter, TxSpec

__all__ = [
    "AssetDiscovery",
    "DiscoveryConfig",
    "DiscoveryResult",
    "DiscoveryStatus",
    "AssetKey",
    "RpcExecutionAdapter",
    "TxSpec",
]
