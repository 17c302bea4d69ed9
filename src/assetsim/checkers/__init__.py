"""
Asset Checkers - 资产交互模式识别

按优先级注册的检查器集合，是发现引擎的主要扩展点。
"""

from ..config import PERMIT2_ADDRESS
from .base import AssetChecker, CheckerRegistry, PotentialRequirement, selector_of
from .erc20 import TransferChecker, TransferFromChecker, TransferWithAuthorizationChecker
from .native import NativeValueChecker
from .permit2 import Permit2AllowanceChecker


def default_registry(permit2_address: str = PERMIT2_ADDRESS) -> CheckerRegistry:
    """默认检查器注册表（优先级顺序）"""
    return CheckerRegistry(
        [
            TransferFromChecker(),
            TransferChecker(),
            TransferWithAuthorizationChecker(),
            Permit2AllowanceChecker(permit2_address),
            NativeValueChecker(),
        ]
    )


__all__ = [
    "AssetChecker",
    "CheckerRegistry",
    "PotentialRequirement",
    "selector_of",
    "default_registry",
    "TransferFromChecker",
    "TransferChecker",
    "TransferWithAuthorizationChecker",
    "Permit2AllowanceChecker",
    "NativeValueChecker",
]
