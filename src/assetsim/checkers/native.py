"""
Native Value Checker

携带 value 的调用因原生币余额不足失败（包括节点拒绝执行的顶层调用），
前置条件为调用者的原生币余额。
"""

from typing import List

from ..simulation.models import AssetKey, CallFrame, CallKind
from .base import AssetChecker, PotentialRequirement

INSUFFICIENT_MARKERS = ("insufficient balance", "insufficient funds")


class NativeValueChecker(AssetChecker):
    """原生币余额"""

    name = "native_value"
    description = "Value-carrying call failing on insufficient native balance"

    def matches(self, frame: CallFrame) -> bool:
        if frame.code_address is None or frame.value <= 0:
            return False
        if frame.kind not in (CallKind.CALL, CallKind.CREATE, CallKind.CREATE2):
            return False
        text = " ".join(filter(None, [frame.error, frame.revert_reason])).lower()
        return any(marker in text for marker in INSUFFICIENT_MARKERS)

    def extract(self, frame: CallFrame) -> List[PotentialRequirement]:
        return [self.potential(AssetKey.native(frame.caller), frame.value)]
