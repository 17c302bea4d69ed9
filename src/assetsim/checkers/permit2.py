"""
Permit2 Allowance Checker

Permit2 的 AllowanceTransfer.transferFrom 在 Permit2 合约内部因授权不足 /
过期而失败时，前置条件为 owner 经 Permit2 授权给调用者的代币额度。
底层代币转账失败时最深失败帧是代币的 transferFrom，由 ERC-20 检查器处理。
"""

from typing import List

from ..config import PERMIT2_ADDRESS
from ..simulation.models import AssetKey, CallFrame, normalize_address
from .base import AssetChecker, PotentialRequirement


class Permit2AllowanceChecker(AssetChecker):
    """Permit2 transferFrom(from, to, amount, token)"""

    name = "permit2_allowance"
    description = "Permit2 transferFrom: owner -> caller allowance held by Permit2"
    signatures = {
        "transferFrom(address,address,uint160,address)": (
            "address", "address", "uint160", "address",
        ),
    }

    def __init__(self, permit2_address: str = PERMIT2_ADDRESS):
        super().__init__()
        self.permit2_address = normalize_address(permit2_address)

    def matches(self, frame: CallFrame) -> bool:
        if frame.code_address != self.permit2_address:
            return False
        return super().matches(frame)

    def extract(self, frame: CallFrame) -> List[PotentialRequirement]:
        owner, _, amount, token = self.decode_args(frame)
        key = AssetKey.permit2_allowance(frame.callee, token, owner, frame.caller)
        return [self.potential(key, amount)]
