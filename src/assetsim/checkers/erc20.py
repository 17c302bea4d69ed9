"""
ERC-20 Checkers

- TransferFromChecker: transferFrom(owner, to, amount)，余额 + 授权两项候选
- TransferChecker: transfer(to, amount)，调用者余额
- TransferWithAuthorizationChecker: EIP-3009 签名授权转账，from 的余额

存储上下文为被调用地址（代理合约自身），spender 为该帧的调用者。
"""

from typing import List

from ..simulation.models import AssetKey, CallFrame
from .base import AssetChecker, PotentialRequirement


class TransferFromChecker(AssetChecker):
    """ERC-20 transferFrom"""

    name = "erc20_transfer_from"
    description = "ERC-20 transferFrom: owner balance and owner -> caller allowance"
    signatures = {
        "transferFrom(address,address,uint256)": ("address", "address", "uint256"),
    }

    def extract(self, frame: CallFrame) -> List[PotentialRequirement]:
        owner, _, amount = self.decode_args(frame)
        token = frame.callee
        return [
            self.potential(AssetKey.balance(token, owner), amount),
            self.potential(AssetKey.allowance(token, owner, frame.caller), amount),
        ]


class TransferChecker(AssetChecker):
    """ERC-20 transfer"""

    name = "erc20_transfer"
    description = "ERC-20 transfer: caller balance"
    signatures = {
        "transfer(address,uint256)": ("address", "uint256"),
    }

    def extract(self, frame: CallFrame) -> List[PotentialRequirement]:
        _, amount = self.decode_args(frame)
        return [self.potential(AssetKey.balance(frame.callee, frame.caller), amount)]


class TransferWithAuthorizationChecker(AssetChecker):
    """EIP-3009 transferWithAuthorization / receiveWithAuthorization"""

    name = "eip3009_authorization"
    description = "EIP-3009 signed authorization transfer: payer balance"
    signatures = {
        "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)": (
            "address", "address", "uint256", "uint256", "uint256", "bytes32", "uint8", "bytes32", "bytes32",
        ),
        "receiveWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)": (
            "address", "address", "uint256", "uint256", "uint256", "bytes32", "uint8", "bytes32", "bytes32",
        ),
        # USDC v2.2 的 bytes 签名重载
        "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,bytes)": (
            "address", "address", "uint256", "uint256", "uint256", "bytes32", "bytes",
        ),
        "receiveWithAuthorization(address,address,uint256,uint256,uint256,bytes32,bytes)": (
            "address", "address", "uint256", "uint256", "uint256", "bytes32", "bytes",
        ),
    }

    def extract(self, frame: CallFrame) -> List[PotentialRequirement]:
        args = self.decode_args(frame)
        payer, amount = args[0], args[2]
        return [self.potential(AssetKey.balance(frame.callee, payer), amount)]
