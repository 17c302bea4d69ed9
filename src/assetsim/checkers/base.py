"""
Asset Checker Interface

检查器识别一种资产交互模式（如 ERC-20 transferFrom），把失败的调用帧
翻译为具体的资产前置条件，并为假设的数值构造状态覆盖。

新增资产类型只需实现 AssetChecker 并注册，发现循环无需修改。
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from pydantic import BaseModel, ConfigDict, Field
from web3 import Web3

from ..simulation.models import AssetKey, CallFrame, CallKind, Override


def selector_of(signature: str) -> str:
    """函数签名 -> 0x 前缀的 4 字节选择器"""
    return "0x" + bytes(Web3.keccak(text=signature)[:4]).hex()


class PotentialRequirement(BaseModel):
    """
    检查器提取出的候选前置条件

    数量未知（由 Requirement Search 确定），hint 为 calldata 中出现的金额。
    """
    model_config = ConfigDict(frozen=True)

    key: AssetKey = Field(..., description="资产键")
    hint: Optional[int] = Field(None, description="calldata 中的金额提示")
    checker: str = Field(..., description="提取该条件的检查器名称")


class AssetChecker(ABC):
    """
    资产检查器基础类

    子类声明 signatures（函数签名 -> 参数类型），并实现 extract。
    未解析的帧（code_address 为 None）永远不匹配。
    """

    name: str = "base_checker"
    description: str = "Base asset checker"
    signatures: Dict[str, Sequence[str]] = {}

    def __init__(self):
        self._selectors: Dict[str, Tuple[str, ...]] = {
            selector_of(signature): tuple(types)
            for signature, types in self.signatures.items()
        }

    def matches(self, frame: CallFrame) -> bool:
        """判断调用帧是否为该检查器的模式"""
        if frame.code_address is None or frame.kind != CallKind.CALL:
            return False
        return self.decode_args(frame) is not None

    @abstractmethod
    def extract(self, frame: CallFrame) -> List[PotentialRequirement]:
        """
        从匹配的帧中提取候选前置条件

        Args:
            frame: 已解析代理的逻辑失败帧

        Returns:
            候选前置条件列表（如 transferFrom 返回余额 + 授权两项）
        """
        raise NotImplementedError

    def build_override(self, requirement: PotentialRequirement, amount: int) -> Override:
        """为假设的数值构造状态覆盖"""
        return Override(key=requirement.key, value=amount)

    def decode_args(self, frame: CallFrame) -> Optional[tuple]:
        """按选择器解码 calldata 参数，不匹配或解码失败返回 None"""
        types = self._selectors.get(frame.selector or "")
        if types is None:
            return None
        try:
            return decode(list(types), frame.input_bytes[4:])
        except (DecodingError, ValueError, OverflowError):
            return None

    def potential(self, key: AssetKey, hint: Optional[int]) -> PotentialRequirement:
        return PotentialRequirement(key=key, hint=hint, checker=self.name)


class CheckerRegistry:
    """
    检查器注册表

    按注册顺序（优先级）尝试匹配，第一个匹配的检查器胜出。
    """

    def __init__(self, checkers: Optional[List[AssetChecker]] = None):
        self._checkers: Dict[str, AssetChecker] = {}
        for checker in checkers or []:
            self.register(checker)

    def register(self, checker: AssetChecker) -> None:
        """注册一个检查器（同名检查器原位替换）"""
        self._checkers[checker.name] = checker

    def get(self, name: str) -> Optional[AssetChecker]:
        """获取指定名称的检查器"""
        return self._checkers.get(name)

    def list_checkers(self) -> List[str]:
        """按优先级列出所有已注册的检查器名称"""
        return list(self._checkers.keys())

    def match(self, frame: CallFrame) -> Optional[AssetChecker]:
        """返回第一个匹配该帧的检查器"""
        for checker in self._checkers.values():
            if checker.matches(frame):
                return checker
        return None
