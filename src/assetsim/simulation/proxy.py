"""
ProxyResolver - 代理合约解析

为调用跟踪中的每个帧计算实际执行代码的地址（code_address）：
1. 跟踪证据：帧的 DELEGATECALL 子调用携带完全相同的 calldata，视为转发，
   递归解析到转发链末端；转发到多个不同目标时视为无法解析（None）
2. 字节码证据（仅失败路径、可选）：EIP-1167 最小代理、EIP-1967 实现槽 /
   beacon 槽、EIP-1822 UUPS 槽

存储上下文始终是被调用地址本身，解析只影响 code_address。
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from web3 import Web3

from .models import ZERO_ADDRESS, BlockRef, CallKind, CallTrace

logger = logging.getLogger(__name__)


EIP1167_PREFIX = bytes.fromhex("363d3d373d3d3d363d73")
EIP1167_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")

# bytes32(uint256(keccak256("eip1967.proxy.implementation")) - 1)
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC
# bytes32(uint256(keccak256("eip1967.proxy.beacon")) - 1)
EIP1967_BEACON_SLOT = 0xA3F0AD74E5423AEBFD80D3EF4346578335A9A72AEAEE59FF6CB3582B35133D50
# keccak256("PROXIABLE")
EIP1822_PROXIABLE_SLOT = 0xC5F16F0FCC639FA48A6947836D9850F504798523BF8C9A3A87D5876CF622BCF7

IMPLEMENTATION_SELECTOR = bytes.fromhex("5c60da1b")  # implementation()


class CodeReader(ABC):
    """读取指定区块的链上代码与存储（用于字节码层面的代理识别）"""

    @abstractmethod
    def get_code(self, address: str, block: BlockRef = "latest") -> bytes:
        raise NotImplementedError

    @abstractmethod
    def get_storage_at(self, address: str, slot: int, block: BlockRef = "latest") -> bytes:
        raise NotImplementedError

    @abstractmethod
    def call_for_address(
        self, address: str, data: bytes, block: BlockRef = "latest"
    ) -> Optional[str]:
        """调用只读函数并将返回值解码为地址，失败返回 None"""
        raise NotImplementedError


def logical_failure(trace: CallTrace) -> Optional[int]:
    """
    逻辑失败帧

    从最深失败帧开始，向上穿过纯转发的 DELEGATECALL（calldata 与父帧相同），
    得到存储归属于被调用地址的那个帧，即检查器所看到的帧。
    """
    index = trace.deepest_failure()
    if index is None:
        return None

    frame = trace.frame(index)
    while frame.kind == CallKind.DELEGATECALL and frame.parent is not None:
        parent = trace.frame(frame.parent)
        if parent.success or parent.input != frame.input:
            break
        frame = parent
    return frame.index


class ProxyResolver:
    """
    代理解析器

    Args:
        reader: 可选的 CodeReader；为 None 时只使用跟踪证据
    """

    def __init__(self, reader: Optional[CodeReader] = None):
        self.reader = reader
        self._implementation_cache: Dict[Tuple[str, BlockRef], Optional[str]] = {}

    def resolve(self, trace: CallTrace, block: BlockRef = "latest") -> CallTrace:
        """
        解析跟踪中所有帧的 code_address

        Args:
            trace: 调用跟踪
            block: 字节码检查读取的区块（与模拟所在区块一致）

        Returns:
            填充了 code_address 的新 CallTrace
        """
        resolved: Dict[int, Optional[str]] = {}
        forwarded = set()

        # 先序排列中子帧索引总是大于父帧，逆序遍历保证子帧先解析
        for frame in reversed(trace.frames):
            forwards = [
                child
                for child in trace.children(frame.index)
                if child.kind == CallKind.DELEGATECALL and child.input == frame.input
            ]
            if not forwards:
                resolved[frame.index] = frame.callee
                continue

            forwarded.add(frame.index)
            targets = {resolved[child.index] for child in forwards}
            if len(targets) == 1 and None not in targets:
                resolved[frame.index] = targets.pop()
            else:
                logger.debug(f"帧 {frame.index} 转发目标不唯一: {targets}")
                resolved[frame.index] = None

        if self.reader is not None and not trace.root.success:
            self._resolve_failing_path(trace, resolved, forwarded, block)

        return trace.with_code_addresses(resolved)

    def _resolve_failing_path(
        self,
        trace: CallTrace,
        resolved: Dict[int, Optional[str]],
        forwarded: set,
        block: BlockRef,
    ) -> None:
        """对失败路径上没有跟踪证据的帧做字节码检查"""
        for frame in trace.iter_path(trace.deepest_failure()):
            if frame.index in forwarded:
                continue
            if frame.kind not in (CallKind.CALL, CallKind.STATICCALL, CallKind.CALLCODE):
                continue
            implementation = self.implementation_of(frame.callee, block)
            if implementation is not None:
                resolved[frame.index] = implementation

    def implementation_of(self, address: str, block: BlockRef = "latest") -> Optional[str]:
        """按字节码识别代理并返回实现地址（按地址与区块缓存）"""
        cache_key = (address, block)
        if cache_key in self._implementation_cache:
            return self._implementation_cache[cache_key]

        try:
            implementation = self._detect(address, block)
        except Exception as e:
            logger.warning(f"代理识别失败 {address}: {e}")
            implementation = None

        self._implementation_cache[cache_key] = implementation
        return implementation

    def _detect(self, address: str, block: BlockRef) -> Optional[str]:
        code = self.reader.get_code(address, block)
        if not code:
            return None

        if (
            len(code) == 45
            and code.startswith(EIP1167_PREFIX)
            and code.endswith(EIP1167_SUFFIX)
        ):
            return Web3.to_checksum_address("0x" + code[10:30].hex())

        implementation = self._address_in_slot(address, EIP1967_IMPLEMENTATION_SLOT, block)
        if implementation is not None:
            return implementation

        beacon = self._address_in_slot(address, EIP1967_BEACON_SLOT, block)
        if beacon is not None:
            return self.reader.call_for_address(beacon, IMPLEMENTATION_SELECTOR, block)

        return self._address_in_slot(address, EIP1822_PROXIABLE_SLOT, block)

    def _address_in_slot(self, address: str, slot: int, block: BlockRef) -> Optional[str]:
        word = self.reader.get_storage_at(address, slot, block)
        candidate = Web3.to_checksum_address("0x" + word[-20:].hex())
        if candidate == ZERO_ADDRESS:
            return None
        return candidate
