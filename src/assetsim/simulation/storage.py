"""
StorageLayout - 语义覆盖到存储覆盖的转换

将 "ERC-20 余额 / 授权 / Permit2 授权 / 原生币余额" 这类语义覆盖转换为
debug_traceCall 的 stateOverrides。ERC-20 存储槽的定位方式：
1. eth_createAccessList 获取 balanceOf / allowance 读取过的存储键，逐个用标记值验证
2. 回退到 Solidity / Vyper 映射布局的槽位暴力搜索

存储覆盖始终写在被调用地址（代理合约自身）上，与代理实际执行的代码无关。
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from eth_abi import decode, encode
from web3 import Web3

from ..errors import RpcError, StorageLayoutError
from .models import AssetKey, AssetKind, BlockRef

logger = logging.getLogger(__name__)


RpcRequest = Callable[[str, List[Any]], Any]

UINT256_MAX = 2**256 - 1
UINT160_MAX = 2**160 - 1
UINT48_MAX = 2**48 - 1

# 用于验证存储槽的标记值
SLOT_MARKER = 0x5A17_C0DE_0000_0000_0000_0000_0000_0000_0000_1337

# Permit2: SignatureTransfer.nonceBitmap 位于 slot 0，AllowanceTransfer.allowance 位于 slot 1
PERMIT2_ALLOWANCE_SLOT = 1

BALANCE_OF_SELECTOR = bytes(Web3.keccak(text="balanceOf(address)")[:4])
ALLOWANCE_SELECTOR = bytes(Web3.keccak(text="allowance(address,address)")[:4])


def to_word(value: int) -> str:
    """uint256 -> 32 字节十六进制"""
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"数值超出 uint256 范围: {value}")
    return "0x" + format(value, "064x")


def block_param(block: BlockRef) -> str:
    if isinstance(block, int):
        return hex(block)
    return block


def _pad_address(address: str) -> bytes:
    return bytes.fromhex(address[2:].lower().zfill(64))


def _pad_int(value: int) -> bytes:
    return value.to_bytes(32, "big")


def mapping_slot(keys: Sequence[str], base_slot: int, vyper: bool = False) -> str:
    """
    计算 (嵌套) 映射的存储槽

    Solidity: keccak(key . slot)；Vyper: keccak(slot . key)
    """
    slot = _pad_int(base_slot)
    for key in keys:
        if vyper:
            slot = Web3.keccak(slot + _pad_address(key))
        else:
            slot = Web3.keccak(_pad_address(key) + slot)
    return "0x" + bytes(slot).hex()


def encode_balance_of(owner: str) -> str:
    return "0x" + (BALANCE_OF_SELECTOR + encode(["address"], [owner])).hex()


def encode_allowance(owner: str, spender: str) -> str:
    return "0x" + (ALLOWANCE_SELECTOR + encode(["address", "address"], [owner, spender])).hex()


def decode_uint(result: Optional[str]) -> Optional[int]:
    if not isinstance(result, str) or not result.startswith("0x") or len(result) < 66:
        return None
    (value,) = decode(["uint256"], bytes.fromhex(result[2:66]))
    return value


class StorageLayout:
    """
    存储布局探测与状态覆盖构建

    探测结果按资产键缓存；探测只读，不修改后端状态。
    """

    def __init__(self, request: RpcRequest, slot_bruteforce_max: int = 20):
        """
        初始化 StorageLayout

        Args:
            request: JSON-RPC 请求函数 request(method, params) -> result
            slot_bruteforce_max: 暴力搜索映射槽位的最大索引
        """
        self._request = request
        self.slot_bruteforce_max = slot_bruteforce_max
        self._slot_cache: Dict[AssetKey, str] = {}

    def build_state_overrides(
        self, overrides: Dict[AssetKey, int], block: BlockRef = "latest"
    ) -> Dict[str, Dict[str, Any]]:
        """
        将语义覆盖转换为 stateOverrides

        Returns:
            {address: {"balance": hex, "stateDiff": {slot: word}}}
        """
        state: Dict[str, Dict[str, Any]] = {}

        for key, value in overrides.items():
            if key.kind == AssetKind.NATIVE_BALANCE:
                entry = state.setdefault(key.account, {})
                entry["balance"] = hex(value)
                continue

            if key.kind == AssetKind.PERMIT2_ALLOWANCE:
                target = key.via
                slot = self.slot_for(key, block)
                word = self._permit2_word(key, slot, value, block)
            else:
                target = key.asset
                slot = self.slot_for(key, block)
                word = to_word(value)

            entry = state.setdefault(target, {})
            entry.setdefault("stateDiff", {})[slot] = word

        return state

    def slot_for(self, key: AssetKey, block: BlockRef = "latest") -> str:
        """获取资产键对应的存储槽（带缓存）"""
        cached = self._slot_cache.get(key)
        if cached is not None:
            return cached

        if key.kind == AssetKind.PERMIT2_ALLOWANCE:
            slot = mapping_slot(
                [key.account, key.asset, key.spender], PERMIT2_ALLOWANCE_SLOT
            )
        elif key.kind == AssetKind.BALANCE:
            slot = self._locate(
                key,
                encode_balance_of(key.account),
                [key.account],
                block,
            )
        elif key.kind == AssetKind.ALLOWANCE:
            slot = self._locate(
                key,
                encode_allowance(key.account, key.spender),
                [key.account, key.spender],
                block,
            )
        else:
            raise ValueError(f"{key.kind.value} 没有存储槽")

        self._slot_cache[key] = slot
        return slot

    def _locate(
        self,
        key: AssetKey,
        getter_data: str,
        path: List[str],
        block: BlockRef,
    ) -> str:
        """依次尝试访问列表候选槽与映射暴力搜索"""
        token = key.asset

        for slot in self._access_list_candidates(token, getter_data, block):
            if self._verify_slot(token, getter_data, slot, block):
                logger.debug(f"通过访问列表定位存储槽: {key.describe()} -> {slot}")
                return slot

        for index in range(0, self.slot_bruteforce_max + 1):
            for vyper in (False, True):
                slot = mapping_slot(path, index, vyper=vyper)
                if self._verify_slot(token, getter_data, slot, block):
                    logger.debug(
                        f"暴力搜索定位存储槽: {key.describe()} -> index={index} vyper={vyper}"
                    )
                    return slot

        raise StorageLayoutError(
            f"无法定位存储槽: {key.describe()}",
            token=token,
            details={"kind": key.kind.value, "bruteforce_max": self.slot_bruteforce_max},
        )

    def _access_list_candidates(
        self, token: str, data: str, block: BlockRef
    ) -> List[str]:
        try:
            result = self._request(
                "eth_createAccessList",
                [{"to": token, "data": data}, block_param(block)],
            )
        except RpcError as e:
            logger.debug(f"eth_createAccessList 失败，改用暴力搜索: {e}")
            return []

        candidates: List[str] = []
        for item in (result or {}).get("accessList", []):
            if Web3.to_checksum_address(item.get("address", "0x" + "0" * 40)) != token:
                continue
            for slot in item.get("storageKeys", []):
                normalized = "0x" + slot[2:].zfill(64).lower()
                if normalized not in candidates:
                    candidates.append(normalized)
        return candidates

    def _verify_slot(self, token: str, data: str, slot: str, block: BlockRef) -> bool:
        """覆盖候选槽为标记值，检查 getter 是否返回标记值"""
        override = {token: {"stateDiff": {slot: to_word(SLOT_MARKER)}}}
        try:
            result = self._request(
                "eth_call", [{"to": token, "data": data}, block_param(block), override]
            )
        except RpcError as e:
            logger.debug(f"验证存储槽失败 {slot}: {e}")
            return False
        return decode_uint(result) == SLOT_MARKER

    def _permit2_word(
        self, key: AssetKey, slot: str, amount: int, block: BlockRef
    ) -> str:
        """
        打包 Permit2 PackedAllowance

        布局: amount(uint160) | expiration(uint48) << 160 | nonce(uint48) << 208
        保留原有 nonce，过期时间设为最大值。
        """
        try:
            current = self._request(
                "eth_getStorageAt", [key.via, slot, block_param(block)]
            )
        except RpcError as e:
            raise e.as_adapter_error({"permit2": key.via, "slot": slot}) from e
        nonce = (int(current, 16) >> 208) & UINT48_MAX if current else 0
        packed = min(amount, UINT160_MAX) | (UINT48_MAX << 160) | (nonce << 208)
        return to_word(packed)
