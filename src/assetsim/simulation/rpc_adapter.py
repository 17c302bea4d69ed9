"""
RpcExecutionAdapter - 基于 JSON-RPC 的执行适配器

使用 debug_traceCall + callTracer 在分叉节点（Anvil 或支持 debug 命名空间的节点）
上执行交易，状态覆盖通过 stateOverrides 传入：覆盖只对单次调用生效，
不修改节点状态，因此多个独立的发现流程可以并发共享同一节点。
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from eth_abi import decode, encode
from web3 import Web3

from ..errors import BackendUnavailableError, RpcError
from .adapter import ExecutionAdapter
from .models import (
    AssetKey,
    AssetKind,
    BlockRef,
    SimulationOutcome,
    SimulationRequest,
)
from .proxy import CodeReader
from .storage import StorageLayout, block_param, decode_uint, encode_allowance, encode_balance_of
from .trace import outcome_from_trace

logger = logging.getLogger(__name__)


PERMIT2_ALLOWANCE_GETTER = bytes(Web3.keccak(text="allowance(address,address,address)")[:4])

# 节点在执行前拒绝交易时的错误关键字
INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds", "insufficient balance")


class RpcExecutionAdapter(ExecutionAdapter, CodeReader):
    """
    JSON-RPC 执行适配器

    功能：
    - debug_traceCall 执行交易并获取完整调用树
    - 语义覆盖 -> stateOverrides 转换（见 StorageLayout）
    - 读取当前余额 / 授权额度
    - 为代理解析提供代码与存储读取
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: int = 60,
        slot_bruteforce_max: int = 20,
        w3: Optional[Web3] = None,
    ):
        """
        初始化 RpcExecutionAdapter

        Args:
            rpc_url: 分叉节点 RPC URL
            timeout: 单次 RPC 超时时间（秒）
            slot_bruteforce_max: 存储槽暴力搜索上限
            w3: 可选的 Web3 实例（测试时注入）
        """
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._w3 = w3 or Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
        )
        self.storage = StorageLayout(self._request, slot_bruteforce_max)

    @property
    def w3(self) -> Web3:
        return self._w3

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    def _request(self, method: str, params: List[Any]) -> Any:
        """发送 JSON-RPC 请求，返回 result 或抛出 RpcError"""
        try:
            response = self._w3.provider.make_request(method, params)
        except (OSError, ConnectionError) as e:
            raise BackendUnavailableError(
                f"RPC 不可达: {e}", details={"rpc_url": self.rpc_url, "method": method}
            ) from e

        if "error" in response and response["error"]:
            raise RpcError(method, response["error"])
        return response.get("result")

    def _read(self, method: str, params: List[Any]) -> Any:
        """不容忍 RPC 错误的读取：RpcError 转换为 AdapterError"""
        try:
            return self._request(method, params)
        except RpcError as e:
            raise e.as_adapter_error({"rpc_url": self.rpc_url}) from e

    # ------------------------------------------------------------------
    # ExecutionAdapter
    # ------------------------------------------------------------------

    async def simulate(self, request: SimulationRequest) -> SimulationOutcome:
        return await asyncio.to_thread(self._simulate_blocking, request)

    def _simulate_blocking(self, request: SimulationRequest) -> SimulationOutcome:
        tx = request.tx
        call = {
            "from": tx.tx_from,
            "to": tx.tx_to,
            "data": tx.tx_data,
            "value": hex(tx.tx_value),
            "gas": hex(tx.gas_limit),
        }

        # 覆盖必须在执行任何代码之前生效
        state_overrides = self.storage.build_state_overrides(
            request.override_map(), request.block
        )
        options: Dict[str, Any] = {"tracer": "callTracer"}
        if state_overrides:
            options["stateOverrides"] = state_overrides

        try:
            raw = self._request(
                "debug_traceCall", [call, block_param(request.block), options]
            )
        except RpcError as e:
            return self._outcome_from_rpc_error(request, e)

        if not raw:
            raise BackendUnavailableError(
                "debug_traceCall 返回空结果", details={"rpc_url": self.rpc_url}
            )
        return outcome_from_trace(raw)

    def _outcome_from_rpc_error(
        self, request: SimulationRequest, error: RpcError
    ) -> SimulationOutcome:
        """
        处理 debug_traceCall 的 RPC 错误

        顶层调用原生币不足时节点不会返回 trace，这里构造一个失败的根帧，
        以便原生币余额检查器诊断；其余错误视为致命错误。
        """
        message = error.message.lower()
        tx = request.tx

        if any(marker in message for marker in INSUFFICIENT_FUNDS_MARKERS):
            logger.debug(f"顶层调用原生币不足: {error.message}")
            return outcome_from_trace(
                {
                    "type": "CALL",
                    "from": tx.tx_from,
                    "to": tx.tx_to,
                    "value": hex(tx.tx_value),
                    "input": tx.tx_data,
                    "error": "insufficient funds for gas * price + value",
                }
            )

        raise error.as_adapter_error({"rpc_url": self.rpc_url}) from error

    async def current_value(self, key: AssetKey, block: BlockRef = "latest") -> int:
        return await asyncio.to_thread(self._current_value_blocking, key, block)

    def _current_value_blocking(self, key: AssetKey, block: BlockRef) -> int:
        if key.kind == AssetKind.NATIVE_BALANCE:
            result = self._read("eth_getBalance", [key.account, block_param(block)])
            return int(result, 16)

        if key.kind == AssetKind.BALANCE:
            target, data = key.asset, encode_balance_of(key.account)
        elif key.kind == AssetKind.ALLOWANCE:
            target, data = key.asset, encode_allowance(key.account, key.spender)
        else:
            target = key.via
            data = "0x" + (
                PERMIT2_ALLOWANCE_GETTER
                + encode(["address", "address", "address"], [key.account, key.asset, key.spender])
            ).hex()

        try:
            result = self._request("eth_call", [{"to": target, "data": data}, block_param(block)])
        except RpcError as e:
            logger.warning(f"读取当前值失败 {key.describe()}: {e.message}")
            return 0

        value = decode_uint(result)
        return value if value is not None else 0

    # ------------------------------------------------------------------
    # CodeReader
    # ------------------------------------------------------------------

    def get_code(self, address: str, block: BlockRef = "latest") -> bytes:
        result = self._read("eth_getCode", [address, block_param(block)])
        return bytes.fromhex((result or "0x")[2:])

    def get_storage_at(self, address: str, slot: int, block: BlockRef = "latest") -> bytes:
        result = self._read("eth_getStorageAt", [address, hex(slot), block_param(block)])
        return bytes.fromhex((result or "0x")[2:].zfill(64))

    def call_for_address(
        self, address: str, data: bytes, block: BlockRef = "latest"
    ) -> Optional[str]:
        call = {"to": address, "data": "0x" + data.hex()}
        try:
            result = self._request("eth_call", [call, block_param(block)])
        except RpcError:
            return None
        if not result or len(result) < 66:
            return None
        (value,) = decode(["address"], bytes.fromhex(result[2:66]))
        return Web3.to_checksum_address(value)
