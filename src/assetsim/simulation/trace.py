"""
callTracer 结果解析

将 debug_traceCall / debug_traceTransaction 的 callTracer 输出转换为
扁平的 CallTrace（先序排列，子节点以索引引用）。
"""

import logging
from typing import Any, Dict, List, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from .models import (
    ZERO_ADDRESS,
    CallFrame,
    CallKind,
    CallTrace,
    SimulationOutcome,
    normalize_address,
    normalize_hex,
)

logger = logging.getLogger(__name__)


ERROR_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
PANIC_SELECTOR = bytes.fromhex("4e487b71")  # Panic(uint256)

PANIC_CODES = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow/underflow",
    0x12: "division by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "invalid internal function",
}


def _to_int(raw: Any) -> int:
    """处理十六进制字符串或数字"""
    if raw is None:
        return 0
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        if raw.startswith("0x"):
            return int(raw, 16) if len(raw) > 2 else 0
        return int(raw) if raw.isdigit() else 0
    return 0


def decode_revert(data: bytes) -> Optional[str]:
    """
    解码 revert 数据

    支持 Error(string)、Panic(uint256)，其他情况返回自定义错误选择器。
    """
    if not data:
        return None
    if data[:4] == ERROR_SELECTOR:
        try:
            (message,) = decode(["string"], data[4:])
            return message
        except (DecodingError, ValueError, OverflowError):
            return "Error(<undecodable>)"
    if data[:4] == PANIC_SELECTOR:
        try:
            (code,) = decode(["uint256"], data[4:])
        except (DecodingError, ValueError, OverflowError):
            return "Panic(<undecodable>)"
        return f"Panic(0x{code:02x}): {PANIC_CODES.get(code, 'unknown')}"
    if len(data) >= 4:
        return f"custom error 0x{data[:4].hex()}"
    return f"raw revert 0x{data.hex()}"


def _call_kind(raw: Optional[str]) -> CallKind:
    try:
        return CallKind((raw or "CALL").upper())
    except ValueError:
        logger.debug(f"未知调用类型: {raw}")
        return CallKind.CALL


def parse_call_trace(raw: Dict[str, Any]) -> CallTrace:
    """
    解析 callTracer 返回的调用树

    Args:
        raw: callTracer 返回的根节点

    Returns:
        CallTrace: 扁平化后的调用跟踪
    """
    nodes: List[Dict[str, Any]] = []

    # 显式栈实现先序遍历，避免深调用树递归过深
    stack = [(raw, None, 0)]
    while stack:
        node, parent, depth = stack.pop()
        index = len(nodes)
        nodes.append({"node": node, "parent": parent, "depth": depth, "children": []})
        if parent is not None:
            nodes[parent]["children"].append(index)
        for child in reversed(node.get("calls") or []):
            stack.append((child, index, depth + 1))

    frames = []
    for index, entry in enumerate(nodes):
        node = entry["node"]
        error = node.get("error")
        output = normalize_hex(node.get("output") or "0x")
        revert_reason = node.get("revertReason")
        if error and revert_reason is None:
            revert_reason = decode_revert(bytes.fromhex(output[2:]))

        frames.append(
            CallFrame(
                index=index,
                parent=entry["parent"],
                depth=entry["depth"],
                kind=_call_kind(node.get("type")),
                caller=normalize_address(node.get("from") or ZERO_ADDRESS),
                callee=normalize_address(node.get("to") or ZERO_ADDRESS),
                input=normalize_hex(node.get("input") or "0x"),
                output=output,
                value=_to_int(node.get("value")),
                gas_used=_to_int(node.get("gasUsed")),
                success=error is None,
                error=error,
                revert_reason=revert_reason,
                children=tuple(entry["children"]),
            )
        )

    return CallTrace(frames=tuple(frames))


def outcome_from_trace(raw: Dict[str, Any]) -> SimulationOutcome:
    """由 callTracer 根节点构建 SimulationOutcome"""
    trace = parse_call_trace(raw)
    root = trace.root
    return SimulationOutcome(
        success=root.success,
        output=root.output,
        trace=trace,
        failing_frame=trace.deepest_failure(),
        revert_reason=root.revert_reason,
    )
