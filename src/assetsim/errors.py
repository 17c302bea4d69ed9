"""
Typed exceptions for the asset simulator.

只有执行层（Execution Adapter）的致命错误会以异常形式抛出；
诊断类的终止状态（unsatisfiable / undiagnosed / did-not-converge）
始终作为 DiscoveryResult 的状态返回，不会抛出。
"""

from typing import Any, Dict, Optional


class AssetSimError(Exception):
    """Base exception for the asset simulator."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class AdapterError(AssetSimError):
    """执行层致命错误：终止本次发现流程，不重试。"""
    pass


class MalformedTransactionError(AdapterError):
    """交易参数无法执行（calldata 非法、区块不存在等）。"""
    pass


class BackendUnavailableError(AdapterError):
    """Fork 后端 / RPC 不可达或崩溃。"""
    pass


class StorageLayoutError(AdapterError):
    """状态提供者无法表达所需的覆盖（例如找不到余额存储槽）。"""

    def __init__(self, message: str, token: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.token = token


# 节点报告请求本身无效时的错误关键字
BAD_REQUEST_MARKERS = (
    "invalid argument",
    "invalid params",
    "header not found",
    "unknown block",
    "block not found",
    "cannot unmarshal",
    "failed to decode",
)


class RpcError(Exception):
    """
    JSON-RPC 响应中的 error 字段

    只在执行适配器内部使用：可容忍的读取失败（getter revert、槽位验证）
    直接处理，其余在离开适配器前通过 as_adapter_error 转换为 AdapterError。
    """

    def __init__(self, method: str, error: Dict[str, Any]):
        self.method = method
        self.code = error.get("code")
        self.message = str(error.get("message", error))
        super().__init__(f"{method}: {self.message}")

    def as_adapter_error(self, details: Optional[Dict[str, Any]] = None) -> AdapterError:
        details = {"method": self.method, "code": self.code, **(details or {})}
        if any(marker in self.message.lower() for marker in BAD_REQUEST_MARKERS):
            return MalformedTransactionError(f"请求无法执行: {self.message}", details)
        return BackendUnavailableError(f"执行后端错误: {self.message}", details)
