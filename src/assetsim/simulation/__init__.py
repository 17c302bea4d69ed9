"""
Simulation - EVM 执行适配层

在分叉状态 + 临时状态覆盖上执行交易，返回完整调用跟踪。
"""

from .models import (
    AssetKey,
    AssetKind,
    CallFrame,
    CallKind,
    CallTrace,
    ChainId,
    Override,
    SimulationOutcome,
    SimulationRequest,
    TxSpec,
)
from .adapter import ExecutionAdapter
from .anvil_fork import AnvilFork, find_free_port
from .proxy import CodeReader, ProxyResolver, logical_failure
from .rpc_adapter import RpcExecutionAdapter
from .trace import decode_revert, outcome_from_trace, parse_call_trace

__all__ = [
    # Models
    "AssetKey",
    "AssetKind",
    "CallFrame",
    "CallKind",
    "CallTrace",
    "ChainId",
    "Override",
    "SimulationOutcome",
    "SimulationRequest",
    "TxSpec",
    # Adapters
    "ExecutionAdapter",
    "RpcExecutionAdapter",
    "AnvilFork",
    "find_free_port",
    # Trace / proxy
    "CodeReader",
    "ProxyResolver",
    "logical_failure",
    "decode_revert",
    "outcome_from_trace",
    "parse_call_trace",
]
