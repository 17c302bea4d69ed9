"""
RPC Execution Adapter Tests

用预置响应的 provider 替代真实节点。
"""

import asyncio
from types import SimpleNamespace

import pytest

from assetsim.config import PERMIT2_ADDRESS
from assetsim.errors import BackendUnavailableError, MalformedTransactionError
from assetsim.simulation.models import AssetKey, SimulationRequest, TxSpec
from assetsim.simulation.rpc_adapter import RpcExecutionAdapter
from assetsim.simulation.storage import to_word

from conftest import IMPLEMENTATION, RECIPIENT, ROUTER, TOKEN, USER


class FakeProvider:
    """按方法名返回预置的 JSON-RPC 响应"""

    def __init__(self, responses=None, exc=None):
        self.responses = responses or {}
        self.exc = exc
        self.calls = []

    def make_request(self, method, params):
        self.calls.append((method, params))
        if self.exc is not None:
            raise self.exc
        response = self.responses.get(method, {"result": None})
        return response(params) if callable(response) else response


def make_adapter(provider: FakeProvider) -> RpcExecutionAdapter:
    return RpcExecutionAdapter("http://fork.test", w3=SimpleNamespace(provider=provider))


def request(value: int = 0, overrides=None) -> SimulationRequest:
    tx = TxSpec(tx_from=USER, tx_to=RECIPIENT, tx_value=value)
    return SimulationRequest(tx=tx).with_overrides(overrides or {})


def rpc_error(message: str, code: int = -32000):
    return {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}}


class TestSimulate:
    """测试 debug_traceCall 执行"""

    def test_success_with_overrides(self):
        """覆盖以 stateOverrides 传入，callTracer 结果解析为 SimulationOutcome"""
        provider = FakeProvider(
            {"debug_traceCall": {"result": {"type": "CALL", "from": USER, "to": RECIPIENT, "value": "0x5"}}}
        )
        outcome = asyncio.run(
            make_adapter(provider).simulate(request(5, {AssetKey.native(USER): 5}))
        )

        assert outcome.success
        method, (call, block, options) = provider.calls[0]
        assert method == "debug_traceCall"
        assert call["value"] == "0x5"
        assert block == "latest"
        assert options["tracer"] == "callTracer"
        assert options["stateOverrides"] == {USER: {"balance": "0x5"}}

    def test_no_overrides_omits_state_overrides(self):
        provider = FakeProvider(
            {"debug_traceCall": {"result": {"type": "CALL", "from": USER, "to": RECIPIENT}}}
        )
        asyncio.run(make_adapter(provider).simulate(request()))
        assert "stateOverrides" not in provider.calls[0][1][2]

    def test_insufficient_funds_builds_failed_root(self):
        """节点拒绝执行时构造失败的根帧"""
        provider = FakeProvider(
            {"debug_traceCall": rpc_error("insufficient funds for gas * price + value")}
        )
        outcome = asyncio.run(make_adapter(provider).simulate(request(10**18)))

        assert not outcome.success
        assert outcome.failing_frame == 0
        assert outcome.trace.root.value == 10**18
        assert "insufficient funds" in outcome.trace.root.error

    def test_bad_request_is_malformed(self):
        provider = FakeProvider({"debug_traceCall": rpc_error("header not found")})
        with pytest.raises(MalformedTransactionError):
            asyncio.run(make_adapter(provider).simulate(request()))

    def test_other_rpc_error_is_fatal(self):
        provider = FakeProvider({"debug_traceCall": rpc_error("the method debug_traceCall does not exist")})
        with pytest.raises(BackendUnavailableError) as exc_info:
            asyncio.run(make_adapter(provider).simulate(request()))
        assert exc_info.value.details["method"] == "debug_traceCall"

    def test_empty_result(self):
        provider = FakeProvider({"debug_traceCall": {"result": None}})
        with pytest.raises(BackendUnavailableError):
            asyncio.run(make_adapter(provider).simulate(request()))

    def test_connection_error(self):
        provider = FakeProvider(exc=ConnectionError("connection refused"))
        with pytest.raises(BackendUnavailableError):
            asyncio.run(make_adapter(provider).simulate(request()))

    def test_permit2_storage_read_error(self):
        """构建 Permit2 覆盖时的 RPC 错误以 AdapterError 抛出"""
        provider = FakeProvider({"eth_getStorageAt": rpc_error("missing trie node")})
        key = AssetKey.permit2_allowance(PERMIT2_ADDRESS, TOKEN, USER, ROUTER)

        with pytest.raises(BackendUnavailableError) as exc_info:
            asyncio.run(make_adapter(provider).simulate(request(overrides={key: 100})))
        assert exc_info.value.details["method"] == "eth_getStorageAt"
        assert all(method != "debug_traceCall" for method, _ in provider.calls)


class TestCurrentValue:
    """测试当前值读取"""

    def test_native_balance(self):
        provider = FakeProvider({"eth_getBalance": {"result": "0x10"}})
        value = asyncio.run(make_adapter(provider).current_value(AssetKey.native(USER), 123))
        assert value == 16
        assert provider.calls[0][1] == [USER, "0x7b"]

    def test_token_balance(self):
        provider = FakeProvider({"eth_call": {"result": to_word(500)}})
        value = asyncio.run(make_adapter(provider).current_value(AssetKey.balance(TOKEN, USER)))
        assert value == 500
        call = provider.calls[0][1][0]
        assert call["to"] == TOKEN
        assert call["data"].startswith("0x70a08231")

    def test_allowance(self):
        provider = FakeProvider({"eth_call": {"result": to_word(7)}})
        key = AssetKey.allowance(TOKEN, USER, ROUTER)
        assert asyncio.run(make_adapter(provider).current_value(key)) == 7
        assert provider.calls[0][1][0]["data"].startswith("0xdd62ed3e")

    def test_getter_revert_reads_zero(self):
        provider = FakeProvider({"eth_call": rpc_error("execution reverted", 3)})
        value = asyncio.run(make_adapter(provider).current_value(AssetKey.balance(TOKEN, USER)))
        assert value == 0

    def test_native_balance_rpc_error(self):
        """eth_getBalance 失败不会以原始 RpcError 逃逸"""
        provider = FakeProvider({"eth_getBalance": rpc_error("internal error")})
        with pytest.raises(BackendUnavailableError) as exc_info:
            asyncio.run(make_adapter(provider).current_value(AssetKey.native(USER)))
        assert exc_info.value.details["method"] == "eth_getBalance"

    def test_native_balance_unknown_block(self):
        provider = FakeProvider({"eth_getBalance": rpc_error("header not found")})
        with pytest.raises(MalformedTransactionError):
            asyncio.run(make_adapter(provider).current_value(AssetKey.native(USER), 10**9))


class TestCodeReader:
    """测试代理解析所需的读取接口"""

    def test_get_code(self):
        provider = FakeProvider({"eth_getCode": {"result": "0x6080"}})
        assert make_adapter(provider).get_code(TOKEN) == b"\x60\x80"

    def test_get_storage_at(self):
        provider = FakeProvider({"eth_getStorageAt": {"result": "0x01"}})
        value = make_adapter(provider).get_storage_at(TOKEN, 5)
        assert value == b"\x00" * 31 + b"\x01"
        assert provider.calls[0][1] == [TOKEN, "0x5", "latest"]

    def test_reads_at_block(self):
        """代理识别读取指定区块"""
        word = "0x" + IMPLEMENTATION[2:].lower().rjust(64, "0")
        provider = FakeProvider(
            {
                "eth_getCode": {"result": "0x6080"},
                "eth_getStorageAt": {"result": "0x01"},
                "eth_call": {"result": word},
            }
        )
        adapter = make_adapter(provider)

        adapter.get_code(TOKEN, 123)
        adapter.get_storage_at(TOKEN, 5, 123)
        adapter.call_for_address(TOKEN, b"\x5c\x60\xda\x1b", 123)

        assert [params[-1] for _, params in provider.calls] == ["0x7b", "0x7b", "0x7b"]

    def test_get_code_rpc_error(self):
        provider = FakeProvider({"eth_getCode": rpc_error("internal error")})
        with pytest.raises(BackendUnavailableError):
            make_adapter(provider).get_code(TOKEN)

    def test_call_for_address(self):
        word = "0x" + IMPLEMENTATION[2:].lower().rjust(64, "0")
        provider = FakeProvider({"eth_call": {"result": word}})
        assert make_adapter(provider).call_for_address(TOKEN, b"\x5c\x60\xda\x1b") == IMPLEMENTATION

    def test_call_for_address_revert(self):
        provider = FakeProvider({"eth_call": rpc_error("execution reverted", 3)})
        assert make_adapter(provider).call_for_address(TOKEN, b"\x5c\x60\xda\x1b") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
