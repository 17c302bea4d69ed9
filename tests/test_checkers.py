"""
Asset Checker Unit Tests
"""

import pytest

from assetsim.checkers import (
    AssetChecker,
    CheckerRegistry,
    NativeValueChecker,
    Permit2AllowanceChecker,
    TransferChecker,
    TransferFromChecker,
    TransferWithAuthorizationChecker,
    default_registry,
    selector_of,
)
from assetsim.config import PERMIT2_ADDRESS
from assetsim.simulation.models import AssetKey, CallFrame, CallKind

from conftest import RECIPIENT, ROUTER, TOKEN, USER, calldata


def frame(input_data="0x", caller=ROUTER, callee=TOKEN, code_address=TOKEN, **kwargs) -> CallFrame:
    params = dict(
        index=1,
        parent=0,
        depth=1,
        kind=CallKind.CALL,
        caller=caller,
        callee=callee,
        code_address=code_address,
        input=input_data,
        success=False,
        error="execution reverted",
    )
    params.update(kwargs)
    return CallFrame(**params)


TRANSFER_FROM = calldata(
    "transferFrom(address,address,uint256)",
    ["address", "address", "uint256"],
    [USER, RECIPIENT, 100],
)
TRANSFER = calldata("transfer(address,uint256)", ["address", "uint256"], [RECIPIENT, 42])


class TestSelectors:
    def test_known_selectors(self):
        assert selector_of("transferFrom(address,address,uint256)") == "0x23b872dd"
        assert selector_of("transfer(address,uint256)") == "0xa9059cbb"
        assert selector_of(
            "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
        ) == "0xe3ee160e"
        assert selector_of(
            "receiveWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
        ) == "0xef55bec6"
        assert selector_of("transferFrom(address,address,uint160,address)") == "0x36c78516"


class TestErc20Checkers:
    """测试 ERC-20 检查器"""

    def test_transfer_from_pair(self):
        """transferFrom 返回余额 + 授权两项候选，spender 为帧调用者"""
        checker = TransferFromChecker()
        f = frame(TRANSFER_FROM)
        assert checker.matches(f)

        candidates = checker.extract(f)
        assert [c.key for c in candidates] == [
            AssetKey.balance(TOKEN, USER),
            AssetKey.allowance(TOKEN, USER, ROUTER),
        ]
        assert all(c.hint == 100 for c in candidates)
        assert all(c.checker == "erc20_transfer_from" for c in candidates)

    def test_transfer(self):
        checker = TransferChecker()
        f = frame(TRANSFER, caller=USER)
        assert checker.matches(f)
        (candidate,) = checker.extract(f)
        assert candidate.key == AssetKey.balance(TOKEN, USER)
        assert candidate.hint == 42

    def test_transfer_with_authorization(self):
        data = calldata(
            "receiveWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)",
            ["address", "address", "uint256", "uint256", "uint256", "bytes32", "uint8", "bytes32", "bytes32"],
            [USER, RECIPIENT, 500, 0, 2**40, b"\x01" * 32, 27, b"\x02" * 32, b"\x03" * 32],
        )
        checker = TransferWithAuthorizationChecker()
        f = frame(data, caller=RECIPIENT)
        assert checker.matches(f)
        (candidate,) = checker.extract(f)
        assert candidate.key == AssetKey.balance(TOKEN, USER)
        assert candidate.hint == 500

    def test_transfer_with_authorization_bytes_signature(self):
        data = calldata(
            "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,bytes)",
            ["address", "address", "uint256", "uint256", "uint256", "bytes32", "bytes"],
            [USER, RECIPIENT, 7, 0, 2**40, b"\x01" * 32, b"\x05" * 65],
        )
        (candidate,) = TransferWithAuthorizationChecker().extract(frame(data))
        assert candidate.key == AssetKey.balance(TOKEN, USER)
        assert candidate.hint == 7

    def test_unresolved_frame_never_matches(self):
        assert not TransferFromChecker().matches(frame(TRANSFER_FROM, code_address=None))

    def test_delegatecall_frame_not_matched(self):
        assert not TransferFromChecker().matches(frame(TRANSFER_FROM, kind=CallKind.DELEGATECALL))

    def test_truncated_calldata_not_matched(self):
        assert not TransferFromChecker().matches(frame(TRANSFER_FROM[:50]))

    def test_wrong_selector(self):
        assert not TransferFromChecker().matches(frame(TRANSFER))

    def test_proxy_transparency(self):
        """经代理执行与直接调用提取相同的前置条件"""
        checker = TransferFromChecker()
        direct = frame(TRANSFER_FROM, code_address=TOKEN)
        proxied = frame(TRANSFER_FROM, code_address=RECIPIENT)
        assert checker.matches(proxied)
        assert checker.extract(direct) == checker.extract(proxied)

    def test_build_override(self):
        checker = TransferFromChecker()
        (balance, _) = checker.extract(frame(TRANSFER_FROM))
        override = checker.build_override(balance, 250)
        assert override.key == balance.key
        assert override.value == 250


class TestPermit2Checker:
    """测试 Permit2 检查器"""

    def _data(self):
        return calldata(
            "transferFrom(address,address,uint160,address)",
            ["address", "address", "uint160", "address"],
            [USER, RECIPIENT, 100, TOKEN],
        )

    def test_matches_inside_permit2(self):
        checker = Permit2AllowanceChecker()
        f = frame(self._data(), callee=PERMIT2_ADDRESS, code_address=PERMIT2_ADDRESS)
        assert checker.matches(f)
        (candidate,) = checker.extract(f)
        assert candidate.key == AssetKey.permit2_allowance(PERMIT2_ADDRESS, TOKEN, USER, ROUTER)
        assert candidate.hint == 100

    def test_other_contract_not_matched(self):
        checker = Permit2AllowanceChecker()
        assert not checker.matches(frame(self._data()))


class TestNativeChecker:
    """测试原生币检查器"""

    def test_insufficient_balance_for_transfer(self):
        f = frame(
            "0x",
            caller=ROUTER,
            callee=RECIPIENT,
            code_address=RECIPIENT,
            value=5,
            error="insufficient balance for transfer",
        )
        checker = NativeValueChecker()
        assert checker.matches(f)
        (candidate,) = checker.extract(f)
        assert candidate.key == AssetKey.native(ROUTER)
        assert candidate.hint == 5

    def test_top_level_insufficient_funds(self):
        f = frame(
            "0x",
            caller=USER,
            callee=RECIPIENT,
            code_address=RECIPIENT,
            value=10**18,
            error="insufficient funds for gas * price + value",
        )
        assert NativeValueChecker().matches(f)

    def test_ordinary_revert_with_value(self):
        assert not NativeValueChecker().matches(frame("0x", value=5))

    def test_no_value(self):
        assert not NativeValueChecker().matches(frame("0x", error="insufficient balance for transfer"))


class TestCheckerRegistry:
    """测试检查器注册表"""

    def test_default_priority_order(self):
        assert default_registry().list_checkers() == [
            "erc20_transfer_from",
            "erc20_transfer",
            "eip3009_authorization",
            "permit2_allowance",
            "native_value",
        ]

    def test_match_first_wins(self):
        registry = default_registry()
        assert registry.match(frame(TRANSFER_FROM)).name == "erc20_transfer_from"
        assert registry.match(frame(TRANSFER)).name == "erc20_transfer"
        assert registry.match(frame("0x12345678")) is None

    def test_register_new_checker(self):
        """新增检查器只需注册"""

        class ApproveChecker(AssetChecker):
            name = "approve"
            signatures = {"approve(address,uint256)": ("address", "uint256")}

            def extract(self, f):
                return []

        registry = CheckerRegistry()
        registry.register(ApproveChecker())
        data = calldata("approve(address,uint256)", ["address", "uint256"], [ROUTER, 1])
        assert registry.match(frame(data)).name == "approve"
        assert registry.get("approve") is not None
        assert registry.get("missing") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
