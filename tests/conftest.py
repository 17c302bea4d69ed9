"""
Test fixtures: 内存中的 EVM 模拟

FakeEvm 按状态覆盖执行少量 Python 编写的合约，生成 callTracer 形状的调用树，
再交给生产代码的 outcome_from_trace 解析，从而端到端测试发现引擎。
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
from eth_abi import decode, encode
from web3 import Web3

from assetsim.config import PERMIT2_ADDRESS
from assetsim.simulation.adapter import ExecutionAdapter
from assetsim.simulation.models import AssetKey, SimulationOutcome, SimulationRequest
from assetsim.simulation.trace import outcome_from_trace


def addr(n: int) -> str:
    """测试用地址"""
    return Web3.to_checksum_address("0x" + format(n, "040x"))


USER = addr(0xA11CE)
RECIPIENT = addr(0xB0B)
ROUTER = addr(0x7007E7)
TOKEN = addr(0x70CE1)
TOKEN_B = addr(0x70CE2)
IMPLEMENTATION = addr(0x1111)


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def calldata(signature: str, types: Sequence[str], args: Sequence[Any]) -> str:
    return "0x" + (selector(signature) + encode(list(types), list(args))).hex()


def error_data(reason: str) -> str:
    return "0x" + (bytes.fromhex("08c379a0") + encode(["string"], [reason])).hex()


TRANSFER = selector("transfer(address,uint256)")
TRANSFER_FROM = selector("transferFrom(address,address,uint256)")
BALANCE_OF = selector("balanceOf(address)")
TRANSFER_WITH_AUTH = selector(
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)
PERMIT2_TRANSFER_FROM = selector("transferFrom(address,address,uint160,address)")
SWAP = selector("swap()")
PAY = selector("pay()")


class Revert(Exception):
    """合约内部 revert"""

    def __init__(self, output: str):
        super().__init__(output)
        self.output = output


class Msg:
    """执行上下文：msg.sender、存储地址、calldata、value"""

    def __init__(self, sender: str, storage: str, data: bytes, value: int = 0):
        self.sender = sender
        self.storage = storage
        self.data = data
        self.value = value

    @property
    def selector(self) -> bytes:
        return self.data[:4]

    def args(self, types: Sequence[str]) -> tuple:
        return decode(list(types), self.data[4:])


class Execution:
    """一次模拟内的执行状态（AssetKey -> 数值）"""

    def __init__(self, evm: "FakeEvm", values: Dict[AssetKey, int]):
        self.evm = evm
        self.values = values

    def get(self, key: AssetKey) -> int:
        return self.values.get(key, 0)

    def set(self, key: AssetKey, value: int) -> None:
        self.values[key] = value

    def call(
        self,
        kind: str,
        caller: str,
        to: str,
        data: str,
        value: int = 0,
        msg: Optional[Msg] = None,
    ) -> Dict[str, Any]:
        """执行调用并返回 callTracer 节点"""
        node: Dict[str, Any] = {
            "type": kind,
            "from": caller,
            "to": to,
            "input": data,
            "value": hex(value),
            "gasUsed": "0x5208",
            "calls": [],
        }
        snapshot = dict(self.values)

        if value > 0:
            sender_key = AssetKey.native(caller)
            if self.get(sender_key) < value:
                node["error"] = "insufficient balance for transfer"
                node["output"] = "0x"
                del node["calls"]
                return node
            self.set(sender_key, self.get(sender_key) - value)
            self.set(AssetKey.native(to), self.get(AssetKey.native(to)) + value)

        if msg is None:
            msg = Msg(caller, to, bytes.fromhex(data[2:]), value)

        contract = self.evm.contracts.get(Web3.to_checksum_address(to))
        try:
            output = contract.execute(self, msg, node) if contract else "0x"
            node["output"] = output
        except Revert as e:
            self.values = snapshot
            node["error"] = "execution reverted"
            node["output"] = e.output

        if not node["calls"]:
            del node["calls"]
        return node

    def subcall(self, node: Dict[str, Any], caller: str, to: str, data: str, value: int = 0) -> Dict[str, Any]:
        child = self.call("CALL", caller, to, data, value)
        node["calls"].append(child)
        return child

    def delegate(self, node: Dict[str, Any], msg: Msg, implementation: str) -> Dict[str, Any]:
        """DELEGATECALL：存储与 msg.sender 保持不变"""
        inner = Msg(msg.sender, msg.storage, msg.data, msg.value)
        child = self.call(
            "DELEGATECALL", msg.storage, implementation, "0x" + msg.data.hex(), msg=inner
        )
        node["calls"].append(child)
        return child


def bubble(child: Dict[str, Any]) -> None:
    """子调用失败时原样冒泡 revert 数据"""
    if "error" in child:
        raise Revert(child.get("output") or "0x")


# =============================================================================
# Contracts
# =============================================================================


class Erc20:
    """最小 ERC-20（含 EIP-3009 transferWithAuthorization，不校验签名）"""

    def move(self, ex: Execution, token: str, owner: str, to: str, amount: int) -> None:
        owner_key = AssetKey.balance(token, owner)
        if ex.get(owner_key) < amount:
            raise Revert(error_data("ERC20: transfer amount exceeds balance"))
        ex.set(owner_key, ex.get(owner_key) - amount)
        to_key = AssetKey.balance(token, to)
        ex.set(to_key, ex.get(to_key) + amount)

    def execute(self, ex: Execution, msg: Msg, node: Dict[str, Any]) -> str:
        token = msg.storage
        if msg.selector == TRANSFER:
            to, amount = msg.args(["address", "uint256"])
            self.move(ex, token, msg.sender, to, amount)
            return "0x" + encode(["bool"], [True]).hex()

        if msg.selector == TRANSFER_FROM:
            owner, to, amount = msg.args(["address", "address", "uint256"])
            allowance_key = AssetKey.allowance(token, owner, msg.sender)
            if ex.get(allowance_key) < amount:
                raise Revert(error_data("ERC20: insufficient allowance"))
            ex.set(allowance_key, ex.get(allowance_key) - amount)
            self.move(ex, token, owner, to, amount)
            return "0x" + encode(["bool"], [True]).hex()

        if msg.selector == TRANSFER_WITH_AUTH:
            args = msg.args(
                ["address", "address", "uint256", "uint256", "uint256", "bytes32", "uint8", "bytes32", "bytes32"]
            )
            self.move(ex, token, args[0], args[1], args[2])
            return "0x"

        if msg.selector == BALANCE_OF:
            (owner,) = msg.args(["address"])
            return "0x" + encode(["uint256"], [ex.get(AssetKey.balance(token, owner))]).hex()

        raise Revert("0x")


class NeverEnoughToken(Erc20):
    """无论余额多少都因余额不足失败"""

    def move(self, ex, token, owner, to, amount):
        raise Revert(error_data("ERC20: transfer amount exceeds balance"))


class CappedToken(Erc20):
    """余额超过上限时同样失败（充分性不单调）"""

    def __init__(self, cap: int):
        self.cap = cap

    def move(self, ex, token, owner, to, amount):
        if ex.get(AssetKey.balance(token, owner)) > self.cap:
            raise Revert(error_data("ERC20: transfer amount exceeds balance"))
        super().move(ex, token, owner, to, amount)


class MinimalProxy:
    """把调用原样 DELEGATECALL 到实现合约"""

    def __init__(self, implementation: str):
        self.implementation = implementation

    def execute(self, ex: Execution, msg: Msg, node: Dict[str, Any]) -> str:
        child = ex.delegate(node, msg, self.implementation)
        bubble(child)
        return child.get("output", "0x")


class Router:
    """swap()：依次从 msg.sender 拉取若干代币"""

    def __init__(self, address: str, pulls: List[Tuple[str, int]]):
        self.address = address
        self.pulls = pulls

    def execute(self, ex: Execution, msg: Msg, node: Dict[str, Any]) -> str:
        if msg.selector != SWAP:
            raise Revert(error_data("Router: unknown function"))
        for token, amount in self.pulls:
            data = calldata(
                "transferFrom(address,address,uint256)",
                ["address", "address", "uint256"],
                [msg.sender, self.address, amount],
            )
            bubble(ex.subcall(node, self.address, token, data))
        return "0x"


class Permit2:
    """Permit2 AllowanceTransfer.transferFrom（只检查额度）"""

    def execute(self, ex: Execution, msg: Msg, node: Dict[str, Any]) -> str:
        if msg.selector != PERMIT2_TRANSFER_FROM:
            raise Revert("0x")
        owner, to, amount, token = msg.args(["address", "address", "uint160", "address"])
        key = AssetKey.permit2_allowance(msg.storage, token, owner, msg.sender)
        if ex.get(key) < amount:
            # InsufficientAllowance(uint256)
            raise Revert("0x" + (selector("InsufficientAllowance(uint256)") + encode(["uint256"], [ex.get(key)])).hex())
        ex.set(key, ex.get(key) - amount)
        data = calldata(
            "transferFrom(address,address,uint256)",
            ["address", "address", "uint256"],
            [owner, to, amount],
        )
        bubble(ex.subcall(node, msg.storage, token, data))
        return "0x"


class Permit2Router:
    """swap()：经由 Permit2 拉取代币"""

    def __init__(self, address: str, token: str, amount: int):
        self.address = address
        self.token = token
        self.amount = amount

    def execute(self, ex: Execution, msg: Msg, node: Dict[str, Any]) -> str:
        data = calldata(
            "transferFrom(address,address,uint160,address)",
            ["address", "address", "uint160", "address"],
            [msg.sender, self.address, self.amount, self.token],
        )
        bubble(ex.subcall(node, self.address, PERMIT2_ADDRESS, data))
        return "0x"


class Payer:
    """pay()：从自身余额向 recipient 转出原生币"""

    def __init__(self, address: str, recipient: str, amount: int):
        self.address = address
        self.recipient = recipient
        self.amount = amount

    def execute(self, ex: Execution, msg: Msg, node: Dict[str, Any]) -> str:
        child = ex.subcall(node, self.address, self.recipient, "0x", value=self.amount)
        if "error" in child:
            raise Revert(error_data("Payer: ETH transfer failed"))
        return "0x"


class Reverter:
    """总是以与资产无关的原因失败"""

    def execute(self, ex: Execution, msg: Msg, node: Dict[str, Any]) -> str:
        raise Revert(error_data("Pausable: paused"))


# =============================================================================
# Fake adapter
# =============================================================================


class FakeEvm(ExecutionAdapter):
    """
    内存执行适配器

    状态是 AssetKey -> 数值 的映射；覆盖在执行前合并，
    每次模拟都在副本上运行，不会留下持久状态。
    """

    def __init__(self):
        self.contracts: Dict[str, Any] = {}
        self.state: Dict[AssetKey, int] = {}
        self.requests: List[SimulationRequest] = []
        self.on_simulate: Optional[Callable[[SimulationRequest], None]] = None

    def deploy(self, address: str, contract: Any) -> Any:
        self.contracts[Web3.to_checksum_address(address)] = contract
        return contract

    async def simulate(self, request: SimulationRequest) -> SimulationOutcome:
        self.requests.append(request)
        if self.on_simulate is not None:
            self.on_simulate(request)

        values = dict(self.state)
        values.update(request.override_map())
        tx = request.tx

        if values.get(AssetKey.native(tx.tx_from), 0) < tx.tx_value:
            # 节点拒绝执行时 RpcExecutionAdapter 构造的根帧
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

        node = Execution(self, values).call("CALL", tx.tx_from, tx.tx_to, tx.tx_data, tx.tx_value)
        return outcome_from_trace(node)

    async def current_value(self, key: AssetKey, block="latest") -> int:
        return self.state.get(key, 0)

    @property
    def simulations(self) -> int:
        return len(self.requests)


@pytest.fixture
def evm() -> FakeEvm:
    return FakeEvm()
