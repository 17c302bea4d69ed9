"""
Simulation Engine Data Models

定义模拟执行过程中使用的数据结构：交易、状态覆盖、调用跟踪与模拟结果。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from web3 import Web3


ZERO_ADDRESS = "0x" + "0" * 40

BlockRef = Union[int, str]


def normalize_address(value: str) -> str:
    """验证以太坊地址格式并转为 checksum 格式"""
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        raise ValueError(f"无效的以太坊地址: {value}")
    try:
        int(value, 16)
    except ValueError:
        raise ValueError(f"无效的以太坊地址: {value}")
    return Web3.to_checksum_address(value)


def normalize_hex(value: str) -> str:
    """验证十六进制数据并统一为小写 0x 前缀格式"""
    if value in ("", None):
        return "0x"
    if not value.startswith("0x"):
        raise ValueError(f"无效的十六进制数据: {value}")
    body = value[2:]
    if len(body) % 2 != 0:
        raise ValueError(f"十六进制数据长度必须为偶数: {value}")
    try:
        bytes.fromhex(body)
    except ValueError:
        raise ValueError(f"无效的十六进制数据: {value}")
    return "0x" + body.lower()


class ChainId(int, Enum):
    """常用链 ID"""
    ETHEREUM = 1
    BASE = 8453
    ARBITRUM = 42161
    POLYGON = 137


class CallKind(str, Enum):
    """调用类型"""
    CALL = "CALL"
    STATICCALL = "STATICCALL"
    DELEGATECALL = "DELEGATECALL"
    CALLCODE = "CALLCODE"
    CREATE = "CREATE"
    CREATE2 = "CREATE2"
    SELFDESTRUCT = "SELFDESTRUCT"


class AssetKind(str, Enum):
    """资产前置条件的种类（同时也是状态覆盖的语义）"""
    NATIVE_BALANCE = "native_balance"
    BALANCE = "balance"
    ALLOWANCE = "allowance"
    PERMIT2_ALLOWANCE = "permit2_allowance"


class TxSpec(BaseModel):
    """目标交易"""
    tx_from: str = Field(..., description="交易发起者地址")
    tx_to: str = Field(..., description="交易目标地址")
    tx_value: int = Field(default=0, ge=0, description="交易 value（wei）")
    tx_data: str = Field(default="0x", description="交易 calldata")
    gas_limit: int = Field(default=30_000_000, gt=0, description="gas 限制")

    @field_validator("tx_from", "tx_to")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("tx_data")
    @classmethod
    def validate_data(cls, v: str) -> str:
        return normalize_hex(v)


class AssetKey(BaseModel):
    """
    资产键：Requirement 的身份，同时也是 Override 的键

    - native_balance: account 的原生币余额
    - balance: account 在 asset(ERC-20) 上的余额
    - allowance: account 授权给 spender 的 asset 额度
    - permit2_allowance: account 经 via(Permit2) 授权给 spender 的 asset 额度
    """
    model_config = ConfigDict(frozen=True)

    kind: AssetKind
    account: str
    asset: str = ZERO_ADDRESS
    spender: Optional[str] = None
    via: Optional[str] = None

    @field_validator("account", "asset")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("spender", "via")
    @classmethod
    def validate_optional_address(cls, v: Optional[str]) -> Optional[str]:
        return normalize_address(v) if v is not None else None

    @classmethod
    def native(cls, account: str) -> "AssetKey":
        return cls(kind=AssetKind.NATIVE_BALANCE, account=account)

    @classmethod
    def balance(cls, token: str, account: str) -> "AssetKey":
        return cls(kind=AssetKind.BALANCE, account=account, asset=token)

    @classmethod
    def allowance(cls, token: str, owner: str, spender: str) -> "AssetKey":
        return cls(kind=AssetKind.ALLOWANCE, account=owner, asset=token, spender=spender)

    @classmethod
    def permit2_allowance(
        cls, permit2: str, token: str, owner: str, spender: str
    ) -> "AssetKey":
        return cls(
            kind=AssetKind.PERMIT2_ALLOWANCE,
            account=owner,
            asset=token,
            spender=spender,
            via=permit2,
        )

    def describe(self) -> str:
        """人类可读的描述"""
        if self.kind == AssetKind.NATIVE_BALANCE:
            return f"native_balance({self.account})"
        if self.kind == AssetKind.BALANCE:
            return f"balance({self.asset}, {self.account})"
        return f"{self.kind.value}({self.asset}, {self.account} -> {self.spender})"


class Override(BaseModel):
    """单个状态覆盖：执行前已存在的状态，而非执行中的修改"""
    model_config = ConfigDict(frozen=True)

    key: AssetKey
    value: int = Field(..., ge=0)


class SimulationRequest(BaseModel):
    """
    模拟请求

    每次模拟尝试不可变；发现循环通过扩展 overrides 派生新的请求。
    """
    model_config = ConfigDict(frozen=True)

    tx: TxSpec
    block: BlockRef = "latest"
    overrides: Tuple[Override, ...] = ()

    def override_map(self) -> Dict[AssetKey, int]:
        """按顺序合并覆盖，同一键后者优先"""
        merged: Dict[AssetKey, int] = {}
        for override in self.overrides:
            merged[override.key] = override.value
        return merged

    def with_overrides(self, values: Dict[AssetKey, int]) -> "SimulationRequest":
        """派生一个附加（或替换）覆盖的新请求"""
        merged = self.override_map()
        merged.update(values)
        return self.model_copy(
            update={
                "overrides": tuple(
                    Override(key=key, value=value) for key, value in merged.items()
                )
            }
        )


class CallFrame(BaseModel):
    """调用树中的单个节点（扁平存储，子节点以索引引用）"""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., description="在 CallTrace.frames 中的位置")
    parent: Optional[int] = Field(None, description="父节点索引（根节点为 None）")
    depth: int = Field(default=0, description="调用深度")
    kind: CallKind = Field(default=CallKind.CALL, description="调用类型")
    caller: str = Field(..., description="调用者地址")
    callee: str = Field(..., description="被调用地址（存储上下文）")
    code_address: Optional[str] = Field(
        None, description="代理解析后实际执行代码的地址"
    )
    input: str = Field(default="0x", description="调用数据")
    output: str = Field(default="0x", description="返回数据 / revert 数据")
    value: int = Field(default=0, description="转移的原生币数量（wei）")
    gas_used: int = Field(default=0, description="消耗的 gas")
    success: bool = Field(default=True, description="该帧是否成功")
    error: Optional[str] = Field(None, description="错误信息（如有）")
    revert_reason: Optional[str] = Field(None, description="解码后的 revert 原因")
    children: Tuple[int, ...] = Field(default=(), description="子节点索引")

    @property
    def selector(self) -> Optional[str]:
        """函数选择器（4 字节）"""
        if len(self.input) < 10:
            return None
        return self.input[:10]

    @property
    def input_bytes(self) -> bytes:
        return bytes.fromhex(self.input[2:])

    @property
    def output_bytes(self) -> bytes:
        return bytes.fromhex(self.output[2:])


class CallTrace(BaseModel):
    """
    调用跟踪（arena 结构）

    frames 按先序排列，frames[0] 为顶层调用。
    """
    model_config = ConfigDict(frozen=True)

    frames: Tuple[CallFrame, ...]

    @field_validator("frames")
    @classmethod
    def validate_frames(cls, v: Tuple[CallFrame, ...]) -> Tuple[CallFrame, ...]:
        if not v:
            raise ValueError("调用跟踪至少需要一个根节点")
        for position, frame in enumerate(v):
            if frame.index != position:
                raise ValueError(f"帧索引不连续: {frame.index} != {position}")
        return v

    @property
    def root(self) -> CallFrame:
        return self.frames[0]

    def frame(self, index: int) -> CallFrame:
        return self.frames[index]

    def children(self, index: int) -> List[CallFrame]:
        return [self.frames[i] for i in self.frames[index].children]

    def ancestors(self, index: int) -> List[CallFrame]:
        """从父节点到根节点的祖先链"""
        chain = []
        parent = self.frames[index].parent
        while parent is not None:
            chain.append(self.frames[parent])
            parent = self.frames[parent].parent
        return chain

    def deepest_failure(self) -> Optional[int]:
        """
        沿失败路径找到最深的失败帧

        从根节点开始，每一层进入最后一个失败的子调用；根节点成功时返回 None。
        """
        if self.root.success:
            return None
        current = self.root
        while True:
            failed = [c for c in self.children(current.index) if not c.success]
            if not failed:
                return current.index
            current = failed[-1]

    def with_code_addresses(
        self, mapping: Dict[int, Optional[str]]
    ) -> "CallTrace":
        """返回填充了 code_address 的新跟踪（原跟踪不变）"""
        frames = tuple(
            frame.model_copy(update={"code_address": mapping[frame.index]})
            if frame.index in mapping
            else frame
            for frame in self.frames
        )
        return CallTrace(frames=frames)

    def iter_path(self, index: int) -> Iterable[CallFrame]:
        """从根节点到指定节点的路径"""
        return reversed([self.frames[index]] + self.ancestors(index))


class AnvilProcessInfo(BaseModel):
    """Anvil 进程信息"""
    pid: int = Field(..., description="进程 ID")
    port: int = Field(..., description="监听端口")
    rpc_url: str = Field(..., description="RPC URL")
    fork_url: str = Field(..., description="分叉源 URL")
    fork_block: int = Field(..., description="分叉区块号")
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SimulationOutcome(BaseModel):
    """
    单次模拟结果

    Success(output) 或 Revert(trace, failing_frame)；成功时同样携带完整跟踪。
    """
    success: bool = Field(..., description="顶层调用是否成功")
    output: str = Field(default="0x", description="顶层返回数据")
    trace: CallTrace
    failing_frame: Optional[int] = Field(
        None, description="失败路径上最深的失败帧索引"
    )
    revert_reason: Optional[str] = Field(None, description="顶层 revert 原因")
