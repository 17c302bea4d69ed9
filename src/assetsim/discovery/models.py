"""
Discovery Data Models

前置条件、发现结果与引擎配置。
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..config import PERMIT2_ADDRESS, Settings
from ..simulation.models import AssetKey, AssetKind, CallFrame, Override


class DiscoveryStatus(str, Enum):
    """发现流程的终止状态"""
    SUCCEEDED = "succeeded"
    UNSATISFIABLE = "unsatisfiable"
    UNDIAGNOSED_REVERT = "undiagnosed_revert"
    DID_NOT_CONVERGE = "did_not_converge"
    NON_MONOTONIC = "non_monotonic"
    CANCELLED = "cancelled"
    DETECTED = "detected"


class Requirement(BaseModel):
    """
    已确认的资产前置条件

    身份为 key（不含数量）；同一身份后续发现只会提高 minimum_amount。
    """
    key: AssetKey = Field(..., description="资产键（身份）")
    minimum_amount: int = Field(..., ge=0, description="最小满足数量")
    current_amount: Optional[int] = Field(None, description="分叉状态上的当前值")
    checker: str = Field(..., description="诊断出该条件的检查器")
    iteration: int = Field(..., ge=1, description="首次发现的迭代轮次")

    @property
    def missing_amount(self) -> Optional[int]:
        """仍需补足的数量"""
        if self.current_amount is None:
            return None
        return max(0, self.minimum_amount - self.current_amount)

    def to_report(self) -> Dict[str, Any]:
        key = self.key
        report: Dict[str, Any] = {
            "account": key.account,
            "asset": key.asset,
            "kind": key.kind.value,
            "minimum_amount": str(self.minimum_amount),
            "current_amount": str(self.current_amount) if self.current_amount is not None else None,
            "missing_amount": str(self.missing_amount) if self.missing_amount is not None else None,
            "checker": self.checker,
        }
        if key.kind in (AssetKind.ALLOWANCE, AssetKind.PERMIT2_ALLOWANCE):
            report["spender"] = key.spender
        if key.via is not None:
            report["via"] = key.via
        return report


class FailureInfo(BaseModel):
    """最后一次失败的逻辑失败帧摘要"""
    frame_index: int
    caller: str
    callee: str
    code_address: Optional[str] = None
    selector: Optional[str] = None
    error: Optional[str] = None
    revert_reason: Optional[str] = None

    @classmethod
    def from_frame(cls, frame: CallFrame) -> "FailureInfo":
        return cls(
            frame_index=frame.index,
            caller=frame.caller,
            callee=frame.callee,
            code_address=frame.code_address,
            selector=frame.selector,
            error=frame.error,
            revert_reason=frame.revert_reason,
        )


class DiscoveryResult(BaseModel):
    """
    发现结果

    requirements 按发现顺序排列；每个最终覆盖恰好对应一个 Requirement。
    诊断类终止状态通过 status 表达，不会以异常抛出。
    """
    status: DiscoveryStatus
    requirements: List[Requirement] = Field(default_factory=list)
    unsatisfiable_key: Optional[AssetKey] = Field(
        None, description="搜索到上限仍不满足的资产键"
    )
    failure: Optional[FailureInfo] = Field(None, description="最后的失败帧")
    iterations: int = Field(default=0, description="发现循环迭代次数")
    simulations: int = Field(default=0, description="模拟调用总次数")

    @property
    def succeeded(self) -> bool:
        return self.status == DiscoveryStatus.SUCCEEDED

    def overrides(self) -> List[Override]:
        """最终覆盖集合（与 requirements 一一对应）"""
        return [Override(key=r.key, value=r.minimum_amount) for r in self.requirements]

    def to_report(self) -> Dict[str, Any]:
        """转换为对外输出格式"""
        report: Dict[str, Any] = {
            "status": self.status.value,
            "requirements": [r.to_report() for r in self.requirements],
            "iterations": self.iterations,
            "simulations": self.simulations,
        }
        if self.unsatisfiable_key is not None:
            report["unsatisfiable"] = self.unsatisfiable_key.describe()
        if self.failure is not None:
            report["failure"] = self.failure.model_dump()
        return report


class DiscoveryConfig(BaseModel):
    """发现引擎配置（不可变）"""
    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=10, ge=1, description="最大诊断 / 搜索轮数")
    search_seed: int = Field(default=1, ge=1, description="搜索起始值")
    search_ceiling: int = Field(default=10**30, ge=1, description="搜索上限")
    search_sentinel: Optional[int] = Field(
        None, description="隔离候选条件时其他条件保持的高值（默认等于上限）"
    )
    use_hints: bool = Field(default=True, description="是否先尝试 calldata 中的金额")
    auto_fix: bool = Field(
        default=True, description="是否应用发现的覆盖并重新模拟（False 时只诊断一轮）"
    )
    permit2_address: str = Field(default=PERMIT2_ADDRESS)

    @model_validator(mode="after")
    def check_bounds(self) -> "DiscoveryConfig":
        if self.search_seed > self.search_ceiling:
            raise ValueError("search_seed 不能大于 search_ceiling")
        return self

    @property
    def sentinel(self) -> int:
        return self.search_sentinel if self.search_sentinel is not None else self.search_ceiling

    @classmethod
    def from_settings(cls, settings: Settings) -> "DiscoveryConfig":
        return cls(
            max_iterations=settings.max_iterations,
            search_seed=settings.search_seed,
            search_ceiling=settings.search_ceiling,
            search_sentinel=settings.search_sentinel,
            auto_fix=settings.auto_fix,
            permit2_address=settings.permit2_address,
        )
