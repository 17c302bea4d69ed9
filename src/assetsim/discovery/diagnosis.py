"""
Diagnoser - 失败诊断

解析代理 -> 定位逻辑失败帧 -> 按优先级匹配检查器 -> 提取候选前置条件。
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..checkers import AssetChecker, CheckerRegistry, PotentialRequirement
from ..simulation.models import AssetKey, BlockRef, CallFrame, CallTrace, SimulationOutcome
from ..simulation.proxy import ProxyResolver, logical_failure

logger = logging.getLogger(__name__)


class FailureSite(BaseModel):
    """失败位置：存储地址、实际代码地址、调用者与函数选择器"""
    model_config = ConfigDict(frozen=True)

    storage_address: str
    code_address: Optional[str] = None
    caller: str
    selector: Optional[str] = None

    @classmethod
    def of(cls, frame: CallFrame) -> "FailureSite":
        return cls(
            storage_address=frame.callee,
            code_address=frame.code_address,
            caller=frame.caller,
            selector=frame.selector,
        )

    def describe(self) -> str:
        return f"{self.selector or '0x'}@{self.storage_address} (from {self.caller})"


class Diagnosis(BaseModel):
    """一次失败模拟的诊断结果"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    trace: CallTrace = Field(..., description="已解析代理的调用跟踪")
    frame: CallFrame = Field(..., description="逻辑失败帧")
    site: FailureSite
    checker: Optional[AssetChecker] = Field(None, description="匹配的检查器")
    candidates: List[PotentialRequirement] = Field(default_factory=list)

    def fails_at(self, site: FailureSite, key: AssetKey) -> bool:
        """是否仍在同一位置、因同一资产键失败"""
        if self.site != site:
            return False
        return any(candidate.key == key for candidate in self.candidates)


class Diagnoser:
    """
    失败诊断器

    Args:
        registry: 检查器注册表
        resolver: 代理解析器
    """

    def __init__(self, registry: CheckerRegistry, resolver: Optional[ProxyResolver] = None):
        self.registry = registry
        self.resolver = resolver or ProxyResolver()

    def diagnose(
        self, outcome: SimulationOutcome, block: BlockRef = "latest"
    ) -> Optional[Diagnosis]:
        """
        诊断失败的模拟结果

        Args:
            outcome: 模拟结果
            block: 模拟所在区块（代理字节码检查读取同一区块）

        Returns:
            Diagnosis；顶层调用成功时返回 None
        """
        if outcome.success:
            return None

        trace = self.resolver.resolve(outcome.trace, block)
        frame = trace.frame(logical_failure(trace))
        checker = self.registry.match(frame)

        candidates: List[PotentialRequirement] = []
        if checker is not None:
            candidates = checker.extract(frame)
            logger.debug(
                f"检查器 {checker.name} 匹配帧 {frame.index}: "
                f"{[c.key.describe() for c in candidates]}"
            )
        else:
            logger.debug(
                f"帧 {frame.index} 未匹配任何检查器 "
                f"(selector={frame.selector}, reason={frame.revert_reason or frame.error})"
            )

        return Diagnosis(
            trace=trace,
            frame=frame,
            site=FailureSite.of(frame),
            checker=checker,
            candidates=candidates,
        )
