"""
AssetDiscovery - 资产前置条件发现循环

状态机：
    SIMULATING -> DIAGNOSING -> SEARCHING -> ACCUMULATING -> SIMULATING
                                                          -> DONE / STUCK
                                                          -> DETECTED（auto_fix=False）

每轮模拟失败时诊断逻辑失败帧，搜索最小满足数量并累积为状态覆盖，
直到交易成功或进入诊断类终止状态。累积状态（RunState）显式地在状态机中传递，
不同交易的发现流程互不共享可变状态，可以并发执行。
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..checkers import CheckerRegistry, PotentialRequirement, default_registry
from ..simulation.adapter import ExecutionAdapter
from ..simulation.models import (
    AssetKey,
    BlockRef,
    SimulationOutcome,
    SimulationRequest,
    TxSpec,
)
from ..simulation.proxy import CodeReader, ProxyResolver
from .diagnosis import Diagnoser, Diagnosis
from .models import (
    DiscoveryConfig,
    DiscoveryResult,
    DiscoveryStatus,
    FailureInfo,
    Requirement,
)
from .search import RequirementSearch, SearchVerdict, apply_values

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    SIMULATING = "simulating"
    DIAGNOSING = "diagnosing"
    SEARCHING = "searching"
    ACCUMULATING = "accumulating"


class RunState(BaseModel):
    """单次发现流程的运行状态"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    request: SimulationRequest
    phase: Phase = Phase.SIMULATING
    requirements: Dict[AssetKey, Requirement] = Field(default_factory=dict)
    iterations: int = 0
    simulations: int = 0
    outcome: Optional[SimulationOutcome] = None
    diagnosis: Optional[Diagnosis] = None
    found: List[Tuple[PotentialRequirement, int]] = Field(default_factory=list)
    failure: Optional[FailureInfo] = None


class AssetDiscovery:
    """
    资产前置条件发现引擎

    使用示例：
        adapter = RpcExecutionAdapter(rpc_url)
        discovery = AssetDiscovery(adapter)
        result = await discovery.discover(TxSpec(...))
    """

    def __init__(
        self,
        adapter: ExecutionAdapter,
        registry: Optional[CheckerRegistry] = None,
        resolver: Optional[ProxyResolver] = None,
        config: Optional[DiscoveryConfig] = None,
    ):
        """
        初始化 AssetDiscovery

        Args:
            adapter: 执行适配器
            registry: 检查器注册表（默认 default_registry）
            resolver: 代理解析器（默认使用适配器作为 CodeReader，如果支持）
            config: 引擎配置
        """
        self.adapter = adapter
        self.config = config or DiscoveryConfig()
        self.registry = registry or default_registry(self.config.permit2_address)
        if resolver is None:
            reader = adapter if isinstance(adapter, CodeReader) else None
            resolver = ProxyResolver(reader)
        self.diagnoser = Diagnoser(self.registry, resolver)

    async def discover(
        self,
        tx: TxSpec,
        block: BlockRef = "latest",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DiscoveryResult:
        """
        发现交易成功执行所需的全部资产前置条件

        Args:
            tx: 目标交易
            block: 分叉区块
            cancel_event: 取消事件，在每轮模拟开始前检查

        Returns:
            DiscoveryResult（诊断类终止状态不会抛出）

        Raises:
            AdapterError: 执行层致命错误
        """
        state = RunState(request=SimulationRequest(tx=tx, block=block))
        search = RequirementSearch(
            simulate=lambda request: self._simulate(state, request),
            diagnose=lambda outcome: self._diagnose(outcome, block),
            config=self.config,
        )
        logger.info(f"开始发现: {tx.tx_from} -> {tx.tx_to} (block={block})")

        while True:
            logger.debug(f"[{state.iterations}] 状态: {state.phase.value}")

            if state.phase == Phase.SIMULATING:
                if cancel_event is not None and cancel_event.is_set():
                    return self._finish(state, DiscoveryStatus.CANCELLED)

                state.iterations += 1
                state.outcome = await self._simulate(state, state.request)
                if state.outcome.success:
                    state.failure = None
                    return self._finish(state, DiscoveryStatus.SUCCEEDED)
                state.phase = Phase.DIAGNOSING

            elif state.phase == Phase.DIAGNOSING:
                state.diagnosis = await self._diagnose(state.outcome, block)
                state.failure = FailureInfo.from_frame(state.diagnosis.frame)
                if state.diagnosis.checker is None:
                    return self._finish(state, DiscoveryStatus.UNDIAGNOSED_REVERT)
                # max_iterations 限制搜索轮数，上一轮累积后的模拟总会执行
                if state.iterations > self.config.max_iterations:
                    return self._finish(state, DiscoveryStatus.DID_NOT_CONVERGE)
                state.phase = Phase.SEARCHING

            elif state.phase == Phase.SEARCHING:
                status, key = await self._search(state, search)
                if status is not None:
                    return self._finish(state, status, unsatisfiable_key=key)
                state.phase = Phase.ACCUMULATING

            elif state.phase == Phase.ACCUMULATING:
                if not await self._accumulate(state):
                    logger.info("本轮未改变任何覆盖，停止迭代")
                    return self._finish(state, DiscoveryStatus.DID_NOT_CONVERGE)
                if not self.config.auto_fix:
                    return self._finish(state, DiscoveryStatus.DETECTED)
                state.phase = Phase.SIMULATING

    async def discover_many(
        self,
        txs: Sequence[TxSpec],
        block: BlockRef = "latest",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[DiscoveryResult]:
        """并发执行多个独立的发现流程，结果顺序与输入一致"""
        return list(
            await asyncio.gather(
                *(self.discover(tx, block, cancel_event) for tx in txs)
            )
        )

    async def _simulate(self, state: RunState, request: SimulationRequest) -> SimulationOutcome:
        state.simulations += 1
        return await self.adapter.simulate(request)

    async def _diagnose(
        self, outcome: SimulationOutcome, block: BlockRef = "latest"
    ) -> Optional[Diagnosis]:
        # 代理解析可能读取链上代码
        return await asyncio.to_thread(self.diagnoser.diagnose, outcome, block)

    async def _search(
        self, state: RunState, search: RequirementSearch
    ) -> Tuple[Optional[DiscoveryStatus], Optional[AssetKey]]:
        """隔离 binding 条件并逐个搜索最小数量"""
        diagnosis = state.diagnosis

        binding = await search.isolate(state.request, diagnosis)
        if not binding:
            logger.info(f"候选条件均不构成约束: {diagnosis.site.describe()}")
            return DiscoveryStatus.UNDIAGNOSED_REVERT, None

        state.found = []
        for candidate in binding:
            held = [c for c in diagnosis.candidates if c.key != candidate.key]
            result = await search.search(state.request, diagnosis, candidate, held)
            if result.verdict == SearchVerdict.UNSATISFIABLE:
                return DiscoveryStatus.UNSATISFIABLE, candidate.key
            if result.verdict == SearchVerdict.NON_MONOTONIC:
                return DiscoveryStatus.NON_MONOTONIC, candidate.key
            state.found.append((candidate, result.amount))
        return None, None

    async def _accumulate(self, state: RunState) -> bool:
        """
        累积搜索结果为覆盖

        同一身份取 max(已有, 新值)，变化的数值经由其检查器转换为覆盖；
        返回是否有覆盖发生变化。
        """
        changed: List[Tuple[PotentialRequirement, int]] = []
        for candidate, amount in state.found:
            key = candidate.key
            existing = state.requirements.get(key)

            if existing is None:
                current = await self.adapter.current_value(key, state.request.block)
                state.requirements[key] = Requirement(
                    key=key,
                    minimum_amount=amount,
                    current_amount=current,
                    checker=candidate.checker,
                    iteration=state.iterations,
                )
                logger.info(f"发现前置条件: {key.describe()} >= {amount} (当前 {current})")
            elif amount > existing.minimum_amount:
                state.requirements[key] = existing.model_copy(update={"minimum_amount": amount})
                logger.info(
                    f"提高前置条件: {key.describe()} {existing.minimum_amount} -> {amount}"
                )
            else:
                continue
            changed.append((candidate, amount))

        for candidate, amount in changed:
            checker = self.registry.get(candidate.checker)
            if checker is None:
                raise KeyError(f"未注册的检查器: {candidate.checker}")
            state.request = apply_values(state.request, checker, [(candidate, amount)])
        state.found = []
        return bool(changed)

    def _finish(
        self,
        state: RunState,
        status: DiscoveryStatus,
        unsatisfiable_key: Optional[AssetKey] = None,
    ) -> DiscoveryResult:
        result = DiscoveryResult(
            status=status,
            requirements=list(state.requirements.values()),
            unsatisfiable_key=unsatisfiable_key,
            failure=state.failure,
            iterations=state.iterations,
            simulations=state.simulations,
        )
        logger.info(
            f"发现结束: {status.value} "
            f"({len(result.requirements)} 项前置条件, {state.iterations} 轮, "
            f"{state.simulations} 次模拟)"
        )
        return result
