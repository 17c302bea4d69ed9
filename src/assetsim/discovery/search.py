"""
RequirementSearch - 最小满足数量搜索

充分性判定：在当前全部覆盖 + 候选键 = v（+ 保持在哨兵值的其他候选）下重新模拟，
若成功或逻辑失败帧不再是同一位置、同一资产键，则 v 充分。
所有假设值都经由诊断出该条件的检查器（build_override）转换为状态覆盖。

算法：
1. （可选）先探测 calldata 中的金额 hint 与 hint-1
2. 以当前覆盖值为下界，从 seed 开始倍增直到充分或到达上限；上限仍不充分 -> UNSATISFIABLE
3. 在最后一个不充分值与第一个充分值之间二分

前提假设：充分性对数值单调（更多余额 / 授权不会重新引入失败）。
所有探测值都会被记录并校验，违反单调性时返回 NON_MONOTONIC，而不是给出错误的最小值。
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from ..checkers import AssetChecker, PotentialRequirement
from ..simulation.models import AssetKey, SimulationOutcome, SimulationRequest
from .diagnosis import Diagnosis, FailureSite
from .models import DiscoveryConfig

logger = logging.getLogger(__name__)


Simulate = Callable[[SimulationRequest], Awaitable[SimulationOutcome]]
Diagnose = Callable[[SimulationOutcome], Awaitable[Optional[Diagnosis]]]


class SearchVerdict(str, Enum):
    FOUND = "found"
    UNSATISFIABLE = "unsatisfiable"
    NON_MONOTONIC = "non_monotonic"


class SearchResult(BaseModel):
    """单个资产键的搜索结果"""
    key: AssetKey
    verdict: SearchVerdict
    amount: Optional[int] = Field(None, description="最小满足数量（FOUND 时）")
    probes: Dict[int, bool] = Field(default_factory=dict, description="探测值 -> 是否充分")


def apply_values(
    base: SimulationRequest,
    checker: AssetChecker,
    values: Sequence[Tuple[PotentialRequirement, int]],
) -> SimulationRequest:
    """由检查器为每个 (候选, 数值) 构造覆盖，并叠加到请求上"""
    overrides = [checker.build_override(candidate, value) for candidate, value in values]
    return base.with_overrides({o.key: o.value for o in overrides})


class RequirementSearch:
    """
    最小满足数量搜索

    Args:
        simulate: 模拟函数
        diagnose: 诊断函数
        config: 引擎配置（seed / ceiling / sentinel）
    """

    def __init__(self, simulate: Simulate, diagnose: Diagnose, config: DiscoveryConfig):
        self._simulate = simulate
        self._diagnose = diagnose
        self.config = config

    async def still_fails(
        self, request: SimulationRequest, site: FailureSite, key: AssetKey
    ) -> bool:
        """模拟请求是否仍在同一位置因同一资产键失败"""
        outcome = await self._simulate(request)
        if outcome.success:
            return False
        diagnosis = await self._diagnose(outcome)
        return diagnosis is not None and diagnosis.fails_at(site, key)

    async def isolate(
        self, base: SimulationRequest, diagnosis: Diagnosis
    ) -> List[PotentialRequirement]:
        """
        确定哪些候选条件是真正的失败原因

        每个候选保持当前值，其他候选设为哨兵值；仍在同一位置失败即为 binding。
        只有一个候选时直接视为 binding（诊断刚刚观察到它）。
        """
        candidates = diagnosis.candidates
        if len(candidates) <= 1:
            return list(candidates)

        sentinel = self.config.sentinel
        binding = []
        for candidate in candidates:
            held = [(c, sentinel) for c in candidates if c.key != candidate.key]
            request = apply_values(base, diagnosis.checker, held)
            if await self.still_fails(request, diagnosis.site, candidate.key):
                binding.append(candidate)
            else:
                logger.debug(f"候选条件不构成约束: {candidate.key.describe()}")
        return binding

    async def search(
        self,
        base: SimulationRequest,
        diagnosis: Diagnosis,
        candidate: PotentialRequirement,
        held: Optional[Sequence[PotentialRequirement]] = None,
    ) -> SearchResult:
        """
        搜索资产键的最小满足数量

        Args:
            base: 当前模拟请求（含已累积的覆盖）
            diagnosis: 观察到该候选条件的诊断（提供失败位置与检查器）
            candidate: 候选前置条件
            held: 搜索期间保持在哨兵值的其他候选

        Returns:
            SearchResult
        """
        key = candidate.key
        site = diagnosis.site
        ceiling = self.config.search_ceiling
        held_values = [(c, self.config.sentinel) for c in held or []]
        probes: Dict[int, bool] = {}

        async def sufficient(value: int) -> bool:
            if value not in probes:
                request = apply_values(base, diagnosis.checker, held_values + [(candidate, value)])
                probes[value] = not await self.still_fails(request, site, key)
            return probes[value]

        # 当前覆盖值刚被观察到不充分，作为下界
        lo, hi = base.override_map().get(key, 0), None

        hint = candidate.hint if self.config.use_hints else None
        if hint is not None and lo < hint <= ceiling:
            if await sufficient(hint):
                hi = hint
                if hint - 1 > lo:
                    if await sufficient(hint - 1):
                        hi = hint - 1
                    else:
                        lo = hint - 1
            else:
                lo = hint

        if hi is None:
            value = max(self.config.search_seed, lo * 2)
            while True:
                value = min(value, ceiling)
                if await sufficient(value):
                    hi = value
                    break
                lo = value
                if value >= ceiling:
                    logger.info(f"搜索到上限仍不满足: {key.describe()} (ceiling={ceiling})")
                    return SearchResult(key=key, verdict=SearchVerdict.UNSATISFIABLE, probes=probes)
                value *= 2

        while hi - lo > 1:
            mid = (lo + hi) // 2
            if await sufficient(mid):
                hi = mid
            else:
                lo = mid

        await sufficient(ceiling)
        if not self._is_monotonic(probes):
            logger.warning(f"充分性不单调: {key.describe()} probes={probes}")
            return SearchResult(key=key, verdict=SearchVerdict.NON_MONOTONIC, probes=probes)

        logger.debug(f"最小满足数量 {key.describe()} = {hi} ({len(probes)} 次探测)")
        return SearchResult(key=key, verdict=SearchVerdict.FOUND, amount=hi, probes=probes)

    @staticmethod
    def _is_monotonic(probes: Dict[int, bool]) -> bool:
        sufficient = [v for v, ok in probes.items() if ok]
        insufficient = [v for v, ok in probes.items() if not ok]
        if not sufficient:
            return False
        return not insufficient or max(insufficient) < min(sufficient)
