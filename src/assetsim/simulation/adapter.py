"""
Execution Adapter Interface

发现引擎通过该接口调用外部 EVM 执行引擎，定义统一规范。
"""

from abc import ABC, abstractmethod

from .models import AssetKey, BlockRef, SimulationOutcome, SimulationRequest


class ExecutionAdapter(ABC):
    """
    执行适配器基础类

    实现要求：
    1. 所有 Override 必须在执行任何代码之前生效（代表预先存在的状态）
    2. 成功时也返回完整调用跟踪
    3. 自身无法执行时抛出 AdapterError（致命，不重试）
    4. 覆盖仅对单次模拟有效，不在后端留下持久状态
    """

    @abstractmethod
    async def simulate(self, request: SimulationRequest) -> SimulationOutcome:
        """
        在分叉状态 + 临时覆盖上执行交易

        Args:
            request: 模拟请求

        Returns:
            SimulationOutcome: 模拟结果（含调用跟踪）
        """
        raise NotImplementedError

    @abstractmethod
    async def current_value(self, key: AssetKey, block: BlockRef = "latest") -> int:
        """
        读取资产键在分叉状态上的当前值（不含覆盖）

        Args:
            key: 资产键
            block: 区块引用

        Returns:
            当前余额或授权额度
        """
        raise NotImplementedError

    async def close(self) -> None:
        """释放资源（默认无操作）"""
        return None
