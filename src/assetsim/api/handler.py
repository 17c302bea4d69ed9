"""
Requirement Discovery API Handler

HTTP 接口层：请求模型校验、执行后端的懒启动与发现流程调度。
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from ..checkers import default_registry
from ..config import Settings, get_settings
from ..discovery import AssetDiscovery, DiscoveryConfig
from ..simulation import AnvilFork, ExecutionAdapter, RpcExecutionAdapter, TxSpec

logger = logging.getLogger(__name__)


# =============================================================================
# Request Models
# =============================================================================


class RequirementsRequest(BaseModel):
    """前置条件发现请求"""
    tx_from: str = Field(..., description="交易发起者地址")
    tx_to: str = Field(..., description="交易目标地址")
    tx_value: Union[int, str] = Field(default=0, description="交易 value（wei，十进制或 0x 十六进制）")
    tx_data: str = Field(default="0x", description="交易 calldata")
    gas_limit: Optional[int] = Field(None, gt=0, description="gas 限制")
    block: Optional[Union[int, str]] = Field(None, description="区块号或 latest")
    max_iterations: Optional[int] = Field(None, ge=1, le=100, description="最大迭代次数")
    search_ceiling: Optional[int] = Field(None, ge=1, description="搜索上限")
    auto_fix: Optional[bool] = Field(None, description="False 时只诊断一轮，不重新模拟")

    @field_validator("tx_value")
    @classmethod
    def parse_value(cls, v: Union[int, str]) -> int:
        if isinstance(v, int):
            return v
        return int(v, 16) if v.startswith("0x") else int(v)

    def to_tx(self, default_gas_limit: int) -> TxSpec:
        return TxSpec(
            tx_from=self.tx_from,
            tx_to=self.tx_to,
            tx_value=self.tx_value,
            tx_data=self.tx_data,
            gas_limit=self.gas_limit or default_gas_limit,
        )


class DiscoveryHandler:
    """
    发现请求处理器

    执行后端在第一次请求时启动：USE_LOCAL_FORK 时启动本地 Anvil 分叉，
    否则直接连接 FORK_RPC_URL。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapter: Optional[ExecutionAdapter] = None,
    ):
        self.settings = settings or get_settings()
        self.config = DiscoveryConfig.from_settings(self.settings)
        self._adapter = adapter
        self._fork: Optional[AnvilFork] = None
        self._lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self._adapter is not None

    async def get_adapter(self) -> ExecutionAdapter:
        """获取执行适配器（必要时启动后端）"""
        async with self._lock:
            if self._adapter is not None:
                return self._adapter

            rpc_url = self.settings.rpc_url
            if self.settings.use_local_fork:
                self._fork = AnvilFork(
                    fork_url=self.settings.fork_url,
                    fork_block=self.settings.fork_block,
                    anvil_path=self.settings.anvil_binary_path,
                    base_port=self.settings.anvil_base_port,
                    timeout=self.settings.anvil_timeout_seconds,
                )
                await asyncio.to_thread(self._fork.start)
                rpc_url = self._fork.rpc_url

            self._adapter = RpcExecutionAdapter(
                rpc_url,
                timeout=self.settings.rpc_timeout_seconds,
                slot_bruteforce_max=self.settings.slot_bruteforce_max,
            )
            logger.info(f"执行后端就绪: {rpc_url}")
            return self._adapter

    async def handle_requirements(self, request: RequirementsRequest) -> Dict[str, Any]:
        """
        处理前置条件发现请求

        Returns:
            DiscoveryResult 报告
        """
        overrides = {}
        if request.max_iterations is not None:
            overrides["max_iterations"] = request.max_iterations
        if request.auto_fix is not None:
            overrides["auto_fix"] = request.auto_fix
        if request.search_ceiling is not None:
            overrides["search_ceiling"] = request.search_ceiling
        config = self.config.model_copy(update=overrides) if overrides else self.config

        tx = request.to_tx(self.settings.default_gas_limit)
        adapter = await self.get_adapter()
        discovery = AssetDiscovery(adapter, config=config)
        result = await discovery.discover(tx, block=request.block or "latest")
        return result.to_report()

    def list_checkers(self) -> List[str]:
        return default_registry(self.config.permit2_address).list_checkers()

    async def close(self) -> None:
        """释放执行后端"""
        if self._adapter is not None:
            await self._adapter.close()
            self._adapter = None
        if self._fork is not None:
            self._fork.stop()
            self._fork = None
