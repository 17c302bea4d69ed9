"""
Asset Simulator Configuration Management

从环境变量和配置文件中读取配置，支持 .env 文件。
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Uniswap Permit2 在各链上的统一部署地址
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"


class Settings(BaseSettings):
    """Asset Simulator 配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_reload: bool = Field(default=False, alias="API_RELOAD")

    # Fork / RPC Configuration
    fork_url: str = Field(
        default="https://mainnet.base.org",
        alias="FORK_RPC_URL"
    )
    fork_block: Optional[int] = Field(default=None, alias="FORK_BLOCK")
    rpc_timeout_seconds: int = Field(default=60, alias="RPC_TIMEOUT_SECONDS")
    default_gas_limit: int = Field(default=30_000_000, alias="DEFAULT_GAS_LIMIT")

    # Anvil Configuration
    use_local_fork: bool = Field(default=True, alias="USE_LOCAL_FORK")
    anvil_binary_path: str = Field(default="anvil", alias="ANVIL_BINARY_PATH")
    anvil_base_port: int = Field(default=8545, alias="ANVIL_BASE_PORT")
    anvil_timeout_seconds: int = Field(default=30, alias="ANVIL_TIMEOUT_SECONDS")

    # Discovery bounds
    max_iterations: int = Field(default=10, alias="MAX_ITERATIONS")
    search_seed: int = Field(default=1, alias="SEARCH_SEED")
    search_ceiling: int = Field(default=10**30, alias="SEARCH_CEILING")
    search_sentinel: Optional[int] = Field(default=None, alias="SEARCH_SENTINEL")
    auto_fix: bool = Field(default=True, alias="AUTO_FIX")
    slot_bruteforce_max: int = Field(default=20, alias="SLOT_BRUTEFORCE_MAX")
    permit2_address: str = Field(default=PERMIT2_ADDRESS, alias="PERMIT2_ADDRESS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def rpc_url(self) -> str:
        """未启用本地 Anvil 时直接使用的 RPC URL"""
        return self.fork_url


# 全局配置实例
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置"""
    global _settings
    _settings = Settings()
    return _settings
