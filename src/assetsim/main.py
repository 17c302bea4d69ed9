"""
Asset Simulator - FastAPI Main Entry

EVM 交易资产前置条件发现服务
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .api.handler import DiscoveryHandler, RequirementsRequest
from .config import get_settings
from .errors import AdapterError


# =============================================================================
# Logging Configuration
# =============================================================================

def setup_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    settings = get_settings()
    setup_logging(settings.log_level)

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("Asset Simulator 启动中...")
    logger.info(f"分叉源: {settings.fork_url} (本地 Anvil: {settings.use_local_fork})")
    logger.info("=" * 60)

    app.state.handler = DiscoveryHandler(settings)

    yield

    logger.info("Asset Simulator 关闭中...")
    await app.state.handler.close()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Asset Simulator",
    description="EVM 交易资产前置条件发现：找出交易成功所需的最小余额与授权",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_handler() -> DiscoveryHandler:
    if not hasattr(app.state, "handler"):
        app.state.handler = DiscoveryHandler(get_settings())
    return app.state.handler


# =============================================================================
# Health Check
# =============================================================================


@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {
        "status": "healthy",
        "service": "asset-simulator",
        "version": __version__,
    }


@app.get("/")
async def root():
    """根路径"""
    return {
        "name": "Asset Simulator",
        "description": "EVM asset requirement discovery",
        "version": __version__,
        "endpoints": {
            "health": "/health",
            "requirements": "/api/v1/requirements",
            "checkers": "/api/v1/checkers",
        },
    }


# =============================================================================
# Discovery Endpoints
# =============================================================================


@app.get("/api/v1/checkers")
async def list_checkers():
    """按优先级列出已注册的资产检查器"""
    return {"checkers": get_handler().list_checkers()}


@app.post("/api/v1/requirements")
async def discover_requirements(request: RequirementsRequest):
    """
    发现交易成功执行所需的资产前置条件

    ## 请求示例
    ```json
    {
      "tx_from": "0x...",
      "tx_to": "0x...",
      "tx_data": "0x...",
      "block": "latest"
    }
    ```

    ## 响应示例
    ```json
    {
      "status": "succeeded",
      "requirements": [
        {"account": "0x...", "asset": "0x...", "kind": "balance", "minimum_amount": "100"}
      ],
      "iterations": 2,
      "simulations": 9
    }
    ```
    """
    return await get_handler().handle_requirements(request)


# =============================================================================
# Error Handlers
# =============================================================================


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """处理值错误"""
    return JSONResponse(
        status_code=400,
        content={"error": {"message": str(exc), "type": "invalid_request_error"}},
    )


@app.exception_handler(AdapterError)
async def adapter_error_handler(request: Request, exc: AdapterError):
    """执行后端致命错误"""
    logging.getLogger(__name__).error(f"执行后端错误: {exc}")
    return JSONResponse(
        status_code=502,
        content={
            "error": {
                "message": exc.message,
                "type": type(exc).__name__,
                "details": exc.details,
            }
        },
    )


# =============================================================================
# Main
# =============================================================================

def main():
    """主入口"""
    settings = get_settings()

    uvicorn.run(
        "assetsim.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
