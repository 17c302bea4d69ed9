#!/usr/bin/env python3
"""
Asset Simulator Demo Client

向发现服务提交示例交易（Base 主网分叉），打印发现的资产前置条件。
"""

import asyncio
import sys

import httpx
from eth_abi import encode
from web3 import Web3


# =============================================================================
# Demo Scenarios
# =============================================================================

USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"  # FiatTokenProxy
PAYER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"
SPENDER = "0x3333333333333333333333333333333333333333"


def calldata(signature: str, types: list, args: list) -> str:
    selector = bytes(Web3.keccak(text=signature)[:4])
    return "0x" + (selector + encode(types, args)).hex()


SCENARIOS = {
    "usdc_transfer": {
        "name": "USDC transfer - 空账户转账",
        "description": "空账户向他人转账 100 USDC，需要 100 USDC 余额",
        "tx": {
            "tx_from": PAYER,
            "tx_to": USDC_BASE,
            "tx_data": calldata(
                "transfer(address,uint256)", ["address", "uint256"], [RECIPIENT, 100_000_000]
            ),
        },
        "expected_status": "succeeded",
        "expected_kinds": ["balance"],
    },
    "usdc_transfer_from": {
        "name": "USDC transferFrom - 余额 + 授权",
        "description": "SPENDER 代 PAYER 转出 5 USDC，需要余额与授权两项前置条件",
        "tx": {
            "tx_from": SPENDER,
            "tx_to": USDC_BASE,
            "tx_data": calldata(
                "transferFrom(address,address,uint256)",
                ["address", "address", "uint256"],
                [PAYER, RECIPIENT, 5_000_000],
            ),
        },
        "expected_status": "succeeded",
        "expected_kinds": ["balance", "allowance"],
    },
    "native_transfer": {
        "name": "原生币转账",
        "description": "空账户转出 1 ETH，需要原生币余额",
        "tx": {
            "tx_from": PAYER,
            "tx_to": RECIPIENT,
            "tx_value": str(10**18),
        },
        "expected_status": "succeeded",
        "expected_kinds": ["native_balance"],
    },
}


# =============================================================================
# Demo Client
# =============================================================================

class AssetSimClient:
    """Asset Simulator 客户端"""

    def __init__(self, base_url: str = "http://127.0.0.1:8000"):
        self.base_url = base_url
        # 首次请求可能需要启动 Anvil 分叉
        self.client = httpx.AsyncClient(timeout=300.0, trust_env=False)

    async def health_check(self) -> bool:
        """检查服务健康状态"""
        try:
            response = await self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def list_checkers(self) -> list:
        response = await self.client.get(f"{self.base_url}/api/v1/checkers")
        return response.json().get("checkers", [])

    async def discover(self, **tx_params) -> dict:
        response = await self.client.post(
            f"{self.base_url}/api/v1/requirements",
            json=tx_params,
        )
        return response.json()

    async def close(self):
        await self.client.aclose()


# =============================================================================
# Demo Runner
# =============================================================================

class DemoRunner:
    """Demo 运行器"""

    def __init__(self, base_url: str = "http://127.0.0.1:8000"):
        self.client = AssetSimClient(base_url)
        self.passed = 0
        self.failed = 0

    def print_header(self, text: str):
        print("\n" + "=" * 60)
        print(f"  {text}")
        print("=" * 60)

    def print_section(self, text: str):
        print(f"\n>>> {text}")

    async def run(self, scenario_name: str = None) -> int:
        self.print_header("Asset Simulator Demo")

        self.print_section("1. 健康检查")
        if not await self.client.health_check():
            print("    ❌ 服务未启动！")
            print("    请先运行: assetsim")
            return 1
        print("    ✅ 服务运行正常")

        self.print_section("2. 已注册的检查器")
        for name in await self.client.list_checkers():
            print(f"    📦 {name}")

        scenarios = [scenario_name] if scenario_name else list(SCENARIOS.keys())
        for scenario_id in scenarios:
            await self.run_scenario(scenario_id)

        self.print_header("测试总结")
        print(f"    通过: {self.passed}")
        print(f"    失败: {self.failed}")
        return 0 if self.failed == 0 else 1

    async def run_scenario(self, scenario_id: str):
        scenario = SCENARIOS[scenario_id]
        self.print_section(f"场景: {scenario['name']}")
        print(f"    描述: {scenario['description']}")

        result = await self.client.discover(**scenario["tx"])
        if "error" in result:
            print(f"    ❌ 请求失败: {result['error']}")
            self.failed += 1
            return

        status = result.get("status")
        print(f"    状态: {status} ({result.get('iterations')} 轮, {result.get('simulations')} 次模拟)")
        for req in result.get("requirements", []):
            spender = f" -> {req['spender']}" if req.get("spender") else ""
            print(
                f"      - {req['kind']} {req['asset']} {req['account']}{spender}: "
                f">= {req['minimum_amount']} (缺 {req.get('missing_amount')})"
            )

        kinds = [req["kind"] for req in result.get("requirements", [])]
        if status == scenario["expected_status"] and sorted(kinds) == sorted(scenario["expected_kinds"]):
            print("    ✅ 符合预期")
            self.passed += 1
        else:
            print(f"    ❌ 不符合预期 (预期: {scenario['expected_status']} {scenario['expected_kinds']})")
            self.failed += 1


# =============================================================================
# Main
# =============================================================================

async def main() -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Asset Simulator Demo")
    parser.add_argument("--url", default="http://127.0.0.1:8000", help="服务地址")
    parser.add_argument("--scenario", choices=list(SCENARIOS.keys()), help="运行特定场景")
    args = parser.parse_args()

    runner = DemoRunner(base_url=args.url)
    try:
        return await runner.run(scenario_name=args.scenario)
    finally:
        await runner.client.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
