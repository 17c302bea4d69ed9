"""
AnvilFork - 本地 Anvil 分叉节点管理

启动 `anvil --fork-url` 作为发现引擎的执行后端。状态覆盖通过
debug_traceCall 的 stateOverrides 按调用传入，节点本身不做快照/回滚，
因此单个分叉节点即可服务多个并发的发现流程。
"""

import logging
import socket
import subprocess
import time
from typing import Optional

import httpx
from web3 import Web3

from ..errors import BackendUnavailableError
from .models import AnvilProcessInfo

logger = logging.getLogger(__name__)


def find_free_port(start_port: int = 8545, max_attempts: int = 100) -> int:
    """查找可用端口"""
    for port in range(start_port, start_port + max_attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            if s.connect_ex(("127.0.0.1", port)) != 0:
                return port
    raise OSError(f"无法在 {start_port}-{start_port + max_attempts} 范围内找到可用端口")


class AnvilFork:
    """
    Anvil 分叉节点

    1. 动态选择端口并启动 Anvil
    2. 轮询 eth_blockNumber 等待就绪
    3. 停止时先 terminate，超时后 kill
    """

    def __init__(
        self,
        fork_url: str,
        fork_block: Optional[int] = None,
        anvil_path: str = "anvil",
        base_port: int = 8545,
        timeout: int = 30,
    ):
        """
        初始化 AnvilFork

        Args:
            fork_url: 分叉源 RPC URL
            fork_block: 分叉区块号（None 为最新区块）
            anvil_path: anvil 可执行文件路径
            base_port: 起始端口
            timeout: 启动超时时间（秒）
        """
        self.fork_url = fork_url
        self.fork_block = fork_block
        self.anvil_path = anvil_path
        self.base_port = base_port
        self.timeout = timeout

        self._process: Optional[subprocess.Popen] = None
        self._process_info: Optional[AnvilProcessInfo] = None

    @property
    def is_running(self) -> bool:
        """检查 Anvil 进程是否运行中"""
        return self._process is not None and self._process.poll() is None

    @property
    def rpc_url(self) -> str:
        if self._process_info is None:
            raise RuntimeError("Anvil 进程未启动")
        return self._process_info.rpc_url

    @property
    def process_info(self) -> Optional[AnvilProcessInfo]:
        return self._process_info

    def start(self) -> AnvilProcessInfo:
        """
        启动 Anvil 分叉节点

        Returns:
            AnvilProcessInfo: 进程信息

        Raises:
            BackendUnavailableError: anvil 不存在或启动超时
        """
        if self.is_running:
            return self._process_info

        port = find_free_port(self.base_port)
        rpc_url = f"http://127.0.0.1:{port}"

        cmd = [
            self.anvil_path,
            "--fork-url",
            self.fork_url,
            "--port",
            str(port),
            "--host",
            "127.0.0.1",
            "--steps-tracing",
        ]
        if self.fork_block is not None:
            cmd.extend(["--fork-block-number", str(self.fork_block)])

        logger.info(f"启动 Anvil: {' '.join(cmd)}")

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as e:
            raise BackendUnavailableError(
                f"找不到 anvil 可执行文件: {self.anvil_path}",
                details={"anvil_path": self.anvil_path},
            ) from e

        try:
            self._wait_for_ready(rpc_url)
        except BackendUnavailableError:
            self.stop()
            raise

        w3 = Web3(Web3.HTTPProvider(rpc_url))
        block_number = self.fork_block if self.fork_block else w3.eth.block_number

        self._process_info = AnvilProcessInfo(
            pid=self._process.pid,
            port=port,
            rpc_url=rpc_url,
            fork_url=self.fork_url,
            fork_block=block_number,
        )

        logger.info(f"Anvil 已启动: {rpc_url} (PID: {self._process.pid}, 区块: {block_number})")
        return self._process_info

    def _wait_for_ready(self, rpc_url: str) -> None:
        """等待 Anvil 就绪"""
        deadline = time.monotonic() + self.timeout

        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                stderr = self._process.stderr.read() if self._process.stderr else ""
                raise BackendUnavailableError(
                    f"Anvil 进程提前退出 (code={self._process.returncode})",
                    details={"stderr": stderr[-2000:]},
                )
            try:
                response = httpx.post(
                    rpc_url,
                    json={
                        "jsonrpc": "2.0",
                        "method": "eth_blockNumber",
                        "params": [],
                        "id": 1,
                    },
                    timeout=1,
                )
                if response.status_code == 200:
                    logger.debug("Anvil 就绪")
                    return
            except httpx.HTTPError:
                pass
            time.sleep(0.1)

        raise BackendUnavailableError(
            f"Anvil 启动超时: {rpc_url}", details={"timeout": self.timeout}
        )

    def stop(self) -> None:
        """停止 Anvil 进程"""
        if self._process is not None:
            try:
                self._process.terminate()
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
            self._process = None
            logger.info("Anvil 进程已停止")

        self._process_info = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
