"""
测试用 Mock 实现

提供 ICommandRunner 的测试替身，用于单元测试中隔离 subprocess。
"""
import base64
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from xray_manager.core.errors import ProbeError
from xray_manager.core.ports import ICommandRunner, CommandResult
from xray_manager.lib.server.models import PingResult, Server


@dataclass
class CallRecord:
    """记录一次调用"""
    cmd: str
    cwd: Optional[Path] = None
    kwargs: Dict[str, Any] = field(default_factory=dict)


class MockRunner(ICommandRunner):
    """
    模拟命令执行器

    - 记录所有调用，可在测试中断言
    - queue_results 中的结果按调用顺序依次返回（可以是异常，会被抛出）
    - 支持通过 stub_results 预设特定命令的返回值
    - 默认返回 returncode=0 的成功结果
    """

    def __init__(self):
        self.calls: List[CallRecord] = []
        # 按顺序消费的结果队列，优先于 stub_results
        self.queue_results: List[Union[CommandResult, BaseException]] = []
        # key: 命令前缀或完整命令，value: 预设的 CommandResult
        self.stub_results: Dict[str, CommandResult] = {}

    def _find_stub(self, cmd_str: str) -> Optional[CommandResult]:
        """查找匹配的预设结果（精确匹配 → 前缀匹配）"""
        if cmd_str in self.stub_results:
            return self.stub_results[cmd_str]
        for pattern, result in self.stub_results.items():
            if cmd_str.startswith(pattern):
                return result
        return None

    def run(
        self,
        cmd: List[str] | str,
        cwd: Optional[Path] = None,
        timeout: Optional[int] = None,
        check: bool = True,
        shell: bool = False,
        capture_output: bool = True,
    ) -> CommandResult:
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.calls.append(CallRecord(
            cmd=cmd_str,
            cwd=cwd,
            kwargs={"timeout": timeout, "check": check, "shell": shell, "capture_output": capture_output},
        ))

        if self.queue_results:
            result = self.queue_results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result

        stub = self._find_stub(cmd_str)
        if stub:
            return stub

        return CommandResult(
            returncode=0,
            stdout="",
            stderr="",
            command=cmd_str,
        )

    # ===== 测试辅助方法 =====

    def assert_called_with(self, substring: str) -> CallRecord:
        """断言至少有一次调用包含指定子串"""
        for call in self.calls:
            if substring in call.cmd:
                return call
        raise AssertionError(
            f"没有找到包含 '{substring}' 的调用。\n"
            f"实际调用列表:\n" + "\n".join(f"  - {c}" for c in self.all_commands)
        )

    @property
    def all_commands(self) -> List[str]:
        """所有调用的命令列表"""
        return [c.cmd for c in self.calls]


def failed(returncode: int = 1, stderr: str = "failed") -> CommandResult:
    """构造一个失败的命令结果"""
    return CommandResult(returncode=returncode, stdout="", stderr=stderr, command="")


def succeeded() -> CommandResult:
    return CommandResult(returncode=0, stdout="", stderr="", command="")


class StubLoader:
    """返回预设服务器列表的订阅加载器"""

    def __init__(self, servers: List[Server]):
        self.servers = servers
        self.load_count = 0
        self.invalidated = 0

    def load(self, cancel=None) -> List[Server]:
        self.load_count += 1
        return list(self.servers)

    def invalidate_cache(self) -> None:
        self.invalidated += 1


class StubTester:
    """按服务器 ID 返回预设延迟，未设置的视为不可达"""

    def __init__(self, latencies: Dict[str, int]):
        self.latencies = latencies

    def test_one(self, server: Server, cancel=None) -> PingResult:
        if server.id in self.latencies:
            return PingResult(server=server, available=True, latency_ms=self.latencies[server.id])
        return PingResult(server=server, error=ProbeError("连接失败: refused"))

    def test(self, servers, progress=None, cancel=None) -> List[PingResult]:
        results = [self.test_one(s) for s in servers]
        if progress is not None:
            for i, s in enumerate(servers, 1):
                progress(i, len(servers), s.name)
        return results


# ===== 测试数据 =====

UUID = "ec82bca8-1072-4682-822f-30306af408ea"
MINIMAL_URL = f"vless://{UUID}@example.com:443#Test"
REALITY_URL = (
    f"vless://{UUID}@1.2.3.4:443?type=tcp&security=reality&sni=outlook.office.com"
    "&pbk=K&sid=S&fp=chrome&flow=xtls-rprx-vision#NL"
)


def encode_subscription(*urls: str) -> str:
    """把链接列表编码成订阅内容"""
    return base64.b64encode("\n".join(urls).encode("utf-8")).decode("ascii")

INITIAL_OUTBOUNDS = [
    {"tag": "old-proxy", "protocol": "vless"},
    {"tag": "direct", "protocol": "freedom"},
    {"tag": "block", "protocol": "blackhole"},
]
