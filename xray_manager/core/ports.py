"""
端口（接口）定义
所有与外部世界交互的能力都在这里声明
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


@dataclass
class CommandResult:
    """命令执行结果"""
    returncode: int
    stdout: str
    stderr: str
    command: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ICommandRunner(ABC):
    """命令执行接口"""

    @abstractmethod
    def run(
        self,
        cmd: List[str] | str,
        cwd: Optional[Path] = None,
        timeout: Optional[int] = None,
        check: bool = True,
        shell: bool = False,
        capture_output: bool = True,
    ) -> CommandResult:
        """执行命令并返回结果

        超时时抛出 subprocess.TimeoutExpired（子进程已被终止）。
        """
        ...
