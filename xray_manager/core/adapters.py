"""
适配器 - 生产环境的接口实现
"""
import subprocess
from pathlib import Path
from typing import List, Optional

from xray_manager.core.ports import ICommandRunner, CommandResult
from xray_manager.core.utils import logger


class SubprocessRunner(ICommandRunner):
    """生产环境命令执行器"""

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
        logger.debug(f"[CMD] {cmd_str}")

        # subprocess.run 超时会先 kill 子进程，再抛出 TimeoutExpired
        result = subprocess.run(
            cmd,
            cwd=cwd,
            timeout=timeout,
            shell=shell,
            capture_output=capture_output,
            text=True,
        )

        if result.stdout:
            logger.debug(f"[STDOUT] {result.stdout.strip()}")
        if result.stderr:
            logger.debug(f"[STDERR] {result.stderr.strip()}")

        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, cmd, result.stdout, result.stderr
            )

        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            command=cmd_str,
        )
