"""
XrayController - xray 出站配置切换

切换流程（全程持有控制器锁）:
    备份 → 读取配置 → 替换出站 → 原子写入 → 重启
任一步失败都会从刚创建的备份恢复；重启失败时恢复后再重启一次。

配置约定:
- 只替换第一个非哨兵出站（freedom / blackhole 之外），没有时插入到最前面
- 其余出站和顶层字段原样保留
- 写入使用 4 空格缩进，临时文件 + rename 保证读者看不到半写入的文件
"""
import json
import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from xray_manager.core.errors import (
    CompoundError,
    ConfigError,
    RestartError,
    RestoreError,
    WriteError,
)
from xray_manager.core.ports import ICommandRunner
from xray_manager.core.schema import is_sentinel
from xray_manager.core.utils import logger
from xray_manager.lib.server.models import Server


DEFAULT_RESTART_TIMEOUT = 30
FILE_MODE = 0o644

# 出现这些字符时交给 sh -c 执行，否则直接按 argv 执行
_SHELL_CHARS = set("|&;<>()$`*?[]{}~#\n")


def prepare_command(command: str) -> Union[List[str], str]:
    """预解析重启命令：普通命令拆成 argv，含 shell 语法的保留为字符串"""
    if any(ch in _SHELL_CHARS for ch in command):
        return command
    try:
        return shlex.split(command)
    except ValueError:
        return command


def find_proxy_outbound(config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """返回第一个非哨兵出站，没有时返回 None"""
    for outbound in config.get("outbounds") or []:
        if isinstance(outbound, dict) and not is_sentinel(str(outbound.get("protocol", ""))):
            return outbound
    return None


class XrayController:
    """xray 配置文件控制器"""

    def __init__(
        self,
        config_path: Union[str, Path],
        restart_command: str,
        runner: ICommandRunner,
        restart_timeout: int = DEFAULT_RESTART_TIMEOUT,
    ) -> None:
        self.config_path = Path(config_path)
        self.restart_command = restart_command
        self.restart_timeout = restart_timeout
        self._runner = runner
        self._command = prepare_command(restart_command)
        self._lock = threading.Lock()

    # ── 公共接口 ────────────────────────────────────────────
    def get_current_config(self) -> Dict[str, Any]:
        """读取并解析当前 xray 配置

        Raises:
            ConfigError: 文件不可读、不是合法 JSON 或顶层不是对象
        """
        with self._lock:
            return self._read_config_locked()

    def backup(self) -> Path:
        """备份当前配置到 <path>.backup.<yyyymmdd-hhmmss>.<pid>"""
        with self._lock:
            return self._backup_locked()

    def restore(self) -> Path:
        """用最新的备份覆盖当前配置

        Returns:
            使用的备份文件路径
        """
        with self._lock:
            return self._restore_locked()

    def list_backups(self) -> List[Path]:
        """所有备份文件，按修改时间从旧到新排列"""
        pattern = f"{self.config_path.name}.backup.*"
        backups = [p for p in self.config_path.parent.glob(pattern) if p.is_file()]
        return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name))

    def replace_outbound(self, server: Server) -> None:
        """备份并替换出站，不重启"""
        with self._lock:
            self._backup_locked()
            self._write_server_locked(server)

    def update_and_restart(self, server: Server) -> None:
        """完整切换流程：备份 → 替换 → 写入 → 重启

        重启失败时恢复备份并再次重启。此时 xray 运行的是切换前的配置，
        仍然抛出 RestartError 告知调用方切换未生效。

        Raises:
            ConfigError / WriteError: 替换或写入失败（已恢复备份）
            RestartError: 重启失败（已回滚并成功重启旧配置）
            CompoundError: 恢复或回滚后的重启也失败
        """
        with self._lock:
            logger.info(f">>> [Xray] 切换到: {server.name} ({server.endpoint})")
            self._backup_locked()
            self._write_server_locked(server)

            try:
                self._restart_locked()
            except RestartError as e:
                logger.error(f"  -> ✗ 重启失败，正在回滚: {e}")
                try:
                    self._restore_locked()
                except RestoreError as restore_error:
                    raise CompoundError(e, restore_error) from e
                try:
                    self._restart_locked()
                except RestartError as retry_error:
                    raise CompoundError(e, retry_error) from e
                logger.warning("  -> [WARN] 已回滚到切换前的配置并重启成功")
                raise RestartError(f"{e}（已回滚到切换前的配置）") from e

            logger.info(f"  -> ✓ 已切换到 {server.name}")

    def restart(self) -> None:
        with self._lock:
            self._restart_locked()

    # ── 内部实现（调用方已持有锁） ──────────────────────────
    def _read_config_locked(self) -> Dict[str, Any]:
        try:
            text = self.config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"无法读取 xray 配置 {self.config_path}: {e}") from e
        try:
            config = json.loads(text)
        except ValueError as e:
            raise ConfigError(f"xray 配置不是合法的 JSON: {e}") from e
        if not isinstance(config, dict):
            raise ConfigError("xray 配置顶层必须是 JSON 对象")
        return config

    def _backup_locked(self) -> Path:
        try:
            data = self.config_path.read_bytes()
        except OSError as e:
            raise ConfigError(f"无法读取 xray 配置 {self.config_path}: {e}") from e

        stamp = time.strftime("%Y%m%d-%H%M%S")
        backup_path = self.config_path.with_name(
            f"{self.config_path.name}.backup.{stamp}.{os.getpid()}"
        )
        try:
            backup_path.write_bytes(data)
            backup_path.chmod(FILE_MODE)
        except OSError as e:
            raise WriteError(f"备份写入失败 {backup_path}: {e}") from e

        logger.debug(f"  -> 配置已备份: {backup_path}")
        return backup_path

    def _restore_locked(self) -> Path:
        backups = self.list_backups()
        if not backups:
            raise RestoreError(f"没有找到 {self.config_path} 的备份")

        latest = backups[-1]
        try:
            data = latest.read_bytes()
        except OSError as e:
            raise RestoreError(f"备份读取失败 {latest}: {e}") from e
        try:
            self._atomic_write(data)
        except WriteError as e:
            raise RestoreError(f"备份恢复失败: {e}") from e

        logger.info(f"  -> 已从备份恢复: {latest.name}")
        return latest

    def _write_server_locked(self, server: Server) -> None:
        """替换出站并写入，失败时从备份恢复后抛出原始错误"""
        try:
            config = self._read_config_locked()
            self._apply_outbound(config, server)
            self._atomic_write(self._serialize(config))
        except (ConfigError, WriteError) as e:
            logger.error(f"  -> ✗ 配置写入失败，正在恢复备份: {e}")
            try:
                self._restore_locked()
            except RestoreError as restore_error:
                raise CompoundError(e, restore_error) from e
            raise

    @staticmethod
    def _apply_outbound(config: Dict[str, Any], server: Server) -> None:
        outbounds = config.get("outbounds")
        if outbounds is None:
            outbounds = config["outbounds"] = []
        if not isinstance(outbounds, list):
            raise ConfigError("xray 配置中的 outbounds 不是数组")

        new_outbound = server.to_outbound()
        for i, outbound in enumerate(outbounds):
            if isinstance(outbound, dict) and not is_sentinel(str(outbound.get("protocol", ""))):
                outbounds[i] = new_outbound
                return
        outbounds.insert(0, new_outbound)

    @staticmethod
    def _serialize(config: Dict[str, Any]) -> bytes:
        return json.dumps(config, indent=4, ensure_ascii=False).encode("utf-8")

    def _atomic_write(self, data: bytes) -> None:
        """写入 <path>.tmp.<ns>.<pid> 后 rename 覆盖原文件"""
        tmp = self.config_path.with_name(
            f"{self.config_path.name}.tmp.{time.time_ns()}.{os.getpid()}"
        )
        try:
            tmp.write_bytes(data)
            tmp.chmod(FILE_MODE)
            os.replace(tmp, self.config_path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise WriteError(f"配置写入失败 {self.config_path}: {e}") from e

    def _restart_locked(self) -> None:
        shell = isinstance(self._command, str)
        try:
            result = self._runner.run(
                self._command,
                timeout=self.restart_timeout,
                check=False,
                shell=shell,
            )
        except subprocess.TimeoutExpired as e:
            raise RestartError(f"重启命令超时 ({self.restart_timeout}s): {self.restart_command}") from e
        except OSError as e:
            raise RestartError(f"重启命令无法执行: {e}") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise RestartError(f"重启命令退出码 {result.returncode}: {detail}")
        logger.debug("  -> xray 已重启")
