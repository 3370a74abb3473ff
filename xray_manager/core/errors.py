"""
错误类型定义

按错误种类划分（而非按模块划分）:
- InputError      订阅 URL 格式错误、UUID/地址/端口非法、未知服务器 ID
- FetchError      HTTP 请求失败、非 2xx、响应体读取失败、空响应
- DecodeError     base64 解码失败、没有 VLESS 行、全部解析失败
- CacheError      快照读写失败
- ProbeError      TCP 探测失败（只出现在 PingResult.error 中）
- ConfigError     xray 配置不可读/不可解析/格式错误，或程序配置校验失败
- WriteError      临时文件写入、rename、chmod 失败
- RestartError    重启命令非零退出、超时
- RestoreError    没有备份、备份读写失败
- CompoundError   主错误 + 恢复过程中的次生错误
"""
import re
from typing import Optional


class XrayManagerError(Exception):
    """所有业务错误的基类"""


# ── 输入错误 ─────────────────────────────────────────────────
class InputError(XrayManagerError):
    pass


class InvalidInput(InputError):
    """空输入、超长、协议头不是 vless://"""


class InvalidUUID(InputError):
    pass


class InvalidAddress(InputError):
    pass


class InvalidPort(InputError):
    pass


class InvalidQuery(InputError):
    pass


class ServerNotFound(InputError):
    pass


# ── 订阅 ─────────────────────────────────────────────────────
class FetchError(XrayManagerError):
    pass


class DecodeError(XrayManagerError):
    pass


class NoValidEntries(DecodeError):
    pass


class CacheError(XrayManagerError):
    pass


class SnapshotUnavailable(CacheError):
    pass


# ── 探测 ─────────────────────────────────────────────────────
class ProbeError(XrayManagerError):
    pass


# ── 配置切换 ─────────────────────────────────────────────────
class ConfigError(XrayManagerError):
    pass


class CurrentServerMismatch(ConfigError):
    """xray 配置中的代理出站与已加载的任何服务器都不匹配"""


class WriteError(XrayManagerError):
    pass


class RestartError(XrayManagerError):
    pass


class RestoreError(XrayManagerError):
    pass


class CompoundError(XrayManagerError):
    """主操作失败，且恢复过程中再次失败

    Attributes:
        primary: 最初的错误
        secondary: 恢复（restore / 再次重启）时的错误
    """

    def __init__(self, primary: BaseException, secondary: BaseException) -> None:
        self.primary = primary
        self.secondary = secondary
        super().__init__(f"{primary}; 恢复失败: {secondary}")


# ============================================================
# 面向管理员的错误提示
# ============================================================
_HINTS = [
    (CompoundError, "主操作与恢复操作均失败，请查看日志并手动检查 xray 配置、备份和快照文件"),
    (ServerNotFound, "服务器列表可能已过期，请先执行 refresh"),
    (InputError, "请检查订阅内容或输入的参数"),
    (FetchError, "请检查订阅地址和网络连接，稍后重试"),
    (DecodeError, "订阅内容格式异常，请联系订阅提供方"),
    (CacheError, "请检查缓存目录权限"),
    (CurrentServerMismatch, "当前 xray 配置不属于订阅中的服务器，可直接 switch 切换"),
    (ConfigError, "请检查配置文件内容"),
    (WriteError, "请检查 xray 配置目录的磁盘空间和写权限"),
    (RestartError, "请检查 xray 服务状态和重启命令"),
    (RestoreError, "请手动从 .backup 文件恢复 xray 配置"),
]


def clean_text(text: str, max_len: int = 200) -> str:
    """去掉控制字符、压缩空白，并截断到 max_len"""
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 1].rstrip() + "…"
    return s


def public_error_message(e: BaseException, max_len: int = 200) -> str:
    """返回适合直接展示给管理员的短消息，附带建议的处理方式"""
    detail = clean_text(str(e), max_len=max_len) or type(e).__name__
    hint: Optional[str] = None
    for kind, text in _HINTS:
        if isinstance(e, kind):
            hint = text
            break
    if hint is None:
        return f"{detail}（详情请查看日志）"
    return f"{detail}（{hint}）"
