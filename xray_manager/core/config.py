"""
程序配置

配置文件为 YAML（JSON 是 YAML 的子集，同样可以直接读取），
通过 Pydantic 做类型与取值校验，启动前即可发现配置错误。
"""
import re
from pathlib import Path, PurePosixPath
from typing import Literal, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from xray_manager.core.errors import ConfigError
from xray_manager.core.utils import logger


DEFAULT_CONFIG_FILE = Path("/opt/etc/xray-manager/config.yaml")
SNAPSHOT_FILENAME = "servers.json"

_BOT_TOKEN_RE = re.compile(r"^\d{8,10}:[A-Za-z0-9_-]{20,}$")


class AppConfig(BaseModel):
    """config.yaml 的顶层结构"""
    admin_id: int
    bot_token: str
    subscription_url: str
    config_path: str = "/opt/etc/xray/configs/04_outbounds.json"
    xray_restart_command: str = "/opt/etc/init.d/S24xray restart"
    cache_duration: int = 3600     # 服务器列表内存缓存有效期（秒）
    ping_timeout: int = 5          # TCP 探测和 HTTP 请求超时（秒）
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    cache_dir: str = "/opt/etc/xray-manager/cache"
    probe_concurrency: int = 10    # 同时进行的 TCP 探测数

    @field_validator("admin_id")
    @classmethod
    def admin_id_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("admin_id 必须为正整数")
        return v

    @field_validator("bot_token")
    @classmethod
    def bot_token_format(cls, v: str) -> str:
        if not _BOT_TOKEN_RE.match(v):
            raise ValueError("bot_token 格式不正确，应为 <数字ID>:<密钥>")
        return v

    @field_validator("subscription_url")
    @classmethod
    def subscription_url_http(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https"):
            raise ValueError("subscription_url 必须是 http 或 https 地址")
        if not parsed.netloc:
            raise ValueError("subscription_url 缺少主机名")
        return v

    @field_validator("config_path")
    @classmethod
    def config_path_absolute(cls, v: str) -> str:
        path = PurePosixPath(v)
        if not path.is_absolute():
            raise ValueError("config_path 必须是绝对路径")
        if ".." in path.parts:
            raise ValueError("config_path 不能包含 '..'")
        return v

    @field_validator("xray_restart_command")
    @classmethod
    def restart_command_sane(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("xray_restart_command 不能为空")
        if len(v) > 256:
            raise ValueError("xray_restart_command 过长（最多 256 个字符）")
        return v

    @field_validator("cache_duration")
    @classmethod
    def cache_duration_range(cls, v: int) -> int:
        if not 0 <= v <= 86400:
            raise ValueError("cache_duration 必须在 0 ~ 86400 秒之间")
        return v

    @field_validator("ping_timeout")
    @classmethod
    def ping_timeout_range(cls, v: int) -> int:
        if not 1 <= v <= 60:
            raise ValueError("ping_timeout 必须在 1 ~ 60 秒之间")
        return v

    @field_validator("probe_concurrency")
    @classmethod
    def probe_concurrency_range(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("probe_concurrency 必须在 1 ~ 100 之间")
        return v

    @property
    def snapshot_path(self) -> Path:
        """订阅快照文件路径"""
        return Path(self.cache_dir) / SNAPSHOT_FILENAME


def load_config(path: Union[str, Path]) -> AppConfig:
    """读取并校验配置文件

    Raises:
        ConfigError: 文件不存在、无法解析或校验失败
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"配置文件不存在: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"配置文件读取失败: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"配置文件顶层必须是键值映射: {path}")

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"配置校验失败: {e}") from e

    logger.debug(f"  -> [Config] 已加载: {path}")
    return config


_TEMPLATE = """\
# xray-manager 配置文件
# 修改下列占位值后重新启动

# 管理员 ID（只有该用户可以操作）
admin_id: 123456789

# 聊天机器人 Token
bot_token: "1234567890:REPLACE_WITH_REAL_BOT_TOKEN_VALUE"

# 订阅地址（base64 编码的 vless:// 列表）
subscription_url: "https://example.com/subscription"

# xray 出站配置文件（绝对路径）
config_path: "/opt/etc/xray/configs/04_outbounds.json"

# 重启 xray 的命令
xray_restart_command: "/opt/etc/init.d/S24xray restart"

# 服务器列表缓存时间（秒）
cache_duration: 3600

# TCP 探测 / HTTP 请求超时（秒）
ping_timeout: 5

# 同时进行的 TCP 探测数
probe_concurrency: 10

# 日志级别: debug / info / warn / error
log_level: info

# 订阅快照目录
cache_dir: "/opt/etc/xray-manager/cache"
"""


def create_template(path: Union[str, Path]) -> None:
    """写入配置模板（权限 0600，包含 Token）"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_TEMPLATE, encoding="utf-8")
    path.chmod(0o600)
    logger.info(f"  -> ✓ 配置模板已生成: {path}")


def load_config_or_create_template(path: Union[str, Path]) -> AppConfig:
    """读取配置；文件不存在时生成模板并提示管理员填写

    Raises:
        ConfigError: 刚生成了模板，或配置校验失败
    """
    path = Path(path)
    if not path.exists():
        create_template(path)
        raise ConfigError(f"配置文件不存在，已生成模板，请编辑后重试: {path}")
    return load_config(path)
