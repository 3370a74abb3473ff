"""
服务器相关数据模型

出站配置的各个子树都用不可变 dataclass 表示，to_dict() 输出 xray 配置
所需的 JSON 结构，from_dict() 用于从快照文件 / xray 配置读回。
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from xray_manager.core.errors import ProbeError
from xray_manager.core.schema import (
    ConnectionStatus,
    DEFAULT_NETWORK,
    DEFAULT_PROTOCOL,
    DEFAULT_TAG,
    Security,
)


def _mapping(data: Any, what: str) -> Dict[str, Any]:
    """快照 / 配置中的子树必须是 JSON 对象，否则 ValueError"""
    if not isinstance(data, dict):
        raise ValueError(f"{what} 不是对象: {type(data).__name__}")
    return data


# ============================================================
# settings.vnext
# ============================================================
@dataclass(frozen=True)
class User:
    id: str
    encryption: str = "none"
    level: int = 0
    flow: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "encryption": self.encryption, "level": self.level}
        if self.flow:
            data["flow"] = self.flow
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        data = _mapping(data, "users[]")
        return cls(
            id=str(data.get("id", "")),
            encryption=str(data.get("encryption", "none")),
            level=int(data.get("level", 0)),
            flow=str(data.get("flow", "")),
        )


@dataclass(frozen=True)
class Vnext:
    address: str
    port: int
    users: Tuple[User, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "port": self.port,
            "users": [u.to_dict() for u in self.users],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vnext":
        data = _mapping(data, "vnext[]")
        return cls(
            address=str(data.get("address", "")),
            port=int(data.get("port", 0)),
            users=tuple(User.from_dict(u) for u in data.get("users") or []),
        )


@dataclass(frozen=True)
class Settings:
    vnext: Tuple[Vnext, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"vnext": [v.to_dict() for v in self.vnext]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        data = _mapping(data, "settings")
        return cls(vnext=tuple(Vnext.from_dict(v) for v in data.get("vnext") or []))


# ============================================================
# streamSettings
# ============================================================
@dataclass(frozen=True)
class RealitySettings:
    public_key: str = ""
    server_name: str = ""
    short_id: str = ""
    fingerprint: str = ""

    kind = Security.REALITY

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"spiderX": "/"}
        if self.public_key:
            data["publicKey"] = self.public_key
        if self.server_name:
            data["serverName"] = self.server_name
        if self.short_id:
            data["shortId"] = self.short_id
        if self.fingerprint:
            data["fingerprint"] = self.fingerprint
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RealitySettings":
        data = _mapping(data, "realitySettings")
        return cls(
            public_key=str(data.get("publicKey", "")),
            server_name=str(data.get("serverName", "")),
            short_id=str(data.get("shortId", "")),
            fingerprint=str(data.get("fingerprint", "")),
        )


@dataclass(frozen=True)
class TlsSettings:
    server_name: str = ""
    fingerprint: str = ""

    kind = Security.TLS

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.server_name:
            data["serverName"] = self.server_name
        if self.fingerprint:
            data["fingerprint"] = self.fingerprint
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TlsSettings":
        data = _mapping(data, "tlsSettings")
        return cls(
            server_name=str(data.get("serverName", "")),
            fingerprint=str(data.get("fingerprint", "")),
        )


SecurityParams = Union[RealitySettings, TlsSettings]


@dataclass(frozen=True)
class StreamSettings:
    """传输层设置

    security 字段本身就是 reality / tls 参数之一，
    security 为 none 时整个 streamSettings 不存在。
    """
    network: str
    security: SecurityParams

    def to_dict(self) -> Dict[str, Any]:
        key = "realitySettings" if self.security.kind is Security.REALITY else "tlsSettings"
        return {
            "network": self.network,
            "security": self.security.kind.value,
            key: self.security.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["StreamSettings"]:
        """读回 streamSettings；security 为空或 none 时返回 None

        Raises:
            ValueError: 未知的 security 类型，或子树不是对象
        """
        if not data:
            return None
        data = _mapping(data, "streamSettings")
        security = str(data.get("security", "") or "")
        network = str(data.get("network", "") or DEFAULT_NETWORK)
        if security in ("", Security.NONE.value):
            return None
        if security == Security.REALITY.value:
            return cls(network, RealitySettings.from_dict(data.get("realitySettings") or {}))
        if security == Security.TLS.value:
            return cls(network, TlsSettings.from_dict(data.get("tlsSettings") or {}))
        raise ValueError(f"未知的 security 类型: {security}")


# ============================================================
# 候选服务器
# ============================================================
@dataclass(frozen=True)
class Server:
    """订阅中的一个候选服务器

    settings / stream_settings 在解析时已经渲染好，切换时直接写入 xray 配置。
    """
    id: str
    name: str
    address: str
    port: int
    protocol: str = DEFAULT_PROTOCOL
    tag: str = DEFAULT_TAG
    vless_url: str = ""
    settings: Optional[Settings] = None
    stream_settings: Optional[StreamSettings] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "port": self.port,
            "protocol": self.protocol,
            "tag": self.tag,
            "vlessUrl": self.vless_url,
        }
        if self.settings is not None:
            data["settings"] = self.settings.to_dict()
        if self.stream_settings is not None:
            data["streamSettings"] = self.stream_settings.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Server":
        """从快照读回，缺失的 tag / settings / streamSettings 使用默认值

        Raises:
            KeyError: 缺少 id
            ValueError: 条目或子树不是对象
        """
        data = _mapping(data, "服务器条目")
        settings = data.get("settings")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            address=str(data.get("address", "")),
            port=int(data.get("port", 0)),
            protocol=str(data.get("protocol") or DEFAULT_PROTOCOL),
            tag=str(data.get("tag") or DEFAULT_TAG),
            vless_url=str(data.get("vlessUrl", "")),
            settings=Settings.from_dict(settings) if settings else None,
            stream_settings=StreamSettings.from_dict(data.get("streamSettings")),
        )

    def to_outbound(self) -> Dict[str, Any]:
        """生成 xray 出站条目"""
        outbound: Dict[str, Any] = {"tag": self.tag, "protocol": self.protocol}
        if self.settings is not None:
            outbound["settings"] = self.settings.to_dict()
        if self.stream_settings is not None:
            outbound["streamSettings"] = self.stream_settings.to_dict()
        return outbound

    @property
    def uuid(self) -> str:
        """第一个 vnext 的第一个用户 ID，没有时为空字符串"""
        if self.settings and self.settings.vnext and self.settings.vnext[0].users:
            return self.settings.vnext[0].users[0].id
        return ""

    @property
    def endpoint(self) -> str:
        host = f"[{self.address}]" if ":" in self.address else self.address
        return f"{host}:{self.port}"


# ============================================================
# 探测结果 / 状态
# ============================================================
@dataclass
class PingResult:
    """单个服务器的探测结果，不可达时 latency_ms 为 0"""
    server: Server
    available: bool = False
    latency_ms: int = 0
    error: Optional[ProbeError] = None


@dataclass
class ServerStatus:
    status: ConnectionStatus
    server: Optional[Server] = None
    latency_ms: int = 0
    message: str = ""
