"""
VLESS 订阅链接解析

格式:
    vless://<uuid>@<host>[:<port>]?type=..&security=..&sni=..&pbk=..&sid=..&fp=..&flow=..#<name>

解析结果是不可变的 VlessDescriptor；build_outbound() 把它渲染成 xray 出站
所需的 settings / streamSettings，切换服务器时不再重复解析。
"""
import ipaddress
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import unquote

from xray_manager.core.errors import (
    InvalidAddress,
    InvalidInput,
    InvalidPort,
    InvalidQuery,
    InvalidUUID,
)
from xray_manager.core.schema import DEFAULT_NETWORK, DEFAULT_PROTOCOL, DEFAULT_TAG, Security
from xray_manager.lib.server.models import (
    RealitySettings,
    Server,
    Settings,
    StreamSettings,
    TlsSettings,
    User,
    Vnext,
)


SCHEME = "vless"
MAX_URL_LENGTH = 2048
DEFAULT_PORT = 443

# 各字段长度上限
NAME_MAX = 256
KEY_MAX = 256      # pbk / sni
SMALL_MAX = 32     # type / security / sid / fp / flow

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}$"
)
_HOSTNAME_LABEL_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")

# 这些字符最终会进入 xray 配置，统一剔除
_STRIP_CHARS = "\n\r\t\x00\v\f\\$`;&|"
_STRIP_TABLE = str.maketrans("", "", _STRIP_CHARS)


@dataclass(frozen=True)
class VlessDescriptor:
    """一条 vless:// 链接的解析结果

    security 保留链接里的原始值（缺失时为空字符串），
    security_kind 为归一化后的枚举。
    """
    uuid: str
    address: str
    port: int = DEFAULT_PORT
    network: str = ""
    security: str = ""
    sni: str = ""
    public_key: str = ""
    short_id: str = ""
    fingerprint: str = ""
    flow: str = ""
    name: str = ""

    @property
    def security_kind(self) -> Security:
        if self.security.lower() in ("", Security.NONE.value):
            return Security.NONE
        return Security(self.security.lower())


def sanitize(value: str, max_len: int) -> str:
    """剔除控制字符与 shell 元字符，去掉首尾空白后截断"""
    return value.translate(_STRIP_TABLE).strip()[:max_len]


def make_server_id(address: str, port: int) -> str:
    """由地址和端口生成稳定 ID，如 1.2.3.4:443 → 1_2_3_4_443"""
    return f"{address.replace('.', '_').replace(':', '_')}_{port}"


def is_valid_address(address: str) -> bool:
    """IP 字面量或 RFC 1123 主机名"""
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        pass

    if len(address) > 253:
        return False
    labels = address[:-1].split(".") if address.endswith(".") else address.split(".")
    return all(_HOSTNAME_LABEL_RE.match(label) for label in labels)


def _split_host_port(hostport: str) -> Tuple[str, Optional[str]]:
    """拆分 host[:port]，支持 [ipv6]:port"""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise InvalidAddress(f"IPv6 地址缺少 ']': {hostport}")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise InvalidAddress(f"地址格式错误: {hostport}")
        return host, rest[1:]

    if hostport.count(":") > 1:
        raise InvalidAddress(f"IPv6 地址需要使用方括号: {hostport}")
    host, sep, port = hostport.partition(":")
    return host, (port if sep else None)


def _parse_port(raw: Optional[str]) -> int:
    if not raw:
        return DEFAULT_PORT
    if not raw.isdigit():
        raise InvalidPort(f"端口不是数字: {raw}")
    port = int(raw)
    if not 1 <= port <= 65535:
        raise InvalidPort(f"端口超出范围 (1-65535): {port}")
    return port


def _parse_query(query: str) -> Dict[str, str]:
    """解析查询参数，同名参数以第一次出现的值为准"""
    if ";" in query:
        raise InvalidQuery("查询参数中不允许出现 ';'")
    if _BAD_ESCAPE_RE.search(query):
        raise InvalidQuery("查询参数包含非法的百分号转义")

    params: Dict[str, str] = {}
    for pair in query.split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        key = unquote(key.replace("+", " "))
        if key not in params:
            params[key] = unquote(value.replace("+", " "))
    return params


def parse_vless_url(url: str) -> VlessDescriptor:
    """解析一条 vless:// 链接

    Raises:
        InvalidInput: 空输入、超长、协议头不是 vless
        InvalidUUID / InvalidAddress / InvalidPort / InvalidQuery: 对应字段非法
    """
    url = (url or "").strip()
    if not url:
        raise InvalidInput("链接为空")
    if len(url) > MAX_URL_LENGTH:
        raise InvalidInput(f"链接过长 ({len(url)} > {MAX_URL_LENGTH})")

    scheme, sep, rest = url.partition("://")
    if not sep or scheme.lower() != SCHEME:
        raise InvalidInput(f"不支持的协议: {scheme if sep else url[:16]}")

    rest, _, fragment = rest.partition("#")
    rest, _, query = rest.partition("?")
    authority = rest.split("/", 1)[0]

    userinfo, at, hostport = authority.rpartition("@")
    if not at or not userinfo:
        raise InvalidUUID("缺少 UUID")
    uuid = unquote(userinfo)
    if len(uuid) not in (32, 36) or not _UUID_RE.match(uuid):
        raise InvalidUUID(f"UUID 格式错误: {uuid}")

    host, raw_port = _split_host_port(hostport)
    if not host:
        raise InvalidAddress("缺少服务器地址")
    if not is_valid_address(host):
        raise InvalidAddress(f"服务器地址非法: {host}")
    port = _parse_port(raw_port)

    params = _parse_query(query)
    security = sanitize(params.get("security", ""), SMALL_MAX)
    if security.lower() not in ("", *(s.value for s in Security)):
        raise InvalidQuery(f"未知的 security 类型: {security}")

    name = sanitize(unquote(fragment), NAME_MAX)
    if not name:
        name = f"{host}:{port}"

    return VlessDescriptor(
        uuid=uuid,
        address=host,
        port=port,
        network=sanitize(params.get("type", ""), SMALL_MAX),
        security=security,
        sni=sanitize(params.get("sni", ""), KEY_MAX),
        public_key=sanitize(params.get("pbk", ""), KEY_MAX),
        short_id=sanitize(params.get("sid", ""), SMALL_MAX),
        fingerprint=sanitize(params.get("fp", ""), SMALL_MAX),
        flow=sanitize(params.get("flow", ""), SMALL_MAX),
        name=name,
    )


def build_outbound(desc: VlessDescriptor) -> Tuple[Settings, Optional[StreamSettings]]:
    """渲染 xray 出站的 settings 和 streamSettings

    security 缺失或为 none 时不生成 streamSettings。
    """
    user = User(id=desc.uuid, flow=desc.flow)
    settings = Settings(vnext=(Vnext(address=desc.address, port=desc.port, users=(user,)),))

    kind = desc.security_kind
    if kind is Security.NONE:
        return settings, None

    network = desc.network or DEFAULT_NETWORK
    if kind is Security.REALITY:
        params = RealitySettings(
            public_key=desc.public_key,
            server_name=desc.sni,
            short_id=desc.short_id,
            fingerprint=desc.fingerprint,
        )
    else:
        params = TlsSettings(server_name=desc.sni, fingerprint=desc.fingerprint)
    return settings, StreamSettings(network=network, security=params)


def server_from_url(url: str) -> Server:
    """解析链接并生成候选服务器"""
    desc = parse_vless_url(url)
    settings, stream_settings = build_outbound(desc)
    return Server(
        id=make_server_id(desc.address, desc.port),
        name=desc.name,
        address=desc.address,
        port=desc.port,
        protocol=DEFAULT_PROTOCOL,
        tag=DEFAULT_TAG,
        vless_url=url.strip(),
        settings=settings,
        stream_settings=stream_settings,
    )
