"""
Schema & 类型定义

集中管理:
- Security: 传输安全类型枚举（none / reality / tls）
- SentinelProtocol: 切换时永不替换的出站协议
- ConnectionStatus: 当前服务器状态
"""
from enum import Enum


# 订阅解析出的服务器统一使用的 tag / protocol
DEFAULT_TAG = "vless-reality"
DEFAULT_PROTOCOL = "vless"
# 链接没有 type 参数时写入的 network，xray 对空 network 同样按 tcp 处理
DEFAULT_NETWORK = "tcp"


# ============================================================
# 传输安全类型
# ============================================================
class Security(str, Enum):
    """
    streamSettings.security 的取值。

    NONE 不生成 streamSettings（裸 TCP 出站）。
    """
    NONE = "none"
    REALITY = "reality"
    TLS = "tls"


# ============================================================
# 哨兵出站（直连 / 黑洞），切换服务器时原样保留
# ============================================================
class SentinelProtocol(str, Enum):
    FREEDOM = "freedom"
    BLACKHOLE = "blackhole"


def is_sentinel(protocol: str) -> bool:
    """判断出站协议是否为哨兵协议"""
    return protocol in {p.value for p in SentinelProtocol}


# ============================================================
# 状态报告
# ============================================================
class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    NO_SERVER_SELECTED = "no_server_selected"
