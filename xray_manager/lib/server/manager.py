"""
ServerManager - 服务器管理核心编排器

协调订阅加载、连通性测试和 xray 配置切换，并维护"当前服务器"指针。

并发约定:
- 服务器列表和当前服务器由同一把锁保护，对外只返回副本
- 下载、探测和重启都在锁外执行；并发切换由 XrayController 自己的锁串行化
- Server 是不可变对象，返回同一个实例即可避免调用方修改内部状态
"""
import threading
from typing import Any, Dict, List, Optional

from xray_manager.core.adapters import SubprocessRunner
from xray_manager.core.config import AppConfig
from xray_manager.core.errors import (
    CurrentServerMismatch,
    NoValidEntries,
    ProbeError,
    ServerNotFound,
)
from xray_manager.core.ports import ICommandRunner
from xray_manager.core.schema import ConnectionStatus, Security
from xray_manager.core.utils import logger
from xray_manager.lib.server import ping
from xray_manager.lib.server.models import PingResult, Server, ServerStatus
from xray_manager.lib.server.ping import PingTester, ProgressCallback
from xray_manager.lib.server.subscription import SubscriptionLoader
from xray_manager.lib.xray.controller import XrayController, find_proxy_outbound


DEFAULT_QUICK_SELECT_LIMIT = 5


# ── 出站身份比对 ─────────────────────────────────────────────
def _outbound_identity(outbound: Dict[str, Any]) -> Dict[str, Any]:
    """从出站 JSON 中提取用于比对的关键字段"""
    identity: Dict[str, Any] = {
        "address": "", "port": 0, "uuid": "",
        "security": "", "sni": "", "pbk": "", "sid": "", "fp": "",
    }

    vnext = (outbound.get("settings") or {}).get("vnext") or []
    if vnext and isinstance(vnext[0], dict):
        identity["address"] = str(vnext[0].get("address", "") or "")
        port = vnext[0].get("port", 0)
        identity["port"] = port if isinstance(port, int) else 0
        users = vnext[0].get("users") or []
        if users and isinstance(users[0], dict):
            identity["uuid"] = str(users[0].get("id", "") or "")

    stream = outbound.get("streamSettings") or {}
    security = str(stream.get("security", "") or "")
    identity["security"] = security
    if security == Security.REALITY.value:
        params = stream.get("realitySettings") or {}
        identity["pbk"] = str(params.get("publicKey", "") or "")
        identity["sid"] = str(params.get("shortId", "") or "")
    elif security == Security.TLS.value:
        params = stream.get("tlsSettings") or {}
    else:
        params = {}
    identity["sni"] = str(params.get("serverName", "") or "")
    identity["fp"] = str(params.get("fingerprint", "") or "")
    return identity


MATCH_NONE = 0
MATCH_FALLBACK = 1
MATCH_STRONG = 2


def match_level(server: Server, outbound: Dict[str, Any]) -> int:
    """xray 中的代理出站与该服务器的匹配程度

    协议必须相同，tag 双方都存在时也必须相同。之后比对地址/端口/UUID
    以及安全参数，任一方为空的字段视为通配。地址不同（如 IP 与域名）时，
    只要 UUID 和 reality/tls 关键参数一致也认为匹配。
    """
    if server.protocol != outbound.get("protocol"):
        return MATCH_NONE
    tag = outbound.get("tag") or ""
    if server.tag and tag and server.tag != tag:
        return MATCH_NONE

    ob = _outbound_identity(outbound)
    sv = _outbound_identity(server.to_outbound())

    def same(key: str) -> bool:
        return not ob[key] or not sv[key] or ob[key] == sv[key]

    addr_match = not ob["address"] or not server.address or ob["address"].lower() == server.address.lower()
    port_match = not ob["port"] or ob["port"] == server.port

    strong = addr_match and port_match and same("uuid") and same("security")
    fallback = same("uuid") and same("security") and same("sni")
    if ob["security"] == Security.REALITY.value:
        strong = strong and same("sni") and same("pbk") and same("sid") and same("fp")
        fallback = fallback and same("pbk") and same("sid") and same("fp")
    if strong:
        return MATCH_STRONG
    return MATCH_FALLBACK if fallback else MATCH_NONE


def server_matches_outbound(server: Server, outbound: Dict[str, Any]) -> bool:
    return match_level(server, outbound) != MATCH_NONE


class ServerManager:
    """服务器管理器（门面）"""

    def __init__(
        self,
        config: AppConfig,
        runner: Optional[ICommandRunner] = None,
        loader: Optional[SubscriptionLoader] = None,
        tester: Optional[PingTester] = None,
        controller: Optional[XrayController] = None,
    ) -> None:
        self.config = config
        self.loader = loader or SubscriptionLoader(
            url=config.subscription_url,
            snapshot_path=config.snapshot_path,
            cache_duration=config.cache_duration,
            timeout=config.ping_timeout,
        )
        self.tester = tester or PingTester(
            timeout=config.ping_timeout,
            concurrency=config.probe_concurrency,
        )
        self.controller = controller or XrayController(
            config_path=config.config_path,
            restart_command=config.xray_restart_command,
            runner=runner or SubprocessRunner(),
        )
        self._lock = threading.Lock()
        self._servers: List[Server] = []
        self._current: Optional[Server] = None

    # ── 列表 ────────────────────────────────────────────────
    def load(self, cancel: Optional[threading.Event] = None) -> List[Server]:
        """从订阅加载服务器列表（按 ID 去重，保留第一个）

        Raises:
            NoValidEntries: 加载结果为空
        """
        servers = self.loader.load(cancel)

        unique: List[Server] = []
        seen = set()
        for server in servers:
            if server.id in seen:
                logger.debug(f"  -> 跳过重复服务器: {server.name} ({server.id})")
                continue
            seen.add(server.id)
            unique.append(server)

        if not unique:
            raise NoValidEntries("订阅中没有可用的服务器")

        with self._lock:
            self._servers = unique
            # 当前服务器不在新列表中时清空，在的话换成新对象
            if self._current is not None:
                self._current = next((s for s in unique if s.id == self._current.id), None)

        if len(unique) < len(servers):
            logger.info(f"  -> 已去除 {len(servers) - len(unique)} 个重复服务器")
        return list(unique)

    def refresh(self, cancel: Optional[threading.Event] = None) -> List[Server]:
        """丢弃缓存后重新加载"""
        self.loader.invalidate_cache()
        return self.load(cancel)

    def list(self) -> List[Server]:
        with self._lock:
            return list(self._servers)

    def get_by_id(self, server_id: str) -> Server:
        """Raises:
            ServerNotFound: 列表中没有该 ID
        """
        with self._lock:
            for server in self._servers:
                if server.id == server_id:
                    return server
        raise ServerNotFound(f"服务器不存在: {server_id}")

    # ── 当前服务器 ──────────────────────────────────────────
    def current(self) -> Optional[Server]:
        with self._lock:
            return self._current

    def set_current(self, server_id: str) -> Server:
        """只更新指针，不改动 xray 配置"""
        server = self.get_by_id(server_id)
        with self._lock:
            self._current = server
        return server

    def switch(self, server_id: str) -> Server:
        """切换 xray 到指定服务器，重启成功后才更新当前服务器"""
        server = self.get_by_id(server_id)
        self.controller.update_and_restart(server)
        with self._lock:
            self._current = server
        return server

    def detect_current(self) -> Optional[Server]:
        """根据 xray 配置中的代理出站识别当前服务器

        没有代理出站时清空当前服务器并返回 None。

        Raises:
            ConfigError: xray 配置不可读
            CurrentServerMismatch: 代理出站与已加载的服务器都不匹配
        """
        config = self.controller.get_current_config()
        outbound = find_proxy_outbound(config)
        if outbound is None:
            with self._lock:
                self._current = None
            logger.debug("  -> xray 配置中没有代理出站")
            return None

        # 完全匹配优先，其次是只按 UUID / 安全参数的匹配，同级取第一个
        best, best_level = None, MATCH_NONE
        for server in self.list():
            level = match_level(server, outbound)
            if level > best_level:
                best, best_level = server, level
            if level == MATCH_STRONG:
                break

        if best is not None:
            with self._lock:
                self._current = best
            logger.info(f"  -> ✓ 当前服务器: {best.name}")
            return best

        with self._lock:
            self._current = None
        raise CurrentServerMismatch("当前 xray 配置与订阅中的任何服务器都不匹配")

    # ── 测试 ────────────────────────────────────────────────
    def test_ping(
        self,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[PingResult]:
        """探测全部服务器，返回按延迟排序的新列表

        Raises:
            ProbeError: 服务器列表为空
        """
        servers = self.list()
        if not servers:
            raise ProbeError("服务器列表为空，请先加载订阅")
        return ping.sort_by_latency(self.tester.test(servers, progress, cancel))

    def quick_select(
        self,
        limit: int = DEFAULT_QUICK_SELECT_LIMIT,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[PingResult]:
        """探测后只返回最快的 limit 个可用服务器"""
        return ping.quick_select(self.test_ping(progress, cancel), limit)

    def status(self, cancel: Optional[threading.Event] = None) -> ServerStatus:
        """当前服务器状态（附带一次实时探测）"""
        current = self.current()
        if current is None:
            return ServerStatus(
                status=ConnectionStatus.NO_SERVER_SELECTED,
                message="当前未选择服务器",
            )

        result = self.tester.test_one(current, cancel)
        if result.available:
            return ServerStatus(
                status=ConnectionStatus.CONNECTED,
                server=current,
                latency_ms=result.latency_ms,
                message=f"已连接到 {current.name} (延迟 {result.latency_ms}ms)",
            )
        return ServerStatus(
            status=ConnectionStatus.DISCONNECTED,
            server=current,
            message=f"{current.name} 连接失败: {result.error}",
        )


# ── 全局单例 ────────────────────────────────────────────────
_server_manager: Optional[ServerManager] = None


def get_server_manager(config: AppConfig) -> ServerManager:
    """获取全局 ServerManager 实例（首次调用时按 config 创建）"""
    global _server_manager
    if _server_manager is None:
        _server_manager = ServerManager(config)
    return _server_manager
