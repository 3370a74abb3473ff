"""
订阅加载

职责:
- 下载 base64 编码的订阅内容（最多 3 次尝试，线性退避）
- 解码并逐行解析 vless:// 链接
- 内存缓存（TTL）+ 磁盘快照（servers.json）
- 下载失败或解码失败时回退到磁盘快照
"""
import base64
import binascii
import json
import os
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import requests

from xray_manager import __version__
from xray_manager.core.errors import (
    CacheError,
    CompoundError,
    DecodeError,
    FetchError,
    InputError,
    NoValidEntries,
    SnapshotUnavailable,
)
from xray_manager.core.utils import logger
from xray_manager.lib.server.models import Server
from xray_manager.lib.server.parser import server_from_url


MAX_ATTEMPTS = 3
MAX_BODY_SIZE = 10 * 1024 * 1024
CONNECT_TIMEOUT = 10   # 建连 + TLS 握手
READ_TIMEOUT = 15      # 等待响应头
CHUNK_SIZE = 64 * 1024
USER_AGENT = f"xray-manager/{__version__}"

_URLSAFE_TABLE = str.maketrans("-_", "+/")


def _b64decode_lenient(text: str) -> bytes:
    """依次尝试标准和 URL-safe 字母表，补齐缺失的 '='"""
    compact = "".join(text.split())
    padded = compact + "=" * (-len(compact) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except binascii.Error:
        pass
    try:
        return base64.b64decode(padded.translate(_URLSAFE_TABLE), validate=True)
    except binascii.Error as e:
        raise DecodeError(f"base64 解码失败: {e}") from e


class SubscriptionLoader:
    """订阅加载器

    load() 在加载器锁内串行执行；缓存有效时直接返回内存副本。
    快照回退不更新 last_update，下一次 load() 会重新尝试下载。
    """

    def __init__(
        self,
        url: str,
        snapshot_path: Path,
        cache_duration: int = 3600,
        timeout: int = 5,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.url = url
        self.snapshot_path = Path(snapshot_path)
        self.cache_duration = cache_duration
        self.timeout = timeout
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._servers: List[Server] = []
        self._last_update: Optional[float] = None

    # ── 公共接口 ────────────────────────────────────────────
    def load(self, cancel: Optional[threading.Event] = None) -> List[Server]:
        """加载服务器列表

        Args:
            cancel: 取消信号，在重试间隔和读取响应体时检查

        Returns:
            服务器列表副本

        Raises:
            CompoundError: 下载/解码失败，且快照也不可用
        """
        with self._lock:
            if self._is_cache_valid_locked():
                logger.debug(f"  -> 使用内存缓存 ({len(self._servers)} 个服务器)")
                return list(self._servers)

            try:
                blob = self._fetch_with_retry(cancel)
                servers = self.decode_and_parse(blob)
            except (FetchError, DecodeError) as e:
                logger.warning(f"  -> [WARN] 订阅加载失败，尝试使用本地快照: {e}")
                return self._fallback_locked(e)

            try:
                self._save_snapshot(servers)
            except CacheError as e:
                logger.warning(f"  -> [WARN] 快照保存失败: {e}")

            self._servers = servers
            self._last_update = time.monotonic()
            logger.info(f"  -> ✓ 订阅已更新: {len(servers)} 个服务器")
            return list(servers)

    def invalidate_cache(self) -> None:
        """清空内存缓存，下一次 load() 强制重新下载"""
        with self._lock:
            self._servers = []
            self._last_update = None

    def cached_servers(self) -> List[Server]:
        """返回内存缓存的副本（不触发下载）"""
        with self._lock:
            return list(self._servers)

    def is_cache_valid(self) -> bool:
        with self._lock:
            return self._is_cache_valid_locked()

    def decode_and_parse(self, blob: str) -> List[Server]:
        """解码订阅内容并解析所有 vless:// 行

        Raises:
            DecodeError: base64 解码失败
            NoValidEntries: 没有 vless:// 行，或全部解析失败
        """
        decoded = _b64decode_lenient(blob).decode("utf-8", errors="replace")

        urls = [line.strip() for line in decoded.split("\n")]
        urls = [u for u in urls if u.startswith("vless://")]
        if not urls:
            raise NoValidEntries("订阅中没有 vless:// 链接")

        servers: List[Server] = []
        failures: List[str] = []
        for url in urls:
            try:
                servers.append(server_from_url(url))
            except InputError as e:
                failures.append(str(e))

        if not servers:
            raise NoValidEntries(f"所有 vless:// 链接均解析失败: {'; '.join(failures)}")
        if failures:
            logger.warning(f"  -> [WARN] {len(failures)} 条链接解析失败: {'; '.join(failures)}")
        return servers

    # ── 下载 ────────────────────────────────────────────────
    def _fetch_with_retry(self, cancel: Optional[threading.Event]) -> str:
        last_error: Optional[FetchError] = None
        for attempt in range(MAX_ATTEMPTS):
            if attempt > 0:
                # 线性退避: 第 2 次前等 1 秒，第 3 次前等 2 秒
                if cancel is not None:
                    if cancel.wait(attempt):
                        raise FetchError("订阅下载已取消")
                else:
                    time.sleep(attempt)
            if cancel is not None and cancel.is_set():
                raise FetchError("订阅下载已取消")

            try:
                return self._fetch_once(cancel)
            except FetchError as e:
                last_error = e
                logger.debug(f"  -> 第 {attempt + 1}/{MAX_ATTEMPTS} 次下载失败: {e}")

        raise FetchError(f"订阅下载失败 (已尝试 {MAX_ATTEMPTS} 次): {last_error}") from last_error

    def _fetch_once(self, cancel: Optional[threading.Event]) -> str:
        """单次 HTTP GET，整体耗时不超过 self.timeout 秒，响应体最大 10 MB"""
        deadline = time.monotonic() + self.timeout
        timeouts = (min(CONNECT_TIMEOUT, self.timeout), min(READ_TIMEOUT, self.timeout))
        headers = {"User-Agent": USER_AGENT, "Connection": "close"}

        session = self._session_factory()
        try:
            with session.get(self.url, headers=headers, timeout=timeouts, stream=True) as resp:
                if not 200 <= resp.status_code < 300:
                    raise FetchError(f"HTTP 状态码异常: {resp.status_code}")

                length = resp.headers.get("Content-Length")
                if length and length.isdigit() and int(length) > MAX_BODY_SIZE:
                    raise FetchError(f"响应体过大: {length} bytes")

                chunks: List[bytes] = []
                total = 0
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if cancel is not None and cancel.is_set():
                        raise FetchError("订阅下载已取消")
                    if time.monotonic() > deadline:
                        raise FetchError(f"订阅下载超时 ({self.timeout}s)")
                    total += len(chunk)
                    if total > MAX_BODY_SIZE:
                        raise FetchError(f"响应体超过 {MAX_BODY_SIZE} bytes")
                    chunks.append(chunk)
        except requests.RequestException as e:
            raise FetchError(f"HTTP 请求失败: {e}") from e
        finally:
            session.close()

        body = b"".join(chunks).decode("utf-8", errors="replace").strip()
        if not body:
            raise FetchError("订阅返回空内容")
        return body

    # ── 缓存 / 快照 ─────────────────────────────────────────
    def _is_cache_valid_locked(self) -> bool:
        if not self._servers or self._last_update is None:
            return False
        return time.monotonic() - self._last_update < self.cache_duration

    def _fallback_locked(self, primary: Exception) -> List[Server]:
        try:
            servers = self._load_snapshot()
        except SnapshotUnavailable as e:
            logger.error(f"  -> ✗ 本地快照不可用: {e}")
            raise CompoundError(primary, e) from primary

        # 快照只作为兜底，不刷新 last_update
        self._servers = servers
        logger.info(f"  -> 已使用本地快照: {len(servers)} 个服务器")
        return list(servers)

    def _load_snapshot(self) -> List[Server]:
        if not self.snapshot_path.exists():
            raise SnapshotUnavailable(f"快照文件不存在: {self.snapshot_path}")
        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise ValueError("快照顶层不是数组")
            servers = [Server.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise SnapshotUnavailable(f"快照读取失败: {e}") from e
        if not servers:
            raise SnapshotUnavailable("快照为空")
        return servers

    def _save_snapshot(self, servers: List[Server]) -> None:
        """原子写入快照（临时文件 + rename），文件 0644，目录 0755"""
        directory = self.snapshot_path.parent
        tmp = directory / f"{self.snapshot_path.name}.tmp.{os.getpid()}"
        try:
            directory.mkdir(mode=0o755, parents=True, exist_ok=True)
            payload = json.dumps([s.to_dict() for s in servers], indent=2, ensure_ascii=False)
            tmp.write_text(payload, encoding="utf-8")
            tmp.chmod(0o644)
            os.replace(tmp, self.snapshot_path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise CacheError(f"快照写入失败: {e}") from e
        logger.debug(f"  -> 快照已保存: {self.snapshot_path}")
