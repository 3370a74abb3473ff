"""
TCP 连通性测试

- 线程池并发探测（并发上限默认 10）
- 结果按输入顺序返回，每完成一个触发一次进度回调
- 支持通过 threading.Event 取消，进行中的连接会在轮询间隔内中止
"""
import errno
import os
import select
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional

from xray_manager.core.errors import ProbeError
from xray_manager.core.utils import logger
from xray_manager.lib.server.models import PingResult, Server


DEFAULT_CONCURRENCY = 10
_POLL_INTERVAL = 0.1

# (已完成数, 总数, 刚完成的服务器名)
ProgressCallback = Callable[[int, int, str], None]

_IN_PROGRESS = {0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN}


def _resolve(host: str, port: int, deadline: float, timeout: float,
             cancel: Optional[threading.Event]) -> List[tuple]:
    """在后台线程中解析地址，等待受 deadline 与 cancel 约束

    解析线程无法中断，超时或取消后由它自行结束。

    Raises:
        ProbeError: 被取消
        OSError: 解析失败或超时
    """
    outcome: dict = {}
    done = threading.Event()

    def worker() -> None:
        try:
            outcome["infos"] = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except OSError as e:
            outcome["error"] = e
        except UnicodeError as e:
            outcome["error"] = OSError(f"无法解析地址: {host}: {e}")
        finally:
            done.set()

    threading.Thread(target=worker, name=f"resolve-{host}", daemon=True).start()
    while True:
        if cancel is not None and cancel.is_set():
            raise ProbeError("探测已取消")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"地址解析超时 ({timeout}s)")
        if done.wait(min(_POLL_INTERVAL, remaining)):
            break

    if "error" in outcome:
        raise outcome["error"]
    return outcome["infos"]


def _dial(host: str, port: int, timeout: float, cancel: Optional[threading.Event]) -> None:
    """建立 TCP 连接后立即关闭

    Raises:
        ProbeError: 被取消
        OSError: 解析失败、连接被拒绝或超时（解析时间也计入 timeout）
    """
    deadline = time.monotonic() + timeout
    infos = _resolve(host, port, deadline, timeout, cancel)

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, addr in infos:
        sock = socket.socket(family, socktype, proto)
        try:
            sock.setblocking(False)
            err = sock.connect_ex(addr)
            if err not in _IN_PROGRESS:
                raise OSError(err, os.strerror(err))

            while True:
                if cancel is not None and cancel.is_set():
                    raise ProbeError("探测已取消")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"连接超时 ({timeout}s)")
                _, writable, failed = select.select([], [sock], [sock], min(_POLL_INTERVAL, remaining))
                if writable or failed:
                    err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
                    if err:
                        raise OSError(err, os.strerror(err))
                    return
        except TimeoutError:
            raise
        except OSError as e:
            last_error = e
        finally:
            sock.close()

    if last_error is not None:
        raise last_error
    raise OSError(f"无法解析地址: {host}")


class PingTester:
    """并发 TCP 探测器"""

    def __init__(self, timeout: int = 5, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self.timeout = timeout
        self.concurrency = max(1, concurrency)

    def test_one(self, server: Server, cancel: Optional[threading.Event] = None) -> PingResult:
        """探测单个服务器，失败信息记录在 PingResult.error 中"""
        if cancel is not None and cancel.is_set():
            return PingResult(server=server, error=ProbeError("探测已取消"))

        start = time.monotonic()
        try:
            _dial(server.address, server.port, self.timeout, cancel)
        except ProbeError as e:
            return PingResult(server=server, error=e)
        except OSError as e:
            return PingResult(server=server, error=ProbeError(f"连接失败: {e}"))

        latency = int((time.monotonic() - start) * 1000)
        return PingResult(server=server, available=True, latency_ms=latency)

    def test(
        self,
        servers: List[Server],
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[PingResult]:
        """并发探测所有服务器

        Args:
            servers: 待测服务器
            progress: 进度回调 (completed, total, server_name)
            cancel: 取消信号

        Returns:
            与输入等长、同序的结果列表

        Raises:
            ProbeError: 输入为空
        """
        if not servers:
            raise ProbeError("没有需要测试的服务器")

        total = len(servers)
        results: List[Optional[PingResult]] = [None] * total
        completed = 0

        logger.debug(f"  -> 开始探测 {total} 个服务器 (并发 {self.concurrency}, 超时 {self.timeout}s)")

        # 等待全部任务结束后才返回，取消时也不提前返回
        with ThreadPoolExecutor(max_workers=min(self.concurrency, total)) as pool:
            futures = {pool.submit(self.test_one, s, cancel): i for i, s in enumerate(servers)}
            for future in as_completed(futures):
                index = futures[future]
                results[index] = future.result()
                completed += 1
                if progress is not None:
                    progress(completed, total, servers[index].name)

        available = sum(1 for r in results if r is not None and r.available)
        logger.info(f"  -> 探测完成: {available}/{total} 可用")
        return [r for r in results if r is not None]


# ============================================================
# 排序与筛选
# ============================================================
def sort_by_latency(results: List[PingResult]) -> List[PingResult]:
    """可用的在前（延迟升序，同延迟按名称），不可用的保持原顺序排在后面"""
    available = sorted(
        (r for r in results if r.available),
        key=lambda r: (r.latency_ms, r.server.name.casefold()),
    )
    unavailable = [r for r in results if not r.available]
    return available + unavailable


def quick_select(results: List[PingResult], limit: int) -> List[PingResult]:
    """只保留可用服务器并按延迟排序，limit <= 0 表示不限制"""
    ranked = [r for r in sort_by_latency(results) if r.available]
    return ranked[:limit] if limit > 0 else ranked


def available_servers(results: List[PingResult]) -> List[Server]:
    return [r.server for r in results if r.available]


def fastest_server(results: List[PingResult]) -> Optional[PingResult]:
    ranked = quick_select(results, 1)
    return ranked[0] if ranked else None


def sort_alphabetically(servers: List[Server]) -> List[Server]:
    return sorted(servers, key=lambda s: s.name.casefold())
