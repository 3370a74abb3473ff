"""
Pytest 共享 Fixtures

提供可复用的配置、mock 服务、本地订阅服务器和临时文件系统。
"""
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Iterator, List, Tuple

import pytest

from xray_manager.core.config import AppConfig
from xray_manager.lib.server import subscription
from tests.mocks import INITIAL_OUTBOUNDS, MockRunner


@pytest.fixture
def mock_runner() -> MockRunner:
    """新建一个干净的 MockRunner"""
    return MockRunner()


@pytest.fixture
def xray_config_file(tmp_path: Path) -> Path:
    """带一个代理出站和两个哨兵出站的 xray 配置"""
    config_dir = tmp_path / "xray"
    config_dir.mkdir()
    path = config_dir / "04_outbounds.json"
    data = {
        "log": {"loglevel": "warning"},
        "outbounds": INITIAL_OUTBOUNDS,
    }
    path.write_text(json.dumps(data, indent=4), encoding="utf-8")
    return path


@pytest.fixture
def app_config(tmp_path: Path, xray_config_file: Path) -> AppConfig:
    """指向临时目录的程序配置"""
    return AppConfig(
        admin_id=1,
        bot_token="12345678:" + "a" * 30,
        subscription_url="http://127.0.0.1:9/sub",
        config_path=str(xray_config_file),
        cache_dir=str(tmp_path / "cache"),
        ping_timeout=1,
        cache_duration=3600,
    )


@pytest.fixture
def no_sleep(monkeypatch) -> List[float]:
    """让重试退避立即返回，记录每次等待的秒数"""
    calls: List[float] = []
    monkeypatch.setattr(subscription.time, "sleep", lambda s: calls.append(s))
    return calls


# ── 本地订阅服务器 ───────────────────────────────────────────
class SubscriptionServer:
    """
    本地 HTTP 订阅服务器

    responses 中的 (状态码, 响应体) 按请求顺序返回，用完后重复最后一个。
    send_length 为 False 时不发送 Content-Length，响应体读到连接关闭为止。
    """

    def __init__(self) -> None:
        self.responses: List[Tuple[int, str]] = [(200, "")]
        self.request_count = 0
        self.send_length = True
        self._lock = threading.Lock()
        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), self._make_handler())
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}/sub"

    def _next_response(self) -> Tuple[int, str]:
        with self._lock:
            index = min(self.request_count, len(self.responses) - 1)
            self.request_count += 1
            return self.responses[index]

    def _make_handler(self):
        owner = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                status, body = owner._next_response()
                payload = body.encode("utf-8")
                self.send_response(status)
                if owner.send_length:
                    self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format, *args):
                pass

        return Handler

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()


@pytest.fixture
def subscription_server(monkeypatch) -> Iterator[SubscriptionServer]:
    # 本地请求不走环境变量中的代理
    for key in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(key, raising=False)
    server = SubscriptionServer()
    server.start()
    yield server
    server.stop()
