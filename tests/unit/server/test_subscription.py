"""
订阅加载测试

覆盖核心场景：重试后成功、快照回退、缓存 TTL、解码与部分解析失败
"""
import base64
import json
import time
from pathlib import Path

import pytest

from xray_manager.core.errors import (
    CompoundError,
    DecodeError,
    FetchError,
    NoValidEntries,
    SnapshotUnavailable,
)
from xray_manager.lib.server import subscription
from xray_manager.lib.server.subscription import SubscriptionLoader
from tests.mocks import MINIMAL_URL, REALITY_URL, UUID, encode_subscription


def _loader(url: str, tmp_path: Path, cache_duration: int = 3600) -> SubscriptionLoader:
    return SubscriptionLoader(
        url=url,
        snapshot_path=tmp_path / "cache" / "servers.json",
        cache_duration=cache_duration,
        timeout=2,
    )


class TestLoad:
    """Load 流程测试"""

    def test_retry_then_success(self, subscription_server, tmp_path, no_sleep):
        """前两次 500，第三次成功：共 3 次请求，快照已写入"""
        subscription_server.responses = [
            (500, "error"),
            (500, "error"),
            (200, encode_subscription(REALITY_URL)),
        ]
        loader = _loader(subscription_server.url, tmp_path)

        servers = loader.load()

        assert len(servers) == 1
        assert servers[0].name == "NL"
        assert subscription_server.request_count == 3
        assert loader.snapshot_path.exists()
        # 线性退避
        assert no_sleep == [1, 2]

    def test_fallback_to_snapshot(self, subscription_server, tmp_path, no_sleep):
        """三次都失败时使用快照"""
        subscription_server.responses = [(500, "error")]
        loader = _loader(subscription_server.url, tmp_path)
        loader.snapshot_path.parent.mkdir(parents=True)
        loader.snapshot_path.write_text(json.dumps([{
            "id": "test",
            "name": "Test Server",
            "address": "127.0.0.3",
            "port": 8080,
            "protocol": "vless",
        }]))

        servers = loader.load()

        assert len(servers) == 1
        assert servers[0].id == "test"
        assert servers[0].name == "Test Server"
        assert servers[0].tag == "vless-reality"
        assert subscription_server.request_count == 3

    def test_fallback_does_not_refresh_timestamp(self, subscription_server, tmp_path, no_sleep):
        """快照回退后缓存仍视为过期，下一次 load 重新请求"""
        subscription_server.responses = [(500, "error")]
        loader = _loader(subscription_server.url, tmp_path)
        loader.snapshot_path.parent.mkdir(parents=True)
        loader.snapshot_path.write_text(json.dumps([{"id": "a", "name": "A", "address": "1.1.1.1", "port": 1}]))

        loader.load()
        assert not loader.is_cache_valid()
        assert loader.cached_servers()[0].id == "a"

        loader.load()
        assert subscription_server.request_count == 6

    def test_decode_failure_falls_back(self, subscription_server, tmp_path, no_sleep):
        """解码失败同样回退到快照"""
        subscription_server.responses = [(200, "!!! not base64 !!!")]
        loader = _loader(subscription_server.url, tmp_path)
        loader.snapshot_path.parent.mkdir(parents=True)
        loader.snapshot_path.write_text(json.dumps([{"id": "a", "name": "A", "address": "1.1.1.1", "port": 1}]))

        servers = loader.load()

        assert [s.id for s in servers] == ["a"]
        assert subscription_server.request_count == 1

    def test_no_snapshot_raises_compound(self, subscription_server, tmp_path, no_sleep):
        """下载失败且没有快照"""
        subscription_server.responses = [(503, "down")]
        loader = _loader(subscription_server.url, tmp_path)

        with pytest.raises(CompoundError) as exc_info:
            loader.load()

        assert "503" in str(exc_info.value)
        assert "快照" in str(exc_info.value)

    def test_corrupt_snapshot_raises_compound(self, subscription_server, tmp_path, no_sleep):
        """快照损坏视为不可用"""
        subscription_server.responses = [(500, "error")]
        loader = _loader(subscription_server.url, tmp_path)
        loader.snapshot_path.parent.mkdir(parents=True)
        loader.snapshot_path.write_text("{not json")

        with pytest.raises(CompoundError):
            loader.load()

    @pytest.mark.parametrize("entries", [
        [["x"]],
        ["server"],
        [{"id": "a", "streamSettings": "tls"}],
        [{"id": "a", "settings": "x"}],
        [{"id": "a", "settings": {"vnext": ["1.2.3.4"]}}],
        [{"id": "a", "settings": {"vnext": [{"address": "1.2.3.4", "users": ["u"]}]}}],
        [{"id": "a", "streamSettings": {"security": "tls", "tlsSettings": ["sni"]}}],
    ])
    def test_malformed_snapshot_entry_raises_compound(self, subscription_server, tmp_path, no_sleep, entries):
        """快照条目或子树不是对象时视为快照不可用"""
        subscription_server.responses = [(500, "error")]
        loader = _loader(subscription_server.url, tmp_path)
        loader.snapshot_path.parent.mkdir(parents=True)
        loader.snapshot_path.write_text(json.dumps(entries))

        with pytest.raises(CompoundError) as exc_info:
            loader.load()

        assert isinstance(exc_info.value.primary, FetchError)
        assert isinstance(exc_info.value.secondary, SnapshotUnavailable)

    def test_empty_body_is_fetch_failure(self, subscription_server, tmp_path, no_sleep):
        """200 但响应体为空也算失败并重试"""
        subscription_server.responses = [(200, ""), (200, encode_subscription(MINIMAL_URL))]
        loader = _loader(subscription_server.url, tmp_path)

        servers = loader.load()

        assert len(servers) == 1
        assert subscription_server.request_count == 2

    def test_cache_ttl(self, subscription_server, tmp_path):
        """TTL 内复用缓存，过期后重新请求"""
        subscription_server.responses = [(200, encode_subscription(MINIMAL_URL))]
        loader = _loader(subscription_server.url, tmp_path, cache_duration=1)

        loader.load()
        time.sleep(0.5)
        loader.load()
        assert subscription_server.request_count == 1

        time.sleep(0.7)
        loader.load()
        assert subscription_server.request_count == 2

    def test_invalidate_cache(self, subscription_server, tmp_path):
        """清空缓存后强制重新下载"""
        subscription_server.responses = [(200, encode_subscription(MINIMAL_URL))]
        loader = _loader(subscription_server.url, tmp_path)

        loader.load()
        loader.invalidate_cache()
        assert loader.cached_servers() == []
        loader.load()

        assert subscription_server.request_count == 2

    def test_returns_copy(self, subscription_server, tmp_path):
        """返回的列表可以随意修改"""
        subscription_server.responses = [(200, encode_subscription(MINIMAL_URL))]
        loader = _loader(subscription_server.url, tmp_path)

        first = loader.load()
        first.clear()

        assert len(loader.load()) == 1

    def test_snapshot_written_atomically(self, subscription_server, tmp_path):
        """快照内容可读回，且没有残留临时文件"""
        subscription_server.responses = [(200, encode_subscription(MINIMAL_URL, REALITY_URL))]
        loader = _loader(subscription_server.url, tmp_path)

        servers = loader.load()

        data = json.loads(loader.snapshot_path.read_text(encoding="utf-8"))
        assert data == [s.to_dict() for s in servers]
        assert list(loader.snapshot_path.parent.iterdir()) == [loader.snapshot_path]
        assert loader.snapshot_path.stat().st_mode & 0o777 == 0o644


class TestBodySizeLimit:
    """响应体大小上限"""

    @pytest.fixture
    def small_limit(self, monkeypatch):
        monkeypatch.setattr(subscription, "MAX_BODY_SIZE", 64)

    def _with_snapshot(self, url: str, tmp_path: Path) -> SubscriptionLoader:
        loader = _loader(url, tmp_path)
        loader.snapshot_path.parent.mkdir(parents=True)
        loader.snapshot_path.write_text(json.dumps([{"id": "snap", "name": "Snap", "address": "1.1.1.1", "port": 1}]))
        return loader

    def test_content_length_over_limit_falls_back(self, subscription_server, tmp_path, no_sleep, small_limit):
        """Content-Length 超过上限时每次下载都失败，使用快照"""
        subscription_server.responses = [(200, "A" * 1000)]
        loader = self._with_snapshot(subscription_server.url, tmp_path)

        servers = loader.load()

        assert [s.id for s in servers] == ["snap"]
        assert subscription_server.request_count == 3
        assert not loader.is_cache_valid()

    def test_streamed_body_over_limit_falls_back(self, subscription_server, tmp_path, no_sleep, small_limit):
        """没有 Content-Length 时边读边计数，超过上限同样失败"""
        subscription_server.send_length = False
        subscription_server.responses = [(200, "A" * 1000)]
        loader = self._with_snapshot(subscription_server.url, tmp_path)

        servers = loader.load()

        assert [s.id for s in servers] == ["snap"]
        assert subscription_server.request_count == 3

    @pytest.mark.parametrize("send_length, message", [
        (True, "响应体过大"),
        (False, "响应体超过 64 bytes"),
    ])
    def test_over_limit_error_message(self, subscription_server, tmp_path, no_sleep, small_limit, send_length, message):
        subscription_server.send_length = send_length
        subscription_server.responses = [(200, "A" * 1000)]
        loader = _loader(subscription_server.url, tmp_path)

        with pytest.raises(CompoundError) as exc_info:
            loader.load()

        assert isinstance(exc_info.value.primary, FetchError)
        assert message in str(exc_info.value.primary)

    def test_body_within_limit_without_length(self, subscription_server, tmp_path):
        """不带 Content-Length 的正常响应仍可读完"""
        subscription_server.send_length = False
        subscription_server.responses = [(200, encode_subscription(MINIMAL_URL))]
        loader = _loader(subscription_server.url, tmp_path)

        servers = loader.load()

        assert len(servers) == 1
        assert subscription_server.request_count == 1


class TestDecodeAndParse:
    """解码与解析测试"""

    def test_standard_base64(self, tmp_path):
        loader = _loader("http://unused", tmp_path)
        servers = loader.decode_and_parse(encode_subscription(MINIMAL_URL, REALITY_URL))
        assert [s.name for s in servers] == ["Test", "NL"]

    def test_urlsafe_without_padding(self, tmp_path):
        """URL-safe 字母表、无填充"""
        raw = "\n".join([REALITY_URL, MINIMAL_URL]).encode("utf-8") + b"\n" + b"\xff" * 6
        blob = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
        assert "-" in blob or "_" in blob

        loader = _loader("http://unused", tmp_path)
        servers = loader.decode_and_parse(blob)

        assert len(servers) == 2

    def test_non_vless_lines_ignored(self, tmp_path):
        """非 vless:// 行被忽略"""
        blob = encode_subscription("vmess://abc", "", "# comment", MINIMAL_URL, "trojan://x@y:1")
        servers = _loader("http://unused", tmp_path).decode_and_parse(blob)
        assert len(servers) == 1

    def test_crlf_lines(self, tmp_path):
        """Windows 换行"""
        blob = base64.b64encode(f"{MINIMAL_URL}\r\n{REALITY_URL}\r\n".encode()).decode()
        servers = _loader("http://unused", tmp_path).decode_and_parse(blob)
        assert len(servers) == 2

    def test_partial_failures_tolerated(self, tmp_path):
        """部分链接解析失败时保留成功的"""
        blob = encode_subscription(MINIMAL_URL, "vless://bad@example.com:443", f"vless://{UUID}@example.com:99999")
        servers = _loader("http://unused", tmp_path).decode_and_parse(blob)
        assert [s.name for s in servers] == ["Test"]

    def test_all_failures(self, tmp_path):
        """全部解析失败"""
        blob = encode_subscription("vless://bad@example.com:443")
        with pytest.raises(NoValidEntries):
            _loader("http://unused", tmp_path).decode_and_parse(blob)

    def test_no_vless_lines(self, tmp_path):
        """没有 vless:// 行"""
        with pytest.raises(NoValidEntries):
            _loader("http://unused", tmp_path).decode_and_parse(encode_subscription("vmess://abc"))

    def test_invalid_base64(self, tmp_path):
        with pytest.raises(DecodeError):
            _loader("http://unused", tmp_path).decode_and_parse("%%%%")
