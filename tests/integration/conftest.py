"""
集成测试专用 Fixtures

提供指向本地订阅服务器和临时 xray 配置的完整 ServerManager，
只有重启命令使用 MockRunner。
"""
import socket
from typing import Iterator

import pytest

from xray_manager.core.config import AppConfig
from xray_manager.lib.server.manager import ServerManager
from tests.mocks import MockRunner


@pytest.fixture
def listening_port() -> Iterator[int]:
    """本地可连接的 TCP 端口，作为“可用”的服务器"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def integration_config(app_config: AppConfig, subscription_server) -> AppConfig:
    """订阅地址指向本地订阅服务器"""
    return app_config.model_copy(update={"subscription_url": subscription_server.url})


@pytest.fixture
def integration_manager(integration_config: AppConfig, mock_runner: MockRunner) -> ServerManager:
    return ServerManager(integration_config, runner=mock_runner)
