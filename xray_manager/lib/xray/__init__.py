"""
Xray 子系统 - 出站配置切换与服务重启
"""
from xray_manager.lib.xray.controller import XrayController, find_proxy_outbound

__all__ = ["XrayController", "find_proxy_outbound"]
