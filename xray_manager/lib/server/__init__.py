"""
Server 子系统 - 订阅服务器管理

模块结构:
- models.py        数据模型（Server、出站配置子树、PingResult、ServerStatus）
- parser.py        vless:// 链接解析
- subscription.py  订阅下载、解码、缓存与快照回退
- ping.py          并发 TCP 探测与排序
- names.py         名称显示优化（去公共后缀，仅用于展示）
- manager.py       核心编排器（ServerManager，依赖 lib/xray，需单独导入）
"""
from xray_manager.lib.server.models import PingResult, Server, ServerStatus
from xray_manager.lib.server.parser import parse_vless_url, server_from_url

__all__ = ["PingResult", "Server", "ServerStatus", "parse_vless_url", "server_from_url"]
