"""
xray-manager - Xray 订阅服务器管理

从订阅地址加载 vless 服务器，测试连通性，并原子地切换 xray 出站配置。
"""
__version__ = "1.0.0"
