"""
xray-manager 命令行入口

用法:
    xray-manager list                 列出订阅中的服务器
    xray-manager ping                 探测所有服务器并按延迟排序
    xray-manager quick [--limit N]    探测后从最快的 N 个中选择并切换
    xray-manager switch [ID]          切换到指定服务器（不带 ID 时交互选择）
    xray-manager status               当前服务器状态
    xray-manager refresh              丢弃缓存重新下载订阅
    xray-manager detect               根据 xray 配置识别当前服务器
    xray-manager init-config          生成配置模板
"""
import argparse
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from xray_manager.core.config import (
    DEFAULT_CONFIG_FILE,
    create_template,
    load_config_or_create_template,
)
from xray_manager.core.errors import CurrentServerMismatch, XrayManagerError, public_error_message
from xray_manager.core.schema import ConnectionStatus
from xray_manager.core.utils import logger, setup_logger
from xray_manager.lib import ui
from xray_manager.lib.server.manager import DEFAULT_QUICK_SELECT_LIMIT, ServerManager, get_server_manager
from xray_manager.lib.server.models import PingResult, Server
from xray_manager.lib.server.names import optimize_names
from xray_manager.lib.server.ping import sort_alphabetically


ACTIONS = ["list", "ping", "quick", "switch", "status", "refresh", "detect", "init-config"]


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Ctrl+C 时设置取消信号，而不是直接打断线程池"""
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _security_label(server: Server) -> str:
    if server.stream_settings is None:
        return "none"
    return server.stream_settings.security.kind.value


def _display_names(servers: List[Server]) -> List[str]:
    names, _ = optimize_names([s.name for s in servers])
    return names


def _try_detect(manager: ServerManager) -> Optional[Server]:
    try:
        return manager.detect_current()
    except CurrentServerMismatch as e:
        logger.debug(f"  -> {e}")
    except XrayManagerError as e:
        logger.warning(f"  -> [WARN] 无法识别当前服务器: {e}")
    return None


def _run_probe(manager: ServerManager, limit: Optional[int] = None) -> List[PingResult]:
    """带进度条的探测，limit 不为 None 时只返回最快的 limit 个"""
    total = len(manager.list())
    with cancel_on_interrupt() as cancel, ui.create_probe_progress() as progress:
        task = progress.add_task("探测中", total=total, current="")

        def on_progress(done: int, _total: int, name: str) -> None:
            progress.update(task, completed=done, current=name)

        if limit is None:
            results = manager.test_ping(on_progress, cancel)
        else:
            results = manager.quick_select(limit, on_progress, cancel)

    if cancel.is_set():
        ui.print_warning("探测已取消，结果不完整")
    return results


def _print_results(results: List[PingResult]) -> None:
    names = _display_names([r.server for r in results])
    rows = []
    for i, (result, name) in enumerate(zip(results, names), start=1):
        if result.available:
            rows.append([str(i), name, f"{result.latency_ms} ms", "[green]可用[/green]", result.server.id])
        else:
            rows.append([str(i), name, "-", f"[red]{result.error}[/red]", result.server.id])
    ui.print_table("探测结果", ["#", "名称", "延迟", "状态", "ID"], rows)


def _switch(manager: ServerManager, server_id: str) -> None:
    server = manager.switch(server_id)
    ui.print_success(f"已切换到 {server.name} ({server.endpoint})")


# ============================================================
# 各动作实现
# ============================================================
def action_list(manager: ServerManager, args: argparse.Namespace) -> None:
    servers = sort_alphabetically(manager.load())
    current = _try_detect(manager)
    names = _display_names(servers)
    rows = []
    for i, (server, name) in enumerate(zip(servers, names), start=1):
        marker = "★" if current is not None and current.id == server.id else ""
        rows.append([str(i), marker, name, server.endpoint, _security_label(server), server.id])
    ui.print_table(f"服务器列表 ({len(servers)})", ["#", "", "名称", "地址", "安全", "ID"], rows)


def action_ping(manager: ServerManager, args: argparse.Namespace) -> None:
    manager.load()
    _print_results(_run_probe(manager))


def action_quick(manager: ServerManager, args: argparse.Namespace) -> None:
    manager.load()
    results = _run_probe(manager, limit=args.limit)
    if not results:
        ui.print_warning("没有可用的服务器")
        return

    names = _display_names([r.server for r in results])
    options = [f"{name}  ({r.latency_ms} ms)" for r, name in zip(results, names)]
    index = ui.prompt_select("选择要切换的服务器", options)
    if index is None:
        return
    _switch(manager, results[index].server.id)


def action_switch(manager: ServerManager, args: argparse.Namespace) -> None:
    servers = sort_alphabetically(manager.load())
    server_id = args.server_id
    if not server_id:
        names = _display_names(servers)
        options = [f"{name}  [{s.endpoint}]" for s, name in zip(servers, names)]
        index = ui.prompt_select("选择要切换的服务器", options)
        if index is None:
            return
        server_id = servers[index].id
        if not ui.prompt_confirm(f"确认切换到 {servers[index].name}?"):
            return
    _switch(manager, server_id)


def action_status(manager: ServerManager, args: argparse.Namespace) -> None:
    manager.load()
    _try_detect(manager)
    status = manager.status()
    style = {
        ConnectionStatus.CONNECTED: "green",
        ConnectionStatus.DISCONNECTED: "red",
        ConnectionStatus.NO_SERVER_SELECTED: "yellow",
    }[status.status]
    lines = [f"状态: {status.status.value}", status.message]
    if status.server is not None:
        lines.insert(1, f"服务器: {status.server.name} ({status.server.endpoint})")
    ui.print_panel("当前服务器", "\n".join(lines), style=style)


def action_refresh(manager: ServerManager, args: argparse.Namespace) -> None:
    servers = manager.refresh()
    ui.print_success(f"订阅已刷新: {len(servers)} 个服务器")


def action_detect(manager: ServerManager, args: argparse.Namespace) -> None:
    manager.load()
    server = manager.detect_current()
    if server is None:
        ui.print_info("xray 配置中没有代理出站")
    else:
        ui.print_success(f"当前服务器: {server.name} ({server.id})")


_HANDLERS = {
    "list": action_list,
    "ping": action_ping,
    "quick": action_quick,
    "switch": action_switch,
    "status": action_status,
    "refresh": action_refresh,
    "detect": action_detect,
}


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Xray 订阅服务器管理")
    parser.add_argument("action", choices=ACTIONS, help="执行的动作")
    parser.add_argument("server_id", nargs="?", help="switch 的目标服务器 ID")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_FILE, help="配置文件路径")
    parser.add_argument("--limit", type=int, default=DEFAULT_QUICK_SELECT_LIMIT, help="quick 显示的服务器数量")
    parser.add_argument("--log-file", type=Path, help="日志文件路径")
    parser.add_argument("--debug", action="store_true", help="调试模式")
    args = parser.parse_args(argv)

    # 初始化日志（必须在所有其他操作之前）
    setup_logger(args.log_file, debug=args.debug)

    if args.action == "init-config":
        create_template(args.config)
        return

    try:
        config = load_config_or_create_template(args.config)
        setup_logger(args.log_file, level=config.log_level, debug=args.debug)
        manager = get_server_manager(config)
        _HANDLERS[args.action](manager, args)
    except XrayManagerError as e:
        logger.debug(f"[ERROR] {type(e).__name__}: {e}", exc_info=True)
        ui.print_error(public_error_message(e))
        sys.exit(1)
    except KeyboardInterrupt:
        ui.print_warning("已取消")
        sys.exit(130)


if __name__ == "__main__":
    main()
