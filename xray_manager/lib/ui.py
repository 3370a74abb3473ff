"""
终端交互

选择服务器、确认切换、展示列表 / 探测结果 / 状态面板。
输入走 prompt_toolkit，输出统一交给 rich 的 console。
"""
from typing import List, Optional

from prompt_toolkit import prompt
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table


console = Console()

_YES = {"y", "yes", "是", "确认"}
_CANCEL = {"q", "quit", "取消"}

# 级别 -> (图标, 颜色)
_LEVELS = {
    "info": ("ℹ", "cyan"),
    "success": ("✓", "green"),
    "warning": ("⚠", "yellow"),
    "error": ("✗", "red"),
}


# ============================================================
# 输入
# ============================================================
def prompt_confirm(message: str, default: bool = True) -> bool:
    """y/n 确认，直接回车取 default"""
    answer = prompt(f"{message} {'[Y/n]' if default else '[y/N]'}: ").strip().lower()
    return answer in _YES if answer else default


def prompt_select(message: str, options: List[str], default_index: int = 0) -> Optional[int]:
    """按序号选择一项

    直接回车选中 default_index；输入 q 或无法识别的序号都视为放弃，
    返回 None，调用方不会因为输错而切换到别的服务器。
    """
    console.print(f"\n[bold cyan]{message}[/bold cyan]")
    for i, option in enumerate(options):
        marker = "→" if i == default_index else " "
        console.print(f"  {marker} [{i + 1}] {option}")

    answer = prompt(f"序号 [{default_index + 1}] (q 取消): ").strip()
    if not answer:
        return default_index
    if answer.lower() in _CANCEL:
        return None
    if answer.isdigit() and 1 <= int(answer) <= len(options):
        return int(answer) - 1

    print_warning(f"无效的序号: {answer}，已取消")
    return None


# ============================================================
# 输出
# ============================================================
def _print(level: str, message: str) -> None:
    icon, color = _LEVELS[level]
    console.print(f"[{color}]{icon}[/{color}] {message}")


def print_info(message: str) -> None:
    _print("info", message)


def print_success(message: str) -> None:
    _print("success", message)


def print_warning(message: str) -> None:
    _print("warning", message)


def print_error(message: str) -> None:
    _print("error", message)


def print_panel(title: str, content: str, style: str = "blue") -> None:
    """状态面板，style 为边框颜色"""
    console.print(Panel(content, title=title, border_style=style, expand=False))


def print_table(title: str, columns: List[str], rows: List[List[str]]) -> None:
    """服务器列表 / 探测结果表格，最后一列 (ID) 不换行"""
    table = Table(title=title, header_style="bold cyan")
    for i, column in enumerate(columns):
        table.add_column(column, no_wrap=i == len(columns) - 1)
    for row in rows:
        table.add_row(*row)
    console.print(table)


def create_probe_progress() -> Progress:
    """探测进度条，current 字段显示刚完成的服务器名；结束后自动清除"""
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("{task.fields[current]}"),
        console=console,
        transient=True,
    )
