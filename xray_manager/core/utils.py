"""
工具函数
"""
import logging
import sys
from pathlib import Path
from typing import Optional


# 配置文件中的 log_level → logging 级别
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logger(
    log_file: Optional[Path] = None,
    level: str = "info",
    debug: bool = False,
) -> logging.Logger:
    """配置全局日志，终端按 level 输出（debug 模式输出 DEBUG），文件输出 DEBUG"""
    _logger = logging.getLogger("xray_manager")
    _logger.setLevel(logging.DEBUG)
    console_level = logging.DEBUG if debug else _LEVELS.get(level, logging.INFO)

    # 避免重复添加 handler，只更新已有 console handler 的级别
    if _logger.handlers:
        for h in _logger.handlers:
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
                h.setLevel(console_level)
        return _logger

    # 终端 Handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    _logger.addHandler(console_handler)

    # 文件 Handler (DEBUG 级别，详细日志)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] [%(module)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_formatter)
        _logger.addHandler(file_handler)

    return _logger


logger = logging.getLogger("xray_manager")
