"""
服务器名称显示优化

订阅里的名称经常带有相同的后缀（如 " | provider.com"），列表展示时去掉
覆盖率足够高的公共后缀。只影响显示，Server.name 始终保持原样。
"""
from collections import Counter
from typing import List, Tuple

from xray_manager.core.utils import logger


DEFAULT_THRESHOLD = 0.7
MIN_SUFFIX_LEN = 3

_MEANINGFUL_WORDS = {
    "com", "org", "net", "edu", "gov", "mil", "int",
    "east", "west", "north", "south", "prod", "test", "dev", "staging",
}
_SEPARATORS = (".", "-", "_", " ")


def _is_meaningful_suffix(suffix: str) -> bool:
    if len(suffix) < MIN_SUFFIX_LEN or suffix.isdigit():
        return False
    if len(set(suffix)) == 1:
        return False
    if suffix in _MEANINGFUL_WORDS:
        return True
    if any(sep in suffix for sep in _SEPARATORS):
        return True
    return len(suffix) >= 5 and any(ch.isalpha() for ch in suffix)


def _is_valid_name(name: str) -> bool:
    return len(name) >= MIN_SUFFIX_LEN and any(ch.isalnum() for ch in name)


def find_common_suffixes(names: List[str]) -> List[str]:
    """出现在至少两个名称中的有意义后缀，按长度降序"""
    if len(names) < 2:
        return []
    counter: Counter = Counter()
    for name in names:
        counter.update(
            {name[-i:] for i in range(MIN_SUFFIX_LEN, len(name) + 1) if _is_meaningful_suffix(name[-i:])}
        )
    common = [s for s, count in counter.items() if count >= 2]
    return sorted(common, key=len, reverse=True)


def optimize_names(names: List[str], threshold: float = DEFAULT_THRESHOLD) -> Tuple[List[str], str]:
    """去掉覆盖率 >= threshold 的最长公共后缀

    Returns:
        (优化后的名称列表, 被去掉的后缀；未优化时为空字符串)
    """
    if not 0 < threshold <= 1:
        threshold = DEFAULT_THRESHOLD

    best, best_coverage = "", 0.0
    for suffix in find_common_suffixes(names):
        coverage = sum(1 for n in names if n.endswith(suffix)) / len(names)
        if coverage >= threshold and coverage > best_coverage:
            best, best_coverage = suffix, coverage

    if not best:
        return list(names), ""

    optimized: List[str] = []
    for name in names:
        short = name[: -len(best)].strip() if name.endswith(best) else name
        optimized.append(short if _is_valid_name(short) else name)

    logger.debug(f"  -> 名称优化: 去掉后缀 '{best}' (覆盖率 {best_coverage:.0%})")
    return optimized, best
