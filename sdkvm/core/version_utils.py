"""
版本工具模块。

提供按候选声明的排序规则解析、比较和排序版本号的函数。
"""

import re
from typing import Any, Callable, Iterable, List, Optional, TypeVar

T = TypeVar("T")

_SEMVER_PATTERN = re.compile(r'^(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+](.+))?$')


def _parse_version(version_str: str) -> tuple:
    """
    解析版本字符串为可比较的元组。

    参数:
        version_str: 版本字符串

    返回:
        版本元组 (major, minor, patch, ...)
    """
    parts = re.findall(r'\d+', version_str)
    return tuple(int(p) for p in parts) if parts else (0,)


def _numeric_key(version: str) -> tuple:
    # 数字部分相同时按原始字符串区分，例如 21.0.1-tem 与 21.0.1-zulu
    has_digits = bool(re.search(r'\d', version))
    return (1 if has_digits else 0, _parse_version(version), version)


def _semver_key(version: str) -> tuple:
    """
    semver 排序键。

    最多两个点且能解析为 major.minor.patch[-meta] 的版本按语义比较，
    预发布版本排在正式版本之前；其他格式按文本排序并排在可解析版本之后。
    """
    match = _SEMVER_PATTERN.match(version) if version.count(".") <= 2 else None
    if not match:
        return (0, (), 0, version)
    major, minor, patch, meta = match.groups()
    numbers = (int(major), int(minor or 0), int(patch or 0))
    return (1, numbers, 0 if meta else 1, meta or "")


def _lexicographic_key(version: str) -> tuple:
    return (version,)


_SCHEMES = {
    "numeric": _numeric_key,
    "semver": _semver_key,
    "lexicographic": _lexicographic_key,
}


def version_key(version: str, scheme: Optional[str] = None) -> tuple:
    """
    获取版本号在指定排序规则下的排序键。

    参数:
        version: 版本字符串
        scheme: 排序规则，未声明或未知时使用 lexicographic

    返回:
        可比较的排序键
    """
    return _SCHEMES.get(scheme or "lexicographic", _lexicographic_key)(version)


def sort_versions_desc(
    items: Iterable[T],
    scheme: Optional[str] = None,
    get_version: Callable[[Any], str] = lambda item: item.version,
) -> List[T]:
    """
    按版本号降序排列。

    参数:
        items: 带版本号的对象序列
        scheme: 排序规则
        get_version: 从对象中取出版本字符串的函数

    返回:
        排序后的列表
    """
    return sorted(items, key=lambda item: version_key(get_version(item), scheme), reverse=True)


def latest_version(versions: Iterable[str], scheme: Optional[str] = None) -> Optional[str]:
    """
    获取最新版本。

    参数:
        versions: 版本字符串序列
        scheme: 排序规则

    返回:
        最新版本号，序列为空返回 None
    """
    versions = list(versions)
    if not versions:
        return None
    return max(versions, key=lambda v: version_key(v, scheme))


def split_version_parts(version: str) -> dict[str, str]:
    """
    解析版本号的各个部分，用于渲染下载 URL 模板。

    参数:
        version: 版本字符串

    返回:
        包含 major, minor, patch 的字典
    """
    parts = version.split(".")
    return {
        "major": parts[0] if len(parts) > 0 else "",
        "minor": parts[1] if len(parts) > 1 else "",
        "patch": parts[2] if len(parts) > 2 else "",
    }
