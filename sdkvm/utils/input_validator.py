"""
输入验证模块。

候选名称和版本号会被直接用作目录名，使用前必须经过这里的校验。
"""

import os
import re
from typing import Any, Dict


class InputValidationError(ValueError):
    """输入验证错误异常。"""
    pass


class InputValidator:
    """
    输入验证器类。

    提供候选名称、版本号、URL 与路径的验证功能。
    """

    CANDIDATE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')
    VERSION_PATTERN = re.compile(r'^[a-zA-Z0-9._+-]+$')
    URL_PATTERN = re.compile(r'^(https?|file)://\S+$', re.IGNORECASE)
    MAX_CANDIDATE_ID_LENGTH = 50
    MAX_VERSION_LENGTH = 100
    MAX_PATH_LENGTH = 1024
    RESERVED_NAMES = {"current", ".", ".."}

    @classmethod
    def validate_candidate_id(cls, candidate: str) -> bool:
        """
        验证候选名称的有效性。

        参数:
            candidate: 候选名称

        返回:
            验证通过返回 True，否则抛出 InputValidationError
        """
        if not candidate or not candidate.strip():
            raise InputValidationError("候选名称不能为空")

        candidate = candidate.strip()

        if len(candidate) > cls.MAX_CANDIDATE_ID_LENGTH:
            raise InputValidationError(f"候选名称不能超过 {cls.MAX_CANDIDATE_ID_LENGTH} 个字符")

        if not cls.CANDIDATE_ID_PATTERN.match(candidate):
            raise InputValidationError("候选名称只能包含字母、数字、下划线和连字符")

        return True

    @classmethod
    def validate_version_string(cls, version: str) -> bool:
        """
        验证版本号字符串的有效性。

        版本号会作为安装目录名，因此不允许路径分隔符、保留名以及 ".."。

        参数:
            version: 版本号字符串

        返回:
            验证通过返回 True，否则抛出 InputValidationError
        """
        if not version or not version.strip():
            raise InputValidationError("版本号不能为空")

        version = version.strip()

        if len(version) > cls.MAX_VERSION_LENGTH:
            raise InputValidationError(f"版本号不能超过 {cls.MAX_VERSION_LENGTH} 个字符")

        if not cls.VERSION_PATTERN.match(version):
            raise InputValidationError(f"版本号格式无效: {version}")

        if version in cls.RESERVED_NAMES or ".." in version or version.startswith("."):
            raise InputValidationError(f"版本号不能用作目录名: {version}")

        return True

    @classmethod
    def validate_url(cls, url: str) -> bool:
        """
        验证 URL 的有效性，空字符串视为未配置。

        参数:
            url: URL 字符串

        返回:
            验证通过返回 True，否则抛出 InputValidationError
        """
        if not url or not url.strip():
            return True

        if not cls.URL_PATTERN.match(url.strip()):
            raise InputValidationError(f"URL 格式无效: {url}")

        return True

    @classmethod
    def validate_path(cls, path: str) -> bool:
        """
        验证路径的有效性。

        参数:
            path: 路径字符串

        返回:
            验证通过返回 True，否则抛出 InputValidationError
        """
        if path is None:
            return True

        if len(path) > cls.MAX_PATH_LENGTH:
            raise InputValidationError(f"路径不能超过 {cls.MAX_PATH_LENGTH} 个字符")

        return True

    @classmethod
    def safe_join_path(cls, base_path: str, *paths: str) -> str:
        """
        安全连接路径，防止路径遍历。

        参数:
            base_path: 基础路径
            *paths: 要连接的路径部分

        返回:
            安全连接后的路径

        抛出:
            InputValidationError: 如果结果路径位于 base_path 之外
        """
        base = os.path.abspath(base_path)
        joined = os.path.abspath(os.path.join(base, *paths))
        if joined != base and not joined.startswith(base + os.sep):
            raise InputValidationError(f"路径遍历检测: {joined}")
        return joined

    @classmethod
    def safe_get_config_value(cls, config: Dict[str, Any], key: str, default: Any = None) -> Any:
        """
        按点分隔的键安全地获取嵌套配置值。

        参数:
            config: 配置字典
            key: 键名，例如 "settings.catalog_url"
            default: 默认值

        返回:
            配置值或默认值
        """
        value: Any = config
        for k in key.split('.'):
            if not isinstance(value, dict) or k not in value:
                return default
            value = value[k]
        return value
