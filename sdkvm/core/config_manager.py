"""
配置管理器模块。

提供应用程序配置的加载、保存和验证功能。
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from sdkvm.utils.logger import get_logger, get_app_home
from sdkvm.core.interfaces import IConfigManager
from sdkvm.core.models import Candidate
from sdkvm.utils.input_validator import InputValidator, InputValidationError

logger = get_logger()


class ConfigValidationError(Exception):
    """配置验证错误异常。"""
    pass


class ConfigSaveError(Exception):
    """配置保存错误异常。"""
    pass


VERSION_SCHEMES = ("numeric", "semver", "lexicographic")


def _fsync_dir(dir_path: Path) -> None:
    """同步目录项，保证 rename 在崩溃后仍然可见。"""
    if os.name == "nt":
        return
    fd = os.open(str(dir_path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_save_json(file_path: Path, data: Any, indent: int = 2) -> None:
    """
    原子保存 JSON 数据到文件，防止写入中断导致文件损坏。

    数据在函数返回前已经写入磁盘（flush + fsync），
    崩溃后文件要么是旧内容，要么是完整的新内容。

    参数:
        file_path: 目标文件路径
        data: 要保存的数据
        indent: JSON 缩进
    """
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, file_path)
        _fsync_dir(file_path.parent)
    except BaseException:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError as cleanup_error:
                logger.warning(f"清理临时文件 {temp_path} 失败: {cleanup_error}")
        raise


class ConfigManager(IConfigManager):
    """
    配置管理器类。

    负责管理应用程序配置的加载、保存、验证和访问。
    实现 IConfigManager 抽象接口。
    """

    REQUIRED_FIELDS = {
        "settings": dict,
    }

    SETTINGS_FIELDS = {
        "sdk_root": str,
        "catalog_url": str,
        "catalog_freshness": int,
        "request_timeout": int,
        "download_timeout": int,
        "keep_downloads": bool,
        "event_buffer_size": int,
        "candidates": dict,
    }

    DEFAULT_SETTINGS = {
        "catalog_freshness": 86400,
        "request_timeout": 30,
        "download_timeout": 0,
        "keep_downloads": False,
        "event_buffer_size": 256,
    }

    def __init__(self, config_dir: Optional[Path] = None):
        """
        初始化配置管理器。

        参数:
            config_dir: 配置目录，默认为应用程序数据目录（SDKVM_HOME 或 ~/.sdkvm）
        """
        self.CONFIG_DIR = Path(config_dir) if config_dir else get_app_home()
        self.CONFIG_FILE = self.CONFIG_DIR / "config.json"
        self.CACHE_FILE = self.CONFIG_DIR / "cache.json"
        self.DEFAULT_CONFIG_PATH = self.CONFIG_DIR / "default_config.json"
        self._config: dict[str, Any] = {}
        self._cache: dict[str, Any] = {}
        self._cache_lock = threading.Lock()
        self._ensure_config_dir()
        self._ensure_default_config()

    def _ensure_config_dir(self) -> None:
        """确保配置目录存在。"""
        self.CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    def _ensure_default_config(self) -> None:
        """确保默认配置文件存在，如果不存在则生成。"""
        if not self.DEFAULT_CONFIG_PATH.exists():
            default_config = self._get_builtin_default_config()
            self._save_default_config(default_config)

    def _get_builtin_default_config(self) -> dict[str, Any]:
        """获取内置默认配置。"""
        return {
            "settings": {
                "sdk_root": str(self.CONFIG_DIR / "candidates"),
                "catalog_url": "",
                "candidates": {
                    "java": {
                        "name": "Java",
                        "root": "",
                        "version_scheme": "numeric",
                        "download_url_template": "",
                        "version_field": "version",
                    },
                    "maven": {
                        "name": "Maven",
                        "root": "",
                        "version_scheme": "semver",
                        "download_url_template": (
                            "https://archive.apache.org/dist/maven/maven-{major}/{version}/binaries/"
                            "apache-maven-{version}-bin.tar.gz"
                        ),
                        "version_field": "version",
                    },
                    "gradle": {
                        "name": "Gradle",
                        "root": "",
                        "version_scheme": "semver",
                        "download_url_template": "https://services.gradle.org/distributions/gradle-{version}-bin.zip",
                        "version_field": "version",
                    },
                },
                **self.DEFAULT_SETTINGS,
            },
        }

    def _save_default_config(self, config: dict[str, Any]) -> None:
        """保存默认配置到文件。"""
        try:
            atomic_save_json(self.DEFAULT_CONFIG_PATH, config, indent=2)
            logger.debug(f"默认配置已保存到 {self.DEFAULT_CONFIG_PATH}")
        except (IOError, OSError, TypeError) as e:
            logger.error(f"保存默认配置失败: {e}")
            raise ConfigSaveError(f"无法保存默认配置到 {self.DEFAULT_CONFIG_PATH}: {e}") from e

    def normalize_path(self, path: str) -> str:
        """
        规范化路径格式，展开用户目录。

        参数:
            path: 原始路径字符串

        返回:
            规范化后的路径字符串
        """
        if not path:
            return path
        return str(Path(path).expanduser())

    def get_default_config(self) -> dict[str, Any]:
        """
        获取默认配置。

        如果存在默认配置文件则从文件加载，否则返回内置默认配置。

        返回:
            默认配置字典
        """
        try:
            if self.DEFAULT_CONFIG_PATH.exists():
                logger.debug(f"从文件加载默认配置: {self.DEFAULT_CONFIG_PATH}")
                with open(self.DEFAULT_CONFIG_PATH, "r", encoding="utf-8") as f:
                    return json.load(f)
            logger.debug("使用内置默认配置")
            return self._get_builtin_default_config()
        except (IOError, OSError, json.JSONDecodeError) as e:
            logger.warning(f"加载默认配置文件失败，使用内置默认配置: {e}")
            return self._get_builtin_default_config()

    def load_config(self) -> dict[str, Any]:
        """
        加载配置文件。

        如果配置文件不存在，则创建默认配置文件。

        返回:
            配置字典
        """
        try:
            if not self.CONFIG_FILE.exists():
                logger.info(f"配置文件不存在，创建默认配置: {self.CONFIG_FILE}")
                self._config = self.get_default_config()
                self._ensure_backward_compatibility()
                self.save_config()
                self._load_cache()
                return self._config

            logger.debug(f"从文件加载配置: {self.CONFIG_FILE}")
            with open(self.CONFIG_FILE, "r", encoding="utf-8") as f:
                self._config = json.load(f)

            self._ensure_backward_compatibility()
            self.validate_config(self._config)
            self._load_cache()
            logger.debug("配置加载成功")
            return self._config
        except (IOError, OSError, json.JSONDecodeError) as e:
            logger.error(f"加载配置文件失败，使用默认配置: {e}")
            self._config = self.get_default_config()
            self._ensure_backward_compatibility()
            self._load_cache()
            return self._config
        except ConfigValidationError as e:
            logger.error(f"配置验证失败，使用默认配置: {e}")
            self._config = self.get_default_config()
            self._ensure_backward_compatibility()
            self._load_cache()
            return self._config

    def _ensure_backward_compatibility(self) -> None:
        """
        确保配置向后兼容，为旧版本配置添加新字段。
        """
        if not isinstance(self._config.get("settings"), dict):
            self._config["settings"] = {}

        settings = self._config["settings"]
        for field_name, value in self.DEFAULT_SETTINGS.items():
            if field_name not in settings:
                settings[field_name] = value

        if "sdk_root" not in settings:
            settings["sdk_root"] = str(self.CONFIG_DIR / "candidates")
        if "catalog_url" not in settings:
            settings["catalog_url"] = ""
        if "candidates" not in settings:
            settings["candidates"] = self._get_builtin_default_config()["settings"]["candidates"]

    def _load_cache(self) -> None:
        """加载缓存文件，损坏的缓存视为空缓存。"""
        with self._cache_lock:
            if self.CACHE_FILE.exists():
                try:
                    with open(self.CACHE_FILE, "r", encoding="utf-8") as f:
                        self._cache = json.load(f)
                except (IOError, OSError, json.JSONDecodeError) as e:
                    logger.warning(f"缓存文件损坏，已忽略: {e}")
                    self._cache = {}
            else:
                self._cache = {}

    def save_config(self, config: dict[str, Any] | None = None) -> None:
        """
        保存配置到文件。

        参数:
            config: 要保存的配置字典，如果为 None 则保存当前配置
        """
        try:
            if config is not None:
                self._config = config

            self.validate_config(self._config)

            logger.debug(f"保存配置到 {self.CONFIG_FILE}")
            atomic_save_json(self.CONFIG_FILE, self._config, indent=2)
            logger.debug("配置保存成功")
        except ConfigValidationError as e:
            logger.error(f"配置验证失败，无法保存: {e}")
            raise
        except (IOError, OSError, TypeError) as e:
            logger.error(f"保存配置失败: {e}")
            raise ConfigSaveError(f"无法保存配置到 {self.CONFIG_FILE}: {e}") from e

    def save_cache(self, cache: dict[str, Any] | None = None) -> None:
        """
        保存缓存到文件。

        参数:
            cache: 要保存的缓存字典，如果为 None 则保存当前缓存
        """
        with self._cache_lock:
            try:
                if cache is not None:
                    self._cache = cache

                logger.debug(f"保存缓存到 {self.CACHE_FILE}")
                atomic_save_json(self.CACHE_FILE, self._cache, indent=2)
                logger.debug("缓存保存成功")
            except (IOError, OSError, TypeError) as e:
                logger.error(f"保存缓存失败: {e}")
                raise ConfigSaveError(f"无法保存缓存到 {self.CACHE_FILE}: {e}") from e

    def validate_config(self, config: dict[str, Any]) -> bool:
        """
        验证配置的有效性。

        参数:
            config: 要验证的配置字典

        返回:
            验证通过返回 True

        抛出:
            ConfigValidationError: 配置验证失败时抛出
        """
        for field_name, expected_type in self.REQUIRED_FIELDS.items():
            if field_name not in config:
                raise ConfigValidationError(f"缺少必需字段: {field_name}")
            if not isinstance(config[field_name], expected_type):
                raise ConfigValidationError(
                    f"字段 '{field_name}' 必须是 {expected_type.__name__} 类型，"
                    f"实际为 {type(config[field_name]).__name__}"
                )

        settings = config["settings"]
        for field_name, expected_type in self.SETTINGS_FIELDS.items():
            if field_name not in settings:
                raise ConfigValidationError(f"settings 中缺少必需字段: {field_name}")
            value = settings[field_name]
            # bool 是 int 的子类，数值字段不接受布尔值
            if not isinstance(value, expected_type) or (expected_type is int and isinstance(value, bool)):
                raise ConfigValidationError(
                    f"字段 'settings.{field_name}' 必须是 {expected_type.__name__} 类型，"
                    f"实际为 {type(value).__name__}"
                )

        try:
            InputValidator.validate_url(settings["catalog_url"])
            for candidate_id, candidate_config in settings["candidates"].items():
                InputValidator.validate_candidate_id(candidate_id)
                if not isinstance(candidate_config, dict):
                    raise ConfigValidationError(f"候选 '{candidate_id}' 的配置必须是字典类型")
                scheme = candidate_config.get("version_scheme", "lexicographic")
                if scheme not in VERSION_SCHEMES:
                    raise ConfigValidationError(
                        f"候选 '{candidate_id}' 的 version_scheme 无效: {scheme}"
                    )
                InputValidator.validate_path(candidate_config.get("root") or "")
        except InputValidationError as e:
            raise ConfigValidationError(f"配置验证失败: {e}") from e

        logger.debug("配置验证通过")
        return True

    @property
    def config(self) -> dict[str, Any]:
        """
        获取配置字典（延迟加载）。

        返回:
            配置字典
        """
        if not self._config:
            self.load_config()
        return self._config

    def get_config(self) -> dict[str, Any]:
        """
        获取配置字典。

        返回:
            配置字典
        """
        return self.config

    def get_settings(self) -> dict[str, Any]:
        """
        获取 settings 配置部分。

        返回:
            settings 配置字典
        """
        return self.config.get("settings", {})

    def get_setting(self, key: str, default: Any = None) -> Any:
        """
        按点分隔的键获取 settings 中的值。

        参数:
            key: 键名，例如 "candidates.java.root"
            default: 默认值

        返回:
            配置值或默认值
        """
        return InputValidator.safe_get_config_value(self.get_settings(), key, default)

    def get_candidate_configs(self) -> dict[str, Any]:
        """
        获取所有候选的配置。

        返回:
            候选名称到配置字典的映射
        """
        return self.get_settings().get("candidates", {})

    def get_sdk_root(self) -> str:
        """获取所有候选安装目录的公共根目录。"""
        return self.normalize_path(self.get_settings().get("sdk_root", ""))

    def get_candidate_root(self, candidate: str) -> str:
        """
        获取指定候选的安装根目录，未单独配置时位于 sdk_root 下。

        参数:
            candidate: 候选名称

        返回:
            规范化后的根目录路径
        """
        root = self.get_candidate_configs().get(candidate, {}).get("root") or ""
        if root:
            return self.normalize_path(root)
        return str(Path(self.get_sdk_root()) / candidate)

    def get_candidates(self) -> List[Candidate]:
        """
        根据配置构建候选列表。

        返回:
            Candidate 列表，按配置中的顺序排列
        """
        candidates = []
        for candidate_id, candidate_config in self.get_candidate_configs().items():
            candidates.append(Candidate(
                id=candidate_id,
                name=candidate_config.get("name") or candidate_id,
                root=Path(self.get_candidate_root(candidate_id)),
                version_scheme=candidate_config.get("version_scheme", "lexicographic"),
                download_url_template=candidate_config.get("download_url_template", ""),
                version_field=candidate_config.get("version_field", "version"),
            ))
        return candidates

    def get_catalog_url(self) -> str:
        """获取远程目录的基础 URL。"""
        return self.get_settings().get("catalog_url", "")

    def get_catalog_freshness(self) -> int:
        """
        获取远程目录的新鲜度阈值（秒），超过该时间的缓存不能用于解析 latest。

        返回:
            新鲜度阈值（秒）
        """
        return self.get_settings().get("catalog_freshness", 86400)

    def get_request_timeout(self) -> int:
        """获取网络请求超时时间（秒）。"""
        return self.get_settings().get("request_timeout", 30)

    def get_download_timeout(self) -> int:
        """获取安装下载的默认截止时间（秒，0 表示不限制）。"""
        return self.get_settings().get("download_timeout", 0)

    def get_keep_downloads(self) -> bool:
        """安装完成后是否保留下载的安装包。"""
        return bool(self.get_settings().get("keep_downloads", False))

    def get_event_buffer_size(self) -> int:
        """获取每个事件订阅的缓冲区大小。"""
        return self.get_settings().get("event_buffer_size", 256)

    def get_inventory_dir(self) -> Path:
        """获取本地清单文件目录。"""
        return self.CONFIG_DIR / "inventory"

    def get_archive_dir(self) -> Path:
        """获取保留安装包的目录。"""
        return self.CONFIG_DIR / "archives"

    def get_cache(self) -> dict[str, Any]:
        """
        获取缓存配置部分。

        返回:
            cache 字典
        """
        if not self._config:
            self.load_config()
        return self._cache

    def set_cache(self, key: str, value: Any) -> None:
        """
        设置缓存值。

        参数:
            key: 缓存键名
            value: 缓存值
        """
        with self._cache_lock:
            self._cache[key] = value

    def set_setting(self, key: str, value: Any) -> None:
        """
        按点分隔的键设置 settings 中的值并保存。

        参数:
            key: 键名，例如 "catalog_url"
            value: 配置值
        """
        config = self.get_config()
        obj = config["settings"]
        keys = key.split(".")
        for k in keys[:-1]:
            if not isinstance(obj.get(k), dict):
                obj[k] = {}
            obj = obj[k]
        obj[keys[-1]] = value
        self.save_config(config)
