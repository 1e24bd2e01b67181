"""
核心模块抽象接口定义。

定义 ConfigManager、InventoryStore、CatalogClient、ArchiveInstaller、
VersionResolver 和 ChangeNotifier 的抽象接口，引擎只依赖这些接口。
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, ContextManager, List, Optional

if TYPE_CHECKING:
    from sdkvm.core.models import (
        Candidate, CatalogSnapshot, CatalogVersion, InstallResult,
        InstallToken, StateChangeEvent, VersionEntry,
    )


class IConfigManager(ABC):
    """配置管理器抽象接口。"""

    @abstractmethod
    def get_config(self) -> dict[str, Any]:
        """获取配置字典。"""
        pass

    @abstractmethod
    def save_config(self, config: dict[str, Any] | None = None) -> None:
        """保存配置到文件。"""
        pass

    @abstractmethod
    def get_candidates(self) -> List["Candidate"]:
        """根据配置构建候选列表。"""
        pass

    @abstractmethod
    def get_catalog_url(self) -> str:
        """获取远程目录的基础 URL。"""
        pass

    @abstractmethod
    def get_catalog_freshness(self) -> int:
        """获取远程目录的新鲜度阈值（秒）。"""
        pass

    @abstractmethod
    def get_request_timeout(self) -> int:
        """获取网络请求超时时间（秒）。"""
        pass

    @abstractmethod
    def get_cache(self) -> dict[str, Any]:
        """获取缓存字典。"""
        pass

    @abstractmethod
    def set_cache(self, key: str, value: Any) -> None:
        """设置缓存值。"""
        pass

    @abstractmethod
    def save_cache(self, cache: dict[str, Any] | None = None) -> None:
        """保存缓存到文件。"""
        pass


class IInventoryStore(ABC):
    """本地清单抽象接口。"""

    @abstractmethod
    def list(self, candidate: str) -> List["VersionEntry"]:
        """列出候选在本地的全部版本条目。"""
        pass

    @abstractmethod
    def get(self, candidate: str, version: str) -> "VersionEntry":
        """获取版本条目，不存在时抛出 NotInstalled。"""
        pass

    @abstractmethod
    def find(self, candidate: str, version: str) -> Optional["VersionEntry"]:
        """获取版本条目，不存在时返回 None。"""
        pass

    @abstractmethod
    def record_install_start(self, candidate: str, version: str) -> "InstallToken":
        """记录安装开始（状态为 Downloading）。"""
        pass

    @abstractmethod
    def commit_install(self, token: "InstallToken", path: str, size: int) -> "VersionEntry":
        """提交安装成功（状态为 Installed）。"""
        pass

    @abstractmethod
    def record_failure(self, token: "InstallToken", reason: str) -> None:
        """记录安装失败（状态为 Broken）。"""
        pass

    @abstractmethod
    def remove(self, candidate: str, version: str) -> None:
        """删除版本记录。"""
        pass

    @abstractmethod
    def get_default(self, candidate: str) -> Optional["VersionEntry"]:
        """获取默认版本，未设置返回 None。"""
        pass

    @abstractmethod
    def set_default(self, candidate: str, version: str) -> "VersionEntry":
        """设置默认版本。"""
        pass

    @abstractmethod
    def clear_default(self, candidate: str) -> None:
        """清除默认版本。"""
        pass

    @abstractmethod
    def reconcile(self, candidate: str) -> None:
        """启动时修复崩溃遗留的状态，候选操作锁被占用时跳过。"""
        pass

    @abstractmethod
    def operation_lock(self, candidate: str) -> ContextManager:
        """获取候选的跨进程操作锁。"""
        pass

    @abstractmethod
    def version_path(self, candidate: str, version: str) -> Path:
        """获取版本的规范安装路径。"""
        pass


class ICatalogClient(ABC):
    """远程目录客户端抽象接口。"""

    @abstractmethod
    def refresh(self, candidate: Optional[str] = None, timeout: Optional[float] = None) -> "CatalogSnapshot":
        """从远程刷新目录并整体替换快照。"""
        pass

    @abstractmethod
    def current(self) -> "CatalogSnapshot":
        """获取最近一次的快照（可能已过期），不会阻塞。"""
        pass

    @abstractmethod
    def is_stale(self, candidate: str, max_age: float) -> bool:
        """候选的目录数据是否超过 max_age 秒或从未刷新。"""
        pass


class IArchiveInstaller(ABC):
    """安装器抽象接口。"""

    @abstractmethod
    def install(
        self,
        candidate: "Candidate",
        version: str,
        destination: Path,
        catalog_version: Optional["CatalogVersion"] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        status_callback: Optional[Callable[[str], None]] = None,
    ) -> "InstallResult":
        """下载并解压版本到 destination。"""
        pass

    @abstractmethod
    def uninstall(self, candidate: "Candidate", version: str, path: str) -> None:
        """删除已安装的版本目录。"""
        pass

    @abstractmethod
    def is_downloaded(self, candidate: str, version: str) -> bool:
        """是否在本地保留了该版本的安装包。"""
        pass


class IVersionResolver(ABC):
    """版本解析器抽象接口。"""

    @abstractmethod
    def resolve(self, candidate: "Candidate", token: str) -> str:
        """将版本标记解析为具体版本号。"""
        pass


class IChangeNotifier(ABC):
    """状态变更通知器抽象接口。"""

    @abstractmethod
    def subscribe(self, buffer_size: Optional[int] = None) -> Any:
        """创建新的事件订阅。"""
        pass

    @abstractmethod
    def publish(self, event: "StateChangeEvent") -> None:
        """发布事件，不会阻塞。"""
        pass

    @abstractmethod
    def close(self) -> None:
        """结束全部订阅。"""
        pass
