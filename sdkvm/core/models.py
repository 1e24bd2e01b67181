"""
数据模型模块。

定义候选、版本条目、远程目录快照和状态变更事件等数据结构。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
import uuid


class VersionStatus(str, Enum):
    """版本条目状态。"""

    AVAILABLE = "available"
    DOWNLOADING = "downloading"
    INSTALLED = "installed"
    BROKEN = "broken"


class EventKind(str, Enum):
    """状态变更事件类型。"""

    INSTALLED = "installed"
    UNINSTALLED = "uninstalled"
    DEFAULT_CHANGED = "default_changed"
    CATALOG_REFRESHED = "catalog_refreshed"


@dataclass(frozen=True)
class Candidate:
    """
    候选（一个可独立管理的 SDK 或工具系列）。

    属性:
        id: 候选标识，例如 "java"
        name: 显示名称
        root: 安装根目录，每个已安装版本占用其中一个子目录
        version_scheme: 版本排序规则（numeric、semver 或 lexicographic）
        download_url_template: 目录中缺少下载地址时使用的 URL 模板
        version_field: 远程索引中版本号所在的字段名
    """

    id: str
    name: str
    root: Path
    version_scheme: str = "lexicographic"
    download_url_template: str = ""
    version_field: str = "version"


@dataclass
class VersionEntry:
    """候选的一个版本，可能来自本地清单、远程目录或两者合并。"""

    candidate: str
    version: str
    status: VersionStatus
    path: Optional[str] = None
    installed_at: Optional[str] = None
    size: int = 0
    managed: bool = True
    reason: Optional[str] = None
    vendor: Optional[str] = None
    is_default: bool = False
    downloaded: bool = False

    @property
    def installed(self) -> bool:
        return self.status == VersionStatus.INSTALLED

    def to_record(self) -> Dict[str, Any]:
        """
        转换为清单文件中保存的记录。

        返回:
            可 JSON 序列化的字典
        """
        return {
            "version": self.version,
            "status": self.status.value,
            "path": self.path,
            "installed_at": self.installed_at,
            "size": self.size,
            "reason": self.reason,
            "vendor": self.vendor,
        }

    @classmethod
    def from_record(cls, candidate: str, record: Dict[str, Any]) -> "VersionEntry":
        """
        从清单记录构建版本条目。

        参数:
            candidate: 候选名称
            record: 清单中的记录字典

        返回:
            VersionEntry 实例
        """
        return cls(
            candidate=candidate,
            version=record["version"],
            status=VersionStatus(record.get("status", VersionStatus.BROKEN.value)),
            path=record.get("path"),
            installed_at=record.get("installed_at"),
            size=int(record.get("size") or 0),
            reason=record.get("reason"),
            vendor=record.get("vendor"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为对外输出（CLI JSON 等）使用的字典。"""
        data = self.to_record()
        data.update({
            "candidate": self.candidate,
            "managed": self.managed,
            "is_default": self.is_default,
            "downloaded": self.downloaded,
        })
        return data

    def copy(self, **changes: Any) -> "VersionEntry":
        return replace(self, **changes)


@dataclass(frozen=True)
class CatalogVersion:
    """远程目录中的一个版本。"""

    version: str
    vendor: Optional[str] = None
    download_url: str = ""
    checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "vendor": self.vendor,
            "download_url": self.download_url,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogVersion":
        return cls(
            version=data["version"],
            vendor=data.get("vendor"),
            download_url=data.get("download_url") or "",
            checksum=data.get("checksum"),
        )


@dataclass(frozen=True)
class CatalogSnapshot:
    """
    远程目录的不可变快照。

    每次成功刷新都会生成新的快照对象并整体替换旧快照，
    读者持有的快照永远不会被修改。
    """

    versions: Mapping[str, Tuple[CatalogVersion, ...]] = field(default_factory=lambda: MappingProxyType({}))
    fetched_at: Mapping[str, datetime] = field(default_factory=lambda: MappingProxyType({}))

    def versions_for(self, candidate: str) -> Tuple[CatalogVersion, ...]:
        return self.versions.get(candidate, ())

    def find(self, candidate: str, version: str) -> Optional[CatalogVersion]:
        for item in self.versions_for(candidate):
            if item.version == version:
                return item
        return None

    def is_refreshed(self, candidate: str) -> bool:
        """候选是否至少成功刷新过一次。"""
        return candidate in self.fetched_at

    def age(self, candidate: str, now: Optional[datetime] = None) -> Optional[float]:
        """
        获取候选目录数据的年龄。

        参数:
            candidate: 候选名称
            now: 当前时间，默认为 datetime.now()

        返回:
            距上次刷新的秒数，从未刷新返回 None
        """
        fetched = self.fetched_at.get(candidate)
        if fetched is None:
            return None
        return ((now or datetime.now()) - fetched).total_seconds()

    def with_candidate(
        self,
        candidate: str,
        versions: Tuple[CatalogVersion, ...],
        fetched_at: datetime,
    ) -> "CatalogSnapshot":
        """
        复制快照并替换一个候选的数据。

        返回:
            新的 CatalogSnapshot 实例
        """
        new_versions = dict(self.versions)
        new_versions[candidate] = tuple(versions)
        new_fetched = dict(self.fetched_at)
        new_fetched[candidate] = fetched_at
        return CatalogSnapshot(MappingProxyType(new_versions), MappingProxyType(new_fetched))

    def to_dict(self) -> Dict[str, Any]:
        return {
            candidate: {
                "last_update": self.fetched_at[candidate].isoformat(),
                "versions": [v.to_dict() for v in versions],
            }
            for candidate, versions in self.versions.items()
            if candidate in self.fetched_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogSnapshot":
        versions: Dict[str, Tuple[CatalogVersion, ...]] = {}
        fetched: Dict[str, datetime] = {}
        for candidate, cached in data.items():
            versions[candidate] = tuple(CatalogVersion.from_dict(v) for v in cached.get("versions", []))
            fetched[candidate] = datetime.fromisoformat(cached.get("last_update", "2000-01-01"))
        return cls(MappingProxyType(versions), MappingProxyType(fetched))


@dataclass(frozen=True)
class InstallToken:
    """record_install_start 返回的进行中安装操作句柄。"""

    candidate: str
    version: str
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass(frozen=True)
class InstallResult:
    """安装器成功安装后的结果。"""

    path: str
    size: int
    checksum_verified: bool = False


@dataclass(frozen=True)
class StateChangeEvent:
    """状态变更事件。"""

    kind: EventKind
    candidate: Optional[str] = None
    version: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass(frozen=True)
class CandidateSummary:
    """候选列表中的一行：候选本身、已安装数量和默认版本。"""

    candidate: Candidate
    installed: int
    default: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.candidate.id,
            "name": self.candidate.name,
            "root": str(self.candidate.root),
            "installed": self.installed,
            "default": self.default,
        }
