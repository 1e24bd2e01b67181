"""
Sdkvm 核心模块。

提供配置管理、本地清单、远程目录、安装器、版本解析和候选管理引擎。
"""

from .interfaces import (
    IConfigManager, IInventoryStore, ICatalogClient, IArchiveInstaller, IVersionResolver, IChangeNotifier,
)
from .config_manager import ConfigManager, ConfigValidationError, ConfigSaveError
from .errors import (
    SdkvmError, NetworkError, CatalogTimeout, ParseError, DownloadError, DownloadTimeout,
    ChecksumError, ExtractError, DiskSpaceError, StorageError, OperationCancelled,
    UnknownCandidate, NotInstalled, UnknownVersion, NoDefaultSet, CannotRemoveDefault, InUse, StaleCatalog,
)
from .models import (
    Candidate, VersionEntry, VersionStatus, CatalogVersion, CatalogSnapshot,
    InstallToken, InstallResult, StateChangeEvent, EventKind, CandidateSummary,
)
from .inventory_store import InventoryStore
from .catalog_client import CatalogClient
from .archive_installer import ArchiveInstaller
from .version_resolver import VersionResolver
from .change_notifier import ChangeNotifier, Subscription
from .candidate_engine import CandidateEngine
from . import version_utils

__all__ = [
    "IConfigManager", "IInventoryStore", "ICatalogClient", "IArchiveInstaller", "IVersionResolver", "IChangeNotifier",
    "ConfigManager", "ConfigValidationError", "ConfigSaveError",
    "SdkvmError", "NetworkError", "CatalogTimeout", "ParseError", "DownloadError", "DownloadTimeout",
    "ChecksumError", "ExtractError", "DiskSpaceError", "StorageError", "OperationCancelled",
    "UnknownCandidate", "NotInstalled", "UnknownVersion", "NoDefaultSet", "CannotRemoveDefault", "InUse", "StaleCatalog",
    "Candidate", "VersionEntry", "VersionStatus", "CatalogVersion", "CatalogSnapshot",
    "InstallToken", "InstallResult", "StateChangeEvent", "EventKind", "CandidateSummary",
    "InventoryStore", "CatalogClient", "ArchiveInstaller", "VersionResolver",
    "ChangeNotifier", "Subscription", "CandidateEngine",
    "version_utils",
]
