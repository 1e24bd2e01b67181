"""
候选管理引擎模块。

协调远程目录、本地清单、安装器和通知器，对外提供安装、卸载、
切换默认版本和刷新目录等操作，并负责并发控制和一致性。
"""

import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional

from sdkvm.core import version_utils
from sdkvm.core.archive_installer import ArchiveInstaller
from sdkvm.core.catalog_client import CatalogClient, render_download_url
from sdkvm.core.change_notifier import ChangeNotifier, Subscription
from sdkvm.core.config_manager import ConfigManager
from sdkvm.core.errors import CannotRemoveDefault, SdkvmError, UnknownCandidate
from sdkvm.core.interfaces import (
    IArchiveInstaller, ICatalogClient, IChangeNotifier, IInventoryStore, IVersionResolver,
)
from sdkvm.core.inventory_store import InventoryStore
from sdkvm.core.models import (
    Candidate, CandidateSummary, CatalogSnapshot, CatalogVersion,
    EventKind, StateChangeEvent, VersionEntry, VersionStatus,
)
from sdkvm.core.version_resolver import LATEST, VersionResolver
from sdkvm.utils.logger import get_logger

logger = get_logger()

REFRESH_ALL = "*"


def _matches(filter_text: Optional[str], *fields: Optional[str]) -> bool:
    """以空格分隔的每个关键词都必须出现在某个字段中（不区分大小写）。"""
    if not filter_text:
        return True
    haystacks = [f.lower() for f in fields if f]
    return all(any(term in h for h in haystacks) for term in filter_text.lower().split())


class CandidateEngine:
    """
    候选管理引擎类。

    同一候选的修改操作（安装、卸载、切换默认版本）由每个候选一把线程锁
    加清单的文件锁串行化，共享同一清单的多个进程之间同样互斥，
    不同候选之间互不影响。刷新目录不占用候选锁，但相同的刷新请求会合并。
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        inventory: Optional[IInventoryStore] = None,
        catalog: Optional[ICatalogClient] = None,
        installer: Optional[IArchiveInstaller] = None,
        notifier: Optional[IChangeNotifier] = None,
        resolver: Optional[IVersionResolver] = None,
    ):
        """
        初始化引擎，并对每个候选执行启动修复。

        参数:
            config_manager: 配置管理器实例，默认使用应用程序数据目录
            inventory: 本地清单
            catalog: 远程目录客户端
            installer: 安装器
            notifier: 状态变更通知器
            resolver: 版本解析器
        """
        self.config_manager = config_manager or ConfigManager()
        self.config_manager.load_config()
        self.candidates: Dict[str, Candidate] = {c.id: c for c in self.config_manager.get_candidates()}
        candidate_list = list(self.candidates.values())

        self.inventory = inventory or InventoryStore(self.config_manager, candidate_list)
        self.catalog = catalog or CatalogClient(self.config_manager, candidate_list)
        self.installer = installer or ArchiveInstaller(self.config_manager)
        self.notifier = notifier or ChangeNotifier(self.config_manager.get_event_buffer_size())
        self.freshness = self.config_manager.get_catalog_freshness()
        self.resolver = resolver or VersionResolver(self.catalog, self.inventory, self.freshness)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._flights: Dict[str, Future] = {}
        self._flights_lock = threading.Lock()

        for candidate_id in self.candidates:
            self.inventory.reconcile(candidate_id)
        logger.debug(f"引擎初始化完成，候选: {', '.join(self.candidates) or '无'}")

    def _candidate(self, candidate: str) -> Candidate:
        try:
            return self.candidates[candidate]
        except KeyError:
            raise UnknownCandidate(f"未配置的候选: {candidate}", candidate=candidate) from None

    def _lock_for(self, candidate: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(candidate)
            if lock is None:
                lock = self._locks[candidate] = threading.Lock()
            return lock

    def _publish(self, kind: EventKind, candidate: Optional[str] = None, version: Optional[str] = None) -> None:
        self.notifier.publish(StateChangeEvent(kind=kind, candidate=candidate, version=version))

    def list_candidates(self, filter: Optional[str] = None, installed_only: bool = False) -> List[CandidateSummary]:
        """
        列出配置的候选。

        参数:
            filter: 过滤关键词，匹配候选名称或显示名称
            installed_only: 只返回至少安装了一个版本的候选

        返回:
            CandidateSummary 列表
        """
        summaries = []
        for cand in self.candidates.values():
            if not _matches(filter, cand.id, cand.name):
                continue
            installed = sum(1 for entry in self.inventory.list(cand.id) if entry.installed)
            if installed_only and installed == 0:
                continue
            default = self.inventory.get_default(cand.id)
            summaries.append(CandidateSummary(
                candidate=cand,
                installed=installed,
                default=default.version if default else None,
            ))
        return summaries

    def list_versions(
        self,
        candidate: str,
        filter: Optional[str] = None,
        installed_only: bool = False,
        downloaded_only: bool = False,
        default_only: bool = False,
    ) -> List[VersionEntry]:
        """
        列出候选的版本，合并远程目录和本地清单。

        参数:
            candidate: 候选名称
            filter: 以空格分隔的关键词，每个都必须出现在版本号或发行商中
            installed_only: 只返回已安装的版本
            downloaded_only: 只返回保留了安装包的版本
            default_only: 只返回默认版本

        返回:
            按版本号降序排列的 VersionEntry 列表
        """
        cand = self._candidate(candidate)
        local = {entry.version: entry for entry in self.inventory.list(candidate)}
        merged: Dict[str, VersionEntry] = {}

        for catalog_version in self.catalog.current().versions_for(candidate):
            entry = local.get(catalog_version.version)
            if entry is None:
                entry = VersionEntry(
                    candidate=candidate,
                    version=catalog_version.version,
                    status=VersionStatus.AVAILABLE,
                    vendor=catalog_version.vendor,
                )
            elif not entry.vendor:
                entry = entry.copy(vendor=catalog_version.vendor)
            merged[entry.version] = entry
        for version, entry in local.items():
            merged.setdefault(version, entry)

        result = []
        for entry in merged.values():
            entry.downloaded = self.installer.is_downloaded(candidate, entry.version)
            if installed_only and not entry.installed:
                continue
            if downloaded_only and not entry.downloaded:
                continue
            if default_only and not entry.is_default:
                continue
            if not _matches(filter, entry.version, entry.vendor):
                continue
            result.append(entry)
        return version_utils.sort_versions_desc(result, cand.version_scheme)

    def get_default(self, candidate: str) -> Optional[VersionEntry]:
        """获取候选的默认版本，未设置返回 None。"""
        self._candidate(candidate)
        return self.inventory.get_default(candidate)

    def resolve(self, candidate: str, token: Optional[str] = LATEST) -> str:
        """
        解析版本标记为具体版本号。

        参数:
            candidate: 候选名称
            token: "latest"、"default" 或具体版本号

        返回:
            具体版本号
        """
        cand = self._candidate(candidate)
        try:
            return self.resolver.resolve(cand, token)
        except SdkvmError as e:
            raise e.with_context(candidate)

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            timeout = self.config_manager.get_download_timeout() or None
        if timeout is None:
            return None
        return time.monotonic() + timeout

    def _catalog_version(self, cand: Candidate, version: str) -> CatalogVersion:
        catalog_version = self.catalog.current().find(cand.id, version)
        if catalog_version is not None:
            return catalog_version
        return CatalogVersion(version=version, download_url=render_download_url(cand, version))

    def install(
        self,
        candidate: str,
        version: Optional[str] = LATEST,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        status_callback: Optional[Callable[[str], None]] = None,
    ) -> VersionEntry:
        """
        安装版本。

        已安装的版本直接返回，不会重新下载。安装失败（包括取消和中断）时
        版本被标记为 Broken，错误原样抛出，不会自动重试。重新安装 Broken
        版本时先删除上次遗留在安装路径上的目录。

        参数:
            candidate: 候选名称
            version: 版本标记，默认为 latest
            cancel_event: 取消事件
            timeout: 下载截止时间（秒），默认使用配置的 download_timeout
            progress_callback: 下载进度回调函数
            status_callback: 状态消息回调函数

        返回:
            已安装的 VersionEntry
        """
        cand = self._candidate(candidate)
        if (version or LATEST).strip().lower() == LATEST and self.catalog.is_stale(candidate, self.freshness):
            logger.info(f"{candidate} 的远程目录已过期，先刷新")
            self.refresh(candidate)
        resolved = self.resolve(candidate, version)
        deadline = self._deadline(timeout)

        with self._lock_for(candidate), self.inventory.operation_lock(candidate):
            existing = self.inventory.find(candidate, resolved)
            if existing is not None and existing.installed:
                logger.info(f"{candidate} {resolved} 已安装，跳过")
                return existing

            destination = self.inventory.version_path(candidate, resolved)
            if existing is not None and existing.status == VersionStatus.BROKEN and (
                    destination.exists() or destination.is_symlink()):
                logger.info(f"清理损坏版本的残留目录: {destination}")
                try:
                    self.installer.uninstall(cand, resolved, str(destination))
                except SdkvmError as e:
                    raise e.with_context(candidate, resolved)
            catalog_version = self._catalog_version(cand, resolved)
            token = self.inventory.record_install_start(candidate, resolved)
            try:
                result = self.installer.install(
                    cand, resolved, destination,
                    catalog_version=catalog_version,
                    cancel_event=cancel_event,
                    deadline=deadline,
                    progress_callback=progress_callback,
                    status_callback=status_callback,
                )
                entry = self.inventory.commit_install(token, result.path, result.size)
            except BaseException as e:
                reason = str(e) or type(e).__name__
                try:
                    self.inventory.record_failure(token, reason)
                except SdkvmError as record_error:
                    logger.error(f"记录安装失败状态时出错: {record_error}")
                if isinstance(e, SdkvmError):
                    e.with_context(candidate, resolved)
                logger.error(f"安装 {candidate} {resolved} 失败: {reason}")
                raise

        self._publish(EventKind.INSTALLED, candidate, resolved)
        return entry

    def uninstall(self, candidate: str, version: str) -> None:
        """
        卸载版本，也用于清理 Broken 状态的版本。

        抛出:
            NotInstalled: 版本不存在
            CannotRemoveDefault: 版本是当前默认版本，清单保持不变
        """
        cand = self._candidate(candidate)
        with self._lock_for(candidate), self.inventory.operation_lock(candidate):
            entry = self.inventory.get(candidate, version)
            default = self.inventory.get_default(candidate)
            if default is not None and default.version == version:
                raise CannotRemoveDefault("不能卸载当前默认版本，请先切换默认版本", candidate=candidate, version=version)

            try:
                if entry.path:
                    self.installer.uninstall(cand, version, entry.path)
                if entry.managed:
                    self.inventory.remove(candidate, version)
            except SdkvmError as e:
                raise e.with_context(candidate, version)

        logger.info(f"已卸载 {candidate} {version}")
        self._publish(EventKind.UNINSTALLED, candidate, version)

    def set_default(self, candidate: str, version: str) -> VersionEntry:
        """
        设置默认版本，不会隐式安装。

        抛出:
            NotInstalled: 版本未安装，原默认版本保持不变
        """
        self._candidate(candidate)
        with self._lock_for(candidate), self.inventory.operation_lock(candidate):
            previous = self.inventory.get_default(candidate)
            entry = self.inventory.set_default(candidate, version)

        if previous is None or previous.version != version:
            self._publish(EventKind.DEFAULT_CHANGED, candidate, version)
        return entry

    def clear_default(self, candidate: str) -> None:
        """清除默认版本指针。"""
        self._candidate(candidate)
        with self._lock_for(candidate), self.inventory.operation_lock(candidate):
            previous = self.inventory.get_default(candidate)
            self.inventory.clear_default(candidate)

        if previous is not None:
            self._publish(EventKind.DEFAULT_CHANGED, candidate, None)

    def refresh(self, candidate: Optional[str] = None, timeout: Optional[float] = None) -> CatalogSnapshot:
        """
        刷新远程目录。

        同一候选（或全部候选）同时只有一次刷新在进行，后来的调用等待并
        得到同一个快照。刷新全部候选时会逐个尝试，全部尝试后抛出第一个错误。

        参数:
            candidate: 候选名称，None 表示全部
            timeout: 请求超时时间（秒）

        返回:
            刷新后的 CatalogSnapshot
        """
        if candidate is not None:
            self._candidate(candidate)
            return self._single_flight(candidate, lambda: self._refresh_one(candidate, timeout))
        return self._single_flight(REFRESH_ALL, lambda: self._refresh_all(timeout))

    def _single_flight(self, key: str, func: Callable[[], Any]) -> Any:
        with self._flights_lock:
            future = self._flights.get(key)
            leader = future is None
            if leader:
                future = self._flights[key] = Future()

        if not leader:
            logger.debug(f"等待进行中的刷新: {key}")
            return future.result()

        try:
            result = func()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._flights_lock:
                self._flights.pop(key, None)

    def _refresh_one(self, candidate: str, timeout: Optional[float]) -> CatalogSnapshot:
        try:
            snapshot = self.catalog.refresh(candidate, timeout=timeout)
        except SdkvmError as e:
            raise e.with_context(candidate)
        self._publish(EventKind.CATALOG_REFRESHED, candidate)
        return snapshot

    def _refresh_all(self, timeout: Optional[float]) -> CatalogSnapshot:
        errors: List[SdkvmError] = []
        for candidate_id in self.candidates:
            try:
                self._single_flight(candidate_id, lambda c=candidate_id: self._refresh_one(c, timeout))
            except SdkvmError as e:
                logger.warning(f"刷新 {candidate_id} 失败: {e}")
                errors.append(e)
        if errors:
            raise errors[0]
        return self.catalog.current()

    def subscribe(self, buffer_size: Optional[int] = None) -> Subscription:
        """订阅状态变更事件。"""
        return self.notifier.subscribe(buffer_size)

    def close(self) -> None:
        """关闭引擎，结束全部事件订阅。"""
        self.notifier.close()

    def __enter__(self) -> "CandidateEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
