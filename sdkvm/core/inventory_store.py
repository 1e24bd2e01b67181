"""
本地清单模块。

负责持久化每个候选已安装的版本记录和默认版本指针。

每个候选对应一个 JSON 清单文件（<config_dir>/inventory/<candidate>.json），
所有写入都是原子的并在返回前落盘。默认版本同时以候选根目录下的
current 符号链接表示，但清单记录才是权威数据，链接只在此基础上修复。
"""

import json
import os
import shutil
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from filelock import FileLock, Timeout

from sdkvm.core import version_utils
from sdkvm.core.archive_installer import STAGING_PREFIX
from sdkvm.core.config_manager import ConfigManager, atomic_save_json
from sdkvm.core.errors import InUse, NotInstalled, StorageError, UnknownCandidate
from sdkvm.core.interfaces import IInventoryStore
from sdkvm.core.models import Candidate, InstallToken, VersionEntry, VersionStatus
from sdkvm.utils.input_validator import InputValidator, InputValidationError
from sdkvm.utils.logger import get_logger

logger = get_logger()

CURRENT_LINK = "current"
TEMP_LINK_PREFIX = f".{CURRENT_LINK}-"
INTERRUPTED_REASON = "安装被中断（进程在提交前退出）"


class InventoryStore(IInventoryStore):
    """
    本地清单类。

    引擎是唯一的写入者，并在持有候选操作锁时调用写入方法。
    操作锁是 inventory/<candidate>.lock 上的文件锁，在进程之间同样有效；
    本类内部的锁只保护同一进程内的文件读写。
    """

    def __init__(self, config_manager: ConfigManager, candidates: Optional[List[Candidate]] = None):
        """
        初始化本地清单。

        参数:
            config_manager: 配置管理器实例
            candidates: 候选列表，默认从配置读取
        """
        self.config_manager = config_manager
        self.inventory_dir = config_manager.get_inventory_dir()
        self.inventory_dir.mkdir(parents=True, exist_ok=True)
        if candidates is None:
            candidates = config_manager.get_candidates()
        self._candidates: Dict[str, Candidate] = {c.id: c for c in candidates}
        self._lock = threading.RLock()
        self._active: Dict[Tuple[str, str], InstallToken] = {}
        self._file_locks: Dict[str, FileLock] = {}

    def operation_lock(self, candidate: str) -> FileLock:
        """
        获取候选的跨进程操作锁。

        安装、卸载和切换默认版本在整个操作期间持有该锁，
        启动修复只在能立即获得该锁时才会改动清单。

        参数:
            candidate: 候选名称

        返回:
            FileLock 实例，同一候选总是返回同一个对象
        """
        self._candidate(candidate)
        with self._lock:
            lock = self._file_locks.get(candidate)
            if lock is None:
                lock = self._file_locks[candidate] = FileLock(str(self.inventory_dir / f"{candidate}.lock"))
            return lock

    def _candidate(self, candidate: str) -> Candidate:
        try:
            return self._candidates[candidate]
        except KeyError:
            raise UnknownCandidate(f"未配置的候选: {candidate}", candidate=candidate) from None

    def _inventory_file(self, candidate: str) -> Path:
        return self.inventory_dir / f"{candidate}.json"

    def _load(self, candidate: str) -> Dict[str, Any]:
        """
        读取候选的清单文件。

        参数:
            candidate: 候选名称

        返回:
            清单字典 {"default": str | None, "versions": {version: record}}
        """
        path = self._inventory_file(candidate)
        if not path.exists():
            return {"default": None, "versions": {}}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (IOError, OSError, json.JSONDecodeError) as e:
            logger.error(f"读取 {candidate} 的清单文件失败: {e}")
            raise StorageError(f"无法读取清单文件 {path}: {e}", candidate=candidate) from e
        data.setdefault("default", None)
        data.setdefault("versions", {})
        return data

    def _save(self, candidate: str, data: Dict[str, Any]) -> None:
        path = self._inventory_file(candidate)
        try:
            atomic_save_json(path, data)
        except (IOError, OSError, TypeError) as e:
            logger.error(f"保存 {candidate} 的清单文件失败: {e}")
            raise StorageError(f"无法保存清单文件 {path}: {e}", candidate=candidate) from e

    def version_path(self, candidate: str, version: str) -> Path:
        """
        获取版本的规范安装路径。

        参数:
            candidate: 候选名称
            version: 版本号

        返回:
            <候选根目录>/<版本号>
        """
        cand = self._candidate(candidate)
        try:
            InputValidator.validate_version_string(version)
            return Path(InputValidator.safe_join_path(str(cand.root), version))
        except InputValidationError as e:
            raise StorageError(str(e), candidate=candidate, version=version) from e

    def _scan_unmanaged(self, cand: Candidate, recorded: set) -> List[VersionEntry]:
        """
        扫描候选根目录中没有清单记录的目录，视为已安装但非本工具管理。

        参数:
            cand: 候选
            recorded: 已有记录的版本号集合

        返回:
            非托管版本条目列表
        """
        root = cand.root
        if not root.is_dir():
            return []

        entries = []
        try:
            items = sorted(root.iterdir())
        except OSError as e:
            raise StorageError(f"扫描目录 {root} 失败: {e}", candidate=cand.id) from e

        for item in items:
            name = item.name
            if name == CURRENT_LINK or name.startswith(".") or name in recorded:
                continue
            if not item.is_dir():
                continue
            try:
                InputValidator.validate_version_string(name)
            except InputValidationError:
                logger.debug(f"跳过无法识别为版本的目录: {item}")
                continue
            try:
                installed_at = datetime.fromtimestamp(item.stat().st_ctime).isoformat()
            except OSError:
                installed_at = None
            entries.append(VersionEntry(
                candidate=cand.id,
                version=name,
                status=VersionStatus.INSTALLED,
                path=str(item),
                installed_at=installed_at,
                managed=False,
            ))
        return entries

    def _entries(self, cand: Candidate, data: Dict[str, Any]) -> List[VersionEntry]:
        records = data["versions"]
        entries = [VersionEntry.from_record(cand.id, record) for record in records.values()]
        entries.extend(self._scan_unmanaged(cand, set(records)))
        default = data.get("default")
        for entry in entries:
            entry.is_default = entry.installed and entry.version == default
        return version_utils.sort_versions_desc(entries, cand.version_scheme)

    def list(self, candidate: str) -> List[VersionEntry]:
        """
        列出候选在本地的全部版本条目（含非托管目录）。

        参数:
            candidate: 候选名称

        返回:
            按版本号降序排列的 VersionEntry 列表
        """
        cand = self._candidate(candidate)
        with self._lock:
            return self._entries(cand, self._load(candidate))

    def find(self, candidate: str, version: str) -> Optional[VersionEntry]:
        for entry in self.list(candidate):
            if entry.version == version:
                return entry
        return None

    def get(self, candidate: str, version: str) -> VersionEntry:
        """
        获取版本条目。

        抛出:
            NotInstalled: 版本既没有记录也没有对应目录
        """
        entry = self.find(candidate, version)
        if entry is None:
            raise NotInstalled(f"版本未安装: {version}", candidate=candidate, version=version)
        return entry

    def record_install_start(self, candidate: str, version: str) -> InstallToken:
        """
        记录安装开始，写入 Downloading 状态的记录。

        参数:
            candidate: 候选名称
            version: 版本号

        返回:
            标识本次安装的 InstallToken
        """
        path = self.version_path(candidate, version)
        with self._lock:
            if (candidate, version) in self._active:
                raise StorageError("该版本已有进行中的安装", candidate=candidate, version=version)
            data = self._load(candidate)
            existing = data["versions"].get(version)
            if existing and existing.get("status") == VersionStatus.INSTALLED.value:
                raise StorageError("该版本已安装", candidate=candidate, version=version)
            token = InstallToken(candidate=candidate, version=version)
            record = VersionEntry(
                candidate=candidate,
                version=version,
                status=VersionStatus.DOWNLOADING,
                path=str(path),
                vendor=existing.get("vendor") if existing else None,
            ).to_record()
            record["owner"] = {"pid": os.getpid(), "operation_id": token.operation_id}
            data["versions"][version] = record
            self._save(candidate, data)
            self._active[(candidate, version)] = token
        logger.debug(f"记录安装开始: {candidate} {version} ({token.operation_id})")
        return token

    def _require_active(self, token: InstallToken) -> None:
        if self._active.get((token.candidate, token.version)) != token:
            raise StorageError("安装令牌无效或已结束", candidate=token.candidate, version=token.version)

    def commit_install(self, token: InstallToken, path: str, size: int) -> VersionEntry:
        """
        提交安装成功，将记录提升为 Installed。

        参数:
            token: record_install_start 返回的令牌
            path: 安装路径
            size: 安装大小（字节）

        返回:
            已安装的版本条目
        """
        with self._lock:
            self._require_active(token)
            data = self._load(token.candidate)
            record = data["versions"].get(token.version)
            if not record or record.get("status") != VersionStatus.DOWNLOADING.value:
                raise StorageError("清单中没有进行中的安装记录", candidate=token.candidate, version=token.version)
            record.update({
                "status": VersionStatus.INSTALLED.value,
                "path": str(path),
                "size": int(size),
                "installed_at": datetime.now().isoformat(),
                "reason": None,
            })
            record.pop("owner", None)
            self._save(token.candidate, data)
            del self._active[(token.candidate, token.version)]
        logger.info(f"已提交安装记录: {token.candidate} {token.version}")
        return VersionEntry.from_record(token.candidate, record)

    def record_failure(self, token: InstallToken, reason: str) -> None:
        """
        记录安装失败，将记录标记为 Broken。

        失败的记录不会被自动删除，需要显式卸载清理。

        参数:
            token: record_install_start 返回的令牌
            reason: 失败原因
        """
        with self._lock:
            if self._active.get((token.candidate, token.version)) == token:
                del self._active[(token.candidate, token.version)]
            data = self._load(token.candidate)
            record = data["versions"].setdefault(token.version, {"version": token.version})
            record.update({
                "status": VersionStatus.BROKEN.value,
                "reason": reason,
            })
            record.pop("owner", None)
            self._save(token.candidate, data)
        logger.warning(f"安装失败，已标记为损坏: {token.candidate} {token.version}: {reason}")

    def remove(self, candidate: str, version: str) -> None:
        """
        删除版本记录。

        抛出:
            InUse: 版本是当前默认版本
            NotInstalled: 没有该版本的记录
        """
        self._candidate(candidate)
        with self._lock:
            data = self._load(candidate)
            if data.get("default") == version:
                raise InUse("版本是当前默认版本", candidate=candidate, version=version)
            if version not in data["versions"]:
                raise NotInstalled(f"版本未安装: {version}", candidate=candidate, version=version)
            del data["versions"][version]
            self._save(candidate, data)
        logger.info(f"已删除清单记录: {candidate} {version}")

    def get_default(self, candidate: str) -> Optional[VersionEntry]:
        """
        获取默认版本。

        参数:
            candidate: 候选名称

        返回:
            默认版本条目，未设置或指向的版本不再是 Installed 时返回 None
        """
        cand = self._candidate(candidate)
        with self._lock:
            data = self._load(candidate)
            default = data.get("default")
            if not default:
                return None
            for entry in self._entries(cand, data):
                if entry.version == default and entry.installed:
                    return entry
        return None

    def set_default(self, candidate: str, version: str) -> VersionEntry:
        """
        设置默认版本。

        抛出:
            NotInstalled: 版本不是 Installed 状态，原默认版本保持不变
        """
        cand = self._candidate(candidate)
        with self._lock:
            data = self._load(candidate)
            entry = next((e for e in self._entries(cand, data) if e.version == version), None)
            if entry is None or not entry.installed:
                raise NotInstalled(f"版本未安装，无法设为默认: {version}", candidate=candidate, version=version)
            data["default"] = version
            self._save(candidate, data)
            self._update_current_link(cand, entry.path)
        logger.info(f"已设置 {candidate} 的默认版本为 {version}")
        return entry.copy(is_default=True)

    def clear_default(self, candidate: str) -> None:
        """清除默认版本指针。"""
        cand = self._candidate(candidate)
        with self._lock:
            data = self._load(candidate)
            if data.get("default") is None:
                return
            data["default"] = None
            self._save(candidate, data)
            self._update_current_link(cand, None)
        logger.info(f"已清除 {candidate} 的默认版本")

    def reconcile(self, candidate: str) -> None:
        """
        启动时修复崩溃遗留的状态。

        只有能立即获得候选操作锁时才会执行，锁被其他操作（包括其他进程中的
        安装）持有时整体跳过，进行中的 Downloading 记录保持不变。

        - Downloading 记录降级为 Broken，绝不提升为 Installed
        - 删除遗留的临时安装目录和临时 current 链接
        - 指向非 Installed 版本的默认指针被清除
        - 没有记录默认版本时，采用其他工具留下的有效 current 链接

        参数:
            candidate: 候选名称
        """
        cand = self._candidate(candidate)
        lock = self.operation_lock(candidate)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            logger.info(f"{candidate} 有正在进行的操作，跳过启动修复")
            return
        try:
            with self._lock:
                self._reconcile_records(cand)
                self._sweep_leftovers(cand)
        finally:
            lock.release()

    def _reconcile_records(self, cand: Candidate) -> None:
        candidate = cand.id
        data = self._load(candidate)
        changed = False

        for version, record in data["versions"].items():
            if record.get("status") != VersionStatus.DOWNLOADING.value:
                continue
            if (candidate, version) in self._active:
                continue
            owner = record.pop("owner", None) or {}
            logger.warning(f"发现中断的安装，标记为损坏: {candidate} {version} (进程 {owner.get('pid', '未知')})")
            record["status"] = VersionStatus.BROKEN.value
            record["reason"] = INTERRUPTED_REASON
            changed = True

        entries = {e.version: e for e in self._entries(cand, data)}
        default = data.get("default")
        if default and not (default in entries and entries[default].installed):
            logger.warning(f"{candidate} 的默认版本 {default} 已不可用，清除默认指针")
            data["default"] = None
            changed = True
        elif not default:
            adopted = self._read_current_link(cand)
            if adopted and adopted in entries and entries[adopted].installed:
                logger.info(f"采用已有的 current 链接作为 {candidate} 的默认版本: {adopted}")
                data["default"] = adopted
                changed = True

        if changed:
            self._save(candidate, data)

        default = data.get("default")
        linked = self._read_current_link(cand)
        if default and linked != default:
            self._update_current_link(cand, entries[default].path)
        elif not default and linked is not None:
            self._update_current_link(cand, None)

    def _sweep_leftovers(self, cand: Candidate) -> None:
        """删除崩溃遗留的临时安装目录和临时 current 链接。"""
        root = cand.root
        if not root.is_dir():
            return
        try:
            items = list(root.iterdir())
        except OSError as e:
            raise StorageError(f"扫描目录 {root} 失败: {e}", candidate=cand.id) from e

        for item in items:
            name = item.name
            try:
                if name.startswith(TEMP_LINK_PREFIX) and item.is_symlink():
                    item.unlink()
                elif name.startswith(STAGING_PREFIX) and item.is_dir() and not item.is_symlink():
                    shutil.rmtree(item)
                else:
                    continue
            except OSError as e:
                logger.warning(f"清理遗留文件 {item} 失败: {e}")
                continue
            logger.info(f"已清理遗留文件: {item}")

    def _link_path(self, cand: Candidate) -> Path:
        return cand.root / CURRENT_LINK

    def _read_current_link(self, cand: Candidate) -> Optional[str]:
        """读取 current 链接指向的版本目录名，不是链接时返回 None。"""
        link = self._link_path(cand)
        if not link.is_symlink():
            return None
        try:
            return Path(os.readlink(link)).name
        except OSError as e:
            logger.warning(f"读取链接 {link} 失败: {e}")
            return None

    def _update_current_link(self, cand: Candidate, target: Optional[str]) -> None:
        """
        原子地替换 current 链接。

        链接只是清单记录的镜像，创建失败（例如平台不支持符号链接）时记录警告，
        下次 reconcile 会再次尝试。

        参数:
            cand: 候选
            target: 链接目标目录，None 表示删除链接
        """
        link = self._link_path(cand)
        if link.exists() and not link.is_symlink():
            logger.warning(f"{link} 不是符号链接，保持不变")
            return

        if target is None:
            if link.is_symlink():
                try:
                    link.unlink()
                except OSError as e:
                    logger.warning(f"删除链接 {link} 失败: {e}")
            return

        temp_link = cand.root / f"{TEMP_LINK_PREFIX}{uuid.uuid4().hex}"
        try:
            cand.root.mkdir(parents=True, exist_ok=True)
            os.symlink(target, temp_link, target_is_directory=True)
            os.replace(temp_link, link)
        except OSError as e:
            logger.warning(f"更新链接 {link} 失败: {e}")
            if temp_link.is_symlink():
                temp_link.unlink()
