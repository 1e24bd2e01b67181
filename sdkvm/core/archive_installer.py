"""
安装器模块。

提供版本安装包的下载、校验、解压和安装功能。

安装过程全部在候选根目录下的临时目录中进行，只有完整解压并校验通过后
才会通过一次 rename 移动到最终目录，最终目录不会出现半成品。
"""

import errno
import hashlib
import os
import shutil
import stat
import tarfile
import threading
import time
import uuid
import zipfile
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests

from sdkvm.core.config_manager import ConfigManager
from sdkvm.core.errors import (
    ChecksumError, DiskSpaceError, DownloadError, DownloadTimeout,
    ExtractError, OperationCancelled, StorageError,
)
from sdkvm.core.interfaces import IArchiveInstaller
from sdkvm.core.models import Candidate, CatalogVersion, InstallResult
from sdkvm.utils.input_validator import InputValidator, InputValidationError
from sdkvm.utils.logger import get_logger

logger = get_logger()

STAGING_PREFIX = ".staging-"
CHUNK_SIZE = 8192


class ArchiveInstaller(IArchiveInstaller):
    """
    安装器类。

    负责单个版本的下载和解压，不读写本地清单。
    """

    def __init__(self, config_manager: ConfigManager):
        """
        初始化安装器。

        参数:
            config_manager: 配置管理器实例
        """
        self.config_manager = config_manager
        self.archive_dir = config_manager.get_archive_dir()

    @property
    def keep_downloads(self) -> bool:
        return self.config_manager.get_keep_downloads()

    def install(
        self,
        candidate: Candidate,
        version: str,
        destination: Path,
        catalog_version: Optional[CatalogVersion] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        status_callback: Optional[Callable[[str], None]] = None,
    ) -> InstallResult:
        """
        下载并安装指定版本。

        参数:
            candidate: 候选
            version: 版本号
            destination: 最终安装目录，调用时必须不存在
            catalog_version: 目录中的版本信息（下载地址和校验值）
            cancel_event: 取消事件，被设置后在下一个数据块处中止
            deadline: time.monotonic() 时间轴上的截止时间
            progress_callback: 下载进度回调函数 (已下载字节, 总字节)
            status_callback: 状态消息回调函数

        返回:
            InstallResult

        抛出:
            DownloadError, DownloadTimeout, ChecksumError, ExtractError,
            DiskSpaceError, StorageError, OperationCancelled
        """
        destination = Path(destination)
        if destination.exists() or destination.is_symlink():
            raise StorageError(f"目标目录已存在: {destination}", candidate=candidate.id, version=version)

        download_url = catalog_version.download_url if catalog_version else ""
        checksum = catalog_version.checksum if catalog_version else None
        kept_archive = self._kept_archive(candidate.id, version)
        if not download_url and kept_archive is None:
            raise DownloadError("没有可用的下载地址", candidate=candidate.id, version=version)

        staging = candidate.root / f"{STAGING_PREFIX}{version}-{uuid.uuid4().hex[:8]}"
        try:
            candidate.root.mkdir(parents=True, exist_ok=True)
            staging.mkdir()

            if kept_archive is not None:
                logger.info(f"使用已保留的安装包: {kept_archive}")
                archive = kept_archive
            else:
                archive = staging / _archive_name(download_url, candidate.id, version)
                if status_callback:
                    status_callback("正在下载...")
                logger.info(f"正在从 {download_url} 下载 {candidate.id} {version}")
                self._download(download_url, archive, cancel_event, deadline, progress_callback)

            checksum_verified = False
            if checksum:
                try:
                    self._verify_checksum(archive, checksum)
                except ChecksumError:
                    if archive == kept_archive:
                        kept_archive.unlink()
                    raise
                checksum_verified = True

            _check_cancel(cancel_event)
            if status_callback:
                status_callback("正在解压...")
            logger.info(f"下载完成，正在解压 {archive.name}")
            extract_dir = staging / "extracted"
            self._extract_archive(archive, extract_dir)
            content_dir = _single_top_level_dir(extract_dir)

            _check_cancel(cancel_event)
            if status_callback:
                status_callback("正在安装...")
            os.replace(content_dir, destination)

            if self.keep_downloads and kept_archive is None:
                self._keep_archive(archive, candidate.id, version)

            size = _dir_size(destination)
            logger.info(f"成功安装 {candidate.id} {version} 到 {destination}")
            return InstallResult(path=str(destination), size=size, checksum_verified=checksum_verified)
        except OSError as e:
            if e.errno == errno.ENOSPC:
                raise DiskSpaceError(f"磁盘空间不足: {e}", candidate=candidate.id, version=version) from e
            raise StorageError(f"安装过程中文件操作失败: {e}", candidate=candidate.id, version=version) from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _download(
        self,
        url: str,
        target: Path,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
        progress_callback: Optional[Callable[[int, int], None]],
    ) -> int:
        """
        流式下载到 target。

        参数:
            url: 下载 URL（http、https 或 file）
            target: 临时文件路径

        返回:
            下载的字节数
        """
        parsed = urlparse(url)
        if parsed.scheme == "file":
            source = Path(url2pathname(parsed.path))
            try:
                total = source.stat().st_size
                self._check_disk_space(target.parent, total)
                with open(source, "rb") as f:
                    chunks = iter(lambda: f.read(CHUNK_SIZE), b"")
                    return self._write_chunks(chunks, target, total, cancel_event, deadline, progress_callback)
            except FileNotFoundError as e:
                raise DownloadError(f"安装包不存在: {source}") from e

        request_timeout = self.config_manager.get_request_timeout()
        remaining = _remaining(deadline)
        timeout = min(request_timeout, remaining) if remaining is not None else request_timeout

        try:
            response = requests.get(url, stream=True, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise DownloadTimeout(f"下载请求超时: {url}") from e
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"下载请求失败: {e}") from e

        with response:
            total = int(response.headers.get("content-length", 0) or 0)
            self._check_disk_space(target.parent, total)
            try:
                return self._write_chunks(
                    response.iter_content(chunk_size=CHUNK_SIZE),
                    target, total, cancel_event, deadline, progress_callback,
                )
            except requests.exceptions.Timeout as e:
                raise DownloadTimeout(f"下载超时: {url}") from e
            except requests.exceptions.RequestException as e:
                raise DownloadError(f"下载中断: {e}") from e

    def _write_chunks(
        self,
        chunks: Iterable[bytes],
        target: Path,
        total: int,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
        progress_callback: Optional[Callable[[int, int], None]],
    ) -> int:
        downloaded = 0
        with open(target, "wb") as f:
            for chunk in chunks:
                _check_cancel(cancel_event)
                if deadline is not None and time.monotonic() > deadline:
                    raise DownloadTimeout("下载超过截止时间")
                if not chunk:
                    continue
                f.write(chunk)
                downloaded += len(chunk)
                if progress_callback:
                    progress_callback(downloaded, total)
        return downloaded

    def _check_disk_space(self, directory: Path, required: int) -> None:
        if required <= 0:
            return
        free = shutil.disk_usage(directory).free
        if free < required:
            raise DiskSpaceError(f"磁盘空间不足: 需要 {required} 字节，可用 {free} 字节")

    def _verify_checksum(self, archive: Path, expected: str) -> None:
        """
        校验安装包的 SHA-256。

        参数:
            archive: 安装包路径
            expected: 期望的十六进制摘要，允许带 "sha256:" 前缀
        """
        expected = expected.strip().lower()
        if expected.startswith("sha256:"):
            expected = expected[len("sha256:"):]
        digest = hashlib.sha256()
        with open(archive, "rb") as f:
            for block in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(block)
        actual = digest.hexdigest()
        if actual != expected:
            logger.error(f"安装包校验失败: 期望 {expected}，实际 {actual}")
            raise ChecksumError(f"SHA-256 不匹配: 期望 {expected}，实际 {actual}")
        logger.debug(f"安装包校验通过: {archive.name}")

    def _extract_archive(self, archive: Path, target_dir: Path) -> None:
        """
        解压安装包，防止路径遍历漏洞。

        参数:
            archive: 安装包路径
            target_dir: 解压目录
        """
        target_dir.mkdir(parents=True, exist_ok=True)
        try:
            if zipfile.is_zipfile(archive):
                self._extract_zip(archive, target_dir)
            elif tarfile.is_tarfile(archive):
                self._extract_tar(archive, target_dir)
            else:
                raise ExtractError(f"不支持的安装包格式: {archive.name}")
        except (zipfile.BadZipFile, tarfile.TarError, EOFError, UnicodeDecodeError) as e:
            raise ExtractError(f"安装包已损坏: {e}") from e
        except InputValidationError as e:
            raise ExtractError(f"安装包包含非法路径: {e}") from e

    def _extract_zip(self, archive: Path, target_dir: Path) -> None:
        base = str(target_dir)
        with zipfile.ZipFile(archive, "r") as zf:
            for member in zf.infolist():
                member_path = InputValidator.safe_join_path(base, member.filename)
                mode = member.external_attr >> 16
                if member.is_dir():
                    os.makedirs(member_path, exist_ok=True)
                    continue
                os.makedirs(os.path.dirname(member_path), exist_ok=True)
                if stat.S_ISLNK(mode):
                    link_target = zf.read(member).decode("utf-8")
                    InputValidator.safe_join_path(base, os.path.join(os.path.dirname(member.filename), link_target))
                    os.symlink(link_target, member_path)
                    continue
                with zf.open(member) as src, open(member_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                if mode & 0o777:
                    os.chmod(member_path, mode & 0o777)

    def _extract_tar(self, archive: Path, target_dir: Path) -> None:
        base = str(target_dir)
        with tarfile.open(archive, "r:*") as tf:
            members = []
            for member in tf.getmembers():
                InputValidator.safe_join_path(base, member.name)
                if member.issym():
                    InputValidator.safe_join_path(base, os.path.join(os.path.dirname(member.name), member.linkname))
                elif member.islnk():
                    InputValidator.safe_join_path(base, member.linkname)
                elif not (member.isfile() or member.isdir()):
                    logger.debug(f"跳过特殊文件: {member.name}")
                    continue
                members.append(member)
            if hasattr(tarfile, "data_filter"):
                tf.extractall(target_dir, members=members, filter="data")
            else:
                tf.extractall(target_dir, members=members)

    def _kept_archive(self, candidate: str, version: str) -> Optional[Path]:
        directory = self.archive_dir / candidate / version
        if not directory.is_dir():
            return None
        for item in sorted(directory.iterdir()):
            if item.is_file():
                return item
        return None

    def _keep_archive(self, archive: Path, candidate: str, version: str) -> None:
        directory = self.archive_dir / candidate / version
        try:
            directory.mkdir(parents=True, exist_ok=True)
            shutil.move(str(archive), str(directory / archive.name))
            logger.info(f"已保留安装包: {directory / archive.name}")
        except OSError as e:
            logger.warning(f"保留安装包失败: {e}")

    def is_downloaded(self, candidate: str, version: str) -> bool:
        """是否保留了该版本的安装包。"""
        return self._kept_archive(candidate, version) is not None

    def uninstall(self, candidate: Candidate, version: str, path: str) -> None:
        """
        删除版本目录。

        参数:
            candidate: 候选
            version: 版本号
            path: 版本目录，必须直接位于候选根目录下
        """
        target = Path(path)
        if target.parent.resolve() != candidate.root.resolve():
            raise StorageError(f"拒绝删除候选根目录之外的路径: {target}", candidate=candidate.id, version=version)

        try:
            if target.is_symlink():
                target.unlink()
            elif target.exists():
                shutil.rmtree(target)
            else:
                logger.warning(f"版本目录不存在，跳过删除: {target}")
                return
        except OSError as e:
            logger.error(f"删除版本目录失败: {target}: {e}")
            raise StorageError(f"删除版本目录失败: {e}", candidate=candidate.id, version=version) from e
        logger.info(f"已删除版本目录: {target}")


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("安装已取消")


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DownloadTimeout("下载超过截止时间")
    return remaining


def _archive_name(url: str, candidate: str, version: str) -> str:
    name = os.path.basename(urlparse(url).path)
    try:
        InputValidator.validate_version_string(name)
    except InputValidationError:
        return f"{candidate}-{version}.archive"
    return name


def _single_top_level_dir(extract_dir: Path) -> Path:
    """安装包只有一个顶层目录时返回该目录，否则返回解压目录本身。"""
    entries = list(extract_dir.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return extract_dir


def _dir_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total
