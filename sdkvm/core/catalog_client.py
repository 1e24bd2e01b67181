"""
远程目录模块。

从远程目录源获取每个候选的可用版本列表，并以不可变快照的形式提供给其他组件。
"""

import platform
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from sdkvm.core import version_utils
from sdkvm.core.config_manager import ConfigManager, ConfigSaveError
from sdkvm.core.errors import CatalogTimeout, NetworkError, ParseError, UnknownCandidate
from sdkvm.core.interfaces import ICatalogClient
from sdkvm.core.models import Candidate, CatalogSnapshot, CatalogVersion
from sdkvm.utils.input_validator import InputValidator, InputValidationError
from sdkvm.utils.logger import get_logger

logger = get_logger()

CACHE_KEY = "catalog"


class CatalogClient(ICatalogClient):
    """
    远程目录客户端类。

    快照只会被整体替换（先复制再交换），读者拿到的快照不会再变化。
    刷新失败时保留上一次的快照，错误原样抛给调用方。
    """

    def __init__(self, config_manager: ConfigManager, candidates: Optional[List[Candidate]] = None):
        """
        初始化远程目录客户端，并从缓存文件恢复上次的快照。

        参数:
            config_manager: 配置管理器实例
            candidates: 候选列表，默认从配置读取
        """
        self.config_manager = config_manager
        if candidates is None:
            candidates = config_manager.get_candidates()
        self._candidates: Dict[str, Candidate] = {c.id: c for c in candidates}
        self._swap_lock = threading.Lock()
        self._snapshot = self._load_cached_snapshot()

    def _load_cached_snapshot(self) -> CatalogSnapshot:
        cached = self.config_manager.get_cache().get(CACHE_KEY)
        if not cached:
            return CatalogSnapshot()
        try:
            snapshot = CatalogSnapshot.from_dict(cached)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"远程目录缓存格式无效，已忽略: {e}")
            return CatalogSnapshot()
        logger.debug(f"从缓存恢复远程目录快照: {', '.join(snapshot.versions) or '空'}")
        return snapshot

    def _candidate(self, candidate: str) -> Candidate:
        try:
            return self._candidates[candidate]
        except KeyError:
            raise UnknownCandidate(f"未配置的候选: {candidate}", candidate=candidate) from None

    def current(self) -> CatalogSnapshot:
        """获取最近一次的快照（可能已过期）。"""
        return self._snapshot

    def is_stale(self, candidate: str, max_age: float) -> bool:
        """
        判断候选的目录数据是否过期。

        参数:
            candidate: 候选名称
            max_age: 最大允许年龄（秒）

        返回:
            从未刷新或超过 max_age 返回 True
        """
        age = self._snapshot.age(candidate)
        return age is None or age > max_age

    def refresh(self, candidate: Optional[str] = None, timeout: Optional[float] = None) -> CatalogSnapshot:
        """
        从远程刷新目录。

        指定候选时只刷新该候选，否则刷新全部候选；任何一个候选失败都不会
        替换快照。

        参数:
            candidate: 候选名称，None 表示全部
            timeout: 请求超时时间（秒），默认使用配置的 request_timeout

        返回:
            新的 CatalogSnapshot
        """
        targets = [candidate] if candidate else list(self._candidates)
        fetched: Dict[str, Tuple[CatalogVersion, ...]] = {}
        for candidate_id in targets:
            fetched[candidate_id] = self.fetch_versions(candidate_id, timeout=timeout)

        now = datetime.now()
        with self._swap_lock:
            snapshot = self._snapshot
            for candidate_id, versions in fetched.items():
                snapshot = snapshot.with_candidate(candidate_id, versions, now)
            self._snapshot = snapshot
            self._persist(snapshot)
        return snapshot

    def _persist(self, snapshot: CatalogSnapshot) -> None:
        self.config_manager.set_cache(CACHE_KEY, snapshot.to_dict())
        try:
            self.config_manager.save_cache()
        except ConfigSaveError as e:
            # 内存中的快照已经生效，缓存只影响下次启动
            logger.warning(f"远程目录缓存未能写入磁盘: {e}")

    def get_index_url(self, candidate: str) -> str:
        base_url = self.config_manager.get_catalog_url()
        if not base_url:
            raise NetworkError("未配置远程目录 URL (settings.catalog_url)", candidate=candidate)
        return base_url.rstrip("/") + f"/{candidate}.json"

    def fetch_versions(self, candidate: str, timeout: Optional[float] = None) -> Tuple[CatalogVersion, ...]:
        """
        从远程索引获取候选的版本列表，不修改快照。

        参数:
            candidate: 候选名称
            timeout: 请求超时时间（秒）

        返回:
            按版本号降序排列的 CatalogVersion 元组
        """
        cand = self._candidate(candidate)
        index_url = self.get_index_url(candidate)
        if timeout is None:
            timeout = self.config_manager.get_request_timeout()

        logger.info(f"正在获取 {candidate} 的远程版本列表: {index_url}")
        try:
            response = requests.get(index_url, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            logger.warning(f"获取 {candidate} 版本列表超时: {e}")
            raise CatalogTimeout(f"请求超时 ({timeout}s): {index_url}", candidate=candidate) from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"获取 {candidate} 版本列表失败: {e}")
            raise NetworkError(f"请求失败: {e}", candidate=candidate) from e

        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"索引文件不是有效的 JSON: {index_url}", candidate=candidate) from e

        versions = self._parse_index(cand, data)
        logger.info(f"成功获取 {len(versions)} 个 {candidate} 版本")
        return versions

    def _parse_index(self, cand: Candidate, data: Any) -> Tuple[CatalogVersion, ...]:
        """
        解析索引文件内容。

        参数:
            cand: 候选
            data: 解析后的 JSON 数据，列表或包含 versions 列表的字典

        返回:
            按版本号降序排列的 CatalogVersion 元组
        """
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get("versions")
            if not isinstance(items, list):
                raise ParseError("索引文件缺少 versions 列表", candidate=cand.id)
        else:
            raise ParseError(f"索引文件格式不支持: {type(data).__name__}", candidate=cand.id)

        versions: Dict[str, CatalogVersion] = {}
        dropped = 0
        for item in items:
            catalog_version = self._parse_item(cand, item)
            if catalog_version is None:
                dropped += 1
                continue
            versions.setdefault(catalog_version.version, catalog_version)

        if dropped:
            logger.warning(f"{cand.id} 的版本列表中有 {dropped} 个无效项被过滤")

        return tuple(version_utils.sort_versions_desc(versions.values(), cand.version_scheme))

    def _parse_item(self, cand: Candidate, item: Any) -> Optional[CatalogVersion]:
        if not isinstance(item, dict):
            return None
        raw_version = item.get(cand.version_field)
        if raw_version is None or isinstance(raw_version, (dict, list, bool)):
            return None

        version = str(raw_version).strip()
        if len(version) > 1 and version[0] in "vV" and version[1].isdigit():
            version = version[1:]
        try:
            InputValidator.validate_version_string(version)
        except InputValidationError as e:
            logger.debug(f"忽略无效版本号 {raw_version!r}: {e}")
            return None

        download_url = item.get("download_url") or item.get("url") or render_download_url(cand, version)
        return CatalogVersion(
            version=version,
            vendor=item.get("vendor") or None,
            download_url=download_url,
            checksum=item.get("sha256") or item.get("checksum") or None,
        )


def render_download_url(cand: Candidate, version: str) -> str:
    """
    使用候选的 URL 模板生成下载地址。

    支持的变量: {candidate} {version} {major} {minor} {patch} {platform} {arch}

    参数:
        cand: 候选
        version: 版本号

    返回:
        下载 URL，没有模板或模板无效时返回空字符串
    """
    template = cand.download_url_template
    if not template:
        return ""
    try:
        return template.format(
            candidate=cand.id,
            version=version,
            platform=_current_platform(),
            arch=_current_arch(),
            **version_utils.split_version_parts(version),
        )
    except (KeyError, IndexError, ValueError) as e:
        logger.warning(f"{cand.id} 的下载 URL 模板无效: {template} ({e})")
        return ""


def _current_platform() -> str:
    system = platform.system().lower()
    return {"darwin": "macos"}.get(system, system)


def _current_arch() -> str:
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return "x64"
    if machine in ("aarch64", "arm64"):
        return "aarch64"
    if machine in ("i386", "i686", "x86"):
        return "x86"
    return machine
