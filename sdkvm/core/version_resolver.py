"""
版本解析模块。

把用户给出的版本标记（latest、default 或具体版本号）解析为具体版本号。
"""

from typing import Optional

from sdkvm.core import version_utils
from sdkvm.core.errors import NoDefaultSet, StaleCatalog, UnknownVersion
from sdkvm.core.interfaces import ICatalogClient, IInventoryStore, IVersionResolver
from sdkvm.core.models import Candidate
from sdkvm.utils.input_validator import InputValidator, InputValidationError

LATEST = "latest"
DEFAULT = "default"


class VersionResolver(IVersionResolver):
    """
    版本解析器类。

    不持有可变状态，只读取目录快照和本地清单，可以在多个线程中同时使用。
    """

    def __init__(self, catalog: ICatalogClient, inventory: IInventoryStore, freshness: float):
        """
        初始化版本解析器。

        参数:
            catalog: 远程目录客户端
            inventory: 本地清单
            freshness: 解析 latest 时允许的目录最大年龄（秒）
        """
        self.catalog = catalog
        self.inventory = inventory
        self.freshness = freshness

    def resolve(self, candidate: Candidate, token: Optional[str]) -> str:
        """
        解析版本标记。

        参数:
            candidate: 候选
            token: "latest"、"default" 或具体版本号，空值视为 latest

        返回:
            具体版本号

        抛出:
            StaleCatalog: 解析 latest 时目录已过期或从未刷新
            UnknownVersion: 目录中没有该版本
            NoDefaultSet: 解析 default 时未设置默认版本
        """
        token = (token or LATEST).strip()
        if token.lower() == LATEST:
            return self.resolve_latest(candidate)
        if token.lower() == DEFAULT:
            entry = self.inventory.get_default(candidate.id)
            if entry is None:
                raise NoDefaultSet("未设置默认版本", candidate=candidate.id)
            return entry.version
        return self.resolve_exact(candidate, token)

    def resolve_latest(self, candidate: Candidate) -> str:
        if self.catalog.is_stale(candidate.id, self.freshness):
            raise StaleCatalog("远程目录已过期，请先刷新", candidate=candidate.id)
        versions = [v.version for v in self.catalog.current().versions_for(candidate.id)]
        latest = version_utils.latest_version(versions, candidate.version_scheme)
        if latest is None:
            raise UnknownVersion("远程目录中没有可用版本", candidate=candidate.id)
        return latest

    def resolve_exact(self, candidate: Candidate, version: str) -> str:
        """
        校验具体版本号。

        目录从未刷新时无法校验，直接接受；本地已安装的版本即使不在目录中也接受。
        """
        try:
            InputValidator.validate_version_string(version)
        except InputValidationError as e:
            raise UnknownVersion(str(e), candidate=candidate.id, version=version) from e

        snapshot = self.catalog.current()
        if not snapshot.is_refreshed(candidate.id):
            return version
        if snapshot.find(candidate.id, version) is not None:
            return version
        entry = self.inventory.find(candidate.id, version)
        if entry is not None and entry.installed:
            return version
        raise UnknownVersion(f"远程目录中不存在版本 {version}", candidate=candidate.id, version=version)
