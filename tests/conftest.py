"""
测试共享夹具。

日志目录必须在导入 sdkvm 之前指向临时目录，否则会写入用户目录。
"""

import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

os.environ["SDKVM_HOME"] = tempfile.mkdtemp(prefix="sdkvm-test-home-")

import pytest

from sdkvm.core.candidate_engine import CandidateEngine
from sdkvm.core.config_manager import ConfigManager
from sdkvm.core.errors import OperationCancelled
from sdkvm.core.interfaces import IArchiveInstaller, ICatalogClient
from sdkvm.core.inventory_store import InventoryStore
from sdkvm.core.models import CatalogSnapshot, CatalogVersion, InstallResult


CATALOG_URL = "https://catalog.example.com/sdk"


def make_snapshot(data: Dict[str, List], age: float = 0) -> CatalogSnapshot:
    """
    构建目录快照。

    参数:
        data: 候选 -> 版本号列表，元素可以是字符串或 (version, vendor) 元组
        age: 快照的年龄（秒）
    """
    fetched_at = datetime.now() - timedelta(seconds=age)
    snapshot = CatalogSnapshot()
    for candidate, versions in data.items():
        items = []
        for item in versions:
            version, vendor = (item, None) if isinstance(item, str) else item
            items.append(CatalogVersion(
                version=version,
                vendor=vendor,
                download_url=f"https://dl.example.com/{candidate}/{version}.zip",
            ))
        snapshot = snapshot.with_candidate(candidate, tuple(items), fetched_at)
    return snapshot


class FakeCatalog(ICatalogClient):
    """内存中的远程目录，refresh 时用 remote 的内容替换快照。"""

    def __init__(self, remote: Optional[Dict[str, List]] = None, snapshot: Optional[CatalogSnapshot] = None):
        self.remote = remote or {}
        self.snapshot = snapshot or CatalogSnapshot()
        self.refresh_calls: List[Optional[str]] = []
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.errors: Dict[str, Exception] = {}

    def refresh(self, candidate=None, timeout=None):
        self.refresh_calls.append(candidate)
        self.started.set()
        if self.gate is not None:
            assert self.gate.wait(5)
        targets = [candidate] if candidate else list(self.remote)
        for target in targets:
            if target in self.errors:
                raise self.errors[target]
        snapshot = self.snapshot
        for target in targets:
            fresh = make_snapshot({target: self.remote.get(target, [])})
            snapshot = snapshot.with_candidate(target, fresh.versions_for(target), datetime.now())
        self.snapshot = snapshot
        return snapshot

    def current(self):
        return self.snapshot

    def is_stale(self, candidate, max_age):
        age = self.snapshot.age(candidate)
        return age is None or age > max_age


class FakeInstaller(IArchiveInstaller):
    """
    不访问网络的安装器，直接在目标位置创建目录。

    属性:
        calls: 每次 install 的 (candidate, version)
        max_concurrent: 同时进行中的安装的最大数量
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, BaseException] = {}
        self.delay = 0.0
        self.barrier: Optional[threading.Barrier] = None
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.downloaded: set = set()
        self._lock = threading.Lock()
        self._active = 0
        self.max_concurrent = 0

    def install(self, candidate, version, destination, catalog_version=None, cancel_event=None,
                deadline=None, progress_callback=None, status_callback=None):
        with self._lock:
            self.calls.append((candidate.id, version))
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
        self.started.set()
        try:
            if self.gate is not None:
                assert self.gate.wait(5)
            if self.barrier is not None:
                self.barrier.wait()
            if self.delay:
                time.sleep(self.delay)
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled("安装已取消")
            if version in self.failures:
                raise self.failures[version]
            destination = Path(destination)
            (destination / "bin").mkdir(parents=True)
            (destination / "bin" / "tool").write_text(f"{candidate.id} {version}")
            if progress_callback:
                progress_callback(10, 10)
            return InstallResult(path=str(destination), size=10)
        finally:
            with self._lock:
                self._active -= 1

    def uninstall(self, candidate, version, path):
        shutil.rmtree(path, ignore_errors=True)

    def is_downloaded(self, candidate, version):
        return (candidate, version) in self.downloaded


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / "home"


@pytest.fixture
def config_manager(tmp_path, config_dir):
    """带 java（numeric）和 maven（semver）两个候选的配置。"""
    manager = ConfigManager(config_dir)
    config = manager.get_config()
    settings = config["settings"]
    settings["sdk_root"] = str(tmp_path / "candidates")
    settings["catalog_url"] = CATALOG_URL
    settings["candidates"] = {
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
            "download_url_template": "https://dl.example.com/maven-{major}/{version}/apache-maven-{version}-bin.zip",
            "version_field": "version",
        },
    }
    manager.save_config(config)
    return manager


@pytest.fixture
def store(config_manager):
    return InventoryStore(config_manager)


@pytest.fixture
def fake_catalog():
    return FakeCatalog(remote={
        "java": [("17.0.2", "tem"), ("21.0.1", "tem"), ("21.0.1-zulu", "zulu"), ("11.0.20", "zulu")],
        "maven": ["3.8.8", "3.9.6", "4.0.0-rc-1"],
    })


@pytest.fixture
def fake_installer():
    return FakeInstaller()


@pytest.fixture
def engine(config_manager, fake_catalog, fake_installer):
    engine = CandidateEngine(config_manager, catalog=fake_catalog, installer=fake_installer)
    yield engine
    engine.close()


def install_directly(store: InventoryStore, candidate: str, version: str) -> None:
    """不经过引擎，直接在清单中记录一个已安装的版本。"""
    token = store.record_install_start(candidate, version)
    path = store.version_path(candidate, version)
    path.mkdir(parents=True)
    store.commit_install(token, str(path), 0)
