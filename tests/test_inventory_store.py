import json
import os

import pytest

from conftest import install_directly
from sdkvm.core.errors import InUse, NotInstalled, StorageError, UnknownCandidate
from sdkvm.core.inventory_store import InventoryStore
from sdkvm.core.models import VersionStatus

needs_symlinks = pytest.mark.skipif(os.name == "nt", reason="需要符号链接支持")


def _statuses(store, candidate):
    return {entry.version: entry.status for entry in store.list(candidate)}


class TestInstallRecords:
    def test_install_lifecycle(self, store):
        token = store.record_install_start("java", "17.0.2")
        assert _statuses(store, "java") == {"17.0.2": VersionStatus.DOWNLOADING}

        path = store.version_path("java", "17.0.2")
        path.mkdir(parents=True)
        entry = store.commit_install(token, str(path), 1234)

        assert entry.status == VersionStatus.INSTALLED
        assert entry.size == 1234
        assert entry.installed_at is not None
        assert store.get("java", "17.0.2").installed

    def test_failure_is_recorded_as_broken(self, store):
        token = store.record_install_start("java", "17.0.2")
        store.record_failure(token, "连接被重置")

        entry = store.get("java", "17.0.2")
        assert entry.status == VersionStatus.BROKEN
        assert entry.reason == "连接被重置"

    def test_commit_after_failure_is_rejected(self, store):
        token = store.record_install_start("java", "17.0.2")
        store.record_failure(token, "取消")
        with pytest.raises(StorageError):
            store.commit_install(token, "/tmp/x", 0)

    def test_second_start_for_same_version_is_rejected(self, store):
        store.record_install_start("java", "17.0.2")
        with pytest.raises(StorageError):
            store.record_install_start("java", "17.0.2")

    def test_records_survive_new_instance(self, store, config_manager):
        install_directly(store, "java", "21.0.1")
        reopened = InventoryStore(config_manager)
        assert reopened.get("java", "21.0.1").installed

    def test_inventory_file_layout(self, store, config_manager):
        install_directly(store, "java", "21.0.1")
        path = config_manager.get_inventory_dir() / "java.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["default"] is None
        assert data["versions"]["21.0.1"]["status"] == "installed"

    def test_get_missing_version_raises(self, store):
        with pytest.raises(NotInstalled):
            store.get("java", "1.0")
        assert store.find("java", "1.0") is None

    def test_unknown_candidate(self, store):
        with pytest.raises(UnknownCandidate):
            store.list("python")

    def test_version_path_rejects_traversal(self, store):
        with pytest.raises(StorageError):
            store.version_path("java", "../escape")

    def test_list_is_sorted_newest_first(self, store):
        for version in ("8.0.1", "21.0.1", "11.0.20"):
            install_directly(store, "java", version)
        assert [e.version for e in store.list("java")] == ["21.0.1", "11.0.20", "8.0.1"]


class TestRemove:
    def test_remove_record(self, store):
        install_directly(store, "java", "17.0.2")
        store.remove("java", "17.0.2")
        assert store.find("java", "17.0.2") is None

    def test_remove_default_is_rejected(self, store):
        install_directly(store, "java", "17.0.2")
        store.set_default("java", "17.0.2")
        with pytest.raises(InUse):
            store.remove("java", "17.0.2")
        assert store.get("java", "17.0.2").installed

    def test_remove_missing_record(self, store):
        with pytest.raises(NotInstalled):
            store.remove("java", "17.0.2")


class TestDefault:
    def test_set_and_get_default(self, store):
        install_directly(store, "java", "17.0.2")
        entry = store.set_default("java", "17.0.2")
        assert entry.is_default
        assert store.get_default("java").version == "17.0.2"
        assert [e.version for e in store.list("java") if e.is_default] == ["17.0.2"]

    def test_set_default_requires_installed(self, store):
        install_directly(store, "java", "17.0.2")
        store.set_default("java", "17.0.2")
        token = store.record_install_start("java", "21.0.1")
        store.record_failure(token, "失败")

        with pytest.raises(NotInstalled):
            store.set_default("java", "21.0.1")
        with pytest.raises(NotInstalled):
            store.set_default("java", "99")
        assert store.get_default("java").version == "17.0.2"

    def test_clear_default(self, store):
        install_directly(store, "java", "17.0.2")
        store.set_default("java", "17.0.2")
        store.clear_default("java")
        assert store.get_default("java") is None

    @needs_symlinks
    def test_current_link_follows_default(self, store):
        install_directly(store, "java", "17.0.2")
        install_directly(store, "java", "21.0.1")
        root = store.version_path("java", "17.0.2").parent

        store.set_default("java", "17.0.2")
        assert os.readlink(root / "current").endswith("17.0.2")
        store.set_default("java", "21.0.1")
        assert os.readlink(root / "current").endswith("21.0.1")
        store.clear_default("java")
        assert not (root / "current").is_symlink()


class TestUnmanaged:
    def test_unknown_directories_are_installed_but_unmanaged(self, store):
        root = store.version_path("java", "17.0.2").parent
        (root / "17.0.2").mkdir(parents=True)
        (root / ".staging-21.0.1-abcd").mkdir()
        (root / "README.txt").write_text("x")

        entries = store.list("java")
        assert [e.version for e in entries] == ["17.0.2"]
        assert entries[0].installed
        assert entries[0].managed is False

    def test_unmanaged_version_can_be_default(self, store):
        root = store.version_path("java", "17.0.2").parent
        (root / "17.0.2").mkdir(parents=True)
        store.set_default("java", "17.0.2")
        assert store.get_default("java").version == "17.0.2"


class TestReconcile:
    def test_interrupted_install_becomes_broken(self, store, config_manager):
        store.record_install_start("java", "17.0.2")

        # 新实例没有进行中的安装，相当于进程崩溃后重启
        restarted = InventoryStore(config_manager)
        restarted.reconcile("java")

        entry = restarted.get("java", "17.0.2")
        assert entry.status == VersionStatus.BROKEN
        assert entry.reason

    def test_active_install_is_left_alone(self, store):
        store.record_install_start("java", "17.0.2")
        store.reconcile("java")
        assert store.get("java", "17.0.2").status == VersionStatus.DOWNLOADING

    def test_downloading_record_names_its_owner(self, store, config_manager):
        token = store.record_install_start("java", "17.0.2")
        path = config_manager.get_inventory_dir() / "java.json"
        record = json.loads(path.read_text(encoding="utf-8"))["versions"]["17.0.2"]
        assert record["owner"] == {"pid": os.getpid(), "operation_id": token.operation_id}

        store.commit_install(token, str(store.version_path("java", "17.0.2")), 0)
        record = json.loads(path.read_text(encoding="utf-8"))["versions"]["17.0.2"]
        assert "owner" not in record

    def test_locked_candidate_is_not_reconciled(self, store, config_manager):
        token = store.record_install_start("java", "17.0.2")
        other = InventoryStore(config_manager)

        with store.operation_lock("java"):
            other.reconcile("java")
            assert other.get("java", "17.0.2").status == VersionStatus.DOWNLOADING
            entry = store.commit_install(token, str(store.version_path("java", "17.0.2")), 0)

        assert entry.installed

    def test_crash_leftovers_are_removed(self, store):
        root = store.version_path("java", "17.0.2").parent
        staging = root / ".staging-17.0.2-deadbeef"
        (staging / "extracted").mkdir(parents=True)
        (root / "11.0.20").mkdir()
        temp_link = root / ".current-0123abcd"
        if os.name != "nt":
            os.symlink(root / "11.0.20", temp_link, target_is_directory=True)

        store.reconcile("java")

        assert not staging.exists()
        assert not temp_link.is_symlink()
        assert (root / "11.0.20").is_dir()

    def test_leftovers_of_a_running_operation_are_kept(self, store, config_manager):
        root = store.version_path("java", "17.0.2").parent
        staging = root / ".staging-17.0.2-deadbeef"
        staging.mkdir(parents=True)
        other = InventoryStore(config_manager)

        with store.operation_lock("java"):
            other.reconcile("java")

        assert staging.exists()

    def test_dangling_default_is_cleared(self, store, config_manager):
        path = config_manager.get_inventory_dir() / "java.json"
        path.write_text(json.dumps({"default": "9.0.4", "versions": {}}), encoding="utf-8")

        store.reconcile("java")

        assert store.get_default("java") is None
        assert json.loads(path.read_text(encoding="utf-8"))["default"] is None

    @needs_symlinks
    def test_external_current_link_is_adopted(self, store):
        root = store.version_path("java", "17.0.2").parent
        (root / "17.0.2").mkdir(parents=True)
        os.symlink(root / "17.0.2", root / "current", target_is_directory=True)

        store.reconcile("java")

        assert store.get_default("java").version == "17.0.2"

    @needs_symlinks
    def test_missing_link_is_repaired(self, store):
        install_directly(store, "java", "17.0.2")
        store.set_default("java", "17.0.2")
        link = store.version_path("java", "17.0.2").parent / "current"
        link.unlink()

        store.reconcile("java")

        assert link.is_symlink()

    def test_corrupt_inventory_file(self, store, config_manager):
        path = config_manager.get_inventory_dir() / "java.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            store.list("java")
