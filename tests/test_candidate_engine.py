import os
import threading
import time

import pytest

from conftest import FakeCatalog
from sdkvm.core.candidate_engine import CandidateEngine
from sdkvm.core.errors import (
    CannotRemoveDefault, DownloadError, NetworkError, NotInstalled,
    OperationCancelled, UnknownCandidate, UnknownVersion,
)
from sdkvm.core.models import EventKind, VersionStatus


def _installed(engine, candidate):
    return [v.version for v in engine.list_versions(candidate, installed_only=True)]


class TestInstall:
    def test_install_latest_refreshes_stale_catalog(self, engine, fake_catalog, fake_installer):
        entry = engine.install("java")

        assert fake_catalog.refresh_calls == ["java"]
        assert entry.version == "21.0.1-zulu"
        assert fake_installer.calls == [("java", "21.0.1-zulu")]

    def test_install_exact_version(self, engine):
        engine.refresh("java")
        entry = engine.install("java", "17.0.2")

        assert entry.status == VersionStatus.INSTALLED
        versions = {v.version: v for v in engine.list_versions("java")}
        assert versions["17.0.2"].installed
        assert versions["21.0.1"].status == VersionStatus.AVAILABLE

    def test_repeat_install_is_a_noop(self, engine, fake_installer):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        again = engine.install("java", "17.0.2")

        assert again.installed
        assert fake_installer.calls == [("java", "17.0.2")]

    def test_unknown_version(self, engine):
        engine.refresh("java")
        with pytest.raises(UnknownVersion) as exc_info:
            engine.install("java", "99.0.0")
        assert exc_info.value.candidate == "java"

    def test_unknown_candidate(self, engine):
        with pytest.raises(UnknownCandidate):
            engine.install("python", "3.12.0")

    def test_failure_leaves_broken_entry(self, engine, fake_installer):
        engine.refresh("java")
        fake_installer.failures["17.0.2"] = DownloadError("连接被重置")

        with pytest.raises(DownloadError) as exc_info:
            engine.install("java", "17.0.2")

        assert exc_info.value.candidate == "java"
        assert exc_info.value.version == "17.0.2"
        entry = engine.inventory.get("java", "17.0.2")
        assert entry.status == VersionStatus.BROKEN
        assert "连接被重置" in entry.reason

    def test_cancellation_leaves_broken_entry(self, engine):
        engine.refresh("java")
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(OperationCancelled):
            engine.install("java", "17.0.2", cancel_event=cancel_event)

        assert engine.inventory.get("java", "17.0.2").status == VersionStatus.BROKEN

    def test_broken_version_can_be_reinstalled(self, engine, fake_installer):
        engine.refresh("java")
        fake_installer.failures["17.0.2"] = DownloadError("失败")
        with pytest.raises(DownloadError):
            engine.install("java", "17.0.2")

        del fake_installer.failures["17.0.2"]
        assert engine.install("java", "17.0.2").installed

    def test_refresh_failure_aborts_latest_install(self, engine, fake_catalog, fake_installer):
        fake_catalog.errors["java"] = NetworkError("离线")
        with pytest.raises(NetworkError):
            engine.install("java")
        assert fake_installer.calls == []


class TestUninstall:
    def test_uninstall(self, engine):
        engine.refresh("java")
        entry = engine.install("java", "17.0.2")

        engine.uninstall("java", "17.0.2")

        assert _installed(engine, "java") == []
        assert engine.inventory.find("java", "17.0.2") is None
        assert not os.path.exists(entry.path)

    def test_uninstall_default_is_rejected(self, engine):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.set_default("java", "17.0.2")

        with pytest.raises(CannotRemoveDefault):
            engine.uninstall("java", "17.0.2")

        assert _installed(engine, "java") == ["17.0.2"]
        assert engine.get_default("java").version == "17.0.2"

    def test_uninstall_missing(self, engine):
        with pytest.raises(NotInstalled):
            engine.uninstall("java", "17.0.2")

    def test_uninstall_cleans_broken_entry(self, engine, fake_installer):
        engine.refresh("java")
        fake_installer.failures["17.0.2"] = DownloadError("失败")
        with pytest.raises(DownloadError):
            engine.install("java", "17.0.2")

        engine.uninstall("java", "17.0.2")

        assert engine.inventory.find("java", "17.0.2") is None

    def test_uninstall_unmanaged_directory(self, engine):
        root = engine.inventory.version_path("java", "8.0.1")
        (root / "bin").mkdir(parents=True)

        engine.uninstall("java", "8.0.1")

        assert not root.exists()


class TestDefault:
    def test_set_and_get_default(self, engine):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.set_default("java", "17.0.2")
        assert engine.get_default("java").version == "17.0.2"

    def test_set_default_not_installed_keeps_previous(self, engine, fake_installer):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.set_default("java", "17.0.2")

        with pytest.raises(NotInstalled):
            engine.set_default("java", "21.0.1")

        assert engine.get_default("java").version == "17.0.2"
        assert fake_installer.calls == [("java", "17.0.2")]

    def test_clear_default(self, engine):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.set_default("java", "17.0.2")
        engine.clear_default("java")

        assert engine.get_default("java") is None
        engine.uninstall("java", "17.0.2")

    def test_end_to_end_switch_and_remove(self, engine):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.install("java", "21.0.1")
        engine.set_default("java", "17.0.2")

        engine.set_default("java", "21.0.1")
        engine.uninstall("java", "17.0.2")

        assert _installed(engine, "java") == ["21.0.1"]
        assert engine.get_default("java").version == "21.0.1"


class TestConcurrency:
    def test_installs_of_one_candidate_never_overlap(self, engine, fake_installer):
        engine.refresh("java")
        fake_installer.delay = 0.05
        fake_installer.failures["11.0.20"] = DownloadError("失败")
        versions = ["17.0.2", "21.0.1", "21.0.1-zulu", "11.0.20"]
        errors = []

        def worker(version):
            try:
                engine.install("java", version)
            except DownloadError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(v,)) for v in versions]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert fake_installer.max_concurrent == 1
        assert len(errors) == 1
        assert sorted(_installed(engine, "java")) == ["17.0.2", "21.0.1", "21.0.1-zulu"]

    def test_different_candidates_install_in_parallel(self, engine, fake_installer):
        engine.refresh()
        # 两个安装必须同时到达屏障，串行执行会超时
        fake_installer.barrier = threading.Barrier(2, timeout=5)
        results = {}

        def worker(candidate, version):
            results[candidate] = engine.install(candidate, version)

        threads = [
            threading.Thread(target=worker, args=("java", "17.0.2")),
            threading.Thread(target=worker, args=("maven", "3.9.6")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert results["java"].installed
        assert results["maven"].installed
        assert fake_installer.max_concurrent == 2

    def test_concurrent_refresh_is_deduplicated(self, engine, fake_catalog):
        fake_catalog.gate = threading.Event()
        results = []

        def worker():
            results.append(engine.refresh("java"))

        first = threading.Thread(target=worker)
        first.start()
        assert fake_catalog.started.wait(5)
        second = threading.Thread(target=worker)
        second.start()
        time.sleep(0.2)
        fake_catalog.gate.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert fake_catalog.refresh_calls == ["java"]
        assert len(results) == 2
        assert results[0] is results[1]

    def test_refresh_all_reports_first_error_after_trying_all(self, engine, fake_catalog):
        fake_catalog.errors["java"] = NetworkError("离线")

        with pytest.raises(NetworkError) as exc_info:
            engine.refresh()

        assert exc_info.value.candidate == "java"
        assert fake_catalog.refresh_calls == ["java", "maven"]
        assert fake_catalog.current().is_refreshed("maven")


class TestRecovery:
    def test_crash_during_install_is_broken_after_restart(self, config_manager, engine, fake_catalog, fake_installer):
        engine.inventory.record_install_start("java", "17.0.2")

        restarted = CandidateEngine(config_manager, catalog=fake_catalog, installer=fake_installer)

        entry = restarted.inventory.get("java", "17.0.2")
        assert entry.status == VersionStatus.BROKEN
        assert _installed(restarted, "java") == []
        restarted.close()

    def test_second_engine_leaves_running_install_alone(self, config_manager, engine, fake_catalog, fake_installer):
        engine.refresh("java")
        fake_installer.gate = threading.Event()
        results = {}

        def worker():
            results["entry"] = engine.install("java", "17.0.2")

        thread = threading.Thread(target=worker)
        thread.start()
        assert fake_installer.started.wait(5)

        # 相当于另一个进程在安装进行中启动
        other = CandidateEngine(config_manager, catalog=fake_catalog, installer=fake_installer)
        assert other.inventory.get("java", "17.0.2").status == VersionStatus.DOWNLOADING

        fake_installer.gate.set()
        thread.join(timeout=5)
        other.close()

        assert results["entry"].installed
        assert other.inventory.get("java", "17.0.2").status == VersionStatus.INSTALLED

    def test_reinstall_after_crash_replaces_leftover_directory(self, config_manager, engine, fake_catalog,
                                                               fake_installer):
        engine.refresh("java")
        engine.inventory.record_install_start("java", "17.0.2")
        leftover = engine.inventory.version_path("java", "17.0.2")
        (leftover / "bin").mkdir(parents=True)
        (leftover / "partial").write_text("old")

        restarted = CandidateEngine(config_manager, catalog=fake_catalog, installer=fake_installer)
        assert restarted.inventory.get("java", "17.0.2").status == VersionStatus.BROKEN

        entry = restarted.install("java", "17.0.2")

        assert entry.installed
        assert (leftover / "bin" / "tool").is_file()
        assert not (leftover / "partial").exists()
        restarted.close()

    def test_crash_leftovers_are_swept_on_start(self, config_manager, engine, fake_catalog, fake_installer):
        root = engine.inventory.version_path("java", "17.0.2").parent
        staging = root / ".staging-17.0.2-deadbeef"
        (staging / "extracted").mkdir(parents=True)

        restarted = CandidateEngine(config_manager, catalog=fake_catalog, installer=fake_installer)

        assert not staging.exists()
        assert _installed(restarted, "java") == []
        restarted.close()


class TestQueries:
    def test_list_versions_filter_matches_version_and_vendor(self, engine):
        engine.refresh("java")
        assert [v.version for v in engine.list_versions("java", filter="zulu")] == ["21.0.1-zulu", "11.0.20"]
        assert [v.version for v in engine.list_versions("java", filter="21 tem")] == ["21.0.1"]
        assert engine.list_versions("java", filter="21 corretto") == []

    def test_list_versions_flags(self, engine, fake_installer):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.set_default("java", "17.0.2")
        fake_installer.downloaded.add(("java", "11.0.20"))

        assert [v.version for v in engine.list_versions("java", default_only=True)] == ["17.0.2"]
        assert [v.version for v in engine.list_versions("java", downloaded_only=True)] == ["11.0.20"]
        entry = engine.list_versions("java", installed_only=True)[0]
        assert entry.vendor == "tem"
        assert entry.is_default

    def test_list_versions_includes_local_only_versions(self, engine):
        root = engine.inventory.version_path("java", "8.0.1")
        root.mkdir(parents=True)
        versions = engine.list_versions("java")
        assert [(v.version, v.managed) for v in versions] == [("8.0.1", False)]

    def test_list_candidates(self, engine):
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.set_default("java", "17.0.2")

        summaries = {s.candidate.id: s for s in engine.list_candidates()}
        assert summaries["java"].installed == 1
        assert summaries["java"].default == "17.0.2"
        assert summaries["maven"].installed == 0

        assert [s.candidate.id for s in engine.list_candidates(installed_only=True)] == ["java"]
        assert [s.candidate.id for s in engine.list_candidates(filter="mav")] == ["maven"]


class TestEvents:
    def test_events_are_published(self, engine):
        subscription = engine.subscribe()
        engine.refresh("java")
        engine.install("java", "17.0.2")
        engine.install("java", "17.0.2")
        engine.set_default("java", "17.0.2")
        engine.set_default("java", "17.0.2")
        engine.clear_default("java")
        engine.uninstall("java", "17.0.2")

        kinds = [(e.kind, e.version) for e in subscription.drain()]
        assert kinds == [
            (EventKind.CATALOG_REFRESHED, None),
            (EventKind.INSTALLED, "17.0.2"),
            (EventKind.DEFAULT_CHANGED, "17.0.2"),
            (EventKind.DEFAULT_CHANGED, None),
            (EventKind.UNINSTALLED, "17.0.2"),
        ]

    def test_failed_install_publishes_nothing(self, engine, fake_installer):
        engine.refresh("java")
        subscription = engine.subscribe()
        fake_installer.failures["17.0.2"] = DownloadError("失败")
        with pytest.raises(DownloadError):
            engine.install("java", "17.0.2")
        assert subscription.drain() == []

    def test_close_ends_subscriptions(self, config_manager):
        engine = CandidateEngine(config_manager, catalog=FakeCatalog())
        subscription = engine.subscribe()
        engine.close()
        assert subscription.closed
