"""Tests for startup crash recovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import package_files, write_zip
from pluginhost.lifecycle.coordinator import InstallCoordinator
from pluginhost.lifecycle.fetcher import ArchiveFetcher
from pluginhost.lifecycle.manifest import load_manifest
from pluginhost.lifecycle.models import OperationIntent, PluginRecord
from pluginhost.lifecycle.registry import PluginRegistry
from pluginhost.lifecycle.state import PluginState
from pluginhost.lifecycle.verifier import PackageVerifier, compute_tree_checksum
from pluginhost.observability.metrics import LifecycleMetrics


class SimulatedCrash(BaseException):
    """Stands in for the process dying at a chosen point."""


class CrashingRegistry(PluginRegistry):
    """Registry that 'kills the process' on a chosen transition."""

    crash_on: tuple[PluginState, PluginState] | None = None
    crash_on_promoted = False

    def compare_and_transition(self, plugin_id, expected, new_state, *args, **kwargs):
        if (expected, new_state) == self.crash_on:
            raise SimulatedCrash()
        return super().compare_and_transition(
            plugin_id, expected, new_state, *args, **kwargs
        )

    def update_intent(self, plugin_id, expected_state, intent):
        if intent.promoted and self.crash_on_promoted:
            raise SimulatedCrash()
        super().update_intent(plugin_id, expected_state, intent)


def _coordinator(
    registry: PluginRegistry, plugins_dir: Path, staging_dir: Path, **kwargs: object
) -> InstallCoordinator:
    return InstallCoordinator(
        registry, ArchiveFetcher(), PackageVerifier(), plugins_dir, staging_dir, **kwargs
    )


def _archive(tmp_path: Path, version: str, **kwargs: object) -> str:
    path = write_zip(
        tmp_path / "archives" / f"demo-{version}.zip", package_files(version=version, **kwargs)
    )
    return path.as_uri()


def _restart(
    registry_path: Path, plugins_dir: Path, staging_dir: Path, **kwargs: object
) -> InstallCoordinator:
    registry = PluginRegistry(storage_path=registry_path)
    return _coordinator(registry, plugins_dir, staging_dir, **kwargs)


# ---------------------------------------------------------------------------
# Crash between promotion and commit
# ---------------------------------------------------------------------------


class TestCrashAfterPromotion:
    def test_install_is_completed(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = CrashingRegistry(storage_path=registry_path)
        registry.crash_on = (PluginState.INSTALLING, PluginState.INSTALLED)
        crashed = _coordinator(registry, plugins_dir, staging_dir)
        with pytest.raises(SimulatedCrash):
            crashed.install("demo", _archive(tmp_path, "1.0.0", plugin_type="validation"))

        assert (plugins_dir / "demo" / "main.py").is_file()
        metrics = LifecycleMetrics(prefix="r")
        restarted = _restart(registry_path, plugins_dir, staging_dir, metrics=metrics)
        assert restarted.registry.get_record("demo").state == PluginState.INSTALLING

        recovered = restarted.recover()

        assert [r.id for r in recovered] == ["demo"]
        record = restarted.registry.get_record("demo")
        assert record.state == PluginState.INSTALLED
        assert record.installed_version == "1.0.0"
        assert record.plugin_type == "validation"
        assert record.checksum == compute_tree_checksum(plugins_dir / "demo")
        assert restarted.registry.get_intent("demo") is None
        assert list(staging_dir.iterdir()) == []
        sample = metrics.registry.get_sample_value("r_recovered_total", {"action": "committed"})
        assert sample == 1.0

    def test_update_is_completed_and_backup_removed(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = CrashingRegistry(storage_path=registry_path)
        coordinator = _coordinator(registry, plugins_dir, staging_dir)
        coordinator.install("demo", _archive(tmp_path, "1.0.0"))

        registry.crash_on = (PluginState.UPDATING, PluginState.INSTALLED)
        new_files = {"main.py": b"v2"}
        with pytest.raises(SimulatedCrash):
            coordinator.update("demo", _archive(tmp_path, "2.0.0", files=new_files))

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        record = restarted.registry.get_record("demo")
        assert record.state == PluginState.INSTALLED
        assert record.installed_version == "2.0.0"
        assert (plugins_dir / "demo" / "main.py").read_bytes() == b"v2"
        assert list(staging_dir.iterdir()) == []


# ---------------------------------------------------------------------------
# Crash before promotion
# ---------------------------------------------------------------------------


class TestCrashBeforePromotion:
    def test_install_rolls_back_to_absent(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        intent = OperationIntent(
            operation="install",
            operation_id="op1",
            previous=PluginRecord(id="demo"),
            scratch_dir=str(staging_dir / "demo.op1"),
        )
        registry.compare_and_transition(
            "demo", PluginState.ABSENT, PluginState.INSTALLING, intent=intent
        )
        (staging_dir / "demo.op1" / "download").mkdir(parents=True)
        (staging_dir / "demo.op1" / "download" / "package.bin").write_bytes(b"partial")

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        record = restarted.registry.get_record("demo")
        assert record.state == PluginState.ABSENT
        assert record.last_error is None
        assert list(staging_dir.iterdir()) == []

    def test_update_rolls_back_to_installed(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        coordinator = _coordinator(registry, plugins_dir, staging_dir)
        installed = coordinator.install("demo", _archive(tmp_path, "1.0.0"))

        intent = OperationIntent(operation="update", operation_id="op2", previous=installed)
        registry.compare_and_transition(
            "demo", PluginState.INSTALLED, PluginState.UPDATING, intent=intent
        )

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        assert restarted.registry.get_record("demo") == installed
        assert compute_tree_checksum(plugins_dir / "demo") == installed.checksum

    def test_same_content_update_rolls_back(
        self,
        registry_path: Path,
        plugins_dir: Path,
        staging_dir: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        coordinator = _coordinator(registry, plugins_dir, staging_dir)
        installed = coordinator.install("demo", _archive(tmp_path, "1.0.0"))

        def crash(*args: object) -> None:
            raise SimulatedCrash()

        monkeypatch.setattr("pluginhost.lifecycle.coordinator._promote", crash)
        with pytest.raises(SimulatedCrash):
            coordinator.update("demo", _archive(tmp_path, "2.0.0"))
        monkeypatch.undo()

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        assert restarted.registry.get_record("demo") == installed
        assert load_manifest(plugins_dir / "demo").version == "1.0.0"

    def test_unjournaled_promotion_restores_backup(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = CrashingRegistry(storage_path=registry_path)
        coordinator = _coordinator(registry, plugins_dir, staging_dir)
        installed = coordinator.install("demo", _archive(tmp_path, "1.0.0"))

        registry.crash_on_promoted = True
        with pytest.raises(SimulatedCrash):
            coordinator.update("demo", _archive(tmp_path, "2.0.0", files={"main.py": b"v2"}))
        assert load_manifest(plugins_dir / "demo").version == "2.0.0"

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        assert restarted.registry.get_record("demo") == installed
        assert load_manifest(plugins_dir / "demo").version == "1.0.0"
        assert compute_tree_checksum(plugins_dir / "demo") == installed.checksum
        assert list(staging_dir.iterdir()) == []

    def test_swap_interrupted_restores_backup(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        coordinator = _coordinator(registry, plugins_dir, staging_dir)
        installed = coordinator.install("demo", _archive(tmp_path, "1.0.0"))

        backup = staging_dir / "demo.op3.previous"
        intent = OperationIntent(
            operation="update",
            operation_id="op3",
            previous=installed,
            backup_dir=str(backup),
            target_version="2.0.0",
            target_checksum="f" * 64,
        )
        registry.compare_and_transition(
            "demo", PluginState.INSTALLED, PluginState.UPDATING, intent=intent
        )
        # live tree moved aside, new tree never renamed into place
        (plugins_dir / "demo").rename(backup)

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        record = restarted.registry.get_record("demo")
        assert record.state == PluginState.INSTALLED
        assert record.installed_version == "1.0.0"
        assert compute_tree_checksum(plugins_dir / "demo") == installed.checksum
        assert not backup.exists()

    def test_orphaned_live_tree_removed(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        intent = OperationIntent(
            operation="install",
            operation_id="op4",
            previous=PluginRecord(id="demo"),
            target_version="1.0.0",
            target_checksum="e" * 64,
        )
        registry.compare_and_transition(
            "demo", PluginState.ABSENT, PluginState.INSTALLING, intent=intent
        )
        orphan = plugins_dir / "demo"
        orphan.mkdir(parents=True)
        (orphan / "half.py").write_text("x")

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        assert restarted.registry.get_record("demo").state == PluginState.ABSENT
        assert not orphan.exists()

    def test_damaged_live_tree_marks_failed(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        coordinator = _coordinator(registry, plugins_dir, staging_dir)
        installed = coordinator.install("demo", _archive(tmp_path, "1.0.0"))
        intent = OperationIntent(operation="update", operation_id="op5", previous=installed)
        registry.compare_and_transition(
            "demo", PluginState.INSTALLED, PluginState.UPDATING, intent=intent
        )
        (plugins_dir / "demo" / "main.py").write_text("tampered")

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        record = restarted.registry.get_record("demo")
        assert record.state == PluginState.FAILED
        assert "does not match" in record.last_error
        assert record.installed_version == "1.0.0"


# ---------------------------------------------------------------------------
# Other leftovers
# ---------------------------------------------------------------------------


class TestOtherLeftovers:
    def test_transient_without_intent_becomes_failed(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        registry.compare_and_transition("demo", PluginState.ABSENT, PluginState.INSTALLING)

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        record = restarted.registry.get_record("demo")
        assert record.state == PluginState.FAILED
        assert "interrupted" in record.last_error

    def test_uninstall_is_resumed(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = CrashingRegistry(storage_path=registry_path)
        coordinator = _coordinator(registry, plugins_dir, staging_dir)
        coordinator.install("demo", _archive(tmp_path, "1.0.0"))
        registry.crash_on = (PluginState.UNINSTALLING, PluginState.ABSENT)
        with pytest.raises(SimulatedCrash):
            coordinator.uninstall("demo")

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        restarted.recover()

        assert restarted.registry.get_record("demo").state == PluginState.ABSENT
        assert not (plugins_dir / "demo").exists()

    def test_stale_staging_swept(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path
    ) -> None:
        (staging_dir / "ghost.abc" / "extract").mkdir(parents=True)
        (staging_dir / "stray.tmp").write_text("x")

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        assert restarted.recover() == []
        assert list(staging_dir.iterdir()) == []

    def test_stable_records_untouched(
        self, registry_path: Path, plugins_dir: Path, staging_dir: Path, tmp_path: Path
    ) -> None:
        registry = PluginRegistry(storage_path=registry_path)
        installed = _coordinator(registry, plugins_dir, staging_dir).install(
            "demo", _archive(tmp_path, "1.0.0")
        )

        restarted = _restart(registry_path, plugins_dir, staging_dir)
        assert restarted.recover() == []
        assert restarted.registry.get_record("demo") == installed
