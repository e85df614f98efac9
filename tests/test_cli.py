"""Tests for the pluginhost CLI."""

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from conftest import package_files, write_zip
from pluginhost import __version__
from pluginhost.cli.main import cli


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    data = {
        "plugins_dir": str(tmp_path / "plugins"),
        "staging_dir": str(tmp_path / "staging"),
        "registry_path": str(tmp_path / "registry.json"),
        "log_level": "WARNING",
        "source_policy": {"allowed_schemes": ["file", "https"]},
    }
    path = tmp_path / "host.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def _source(tmp_path: Path, version: str = "1.0.0", **fields) -> str:
    archive = tmp_path / "archives" / f"demo-{version}.zip"
    return write_zip(archive, package_files(version=version, **fields)).as_uri()


def _invoke(runner: CliRunner, config_file: Path, *args: str):
    return runner.invoke(cli, ["--config", str(config_file), *args])


class TestCLI:
    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("install", "update", "uninstall", "list", "info", "recover"):
            assert command in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_install_and_list(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        result = _invoke(runner, config_file, "install", "demo", _source(tmp_path))
        assert result.exit_code == 0, result.output
        assert "demo@1.0.0 is installed" in result.output
        assert (tmp_path / "plugins" / "demo" / "main.py").is_file()

        result = _invoke(runner, config_file, "list")
        assert result.exit_code == 0
        assert "demo" in result.output
        assert "1.0.0" in result.output

    def test_list_filters(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        _invoke(runner, config_file, "install", "demo", _source(tmp_path, plugin_type="transform"))
        result = _invoke(runner, config_file, "list", "--type", "encryption")
        assert "No plugins found" in result.output
        result = _invoke(runner, config_file, "list", "--state", "installed", "--type", "transform")
        assert "demo" in result.output

    def test_list_empty(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "list")
        assert result.exit_code == 0
        assert "No plugins found" in result.output

    def test_info(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        _invoke(runner, config_file, "install", "demo", _source(tmp_path, author="acme"))
        result = _invoke(runner, config_file, "info", "demo")
        assert result.exit_code == 0
        assert "installed" in result.output
        assert "acme" in result.output

    def test_update_same_version_fails(
        self, runner: CliRunner, config_file: Path, tmp_path: Path
    ) -> None:
        source = _source(tmp_path)
        _invoke(runner, config_file, "install", "demo", source)
        result = _invoke(runner, config_file, "update", "demo", source)
        assert result.exit_code == 1
        assert "PLUGIN_ALREADY_AT_VERSION" in result.output

    def test_update(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        _invoke(runner, config_file, "install", "demo", _source(tmp_path))
        result = _invoke(runner, config_file, "update", "demo", _source(tmp_path, "1.1.0"))
        assert result.exit_code == 0, result.output
        assert "demo@1.1.0 is installed" in result.output

    def test_failed_install_exits_nonzero(
        self, runner: CliRunner, config_file: Path, tmp_path: Path
    ) -> None:
        result = _invoke(runner, config_file, "install", "demo", (tmp_path / "nope.zip").as_uri())
        assert result.exit_code == 1
        assert "failed" in result.output

    def test_untrusted_source(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "install", "demo", "http://plain.example.com/x.zip")
        assert result.exit_code == 1
        assert "PLUGIN_UNTRUSTED_SOURCE" in result.output

    def test_uninstall(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        _invoke(runner, config_file, "install", "demo", _source(tmp_path))
        result = _invoke(runner, config_file, "uninstall", "demo")
        assert result.exit_code == 0
        assert "demo is absent" in result.output
        assert not (tmp_path / "plugins" / "demo").exists()

    def test_uninstall_purge(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        _invoke(runner, config_file, "install", "demo", _source(tmp_path))
        result = _invoke(runner, config_file, "uninstall", "demo", "--purge")
        assert result.exit_code == 0
        assert "purged" in result.output
        result = _invoke(runner, config_file, "list")
        assert "No plugins found" in result.output

    def test_recover_nothing(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "recover")
        assert result.exit_code == 0
        assert "Nothing to recover" in result.output

    def test_invalid_config(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("fetch:\n  max_bytes: -5\n")
        result = runner.invoke(cli, ["--config", str(path), "list"])
        assert result.exit_code == 1
        assert "BAD_REQUEST" in result.output
