"""
Tests for the install, update and uninstall commands and CLI helpers.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from espkit.cli import utils
from espkit.cli.parser import CLI
from espkit.core.exceptions import OperationCancelled
from espkit.toolchain.orchestrator import OperationReport, OperationResult, OperationStatus
from espkit.toolchain.versions import VersionKind, VersionSpec


def make_report(action="install", status=OperationStatus.INSTALLED):
    result = OperationResult("toolchain:xtensa-rust", "xtensa-rust", "1.85.0.0", status)
    return OperationReport(action=action, name="esp", results=[result])


@pytest.fixture
def orchestrator_cls():
    with patch("espkit.cli.commands.install.Orchestrator") as install_cls, patch(
        "espkit.cli.commands.update.Orchestrator", new=install_cls
    ), patch("espkit.cli.commands.uninstall.Orchestrator", new=install_cls):
        instance = install_cls.return_value
        instance.default_versions.return_value = {"xtensa-rust": VersionSpec.latest()}
        instance.install.return_value = make_report()
        instance.update.return_value = make_report("update")
        instance.uninstall.return_value = make_report("uninstall", OperationStatus.REMOVED)
        yield install_cls


class TestInstallCommand:
    """Test the install command."""

    def test_builds_request(self, orchestrator_cls, capsys):
        """Test flags end up in the install request."""
        code = CLI().run(
            ["install", "-t", "esp32c3 esp32", "-v", "1.85", "--std",
             "-d", "x86_64-unknown-linux-gnu", "-e", "v5.2"]
        )

        assert code == 0
        request = orchestrator_cls.return_value.install.call_args[0][0]
        assert request.name == "esp"
        assert request.targets == ["esp32", "esp32c3"]
        assert request.std_only is True
        assert request.extended_llvm is False
        assert request.versions["xtensa-rust"] == VersionSpec.incomplete("1.85")
        assert str(request.sdk_version) == "tag:v5.2"
        assert request.host.triple == "x86_64-unknown-linux-gnu"
        assert "1 of 1 components installed" in capsys.readouterr().out

    def test_stable_version(self, orchestrator_cls):
        """Test --stable-version picks the channel for the RISC-V targets."""
        CLI().run(["install", "-t", "esp32c3", "--stable-version", "1.85.0"])

        request = orchestrator_cls.return_value.install.call_args[0][0]
        assert request.stable_version == "1.85.0"

    def test_stable_version_default(self, orchestrator_cls):
        CLI().run(["install", "-t", "esp32c3"])

        request = orchestrator_cls.return_value.install.call_args[0][0]
        assert request.stable_version == "stable"

    def test_failure_exit_code(self, orchestrator_cls):
        """Test a report with failures exits non-zero."""
        orchestrator_cls.return_value.install.return_value = make_report(
            status=OperationStatus.FAILED
        )

        assert CLI().run(["install"]) == 1

    def test_cancelled(self, orchestrator_cls):
        """Test an interrupted run exits with 130."""
        orchestrator_cls.return_value.install.side_effect = OperationCancelled("stop")

        assert CLI().run(["install"]) == 130

    def test_config_file_defaults(self, orchestrator_cls, tmp_path):
        """Test targets and name come from the configuration file."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("defaults:\n  name: work\n  targets: [esp32s3]\n")

        CLI().run(["install", "--config", str(config_file)])

        request = orchestrator_cls.return_value.install.call_args[0][0]
        assert request.name == "work"
        assert request.targets == ["esp32s3"]


class TestUpdateCommand:
    """Test the update command."""

    def test_passes_overrides(self, orchestrator_cls):
        """Test only given flags are forwarded as overrides."""
        assert CLI().run(["update", "--gcc-version", "14.2.0_20250101"]) == 0

        call = orchestrator_cls.return_value.update.call_args
        assert call.args == ("esp",)
        assert call.kwargs["targets"] is None
        assert call.kwargs["std_only"] is None
        assert set(call.kwargs["versions"]) == {"xtensa-esp-elf", "riscv32-esp-elf"}

    def test_turns_flags_off(self, orchestrator_cls):
        """Test --no-std and --no-extended-llvm reach the update as False."""
        assert CLI().run(["update", "--no-std", "--no-extended-llvm"]) == 0

        call = orchestrator_cls.return_value.update.call_args
        assert call.kwargs["std_only"] is False
        assert call.kwargs["extended_llvm"] is False
        assert call.kwargs["sdk_minimal"] is None
        assert call.kwargs["stable_version"] is None


class TestUninstallCommand:
    """Test the uninstall command."""

    def test_uninstall(self, orchestrator_cls, capsys):
        assert CLI().run(["uninstall", "--no-modify-env"]) == 0

        orchestrator_cls.return_value.uninstall.assert_called_once_with(
            "esp", modify_env=False
        )
        assert "1 of 1 components removed" in capsys.readouterr().out


class TestUtils:
    """Test CLI helper functions."""

    def test_skip_version_parse(self):
        """Test --skip-version-parse accepts any toolchain version."""
        args = CLI().parse_args(["install", "-v", "nightly-build", "-k"])

        versions = utils.version_overrides(args)

        assert versions["xtensa-rust"].kind == VersionKind.EXACT
        assert versions["xtensa-rust"].value == "nightly-build"

    def test_no_overrides(self):
        args = CLI().parse_args(["install"])

        assert utils.version_overrides(args) == {}
        assert utils.sdk_version(args) is None

    def test_effective_config(self):
        """Test command-line flags win over file and environment."""
        args = CLI().parse_args(
            ["install", "--max-workers", "7", "--proxy", "socks5h://localhost:1080",
             "-f", "/opt/export"]
        )

        config = utils.load_effective_config(args)

        assert config.max_workers == 7
        assert config.proxy == "socks5h://localhost:1080"
        assert config.export_dir == Path("/opt/export")

    def test_safe_print_fallback(self):
        """Test emoji are replaced when the console can't encode them."""
        printed = []

        def fake_print(message, file=None):
            if not message.isascii():
                raise UnicodeEncodeError("ascii", message, 0, 1, "unsupported")
            printed.append(message)

        with patch("builtins.print", side_effect=fake_print):
            utils.safe_print("✅ done")

        assert printed == ["[OK] done"]
