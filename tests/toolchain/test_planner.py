"""
Unit tests for install planning.
"""

import pytest

from espkit.core.exceptions import ConfigurationError
from espkit.toolchain.components import ComponentKind
from espkit.toolchain.planner import (
    LLVM_DIR_NAME,
    InstallOperation,
    InstallPlan,
    InstallRequest,
    build_plan,
    sdk_directory_name,
)
from espkit.toolchain.versions import SourceRefKind, VersionSpec

RESOLVED = {
    "xtensa-rust": "1.85.0.0",
    "llvm": "19.1.2_20250225",
    "xtensa-esp-elf": "14.2.0_20241119",
    "riscv32-esp-elf": "14.2.0_20241119",
    "esp-idf": "v5.1",
}


@pytest.fixture
def request_for(layout, linux_host):
    def _request(**kwargs):
        return InstallRequest(name="esp", host=linux_host, layout=layout, **kwargs)

    return _request


class TestBuildPlan:
    """Test build_plan."""

    def test_mixed_architectures(self, request_for, layout):
        """Test one Xtensa and one RISC-V target need four downloads plus rustup targets."""
        plan = build_plan(request_for(targets=["esp32", "esp32c3"]), RESOLVED)

        assert [op.name for op in plan] == [
            "xtensa-rust",
            "llvm",
            "xtensa-esp-elf",
            "riscv32-esp-elf",
            "riscv-rust",
        ]
        assert len([op for op in plan if op.kind != ComponentKind.TARGET_SUPPORT]) == 4
        assert plan.targets == ("esp32", "esp32c3")

        root = layout.installation_root("esp")
        assert plan.get("toolchain:xtensa-rust").destination == layout.toolchain_dir("esp")
        assert plan.get("support-library:llvm").destination == (
            root / LLVM_DIR_NAME / "esp-19.1.2_20250225"
        )
        assert plan.get("cross-compiler:xtensa-esp-elf").destination == (
            root / "xtensa-esp-elf" / "esp-14.2.0_20241119"
        )

    def test_std_only_all_targets(self, request_for):
        """Test std-only requests skip every cross-compiler."""
        plan = build_plan(request_for(targets=["all"], std_only=True), RESOLVED)

        assert [op.kind for op in plan] == [
            ComponentKind.TOOLCHAIN,
            ComponentKind.SUPPORT_LIBRARY,
            ComponentKind.TARGET_SUPPORT,
        ]

    def test_shared_components_once(self, request_for):
        """Test many targets of one family still need one GCC."""
        plan = build_plan(request_for(targets=["esp32c2", "esp32c3", "esp32c6", "esp32h2"]), RESOLVED)

        assert len(plan) == 4
        assert [op.name for op in plan.of_kind(ComponentKind.CROSS_COMPILER)] == ["riscv32-esp-elf"]

    def test_riscv_targets(self, request_for, layout):
        """Test RISC-V chips add their rustc targets to the stable channel once."""
        plan = build_plan(
            request_for(targets=["esp32c2", "esp32c3", "esp32c6", "esp32p4"]), RESOLVED
        )

        op = plan.get("target-support:riscv-rust")
        assert op.version == "stable"
        assert op.targets == (
            "riscv32imac-unknown-none-elf",
            "riscv32imafc-unknown-none-elf",
            "riscv32imc-unknown-none-elf",
        )
        assert op.destination == layout.toolchain_dir("stable-x86_64-unknown-linux-gnu")

    def test_xtensa_only_has_no_rustup_targets(self, request_for):
        """Test Xtensa chips need no rustup target operation."""
        plan = build_plan(request_for(targets=["esp32", "esp32s3"]), RESOLVED)

        assert plan.of_kind(ComponentKind.TARGET_SUPPORT) == []

    def test_pinned_channel(self, request_for, layout):
        """Test a pinned stable version names the rustup toolchain directory."""
        plan = build_plan(request_for(targets=["esp32h2"], stable_version="1.85.0"), RESOLVED)

        op = plan.get("target-support:riscv-rust")
        assert op.version == "1.85.0"
        assert op.destination == layout.toolchain_dir("1.85.0-x86_64-unknown-linux-gnu")

    def test_invalid_channel(self, request_for):
        """Test channels that are not plain names are rejected."""
        with pytest.raises(ConfigurationError, match="Invalid rustup channel"):
            build_plan(request_for(targets=["esp32c3"], stable_version="../stable"), RESOLVED)

    def test_extended_llvm(self, request_for):
        """Test the extended LLVM lives in its own directory."""
        plan = build_plan(request_for(targets=["esp32"], extended_llvm=True), RESOLVED)

        llvm = plan.get("support-library:llvm")
        assert llvm.variant == "extended"
        assert llvm.destination.name == "esp-19.1.2_20250225-extended"

    def test_sdk_operation(self, request_for, layout):
        """Test an SDK request adds a checkout operation."""
        plan = build_plan(
            request_for(
                targets=["esp32s3"],
                sdk_version=VersionSpec.source_ref(SourceRefKind.TAG, "v5.1"),
                sdk_minimal=True,
            ),
            RESOLVED,
        )

        sdk = plan.get("sdk:esp-idf")
        assert sdk.version == "tag:v5.1"
        assert sdk.variant == "minimal"
        assert sdk.targets == ("esp32s3",)
        assert sdk.destination == layout.installation_root("esp") / "esp-idf" / "v5.1"

    def test_sdk_latest_becomes_branch(self, request_for):
        """Test an SDK tracking latest checks out the resolved branch."""
        plan = build_plan(
            request_for(targets=["esp32"], sdk_version=VersionSpec.latest()),
            dict(RESOLVED, **{"esp-idf": "master"}),
        )

        assert plan.get("sdk:esp-idf").sdk_ref == VersionSpec.source_ref(
            SourceRefKind.BRANCH, "master"
        )

    def test_no_dependencies_by_default(self, request_for):
        """Test components are independent of each other."""
        plan = build_plan(request_for(targets=["all"]), RESOLVED)
        assert all(op.depends_on == () for op in plan)

    def test_unknown_target(self, request_for):
        """Test invalid targets fail planning."""
        with pytest.raises(ConfigurationError, match="Unknown target"):
            build_plan(request_for(targets=["esp8266"]), RESOLVED)

    def test_missing_resolution(self, request_for):
        """Test a component without a resolved version fails planning."""
        with pytest.raises(ConfigurationError, match="No resolved version for llvm"):
            build_plan(request_for(targets=["esp32"]), {"xtensa-rust": "1.85.0.0"})

    def test_pure(self, request_for, layout):
        """Test planning touches nothing on disk."""
        before = sorted(p.name for p in layout.home.rglob("*"))
        build_plan(request_for(targets=["all"]), RESOLVED)
        assert sorted(p.name for p in layout.home.rglob("*")) == before


class TestInstallPlan:
    """Test InstallPlan validation."""

    def _op(self, tmp_path, name="xtensa-esp-elf", dest="a", depends_on=()):
        return InstallOperation(
            kind=ComponentKind.CROSS_COMPILER,
            name=name,
            version="14.2.0_20241119",
            destination=tmp_path / dest,
            depends_on=depends_on,
        )

    def test_duplicate_component(self, tmp_path):
        """Test a component cannot be planned twice."""
        with pytest.raises(ConfigurationError, match="planned twice"):
            InstallPlan("esp", ("esp32",), (self._op(tmp_path), self._op(tmp_path, dest="b")))

    def test_duplicate_destination(self, tmp_path):
        """Test two operations cannot share a destination."""
        with pytest.raises(ConfigurationError, match="same destination"):
            InstallPlan(
                "esp",
                ("esp32",),
                (self._op(tmp_path), self._op(tmp_path, name="riscv32-esp-elf")),
            )

    def test_unknown_dependency(self, tmp_path):
        """Test dependencies must be part of the plan."""
        with pytest.raises(ConfigurationError, match="unplanned"):
            InstallPlan(
                "esp", ("esp32",), (self._op(tmp_path, depends_on=("toolchain:xtensa-rust",)),)
            )


def test_sdk_directory_name():
    """Test refs become safe directory names."""
    assert sdk_directory_name(VersionSpec.source_ref(SourceRefKind.BRANCH, "release/v5.3")) == "release-v5.3"
    assert sdk_directory_name(VersionSpec.source_ref(SourceRefKind.COMMIT, "4ecf3b2")) == "4ecf3b2"
