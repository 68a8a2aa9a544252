"""
Installation orchestration.

The orchestrator ties the pieces together for ``install``, ``update`` and
``uninstall``:

1. Resolve every component version up front
2. Build the install plan
3. Run independent operations on a bounded thread pool
4. Collect every failure instead of stopping at the first one
5. Write the manifest once all operations have finished
6. Emit the activation environment from the written manifest

Each named installation is locked for the duration of the run. Its
manifest alone decides what uninstall removes; paths are never
deduplicated across installation names.

An interrupt (KeyboardInterrupt) stops downloads, discards staging, rolls
back every destination created during the run and leaves the manifest
untouched. Targets rustup already added stay in place.
"""

import dataclasses
import enum
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from espkit.core.config import EspkitConfig
from espkit.core.download import build_session
from espkit.core.exceptions import (
    ActivationError,
    ComponentInstallError,
    ConfigurationError,
    EspkitError,
    NotInstalled,
    OperationCancelled,
)
from espkit.core.filesystem import (
    FilesystemError,
    is_relative_to,
    restore_backup,
    safe_rmtree,
)
from espkit.core.locking import LockManager
from espkit.core.manifest import (
    ComponentRecord,
    Manifest,
    ManifestStore,
    utc_now,
    validate_installation_name,
)
from espkit.core.platform import HostPlatform
from espkit.env.targets import EnvironmentTarget, select_environment_target
from espkit.toolchain.components import (
    COMPONENTS,
    ESP_IDF,
    LLVM,
    XTENSA_RUST,
    Component,
    ComponentKind,
)
from espkit.toolchain.installer import ComponentInstaller, InstallOutcome, InstallResult
from espkit.toolchain.planner import InstallOperation, InstallPlan, InstallRequest, build_plan
from espkit.toolchain.releases import ReleaseIndexCache, ReleaseLocator
from espkit.toolchain.rustup import RustupInstaller
from espkit.toolchain.sdk import GitSdkInstaller, SdkInstaller, SdkRequest
from espkit.toolchain.targets import cross_compilers_for, parse_targets
from espkit.toolchain.versions import VersionResolver, VersionSpec, parse_version_spec

logger = logging.getLogger(__name__)

UNRESOLVED = "unresolved"


class OperationStatus(str, enum.Enum):
    INSTALLED = "installed"
    REUSED = "reused"
    FAILED = "failed"
    SKIPPED = "skipped"
    REMOVED = "removed"

    @property
    def ok(self) -> bool:
        return self in (
            OperationStatus.INSTALLED,
            OperationStatus.REUSED,
            OperationStatus.REMOVED,
        )


@dataclass
class OperationResult:
    """Outcome of one component in a run."""

    key: str
    name: str
    version: str
    status: OperationStatus
    path: Optional[Path] = None
    error: Optional[BaseException] = None
    backup: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.status.ok

    @property
    def message(self) -> str:
        if self.status == OperationStatus.SKIPPED:
            return "skipped due to dependency failure"
        if self.error is not None:
            return f"{type(self.error).__name__}: {self.error}"
        return self.status.value


@dataclass
class OperationReport:
    """Aggregated result of an install, update or uninstall run."""

    action: str
    name: str
    results: List[OperationResult] = field(default_factory=list)
    manifest: Optional[Manifest] = None
    export_dir: Optional[Path] = None
    activation_error: Optional[ActivationError] = None

    @property
    def succeeded(self) -> List[OperationResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[OperationResult]:
        return [r for r in self.results if r.status == OperationStatus.FAILED]

    @property
    def skipped(self) -> List[OperationResult]:
        return [r for r in self.results if r.status == OperationStatus.SKIPPED]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped and self.activation_error is None

    def summary(self) -> str:
        """
        One-line outcome.

        Example:
            '3 of 5 components installed, 2 failed: xtensa-esp-elf (DownloadFailed: ...), ...'
        """
        verb = "removed" if self.action == "uninstall" else "installed"
        text = f"{len(self.succeeded)} of {len(self.results)} components {verb}"
        if self.failed:
            causes = ", ".join(f"{r.name} ({r.message})" for r in self.failed)
            text += f", {len(self.failed)} failed: {causes}"
        if self.skipped:
            names = ", ".join(r.name for r in self.skipped)
            text += f", {len(self.skipped)} skipped due to dependency failure: {names}"
        return text


class Orchestrator:
    """
    Runs installs, updates and uninstalls for named installations.

    Collaborators are built from ``config`` unless injected.
    """

    def __init__(
        self,
        config: EspkitConfig,
        host: HostPlatform,
        locator: Optional[ReleaseLocator] = None,
        installer: Optional[ComponentInstaller] = None,
        sdk_installer: Optional[SdkInstaller] = None,
        env_target: Optional[EnvironmentTarget] = None,
        store: Optional[ManifestStore] = None,
        lock_manager: Optional[LockManager] = None,
        rustup: Optional[RustupInstaller] = None,
    ):
        self.config = config
        self.host = host
        self.layout = config.layout
        self.layout.ensure()

        retry_policy = config.retry.policy()
        session = build_session(config.proxy)

        # One cache per orchestrator, i.e. per CLI invocation
        self.locator = locator or ReleaseLocator(
            ReleaseIndexCache(),
            token=config.github_token,
            retry_policy=retry_policy,
            session=session,
            timeout=config.timeout,
        )
        self.resolver = VersionResolver(self.locator)
        self.installer = installer or ComponentInstaller(
            self.locator,
            self.layout,
            host,
            session=session,
            retry_policy=retry_policy,
            timeout=config.timeout,
        )
        self.sdk_installer = sdk_installer or GitSdkInstaller(
            self.layout, windows=host.is_windows
        )
        self.rustup = rustup or RustupInstaller(self.layout)
        self._env_target = env_target
        self.store = store or ManifestStore(self.layout.manifests_dir)
        self.locks = lock_manager or LockManager(self.layout.lock_dir)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def install(self, request: InstallRequest) -> OperationReport:
        """
        Install ``request``, merging into an existing installation of that name.

        Raises:
            ConfigurationError: For invalid requests (before any download)
            InstallationLockedError: If another process works on the name
            ManifestCorrupt: If an existing manifest is unreadable
            OperationCancelled: On interrupt, after rollback
        """
        validate_installation_name(request.name)
        with self.locks.installation_lock(request.name):
            existing = self._load_optional(request.name)
            return self._run("install", request, existing)

    def update(
        self,
        name: str,
        targets: Optional[List[str]] = None,
        std_only: Optional[bool] = None,
        extended_llvm: Optional[bool] = None,
        versions: Optional[Dict[str, VersionSpec]] = None,
        sdk_version: Optional[VersionSpec] = None,
        sdk_minimal: Optional[bool] = None,
        stable_version: Optional[str] = None,
        export_dir: Optional[Path] = None,
        modify_env: bool = True,
    ) -> OperationReport:
        """
        Bring an existing installation up to date.

        Targets and flags come from the manifest unless overridden. Component
        versions default to the configured pins (latest for Rust).
        Components the new plan no longer needs are removed.

        Raises:
            NotInstalled: If ``name`` has no manifest
        """
        validate_installation_name(name)
        with self.locks.installation_lock(name):
            existing = self.store.load(name)
            request = self.request_from_manifest(
                existing,
                targets=targets,
                std_only=std_only,
                extended_llvm=extended_llvm,
                versions=versions,
                sdk_version=sdk_version,
                sdk_minimal=sdk_minimal,
                stable_version=stable_version,
                export_dir=export_dir,
                modify_env=modify_env,
            )
            return self._run("update", request, existing)

    def uninstall(self, name: str, modify_env: bool = True) -> OperationReport:
        """
        Remove exactly what the manifest of ``name`` records.

        Raises:
            NotInstalled: If ``name`` has no manifest
        """
        validate_installation_name(name)
        with self.locks.installation_lock(name):
            manifest = self.store.load(name)
            return self._uninstall(manifest, modify_env)

    def request_from_manifest(
        self,
        manifest: Manifest,
        targets: Optional[List[str]] = None,
        std_only: Optional[bool] = None,
        extended_llvm: Optional[bool] = None,
        versions: Optional[Dict[str, VersionSpec]] = None,
        sdk_version: Optional[VersionSpec] = None,
        sdk_minimal: Optional[bool] = None,
        stable_version: Optional[str] = None,
        export_dir: Optional[Path] = None,
        modify_env: bool = True,
    ) -> InstallRequest:
        """Rebuild an install request from a manifest plus overrides."""
        merged = self.default_versions()
        merged.update(versions or {})

        sdk_record = next(
            (c for c in manifest.components if c.kind == ComponentKind.SDK.value), None
        )
        if sdk_version is None and sdk_record is not None:
            sdk_version = parse_version_spec(ESP_IDF, sdk_record.version)
        if sdk_minimal is None:
            sdk_minimal = sdk_record is not None and sdk_record.variant == "minimal"
        if stable_version is None:
            rustup_record = next(
                (c for c in manifest.components if c.kind == ComponentKind.TARGET_SUPPORT.value),
                None,
            )
            stable_version = (
                rustup_record.version if rustup_record else self.config.stable_version
            )

        return InstallRequest(
            name=manifest.name,
            host=self.host,
            layout=self.layout,
            targets=targets or list(manifest.targets),
            std_only=manifest.std_only if std_only is None else std_only,
            extended_llvm=manifest.extended_llvm if extended_llvm is None else extended_llvm,
            versions=merged,
            sdk_version=sdk_version,
            sdk_minimal=sdk_minimal,
            stable_version=stable_version,
            export_dir=export_dir or (Path(manifest.export_dir) if manifest.export_dir else None),
            modify_env=modify_env,
        )

    def default_versions(self) -> Dict[str, VersionSpec]:
        """Configured default version pins."""
        versions = {XTENSA_RUST.name: VersionSpec.latest()}
        versions[LLVM.name] = parse_version_spec(LLVM, self.config.llvm_version)
        for gcc in (COMPONENTS["xtensa-esp-elf"], COMPONENTS["riscv32-esp-elf"]):
            versions[gcc.name] = parse_version_spec(gcc, self.config.gcc_version)
        return versions

    # ------------------------------------------------------------------
    # Install / update
    # ------------------------------------------------------------------

    def _load_optional(self, name: str) -> Optional[Manifest]:
        try:
            return self.store.load(name)
        except NotInstalled:
            return None

    def _environment_target(self, modify_env: bool) -> EnvironmentTarget:
        if self._env_target is not None:
            return self._env_target
        return select_environment_target(self.host, modify_env=modify_env)

    def _required_components(self, request: InstallRequest) -> List[Component]:
        targets = parse_targets(request.targets)
        components = [XTENSA_RUST, LLVM]
        if not request.std_only:
            components += [COMPONENTS[name] for name in cross_compilers_for(targets)]
        if request.sdk_version is not None:
            components.append(ESP_IDF)
        return components

    def _resolve(self, request: InstallRequest):
        """
        Resolve every needed component version.

        Returns:
            (resolved versions, resolution failures) keyed by component name
        """
        resolved: Dict[str, str] = {}
        failures: Dict[str, EspkitError] = {}

        for component in self._required_components(request):
            spec = request.version_for(component)
            try:
                resolved[component.name] = self.resolver.resolve(component, spec)
            except ConfigurationError:
                raise
            except EspkitError as e:
                logger.error(f"Cannot resolve {component.name} {spec}: {e}")
                failures[component.name] = e
                resolved[component.name] = UNRESOLVED

        return resolved, failures

    def _run(
        self, action: str, request: InstallRequest, existing: Optional[Manifest]
    ) -> OperationReport:
        resolved, failures = self._resolve(request)
        plan = build_plan(request, resolved)
        plan = self._mark_replacements(plan, existing)

        results: Dict[str, OperationResult] = {}
        for op in plan:
            if op.name in failures:
                results[op.key] = OperationResult(
                    op.key, op.name, str(request.version_for(op.component)),
                    OperationStatus.FAILED, error=failures[op.name],
                )

        runnable = [op for op in plan if op.key not in results]
        self._execute(plan, runnable, results)

        ordered = [results[op.key] for op in plan]
        report = OperationReport(action=action, name=request.name, results=ordered)

        export_dir = Path(
            request.export_dir or self.config.export_dir or request.root
        )
        report.export_dir = export_dir

        manifest = self._build_manifest(action, request, plan, existing, results, export_dir)
        if manifest is None:
            logger.warning(f"Nothing was installed for '{request.name}'; no manifest written")
            return report

        self.store.save(manifest)
        report.manifest = manifest
        self._finish_replacements(action, plan, existing, manifest, results)

        try:
            self._environment_target(request.modify_env).apply(manifest, export_dir)
        except ActivationError as e:
            logger.error(str(e))
            report.activation_error = e

        return report

    def _mark_replacements(
        self, plan: InstallPlan, existing: Optional[Manifest]
    ) -> InstallPlan:
        """Flag operations that must swap out another version at their destination."""
        if existing is None:
            return plan

        operations = []
        for op in plan:
            record = existing.component(op.key)
            if (
                record is not None
                and Path(record.path) == op.destination
                and (record.version != op.version or record.variant != op.variant)
            ):
                op = dataclasses.replace(op, replace_existing=True)
            operations.append(op)
        return dataclasses.replace(plan, operations=tuple(operations))

    def _execute(
        self,
        plan: InstallPlan,
        runnable: List[InstallOperation],
        results: Dict[str, OperationResult],
    ) -> None:
        """Run operations on the worker pool, honouring dependencies."""
        cancel_event = threading.Event()
        pending = {op.key: op for op in runnable}
        futures: Dict[Future, InstallOperation] = {}
        pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="espkit-install"
        )

        def schedule() -> None:
            changed = True
            while changed:
                changed = False
                for key, op in list(pending.items()):
                    deps = [results.get(dep) for dep in op.depends_on]
                    if any(dep is not None and not dep.ok for dep in deps):
                        results[key] = OperationResult(
                            key, op.name, op.version, OperationStatus.SKIPPED
                        )
                        logger.warning(f"Skipping {op.name}: a dependency failed")
                        del pending[key]
                        changed = True
                    elif all(dep is not None for dep in deps):
                        futures[pool.submit(self._run_operation, op, cancel_event)] = op
                        del pending[key]

        try:
            schedule()
            while futures:
                done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                for future in done:
                    op = futures.pop(future)
                    results[op.key] = self._collect(op, future)
                schedule()
        except KeyboardInterrupt:
            logger.warning("Interrupted, cancelling remaining operations...")
            cancel_event.set()
            pool.shutdown(wait=True, cancel_futures=True)
            for future, op in futures.items():
                if future.done() and not future.cancelled() and future.exception() is None:
                    results[op.key] = self._collect(op, future)
            self._rollback(results)
            raise OperationCancelled("Installation cancelled; no changes were recorded") from None
        finally:
            pool.shutdown(wait=True)

    def _run_operation(
        self, op: InstallOperation, cancel_event: threading.Event
    ) -> InstallResult:
        if op.kind == ComponentKind.TARGET_SUPPORT:
            return self.rustup.install(op, cancel_event)
        if op.kind != ComponentKind.SDK:
            return self.installer.install(op, cancel_event)

        if op.destination.exists():
            logger.warning(f"ESP-IDF already present in '{op.destination}'. Reusing it.")
            return InstallResult(op, InstallOutcome.REUSED, op.destination)

        self.sdk_installer.install(
            SdkRequest(
                destination=op.destination,
                ref=op.sdk_ref,
                minimal=op.variant == "minimal",
                targets=op.targets,
            ),
            cancel_event,
        )
        return InstallResult(op, InstallOutcome.INSTALLED, op.destination)

    def _collect(self, op: InstallOperation, future: Future) -> OperationResult:
        try:
            result = future.result()
        except Exception as e:
            logger.error(f"Failed to install {op.name} {op.version}: {e}")
            return OperationResult(op.key, op.name, op.version, OperationStatus.FAILED, error=e)

        status = (
            OperationStatus.REUSED
            if result.outcome == InstallOutcome.REUSED
            else OperationStatus.INSTALLED
        )
        return OperationResult(
            op.key, op.name, op.version, status, path=result.path, backup=result.backup
        )

    def _rollback(self, results: Dict[str, OperationResult]) -> None:
        """Remove destinations created in this run and restore replaced trees."""
        for result in results.values():
            if result.status != OperationStatus.INSTALLED or result.path is None:
                continue
            if result.key.startswith(f"{ComponentKind.TARGET_SUPPORT.value}:"):
                # rustup changes its own toolchain directories in place
                logger.warning(f"{result.name} changes made through rustup are kept")
                continue
            try:
                if result.backup is not None:
                    restore_backup(result.backup, result.path)
                else:
                    self._remove_owned(result.path)
                logger.info(f"Rolled back {result.name}")
            except (OSError, FilesystemError) as e:
                logger.error(f"Could not roll back {result.path}: {e}")

    def _build_manifest(
        self,
        action: str,
        request: InstallRequest,
        plan: InstallPlan,
        existing: Optional[Manifest],
        results: Dict[str, OperationResult],
        export_dir: Path,
    ) -> Optional[Manifest]:
        """Merge successful operations into the manifest; None if nothing to record."""
        if existing is None and not any(r.ok for r in results.values()):
            return None

        if existing is not None:
            manifest = Manifest.from_dict(existing.to_dict())
        else:
            manifest = Manifest(name=request.name, host=self.host.triple)

        if action == "update":
            planned = {op.key for op in plan}
            manifest.components = [c for c in manifest.components if c.key in planned]

        for op in plan:
            result = results[op.key]
            if not result.ok:
                continue
            manifest.upsert(
                ComponentRecord(
                    kind=op.kind.value,
                    name=op.name,
                    version=op.version,
                    path=str(op.destination),
                    shared=op.shared,
                    variant=op.variant,
                    targets=list(op.targets) if op.kind == ComponentKind.TARGET_SUPPORT else [],
                )
            )

        manifest.host = self.host.triple
        manifest.targets = list(plan.targets)
        manifest.std_only = request.std_only
        manifest.extended_llvm = request.extended_llvm
        manifest.export_dir = str(export_dir)
        manifest.updated_at = utc_now()
        return manifest

    def _finish_replacements(
        self,
        action: str,
        plan: InstallPlan,
        existing: Optional[Manifest],
        manifest: Manifest,
        results: Dict[str, OperationResult],
    ) -> None:
        """After the manifest is saved, drop backups and superseded trees."""
        for result in results.values():
            if result.backup is not None:
                self._remove_owned(result.backup)

        if existing is None:
            return

        kept = {c.path for c in manifest.components}
        for old in existing.components:
            result = results.get(old.key)
            replaced = result is not None and result.ok
            dropped = action == "update" and plan.get(old.key) is None
            if old.kind == ComponentKind.TARGET_SUPPORT.value:
                if replaced or dropped:
                    self._release_targets(old, manifest.component(old.key))
                continue
            if (replaced or dropped) and old.path not in kept:
                logger.info(f"Removing superseded {old.name} {old.version}")
                self._remove_owned(Path(old.path))

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------

    def _uninstall(self, manifest: Manifest, modify_env: bool) -> OperationReport:
        report = OperationReport(action="uninstall", name=manifest.name, manifest=manifest)
        export_dir = Path(manifest.export_dir) if manifest.export_dir else (
            self.layout.installation_root(manifest.name)
        )
        report.export_dir = export_dir

        try:
            self._environment_target(modify_env).clean(manifest, export_dir)
        except ActivationError as e:
            logger.error(str(e))
            report.activation_error = e

        remaining = []
        for record in manifest.components:
            try:
                if record.kind == ComponentKind.TARGET_SUPPORT.value:
                    self.rustup.remove(record.version, record.targets)
                else:
                    self._remove_owned(Path(record.path), strict=True)
                status, error = OperationStatus.REMOVED, None
                logger.info(f"Removed {record.name} {record.version}")
            except (ValueError, FilesystemError, ComponentInstallError) as e:
                status, error = OperationStatus.FAILED, e
                remaining.append(record)
                logger.error(f"Failed to remove {record.name}: {e}")
            report.results.append(
                OperationResult(
                    record.key, record.name, record.version, status,
                    path=Path(record.path), error=error,
                )
            )

        root = self.layout.installation_root(manifest.name)
        if root.exists() and not any(root.iterdir()):
            root.rmdir()

        if remaining:
            manifest.components = remaining
            manifest.updated_at = utc_now()
            self.store.save(manifest)
        else:
            self.store.delete(manifest.name)
        return report

    def _release_targets(
        self, old: ComponentRecord, current: Optional[ComponentRecord]
    ) -> None:
        """Remove rustc targets the installation no longer records on a channel."""
        still_used = set()
        if current is not None and current.version == old.version:
            still_used = set(current.targets)
        unused = [t for t in old.targets if t not in still_used]
        if not unused:
            return
        try:
            self.rustup.remove(old.version, unused)
        except ComponentInstallError as e:
            logger.warning(f"Could not remove {', '.join(unused)} from {old.version}: {e}")

    def _remove_owned(self, path: Path, strict: bool = False) -> None:
        """
        Delete ``path`` if it lies inside a directory espkit manages.

        Raises:
            ValueError: If ``strict`` and the path is outside espkit's roots
        """
        resolved = Path(path).resolve()
        for root in self.layout.owned_roots():
            if is_relative_to(resolved, Path(root).resolve()):
                safe_rmtree(resolved, require_prefix=root)
                return
        message = f"Refusing to delete '{path}': not inside an espkit-managed directory"
        if strict:
            raise ValueError(message)
        logger.warning(message)
