"""
User configuration for espkit.

Settings are layered, later layers winning:

1. Built-in defaults
2. YAML file (``--config``, ``$ESPKIT_CONFIG`` or ``<espkit home>/config.yaml``)
3. Environment variables (``ESPKIT_HOME``, ``RUSTUP_HOME``, ``GITHUB_TOKEN``,
   ``ESPKIT_PROXY``)
4. Command-line flags (applied by the CLI)

Example ``config.yaml``::

    proxy: socks5h://127.0.0.1:1080
    max_workers: 4
    retry:
      max_attempts: 5
      base_delay: 2
    defaults:
      targets: [esp32, esp32c3]
      gcc_version: 14.2.0_20241119
      stable_version: "1.85.0"
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from espkit.core.directory import InstallLayout, get_espkit_home, get_rustup_home
from espkit.core.exceptions import ConfigurationError
from espkit.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_LLVM_VERSION = "19.1.2_20250225"
DEFAULT_GCC_VERSION = "14.2.0_20241119"
DEFAULT_STABLE_VERSION = "stable"


@dataclass
class RetrySettings:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )


@dataclass
class EspkitConfig:
    """
    Effective configuration for one run.

    Attributes:
        home: espkit home directory
        rustup_home: rustup home the Rust toolchain is registered under
        export_dir: Default directory for activation scripts (per-name root if None)
        proxy: Proxy URL for release index and downloads
        github_token: Token raising the GitHub API rate limit
        max_workers: Size of the install worker pool
        timeout: Network timeout in seconds
        retry: Backoff settings
        default_name: Installation name used when --name is omitted
        default_targets: Targets used when --targets is omitted
        llvm_version: Default LLVM version
        gcc_version: Default GCC version
        stable_version: rustup channel the RISC-V targets are added to
    """

    home: Path = field(default_factory=get_espkit_home)
    rustup_home: Path = field(default_factory=get_rustup_home)
    export_dir: Optional[Path] = None
    proxy: Optional[str] = None
    github_token: Optional[str] = None
    max_workers: int = 4
    timeout: float = 30
    retry: RetrySettings = field(default_factory=RetrySettings)
    default_name: str = "esp"
    default_targets: List[str] = field(default_factory=lambda: ["all"])
    llvm_version: str = DEFAULT_LLVM_VERSION
    gcc_version: str = DEFAULT_GCC_VERSION
    stable_version: str = DEFAULT_STABLE_VERSION

    @property
    def layout(self) -> InstallLayout:
        return InstallLayout(home=self.home, rustup_home=self.rustup_home)

    def with_overrides(self, **overrides: Any) -> "EspkitConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def default_config_path(env: Mapping[str, str] = os.environ) -> Path:
    explicit = env.get("ESPKIT_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    home = env.get("ESPKIT_HOME")
    return (Path(home).expanduser() if home else get_espkit_home()) / "config.yaml"


def load_yaml_config(config_file: Path, required: bool = False) -> Dict[str, Any]:
    """
    Load and parse a YAML configuration file.

    Returns:
        Configuration dictionary (empty dict if file doesn't exist and not required)

    Raises:
        ConfigurationError: If the file is required but missing, or invalid YAML
    """
    if not config_file.exists():
        if required:
            raise ConfigurationError(f"Configuration file not found: {config_file}")
        logger.debug(f"Config file not found (optional): {config_file}")
        return {}

    logger.debug(f"Loading configuration from {config_file}")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_file}: {e}") from e

    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_file} must contain a mapping at top level")
    return data


def load_config(
    config_file: Optional[Path] = None, env: Mapping[str, str] = os.environ
) -> EspkitConfig:
    """
    Build the effective configuration from file and environment.

    Args:
        config_file: Explicit file (must exist); default location otherwise
        env: Environment mapping, replaceable in tests
    """
    if config_file is not None:
        data = load_yaml_config(Path(config_file), required=True)
    else:
        data = load_yaml_config(default_config_path(env))

    config = _from_mapping(data)

    if env.get("ESPKIT_HOME"):
        config.home = Path(env["ESPKIT_HOME"]).expanduser()
    if env.get("RUSTUP_HOME"):
        config.rustup_home = Path(env["RUSTUP_HOME"]).expanduser()
    if env.get("GITHUB_TOKEN"):
        config.github_token = env["GITHUB_TOKEN"]
    if env.get("ESPKIT_PROXY"):
        config.proxy = env["ESPKIT_PROXY"]

    return config


def _from_mapping(data: Dict[str, Any]) -> EspkitConfig:
    config = EspkitConfig()

    try:
        if "home" in data:
            config.home = Path(data["home"]).expanduser()
        if "rustup_home" in data:
            config.rustup_home = Path(data["rustup_home"]).expanduser()
        if data.get("export_dir"):
            config.export_dir = Path(data["export_dir"]).expanduser()
        config.proxy = data.get("proxy") or None
        config.github_token = data.get("github_token") or None
        config.max_workers = int(data.get("max_workers", config.max_workers))
        config.timeout = float(data.get("timeout", config.timeout))

        retry = data.get("retry") or {}
        config.retry = RetrySettings(
            max_attempts=int(retry.get("max_attempts", 3)),
            base_delay=float(retry.get("base_delay", 1.0)),
            max_delay=float(retry.get("max_delay", 30.0)),
            jitter=float(retry.get("jitter", 0.1)),
        )

        defaults = data.get("defaults") or {}
        config.default_name = str(defaults.get("name", config.default_name))
        targets = defaults.get("targets", config.default_targets)
        config.default_targets = [targets] if isinstance(targets, str) else list(targets)
        config.llvm_version = str(defaults.get("llvm_version", config.llvm_version))
        config.gcc_version = str(defaults.get("gcc_version", config.gcc_version))
        config.stable_version = str(defaults.get("stable_version", config.stable_version))
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e

    if config.max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1")
    try:
        config.retry.policy()
    except ValueError as e:
        raise ConfigurationError(f"Invalid retry settings: {e}") from e

    return config
