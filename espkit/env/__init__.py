"""
Activation environment: script generation and per-host environment targets.
"""

from espkit.env.synthesizer import (
    ActivationArtifact,
    EnvironmentSynthesizer,
    ShellDialect,
    apply_path_entries,
    environment_for,
)
from espkit.env.targets import (
    EnvironmentTarget,
    FileEnvironmentTarget,
    WindowsEnvironmentTarget,
    select_environment_target,
)

__all__ = [
    "ActivationArtifact",
    "EnvironmentSynthesizer",
    "ShellDialect",
    "apply_path_entries",
    "environment_for",
    "EnvironmentTarget",
    "FileEnvironmentTarget",
    "WindowsEnvironmentTarget",
    "select_environment_target",
]
