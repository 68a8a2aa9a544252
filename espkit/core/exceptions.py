"""
Centralized exception hierarchy for espkit.

Errors are grouped by the stage that raises them so the orchestrator can
decide which failures are terminal for a single component, which are worth
retrying, and which must stop the whole run before any I/O happens.
"""


# ============================================================================
# Base Exceptions
# ============================================================================


class EspkitError(Exception):
    """Base exception for all espkit errors."""

    retryable = False


# ============================================================================
# Request / Configuration Exceptions
# ============================================================================


class ConfigurationError(EspkitError):
    """Invalid or contradictory request, detected before any I/O begins."""

    pass


class InstallationLockedError(ConfigurationError):
    """Raised when another process holds the lock for an installation name."""

    def __init__(self, name: str, lock_path: str = ""):
        self.name = name
        self.lock_path = lock_path
        msg = (
            f"Installation '{name}' is locked by another espkit process. "
            "Wait for it to finish or use a different --name."
        )
        if lock_path:
            msg += f" (lock file: {lock_path})"
        super().__init__(msg)


# ============================================================================
# Version Resolution Exceptions
# ============================================================================


class UnresolvableVersion(EspkitError):
    """A version specifier has no matching published release."""

    def __init__(self, component: str, requested: str, reason: str = ""):
        self.component = component
        self.requested = requested
        msg = f"Cannot resolve version '{requested}' for {component}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ReleaseNotFound(EspkitError):
    """The release index has no such release or no asset for this host."""

    pass


# ============================================================================
# Release Index Exceptions
# ============================================================================


class ReleaseIndexError(EspkitError):
    """Base exception for transient release index failures."""

    retryable = True


class RateLimited(ReleaseIndexError):
    """The release index refused the request because of rate limiting."""

    pass


class IndexUnreachable(ReleaseIndexError):
    """The release index could not be reached or returned a server error."""

    pass


# ============================================================================
# Fetch / Extract Exceptions
# ============================================================================


class DownloadFailed(EspkitError):
    """Download or extraction failed after exhausting retries."""

    def __init__(self, url: str, attempts: int, cause: Exception):
        self.url = url
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Download of {url} failed after {attempts} attempt(s): {cause}")


# ============================================================================
# Manifest Exceptions
# ============================================================================


class ManifestError(EspkitError):
    """Base exception for manifest store errors."""

    pass


class NotInstalled(ManifestError):
    """No manifest exists for the requested installation name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No installation named '{name}' was found")


class ManifestCorrupt(ManifestError):
    """The manifest exists but cannot be read safely."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(
            f"Manifest {path} is unreadable ({reason}). "
            "Reinstall required: remove it and run 'espkit install' again."
        )


# ============================================================================
# Collaborator Exceptions
# ============================================================================


class SdkInstallError(EspkitError):
    """The external SDK installer reported a failure."""

    pass


class ActivationError(EspkitError):
    """Writing activation artifacts or the persistent environment failed."""

    pass


class OperationCancelled(EspkitError):
    """The run was interrupted and rolled back."""

    pass


class ComponentInstallError(EspkitError):
    """A component's bundled installer step failed after extraction."""

    pass
