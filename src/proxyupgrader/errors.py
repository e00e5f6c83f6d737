"""Domain errors for ProxyUpgrader."""


class UpgradeError(RuntimeError):
    """Raised when an upgrade step cannot continue safely."""


class ConfigError(UpgradeError):
    """Raised for unreadable or invalid configuration."""


class FetchFailed(UpgradeError):
    """Raised when the release feed or an asset cannot be fetched."""


class DownloadFailed(FetchFailed):
    pass


class UpgradeCancelled(FetchFailed):
    """Raised when an in-flight attempt is cancelled by the caller."""


class ParseError(UpgradeError):
    """Raised when a fetched payload does not have the expected shape."""


class ChecksumMismatch(UpgradeError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum verification failed: expected {expected[:16]}..., got {actual[:16]}..."
        )


class InstallationFailed(UpgradeError):
    pass


class VersionAlreadyInstalled(UpgradeError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Version {version} is already installed.")


class VersionNotInstalled(UpgradeError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Version {version} is not installed.")


class CannotDeleteCurrentVersion(UpgradeError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Cannot delete the currently active version {version}.")


class DryRunFailed(UpgradeError):
    pass


class CompatibilityCheckFailed(UpgradeError):
    def __init__(self, result):
        self.result = result
        super().__init__(f"Compatibility check failed: {result.description}")


class RollbackFailed(UpgradeError):
    """The previous version could not be restored; no proxy is confirmed running."""


class NoVersionAvailable(UpgradeError):
    def __init__(self, message: str = "No compatible proxy version available."):
        super().__init__(message)


class InvalidStateTransition(RuntimeError):
    """Raised when an operation is requested from a state that does not allow it."""


class UpgradeInProgress(InvalidStateTransition):
    pass
