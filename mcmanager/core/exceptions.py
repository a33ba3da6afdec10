# Error types raised to callers of the InstallManager and the API


class ManagerError(Exception):
    """Base exception for pelican-mc-manager."""


class NotFoundError(ManagerError):
    """Raised when a server or tracked project does not exist."""


class UnsupportedServerError(ManagerError):
    """Raised when a server type has no Modrinth loader or project type."""


class NoFileAvailableError(ManagerError):
    """Raised when a catalog version has no downloadable file."""


class NoBuildsFoundError(ManagerError):
    """Raised when a core project has no builds for a Minecraft version."""


class DownloadNotFoundError(ManagerError):
    """Raised when a core build carries no download URL."""


class StorageError(ManagerError):
    """Raised when the file storage gateway rejects an operation."""


class StorageNotFoundError(StorageError):
    """Raised when a path does not exist in server storage."""


class InstallError(ManagerError):
    """Raised when a multi-step install stops part way.

    ``state`` is the last step that completed, so callers can tell whether
    anything on disk changed before the failure.
    """

    def __init__(self, message: str, state=None):
        super().__init__(message)
        self.state = state
