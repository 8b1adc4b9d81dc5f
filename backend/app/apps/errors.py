from __future__ import annotations


class AppsError(RuntimeError):
    code = "APPS_ERROR"


class AppNotFoundError(AppsError, KeyError):
    code = "NOT_FOUND"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"App not found: {name}")

    def __str__(self) -> str:
        # KeyError would repr() the message
        return self.args[0]


class NoUpdateSourceError(AppsError):
    code = "NO_UPDATE_SOURCE"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"App '{name}' has no update source configured")


class AppConflictError(AppsError):
    code = "CONFLICT"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Another operation is already running for app '{name}'")


class AppAlreadyInstalledError(AppsError):
    code = "ALREADY_INSTALLED"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"App '{name}' is already installed (use force=true)")


class InvalidManifestError(AppsError, ValueError):
    code = "INVALID_MANIFEST"


class DownloadFailedError(AppsError):
    code = "DOWNLOAD_FAILED"

    def __init__(self, url: str, reason: str, status_code: int = 0):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Download failed for {url} ({status_code}): {reason}")


class InvalidTransitionError(AppsError):
    code = "INVALID_TRANSITION"
