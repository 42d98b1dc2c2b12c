# sdkvm/core/errors.py

from __future__ import annotations

from typing import Any, Dict, Optional


class SdkError(RuntimeError):
    """Base for every error raised by the SDK manager core.

    `code` is stable and machine-readable; presentation layers map it to text.
    """

    code = "sdk_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "details": self.details}


class RepositoryError(SdkError):
    """Unresolvable ref, checkout failure or corrupted mirror.

    `corrupted=True` means the mirror must be re-cloned; callers must not retry
    the same operation against it.
    """

    code = "repository_error"

    def __init__(
        self,
        message: str,
        *,
        corrupted: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.corrupted = corrupted

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["corrupted"] = self.corrupted
        return out


class DownloadError(SdkError):
    """Network failure. `retryable=False` for answers a retry cannot change (404)."""

    code = "download_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.retryable = retryable


class ManifestUnavailableError(SdkError):
    """The engine manifest cannot be read without a working tree of the version."""

    code = "manifest_unavailable"


class IntegrityError(SdkError):
    code = "integrity_error"


class LinkError(SdkError):
    code = "link_error"


class UnknownForkError(SdkError):
    code = "unknown_fork"


class InvalidVersionError(SdkError):
    code = "invalid_version"


class LockContentionError(SdkError):
    code = "lock_contention"


class CatalogError(SdkError):
    code = "catalog_error"


class ConfigError(SdkError):
    code = "config_error"


class InstallTimeoutError(SdkError):
    """The caller's install deadline passed; completed partial state stays on disk."""

    code = "install_timeout"


class NotInstalledError(InvalidVersionError):
    code = "not_installed"
