"""Exception hierarchy shared by the sync, repository and guide layers."""

from __future__ import annotations

from typing import Any


class CatalogSyncError(Exception):
    """Base class for errors raised by catalogsync."""

    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class AuthenticationFailure(CatalogSyncError):
    """Credentials were rejected or the account is not usable."""


class TransportFailure(CatalogSyncError):
    """Network error, timeout or unexpected HTTP status."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.status_code = status_code


class ParseFailure(CatalogSyncError):
    """The remote payload could not be interpreted."""

    retryable = True


class NotConfigured(CatalogSyncError):
    """No programme guide source is configured."""


class SyncInProgress(CatalogSyncError):
    """A sync is already running for the profile."""

    def __init__(self, profile_id: str):
        super().__init__(
            f"Sync already in progress for profile {profile_id}",
            details={"profile_id": profile_id},
        )
        self.profile_id = profile_id


class ProfileNotFound(CatalogSyncError, KeyError):
    def __init__(self, profile_id: str):
        super().__init__(
            f"Profile {profile_id} not found", details={"profile_id": profile_id}
        )
        self.profile_id = profile_id

    def __str__(self) -> str:
        return self.message


# Failures isolated per content type instead of aborting a sync.
ContentFetchError = (TransportFailure, ParseFailure)
