"""Errors raised by the folio.

Every error carries a stable `kind` and a human readable `reason`. Each class
also derives from the closest builtin exception, so code that only knows about
`LookupError` or `OSError` still catches them.
"""

from __future__ import annotations


class FolioError(Exception):
    """Base class of all folio errors.

    Attributes:
        kind: Stable, machine readable error name.
        reason: Human readable explanation.
    """

    kind = "error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.kind, "reason": self.reason}


class NotFound(FolioError, LookupError):
    kind = "not_found"


class AlreadyExists(FolioError, FileExistsError):
    kind = "already_exists"


class QuotaExceeded(FolioError):
    """An add-style edit would push usage over the account's limit.

    Attributes:
        available: Bytes still available to the account.
        requested: Bytes the rejected edit needed.
    """

    kind = "quota_exceeded"

    def __init__(self, available: int, requested: int) -> None:
        super().__init__(
            f"Edit needs {requested} bytes but only {available} bytes are available"
        )
        self.available = available
        self.requested = requested

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["available"] = self.available
        return data


class AccessDenied(FolioError, PermissionError):
    kind = "access_denied"


class StoreUnavailable(FolioError, OSError):
    kind = "store_unavailable"


class Corrupt(FolioError):
    kind = "corrupt"
