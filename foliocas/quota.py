"""Quota bookkeeping.

Nothing in here touches the store or the persisted state. The engine asks
`QuotaLedger` whether an edit fits and applies the returned numbers itself
once the new snapshot is durable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from foliocas.models import Account, EditPayload

if TYPE_CHECKING:
    from foliocas.models import FolderEntry

logger = logging.getLogger(__name__)


class QuotaPolicy(str, Enum):
    """What happens to quota when entries go away.

    RETAIN: Deleting or replacing an entry never gives bytes back. Usage only
        grows until `reconcile_quota()` corrects it.
    RECLAIM: Deleting an entry subtracts its size, replacing an entry
        subtracts the size of the version it replaces.
    """

    RETAIN = "retain"
    RECLAIM = "reclaim"


@dataclass(frozen=True)
class QuotaCheck:
    ok: bool
    available: int
    requested: int


def estimate_size(payload: EditPayload) -> int:
    """Bytes an edit adds: decoded length of every file it carries."""
    return sum(len(content) for content in payload.decoded_files().values())


class QuotaLedger:
    def __init__(self, policy: QuotaPolicy = QuotaPolicy.RETAIN, tolerance: int = 1024):
        self._policy = policy
        self._tolerance = tolerance

    def check_and_reserve(self, account: Account, nbytes: int) -> QuotaCheck:
        """Tell whether `nbytes` more fit in `account`'s limit.

        Pure: the account is not modified.
        """
        available = account.quota_available
        return QuotaCheck(nbytes <= available, available, nbytes)

    def usage_after_put(
        self, account: Account, nbytes: int, replaced: FolderEntry | None = None
    ) -> int:
        used = account.quota_used + nbytes
        if replaced is not None and self._policy is QuotaPolicy.RECLAIM:
            used -= replaced.size
        return max(used, 0)

    def usage_after_delete(self, account: Account, removed: Iterable[FolderEntry]) -> int:
        if self._policy is QuotaPolicy.RETAIN:
            return account.quota_used
        return max(account.quota_used - sum(entry.size for entry in removed), 0)

    def recompute(self, account: Account, entries: Iterable[FolderEntry]) -> int:
        """Usage implied by what is tracked: bootstrap size plus every entry."""
        return account.bootstrap_size + sum(entry.size for entry in entries)

    def correct_drift(self, account: Account, entries: Iterable[FolderEntry]) -> int | None:
        """Return the corrected usage if it drifted beyond the tolerance.

        `None` means the recorded usage is close enough and should be kept.
        """
        expected = self.recompute(account, entries)
        drift = account.quota_used - expected
        if abs(drift) <= self._tolerance:
            return None

        logger.warning(
            "Quota drift for %s: recorded %d, tracked %d",
            account.alias,
            account.quota_used,
            expected,
        )
        return expected
