from __future__ import annotations

import json
import logging
import pathlib

import anyio

from foliocas.directory import FolderDirectory
from foliocas.errors import NotFound, StoreUnavailable
from foliocas.history import HistoryLog, RedirectTable
from foliocas.models import Account

from ._utils import write_atomic

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"
STATE_FORMAT = 1


class FolioState:
    """All bookkeeping of a folio, and its persistence.

    The mutation engine is the only writer. Readers take no lock and see
    either the latest committed values or the ones right before.
    """

    def __init__(self, root: pathlib.Path) -> None:
        self._path = anyio.Path(root.joinpath(STATE_FILE_NAME))
        self._save_lock = anyio.Lock()
        self.accounts: dict[str, Account] = {}
        self.directory = FolderDirectory()
        self.history = HistoryLog()
        self.redirects = RedirectTable()

    def account(self, alias: str) -> Account:
        try:
            return self.accounts[alias]
        except KeyError:
            raise NotFound(f"Unknown account {alias!r}") from None

    def to_dict(self) -> dict:
        return {
            "format": STATE_FORMAT,
            "accounts": {alias: a.to_dict() for alias, a in self.accounts.items()},
            "directory": self.directory.to_dict(),
            "history": self.history.to_dict(),
            "redirects": self.redirects.to_dict(),
        }

    def _restore(self, data: dict) -> None:
        if data.get("format") != STATE_FORMAT:
            raise ValueError(f"Unsupported state format {data.get('format')!r}")

        self.accounts = {
            alias: Account.from_dict(raw) for alias, raw in data["accounts"].items()
        }
        self.directory = FolderDirectory.from_dict(data["directory"])
        self.history = HistoryLog.from_dict(data["history"])
        self.redirects = RedirectTable.from_dict(data["redirects"])

    async def load(self) -> None:
        """Replace in-memory state with what was last saved, if anything."""
        if not await self._path.is_file():
            logger.info("No saved state at %s, starting empty", self._path)
            return

        self._restore(json.loads(await self._path.read_text()))
        logger.info(
            "Loaded %d accounts and %d sites",
            len(self.accounts),
            len(self.directory.sites()),
        )

    async def save(self) -> None:
        """Write the in-memory state to disk.

        Raises:
            StoreUnavailable: The state file could not be written. What is in
                memory stays as it was and is written by the next save.
        """
        # serialize inside the lock so the last writer always has the newest state
        async with self._save_lock:
            data = json.dumps(self.to_dict(), indent=2).encode()
            try:
                await write_atomic(self._path, data)
            except OSError as exc:
                logger.error("Could not save state to %s: %s", self._path, exc)
                raise StoreUnavailable(f"Folio state could not be saved: {exc}") from exc
