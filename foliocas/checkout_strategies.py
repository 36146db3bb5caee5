from __future__ import annotations

import os
from enum import Enum

import anyio

from foliocas.put_strategies import Checksummer
from foliocas.store_entry import BlobEntry

from ._utils import TeeAsyncFileReader


class ChecksumMismatch(RuntimeError):
    """A checked out copy doesn't hash to the blob it was copied from."""


class CheckoutStrategy(str, Enum):
    """Available CheckoutStrategies used as input for
    [`CheckoutStrategiesRunner`][foliocas.checkout_strategies.CheckoutStrategiesRunner]
    """

    COPY = "COPY"
    SYMBOLIC_LINK = "SYMBOLIC_LINK"


class CheckoutStrategiesRunner:
    """Materializes blobs from the object store into a workspace.

    Workspaces are edited in place by the mutation engine, so anything that is
    going to be written to must be checked out with `COPY`.

    Args:
        checksummer: Function that checksums a file, for integrity verification
        fmode: Permissions to set on checked out files
        dmode: Permissions to set on created directories, if any
    """

    def __init__(self, checksummer: Checksummer, fmode: int, dmode: int) -> None:
        self._checksummer = checksummer
        self._fmode = fmode
        self._dmode = dmode

    async def run(
        self,
        checkout_strategy: CheckoutStrategy,
        source_entry: BlobEntry,
        dest_path: anyio.Path,
    ) -> str | None:
        """Check `source_entry` out to `dest_path`.

        Returns:
            checksum: Checksum of the checked-out copy, or `None` for links

        Raises:
            ChecksumMismatch: In case of mismatch between source and destination checksums
        """
        source_path = anyio.Path(source_entry.path)

        if not await source_path.is_file():
            raise FileNotFoundError(f"{source_path} must be a file")

        await dest_path.parent.mkdir(parents=True, mode=self._dmode, exist_ok=True)

        output_checksum = None
        match checkout_strategy:
            case CheckoutStrategy.COPY:
                output_checksum = await self.copy(source_path, dest_path)
            case CheckoutStrategy.SYMBOLIC_LINK:
                await dest_path.symlink_to(source_path)

        if output_checksum is not None and output_checksum != source_entry.checksum:
            raise ChecksumMismatch(
                f"Source and checked out checksums of {source_path} do not match"
            )

        return output_checksum

    async def copy(self, source_path: anyio.Path, dest_path: anyio.Path) -> str:
        checksum = await self._checksummer(
            TeeAsyncFileReader(source_path, dest_path=dest_path)
        )
        os.chmod(dest_path, self._fmode)
        return checksum
