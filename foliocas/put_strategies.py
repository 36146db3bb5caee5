from __future__ import annotations

import os
from enum import Enum
from typing import Awaitable, Callable
from uuid import uuid4

import anyio

from foliocas.store_entry import BlobEntry

from ._utils import AsyncFileReader, TeeAsyncFileReader

Checksummer = Callable[[AsyncFileReader], Awaitable[str]]
PathBuilder = Callable[[str], anyio.Path]


class PutStrategy(str, Enum):
    """Available PutStrategies used as input for
    [`PutStrategiesRunner`][foliocas.put_strategies.PutStrategiesRunner]

    Members' names match the put methods of the runner, lowercased.
    """

    COPY = "COPY"
    ATOMIC_RENAME = "ATOMIC_RENAME"


class PutStrategiesRunner:
    """Gets a source file from a workspace into the object store, under the
    checksum-dependant location computed by the owning
    [`TreeStore`][foliocas.tree_store.TreeStore].

    Args:
        checksummer: Function that checksums a file
        dest_path_builder: Function that builds the **absolute** destination path
            for a checksum
        scratch_dir: Path used for temporary files. Must be on the same file
            system as the object store.
        fmode: Permissions to set on the new blob
        dmode: Permissions to set on created directories, if any
    """

    def __init__(
        self,
        checksummer: Checksummer,
        dest_path_builder: PathBuilder,
        scratch_dir: anyio.Path,
        fmode: int,
        dmode: int,
    ) -> None:
        self._checksummer = checksummer
        self._dest_path_builder = dest_path_builder
        self._scratch_dir = scratch_dir
        self._fmode = fmode
        self._dmode = dmode

    async def run(self, put_strategy: PutStrategy, source_path: anyio.Path) -> BlobEntry:
        if not await source_path.is_file():
            raise ValueError(f"{source_path} must be a file")

        match put_strategy:
            case PutStrategy.COPY:
                return await self.copy(source_path)
            case PutStrategy.ATOMIC_RENAME:
                return await self.atomic_rename(source_path)

        raise ValueError(f"Unknown put strategy {put_strategy}")

    async def copy(self, source_path: anyio.Path) -> BlobEntry:
        """Checksum the file while teeing it into the scratch directory, then
        move the scratch copy into place. The source is left untouched.
        """
        scratch_path = self._scratch_dir.joinpath(f"{uuid4().hex}_{source_path.name}")

        checksum = await self._checksummer(
            TeeAsyncFileReader(source_path, dest_path=scratch_path)
        )
        return await self._settle(scratch_path, checksum)

    async def atomic_rename(self, source_path: anyio.Path) -> BlobEntry:
        """Move the file into the scratch directory first, checksum it there,
        then move it into place. The source disappears.

        `source_path` and the object store need to be on the same file system.
        """
        scratch_path = self._scratch_dir.joinpath(f"{uuid4().hex}_{source_path.name}")

        os.rename(source_path, scratch_path)

        checksum = await self._checksummer(AsyncFileReader(scratch_path))
        return await self._settle(scratch_path, checksum)

    async def _settle(self, scratch_path: anyio.Path, checksum: str) -> BlobEntry:
        dest_path = self._dest_path_builder(checksum)

        await dest_path.parent.mkdir(
            parents=True,
            mode=self._dmode,
            exist_ok=True,
        )

        is_duplicate = await dest_path.is_file()
        size = (await scratch_path.stat()).st_size

        if is_duplicate:
            await scratch_path.unlink()
        else:
            os.rename(scratch_path, dest_path)
            os.chmod(dest_path, self._fmode)

        return BlobEntry(checksum, str(dest_path), size, is_duplicate)
