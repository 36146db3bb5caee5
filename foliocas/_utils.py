from __future__ import annotations

import os
import shutil
import tempfile
from typing import AsyncGenerator

import anyio


def shard(checksum: str, prefix_depth: int, prefix_width: int) -> list[str]:
    # `prefix_depth` tokens of `prefix_width` characters taken from the front
    # of the checksum, followed by whatever remains.
    if len(checksum) <= prefix_depth * prefix_width:
        raise ValueError("checksum must be larger prefix_depth * prefix_width")

    tokens = [
        checksum[i * prefix_width : prefix_width * (i + 1)] for i in range(prefix_depth)
    ]
    tokens.append(checksum[prefix_depth * prefix_width :])
    return [token for token in tokens if token]


def is_hidden(name: str) -> bool:
    """Dotfiles and archive tool droppings never become part of a tree."""
    return name.startswith(".") or name.startswith("__MACOSX")


async def iter_dir(
    path: anyio.Path,
) -> AsyncGenerator[tuple[anyio.Path, bool], None]:
    """Yield `(child, is_dir)` for the visible children of `path`, sorted by name."""
    children = sorted([child async for child in path.iterdir()], key=lambda c: c.name)
    for child in children:
        if is_hidden(child.name):
            continue
        if await child.is_dir():
            yield child, True
        elif await child.is_file():
            yield child, False


def safe_join(root: str | os.PathLike[str], relative: str) -> str:
    """Join `relative` under `root`, refusing absolute paths and `..` escapes."""
    relative = relative.replace("\\", "/")
    if relative.startswith("/"):
        raise ValueError(f"Path must be relative: {relative!r}")
    normalized = os.path.normpath(relative)
    if normalized in ("", ".") or normalized.split(os.sep)[0] == "..":
        raise ValueError(f"Invalid relative path: {relative!r}")
    return os.path.join(os.fspath(root), normalized)


async def write_atomic(dest_path: anyio.Path, data: bytes) -> None:
    """Write `data` next to `dest_path` and rename it into place."""
    await dest_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = tempfile.NamedTemporaryFile(
        dir=str(dest_path.parent), prefix=f".{dest_path.name}.", delete=False
    )
    try:
        with temp_file:
            async_temp_file = anyio.wrap_file(temp_file)
            await async_temp_file.write(data)
        os.replace(temp_file.name, str(dest_path))
    except BaseException:
        os.unlink(temp_file.name)
        raise


async def discard_tree(path: str | os.PathLike[str]) -> None:
    """Remove a scratch directory. Runs shielded so cancellation can't skip it."""
    with anyio.CancelScope(shield=True):
        await anyio.to_thread.run_sync(
            lambda: shutil.rmtree(path, ignore_errors=True)
        )


class AsyncFileReader:
    """Read a file in chunks without blocking the event loop."""

    def __init__(self, source: anyio.Path | AsyncFileReader) -> None:
        self._source = source

    @property
    def source_path(self) -> anyio.Path:
        if isinstance(self._source, anyio.Path):
            return self._source
        return self._source.source_path

    async def read(self, size: int = -1) -> AsyncGenerator[bytes, None]:
        if isinstance(self._source, anyio.Path):
            async with await self.source_path.open("rb") as file:
                while True:
                    data = await file.read(size)
                    if not data:
                        break
                    yield data
        else:
            async for data in self._source.read(size):
                yield data


class TeeAsyncFileReader(AsyncFileReader):
    """Copy the file to `dest_path` while it's being read.

    The copy lands under a temporary name and is renamed into place only once
    the whole source has been read.
    """

    def __init__(self, source: anyio.Path | AsyncFileReader, dest_path: anyio.Path):
        super().__init__(source)
        self._destination_path = dest_path

    async def read(self, size: int = -1) -> AsyncGenerator[bytes, None]:
        await self._destination_path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = tempfile.NamedTemporaryFile(
            dir=str(self._destination_path.parent), delete=False
        )
        with temp_file:
            async_temp_file = anyio.wrap_file(temp_file)
            async for data in super().read(size):
                await async_temp_file.write(data)
                yield data
        os.replace(os.path.realpath(temp_file.name), str(self._destination_path))
