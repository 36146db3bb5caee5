from __future__ import annotations

import json
import os
import pathlib
import tempfile
from dataclasses import asdict, dataclass
from typing import AsyncGenerator, Protocol, runtime_checkable
from uuid import uuid4

import anyio
from blake3 import blake3

from foliocas.checkout_strategies import CheckoutStrategiesRunner, CheckoutStrategy
from foliocas.put_strategies import PutStrategiesRunner, PutStrategy
from foliocas.store_entry import BlobEntry, NodeType, TreeChild

from ._utils import AsyncFileReader, iter_dir, safe_join, shard

PathLikeArg = str | os.PathLike[str]

LAYOUT_FILE_NAME = ".foliocas_store.json"
MANIFEST_FORMAT = "foliocas/tree-v1"
HEXDIGITS = frozenset("0123456789abcdef")
MULTITHREAD_THRESHOLD = 3 * 512 * 1024


@runtime_checkable
class ContentStore(Protocol):
    """What the folio needs from a content-addressed store.

    `TreeStore` implements it locally; anything else (e.g. a client for a
    remote daemon) only has to provide these four coroutines.
    """

    async def put_tree(self, pathlike: PathLikeArg) -> str:
        ...

    async def get_tree(self, snapshot_id: str, workspace: PathLikeArg) -> anyio.Path:
        ...

    async def list_children(self, snapshot_id: str) -> list[tuple[str, str]]:
        ...

    async def cat(self, snapshot_id: str, relpath: str) -> bytes:
        ...


@dataclass(frozen=True)
class StoreLayout:
    """How blobs sit on disk. Fixed once the store is initialized.

    Attributes:
        prefix_depth: Count of subdirectories a blob is hosted in
        prefix_width: Length of each subdirectory name as taken from the checksum
        fmode: Blob file permissions. The default `0o400` avoids accidental
            loss of data (e.g `echo oops > blob`).
        dmode: Object directory permissions
        default_put_strategy: Strategy `put_blob()` uses when given none.
            `put_tree()` works on disposable workspaces and always renames.
    """

    prefix_depth: int = 1
    prefix_width: int = 2
    fmode: int = 0o400
    dmode: int = 0o700
    default_put_strategy: PutStrategy = PutStrategy.COPY

    def to_dict(self) -> dict:
        data = asdict(self)
        data["default_put_strategy"] = self.default_put_strategy.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> StoreLayout:
        return cls(
            **{**data, "default_put_strategy": PutStrategy(data["default_put_strategy"])}
        )


class TreeStore:
    """Stores whole directory trees by content.

    Files are kept as blobs named by their checksum. Every directory becomes a
    JSON manifest listing its children, and the manifest is stored as a blob
    as well, so the id of a tree is the checksum of its root manifest. Two
    identical trees always get the same id, and a tree can never change
    without its id changing.

    A store that was initialized before reloads its
    [`StoreLayout`][foliocas.tree_store.StoreLayout] from `root`. A new one
    needs [`init()`][foliocas.tree_store.TreeStore.init] first.

    Parameters:
        root: **Absolute** directory path of the store
    """

    def __init__(self, root: PathLikeArg):
        sync_root = pathlib.Path(root)
        if not sync_root.is_absolute():
            raise ValueError("Store root must be an absolute path")
        self._root = anyio.Path(sync_root.resolve())
        self._layout: StoreLayout | None = None

        # initialization is sync
        layout_file = self._layout_file
        if layout_file.is_file():
            self._use_layout(StoreLayout.from_dict(json.loads(layout_file.read_text())))

    def init(self, layout: StoreLayout | None = None) -> None:
        """Create an empty store in `root`, which must be empty or missing."""
        sync_root = pathlib.Path(self._root)
        sync_root.mkdir(parents=True, exist_ok=True)
        if any(sync_root.iterdir()):
            raise FileExistsError("Store directory must be empty to initialize a store")

        layout = layout or StoreLayout()
        pathlib.Path(self._scratch_path).mkdir()
        pathlib.Path(self._objects_path).mkdir(mode=layout.dmode)
        self._layout_file.write_text(json.dumps(layout.to_dict()))
        self._use_layout(layout)

    @property
    def root(self) -> str:
        return str(self._root)

    @property
    def is_initialized(self) -> bool:
        return self._layout is not None

    @property
    def layout(self) -> StoreLayout:
        self._require_initialized()
        assert self._layout is not None
        return self._layout

    @property
    def prefix_depth(self) -> int:
        return self.layout.prefix_depth

    @property
    def prefix_width(self) -> int:
        return self.layout.prefix_width

    @property
    def fmode(self) -> int:
        return self.layout.fmode

    @property
    def _scratch_path(self) -> anyio.Path:
        return self._root.joinpath(".scratch")

    @property
    def _objects_path(self) -> anyio.Path:
        return self._root.joinpath("objects")

    @property
    def _layout_file(self) -> pathlib.Path:
        return pathlib.Path(self._root.joinpath(LAYOUT_FILE_NAME))

    def _use_layout(self, layout: StoreLayout) -> None:
        self._layout = layout
        self._put_strategy_runner = PutStrategiesRunner(
            self.compute_checksum,
            self._checksum_to_path,
            self._scratch_path,
            layout.fmode,
            layout.dmode,
        )
        # checked out files are meant to be edited
        self._checkout_strategy_runner = CheckoutStrategiesRunner(
            self.compute_checksum, 0o644, 0o755
        )

    def _require_initialized(self) -> None:
        if self._layout is None:
            raise RuntimeError(f"No store initialized in {self._root}")

    async def put_blob(
        self, pathlike: PathLikeArg, put_strategy: PutStrategy | None = None
    ) -> BlobEntry:
        """Store a single file under its checksum.

        `put_strategy` defaults to the layout's `default_put_strategy`. With
        `ATOMIC_RENAME` the file at `pathlike` (absolute) is moved, not copied.
        """
        layout = self.layout
        source_path = anyio.Path(pathlike)
        if not source_path.is_absolute():
            raise ValueError(f"Blob source must be an absolute path, got {pathlike}")

        return await self._put_strategy_runner.run(
            put_strategy or layout.default_put_strategy, source_path
        )

    async def put_bytes(self, data: bytes) -> BlobEntry:
        """Store an in-memory payload as a blob."""
        self._require_initialized()
        staged = self._scratch_path.joinpath(f"{uuid4().hex}.staged")
        await staged.write_bytes(data)
        return await self._put_strategy_runner.run(PutStrategy.ATOMIC_RENAME, staged)

    def get_blob(self, checksum: str) -> BlobEntry | None:
        """Return the `BlobEntry` for `checksum`, or `None` if no such blob."""
        if not checksum or any(c not in HEXDIGITS for c in checksum):
            return None
        try:
            filepath = pathlib.Path(self._checksum_to_path(checksum))
        except ValueError:
            return None

        if filepath.is_file():
            return BlobEntry(checksum, str(filepath), filepath.stat().st_size)

        return None

    def exists(self, checksum: str) -> bool:
        """Check whether a given blob checksum exists on disk."""
        return self.get_blob(checksum) is not None

    def __contains__(self, checksum: str) -> bool:
        return self.exists(checksum)

    async def read_blob(self, checksum: str) -> bytes:
        entry = self.get_blob(checksum)
        if entry is None:
            raise FileNotFoundError(f"Could not locate checksum: {checksum}")

        return await anyio.Path(entry.path).read_bytes()

    async def put_tree(self, pathlike: PathLikeArg) -> str:
        """Store the directory at `pathlike` and everything below it.

        Hidden files (dotfiles, `__MACOSX`) are skipped. The workspace is
        consumed: its files are renamed into the store.

        Returns:
            The id of the stored tree.
        """
        self._require_initialized()
        source_path = anyio.Path(pathlike)

        if not source_path.is_absolute():
            raise ValueError(f"Tree root must be an absolute path, got {pathlike}")
        if not await source_path.is_dir():
            raise NotADirectoryError(f"{source_path} must be a directory")

        return (await self._put_dir(source_path)).id

    async def _put_dir(self, path: anyio.Path) -> TreeChild:
        children = []
        async for child_path, is_dir in iter_dir(path):
            if is_dir:
                subtree = await self._put_dir(child_path)
                children.append(
                    TreeChild(child_path.name, NodeType.TREE, subtree.id, subtree.size)
                )
            else:
                entry = await self._put_strategy_runner.run(
                    PutStrategy.ATOMIC_RENAME, child_path
                )
                children.append(
                    TreeChild(child_path.name, NodeType.BLOB, entry.checksum, entry.size)
                )

        manifest = json.dumps(
            {
                "format": MANIFEST_FORMAT,
                "children": [child.to_dict() for child in children],
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode()
        entry = await self.put_bytes(manifest)
        return TreeChild(
            path.name, NodeType.TREE, entry.checksum, sum(c.size for c in children)
        )

    async def load_manifest(self, tree_id: str) -> list[TreeChild]:
        """Return the children of tree `tree_id`.

        Raises:
            FileNotFoundError: If no blob has that id.
            NotADirectoryError: If the blob is not a tree manifest.
        """
        data = await self.read_blob(tree_id)
        try:
            manifest = json.loads(data)
        except ValueError:
            raise NotADirectoryError(f"{tree_id} is not a tree") from None

        if not isinstance(manifest, dict) or manifest.get("format") != MANIFEST_FORMAT:
            raise NotADirectoryError(f"{tree_id} is not a tree")

        return [TreeChild.from_dict(child) for child in manifest["children"]]

    async def get_tree(
        self,
        snapshot_id: str,
        workspace: PathLikeArg,
        checkout_strategy: CheckoutStrategy = CheckoutStrategy.COPY,
    ) -> anyio.Path:
        """Materialize tree `snapshot_id` as `<workspace>/<snapshot_id>`.

        Returns:
            Path of the materialized tree root.

        Raises:
            ChecksumMismatch: A blob no longer hashes to its id.
        """
        self._require_initialized()
        dest_path = anyio.Path(workspace).joinpath(snapshot_id)
        await dest_path.mkdir(parents=True, exist_ok=False)
        await self._checkout_dir(snapshot_id, dest_path, checkout_strategy)
        return dest_path

    async def _checkout_dir(
        self,
        tree_id: str,
        dest_path: anyio.Path,
        checkout_strategy: CheckoutStrategy,
    ) -> None:
        for child in await self.load_manifest(tree_id):
            child_path = dest_path.joinpath(child.name)
            if child.type is NodeType.TREE:
                await child_path.mkdir(exist_ok=True)
                await self._checkout_dir(child.id, child_path, checkout_strategy)
                continue

            entry = self.get_blob(child.id)
            if entry is None:
                raise FileNotFoundError(f"Blob {child.id} of tree {tree_id} is missing")
            await self._checkout_strategy_runner.run(checkout_strategy, entry, child_path)

    async def list_children(self, snapshot_id: str) -> list[tuple[str, str]]:
        """Shallow listing of a tree as `(child_id, name)` pairs."""
        return [(child.id, child.name) for child in await self.load_manifest(snapshot_id)]

    async def cat(self, snapshot_id: str, relpath: str) -> bytes:
        """Return the bytes of the file at `relpath` inside tree `snapshot_id`."""
        parts = pathlib.PurePosixPath(safe_join("/", relpath)).parts[1:]
        node = TreeChild("", NodeType.TREE, snapshot_id)
        for index, part in enumerate(parts):
            if node.type is NodeType.BLOB:
                raise NotADirectoryError(f"{'/'.join(parts[:index])} is a file")
            children = {child.name: child for child in await self.load_manifest(node.id)}
            if part not in children:
                raise FileNotFoundError(f"{relpath} not found in {snapshot_id}")
            node = children[part]

        if node.type is NodeType.TREE:
            raise IsADirectoryError(f"{relpath} is a directory")

        return await self.read_blob(node.id)

    async def get_all(self) -> AsyncGenerator[BlobEntry, None]:
        """Yield every blob in the store."""
        async for path in self._objects_path.glob("**/*"):
            if not await path.is_file():
                continue
            checksum = "".join(path.relative_to(self._objects_path).parts)
            entry = self.get_blob(checksum)
            if entry is not None:
                yield entry

    async def corrupted(self) -> AsyncGenerator[BlobEntry, None]:
        """Yield blobs whose content no longer matches their checksum."""
        async for entry in self.get_all():
            if await self.compute_checksum(entry.path) != entry.checksum:
                yield entry

    async def compute_checksum(
        self, file: AsyncFileReader | PathLikeArg | anyio.Path
    ) -> str:
        """blake3 hexdigest of a file, read in block-aligned chunks."""
        if not isinstance(file, AsyncFileReader):
            file = AsyncFileReader(anyio.Path(file))

        try:
            file_stat = await file.source_path.stat()
        except OSError:
            # the read below reports the real error
            file_stat = None

        blksize = (file_stat.st_blksize if file_stat else 0) or 4096
        if file_stat is None or file_stat.st_size > MULTITHREAD_THRESHOLD:
            # big reads (about 32 MiB) hashed on every core
            chunk_size = (32 * 1024 * 1024 // blksize) * blksize
            hasher = blake3(max_threads=blake3.AUTO)
        else:
            chunk_size = blksize
            hasher = blake3(max_threads=4)

        async for data in file.read(chunk_size):
            hasher.update(data)

        return hasher.hexdigest()

    def _checksum_to_path(self, checksum: str) -> anyio.Path:
        """Build the absolute blob path for a given checksum."""
        layout = self.layout
        path_parts = shard(checksum, layout.prefix_depth, layout.prefix_width)
        return self._objects_path.joinpath(*path_parts)


def scratch_workspace(parent: PathLikeArg) -> str:
    """Create a fresh, empty directory under `parent` for one mutation."""
    os.makedirs(parent, exist_ok=True)
    return tempfile.mkdtemp(prefix="ws-", dir=parent)
