import pathlib

import anyio
import pytest

from foliocas import Folio, TreeStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store(tmp_path: pathlib.Path) -> TreeStore:
    tree_store = TreeStore(tmp_path / "store")
    tree_store.init()
    return tree_store


@pytest.fixture
async def folio(tmp_path: pathlib.Path) -> Folio:
    folio = Folio(tmp_path / "folio")
    folio.init()
    return await folio.open()


class FlakyStore:
    """Wraps a `TreeStore` and fails or stalls on demand."""

    def __init__(self, inner: TreeStore):
        self.inner = inner
        self.fail_reads = False
        self.fail_writes = False
        self.delay = 0.0
        self.writes = 0

    async def _maybe_stall(self) -> None:
        if self.delay:
            await anyio.sleep(self.delay)

    async def put_tree(self, pathlike):
        await self._maybe_stall()
        if self.fail_writes:
            raise OSError("store write failed")
        self.writes += 1
        return await self.inner.put_tree(pathlike)

    async def get_tree(self, snapshot_id, workspace):
        await self._maybe_stall()
        if self.fail_reads:
            raise OSError("store read failed")
        return await self.inner.get_tree(snapshot_id, workspace)

    async def list_children(self, snapshot_id):
        return await self.inner.list_children(snapshot_id)

    async def cat(self, snapshot_id, relpath):
        return await self.inner.cat(snapshot_id, relpath)


@pytest.fixture
async def flaky(tmp_path: pathlib.Path, store: TreeStore):
    """A folio whose store can be told to fail, and the store wrapper itself."""
    flaky_store = FlakyStore(store)
    folio = Folio(tmp_path / "flaky-folio", store=flaky_store)
    folio.init(store_timeout=0.5)
    await folio.open()
    return folio, flaky_store


def workspace_leftovers(folio: Folio) -> list[str]:
    root = pathlib.Path(folio.root, "workspaces")
    if not root.exists():
        return []
    return sorted(child.name for child in root.iterdir())
