"""Read side of the folio: from names and old ids to live content.

Nothing here takes a lock. Snapshot ids of folder-backed sites are looked up
again on every call because they change with every edit of the folder.
"""

from __future__ import annotations

from typing import Any

from foliocas.errors import NotFound
from foliocas.models import (
    EntryKind,
    FolderEntry,
    HistoryRecord,
    LocationKind,
    SiteLocation,
    SiteRecord,
    VersionRecord,
)
from foliocas.state import FolioState
from foliocas.tree_store import ContentStore

from ._utils import safe_join


class Locator:
    def __init__(self, state: FolioState, store: ContentStore, max_depth: int = 10):
        self._state = state
        self._store = store
        self._max_depth = max_depth

    def resolve_live(self, alias: str) -> str:
        """Current snapshot id of `alias`'s folder."""
        account = self._state.account(alias)
        if account.current_id is None:
            raise NotFound(f"Account {alias} has no folder")
        return account.current_id

    def resolve_historical(self, snapshot_id: str) -> str:
        """Id that is live now for a snapshot id issued at any time.

        Ids the folio never rewrote are returned unchanged.
        """
        return self._state.redirects.resolve(snapshot_id)

    def locate_site(self, name: str) -> SiteLocation:
        record = self._state.directory.get_site(name)
        if record.is_folder_backed:
            assert record.alias is not None and record.path is not None
            return SiteLocation(
                kind=LocationKind.FOLDER,
                snapshot_id=self.resolve_live(record.alias),
                alias=record.alias,
                path=record.path,
            )

        if record.snapshot_id is None:
            raise NotFound(f"Site {name!r} has no published version")
        return SiteLocation(kind=LocationKind.DIRECT, snapshot_id=record.snapshot_id)

    async def fetch(self, snapshot_id: str, relpath: str) -> bytes:
        """Bytes of the file at `relpath` inside a snapshot.

        Historical ids are resolved first, so links handed out before later
        edits keep working.
        """
        live_id = self.resolve_historical(snapshot_id)
        try:
            return await self._store.cat(live_id, relpath)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound(f"{relpath} not found in {live_id}") from None

    async def fetch_entry(self, alias: str, kind: EntryKind, name: str) -> bytes:
        """Content of a file entry from the live snapshot of `alias`."""
        if kind is not EntryKind.FILE:
            raise ValueError("Only file entries can be fetched as a whole")
        return await self.fetch(self.resolve_live(alias), kind.path_of(name))

    async def fetch_site(self, name: str, path: str = "index.html") -> bytes:
        """Bytes of `path` inside site `name` as it is published right now."""
        location = self.locate_site(name)
        relpath = safe_join(location.path, path) if location.path else path
        return await self.fetch(location.snapshot_id, relpath)

    async def tree(self, snapshot_id: str, max_depth: int | None = None) -> Any:
        """Nested `{name: subtree}` view of a snapshot; files map to their id.

        Anything deeper than `max_depth` is shown as its id.
        """
        max_depth = self._max_depth if max_depth is None else max_depth
        live_id = self.resolve_historical(snapshot_id)
        try:
            return await self._tree(live_id, 0, max_depth)
        except FileNotFoundError:
            raise NotFound(f"Unknown snapshot {live_id}") from None

    async def _tree(self, node_id: str, depth: int, max_depth: int) -> Any:
        if depth > max_depth:
            return node_id
        try:
            children = await self._store.list_children(node_id)
        except NotADirectoryError:
            return node_id

        return {
            name: await self._tree(child_id, depth + 1, max_depth)
            for child_id, name in children
        }

    def folder_history(self, alias: str) -> list[HistoryRecord]:
        self._state.account(alias)
        return self._state.history.records(alias)

    def list_entries(self, alias: str, kind: EntryKind | None = None) -> list[FolderEntry]:
        return self._state.directory.list_entries(alias, kind)

    def counts_by_kind(self, alias: str) -> dict[EntryKind, int]:
        return self._state.directory.counts_by_kind(alias)

    def site_versions(self, name: str) -> list[VersionRecord | HistoryRecord]:
        """Versions of a site.

        A direct site has its own list. A folder-backed site's versions are
        the folder commits that touched it.
        """
        record = self._state.directory.get_site(name)
        if record.is_folder_backed:
            assert record.alias is not None and record.path is not None
            return list(self._state.history.mentioning(record.alias, record.path))
        return list(record.versions)

    def list_sites(self, owner: str) -> list[dict]:
        return [self._describe(record) for record in self._state.directory.sites_owned_by(owner)]

    def _describe(self, record: SiteRecord) -> dict:
        location = self.locate_site(record.name)
        return {
            "name": record.name,
            "location": location.kind.value,
            "snapshot_id": location.snapshot_id,
            "path": location.path,
            "created": record.created,
            "updated": record.updated,
            "versions": len(self.site_versions(record.name)),
        }

    def stats(self) -> dict:
        return {
            "total_sites": len(self._state.directory.sites()),
            "total_accounts": len(self._state.accounts),
            "total_entries": self._state.directory.entry_count(),
            "redirects": len(self._state.redirects),
        }
