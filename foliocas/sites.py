"""Standalone sites that live outside any folder.

A direct site points at a snapshot of its own and keeps its own linear list
of versions. Every change stores the whole site again and appends a version;
rolling back re-points the site and is recorded as a version too.
"""

from __future__ import annotations

import json
import logging
import os
import pathlib

from foliocas.engine import META_FILE, call_store, check_entry_name, check_file_path
from foliocas.errors import AccessDenied, AlreadyExists, FolioError, NotFound
from foliocas.locks import KeyedLock
from foliocas.models import (
    FileContent,
    LocationKind,
    SiteRecord,
    VersionRecord,
    decode_content,
    utcnow,
)
from foliocas.state import FolioState
from foliocas.tree_store import ContentStore, scratch_workspace

from ._utils import discard_tree, safe_join

logger = logging.getLogger(__name__)


class DirectSites:
    def __init__(
        self,
        state: FolioState,
        store: ContentStore,
        workspace_root: str | os.PathLike[str],
        store_timeout: float,
    ) -> None:
        self._state = state
        self._store = store
        self._workspace_root = os.fspath(workspace_root)
        self._store_timeout = store_timeout
        self._locks = KeyedLock()

    async def publish(
        self,
        owner: str,
        name: str,
        files: dict[str, FileContent],
        metadata: dict | None = None,
        encoding: str = "utf8",
    ) -> SiteRecord:
        """Store `files` as the new content of direct site `name`.

        Raises:
            NotFound: `owner` is not a known account.
            AlreadyExists: Another account owns `name`, or `name` is a
                folder-backed site.
        """
        self._state.account(owner)
        check_entry_name(name)
        if not files:
            raise ValueError(f"Site {name!r} has no content")
        decoded = _decode_files(files, encoding)

        async with self._locks.hold(name):
            record = self._claim(owner, name)

            created = record.created if record is not None else utcnow()
            workspace = scratch_workspace(self._workspace_root)
            try:
                tree = pathlib.Path(workspace, name)
                for path, content in decoded.items():
                    file_path = pathlib.Path(safe_join(tree, path))
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    file_path.write_bytes(content)
                meta = {
                    **(metadata or {}),
                    "owner": owner,
                    "created": created,
                    "type": "webapp",
                }
                tree.joinpath(META_FILE).write_text(json.dumps(meta, indent=2))

                snapshot_id = await call_store(
                    self._store_timeout, "write", self._store.put_tree, str(tree)
                )
            finally:
                await discard_tree(workspace)

            # a folder may have taken the name while the store was busy
            record = self._claim(owner, name)
            if record is None:
                record = SiteRecord(
                    name=name,
                    owner=owner,
                    location=LocationKind.DIRECT,
                    created=created,
                )
                self._state.directory.put_site(record)
            self._add_version(record, snapshot_id, "Published")
            await self._state.save()

        logger.info("Published direct site %s as %s", name, snapshot_id)
        return record

    async def put_file(
        self,
        caller: str,
        name: str,
        filename: str,
        content: FileContent,
        encoding: str = "utf8",
    ) -> SiteRecord:
        """Add or overwrite one file of direct site `name`."""
        return await self.put_files(caller, name, {filename: content}, encoding)

    async def put_files(
        self,
        caller: str,
        name: str,
        files: dict[str, FileContent],
        encoding: str = "utf8",
    ) -> SiteRecord:
        """Add or overwrite several files of direct site `name` as one version.

        Files of the site that are not in `files` are kept.
        """
        if not files:
            raise ValueError(f"No files given for site {name!r}")
        decoded = _decode_files(files, encoding)

        def write(tree: pathlib.Path) -> None:
            for path, data in decoded.items():
                file_path = pathlib.Path(safe_join(tree, path))
                file_path.parent.mkdir(parents=True, exist_ok=True)
                if file_path.exists():
                    file_path.unlink()
                file_path.write_bytes(data)

        noun = "file" if len(decoded) == 1 else "files"
        action = f"Updated {noun}: {', '.join(sorted(decoded))}"
        return await self._rewrite(caller, name, write, action)

    async def delete_file(self, caller: str, name: str, filename: str) -> SiteRecord:
        """Remove one file from direct site `name`."""
        path = check_file_path(filename)

        def remove(tree: pathlib.Path) -> None:
            file_path = pathlib.Path(safe_join(tree, path))
            if not file_path.is_file():
                raise NotFound(f"Site {name!r} has no file {path!r}")
            file_path.unlink()

        return await self._rewrite(caller, name, remove, f"Deleted file: {path}")

    async def rollback(self, caller: str, name: str, version: int) -> SiteRecord:
        """Point site `name` back at the snapshot of `version` (1-based)."""
        async with self._locks.hold(name):
            record = self._owned_direct(caller, name)
            if version < 1 or version > len(record.versions):
                raise ValueError(f"Invalid version {version} for site {name!r}")

            target = record.versions[version - 1]
            self._add_version(record, target.snapshot_id, f"Rolled back to version {version}")
            await self._state.save()

        logger.info("Rolled back direct site %s to version %d", name, version)
        return record

    def history(self, caller: str, name: str) -> list[VersionRecord]:
        record = self._state.directory.get_site(name)
        if record.owner != caller:
            raise AccessDenied(f"{caller} doesn't own site {name!r}")
        return list(record.versions)

    async def _rewrite(self, caller: str, name: str, edit, action: str) -> SiteRecord:
        async with self._locks.hold(name):
            record = self._owned_direct(caller, name)
            assert record.snapshot_id is not None

            workspace = scratch_workspace(self._workspace_root)
            try:
                tree = await call_store(
                    self._store_timeout,
                    "read",
                    self._store.get_tree,
                    record.snapshot_id,
                    workspace,
                )
                edit(pathlib.Path(tree))
                snapshot_id = await call_store(
                    self._store_timeout, "write", self._store.put_tree, str(tree)
                )
            except FolioError:
                logger.warning("Site %s: %s aborted", name, action, exc_info=True)
                raise
            finally:
                await discard_tree(workspace)

            self._add_version(record, snapshot_id, action)
            await self._state.save()

        return record

    def _claim(self, owner: str, name: str) -> SiteRecord | None:
        record = self._state.directory.claim_site_name(name, owner)
        if record is not None and record.is_folder_backed:
            raise AlreadyExists(f"Site {name!r} is published from {record.alias}'s folder")
        return record

    def _owned_direct(self, caller: str, name: str) -> SiteRecord:
        record = self._state.directory.get_site(name)
        if record.owner != caller:
            raise AccessDenied(f"{caller} doesn't own site {name!r}")
        if record.is_folder_backed:
            raise NotFound(f"Site {name!r} is not a direct site")
        return record

    def _add_version(self, record: SiteRecord, snapshot_id: str, action: str) -> None:
        now = utcnow()
        record.versions.append(
            VersionRecord(
                version=len(record.versions) + 1,
                snapshot_id=snapshot_id,
                action=action,
                timestamp=now,
            )
        )
        record.snapshot_id = snapshot_id
        record.updated = now


def _decode_files(files: dict[str, FileContent], encoding: str) -> dict[str, bytes]:
    decoded = {}
    for path, content in files.items():
        normalized = check_file_path(path)
        if normalized in decoded:
            raise ValueError(f"{path!r} names the same file as another path")
        decoded[normalized] = decode_content(content, encoding)
    return decoded
