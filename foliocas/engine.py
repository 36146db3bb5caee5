"""Turns edits of an account's folder into new snapshots.

One mutation runs FETCHING -> APPLYING -> COMMITTING -> DONE under the
account's lock:

* FETCHING materializes the current snapshot into a scratch workspace.
* APPLYING edits the workspace on local disk.
* COMMITTING stores the edited workspace as a new snapshot.
* DONE advances quota, directory, site records, history and redirects in one
  synchronous block, then persists them.

Any failure before DONE discards the workspace and leaves bookkeeping as it
was. Checks that need no I/O run before FETCHING.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import pathlib
import shutil
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import uuid4

import anyio

from foliocas.checkout_strategies import ChecksumMismatch
from foliocas.errors import (
    AccessDenied,
    AlreadyExists,
    Corrupt,
    FolioError,
    NotFound,
    QuotaExceeded,
    StoreUnavailable,
)
from foliocas.locks import KeyedLock
from foliocas.models import (
    Account,
    EditKind,
    EditPayload,
    EntryKind,
    FolderEntry,
    LocationKind,
    MutationResult,
    SiteRecord,
    utcnow,
)
from foliocas.quota import QuotaLedger, estimate_size
from foliocas.state import FolioState
from foliocas.tree_store import ContentStore, scratch_workspace

from ._utils import discard_tree, is_hidden, safe_join

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
README_FILE = "README.md"
META_FILE = "meta.json"
MEDIA_FOLDER = "media"

README_TEXT = """# {alias}

Published content of {alias}.

- `websites/` sites built from templates
- `zip-websites/` sites uploaded as archives
- `files/` individual files
- `media/` shared media
"""


async def call_store(
    timeout: float, operation: str, func: Callable[..., Awaitable[Any]], *args: Any
) -> Any:
    """Run one store call, translating its failures into folio errors."""
    try:
        with anyio.fail_after(timeout):
            return await func(*args)
    except TimeoutError:
        raise StoreUnavailable(f"Store {operation} timed out after {timeout}s") from None
    except NotADirectoryError as exc:
        raise Corrupt(f"Store {operation} hit a non-tree snapshot: {exc}") from exc
    except ChecksumMismatch as exc:
        raise Corrupt(f"Store {operation} found a damaged blob: {exc}") from exc
    except OSError as exc:
        if isinstance(exc, FolioError):
            raise
        raise StoreUnavailable(f"Store {operation} failed: {exc}") from exc


def check_entry_name(name: str | None) -> str:
    if not name or "/" in name or "\\" in name or name in (".", "..") or is_hidden(name):
        raise ValueError(f"Invalid entry name {name!r}")
    return name


def check_file_path(path: str) -> str:
    """Validate a path inside a website and return it normalized."""
    normalized = os.path.relpath(safe_join("/", path), "/")
    parts = pathlib.PurePosixPath(normalized).parts
    if any(is_hidden(part) for part in parts):
        raise ValueError(f"Hidden files can't be published: {path!r}")
    if normalized == META_FILE:
        raise ValueError(f"{META_FILE} is reserved for site metadata")
    return normalized


@dataclass
class _Plan:
    """Everything a mutation will do, decided before any store I/O."""

    edit_kind: EditKind
    action: str
    roster: dict[str, list[str]]
    subject: str | None = None
    entry: FolderEntry | None = None
    removed: list[FolderEntry] = field(default_factory=list)
    files: dict[str, bytes] = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    quota_used: int = 0


class MutationEngine:
    """The only writer of folio bookkeeping.

    Parameters:
        state: Loaded bookkeeping.
        store: Content store holding the snapshots.
        ledger: Quota rules.
        workspace_root: Directory under which scratch workspaces are made.
        store_timeout: Seconds a single store read or write may take.
        default_quota_limit: Limit for folders created without one.
    """

    def __init__(
        self,
        state: FolioState,
        store: ContentStore,
        ledger: QuotaLedger,
        workspace_root: str | os.PathLike[str],
        store_timeout: float,
        default_quota_limit: int,
    ) -> None:
        self._state = state
        self._store = store
        self._ledger = ledger
        self._workspace_root = os.fspath(workspace_root)
        self._store_timeout = store_timeout
        self._default_quota_limit = default_quota_limit
        self._locks = KeyedLock()

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    async def mutate(
        self,
        alias: str,
        edit_kind: EditKind | str,
        payload: EditPayload | None = None,
        caller: str | None = None,
    ) -> MutationResult:
        """Apply one edit to `alias`'s folder and commit it as a new snapshot.

        Parameters:
            alias: Account whose folder is edited.
            edit_kind: What to do, see [`EditKind`][foliocas.models.EditKind].
            payload: Entry name, contents and metadata of the edit.
            caller: Account making the request. When given it must be `alias`.

        Returns:
            The previous and new snapshot ids, the resulting quota usage and
            the history sequence number of the commit.

        Raises:
            AccessDenied: `caller` doesn't own the folder.
            NotFound: Unknown account or entry.
            AlreadyExists: Folder already bootstrapped, or site name taken.
            QuotaExceeded: The edit doesn't fit in the account's quota.
            StoreUnavailable: The store failed or timed out, or the bookkeeping
                could not be saved. In the latter case the commit already took
                effect in memory and is saved again with the next mutation.
            Corrupt: The current snapshot lacks an expected sub-tree, holds a
                damaged blob, or lost an entry while being rewritten.
        """
        edit_kind = EditKind(edit_kind)
        payload = payload or EditPayload()

        if caller is not None and caller != alias:
            raise AccessDenied(f"{caller} can't modify the folder of {alias}")

        async with self._locks.hold(alias):
            if edit_kind is EditKind.CREATE_FOLDER:
                result = await self._create_folder(alias, payload)
            else:
                result = await self._edit_folder(alias, edit_kind, payload)
            await self._state.save()

        logger.info(
            "%s: %s (%s -> %s, #%d)",
            alias,
            result.action,
            result.previous_id,
            result.new_id,
            result.sequence,
        )
        return result

    async def reconcile_quota(self, alias: str) -> int:
        """Correct `alias`'s recorded usage if it drifted from its entries.

        Returns:
            The quota usage after correction.
        """
        async with self._locks.hold(alias):
            account = self._state.account(alias)
            corrected = self._ledger.correct_drift(
                account, self._state.directory.list_entries(alias)
            )
            if corrected is not None:
                account.quota_used = corrected
                await self._state.save()
            return account.quota_used

    async def _call_store(
        self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        return await call_store(self._store_timeout, operation, func, *args)

    async def _create_folder(self, alias: str, payload: EditPayload) -> MutationResult:
        check_entry_name(alias)
        if alias in self._state.accounts or self._state.directory.has_folder(alias):
            raise AlreadyExists(f"Account {alias} already has a folder")

        quota_limit = (
            self._default_quota_limit if payload.quota_limit is None else payload.quota_limit
        )
        if quota_limit < 0:
            raise ValueError("Quota limit can't be negative")

        account = Account(alias=alias, account_id=uuid4().hex, quota_limit=quota_limit)
        roster = {kind.value: [] for kind in EntryKind}

        workspace = scratch_workspace(self._workspace_root)
        try:
            tree = pathlib.Path(workspace, "folder")
            bootstrap_size = self._write_skeleton(tree, account, roster)

            check = self._ledger.check_and_reserve(account, bootstrap_size)
            if not check.ok:
                raise QuotaExceeded(check.available, check.requested)

            new_id = await self._call_store("write", self._store.put_tree, str(tree))
        finally:
            await discard_tree(workspace)

        account.current_id = new_id
        account.quota_used = bootstrap_size
        account.bootstrap_size = bootstrap_size
        self._state.accounts[alias] = account
        self._state.directory.create_folder(alias)
        record = self._state.history.append(alias, new_id, None, "Created folder", roster)
        self._state.redirects.rewrite([], new_id)

        return MutationResult(None, new_id, account.quota_used, record.sequence, record.action)

    def _write_skeleton(
        self, tree: pathlib.Path, account: Account, roster: dict[str, list[str]]
    ) -> int:
        for folder in [kind.folder for kind in EntryKind] + [MEDIA_FOLDER]:
            tree.joinpath(folder).mkdir(parents=True)
        readme = README_TEXT.format(alias=account.alias).encode()
        tree.joinpath(README_FILE).write_bytes(readme)
        index_size = self._write_index(tree, account, 1, roster)
        return len(readme) + index_size

    def _write_index(
        self,
        tree: pathlib.Path,
        account: Account,
        sequence: int,
        roster: dict[str, list[str]],
    ) -> int:
        index = json.dumps(
            {
                "owner": account.alias,
                "created": account.created,
                "sequence": sequence,
                "entries": roster,
            },
            indent=2,
            sort_keys=True,
        ).encode()
        tree.joinpath(INDEX_FILE).write_bytes(index)
        return len(index)

    async def _edit_folder(
        self, alias: str, edit_kind: EditKind, payload: EditPayload
    ) -> MutationResult:
        account = self._state.account(alias)
        if account.current_id is None or not self._state.directory.has_folder(alias):
            raise NotFound(f"Account {alias} has no folder")

        plan = self._plan(account, edit_kind, payload)
        previous_id = account.current_id
        sequence = self._state.history.next_sequence(alias)

        workspace = scratch_workspace(self._workspace_root)
        try:
            tree = await self._call_store(
                "read", self._store.get_tree, previous_id, workspace
            )
            tree = pathlib.Path(tree)
            self._check_skeleton(tree, previous_id)
            self._apply(tree, account, plan)
            self._verify(tree, plan)
            self._write_index(tree, account, sequence, plan.roster)
            new_id = await self._call_store("write", self._store.put_tree, str(tree))
        except FolioError:
            logger.warning("%s: %s aborted", alias, plan.action, exc_info=True)
            raise
        finally:
            await discard_tree(workspace)

        return self._commit(account, plan, previous_id, new_id)

    def _plan(self, account: Account, edit_kind: EditKind, payload: EditPayload) -> _Plan:
        alias = account.alias
        directory = self._state.directory
        roster = copy.deepcopy(directory.roster(alias))

        match edit_kind:
            case EditKind.PUT_WEBSITE | EditKind.PUT_ARCHIVE_WEBSITE | EditKind.PUT_FILE:
                kind = edit_kind.entry_kind
                assert kind is not None
                name = check_entry_name(payload.name)
                files = self._decode_files(kind, name, payload)

                if kind.is_website:
                    self._claim_site(alias, kind, name)

                nbytes = estimate_size(payload)
                check = self._ledger.check_and_reserve(account, nbytes)
                if not check.ok:
                    raise QuotaExceeded(check.available, check.requested)

                replaced = directory.get_entry(alias, kind, name)
                entry = FolderEntry(
                    kind=kind,
                    name=name,
                    size=nbytes,
                    created=replaced.created if replaced else utcnow(),
                    updated=utcnow() if replaced else None,
                    files=sorted(files) if kind.is_website else [],
                    archive_name=payload.archive_name,
                )
                if name not in roster[kind.value]:
                    roster[kind.value] = sorted(roster[kind.value] + [name])

                verb = "Replaced" if replaced else "Added"
                return _Plan(
                    edit_kind=edit_kind,
                    action=f"{verb} {kind.value}: {name}",
                    roster=roster,
                    subject=entry.path,
                    entry=entry,
                    files=files,
                    metadata=dict(payload.metadata),
                    quota_used=self._ledger.usage_after_put(account, nbytes, replaced),
                )

            case EditKind.DELETE_ENTRY:
                if payload.kind is None:
                    raise ValueError("delete-entry needs the kind of the entry")
                kind = EntryKind(payload.kind)
                name = check_entry_name(payload.name)
                entry = directory.get_entry(alias, kind, name)
                if entry is None:
                    raise NotFound(f"No {kind.value} named {name!r} in {alias}'s folder")
                roster[kind.value].remove(name)
                return _Plan(
                    edit_kind=edit_kind,
                    action=f"Deleted {kind.value}: {name}",
                    roster=roster,
                    subject=entry.path,
                    removed=[entry],
                    quota_used=self._ledger.usage_after_delete(account, [entry]),
                )

            case EditKind.DELETE_ALL_ENTRIES:
                removed = directory.list_entries(alias)
                return _Plan(
                    edit_kind=edit_kind,
                    action=f"Deleted all entries ({len(removed)})",
                    roster={kind.value: [] for kind in EntryKind},
                    removed=removed,
                    quota_used=self._ledger.usage_after_delete(account, removed),
                )

        raise ValueError(f"Unsupported edit {edit_kind.value}")

    def _claim_site(self, alias: str, kind: EntryKind, name: str) -> SiteRecord | None:
        """Check that `alias` may publish website `name` as `kind`.

        Returns:
            The site record `alias` already holds under `name`, if any.
        """
        site = self._state.directory.claim_site_name(name, alias)
        if site is not None and site.is_folder_backed and site.entry_kind is not kind:
            raise AlreadyExists(
                f"Site {name!r} is already published as {site.entry_kind.value}"
            )
        return site

    def _decode_files(
        self, kind: EntryKind, name: str, payload: EditPayload
    ) -> dict[str, bytes]:
        if not payload.files:
            raise ValueError(f"{kind.value} {name!r} has no content")

        decoded = payload.decoded_files()
        if kind is EntryKind.FILE:
            if len(decoded) != 1:
                raise ValueError("add-file takes exactly one file")
            return {name: next(iter(decoded.values()))}

        files = {}
        for path, content in decoded.items():
            normalized = check_file_path(path)
            if normalized in files:
                raise ValueError(f"{path!r} names the same file as another path")
            files[normalized] = content
        return files

    def _check_skeleton(self, tree: pathlib.Path, snapshot_id: str) -> None:
        for kind in EntryKind:
            if not tree.joinpath(kind.folder).is_dir():
                raise Corrupt(f"Snapshot {snapshot_id} has no {kind.folder}/ sub-tree")

    def _apply(self, tree: pathlib.Path, account: Account, plan: _Plan) -> None:
        for entry in plan.removed:
            _remove_path(tree.joinpath(entry.path))

        if plan.edit_kind is EditKind.DELETE_ALL_ENTRIES:
            for kind in EntryKind:
                for child in tree.joinpath(kind.folder).iterdir():
                    _remove_path(child)

        entry = plan.entry
        if entry is None:
            return

        target = tree.joinpath(entry.path)
        _remove_path(target)

        if entry.kind is EntryKind.FILE:
            target.write_bytes(plan.files[entry.name])
            return

        target.mkdir()
        for path, content in plan.files.items():
            file_path = pathlib.Path(safe_join(target, path))
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(content)

        meta = {
            **plan.metadata,
            "owner": account.alias,
            "created": entry.created,
            "type": entry.kind.value,
            "fileCount": len(entry.files),
            "structure": entry.files,
        }
        if entry.archive_name:
            meta["archiveName"] = entry.archive_name
        target.joinpath(META_FILE).write_text(json.dumps(meta, indent=2))

    def _verify(self, tree: pathlib.Path, plan: _Plan) -> None:
        """Every entry that should survive the rewrite must still be there."""
        for kind_value, names in plan.roster.items():
            kind = EntryKind(kind_value)
            for name in names:
                if not tree.joinpath(kind.path_of(name)).exists():
                    raise Corrupt(f"{kind.value} {name!r} went missing from the folder")

        for entry in plan.removed:
            if tree.joinpath(entry.path).exists():
                raise Corrupt(f"{entry.kind.value} {entry.name!r} could not be removed")

    def _commit(
        self, account: Account, plan: _Plan, previous_id: str, new_id: str
    ) -> MutationResult:
        # no awaits below: readers see all of this or none of it
        alias = account.alias
        directory = self._state.directory
        lineage = self._state.history.lineage(alias)

        site = None
        if plan.entry is not None and plan.entry.kind.is_website:
            # other accounts may have claimed the name while this one was in the store
            site = self._claim_site(alias, plan.entry.kind, plan.entry.name)

        for entry in plan.removed:
            if plan.edit_kind is EditKind.DELETE_ENTRY:
                directory.remove_entry(alias, entry.kind, entry.name)
            record = directory.find_site(entry.name)
            if (
                entry.kind.is_website
                and record is not None
                and record.is_folder_backed
                and record.alias == alias
                and record.entry_kind is entry.kind
            ):
                directory.drop_site(entry.name)
        if plan.edit_kind is EditKind.DELETE_ALL_ENTRIES:
            directory.clear_entries(alias)

        if plan.entry is not None:
            directory.add_entry(alias, plan.entry)
            if plan.entry.kind.is_website:
                directory.put_site(self._site_record(alias, plan.entry, site))

        account.current_id = new_id
        account.quota_used = plan.quota_used

        record = self._state.history.append(
            alias, new_id, previous_id, plan.action, plan.roster, plan.subject
        )
        self._state.redirects.rewrite(lineage, new_id)

        return MutationResult(
            previous_id, new_id, account.quota_used, record.sequence, record.action
        )

    def _site_record(
        self, alias: str, entry: FolderEntry, existing: SiteRecord | None
    ) -> SiteRecord:
        if existing is None:
            return SiteRecord(
                name=entry.name,
                owner=alias,
                location=LocationKind.FOLDER,
                alias=alias,
                path=entry.path,
                entry_kind=entry.kind,
            )

        if not existing.is_folder_backed:
            logger.info("Moving direct site %s into %s's folder", entry.name, alias)

        # direct versions stay as they were, the folder's history takes over
        existing.location = LocationKind.FOLDER
        existing.snapshot_id = None
        existing.alias = alias
        existing.path = entry.path
        existing.entry_kind = entry.kind
        existing.updated = utcnow()
        return existing


def _remove_path(path: pathlib.Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()

