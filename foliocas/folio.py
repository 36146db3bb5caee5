from __future__ import annotations

import logging
import os
import pathlib
from typing import Any

from foliocas.config import FolioConfig, import_config, write_config
from foliocas.engine import MutationEngine
from foliocas.models import (
    EditKind,
    EditPayload,
    EntryKind,
    FileContent,
    FolderEntry,
    HistoryRecord,
    MutationResult,
    SiteLocation,
    SiteRecord,
    VersionRecord,
)
from foliocas.quota import QuotaCheck, QuotaLedger
from foliocas.resolver import Locator
from foliocas.sites import DirectSites
from foliocas.state import FolioState
from foliocas.tree_store import ContentStore, TreeStore

PathLikeArg = str | os.PathLike[str]

logger = logging.getLogger(__name__)


class Folio:
    """Per-account versioned folders kept in a content-addressed store.

    A folio root holds its config, its persisted bookkeeping, scratch
    workspaces and, unless another [`ContentStore`][foliocas.tree_store.ContentStore]
    is given, a local [`TreeStore`][foliocas.tree_store.TreeStore].

    If a folio was already initialized in `root`, its config is loaded.
    Otherwise a call to [`init()`][foliocas.folio.Folio.init] is required.
    Either way, [`open()`][foliocas.folio.Folio.open] must complete before the
    folio accepts any mutation.

    Parameters:
        root: **Absolute** directory path of the folio
        store: Content store to use instead of the local tree store
    """

    def __init__(self, root: PathLikeArg, store: ContentStore | None = None):
        sync_root = pathlib.Path(root)
        if not sync_root.is_absolute():
            raise ValueError("Folio root must be an absolute path")
        self._root = sync_root.resolve()
        self._custom_store = store
        self._config: FolioConfig | None = None
        self._opened = False

        try:
            self._config = import_config(self._root)
        except FileNotFoundError:
            # config not found is fine, user will need to init a new folio
            pass

    def init(self, **config: Any) -> None:
        """Initialize a new folio in `root`, which must either be an empty or
        non-existent directory.

        Parameters:
            **config: Overrides of [`FolioConfig`][foliocas.config.FolioConfig]
                defaults.
        """
        self._root.mkdir(parents=True, exist_ok=True)
        for _ in self._root.iterdir():
            raise FileExistsError("Folio directory must be empty for initialization")

        folio_config = FolioConfig.from_dict(config)
        write_config(self._root, folio_config)
        self._config = folio_config

        if self._custom_store is None:
            TreeStore(self._store_root).init()

    @property
    def root(self) -> str:
        return str(self._root)

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def config(self) -> FolioConfig:
        if self._config is None:
            raise RuntimeError(f"No folio initialized in {self._root}")
        return self._config

    @property
    def _store_root(self) -> pathlib.Path:
        return self._root.joinpath("store")

    @property
    def _workspace_root(self) -> pathlib.Path:
        return self._root.joinpath("workspaces")

    async def open(self) -> Folio:
        """Load persisted state and wire up the components."""
        config = self.config
        store = self._custom_store or TreeStore(self._store_root)

        self.state = FolioState(self._root)
        await self.state.load()

        self.ledger = QuotaLedger(config.quota_policy, config.quota_tolerance)
        self.engine = MutationEngine(
            self.state,
            store,
            self.ledger,
            self._workspace_root,
            config.store_timeout,
            config.default_quota_limit,
        )
        self.sites = DirectSites(
            self.state, store, self._workspace_root, config.store_timeout
        )
        self.locator = Locator(self.state, store, config.tree_max_depth)
        self.store = store
        self._opened = True

        logger.info("Opened folio at %s", self._root)
        return self

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("Folio must be opened before use")

    async def mutate(
        self,
        alias: str,
        edit_kind: EditKind | str,
        payload: EditPayload | None = None,
        caller: str | None = None,
    ) -> MutationResult:
        """See [`MutationEngine.mutate()`][foliocas.engine.MutationEngine.mutate]."""
        self._require_open()
        return await self.engine.mutate(alias, edit_kind, payload, caller)

    async def create_folder(
        self, alias: str, quota_limit: int | None = None
    ) -> MutationResult:
        return await self.mutate(
            alias, EditKind.CREATE_FOLDER, EditPayload(quota_limit=quota_limit)
        )

    async def put_website(
        self,
        alias: str,
        name: str,
        files: dict[str, FileContent],
        metadata: dict | None = None,
        encoding: str = "utf8",
    ) -> MutationResult:
        return await self.mutate(
            alias,
            EditKind.PUT_WEBSITE,
            EditPayload(name=name, files=files, metadata=metadata or {}, encoding=encoding),
        )

    async def put_archive_website(
        self,
        alias: str,
        name: str,
        files: dict[str, FileContent],
        archive_name: str,
        metadata: dict | None = None,
        encoding: str = "utf8",
    ) -> MutationResult:
        """Publish a website whose files were extracted from `archive_name`."""
        return await self.mutate(
            alias,
            EditKind.PUT_ARCHIVE_WEBSITE,
            EditPayload(
                name=name,
                files=files,
                metadata=metadata or {},
                encoding=encoding,
                archive_name=archive_name,
            ),
        )

    async def put_file(
        self, alias: str, name: str, content: FileContent, encoding: str = "utf8"
    ) -> MutationResult:
        return await self.mutate(
            alias,
            EditKind.PUT_FILE,
            EditPayload(name=name, files={name: content}, encoding=encoding),
        )

    async def delete_entry(self, alias: str, kind: EntryKind, name: str) -> MutationResult:
        return await self.mutate(
            alias, EditKind.DELETE_ENTRY, EditPayload(name=name, kind=kind)
        )

    async def delete_all_entries(self, alias: str) -> MutationResult:
        return await self.mutate(alias, EditKind.DELETE_ALL_ENTRIES)

    def resolve_live(self, alias: str) -> str:
        self._require_open()
        return self.locator.resolve_live(alias)

    def resolve_historical(self, snapshot_id: str) -> str:
        self._require_open()
        return self.locator.resolve_historical(snapshot_id)

    def locate_site(self, name: str) -> SiteLocation:
        self._require_open()
        return self.locator.locate_site(name)

    async def fetch(self, snapshot_id: str, relpath: str) -> bytes:
        self._require_open()
        return await self.locator.fetch(snapshot_id, relpath)

    async def fetch_site(self, name: str, path: str = "index.html") -> bytes:
        self._require_open()
        return await self.locator.fetch_site(name, path)

    async def tree(self, snapshot_id: str, max_depth: int | None = None) -> Any:
        self._require_open()
        return await self.locator.tree(snapshot_id, max_depth)

    def list_entries(self, alias: str, kind: EntryKind | None = None) -> list[FolderEntry]:
        self._require_open()
        return self.locator.list_entries(alias, kind)

    def history(self, alias: str) -> list[HistoryRecord]:
        self._require_open()
        return self.locator.folder_history(alias)

    def site_versions(self, name: str) -> list[VersionRecord | HistoryRecord]:
        self._require_open()
        return self.locator.site_versions(name)

    def check_and_reserve(self, alias: str, nbytes: int) -> QuotaCheck:
        self._require_open()
        return self.ledger.check_and_reserve(self.state.account(alias), nbytes)

    def recompute(self, alias: str) -> int:
        self._require_open()
        return self.ledger.recompute(
            self.state.account(alias), self.state.directory.list_entries(alias)
        )

    async def reconcile_quota(self, alias: str) -> int:
        self._require_open()
        return await self.engine.reconcile_quota(alias)

    async def publish_site(
        self,
        owner: str,
        name: str,
        files: dict[str, FileContent],
        metadata: dict | None = None,
        encoding: str = "utf8",
    ) -> SiteRecord:
        """Publish a direct site, see [`DirectSites`][foliocas.sites.DirectSites]."""
        self._require_open()
        return await self.sites.publish(owner, name, files, metadata, encoding)

    def stats(self) -> dict:
        self._require_open()
        return self.locator.stats()
