"""Index of what every folder currently contains, and of public site names."""

from __future__ import annotations

from dataclasses import dataclass, field

from foliocas.errors import AlreadyExists, NotFound
from foliocas.models import EntryKind, FolderEntry, SiteRecord


@dataclass
class FolderContents:
    """Entries of one folder, one name-keyed table per entry kind."""

    files: dict[str, FolderEntry] = field(default_factory=dict)
    websites: dict[str, FolderEntry] = field(default_factory=dict)
    archive_websites: dict[str, FolderEntry] = field(default_factory=dict)

    def for_kind(self, kind: EntryKind) -> dict[str, FolderEntry]:
        match kind:
            case EntryKind.FILE:
                return self.files
            case EntryKind.WEBSITE:
                return self.websites
            case EntryKind.ARCHIVE_WEBSITE:
                return self.archive_websites
        raise ValueError(f"Unknown entry kind {kind}")

    def all_entries(self) -> list[FolderEntry]:
        return [
            entry
            for kind in EntryKind
            for entry in sorted(self.for_kind(kind).values(), key=lambda e: e.name)
        ]

    def to_dict(self) -> dict:
        return {
            kind.value: [entry.to_dict() for entry in self.for_kind(kind).values()]
            for kind in EntryKind
        }

    @classmethod
    def from_dict(cls, data: dict) -> FolderContents:
        contents = cls()
        for kind in EntryKind:
            table = contents.for_kind(kind)
            for raw in data.get(kind.value, []):
                entry = FolderEntry.from_dict(raw)
                table[entry.name] = entry
        return contents


class FolderDirectory:
    """Folder entries per account and site records per site name.

    Entry names are unique per `(account, kind)` and site names are unique
    globally; both are enforced here.
    """

    def __init__(self) -> None:
        self._folders: dict[str, FolderContents] = {}
        self._sites: dict[str, SiteRecord] = {}

    def has_folder(self, alias: str) -> bool:
        return alias in self._folders

    def create_folder(self, alias: str) -> FolderContents:
        if alias in self._folders:
            raise AlreadyExists(f"Account {alias} already has a folder")
        contents = self._folders[alias] = FolderContents()
        return contents

    def folder(self, alias: str) -> FolderContents:
        try:
            return self._folders[alias]
        except KeyError:
            raise NotFound(f"Account {alias} has no folder") from None

    def get_entry(self, alias: str, kind: EntryKind, name: str) -> FolderEntry | None:
        return self.folder(alias).for_kind(kind).get(name)

    def add_entry(self, alias: str, entry: FolderEntry) -> FolderEntry | None:
        """Add `entry`, replacing the same-named entry of the same kind.

        Returns:
            The replaced entry, if there was one.
        """
        table = self.folder(alias).for_kind(entry.kind)
        replaced = table.get(entry.name)
        table[entry.name] = entry
        return replaced

    def remove_entry(self, alias: str, kind: EntryKind, name: str) -> FolderEntry:
        table = self.folder(alias).for_kind(kind)
        try:
            return table.pop(name)
        except KeyError:
            raise NotFound(f"No {kind.value} named {name!r} in {alias}'s folder") from None

    def clear_entries(self, alias: str) -> list[FolderEntry]:
        contents = self.folder(alias)
        removed = contents.all_entries()
        for kind in EntryKind:
            contents.for_kind(kind).clear()
        return removed

    def list_entries(self, alias: str, kind: EntryKind | None = None) -> list[FolderEntry]:
        contents = self.folder(alias)
        if kind is None:
            return contents.all_entries()
        return sorted(contents.for_kind(kind).values(), key=lambda e: e.name)

    def counts_by_kind(self, alias: str) -> dict[EntryKind, int]:
        contents = self.folder(alias)
        return {kind: len(contents.for_kind(kind)) for kind in EntryKind}

    def roster(self, alias: str) -> dict[str, list[str]]:
        """Entry names by kind, as recorded in history."""
        contents = self.folder(alias)
        return {kind.value: sorted(contents.for_kind(kind)) for kind in EntryKind}

    def total_size(self, alias: str) -> int:
        return sum(entry.size for entry in self.folder(alias).all_entries())

    def entry_count(self) -> int:
        return sum(len(contents.all_entries()) for contents in self._folders.values())

    def find_site(self, name: str) -> SiteRecord | None:
        return self._sites.get(name)

    def get_site(self, name: str) -> SiteRecord:
        try:
            return self._sites[name]
        except KeyError:
            raise NotFound(f"Site {name!r} not found") from None

    def claim_site_name(self, name: str, owner: str) -> SiteRecord | None:
        """Check that `owner` may publish under `name`.

        Returns:
            The existing record owned by `owner`, if any.

        Raises:
            AlreadyExists: If another account owns the name.
        """
        record = self._sites.get(name)
        if record is not None and record.owner != owner:
            raise AlreadyExists(f"Site name {name!r} is already taken by another user")
        return record

    def put_site(self, record: SiteRecord) -> None:
        self._sites[record.name] = record

    def drop_site(self, name: str) -> SiteRecord | None:
        return self._sites.pop(name, None)

    def sites(self) -> list[SiteRecord]:
        return sorted(self._sites.values(), key=lambda r: r.name)

    def sites_owned_by(self, owner: str) -> list[SiteRecord]:
        return [record for record in self.sites() if record.owner == owner]

    def to_dict(self) -> dict:
        return {
            "folders": {alias: c.to_dict() for alias, c in self._folders.items()},
            "sites": {name: r.to_dict() for name, r in self._sites.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> FolderDirectory:
        directory = cls()
        for alias, raw in data.get("folders", {}).items():
            directory._folders[alias] = FolderContents.from_dict(raw)
        for name, raw in data.get("sites", {}).items():
            directory._sites[name] = SiteRecord.from_dict(raw)
        return directory
