"""Records kept by the folio.

Everything here is plain data. Which component is allowed to change what is
decided by the engine, not by these classes.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

FileContent = str | bytes


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntryKind(str, Enum):
    """What a folder entry is. Each kind lives in its own sub-tree."""

    WEBSITE = "website"
    ARCHIVE_WEBSITE = "archive-website"
    FILE = "file"

    @property
    def folder(self) -> str:
        return _KIND_FOLDERS[self]

    @property
    def is_website(self) -> bool:
        return self is not EntryKind.FILE

    def path_of(self, name: str) -> str:
        """Path of entry `name` relative to the folder root."""
        return f"{self.folder}/{name}"


_KIND_FOLDERS = {
    EntryKind.WEBSITE: "websites",
    EntryKind.ARCHIVE_WEBSITE: "zip-websites",
    EntryKind.FILE: "files",
}


class EditKind(str, Enum):
    CREATE_FOLDER = "create-folder"
    PUT_WEBSITE = "add-website"
    PUT_ARCHIVE_WEBSITE = "add-archive-website"
    PUT_FILE = "add-file"
    DELETE_ENTRY = "delete-entry"
    DELETE_ALL_ENTRIES = "delete-all-entries"

    @property
    def entry_kind(self) -> EntryKind | None:
        """Kind of entry an add-style edit writes, `None` for other edits."""
        return _PUT_KINDS.get(self)

    @property
    def is_put(self) -> bool:
        return self in _PUT_KINDS


_PUT_KINDS = {
    EditKind.PUT_WEBSITE: EntryKind.WEBSITE,
    EditKind.PUT_ARCHIVE_WEBSITE: EntryKind.ARCHIVE_WEBSITE,
    EditKind.PUT_FILE: EntryKind.FILE,
}


class LocationKind(str, Enum):
    DIRECT = "direct"
    FOLDER = "folder"


def decode_content(content: FileContent, encoding: str = "utf8") -> bytes:
    """Turn an uploaded file body into bytes.

    `bytes` are taken as is. Text is UTF-8 encoded unless `encoding` is
    `"base64"`, in which case it's decoded.
    """
    if isinstance(content, bytes):
        return content

    if encoding == "base64":
        try:
            return base64.b64decode(content, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"Invalid base64 content: {exc}") from None

    if encoding not in ("utf8", "utf-8"):
        raise ValueError(f"Unsupported encoding {encoding!r}")

    return content.encode("utf-8")


@dataclass
class Account:
    """Owner of exactly one folder lineage.

    `current_id` is `None` until the folder is bootstrapped.
    """

    alias: str
    account_id: str
    quota_limit: int
    quota_used: int = 0
    current_id: str | None = None
    bootstrap_size: int = 0
    created: str = field(default_factory=utcnow)

    @property
    def quota_available(self) -> int:
        return max(self.quota_limit - self.quota_used, 0)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Account:
        return cls(**data)


@dataclass
class FolderEntry:
    """One published item of a folder."""

    kind: EntryKind
    name: str
    size: int
    created: str = field(default_factory=utcnow)
    updated: str | None = None
    files: list[str] = field(default_factory=list)
    archive_name: str | None = None

    @property
    def path(self) -> str:
        return self.kind.path_of(self.name)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> FolderEntry:
        return cls(**{**data, "kind": EntryKind(data["kind"])})


@dataclass(frozen=True)
class VersionRecord:
    """One version of a direct site."""

    version: int
    snapshot_id: str
    action: str
    timestamp: str = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> VersionRecord:
        return cls(**data)


@dataclass
class SiteRecord:
    """A globally unique site name and where its content lives.

    Direct sites hold a `snapshot_id` of their own. Folder-backed sites hold
    `(alias, path)` and are re-resolved through the owning folder every time.
    """

    name: str
    owner: str
    location: LocationKind
    snapshot_id: str | None = None
    alias: str | None = None
    path: str | None = None
    entry_kind: EntryKind | None = None
    created: str = field(default_factory=utcnow)
    updated: str = field(default_factory=utcnow)
    versions: list[VersionRecord] = field(default_factory=list)

    @property
    def is_folder_backed(self) -> bool:
        return self.location is LocationKind.FOLDER

    def to_dict(self) -> dict:
        data = asdict(self)
        data["location"] = self.location.value
        data["entry_kind"] = self.entry_kind.value if self.entry_kind else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SiteRecord:
        return cls(
            **{
                **data,
                "location": LocationKind(data["location"]),
                "entry_kind": EntryKind(data["entry_kind"])
                if data.get("entry_kind")
                else None,
                "versions": [VersionRecord.from_dict(v) for v in data.get("versions", [])],
            }
        )


@dataclass(frozen=True)
class HistoryRecord:
    """One committed folder mutation.

    Attributes:
        sequence: Per-account, strictly increasing, starting at 1.
        new_id: Snapshot id produced by the mutation.
        previous_id: Snapshot id the mutation started from, `None` at bootstrap.
        action: Human readable description.
        roster: Entry names present after the mutation, by entry kind.
        subject: Folder path of the entry the mutation touched, if any.
    """

    sequence: int
    new_id: str
    previous_id: str | None
    action: str
    roster: dict[str, list[str]]
    subject: str | None = None
    timestamp: str = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> HistoryRecord:
        return cls(**data)


@dataclass(frozen=True)
class SiteLocation:
    """Where to fetch a site from right now."""

    kind: LocationKind
    snapshot_id: str
    alias: str | None = None
    path: str = ""


@dataclass
class EditPayload:
    """Input of one mutation.

    Attributes:
        name: Entry (and, for websites, site) name.
        files: Relative path to content. For `add-file` this holds a single
            item whose key is ignored in favour of `name`.
        encoding: How `str` contents are encoded, `"utf8"` or `"base64"`.
        metadata: Extra fields merged into a website's `meta.json`.
        archive_name: Original archive file name of an archive website.
        kind: Entry kind targeted by `delete-entry`.
        quota_limit: Limit for `create-folder`; config default if `None`.
    """

    name: str | None = None
    files: dict[str, FileContent] = field(default_factory=dict)
    encoding: str = "utf8"
    metadata: dict = field(default_factory=dict)
    archive_name: str | None = None
    kind: EntryKind | None = None
    quota_limit: int | None = None

    def decoded_files(self) -> dict[str, bytes]:
        return {
            path: decode_content(content, self.encoding)
            for path, content in self.files.items()
        }


@dataclass(frozen=True)
class MutationResult:
    previous_id: str | None
    new_id: str
    quota_used: int
    sequence: int
    action: str

    def to_dict(self) -> dict:
        return asdict(self)
