from __future__ import annotations

import pathlib
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class BlobEntry:
    """Address of one blob inside the object store.

    Attributes:
        checksum: Hexdigest of the blob's contents.
        path: **Absolute** path of the blob on disk.
        size: Size of the blob in bytes.
        is_duplicate: Whether an identical blob was already stored. Can only be
            `True` right after a put.
    """

    checksum: str
    path: str
    size: int = 0
    is_duplicate: bool = False

    def __post_init__(self) -> None:
        if not pathlib.Path(self.path).is_absolute():
            raise ValueError("Blob path must be an absolute path")


class NodeType(str, Enum):
    BLOB = "blob"
    TREE = "tree"


@dataclass(frozen=True)
class TreeChild:
    """One named child of a tree manifest."""

    name: str
    type: NodeType
    id: str
    size: int = 0

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type.value, "id": self.id, "size": self.size}

    @classmethod
    def from_dict(cls, data: dict) -> TreeChild:
        return cls(
            name=data["name"],
            type=NodeType(data["type"]),
            id=data["id"],
            size=data.get("size", 0),
        )
