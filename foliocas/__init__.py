# -*- coding: utf-8 -*-
"""foliocas gives every account one mutable folder of published content
(websites, archive-built websites, files) that is stored as a chain of
immutable, content-addressed snapshots.

Every edit produces a new snapshot. Links and ids handed out for older
snapshots keep resolving to the live one, and site names keep pointing at
their entry inside the owner's current snapshot.
"""

from .errors import (
    AccessDenied,
    AlreadyExists,
    Corrupt,
    FolioError,
    NotFound,
    QuotaExceeded,
    StoreUnavailable,
)
from .folio import Folio
from .models import EditKind, EditPayload, EntryKind
from .quota import QuotaPolicy
from .tree_store import ContentStore, TreeStore

__all__ = (
    "AccessDenied",
    "AlreadyExists",
    "ContentStore",
    "Corrupt",
    "EditKind",
    "EditPayload",
    "EntryKind",
    "Folio",
    "FolioError",
    "NotFound",
    "QuotaExceeded",
    "QuotaPolicy",
    "StoreUnavailable",
    "TreeStore",
)
