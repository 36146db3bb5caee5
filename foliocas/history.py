from __future__ import annotations

from typing import Iterable

from foliocas.models import HistoryRecord


class HistoryLog:
    """Append-only list of committed mutations per account."""

    def __init__(self) -> None:
        self._records: dict[str, list[HistoryRecord]] = {}

    def append(
        self,
        alias: str,
        new_id: str,
        previous_id: str | None,
        action: str,
        roster: dict[str, list[str]],
        subject: str | None = None,
    ) -> HistoryRecord:
        records = self._records.setdefault(alias, [])
        record = HistoryRecord(
            sequence=len(records) + 1,
            new_id=new_id,
            previous_id=previous_id,
            action=action,
            roster=roster,
            subject=subject,
        )
        records.append(record)
        return record

    def records(self, alias: str) -> list[HistoryRecord]:
        return list(self._records.get(alias, ()))

    def latest(self, alias: str) -> HistoryRecord | None:
        records = self._records.get(alias)
        return records[-1] if records else None

    def next_sequence(self, alias: str) -> int:
        return len(self._records.get(alias, ())) + 1

    def lineage(self, alias: str) -> list[str]:
        """Every snapshot id that was ever current for `alias`, oldest first."""
        seen: dict[str, None] = {}
        for record in self._records.get(alias, ()):
            if record.previous_id is not None:
                seen.setdefault(record.previous_id)
            seen.setdefault(record.new_id)
        return list(seen)

    def mentioning(self, alias: str, path: str) -> list[HistoryRecord]:
        """Records of mutations that touched the entry at `path`."""
        return [r for r in self._records.get(alias, ()) if r.subject == path]

    def to_dict(self) -> dict:
        return {
            alias: [record.to_dict() for record in records]
            for alias, records in self._records.items()
        }

    @classmethod
    def from_dict(cls, data: dict) -> HistoryLog:
        log = cls()
        for alias, raw_records in data.items():
            log._records[alias] = [HistoryRecord.from_dict(raw) for raw in raw_records]
        return log


class RedirectTable:
    """Maps any snapshot id ever issued to the id that is live now.

    Ids that were never rewritten resolve to themselves.
    """

    def __init__(self) -> None:
        self._redirects: dict[str, str] = {}

    def rewrite(self, snapshot_ids: Iterable[str], new_id: str) -> None:
        """Point every id in `snapshot_ids`, and `new_id` itself, at `new_id`."""
        for snapshot_id in snapshot_ids:
            self._redirects[snapshot_id] = new_id
        self._redirects[new_id] = new_id

    def resolve(self, snapshot_id: str) -> str:
        return self._redirects.get(snapshot_id, snapshot_id)

    def __contains__(self, snapshot_id: str) -> bool:
        return snapshot_id in self._redirects

    def __len__(self) -> int:
        return len(self._redirects)

    def to_dict(self) -> dict:
        return dict(self._redirects)

    @classmethod
    def from_dict(cls, data: dict) -> RedirectTable:
        table = cls()
        table._redirects.update(data)
        return table
