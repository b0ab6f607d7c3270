"""Diff engine comparing extracted records against a remote snapshot."""
import logging
from typing import Dict, Iterable, List, Optional, Set

from sync.errors import ClassifiedError
from sync.models import (
    Change,
    ChangeKind,
    ChangeSet,
    RecordKey,
    SnapshotWindow,
    SourceRecord,
)

logger = logging.getLogger(__name__)


class DiffEngine:
    """Compute the ordered change set that brings the remote store in line."""

    def diff(
        self,
        extracted: Iterable[SourceRecord],
        snapshot: Iterable[SourceRecord],
        windows: Optional[Iterable[SnapshotWindow]] = None,
        source: str = '<memory>'
    ) -> ChangeSet:
        """
        Compare freshly extracted records with the remote store's state.

        Keys present only in extracted become inserts, keys in both with
        different slot counts become updates (whole-record replace), and keys
        present only in the snapshot become deletes when they fall inside one
        of the covered windows. The result is ordered insert, update, delete,
        each group by key ascending.

        Args:
            extracted: Records extracted from one source file
            snapshot: Records currently held by the remote store
            windows: Partition/year windows the source claims to cover;
                defaults to the windows of the extracted records
            source: Name of the source, used in log and error messages

        Returns:
            ChangeSet with deterministic ordering

        Raises:
            ClassifiedError: If extracted contains the same key twice
        """
        new_records = self._index(extracted, source, reject_duplicates=True)
        existing_records = self._index(snapshot, 'remote snapshot', reject_duplicates=False)

        if windows is None:
            covered: Set[SnapshotWindow] = {record.window for record in new_records.values()}
        else:
            covered = set(windows)

        changes: List[Change] = []

        for key, record in new_records.items():
            previous = existing_records.get(key)
            if previous is None:
                changes.append(Change(ChangeKind.INSERT, key, None, record))
            elif previous.slots != record.slots:
                changes.append(Change(ChangeKind.UPDATE, key, previous, record))

        for key, previous in existing_records.items():
            if key not in new_records and previous.window in covered:
                changes.append(Change(ChangeKind.DELETE, key, previous, None))

        changes.sort(key=lambda change: change.sort_key)
        change_set = ChangeSet(tuple(changes))

        logger.info(
            f"Diff plan for {source}: {change_set.inserts} to insert, "
            f"{change_set.updates} to update, {change_set.deletes} to delete"
        )
        return change_set

    def _index(
        self,
        records: Iterable[SourceRecord],
        source: str,
        reject_duplicates: bool
    ) -> Dict[RecordKey, SourceRecord]:
        indexed: Dict[RecordKey, SourceRecord] = {}
        for record in records:
            if not record.is_resolved:
                logger.warning(
                    f"Dropping record with unresolved partition from {source}: "
                    f"{record.period}"
                )
                continue
            if record.key in indexed and reject_duplicates:
                raise ClassifiedError.source_format(
                    source, f"duplicate record for key {record.key}"
                )
            indexed[record.key] = record
        return indexed
