"""Data models for reservation extraction and synchronization."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from sync.errors import ClassifiedError

RecordKey = Tuple[int, int, int]

UNRESOLVED_PARTITION = 0


@dataclass(frozen=True)
class SnapshotWindow:
    """Partition/year range a source file claims to cover."""
    partition_key: int
    year: int

    @property
    def period_prefix(self) -> str:
        return f"{self.year:04d}-"


@dataclass(frozen=True)
class SourceRecord:
    """Reservation counts of one facility for one month."""
    partition_key: int
    year: int
    month: int
    slots: Tuple[Tuple[str, int], ...]

    @classmethod
    def build(
        cls,
        partition_key: int,
        year: int,
        month: int,
        counts: Mapping[str, int]
    ) -> 'SourceRecord':
        """
        Create a record from a slot -> count mapping.

        Args:
            partition_key: Facility identifier (0 means unresolved)
            year: Calendar year
            month: Calendar month (1-12)
            counts: Mapping of time slot to reservation count

        Returns:
            SourceRecord with slots normalized to a sorted tuple
        """
        if not 1 <= month <= 12:
            raise ValueError(f"month out of range: {month}")
        normalized = tuple(sorted((str(slot), int(count)) for slot, count in counts.items()))
        return cls(
            partition_key=int(partition_key),
            year=int(year),
            month=int(month),
            slots=normalized
        )

    @property
    def key(self) -> RecordKey:
        return (self.partition_key, self.year, self.month)

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def window(self) -> SnapshotWindow:
        return SnapshotWindow(self.partition_key, self.year)

    @property
    def is_resolved(self) -> bool:
        return self.partition_key > UNRESOLVED_PARTITION

    def counts(self) -> Dict[str, int]:
        return dict(self.slots)


class ChangeKind(str, Enum):
    """Kind of change applied to the remote store."""
    INSERT = 'insert'
    UPDATE = 'update'
    DELETE = 'delete'

    @property
    def rank(self) -> int:
        return _CHANGE_RANK[self]


_CHANGE_RANK = {ChangeKind.INSERT: 0, ChangeKind.UPDATE: 1, ChangeKind.DELETE: 2}


@dataclass(frozen=True)
class Change:
    """
    One operation against the remote store.

    Updates carry the whole before/after records; the store replaces the
    item rather than patching individual slots.
    """
    kind: ChangeKind
    key: RecordKey
    before: Optional[SourceRecord]
    after: Optional[SourceRecord]

    @property
    def sort_key(self) -> Tuple[int, RecordKey]:
        return (self.kind.rank, self.key)

    def changed_slots(self) -> List[Tuple[str, Optional[int], Optional[int]]]:
        """
        List the slots whose counts differ between before and after.

        Returns:
            Sorted list of (slot, before_count, after_count)
        """
        before = self.before.counts() if self.before else {}
        after = self.after.counts() if self.after else {}
        slots = sorted(set(before) | set(after))
        return [
            (slot, before.get(slot), after.get(slot))
            for slot in slots
            if before.get(slot) != after.get(slot)
        ]


@dataclass(frozen=True)
class ChangeSet:
    """Ordered changes produced by one diff computation."""
    changes: Tuple[Change, ...] = ()

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def count(self, kind: ChangeKind) -> int:
        return sum(1 for change in self.changes if change.kind is kind)

    @property
    def inserts(self) -> int:
        return self.count(ChangeKind.INSERT)

    @property
    def updates(self) -> int:
        return self.count(ChangeKind.UPDATE)

    @property
    def deletes(self) -> int:
        return self.count(ChangeKind.DELETE)


class TaskStatus(str, Enum):
    """Terminal status of one file task."""
    SUCCESS = 'success'
    SKIPPED_UNRESOLVED = 'skipped_unresolved'
    FAILED = 'failed'


class TaskState(str, Enum):
    """States of the per-file task state machine."""
    PENDING = 'pending'
    READING = 'reading'
    EXTRACTING = 'extracting'
    DIFFING = 'diffing'
    SYNCING = 'syncing'
    AUDIT_WRITING = 'audit_writing'
    RETRYING = 'retrying'
    DONE_SUCCESS = 'done_success'
    DONE_SKIPPED = 'done_skipped'
    DONE_FAILED = 'done_failed'

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.DONE_SUCCESS, TaskState.DONE_SKIPPED, TaskState.DONE_FAILED)


@dataclass
class TaskOutcome:
    """Result of processing one source file."""
    path: str
    status: TaskStatus
    records_processed: int = 0
    changes_applied: int = 0
    attempts: int = 0
    error: Optional[ClassifiedError] = None
    digest: Optional[str] = None
    change_set: ChangeSet = field(default_factory=ChangeSet)
    final_state: TaskState = TaskState.PENDING


@dataclass
class CycleSummary:
    """Aggregate result of one cycle, handed to notification and audit."""
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[TaskOutcome] = field(default_factory=list)
    fatal: bool = False
    cancelled: bool = False

    def _with_status(self, status: TaskStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def succeeded(self) -> int:
        return self._with_status(TaskStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return self._with_status(TaskStatus.SKIPPED_UNRESOLVED)

    @property
    def failed(self) -> int:
        return self._with_status(TaskStatus.FAILED)

    @property
    def changes_applied(self) -> int:
        return sum(outcome.changes_applied for outcome in self.outcomes)

    def _applied(self, kind: ChangeKind) -> int:
        return sum(
            outcome.change_set.count(kind)
            for outcome in self.outcomes
            if outcome.status is TaskStatus.SUCCESS
        )

    @property
    def inserts(self) -> int:
        return self._applied(ChangeKind.INSERT)

    @property
    def updates(self) -> int:
        return self._applied(ChangeKind.UPDATE)

    @property
    def deletes(self) -> int:
        return self._applied(ChangeKind.DELETE)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Return the counts as a JSON-serialisable dict."""
        return {
            'cycle_id': self.cycle_id,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'files': len(self.outcomes),
            'succeeded': self.succeeded,
            'skipped_unresolved': self.skipped,
            'failed': self.failed,
            'changes_applied': self.changes_applied,
            'inserts': self.inserts,
            'updates': self.updates,
            'deletes': self.deletes,
            'fatal': self.fatal,
            'cancelled': self.cancelled,
            'errors': [
                {'path': outcome.path, **outcome.error.to_dict()}
                for outcome in self.outcomes
                if outcome.error is not None
            ]
        }
