"""Durable audit trail of every applied change."""
import csv
import json
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from sync.models import ChangeKind, ChangeSet, CycleSummary

logger = logging.getLogger(__name__)

CSV_HEADER = [
    'cycle_id',
    'source_file',
    'change_type',
    'facility_id',
    'year',
    'month',
    'slot',
    'before',
    'after',
    'recorded_at',
]


class AuditWriter:
    """
    Writer for per-cycle proof lists.

    File tasks hand their applied change sets over with stage(); append()
    writes everything staged for a cycle into one timestamped CSV and adds a
    summary line to an append-only JSON log.
    """

    PROOF_SUFFIX = '_proof.csv'
    LOG_NAME = 'audit_log.jsonl'

    def __init__(self, output_dir: str):
        """
        Initialize the writer.

        Args:
            output_dir: Directory receiving proof files and the audit log
        """
        self.output_dir = Path(output_dir)
        self._lock = threading.Lock()
        self._staged: Dict[str, List[Tuple[str, ChangeSet]]] = {}

    def stage(self, cycle_id: str, source_file: str, change_set: ChangeSet) -> None:
        """
        Hand over an applied change set for inclusion in the cycle record.

        Args:
            cycle_id: Cycle the change set belongs to
            source_file: File the changes were extracted from
            change_set: Changes applied to the remote store
        """
        with self._lock:
            self._staged.setdefault(cycle_id, []).append((source_file, change_set))

    def append(
        self,
        summary: CycleSummary,
        change_sets: Optional[Sequence[Tuple[str, ChangeSet]]] = None
    ) -> Path:
        """
        Persist the cycle's changes and summary.

        Args:
            summary: Summary of the finished cycle
            change_sets: (source_file, change_set) pairs; defaults to what
                was staged for summary.cycle_id

        Returns:
            Path of the proof CSV written for the cycle
        """
        with self._lock:
            staged = self._staged.pop(summary.cycle_id, [])
        entries = list(change_sets) if change_sets is not None else staged
        entries.sort(key=lambda entry: entry[0])

        self.output_dir.mkdir(parents=True, exist_ok=True)
        recorded_at = datetime.now()
        stamp = recorded_at.strftime('%Y%m%d_%H%M%S')
        proof_path = self.output_dir / f"{stamp}_{summary.cycle_id[:8]}{self.PROOF_SUFFIX}"

        rows = 0
        # BOM so that spreadsheet tools detect UTF-8
        with open(proof_path, 'w', encoding='utf-8-sig', newline='') as handle:
            writer = csv.writer(handle)
            writer.writerow(CSV_HEADER)
            for source_file, change_set in entries:
                for row in self._rows(summary.cycle_id, source_file, change_set, recorded_at):
                    writer.writerow(row)
                    rows += 1

        log_entry = dict(summary.to_dict(), proof_file=proof_path.name, proof_rows=rows)
        with self._lock:
            with open(self.output_dir / self.LOG_NAME, 'a', encoding='utf-8') as log_file:
                log_file.write(json.dumps(log_entry, ensure_ascii=False) + '\n')

        logger.info(f"Wrote proof list with {rows} rows: {proof_path}")
        return proof_path

    def prune(self, retention_days: int = 180) -> int:
        """
        Delete proof files and audit log entries older than the retention
        period.

        Args:
            retention_days: Age in days after which records are removed

        Returns:
            Number of proof files deleted
        """
        if not self.output_dir.is_dir():
            return 0

        cutoff = time.time() - retention_days * 86400
        deleted = 0
        for path in self.output_dir.glob(f"*{self.PROOF_SUFFIX}"):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                deleted += 1
                logger.info(f"Deleted expired proof list: {path}")

        self._prune_log(datetime.fromtimestamp(cutoff))
        return deleted

    def _prune_log(self, cutoff: datetime) -> int:
        log_path = self.output_dir / self.LOG_NAME
        if not log_path.is_file():
            return 0

        with self._lock:
            with open(log_path, encoding='utf-8') as log_file:
                lines = log_file.readlines()
            kept = [line for line in lines if not self._expired(line, cutoff)]
            if len(kept) == len(lines):
                return 0
            temp_path = log_path.with_name(log_path.name + '.tmp')
            with open(temp_path, 'w', encoding='utf-8') as log_file:
                log_file.writelines(kept)
            temp_path.replace(log_path)

        removed = len(lines) - len(kept)
        logger.info(f"Removed {removed} expired entries from {log_path.name}")
        return removed

    @staticmethod
    def _expired(line: str, cutoff: datetime) -> bool:
        # unparsable lines are kept
        try:
            started_at = datetime.fromisoformat(json.loads(line)['started_at'])
        except (ValueError, KeyError, TypeError):
            return False
        return started_at < cutoff

    def _rows(
        self,
        cycle_id: str,
        source_file: str,
        change_set: ChangeSet,
        recorded_at: datetime
    ) -> List[list]:
        rows = []
        timestamp = recorded_at.strftime('%Y-%m-%d %H:%M:%S')
        for change in change_set:
            partition_key, year, month = change.key
            slots = change.changed_slots()
            if change.kind is ChangeKind.UPDATE and not slots:
                continue
            for slot, before, after in slots:
                rows.append([
                    cycle_id,
                    source_file,
                    change.kind.value,
                    partition_key,
                    year,
                    month,
                    slot,
                    '' if before is None else before,
                    '' if after is None else after,
                    timestamp,
                ])
        return rows
