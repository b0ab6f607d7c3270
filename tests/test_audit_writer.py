"""Unit tests for AuditWriter."""
import csv
import json
import os
import time
from datetime import datetime, timedelta

import pytest

from storage.audit_writer import CSV_HEADER, AuditWriter
from sync.models import Change, ChangeKind, ChangeSet, CycleSummary, SourceRecord, TaskOutcome, TaskStatus


@pytest.fixture
def writer(tmp_path):
    """Create an AuditWriter below tmp_path."""
    return AuditWriter(str(tmp_path / 'proofs'))


@pytest.fixture
def change_set():
    """Create a change set with one change of each kind."""
    inserted = SourceRecord.build(7, 2024, 1, {'01': 2, '02': 0})
    before = SourceRecord.build(7, 2024, 2, {'01': 1, '02': 3})
    after = SourceRecord.build(7, 2024, 2, {'01': 1, '02': 4})
    deleted = SourceRecord.build(7, 2024, 3, {'01': 6})
    return ChangeSet((
        Change(ChangeKind.INSERT, inserted.key, None, inserted),
        Change(ChangeKind.UPDATE, before.key, before, after),
        Change(ChangeKind.DELETE, deleted.key, deleted, None),
    ))


def make_summary(cycle_id='0123456789abcdef'):
    return CycleSummary(
        cycle_id=cycle_id,
        started_at=datetime(2024, 1, 15, 9, 0, 0),
        finished_at=datetime(2024, 1, 15, 9, 0, 3),
        outcomes=[TaskOutcome(path='/share/ふじみの.xlsm', status=TaskStatus.SUCCESS)]
    )


def read_rows(path):
    with open(path, encoding='utf-8-sig', newline='') as handle:
        return list(csv.reader(handle))


def test_append_writes_proof_rows(writer, change_set):
    """Test one row per changed slot with the staged change sets."""
    summary = make_summary()
    writer.stage(summary.cycle_id, '/share/ふじみの.xlsm', change_set)

    proof = writer.append(summary)

    assert proof.name.endswith('_01234567_proof.csv')
    rows = read_rows(proof)
    assert rows[0] == CSV_HEADER
    body = rows[1:]
    # insert: 2 slots, update: 1 changed slot, delete: 1 slot
    assert len(body) == 4
    assert [row[2] for row in body] == ['insert', 'insert', 'update', 'delete']
    update_row = body[2]
    assert update_row[3:9] == ['7', '2024', '2', '02', '3', '4']
    delete_row = body[3]
    assert delete_row[7:9] == ['6', '']


def test_proof_file_has_bom(writer, change_set):
    """Test that spreadsheet tools can detect the encoding."""
    summary = make_summary()
    proof = writer.append(summary, [('/share/ふじみの.xlsm', change_set)])

    assert proof.read_bytes().startswith(b'\xef\xbb\xbf')


def test_append_logs_cycle_summary(writer):
    """Test the JSON line appended per cycle."""
    writer.append(make_summary('cycle-a'))
    writer.append(make_summary('cycle-b'))

    lines = (writer.output_dir / 'audit_log.jsonl').read_text(encoding='utf-8').splitlines()
    entries = [json.loads(line) for line in lines]

    assert [entry['cycle_id'] for entry in entries] == ['cycle-a', 'cycle-b']
    assert entries[0]['succeeded'] == 1
    assert entries[0]['proof_rows'] == 0
    assert entries[0]['proof_file'].endswith('_proof.csv')


def test_staged_entries_are_per_cycle(writer, change_set):
    """Test that staging for one cycle does not leak into another."""
    writer.stage('cycle-a', '/share/a.xlsm', change_set)
    writer.stage('cycle-b', '/share/b.xlsm', change_set)

    rows_a = read_rows(writer.append(make_summary('cycle-a')))
    rows_again = read_rows(writer.append(make_summary('cycle-a')))

    assert {row[1] for row in rows_a[1:]} == {'/share/a.xlsm'}
    assert len(rows_again) == 1


def test_prune_removes_expired_files(writer, tmp_path):
    """Test retention based cleanup."""
    writer.output_dir.mkdir(parents=True)
    old = writer.output_dir / '20230101_000000_aaaaaaaa_proof.csv'
    recent = writer.output_dir / '20240101_000000_bbbbbbbb_proof.csv'
    log = writer.output_dir / 'audit_log.jsonl'
    for path in (old, recent, log):
        path.write_text('x')
    expired = time.time() - 200 * 86400
    os.utime(old, (expired, expired))
    os.utime(log, (expired, expired))

    deleted = writer.prune(retention_days=180)

    assert deleted == 1
    assert not old.exists()
    assert recent.exists()
    assert log.exists()


def test_prune_without_directory(tmp_path):
    """Test that pruning a missing directory is a no-op."""
    assert AuditWriter(str(tmp_path / 'none')).prune() == 0


def test_prune_drops_expired_log_entries(writer):
    """Test that the JSON log keeps only entries inside the retention period."""
    writer.output_dir.mkdir(parents=True)
    log = writer.output_dir / 'audit_log.jsonl'
    entries = [
        {'cycle_id': 'old', 'started_at': (datetime.now() - timedelta(days=200)).isoformat()},
        {'cycle_id': 'recent', 'started_at': (datetime.now() - timedelta(days=10)).isoformat()},
    ]
    log.write_text(
        ''.join(json.dumps(entry) + '\n' for entry in entries) + 'not json\n',
        encoding='utf-8'
    )

    writer.prune(retention_days=180)
    writer.append(make_summary('after-prune'))

    lines = log.read_text(encoding='utf-8').splitlines()
    assert json.loads(lines[0])['cycle_id'] == 'recent'
    assert lines[1] == 'not json'
    assert json.loads(lines[2])['cycle_id'] == 'after-prune'
    assert not (writer.output_dir / 'audit_log.jsonl.tmp').exists()
