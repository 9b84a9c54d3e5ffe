"""
Unit tests for retention policy evaluation (dbshelf/backup/retention.py).

Tests each rule on its own and their union through apply_retention.
"""

from datetime import datetime

import pytest
from freezegun import freeze_time

from dbshelf.backup.naming import filter_backups
from dbshelf.backup.retention import (
    BYTES_PER_MB,
    apply_retention,
    keep_days,
    keep_last,
    max_size,
)
from dbshelf.models import RemoteFile, RetentionRules


MB = BYTES_PER_MB


def _names(files):
    return [f.name for f in files]


class TestKeepLast:
    """Test the keep-last-N rule."""

    def test_keep_last_three_of_five(self, make_backups):
        """Five daily backups with KeepLast=3 delete the two oldest."""
        files = make_backups('mydb', [
            ('20240101_000000', 1),
            ('20240102_000000', 1),
            ('20240103_000000', 1),
            ('20240104_000000', 1),
            ('20240105_000000', 1),
        ])

        result = apply_retention(files, 'mydb', RetentionRules(keep_last=3))

        assert _names(result) == ['mydb_20240102_000000.db', 'mydb_20240101_000000.db']

    def test_fewer_files_than_limit(self, make_backups):
        files = make_backups('mydb', [('20240101_000000', 1), ('20240102_000000', 1)])

        assert apply_retention(files, 'mydb', RetentionRules(keep_last=3)) == []

    def test_pending_backups_reserve_slots(self, make_backups):
        """Test one pending backup keeps one fewer existing file."""
        files = make_backups('mydb', [
            ('20240101_000000', 1),
            ('20240102_000000', 1),
            ('20240103_000000', 1),
        ])

        result = apply_retention(files, 'mydb', RetentionRules(keep_last=3), pending_backups=1)

        assert _names(result) == ['mydb_20240101_000000.db']

    def test_pending_never_goes_negative(self, make_backups):
        files = make_backups('mydb', [('20240101_000000', 1), ('20240102_000000', 1)])

        result = apply_retention(files, 'mydb', RetentionRules(keep_last=1), pending_backups=5)

        assert len(result) == 2

    def test_helper_on_sorted_input(self, make_backups):
        files = filter_backups(
            make_backups('mydb', [('20240101_000000', 1), ('20240102_000000', 1)]),
            'mydb'
        )

        assert _names(keep_last(files, 1)) == ['mydb_20240101_000000.db']
        assert keep_last(files, 2) == []


class TestKeepDays:
    """Test the keep-days rule."""

    @freeze_time("2024-01-20")
    def test_keep_days_five(self, make_backups):
        """Backups 1, 3, 7 and 10 days old with KeepDays=5 delete the 7 and 10 day ones."""
        files = make_backups('mydb', [
            ('20240119_000000', 1),
            ('20240117_000000', 1),
            ('20240113_000000', 1),
            ('20240110_000000', 1),
        ])

        result = apply_retention(files, 'mydb', RetentionRules(keep_days=5))

        assert _names(result) == ['mydb_20240113_000000.db', 'mydb_20240110_000000.db']

    def test_explicit_now(self, make_backups):
        files = filter_backups(make_backups('mydb', [('20240101_000000', 1)]), 'mydb')

        assert keep_days(files, 1, now=datetime(2024, 1, 1, 12)) == []
        assert len(keep_days(files, 1, now=datetime(2024, 1, 3))) == 1

    @freeze_time("2024-01-20")
    def test_uses_embedded_timestamp_not_mtime(self):
        files = [RemoteFile('mydb_20240101_000000.sql', 1, modified=datetime(2024, 1, 20))]

        result = apply_retention(files, 'mydb', RetentionRules(keep_days=5))

        assert len(result) == 1


class TestMaxSize:
    """Test the total-size cap."""

    def test_max_size_twelve_mb(self, make_backups):
        """Four 5 MB backups with MaxSizeMB=12 delete the two oldest."""
        files = make_backups('mydb', [
            ('20240101_000000', 5 * MB),
            ('20240102_000000', 5 * MB),
            ('20240103_000000', 5 * MB),
            ('20240104_000000', 5 * MB),
        ])

        result = apply_retention(files, 'mydb', RetentionRules(max_size_mb=12))

        assert _names(result) == ['mydb_20240102_000000.db', 'mydb_20240101_000000.db']

    def test_exactly_at_cap_is_kept(self, make_backups):
        files = filter_backups(
            make_backups('mydb', [('20240101_000000', 5 * MB), ('20240102_000000', 5 * MB)]),
            'mydb'
        )

        assert max_size(files, 10) == []

    def test_everything_older_than_overflow_deleted(self, make_backups):
        """Test a small old file is still deleted once the cap is passed."""
        files = filter_backups(make_backups('mydb', [
            ('20240101_000000', 1),
            ('20240102_000000', 20 * MB),
            ('20240103_000000', 1 * MB),
        ]), 'mydb')

        assert _names(max_size(files, 10)) == ['mydb_20240102_000000.db', 'mydb_20240101_000000.db']


class TestApplyRetention:
    """Test rule combination and filtering."""

    def test_no_rules(self, make_backups):
        files = make_backups('mydb', [('20240101_000000', 1)])

        assert apply_retention(files, 'mydb', RetentionRules()) == []

    @freeze_time("2024-01-20")
    def test_union_of_rules(self, make_backups):
        """Test a file marked by any rule is deleted, once."""
        files = make_backups('mydb', [
            ('20240119_000000', 8 * MB),
            ('20240118_000000', 8 * MB),
            ('20240117_000000', 1 * MB),
            ('20240101_000000', 1 * MB),
        ])
        rules = RetentionRules(keep_last=3, keep_days=10, max_size_mb=10)

        result = apply_retention(files, 'mydb', rules)

        # keep_last and keep_days both mark the oldest; max_size marks the last three
        assert _names(result) == [
            'mydb_20240118_000000.db',
            'mydb_20240117_000000.db',
            'mydb_20240101_000000.db',
        ]

    @freeze_time("2024-01-20")
    @pytest.mark.parametrize('rules', [
        RetentionRules(keep_last=2),
        RetentionRules(keep_days=3),
        RetentionRules(max_size_mb=2),
    ])
    def test_union_contains_each_rule(self, make_backups, rules):
        files = make_backups('mydb', [
            ('20240119_000000', 1 * MB),
            ('20240118_000000', 1 * MB),
            ('20240116_000000', 1 * MB),
            ('20240110_000000', 1 * MB),
        ])
        combined = RetentionRules(keep_last=2, keep_days=3, max_size_mb=2)

        single = set(_names(apply_retention(files, 'mydb', rules)))
        union = set(_names(apply_retention(files, 'mydb', combined)))

        assert single <= union

    def test_other_databases_and_foreign_files_untouched(self, make_backups):
        files = (
            make_backups('mydb', [('20240101_000000', 1), ('20240102_000000', 1)])
            + make_backups('other', [('20231201_000000', 1)])
            + [RemoteFile('notes.txt', 1), RemoteFile('mydb.sql', 1)]
        )

        result = apply_retention(files, 'mydb', RetentionRules(keep_last=1))

        assert _names(result) == ['mydb_20240101_000000.db']

    def test_empty_listing(self):
        assert apply_retention([], 'mydb', RetentionRules(keep_last=1)) == []
