"""Unit tests for reconciler module."""

from datetime import timedelta

import pytest

from conftest import NOW, csv_bytes
from edusense import store as collections
from edusense.models import AttendanceRow, FeeRow, StudentRow
from edusense.parsers import import_file
from edusense.reconciler import (
    Reconciler,
    attendance_percentage,
    derive_fee_status,
    reconcile,
)
from edusense.store import InMemoryStore


class FlakyStore(InMemoryStore):
    """Fails the nth attendance upsert."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def find_one_and_upsert(self, collection, filter, values):
        if collection == collections.ATTENDANCE:
            self.calls += 1
            if self.calls == self.fail_on:
                raise ConnectionError("write timed out")
        return super().find_one_and_upsert(collection, filter, values)


def attendance_rows(count, attended=15):
    return [
        AttendanceRow(
            row=i, student_id=f"STU{i:03d}", subject='Physics', month=9, year=2025,
            total_classes=20, attended_classes=attended,
        )
        for i in range(1, count + 1)
    ]


def fee_row(student_id='STU001', due_days=10, paid_days=None):
    due = NOW + timedelta(days=due_days)
    return FeeRow(
        row=1, student_id=student_id, amount=1500.0, due_date=due,
        paid_date=NOW + timedelta(days=paid_days) if paid_days is not None else None,
        semester=1, year=2025,
    )


def test_derive_fee_status():
    """Test paid wins, then overdue once the due date has passed."""
    assert derive_fee_status(NOW, NOW - timedelta(days=5), NOW) == 'paid'
    assert derive_fee_status(None, NOW - timedelta(days=5), NOW) == 'overdue'
    assert derive_fee_status(None, NOW + timedelta(days=5), NOW) == 'pending'
    assert derive_fee_status(None, NOW, NOW) == 'pending'


def test_attendance_percentage():
    assert attendance_percentage(14, 20) == pytest.approx(70.0)


def test_unknown_student_gets_placeholder(store, reconciler):
    """Attendance for an unseen student creates a placeholder and the record."""
    rows = [AttendanceRow(row=1, student_id='STU099', subject='Physics', month=9, year=2025,
                          total_classes=20, attended_classes=14)]

    result = reconciler.reconcile('attendance', rows)

    assert result.saved_count == 1
    assert result.errors == []
    assert result.placeholders_created == 1

    student = store.find_one(collections.STUDENTS, {'student_id': 'STU099'})
    assert student['is_placeholder'] is True
    assert student['name'] == 'Student STU099'
    assert student['email'] == 'STU099@placeholder.com'
    assert student['risk_level'] == 'low'

    record = store.find_one(collections.ATTENDANCE, {'student_ref': student['id']})
    assert record['attendance_percentage'] == pytest.approx(70.0)
    assert result.changes[0].student_ref == student['id']


def test_reconcile_is_idempotent(store, reconciler):
    rows = attendance_rows(3)

    reconciler.reconcile('attendance', rows)
    second = reconciler.reconcile('attendance', rows)

    assert second.saved_count == 3
    assert second.placeholders_created == 0
    assert store.count(collections.ATTENDANCE) == 3
    assert store.count(collections.STUDENTS) == 3


def test_upsert_replaces_values_for_same_key(store, reconciler):
    reconciler.reconcile('attendance', attendance_rows(1, attended=10))
    reconciler.reconcile('attendance', attendance_rows(1, attended=18))

    records = store.find(collections.ATTENDANCE)
    assert len(records) == 1
    assert records[0]['attended_classes'] == 18
    assert records[0]['attendance_percentage'] == pytest.approx(90.0)


def test_uploaded_percentage_is_recomputed(store, reconciler):
    """A percentage column in the file is ignored in favour of the counts."""
    data = csv_bytes(
        "studentId,subject,month,year,attendedClasses,totalClasses,attendancePercentage",
        "STU001,Physics,9,2025,10,20,99",
    )
    imported = import_file(data, "attendance.csv", "attendance")

    reconciler.reconcile('attendance', imported.records)

    record = store.find_one(collections.ATTENDANCE, {'subject': 'Physics'})
    assert record['attendance_percentage'] == pytest.approx(50.0)


def test_failed_record_does_not_abort_batch():
    """Record 5 fails to write; the other nine are saved."""
    store = FlakyStore(fail_on=5)

    result = Reconciler(store).reconcile('attendance', attendance_rows(10))

    assert result.saved_count == 9
    assert result.error_count == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Record 5 (STU005):")
    assert "write timed out" in result.errors[0]
    assert store.count(collections.ATTENDANCE) == 9


def test_reported_errors_are_capped():
    class BrokenStore(InMemoryStore):
        def find_one_and_upsert(self, collection, filter, values):
            if collection == collections.ATTENDANCE:
                raise ConnectionError("down")
            return super().find_one_and_upsert(collection, filter, values)

    result = Reconciler(BrokenStore(), max_reported_errors=3).reconcile('attendance', attendance_rows(8))

    assert result.saved_count == 0
    assert result.error_count == 8
    assert len(result.errors) == 3


def test_mismatched_kind_is_reported(reconciler):
    result = reconciler.reconcile('fees', attendance_rows(1))

    assert result.saved_count == 0
    assert "expected a fees record" in result.errors[0]


def test_student_upsert_clears_placeholder_and_keeps_score(store, reconciler):
    student_ref, created = reconciler.find_or_create_student('STU001')
    assert created is True
    store.update_by_id(collections.STUDENTS, student_ref, {'current_risk_score': 0.7, 'risk_level': 'high'})

    row = StudentRow(row=1, student_id='STU001', name='Asha Rao', email='asha@example.com',
                     course='B.Tech', year=2, semester=3, guardian_email='parent@example.com')
    result = reconciler.reconcile('students', [row])

    assert result.saved_count == 1
    student = store.find_by_id(collections.STUDENTS, student_ref)
    assert student['is_placeholder'] is False
    assert student['name'] == 'Asha Rao'
    assert student['guardian_email'] == 'parent@example.com'
    assert student['current_risk_score'] == 0.7
    assert student['risk_level'] == 'high'


def test_new_student_gets_default_risk(store, reconciler):
    row = StudentRow(row=1, student_id='STU010', name='Ben Ode', email='ben@example.com',
                     course='B.Sc', year=1, semester=1)

    reconciler.reconcile('students', [row])

    student = store.find_one(collections.STUDENTS, {'student_id': 'STU010'})
    assert student['current_risk_score'] == 0.0
    assert student['risk_level'] == 'low'


def test_fee_status_is_derived(store, reconciler):
    result = reconciler.reconcile('fees', [
        fee_row('STU001', due_days=-10, paid_days=-12),
        fee_row('STU002', due_days=-10),
        fee_row('STU003', due_days=10),
    ])

    statuses = {change.record['status'] for change in result.changes}
    assert statuses == {'paid', 'overdue', 'pending'}
    assert all(change.previous_status is None for change in result.changes)


def test_fee_change_carries_previous_status(reconciler):
    reconciler.reconcile('fees', [fee_row(due_days=10)])

    result = reconciler.reconcile('fees', [fee_row(due_days=-3)])

    change = result.changes[0]
    assert change.previous_status == 'pending'
    assert change.record['status'] == 'overdue'


def test_reconcile_can_be_cancelled(store, reconciler):
    calls = []

    def should_stop():
        calls.append(1)
        return len(calls) > 2

    result = reconciler.reconcile('attendance', attendance_rows(5), should_stop=should_stop)

    assert result.cancelled is True
    assert result.saved_count == 2
    assert store.count(collections.ATTENDANCE) == 2


def test_module_level_reconcile():
    store = InMemoryStore()

    result = reconcile(store, 'attendance', attendance_rows(2))

    assert result.saved_count == 2


class RacingStore(InMemoryStore):
    """Misses the student lookup, as if another upload created it meanwhile."""

    def find_one(self, collection, filter):
        if collection == collections.STUDENTS:
            return None
        return super().find_one(collection, filter)


def test_placeholder_never_overwrites_existing_student():
    store = RacingStore()
    existing = store.create(collections.STUDENTS, {
        'student_id': 'STU001', 'name': 'Asha Rao', 'is_placeholder': False,
    })

    student_ref, created = Reconciler(store).find_or_create_student('STU001')

    assert created is False
    assert student_ref == existing['id']
    stored = store.find_by_id(collections.STUDENTS, existing['id'])
    assert stored['name'] == 'Asha Rao'
    assert stored['is_placeholder'] is False
    assert store.count(collections.STUDENTS) == 1


def test_attendance_change_carries_previous_percentage(reconciler):
    first = reconciler.reconcile('attendance', attendance_rows(1, attended=16)).changes[0]
    second = reconciler.reconcile('attendance', attendance_rows(1, attended=12)).changes[0]

    assert first.previous_percentage is None
    assert second.previous_percentage == pytest.approx(80.0)
    assert second.record['attendance_percentage'] == pytest.approx(60.0)
