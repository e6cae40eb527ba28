"""Upsert imported records into the store by natural key."""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from edusense import store as collections
from edusense.errors import UpsertError
from edusense.models import (
    AssessmentRow,
    AttendanceRow,
    FeeRow,
    FeeStatus,
    RawRecord,
    ReconcileResult,
    RecordChange,
    Student,
    StudentRow,
    utcnow,
)
from edusense.store import Store, dump

logger = logging.getLogger(__name__)


def attendance_percentage(attended_classes: int, total_classes: int) -> float:
    return attended_classes / total_classes * 100


def assessment_percentage(obtained_score: float, max_score: float) -> float:
    return obtained_score / max_score * 100


def derive_fee_status(paid_date: Optional[datetime], due_date: datetime, now: datetime) -> FeeStatus:
    """paid if a payment date exists, else overdue once the due date has passed."""
    if paid_date is not None:
        return 'paid'
    if due_date < now:
        return 'overdue'
    return 'pending'


def placeholder_student(student_id: str) -> Student:
    return Student(
        student_id=student_id,
        name=f"Student {student_id}",
        email=f"{student_id}@placeholder.com",
        course='Unknown',
        year=1,
        semester=1,
        is_placeholder=True,
    )


class Reconciler:
    """Writes imported records one at a time, isolating per-record failures."""

    def __init__(
        self,
        store: Store,
        max_reported_errors: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_reported_errors = max_reported_errors
        self.clock = clock

    def find_or_create_student(self, student_id: str) -> Tuple[str, bool]:
        """
        Resolve a student's store id, creating a placeholder when unknown.

        Returns:
            Tuple of (student_ref, created)
        """
        existing = self.store.find_one(collections.STUDENTS, {'student_id': student_id})
        if existing:
            return existing['id'], False
        document, created = self.store.insert_if_absent(
            collections.STUDENTS,
            {'student_id': student_id},
            dump(placeholder_student(student_id)),
        )
        if created:
            logger.info("Created placeholder student %s (ref %s)", student_id, document['id'])
        return document['id'], created

    def reconcile(
        self,
        kind: str,
        records: Sequence[RawRecord],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ReconcileResult:
        """
        Upsert each record in input order.

        A failing record is reported and skipped; it never aborts the run.
        ``should_stop`` is polled between records for cooperative
        cancellation.
        """
        saved_count = 0
        placeholders = 0
        errors: List[str] = []
        changes: List[RecordChange] = []
        cancelled = False

        for index, record in enumerate(records, start=1):
            if should_stop is not None and should_stop():
                logger.info("Reconciliation of %s cancelled after %d records", kind, index - 1)
                cancelled = True
                break
            try:
                change, created = self._upsert(kind, record)
            except Exception as e:
                error = UpsertError(index, record.student_id, e)
                logger.warning("Failed to save %s record: %s", kind, error)
                errors.append(str(error))
                continue
            saved_count += 1
            placeholders += int(created)
            changes.append(change)

        return ReconcileResult(
            saved_count=saved_count,
            errors=errors[:self.max_reported_errors],
            error_count=len(errors),
            placeholders_created=placeholders,
            cancelled=cancelled,
            changes=changes,
        )

    def _upsert(self, kind: str, record: RawRecord) -> Tuple[RecordChange, bool]:
        if kind != record.kind:
            raise ValueError(f"expected a {kind} record, got {record.kind}")
        if isinstance(record, StudentRow):
            return self._upsert_student(record), False

        student_ref, created = self.find_or_create_student(record.student_id)
        if isinstance(record, AttendanceRow):
            change = self._upsert_attendance(student_ref, record)
        elif isinstance(record, AssessmentRow):
            change = self._upsert_assessment(student_ref, record)
        else:
            change = self._upsert_fee(student_ref, record)
        return change, created

    def _upsert_student(self, record: StudentRow) -> RecordChange:
        values = record.model_dump(exclude={'kind', 'row', 'student_id'})
        values['is_placeholder'] = False
        existing = self.store.find_one(collections.STUDENTS, {'student_id': record.student_id})
        if existing is None:
            # Risk fields only get defaults on insert; scoring owns them afterwards
            values.update(current_risk_score=0.0, risk_level='low')
        stored = self.store.find_one_and_upsert(
            collections.STUDENTS, {'student_id': record.student_id}, values
        )
        return RecordChange(kind='students', student_ref=stored['id'], record=stored)

    def _upsert_attendance(self, student_ref: str, record: AttendanceRow) -> RecordChange:
        key = {
            'student_ref': student_ref,
            'subject': record.subject,
            'month': record.month,
            'year': record.year,
        }
        previous = self.store.find_one(collections.ATTENDANCE, key)
        values = {
            'total_classes': record.total_classes,
            'attended_classes': record.attended_classes,
            'attendance_percentage': attendance_percentage(record.attended_classes, record.total_classes),
        }
        stored = self.store.find_one_and_upsert(collections.ATTENDANCE, key, values)
        return RecordChange(
            kind='attendance',
            student_ref=student_ref,
            record=stored,
            previous_percentage=previous['attendance_percentage'] if previous else None,
        )

    def _upsert_assessment(self, student_ref: str, record: AssessmentRow) -> RecordChange:
        key = {
            'student_ref': student_ref,
            'subject': record.subject,
            'assessment_type': record.assessment_type,
            'submission_date': record.submission_date,
        }
        values = {
            'max_score': record.max_score,
            'obtained_score': record.obtained_score,
            'attempts': record.attempts,
            'percentage': assessment_percentage(record.obtained_score, record.max_score),
        }
        stored = self.store.find_one_and_upsert(collections.ASSESSMENTS, key, values)
        return RecordChange(kind='assessments', student_ref=student_ref, record=stored)

    def _upsert_fee(self, student_ref: str, record: FeeRow) -> RecordChange:
        key = {'student_ref': student_ref, 'semester': record.semester, 'year': record.year}
        previous = self.store.find_one(collections.FEES, key)
        values = {
            'amount': record.amount,
            'due_date': record.due_date,
            'paid_date': record.paid_date,
            'status': derive_fee_status(record.paid_date, record.due_date, self.clock()),
        }
        stored = self.store.find_one_and_upsert(collections.FEES, key, values)
        return RecordChange(
            kind='fees',
            student_ref=student_ref,
            record=stored,
            previous_status=previous['status'] if previous else None,
        )


def reconcile(store: Store, kind: str, records: Sequence[RawRecord], max_reported_errors: int = 10) -> ReconcileResult:
    """Convenience wrapper around ``Reconciler.reconcile``."""
    return Reconciler(store, max_reported_errors=max_reported_errors).reconcile(kind, records)

