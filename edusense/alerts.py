"""Threshold-driven alert dispatch to mentors and guardians.

Each notification is persisted in ``created`` state before any send is
attempted, then moves to ``sending`` and finally ``sent`` or ``failed``.
Re-delivery is keyed by notification id and never creates a new record.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from edusense import store as collections
from edusense.config import Settings
from edusense.email_templates import attendance_alert_email, fee_overdue_email, risk_alert_email
from edusense.errors import DeliveryError, NotFoundError
from edusense.mailer import MailSender
from edusense.models import (
    AlertSweepResponse,
    AttendanceRecord,
    BulkSendResult,
    DispatchResult,
    EmailMessage,
    FeePaymentRecord,
    Mentor,
    NotificationRecord,
    RecordChange,
    RiskScoreEntry,
    Student,
    utcnow,
)
from edusense.reconciler import derive_fee_status
from edusense.risk import display_risk_level, generate_recommendations
from edusense.store import Store, dump

logger = logging.getLogger(__name__)

# (recipient_type, recipient_id, email)
Recipient = Tuple[str, str, str]

TRIGGERS = ('risk', 'attendance', 'fee')


class AlertDispatcher:
    """Decides when an alert is due, records it, and hands it to the mail sender."""

    def __init__(
        self,
        store: Store,
        mail_sender: MailSender,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.mail_sender = mail_sender
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def evaluate_and_notify(
        self,
        student_ref: str,
        trigger: str,
        entry: Optional[RiskScoreEntry] = None,
        record: Optional[Dict] = None,
        previous_status: Optional[str] = None,
        previous_percentage: Optional[float] = None,
        force: bool = False,
    ) -> DispatchResult:
        """
        Check one trigger for a student and send any alert it calls for.

        Args:
            student_ref: Store id of the student
            trigger: 'risk', 'attendance' or 'fee'
            entry: Risk entry to evaluate (defaults to the latest in history)
            record: Attendance or fee document to evaluate (defaults to the
                student's stored records)
            previous_status: Fee status before ``record`` was written
            previous_percentage: Attendance percentage before ``record`` was
                written; no alert when it was already below the threshold
            force: Re-alert a high-risk student even without a level change

        Returns:
            DispatchResult; delivery failures are counted, not raised
        """
        triggered, notification_ids = self.plan(
            student_ref,
            trigger,
            entry=entry,
            record=record,
            previous_status=previous_status,
            previous_percentage=previous_percentage,
            force=force,
        )
        result = DispatchResult(
            triggered=triggered,
            notified=bool(notification_ids),
            notification_ids=notification_ids,
        )
        for position, notification_id in enumerate(notification_ids):
            self._pace(position)
            try:
                self.deliver(notification_id)
                result.sent += 1
            except DeliveryError as e:
                result.failed += 1
                result.errors.append(str(e))
        return result

    def plan(
        self,
        student_ref: str,
        trigger: str,
        entry: Optional[RiskScoreEntry] = None,
        record: Optional[Dict] = None,
        previous_status: Optional[str] = None,
        previous_percentage: Optional[float] = None,
        force: bool = False,
    ) -> Tuple[bool, List[str]]:
        """
        Create (but do not send) the notifications a trigger calls for.

        Returns:
            Tuple of (whether the trigger condition was met, notification ids)
        """
        if trigger not in TRIGGERS:
            raise ValueError(f"Unknown trigger '{trigger}'. Expected one of: {', '.join(TRIGGERS)}")
        student = self._student(student_ref)
        if trigger == 'risk':
            return self._plan_risk(student, entry, force)
        if trigger == 'attendance':
            return self._plan_attendance(student, record, previous_percentage)
        return self._plan_fee(student, record, previous_status)

    def plan_changes(self, changes: List[RecordChange]) -> List[str]:
        """Create the attendance and fee notifications for a batch of reconciled records."""
        ids = []
        for change in changes:
            if change.kind == 'attendance':
                ids.extend(self.plan(
                    change.student_ref,
                    'attendance',
                    record=change.record,
                    previous_percentage=change.previous_percentage,
                )[1])
            elif change.kind == 'fees':
                ids.extend(self.plan(
                    change.student_ref,
                    'fee',
                    record=change.record,
                    previous_status=change.previous_status,
                )[1])
        return ids

    def deliver(self, notification_id: str) -> NotificationRecord:
        """
        Send a stored notification. Safe to call again after a failure.

        Raises:
            NotFoundError: unknown notification id
            DeliveryError: the mail sender reported failure
        """
        document = self.store.find_by_id(collections.NOTIFICATIONS, notification_id)
        if document is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        notification = NotificationRecord.model_validate(document)
        if notification.sent:
            return notification

        self.store.update_by_id(
            collections.NOTIFICATIONS,
            notification_id,
            {'status': 'sending', 'attempts': notification.attempts + 1},
        )
        message = EmailMessage(
            to=notification.recipient_email,
            subject=notification.subject,
            html=notification.html,
            text=notification.text,
        )
        reason = 'mail sender reported failure'
        try:
            ok = self.mail_sender.send(message)
        except Exception as e:
            ok = False
            reason = f"mail sender raised {type(e).__name__}: {e}"

        if not ok:
            self.store.update_by_id(
                collections.NOTIFICATIONS,
                notification_id,
                {'status': 'failed', 'sent': False, 'last_error': reason},
            )
            logger.warning("Delivery of notification %s to %s failed: %s",
                           notification_id, notification.recipient_email, reason)
            raise DeliveryError(notification_id, reason)

        updated = self.store.update_by_id(
            collections.NOTIFICATIONS,
            notification_id,
            {'status': 'sent', 'sent': True, 'sent_at': self.clock(), 'last_error': None},
        )
        logger.info("Delivered %s notification %s to %s",
                    notification.type, notification_id, notification.recipient_email)
        return NotificationRecord.model_validate(updated)

    def send_bulk(
        self,
        notification_ids: List[str],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> BulkSendResult:
        """Deliver notifications one after another, pausing between sends."""
        result = BulkSendResult(sent=0, failed=0)
        for position, notification_id in enumerate(notification_ids):
            if should_stop is not None and should_stop():
                result.cancelled = True
                break
            self._pace(position)
            try:
                self.deliver(notification_id)
                result.sent += 1
            except (DeliveryError, NotFoundError) as e:
                logger.warning("Bulk send: %s", e)
                result.failed += 1
        return result

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def send_risk_alerts(self) -> AlertSweepResponse:
        """Re-alert every student currently at high risk."""
        students = self.store.find(collections.STUDENTS, {'risk_level': 'high'})
        ids = []
        for document in students:
            ids.extend(self.plan(document['id'], 'risk', force=True)[1])
        return self._sweep_response(len(students), ids)

    def send_attendance_alerts(self) -> AlertSweepResponse:
        """Alert on every student whose latest attendance in a subject is low."""
        refs = sorted({doc['student_ref'] for doc in self.store.find(collections.ATTENDANCE)})
        ids = []
        for student_ref in refs:
            ids.extend(self.plan(student_ref, 'attendance')[1])
        return self._sweep_response(len(refs), ids)

    def send_fee_alerts(self) -> AlertSweepResponse:
        """Find pending fees that are now past due, record them as overdue and alert."""
        refs = sorted({doc['student_ref'] for doc in self.store.find(collections.FEES, {'status': 'pending'})})
        ids = []
        for student_ref in refs:
            ids.extend(self.plan(student_ref, 'fee')[1])
        return self._sweep_response(len(refs), ids)

    def list_notifications(self, type: Optional[str] = None, limit: int = 50) -> List[NotificationRecord]:
        """Most recent notifications first, optionally filtered by type."""
        documents = self.store.find(
            collections.NOTIFICATIONS,
            {'type': type} if type and type != 'all' else None,
            sort=[('created_at', -1)],
            limit=limit,
        )
        return [NotificationRecord.model_validate(doc) for doc in documents]

    def _sweep_response(self, processed: int, notification_ids: List[str]) -> AlertSweepResponse:
        outcome = self.send_bulk(notification_ids)
        return AlertSweepResponse(
            students_processed=processed,
            emails_sent=outcome.sent,
            emails_failed=outcome.failed,
        )

    # ------------------------------------------------------------------
    # Trigger rules
    # ------------------------------------------------------------------

    def _plan_risk(self, student: Student, entry: Optional[RiskScoreEntry], force: bool) -> Tuple[bool, List[str]]:
        if entry is None:
            latest = self.store.find(
                collections.RISK_SCORES,
                {'student_ref': student.id},
                sort=[('calculated_at', -1)],
                limit=1,
            )
            if not latest:
                return False, []
            entry = RiskScoreEntry.model_validate(latest[0])

        if entry.risk_level != 'high':
            return False, []
        if not force and entry.previous_level == 'high':
            return False, []

        thresholds = self.settings.risk_thresholds
        display_level = display_risk_level(entry.risk_score, thresholds)
        recommendations = generate_recommendations(entry.factors, entry.risk_level)
        profile_url = f"{self.settings.app_base_url.rstrip('/')}/student/{student.student_id}"
        message = f"High risk alert for {student.name} - Risk Score: {entry.risk_score * 100:.1f}%"

        ids = []
        for recipient in self._recipients(student):
            email = risk_alert_email(student, entry, recipient[0], recommendations, display_level, profile_url)
            ids.append(self._create(student, recipient, 'risk_alert', message, email))
        return True, ids

    def _plan_attendance(
        self,
        student: Student,
        record: Optional[Dict],
        previous_percentage: Optional[float],
    ) -> Tuple[bool, List[str]]:
        threshold = self.settings.attendance_alert_threshold
        if record is not None:
            # Already below the threshold before this write
            if previous_percentage is not None and previous_percentage < threshold:
                return False, []
            records = [AttendanceRecord.model_validate(record)]
        else:
            records = self._latest_attendance_per_subject(student.id)

        triggered = False
        ids = []
        for attendance in records:
            if attendance.attendance_percentage >= threshold:
                continue
            triggered = True
            message = (
                f"Low attendance alert for {student.name} in {attendance.subject}: "
                f"{attendance.attendance_percentage:.1f}%"
            )
            email = attendance_alert_email(student, attendance)
            for recipient in self._recipients(student):
                ids.append(self._create(student, recipient, 'attendance_low', message, email))
        return triggered, ids

    def _plan_fee(self, student: Student, record: Optional[Dict], previous_status: Optional[str]) -> Tuple[bool, List[str]]:
        now = self.clock()
        if record is not None:
            candidates = [(FeePaymentRecord.model_validate(record), previous_status)]
        else:
            candidates = []
            for document in self.store.find(collections.FEES, {'student_ref': student.id}):
                fee = FeePaymentRecord.model_validate(document)
                candidates.append((fee, fee.status))

        triggered = False
        ids = []
        for fee, before in candidates:
            status = derive_fee_status(fee.paid_date, fee.due_date, now)
            if status != fee.status:
                self.store.update_by_id(collections.FEES, fee.id, {'status': status})
            if status != 'overdue' or before == 'overdue':
                continue
            triggered = True
            if not student.guardian_email:
                logger.warning("Fee for student %s is overdue but no guardian email is on file", student.student_id)
                continue
            days_overdue = max((now - fee.due_date).days, 0)
            message = (
                f"Overdue payment for {student.name}: ${fee.amount:,.2f} "
                f"({days_overdue} days past due)"
            )
            email = fee_overdue_email(student, fee, days_overdue)
            recipient = ('guardian', student.guardian_email, student.guardian_email)
            ids.append(self._create(student, recipient, 'payment_overdue', message, email))
        return triggered, ids

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pace(self, position: int):
        if position > 0 and self.settings.bulk_send_delay > 0:
            self.sleep(self.settings.bulk_send_delay)

    def _student(self, student_ref: str) -> Student:
        document = self.store.find_by_id(collections.STUDENTS, student_ref)
        if document is None:
            raise NotFoundError(f"Student {student_ref} not found")
        return Student.model_validate(document)

    def _recipients(self, student: Student) -> List[Recipient]:
        recipients = []
        if student.mentor_id:
            document = self.store.find_by_id(collections.MENTORS, student.mentor_id)
            if document is not None:
                mentor = Mentor.model_validate(document)
                recipients.append(('mentor', mentor.id, mentor.email))
            else:
                logger.warning("Mentor %s of student %s not found", student.mentor_id, student.student_id)
        if student.guardian_email:
            recipients.append(('guardian', student.guardian_email, student.guardian_email))
        if not recipients:
            logger.warning("No alert recipients on file for student %s", student.student_id)
        return recipients

    def _latest_attendance_per_subject(self, student_ref: str) -> List[AttendanceRecord]:
        latest: Dict[str, AttendanceRecord] = {}
        for document in self.store.find(collections.ATTENDANCE, {'student_ref': student_ref}):
            record = AttendanceRecord.model_validate(document)
            current = latest.get(record.subject)
            if current is None or (record.year, record.month) > (current.year, current.month):
                latest[record.subject] = record
        return [latest[subject] for subject in sorted(latest)]

    def _create(
        self,
        student: Student,
        recipient: Recipient,
        notification_type: str,
        message: str,
        email: Dict[str, str],
    ) -> str:
        recipient_type, recipient_id, address = recipient
        notification = NotificationRecord(
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            recipient_email=address,
            student_ref=student.id,
            type=notification_type,
            message=message,
            subject=email['subject'],
            html=email['html'],
            text=email['text'],
            created_at=self.clock(),
        )
        stored = self.store.create(collections.NOTIFICATIONS, dump(notification))
        return stored['id']
