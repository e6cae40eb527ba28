"""Unit tests for email templates."""

from datetime import datetime, timezone

from edusense.email_templates import (
    attendance_alert_email,
    fee_overdue_email,
    get_support_info,
    risk_alert_email,
    strip_html,
)
from edusense.models import AttendanceRecord, FeePaymentRecord, RiskFactors, RiskScoreEntry, Student

STUDENT = Student(
    id='s1', student_id='STU001', name='Asha <Rao>', email='asha@example.com', course='B.Tech', year=2,
)


def test_strip_html():
    assert strip_html('<p>Hello <b>there</b></p>\n<p>friend</p>') == 'Hello there friend'


def test_support_info_from_environment(monkeypatch):
    monkeypatch.setenv('SUPPORT_TEAM_NAME', 'Student Success')
    monkeypatch.delenv('SUPPORT_TEAM_EMAIL', raising=False)

    info = get_support_info()

    assert info['name'] == 'Student Success'
    assert info['email'] == 'support@edusense.example.com'


def test_risk_alert_email():
    """Test the risk email carries score, factors and actions, with names escaped."""
    entry = RiskScoreEntry(
        student_ref='s1', risk_score=0.72, risk_level='high',
        factors=RiskFactors(attendance=0.8, academic=0.65, financial=0.5, engagement=0.25),
        calculated_at=datetime(2025, 10, 1, tzinfo=timezone.utc),
    )

    email = risk_alert_email(STUDENT, entry, 'mentor', ['Schedule counseling'], 'high',
                             'http://localhost:8000/student/STU001')

    assert email['subject'] == 'HIGH Risk Alert: Asha <Rao>'
    assert 'Asha &lt;Rao&gt;' in email['html']
    assert 'Dear Mentor' in email['html']
    assert 'HIGH RISK - 72.0%' in email['html']
    assert 'Academic: 65.0%' in email['html']
    assert 'Schedule counseling' in email['html']
    assert '<' not in email['text']


def test_attendance_alert_email():
    record = AttendanceRecord(student_ref='s1', subject='Physics', month=9, year=2025,
                              total_classes=20, attended_classes=13, attendance_percentage=65.0)

    email = attendance_alert_email(STUDENT, record)

    assert email['subject'] == 'Low Attendance Alert: Asha <Rao> (Physics 65.0%)'
    assert '13 of 20 classes (65.0%)' in email['text']
    assert 'Period: 09/2025' in email['text']


def test_fee_overdue_email():
    record = FeePaymentRecord(student_ref='s1', amount=2500.5, status='overdue', semester=1, year=2025,
                              due_date=datetime(2025, 9, 1, tzinfo=timezone.utc))

    email = fee_overdue_email(STUDENT, record, 30)

    assert email['subject'] == 'Fee Payment Overdue: Asha <Rao>'
    assert 'Amount Due: $2,500.50' in email['text']
    assert 'Days Past Due: 30 days' in email['text']
    assert 'Due Date: 2025-09-01' in email['text']


def test_risk_alert_email_lists_year():
    entry = RiskScoreEntry(
        student_ref='s1', risk_score=0.65, risk_level='high',
        factors=RiskFactors(attendance=0.5, academic=0.5, financial=0.5, engagement=0.5),
        calculated_at=datetime(2025, 10, 1, tzinfo=timezone.utc),
    )

    email = risk_alert_email(STUDENT, entry, 'guardian', [], 'high', 'http://localhost:8000/student/STU001')

    assert 'Year: 2' in email['text']
    assert 'Dear Guardian' in email['text']
