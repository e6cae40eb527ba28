"""Email template generation for risk, attendance and fee alerts."""

import os
import re
from html import escape
from typing import Dict, List

from edusense.models import AttendanceRecord, FeePaymentRecord, RiskScoreEntry, Student

FACTOR_LABELS = (
    ('attendance', 'Attendance'),
    ('academic', 'Academic'),
    ('financial', 'Financial'),
    ('engagement', 'Engagement'),
)


def get_support_info() -> Dict[str, str]:
    """Get the signing team name and contact email from environment or defaults."""
    return {
        'name': os.getenv('SUPPORT_TEAM_NAME', 'Academic Support Team'),
        'email': os.getenv('SUPPORT_TEAM_EMAIL', 'support@edusense.example.com')
    }


def strip_html(html: str) -> str:
    """Plain-text fallback for an HTML body."""
    return re.sub(r'\s+', ' ', re.sub(r'<[^>]*>', ' ', html)).strip()


def _layout(title: str, color: str, content: str) -> str:
    support = get_support_info()
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{escape(title)}</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background: {color}; color: white; padding: 20px; text-align: center;">
      <h1>{escape(title)}</h1>
    </div>
    <div style="padding: 20px; border: 1px solid #ddd;">
{content}
    </div>
    <div style="background: #f8f9fa; padding: 15px; text-align: center; font-size: 12px; color: #666;">
      <p>This is an automated message from the EduSense early warning system.</p>
      <p>{escape(support['name'])} &middot; {escape(support['email'])}</p>
    </div>
  </div>
</body>
</html>"""


def _student_block(student: Student, extra: str = '') -> str:
    return f"""      <div style="background: #f8f9fa; padding: 20px; margin: 20px 0;">
        <p><strong>Student:</strong> {escape(student.name)} ({escape(student.student_id)})</p>
        <p><strong>Course:</strong> {escape(student.course)}</p>
{extra}      </div>"""


def _email(subject: str, html: str) -> Dict[str, str]:
    return {'subject': subject, 'html': html, 'text': strip_html(html)}


def risk_alert_email(
    student: Student,
    entry: RiskScoreEntry,
    recipient_type: str,
    recommendations: List[str],
    display_level: str,
    profile_url: str,
) -> Dict[str, str]:
    """Risk alert with the score, a per-factor breakdown and recommended actions."""
    greeting = 'Mentor' if recipient_type == 'mentor' else 'Guardian'
    factors = ''.join(
        f"        <li>{name}: {getattr(entry.factors, key) * 100:.1f}%</li>\n"
        for key, name in FACTOR_LABELS
    )
    actions = ''.join(f"        <li>{escape(item)}</li>\n" for item in recommendations)
    extra = f"        <p><strong>Year:</strong> {student.year}</p>\n"
    content = f"""      <p>Dear {greeting},</p>
      <p>The following student has been identified as needing attention:</p>
{_student_block(student, extra)}
      <p style="text-align: center; font-weight: bold;">{display_level.upper()} RISK - {entry.risk_score * 100:.1f}%</p>
      <h3>Risk Factor Breakdown</h3>
      <ul>
{factors}      </ul>
      <h3>Recommended Actions</h3>
      <ul>
{actions}      </ul>
      <p><a href="{escape(profile_url)}">View Student Profile</a></p>"""
    subject = f"{display_level.upper()} Risk Alert: {student.name}"
    return _email(subject, _layout('Student Risk Alert', '#764ba2', content))


def attendance_alert_email(student: Student, record: AttendanceRecord) -> Dict[str, str]:
    """Low-attendance alert for one subject."""
    extra = (
        f"        <p><strong>Subject:</strong> {escape(record.subject)}</p>\n"
        f"        <p><strong>Period:</strong> {record.month:02d}/{record.year}</p>\n"
        f"        <p><strong>Attendance:</strong> {record.attended_classes} of {record.total_classes} classes "
        f"({record.attendance_percentage:.1f}%)</p>\n"
    )
    content = f"""      <p>Dear Mentor/Guardian,</p>
      <p>We've detected low attendance for the following student:</p>
{_student_block(student, extra)}
      <p><strong>Please take action to improve attendance and prevent academic issues.</strong></p>"""
    subject = f"Low Attendance Alert: {student.name} ({record.subject} {record.attendance_percentage:.1f}%)"
    return _email(subject, _layout('Attendance Alert', '#f59e0b', content))


def fee_overdue_email(student: Student, record: FeePaymentRecord, days_overdue: int) -> Dict[str, str]:
    """Overdue fee reminder with the amount and days past due."""
    extra = (
        f"        <p><strong>Semester:</strong> {record.semester} / {record.year}</p>\n"
        f"        <p><strong>Due Date:</strong> {record.due_date:%Y-%m-%d}</p>\n"
        f"        <p><strong>Days Past Due:</strong> {days_overdue} days</p>\n"
    )
    content = f"""      <p>Dear Guardian,</p>
      <p>This is a reminder that a fee payment is overdue for:</p>
{_student_block(student, extra)}
      <p style="font-size: 24px; font-weight: bold; color: #dc2626; text-align: center;">Amount Due: ${record.amount:,.2f}</p>
      <p><strong>Please settle this payment as soon as possible to avoid any academic holds.</strong></p>"""
    subject = f"Fee Payment Overdue: {student.name}"
    return _email(subject, _layout('Fee Payment Overdue', '#dc2626', content))
