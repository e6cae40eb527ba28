"""Data models for the EduSense risk pipeline."""

from datetime import datetime, timezone
from typing import Optional, Dict, List, Literal, Tuple, Union, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

RecordKind = Literal['students', 'attendance', 'assessments', 'fees']
RiskLevel = Literal['low', 'medium', 'high']
AssessmentType = Literal['quiz', 'assignment', 'midterm', 'final', 'project']
FeeStatus = Literal['pending', 'paid', 'overdue']
RecipientType = Literal['mentor', 'guardian']
NotificationType = Literal['risk_alert', 'attendance_low', 'payment_overdue', 'academic_concern']
NotificationStatus = Literal['created', 'sending', 'sent', 'failed']
Trigger = Literal['risk', 'attendance', 'fee']

RECORD_KINDS: Tuple[str, ...] = ('students', 'attendance', 'assessments', 'fees')
ASSESSMENT_TYPES: Tuple[str, ...] = ('quiz', 'assignment', 'midterm', 'final', 'project')


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class StoredModel(BaseModel):
    """Base for documents persisted in the store."""
    model_config = ConfigDict(extra='ignore')

    id: Optional[str] = None

    @field_validator('*')
    @classmethod
    def assume_utc(cls, value):
        # Naive datetimes read back from a store are UTC
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------

class Student(StoredModel):
    student_id: str
    name: str
    email: str
    course: str = 'Unknown'
    year: int = 1
    semester: int = 1
    guardian_email: Optional[str] = None
    guardian_phone: Optional[str] = None
    mentor_id: Optional[str] = None
    current_risk_score: float = 0.0
    risk_level: RiskLevel = 'low'
    is_placeholder: bool = False
    last_active_at: Optional[datetime] = None


class Mentor(StoredModel):
    name: str
    email: str


class AttendanceRecord(StoredModel):
    student_ref: str
    subject: str
    month: int
    year: int
    total_classes: int
    attended_classes: int
    attendance_percentage: float


class AssessmentRecord(StoredModel):
    student_ref: str
    subject: str
    assessment_type: AssessmentType
    max_score: float
    obtained_score: float
    percentage: float
    attempts: int = 1
    submission_date: datetime


class FeePaymentRecord(StoredModel):
    student_ref: str
    amount: float
    due_date: datetime
    paid_date: Optional[datetime] = None
    status: FeeStatus
    semester: int
    year: int


class RiskFactors(BaseModel):
    """Per-factor risk, each in [0, 1] where higher is riskier."""
    attendance: float
    academic: float
    financial: float
    engagement: float


class RiskScoreEntry(StoredModel):
    student_ref: str
    risk_score: float
    risk_level: RiskLevel
    factors: RiskFactors
    calculated_at: datetime
    previous_level: Optional[RiskLevel] = None


class NotificationRecord(StoredModel):
    recipient_id: str
    recipient_type: RecipientType
    recipient_email: str
    student_ref: str
    type: NotificationType
    message: str
    subject: str
    html: str
    text: Optional[str] = None
    status: NotificationStatus = 'created'
    sent: bool = False
    sent_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Imported rows (kind-tagged, no store identity yet)
# ---------------------------------------------------------------------------

class StudentRow(BaseModel):
    kind: Literal['students'] = 'students'
    row: int
    student_id: str
    name: str
    email: str
    course: str
    year: int
    semester: int
    guardian_email: Optional[str] = None
    guardian_phone: Optional[str] = None
    mentor_id: Optional[str] = None

    def natural_key(self) -> tuple:
        return (self.student_id,)


class AttendanceRow(BaseModel):
    kind: Literal['attendance'] = 'attendance'
    row: int
    student_id: str
    subject: str
    month: int = Field(ge=1, le=12)
    year: int
    total_classes: int = Field(gt=0)
    attended_classes: int = Field(ge=0)

    def natural_key(self) -> tuple:
        return (self.student_id, self.subject, self.month, self.year)


class AssessmentRow(BaseModel):
    kind: Literal['assessments'] = 'assessments'
    row: int
    student_id: str
    subject: str
    assessment_type: AssessmentType = 'assignment'
    max_score: float = Field(gt=0)
    obtained_score: float = Field(ge=0)
    attempts: int = 1
    submission_date: datetime

    def natural_key(self) -> tuple:
        return (self.student_id, self.subject, self.assessment_type, self.submission_date)


class FeeRow(BaseModel):
    kind: Literal['fees'] = 'fees'
    row: int
    student_id: str
    amount: float = Field(gt=0)
    due_date: datetime
    paid_date: Optional[datetime] = None
    semester: int
    year: int

    def natural_key(self) -> tuple:
        return (self.student_id, self.semester, self.year)


RawRecord = Union[StudentRow, AttendanceRow, AssessmentRow, FeeRow]


class ImportSummary(BaseModel):
    filename: str
    file_type: str
    data_type: str
    total_rows: int
    parsed_rows: int
    rejected_rows: int
    duplicate_rows: int = 0
    processed_at: datetime


class DataQuality(BaseModel):
    issues: List[str]
    completeness_rate: float


class ImportResult(BaseModel):
    kind: RecordKind
    records: List[RawRecord]
    summary: ImportSummary
    quality: DataQuality


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------

class RecordChange(BaseModel):
    """A record written by the reconciler, with the fee status or attendance percentage it replaced."""
    kind: RecordKind
    student_ref: str
    record: Dict[str, Any]
    previous_status: Optional[FeeStatus] = None
    previous_percentage: Optional[float] = None


class ReconcileResult(BaseModel):
    saved_count: int
    errors: List[str]
    error_count: int
    placeholders_created: int = 0
    cancelled: bool = False
    changes: List[RecordChange] = []


class RiskReport(BaseModel):
    total_students: int
    high: int
    medium: int
    low: int
    average_risk_score: float


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    text: Optional[str] = None


class DispatchResult(BaseModel):
    triggered: bool = False
    notified: bool
    notification_ids: List[str] = []
    sent: int = 0
    failed: int = 0
    errors: List[str] = []

    @property
    def notification_id(self) -> Optional[str]:
        return self.notification_ids[0] if self.notification_ids else None


class BulkSendResult(BaseModel):
    sent: int
    failed: int
    cancelled: bool = False


class UploadResponse(BaseModel):
    """Response from file upload endpoint."""
    success: bool
    message: str
    summary: ImportSummary
    quality: DataQuality
    saved_count: int
    errors: List[str]
    error_count: int
    alerts: Dict[str, int]


class RiskResponse(BaseModel):
    entry: RiskScoreEntry
    display_level: str
    recommendations: List[str]
    alert: DispatchResult


class AlertSweepResponse(BaseModel):
    students_processed: int
    emails_sent: int
    emails_failed: int
