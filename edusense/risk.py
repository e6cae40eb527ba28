"""Risk scoring: per-factor risk, weighted composite and risk levels."""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from edusense import store as collections
from edusense.config import Settings
from edusense.errors import NotFoundError
from edusense.models import (
    AssessmentRecord,
    AttendanceRecord,
    FeePaymentRecord,
    RiskFactors,
    RiskReport,
    RiskScoreEntry,
    Student,
    utcnow,
)
from edusense.reconciler import derive_fee_status
from edusense.store import Store, dump

logger = logging.getLogger(__name__)

# Used for any factor with no data behind it, so a student with no records
# lands mid-scale instead of looking risk free
NEUTRAL_FACTOR = 0.5

FACTOR_NAMES = ('attendance', 'academic', 'financial', 'engagement')

# Pending fees count half as much as overdue ones toward financial risk
PENDING_FEE_WEIGHT = 0.5


def _clip(value: float) -> float:
    return float(np.clip(value, 0.0, 1.0))


def attendance_factor(percentages: Iterable[float]) -> float:
    """
    Attendance risk from attendance percentages (0-100).

    Args:
        percentages: One value per subject/month record

    Returns:
        1 - average/100, or NEUTRAL_FACTOR with no records
    """
    values = list(percentages)
    if not values:
        return NEUTRAL_FACTOR
    return _clip(1.0 - float(np.mean(values)) / 100.0)


def academic_factor(percentages: Iterable[float]) -> float:
    """Academic risk from assessment percentages, symmetric to attendance."""
    values = list(percentages)
    if not values:
        return NEUTRAL_FACTOR
    return _clip(1.0 - float(np.mean(values)) / 100.0)


def financial_factor(fees: Iterable[FeePaymentRecord], now: datetime) -> float:
    """
    Share of billed fees left unpaid, with pending amounts weighted by
    PENDING_FEE_WEIGHT. Status is re-derived at ``now`` so a pending fee
    that has since passed its due date counts as overdue.
    """
    fees = list(fees)
    total = sum(fee.amount for fee in fees)
    if total <= 0:
        return NEUTRAL_FACTOR

    unpaid = 0.0
    for fee in fees:
        status = derive_fee_status(fee.paid_date, fee.due_date, now)
        if status == 'overdue':
            unpaid += fee.amount
        elif status == 'pending':
            unpaid += PENDING_FEE_WEIGHT * fee.amount
    return _clip(unpaid / total)


def engagement_factor(
    engagement_score: Optional[float] = None,
    last_active_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    window_days: int = 30,
) -> float:
    """
    Engagement risk from an external 0-100 engagement score if given,
    otherwise from days since the student's last activity relative to
    ``window_days``.
    """
    if engagement_score is not None:
        return _clip(1.0 - engagement_score / 100.0)
    if last_active_at is None or now is None:
        return NEUTRAL_FACTOR
    idle_days = (now - last_active_at).total_seconds() / 86400.0
    return _clip(idle_days / window_days)


def recent_attendance(records: List[AttendanceRecord], window_months: int) -> List[AttendanceRecord]:
    """Keep records within ``window_months`` of the most recent record's month."""
    if not records:
        return []
    latest = max(record.year * 12 + record.month for record in records)
    return [r for r in records if latest - (r.year * 12 + r.month) < window_months]


def weighted_risk_score(factors: RiskFactors, weights: Dict[str, float]) -> float:
    """Weighted average of the four factors, normalised by the weight total."""
    values = [getattr(factors, name) for name in FACTOR_NAMES]
    w = [weights.get(name, 0.0) for name in FACTOR_NAMES]
    if sum(w) <= 0:
        raise ValueError("Risk weights must sum to a positive value")
    return _clip(float(np.average(values, weights=w)))


def get_risk_level(risk_score: float, thresholds: Dict[str, float]) -> str:
    """
    Categorize a 0-1 risk score into low/medium/high.

    Lower bounds are inclusive: a score equal to the medium threshold is
    medium, equal to the high threshold is high.

    Args:
        risk_score: Risk score (0-1)
        thresholds: Dict with 'medium' and 'high' lower bounds

    Returns:
        Risk level string
    """
    if risk_score >= thresholds.get('high', 0.6):
        return 'high'
    elif risk_score >= thresholds.get('medium', 0.3):
        return 'medium'
    else:
        return 'low'


def display_risk_level(risk_score: float, thresholds: Dict[str, float]) -> str:
    """Risk level for display, splitting out 'critical' above the high band."""
    level = get_risk_level(risk_score, thresholds)
    if level == 'high' and risk_score >= thresholds.get('critical', 0.8):
        return 'critical'
    return level


def generate_recommendations(factors: RiskFactors, risk_level: str) -> List[str]:
    """Suggested interventions for the factors driving a student's risk."""
    recommendations = []

    if factors.attendance > 0.5:
        recommendations.append('Improve attendance - consider scheduling conflicts or transportation issues')
    if factors.academic > 0.5:
        recommendations.append('Academic support needed - consider tutoring or study groups')
    if factors.financial > 0.5:
        recommendations.append('Financial assistance may be required - explore scholarship or aid options')
    if factors.engagement > 0.5:
        recommendations.append('Increase engagement - check for motivation or personal issues')

    if risk_level == 'high':
        recommendations.append('Immediate intervention required - schedule counseling session')
    elif risk_level == 'medium':
        recommendations.append('Monitor closely and provide proactive support')

    return recommendations


def risk_report(entries: List[RiskScoreEntry]) -> RiskReport:
    """Counts per level and the average score over a batch of entries."""
    scores = [entry.risk_score for entry in entries]
    return RiskReport(
        total_students=len(entries),
        high=sum(1 for e in entries if e.risk_level == 'high'),
        medium=sum(1 for e in entries if e.risk_level == 'medium'),
        low=sum(1 for e in entries if e.risk_level == 'low'),
        average_risk_score=round(float(np.mean(scores)), 3) if scores else 0.0,
    )


class RiskScorer:
    """Computes and records risk scores for stored students."""

    def __init__(self, store: Store, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock

    def compute_factors(
        self,
        student: Student,
        now: datetime,
        engagement: Optional[float] = None,
    ) -> RiskFactors:
        attendance = [
            AttendanceRecord.model_validate(doc)
            for doc in self.store.find(collections.ATTENDANCE, {'student_ref': student.id})
        ]
        assessments = [
            AssessmentRecord.model_validate(doc)
            for doc in self.store.find(collections.ASSESSMENTS, {'student_ref': student.id})
        ]
        fees = [
            FeePaymentRecord.model_validate(doc)
            for doc in self.store.find(collections.FEES, {'student_ref': student.id})
        ]
        window = recent_attendance(attendance, self.settings.attendance_window_months)
        return RiskFactors(
            attendance=attendance_factor(r.attendance_percentage for r in window),
            academic=academic_factor(a.percentage for a in assessments),
            financial=financial_factor(fees, now),
            engagement=engagement_factor(
                engagement,
                student.last_active_at,
                now,
                self.settings.engagement_window_days,
            ),
        )

    def compute_risk(self, student_ref: str, engagement: Optional[float] = None) -> RiskScoreEntry:
        """
        Score one student, append a history entry and update the student.

        Args:
            student_ref: Store id of the student
            engagement: Optional external engagement score (0-100)

        Returns:
            The newly stored RiskScoreEntry

        Raises:
            NotFoundError: no student with that id
        """
        document = self.store.find_by_id(collections.STUDENTS, student_ref)
        if document is None:
            raise NotFoundError(f"Student {student_ref} not found")
        student = Student.model_validate(document)

        now = self.clock()
        factors = self.compute_factors(student, now, engagement)
        score = weighted_risk_score(factors, self.settings.risk_weights)
        level = get_risk_level(score, self.settings.risk_thresholds)

        entry = RiskScoreEntry(
            student_ref=student_ref,
            risk_score=score,
            risk_level=level,
            factors=factors,
            calculated_at=now,
            previous_level=student.risk_level,
        )
        stored = self.store.create(collections.RISK_SCORES, dump(entry))
        # Both fields are always replaced together
        self.store.update_by_id(
            collections.STUDENTS,
            student_ref,
            {'current_risk_score': score, 'risk_level': level},
        )
        logger.info("Scored student %s: %.3f (%s)", student.student_id, score, level)
        return RiskScoreEntry.model_validate(stored)

    def score_all(self, should_stop: Optional[Callable[[], bool]] = None) -> List[RiskScoreEntry]:
        """Score every stored student, stopping early if ``should_stop`` fires."""
        entries = []
        for document in self.store.find(collections.STUDENTS, sort=[('student_id', 1)]):
            if should_stop is not None and should_stop():
                logger.info("Batch scoring cancelled after %d students", len(entries))
                break
            entries.append(self.compute_risk(document['id']))
        return entries

    def history(self, student_ref: str, limit: Optional[int] = None) -> List[RiskScoreEntry]:
        """Risk history for a student, newest first."""
        documents = self.store.find(
            collections.RISK_SCORES,
            {'student_ref': student_ref},
            sort=[('calculated_at', -1)],
            limit=limit,
        )
        return [RiskScoreEntry.model_validate(doc) for doc in documents]
