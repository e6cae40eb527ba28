"""CSV/Excel file parsing and record normalization."""

import logging
import re
from datetime import date, datetime
from io import BytesIO
from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd
from pydantic import ValidationError

from edusense.errors import ParseError, RowValidationError
from edusense.models import (
    ASSESSMENT_TYPES,
    RECORD_KINDS,
    AssessmentRow,
    AttendanceRow,
    DataQuality,
    FeeRow,
    ImportResult,
    ImportSummary,
    RawRecord,
    StudentRow,
    utcnow,
)

logger = logging.getLogger(__name__)

# Canonical field -> accepted header spellings (already normalized)
COLUMN_ALIASES: Dict[str, List[str]] = {
    'student_id': ['studentid', 'studentnumber', 'studentno', 'studentnum', 'rollno', 'rollnumber', 'id'],
    'name': ['name', 'studentname', 'fullname'],
    'email': ['email', 'emailaddress', 'studentemail'],
    'course': ['course', 'coursename', 'program', 'programname'],
    'year': ['year', 'academicyear'],
    'semester': ['semester', 'sem', 'term'],
    'guardian_email': ['guardianemail', 'parentemail'],
    'guardian_phone': ['guardianphone', 'parentphone'],
    'mentor_id': ['mentorid', 'mentor'],
    'subject': ['subject', 'subjectname'],
    'month': ['month'],
    'total_classes': ['totalclasses', 'classestotal', 'scheduledclasses'],
    'attended_classes': ['attendedclasses', 'classesattended', 'attended', 'present'],
    'assessment_type': ['assessmenttype', 'type'],
    'max_score': ['maxscore', 'maximumscore', 'maxmarks', 'totalmarks', 'outof'],
    'obtained_score': ['obtainedscore', 'score', 'marks', 'marksobtained'],
    'attempts': ['attempts'],
    'submission_date': ['submissiondate', 'submittedon', 'date'],
    'amount': ['amount', 'feeamount'],
    'due_date': ['duedate'],
    'paid_date': ['paiddate', 'paymentdate'],
}

REQUIRED_FIELDS: Dict[str, List[str]] = {
    'students': ['student_id', 'name', 'email', 'course', 'year', 'semester'],
    'attendance': ['student_id', 'subject', 'month', 'year', 'attended_classes', 'total_classes'],
    'assessments': ['student_id', 'subject', 'max_score', 'obtained_score', 'submission_date'],
    'fees': ['student_id', 'amount', 'due_date', 'semester', 'year'],
}

OPTIONAL_FIELDS: Dict[str, List[str]] = {
    'students': ['guardian_email', 'guardian_phone', 'mentor_id'],
    'attendance': [],
    'assessments': ['assessment_type', 'attempts'],
    'fees': ['paid_date'],
}

# Header names used in messages, matching the upload template columns
FIELD_LABELS = {
    'student_id': 'studentId',
    'guardian_email': 'guardianEmail',
    'guardian_phone': 'guardianPhone',
    'mentor_id': 'mentorId',
    'total_classes': 'totalClasses',
    'attended_classes': 'attendedClasses',
    'assessment_type': 'assessmentType',
    'max_score': 'maxScore',
    'obtained_score': 'obtainedScore',
    'submission_date': 'submissionDate',
    'due_date': 'dueDate',
    'paid_date': 'paidDate',
}

FILE_FORMATS = {
    'csv': 'csv',
    'xlsx': 'excel',
    'xlsm': 'excel',
    'xls': 'excel',
}


def label(field: str) -> str:
    return FIELD_LABELS.get(field, field)


def normalize_col_name(col_name) -> str:
    """Normalize a column name for matching: lowercase, alphanumerics only."""
    if col_name is None or (isinstance(col_name, float) and np.isnan(col_name)):
        return ""
    normalized = str(col_name).strip().lower().replace('#', 'number')
    return re.sub(r'[^a-z0-9]', '', normalized)


def normalize_and_rename_columns(df: pd.DataFrame, kind: str) -> pd.DataFrame:
    """
    Rename the columns a record kind cares about to their canonical names.

    Columns that match no known field are dropped, so values such as a
    precomputed percentage in the upload are never carried forward.

    Args:
        df: DataFrame as read from the file
        kind: One of students, attendance, assessments, fees

    Returns:
        DataFrame holding only canonical columns
    """
    wanted = REQUIRED_FIELDS[kind] + OPTIONAL_FIELDS[kind]
    lookup = {}
    for field in wanted:
        for alias in COLUMN_ALIASES[field]:
            lookup.setdefault(alias, field)

    rename_map = {}
    for col in df.columns:
        field = lookup.get(normalize_col_name(col))
        if field and field not in rename_map.values():
            rename_map[col] = field

    return df[list(rename_map)].rename(columns=rename_map)


def detect_file_format(filename: str) -> str:
    """Return 'csv' or 'excel' for a supported filename, else 'unknown'."""
    ext = filename.lower().rsplit('.', 1)[-1] if '.' in filename else ''
    return FILE_FORMATS.get(ext, 'unknown')


def load_table(file_bytes: bytes, file_format: str) -> pd.DataFrame:
    """
    Read the uploaded bytes into a DataFrame of raw cell values.

    Raises:
        ParseError: if the content cannot be read as a table at all
    """
    if not file_bytes or not file_bytes.strip():
        raise ParseError("Uploaded file is empty")

    try:
        if file_format == 'csv':
            df = pd.read_csv(
                BytesIO(file_bytes),
                dtype=object,
                keep_default_na=False,
                skip_blank_lines=False,
                encoding='utf-8-sig',
            )
        elif file_format == 'excel':
            df = pd.read_excel(BytesIO(file_bytes), sheet_name=0, engine='openpyxl', dtype=object)
        else:
            raise ParseError("Unsupported file format. Please upload CSV or Excel files.")
    except ParseError:
        raise
    except UnicodeDecodeError as e:
        raise ParseError(f"File is not valid UTF-8 text: {e}") from e
    except pd.errors.EmptyDataError as e:
        raise ParseError("File has no header row") from e
    except Exception as e:
        raise ParseError(f"Could not read {file_format} file: {e}") from e

    if len(df.columns) == 0:
        raise ParseError("File has no header row")

    # Drop rows with no values at all. The index still counts them, so it
    # stays the data row position in the file.
    cleaned = df.astype(object).map(clean_value)
    return cleaned[cleaned.notna().any(axis=1)]


def clean_value(value) -> Any:
    """Strip strings and turn blanks/NaN into None."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def to_text(value) -> str:
    """Render an identifier cell as text; 1001.0 from a spreadsheet becomes '1001'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def to_float(value, field: str) -> float:
    try:
        result = float(str(value).replace(',', '')) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label(field)} must be numeric, got '{value}'")
    if np.isnan(result) or np.isinf(result):
        raise ValueError(f"{label(field)} must be numeric, got '{value}'")
    return result


def to_int(value, field: str) -> int:
    result = to_float(value, field)
    if not result.is_integer():
        raise ValueError(f"{label(field)} must be a whole number, got '{value}'")
    return int(result)


def to_datetime(value, field: str) -> datetime:
    """Parse a date cell into a UTC-aware datetime."""
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    timestamp = pd.to_datetime(value, errors='coerce')
    if pd.isna(timestamp):
        raise ValueError(f"{label(field)} is not a valid date: '{value}'")
    if timestamp.tzinfo is None:
        timestamp = timestamp.tz_localize('UTC')
    else:
        timestamp = timestamp.tz_convert('UTC')
    return timestamp.to_pydatetime()


def _build_student(row: int, values: Dict[str, Any]) -> StudentRow:
    guardian_email = values.get('guardian_email')
    return StudentRow(
        row=row,
        student_id=to_text(values['student_id']),
        name=to_text(values['name']),
        email=to_text(values['email']).lower(),
        course=to_text(values['course']),
        year=to_int(values['year'], 'year'),
        semester=to_int(values['semester'], 'semester'),
        guardian_email=to_text(guardian_email).lower() if guardian_email is not None else None,
        guardian_phone=to_text(values['guardian_phone']) if values.get('guardian_phone') is not None else None,
        mentor_id=to_text(values['mentor_id']) if values.get('mentor_id') is not None else None,
    )


def _build_attendance(row: int, values: Dict[str, Any]) -> AttendanceRow:
    total = to_int(values['total_classes'], 'total_classes')
    attended = to_int(values['attended_classes'], 'attended_classes')
    if total <= 0:
        raise ValueError(f"totalClasses must be positive, got {total}")
    return AttendanceRow(
        row=row,
        student_id=to_text(values['student_id']),
        subject=to_text(values['subject']),
        month=to_int(values['month'], 'month'),
        year=to_int(values['year'], 'year'),
        total_classes=total,
        attended_classes=min(attended, total),
    )


def _build_assessment(row: int, values: Dict[str, Any]) -> AssessmentRow:
    max_score = to_float(values['max_score'], 'max_score')
    obtained = to_float(values['obtained_score'], 'obtained_score')
    if max_score <= 0:
        raise ValueError(f"maxScore must be positive, got {max_score}")
    assessment_type = str(values.get('assessment_type') or 'assignment').lower()
    if assessment_type not in ASSESSMENT_TYPES:
        assessment_type = 'assignment'
    attempts = values.get('attempts')
    return AssessmentRow(
        row=row,
        student_id=to_text(values['student_id']),
        subject=to_text(values['subject']),
        assessment_type=assessment_type,
        max_score=max_score,
        obtained_score=min(obtained, max_score),
        attempts=to_int(attempts, 'attempts') if attempts is not None else 1,
        submission_date=to_datetime(values['submission_date'], 'submission_date'),
    )


def _build_fee(row: int, values: Dict[str, Any]) -> FeeRow:
    amount = to_float(values['amount'], 'amount')
    if amount <= 0:
        raise ValueError(f"amount must be positive, got {amount}")
    paid = values.get('paid_date')
    return FeeRow(
        row=row,
        student_id=to_text(values['student_id']),
        amount=amount,
        due_date=to_datetime(values['due_date'], 'due_date'),
        paid_date=to_datetime(paid, 'paid_date') if paid is not None else None,
        semester=to_int(values['semester'], 'semester'),
        year=to_int(values['year'], 'year'),
    )


ROW_BUILDERS = {
    'students': _build_student,
    'attendance': _build_attendance,
    'assessments': _build_assessment,
    'fees': _build_fee,
}


def build_record(kind: str, row: int, values: Dict[str, Any]) -> RawRecord:
    """
    Coerce one row of cell values into a typed record.

    Raises:
        RowValidationError: missing required field or uncoercible value
    """
    # Typed columns can turn None back into NaN
    values = {field: clean_value(value) for field, value in values.items()}
    missing = [label(f) for f in REQUIRED_FIELDS[kind] if values.get(f) is None]
    if missing:
        raise RowValidationError(row, f"missing required field(s): {', '.join(missing)}")
    try:
        return ROW_BUILDERS[kind](row, values)
    except ValueError as e:
        # pydantic's ValidationError is a ValueError too
        if isinstance(e, ValidationError):
            first = e.errors()[0]
            field = '.'.join(str(part) for part in first['loc'])
            raise RowValidationError(row, f"{label(field)}: {first['msg']}") from e
        raise RowValidationError(row, str(e)) from e


def deduplicate_records(records: List[RawRecord]) -> Tuple[List[RawRecord], int]:
    """Keep the last record for each natural key, in order of that last occurrence."""
    latest: Dict[tuple, RawRecord] = {}
    for record in records:
        key = record.natural_key()
        latest.pop(key, None)
        latest[key] = record
    return list(latest.values()), len(records) - len(latest)


def assess_data_quality(total_rows: int, parsed_rows: int, issues: List[str]) -> DataQuality:
    completeness = (parsed_rows / total_rows) * 100 if total_rows > 0 else 0.0
    return DataQuality(issues=issues, completeness_rate=round(completeness, 2))


def import_file(file_bytes: bytes, filename: str, kind: str) -> ImportResult:
    """
    Parse an uploaded file into validated, kind-tagged records.

    Rows that fail validation are skipped and described in
    ``quality.issues``; the import only fails as a whole when the file
    cannot be read.

    Args:
        file_bytes: Raw bytes of the uploaded file
        filename: Original filename, used to pick the reader
        kind: One of students, attendance, assessments, fees

    Returns:
        ImportResult with records, summary and quality report

    Raises:
        ParseError: unsupported, empty or undecodable file
        ValueError: unknown record kind
    """
    if kind not in RECORD_KINDS:
        raise ValueError(f"Unknown data type '{kind}'. Expected one of: {', '.join(RECORD_KINDS)}")

    file_format = detect_file_format(filename)
    if file_format == 'unknown':
        raise ParseError("Unsupported file format. Please upload CSV or Excel files.")

    raw_df = load_table(file_bytes, file_format)
    df = normalize_and_rename_columns(raw_df, kind)

    issues: List[str] = []
    missing_columns = [label(f) for f in REQUIRED_FIELDS[kind] if f not in df.columns]
    if missing_columns:
        issues.append(f"Missing required column(s): {', '.join(missing_columns)}")

    records: List[RawRecord] = []
    for index, values in zip(df.index, df.to_dict(orient='records')):
        try:
            records.append(build_record(kind, int(index) + 1, values))
        except RowValidationError as e:
            logger.debug("Rejected %s row: %s", kind, e)
            issues.append(str(e))

    total_rows = len(df)
    parsed_rows = len(records)
    records, duplicates = deduplicate_records(records)

    summary = ImportSummary(
        filename=filename,
        file_type=file_format,
        data_type=kind,
        total_rows=total_rows,
        parsed_rows=parsed_rows,
        rejected_rows=total_rows - parsed_rows,
        duplicate_rows=duplicates,
        processed_at=utcnow(),
    )
    logger.info(
        "Imported %s from %s: %d rows, %d parsed, %d rejected, %d duplicates",
        kind, filename, total_rows, parsed_rows, summary.rejected_rows, duplicates,
    )
    return ImportResult(
        kind=kind,
        records=records,
        summary=summary,
        quality=assess_data_quality(total_rows, parsed_rows, issues),
    )
