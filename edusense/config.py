"""Runtime configuration read from the environment."""

import os
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

DEFAULT_WEIGHTS = 'attendance:0.3,academic:0.3,financial:0.2,engagement:0.2'
DEFAULT_THRESHOLDS = 'medium:0.3,high:0.6,critical:0.8'


def parse_mapping(raw: str) -> Dict[str, float]:
    """
    Parse a "key:value,key:value" string into a float mapping.

    Args:
        raw: Comma separated pairs, e.g. "medium:0.3,high:0.6"

    Returns:
        Dict of key -> float
    """
    mapping = {}
    for item in raw.split(','):
        if not item.strip():
            continue
        key, value = item.split(':')
        mapping[key.strip()] = float(value.strip())
    return mapping


class Settings(BaseModel):
    """Pipeline policy and integration settings."""
    risk_weights: Dict[str, float] = parse_mapping(DEFAULT_WEIGHTS)
    risk_thresholds: Dict[str, float] = parse_mapping(DEFAULT_THRESHOLDS)
    attendance_alert_threshold: float = 75.0
    attendance_window_months: int = 6
    engagement_window_days: int = 30
    max_reported_errors: int = 10
    bulk_send_delay: float = 0.1
    max_upload_size_mb: int = 10
    mongo_url: Optional[str] = None
    db_name: str = 'edusense'
    sendgrid_api_key: Optional[str] = None
    email_from: str = 'noreply@edusense.example.com'
    app_base_url: str = 'http://localhost:8000'
    allow_origins: str = '*'
    log_level: str = 'INFO'

    @property
    def max_upload_size(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


def get_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    return Settings(
        risk_weights=parse_mapping(os.getenv('RISK_WEIGHTS', DEFAULT_WEIGHTS)),
        risk_thresholds=parse_mapping(os.getenv('RISK_THRESHOLDS', DEFAULT_THRESHOLDS)),
        attendance_alert_threshold=float(os.getenv('ATTENDANCE_ALERT_THRESHOLD', '75')),
        attendance_window_months=int(os.getenv('ATTENDANCE_WINDOW_MONTHS', '6')),
        engagement_window_days=int(os.getenv('ENGAGEMENT_WINDOW_DAYS', '30')),
        max_reported_errors=int(os.getenv('MAX_REPORTED_ERRORS', '10')),
        bulk_send_delay=float(os.getenv('BULK_SEND_DELAY', '0.1')),
        max_upload_size_mb=int(os.getenv('MAX_UPLOAD_SIZE_MB', '10')),
        mongo_url=os.getenv('MONGO_URL') or None,
        db_name=os.getenv('DB_NAME', 'edusense'),
        sendgrid_api_key=os.getenv('SENDGRID_API_KEY') or None,
        email_from=os.getenv('EMAIL_FROM', 'noreply@edusense.example.com'),
        app_base_url=os.getenv('APP_BASE_URL', 'http://localhost:8000'),
        allow_origins=os.getenv('ALLOW_ORIGINS', '*'),
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
    )
