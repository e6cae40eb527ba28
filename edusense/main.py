"""FastAPI application exposing the EduSense risk pipeline."""

import logging
import os
import traceback
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from edusense.alerts import AlertDispatcher
from edusense.config import Settings, get_settings
from edusense.errors import DeliveryError, NotFoundError, ParseError
from edusense.mailer import MailSender, build_mail_sender
from edusense.models import (
    RECORD_KINDS,
    AlertSweepResponse,
    NotificationRecord,
    RiskResponse,
    RiskScoreEntry,
    UploadResponse,
)
from edusense.parsers import detect_file_format, import_file
from edusense.reconciler import Reconciler
from edusense.risk import RiskScorer, display_risk_level, generate_recommendations, risk_report
from edusense.store import STUDENTS, InMemoryStore, MongoStore, Store

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class Services:
    """The pipeline components sharing one store and mail sender."""

    def __init__(self, store: Store, mail_sender: MailSender, settings: Settings):
        self.settings = settings
        self.store = store
        self.reconciler = Reconciler(store, max_reported_errors=settings.max_reported_errors)
        self.scorer = RiskScorer(store, settings)
        self.dispatcher = AlertDispatcher(store, mail_sender, settings)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        if settings.mongo_url:
            store = MongoStore.from_url(settings.mongo_url, settings.db_name)
        else:
            logger.warning("MONGO_URL not set; using in-memory store")
            store = InMemoryStore()
        _services = Services(store, build_mail_sender(settings), settings)
    return _services


app = FastAPI(title="EduSense Risk Pipeline", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins.split(','),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler_json(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions and return JSON."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler_json(request: Request, exc: RequestValidationError):
    """Handle validation errors and return JSON."""
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors()}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions and return JSON."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error_detail = str(exc)
    if os.getenv('DEBUG', 'False').lower() == 'true':
        error_detail = f"{str(exc)}\n\n{traceback.format_exc()}"

    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {error_detail}",
            "type": type(exc).__name__
        }
    )


@app.get("/health")
async def health_check():
    """Health check endpoint to test server connectivity."""
    return JSONResponse(content={"status": "ok", "message": "Server is running"})


def process_upload(services: Services, file_bytes: bytes, filename: str, data_type: str, notify: bool) -> UploadResponse:
    """Parse, reconcile and alert on one uploaded file. Blocking store and mail calls."""
    try:
        imported = import_file(file_bytes, filename, data_type)
    except ParseError as e:
        logger.warning("Could not parse upload %s: %s", filename, e)
        raise HTTPException(status_code=400, detail=f"Error reading file: {e}")

    result = services.reconciler.reconcile(data_type, imported.records)

    alerts = {'notifications': 0, 'sent': 0, 'failed': 0}
    if notify:
        notification_ids = services.dispatcher.plan_changes(result.changes)
        outcome = services.dispatcher.send_bulk(notification_ids)
        alerts = {'notifications': len(notification_ids), 'sent': outcome.sent, 'failed': outcome.failed}

    logger.info(
        "Upload %s (%s): %d saved, %d errors, %d rejected rows",
        filename, data_type, result.saved_count, result.error_count, imported.summary.rejected_rows
    )

    return UploadResponse(
        success=True,
        message=f"Successfully processed {result.saved_count} records",
        summary=imported.summary,
        quality=imported.quality,
        saved_count=result.saved_count,
        errors=result.errors,
        error_count=result.error_count,
        alerts=alerts,
    )


@app.post("/upload", response_model=UploadResponse)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    dataType: Optional[str] = Form(None),
    notify: bool = Form(True),
    services: Services = Depends(get_services),
):
    """Import a students/attendance/assessments/fees file and save its records."""
    if file is None or not dataType:
        raise HTTPException(status_code=400, detail="File and data type are required")
    if dataType not in RECORD_KINDS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid data type '{dataType}'. Expected one of: {', '.join(RECORD_KINDS)}"
        )

    file_bytes = await file.read()
    if len(file_bytes) > services.settings.max_upload_size:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size: {services.settings.max_upload_size_mb}MB"
        )

    filename = file.filename or ''
    if detect_file_format(filename) == 'unknown':
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Please upload a CSV or Excel file (.csv, .xlsx, .xls)"
        )

    return await run_in_threadpool(process_upload, services, file_bytes, filename, dataType, notify)


@app.post("/students/{student_ref}/risk", response_model=RiskResponse)
def compute_student_risk(
    student_ref: str,
    engagement: Optional[float] = None,
    services: Services = Depends(get_services),
):
    """Recalculate one student's risk and alert on a move into high risk."""
    try:
        entry = services.scorer.compute_risk(student_ref, engagement=engagement)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    alert = services.dispatcher.evaluate_and_notify(student_ref, 'risk', entry=entry)
    return RiskResponse(
        entry=entry,
        display_level=display_risk_level(entry.risk_score, services.settings.risk_thresholds),
        recommendations=generate_recommendations(entry.factors, entry.risk_level),
        alert=alert,
    )


@app.post("/risk/recalculate")
def recalculate_all(services: Services = Depends(get_services)):
    """Score every student and alert on new high-risk students."""
    entries = services.scorer.score_all()
    notification_ids = []
    for entry in entries:
        notification_ids.extend(services.dispatcher.plan(entry.student_ref, 'risk', entry=entry)[1])
    outcome = services.dispatcher.send_bulk(notification_ids)
    return {
        'report': risk_report(entries).model_dump(),
        'alerts_sent': outcome.sent,
    }


@app.get("/students/{student_ref}/risk-history", response_model=List[RiskScoreEntry])
def risk_history(
    student_ref: str,
    limit: Optional[int] = None,
    services: Services = Depends(get_services),
):
    """Risk history for one student, newest first."""
    if services.store.find_by_id(STUDENTS, student_ref) is None:
        raise HTTPException(status_code=404, detail=f"Student {student_ref} not found")
    return services.scorer.history(student_ref, limit=limit)


@app.get("/notifications", response_model=List[NotificationRecord])
def list_notifications(
    type: Optional[str] = None,
    limit: int = 50,
    services: Services = Depends(get_services),
):
    return services.dispatcher.list_notifications(type=type, limit=limit)


@app.post("/notifications/risk-alerts", response_model=AlertSweepResponse)
def send_risk_alerts(services: Services = Depends(get_services)):
    return services.dispatcher.send_risk_alerts()


@app.post("/notifications/attendance-alerts", response_model=AlertSweepResponse)
def send_attendance_alerts(services: Services = Depends(get_services)):
    return services.dispatcher.send_attendance_alerts()


@app.post("/notifications/fee-alerts", response_model=AlertSweepResponse)
def send_fee_alerts(services: Services = Depends(get_services)):
    return services.dispatcher.send_fee_alerts()


@app.post("/notifications/{notification_id}/deliver", response_model=NotificationRecord)
def deliver_notification(notification_id: str, services: Services = Depends(get_services)):
    """Retry delivery of a stored notification."""
    try:
        return services.dispatcher.deliver(notification_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DeliveryError as e:
        raise HTTPException(status_code=502, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
