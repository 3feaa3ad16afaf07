# dupkite/app.py
# FastAPI backend for civic crowd-reporting: geotagged reports with photos on a map
# Submission with per-client cooldown, public read of verified reports,
# optional token verification, scheduled cleanup and admin status updates

import hashlib
import time
import uuid
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .cleanup import authorize, cleanup
from .clock import Clock, now_ms, utcnow
from .config import Settings, get_settings
from .database import PostgresReportStore, ReportStore, close_pool
from .errors import BackendUnconfigured, InvalidToken, ReportError, ReportNotFound
from .logging_config import get_access_logger, get_logger, setup_logging
from .models import ImageUpload, Report, StatusUpdateRequest
from .rate_gate import MemoryKeyValueStore, RateGate, identify
from .reader import ReportFilters, ReportReader
from .storage import PhotoStorage, SupabaseStorage
from .validation import validate_fields, validate_images
from .verification import MSG_MISSING_TOKEN, LoggingNotifier, VerificationNotifier, verify
from .writer import ReportWriter

_settings = get_settings()

setup_logging(
    log_level=_settings.log_level,
    log_dir=_settings.log_dir,
    enable_json=_settings.enable_json_logs,
    enable_console=True,
    enable_file=_settings.enable_file_logs
)

logger = get_logger(__name__)
access_logger = get_access_logger()

logger.info("Settings loaded", extra={"log_level": _settings.log_level})

MSG_UNCONFIGURED = "Сървърът не е конфигуриран."
MSG_READ_FAILED = "Грешка при зареждане на сигналите."
MSG_VERIFY_FAILED = "Грешка при потвърждение."
MSG_CLEANUP_FAILED = "Cleanup failed"
MSG_ADMIN_UNCONFIGURED = "Административният достъп не е конфигуриран."


def client_key(request: Request) -> str:
    return identify(request.headers)


# Request ceiling for read and verify endpoints; submissions go through the RateGate
limiter = Limiter(key_func=client_key)
app = FastAPI(
    title="Dupkite Civic Reports API",
    version=__version__,
    description="Citizen reports of road and infrastructure issues, with photos, for the municipal map"
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ReportError)
async def report_error_handler(request: Request, exc: ReportError):
    """Domain failures carry their own status and localized message"""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc}")
    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation failed",
            "details": [
                {
                    "field": ".".join(str(loc) for loc in error["loc"]),
                    "message": error["msg"],
                    "type": error["type"]
                }
                for error in exc.errors()
            ]
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with logging"""
    logger.error(f"Unexpected error for {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


@app.on_event("shutdown")
async def shutdown():
    try:
        logger.info("Closing database connection pool")
        await close_pool()
    except Exception as e:
        logger.error(f"Error closing connection pool: {e}", exc_info=True)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Request/response tracking with a per-request id"""
    client_id = identify(request.headers)
    request_id = hashlib.md5(f"{time.time()}{client_id}{request.url.path}".encode()).hexdigest()[:12]
    start_time = time.time()

    access_logger.info(
        f"Incoming request: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "method": request.method,
            "endpoint": request.url.path,
            "client_id": client_id,
        }
    )

    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = (time.time() - start_time) * 1000
        logger.error(
            f"Request failed: {request.method} {request.url.path} - {e}",
            extra={"request_id": request_id, "duration_ms": round(duration_ms, 2)},
            exc_info=True
        )
        raise

    duration_ms = (time.time() - start_time) * 1000
    access_logger.info(
        f"Request completed: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "endpoint": request.url.path
        }
    )
    if duration_ms > 5000:
        logger.warning(
            f"Slow request detected: {request.method} {request.url.path}",
            extra={"request_id": request_id, "duration_ms": round(duration_ms, 2)}
        )
    return response


# --- Dependencies ---

def get_store(settings: Settings = Depends(get_settings)) -> Optional[ReportStore]:
    """Row store, or None when POSTGRES_URL is missing"""
    if not settings.database_configured:
        return None
    return PostgresReportStore(settings.postgres_url)


def get_storage(settings: Settings = Depends(get_settings)) -> Optional[PhotoStorage]:
    """Blob store, or None when Supabase credentials are missing"""
    if not settings.storage_configured:
        return None
    return SupabaseStorage(settings.supabase_url, settings.supabase_service_key)


_rate_gate: Optional[RateGate] = None


def get_rate_gate(settings: Settings = Depends(get_settings)) -> RateGate:
    global _rate_gate
    if _rate_gate is None:
        _rate_gate = RateGate(
            MemoryKeyValueStore(),
            window_seconds=settings.rate_limit_window_seconds,
            exempt=settings.rate_limit_exempt,
            enabled=not settings.is_development,
        )
        logger.info(
            "Rate gate ready",
            extra={"context": {"enabled": _rate_gate.enabled, "exempt": len(_rate_gate.exempt)}}
        )
    return _rate_gate


def get_clock() -> Clock:
    return utcnow


def get_notifier() -> VerificationNotifier:
    return LoggingNotifier()


# --- Health and Info Endpoints ---

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Dupkite Civic Reports API",
        "version": __version__,
        "status": "operational",
        "endpoints": {
            "reports": "/reports",
            "submit": "/reports/submit",
            "verify": "/verify",
            "cleanup": "/cron/cleanup",
        }
    }


@app.get("/health")
async def health_check(store: Optional[ReportStore] = Depends(get_store)):
    if store is None:
        raise BackendUnconfigured(MSG_UNCONFIGURED)
    try:
        await store.ping()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "unreachable"})
    return {"status": "healthy", "database": "connected", "timestamp": now_ms()}


# --- Reports ---

@app.get("/reports")
@limiter.limit(_settings.read_rate_limit)
async def list_reports(
    request: Request,
    category: Optional[str] = Query(None),
    settlement: Optional[str] = Query(None),
    municipality: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    store: Optional[ReportStore] = Depends(get_store),
    storage: Optional[PhotoStorage] = Depends(get_storage),
):
    """Verified reports with photos, newest first"""
    filters = ReportFilters.from_query(category, settlement, municipality)
    logger.info("Listing reports", extra={"context": vars(filters)})

    if store is None:
        logger.warning("Row store not configured, returning no reports")
        return {"reports": []}

    reader = ReportReader(store, storage, settings.storage_bucket, settings.reports_read_limit)
    try:
        reports = await reader.list(filters)
    except Exception as e:
        logger.error(f"Report query failed: {e}", exc_info=True)
        return {"error": MSG_READ_FAILED, "reports": []}

    logger.info(f"Returning {len(reports)} reports")
    return JSONResponse(
        content=jsonable_encoder({"reports": reports}),
        headers={"Cache-Control": "no-store, max-age=0"}
    )


@app.post("/reports/submit")
async def submit_report(
    request: Request,
    lat: Optional[str] = Form(None),
    lng: Optional[str] = Form(None),
    severity: Optional[str] = Form(None),
    comment: Optional[str] = Form(None),
    first_name: Optional[str] = Form(None),
    last_name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    settlement: Optional[str] = Form(None),
    settlement_custom: Optional[str] = Form(None),
    municipality: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    settings: Settings = Depends(get_settings),
    store: Optional[ReportStore] = Depends(get_store),
    storage: Optional[PhotoStorage] = Depends(get_storage),
    gate: RateGate = Depends(get_rate_gate),
    clock: Clock = Depends(get_clock),
    notifier: VerificationNotifier = Depends(get_notifier),
):
    """Create a report with 1-5 photos; one successful submission per client per window"""
    client_id = identify(request.headers)
    reservation = gate.reserve(client_id)

    try:
        submission = validate_fields({
            "lat": lat,
            "lng": lng,
            "severity": severity,
            "comment": comment,
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "category": category,
            "settlement": settlement,
            "settlement_custom": settlement_custom,
            "municipality": municipality,
        }, settings)

        uploads = [
            ImageUpload(filename=f.filename or "", content_type=f.content_type, data=await f.read())
            for f in images or []
        ]
        uploads = validate_images(uploads, settings)

        if store is None or storage is None:
            logger.warning("Submission refused: backend not configured")
            raise BackendUnconfigured(MSG_UNCONFIGURED)

        writer = ReportWriter(store, storage, settings, clock=clock, notifier=notifier)
        report = await writer.submit(submission, uploads)
    except Exception:
        gate.release(reservation)
        raise

    return {"success": True, "id": report.id, "report": jsonable_encoder(report)}


@app.post("/reports/{report_id}/status")
async def update_report_status(
    report_id: str,
    body: StatusUpdateRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    store: Optional[ReportStore] = Depends(get_store),
    clock: Clock = Depends(get_clock),
):
    """Administrative status change; requires the ADMIN_SECRET bearer token"""
    if not settings.admin_secret:
        raise BackendUnconfigured(MSG_ADMIN_UNCONFIGURED)
    authorize(settings.admin_secret, request.headers.get("authorization"))

    try:
        report_id = str(uuid.UUID(report_id))
    except ValueError:
        raise ReportNotFound()

    if store is None:
        raise BackendUnconfigured(MSG_UNCONFIGURED)

    row = await store.update_status(report_id, body.status.value, clock())
    if row is None:
        raise ReportNotFound()

    logger.info(f"Report status set to {body.status.value}", extra={"report_id": report_id})
    return {"success": True, "report": jsonable_encoder(Report(**row))}


# --- Verification ---

@app.post("/verify")
@limiter.limit("20/minute")
async def verify_report(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: Optional[ReportStore] = Depends(get_store),
):
    if not settings.require_verification:
        return JSONResponse(status_code=404, content={"success": False, "error": "Not found"})

    try:
        body = await request.json()
    except ValueError:
        body = None
    token = body.get("token") if isinstance(body, dict) else None
    if not isinstance(token, str) or not token.strip():
        return JSONResponse(status_code=400, content={"success": False, "error": MSG_MISSING_TOKEN})

    if store is None:
        return JSONResponse(status_code=503, content={"success": False, "error": MSG_UNCONFIGURED})

    try:
        await verify(store, token)
    except InvalidToken as e:
        return JSONResponse(status_code=400, content={"success": False, "error": e.message})
    except Exception as e:
        logger.error(f"Verification failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": MSG_VERIFY_FAILED})

    return {"success": True}


# --- Scheduled cleanup ---

@app.get("/cron/cleanup")
async def cron_cleanup(
    request: Request,
    max_age_hours: Optional[float] = Query(None, gt=0),
    settings: Settings = Depends(get_settings),
    store: Optional[ReportStore] = Depends(get_store),
    storage: Optional[PhotoStorage] = Depends(get_storage),
    clock: Clock = Depends(get_clock),
):
    """Delete unverified reports older than the configured age (Vercel cron target)"""
    authorize(settings.cron_secret, request.headers.get("authorization"))

    if store is None or storage is None:
        raise BackendUnconfigured(MSG_UNCONFIGURED)

    hours = max_age_hours or settings.cleanup_max_age_hours
    try:
        deleted = await cleanup(store, storage, settings.storage_bucket, max_age_hours=hours, clock=clock)
    except Exception as e:
        logger.error(f"Cleanup failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": MSG_CLEANUP_FAILED})

    return {"deleted": deleted}
