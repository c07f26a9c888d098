"""
kintone User Sync - Admin API
FastAPI application exposing the kintone -> Supabase user sync: batch and
full sync, webhook single-user sync, CSV import/export/delete and debug tools.

Supports both local development (SQLite + APScheduler) and
Vercel deployment (PostgreSQL + Cron Jobs)
"""

import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request, BackgroundTasks, Header, File, Form, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from csv_users import decode_upload, delete_rows, export_filename, import_rows, parse_user_csv, render_export
from database import SyncDB, IS_VERCEL
from errors import ConfigurationError, SyncInProgressError, UpstreamError, ValidationError
from kintone_client import KintoneClient, extract_email
from reconciler import build_index
from supabase_client import SupabaseAdminClient
from sync_engine import (
    Config,
    UserSyncEngine,
    is_sync_in_progress,
    load_config,
    probe_record_source,
)

# APScheduler for background job scheduling (only used locally, not on Vercel)
SCHEDULER_AVAILABLE = False
if not IS_VERCEL:
    try:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.interval import IntervalTrigger
        SCHEDULER_AVAILABLE = True
    except ImportError:
        logging.warning("APScheduler not installed. Background sync disabled.")
else:
    logging.info("Running on Vercel - using Cron Jobs instead of APScheduler")

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
WEBHOOK_EVENTS = ("ADD_RECORD", "UPDATE_RECORD")

# Global clients
sync_config: Optional[Config] = None
kintone_client = None
supabase_client = None
db = None
scheduler = None  # APScheduler instance

scheduler_state = {
    "enabled": False,
    "mode": "vercel_cron" if IS_VERCEL else "apscheduler",
    "interval_minutes": None,
    "last_run": None,
    "next_run": None,
    "runs": 0,
}


# ============================================
# CLIENT WIRING
# ============================================

def get_config() -> Config:
    global sync_config
    if sync_config is None:
        sync_config = load_config()
    return sync_config


def get_kintone():
    """kintone client, built on first use (Vercel runs without lifespan)"""
    global kintone_client
    if kintone_client is None:
        cfg = get_config()
        cfg.require_kintone()
        kintone_client = KintoneClient(cfg.kintone["subdomain"], cfg.kintone["app_id"],
                                       cfg.kintone["api_token"])
    return kintone_client


def get_supabase():
    global supabase_client
    if supabase_client is None:
        cfg = get_config()
        cfg.require_supabase()
        supabase_client = SupabaseAdminClient(cfg.supabase["url"], cfg.supabase["service_role_key"])
    return supabase_client


def get_db(required: bool = False):
    global db
    if db is None:
        try:
            db = SyncDB(get_config().database.get("path", "sync.db"))
        except Exception as e:
            logger.error(f"Failed to open sync state database: {e}")
            if required:
                raise ConfigurationError(f"Sync state database unavailable: {e}")
    return db


def get_engine() -> UserSyncEngine:
    return UserSyncEngine(get_config(), get_kintone(), get_supabase(), db=get_db())


def index_accounts(store):
    sync_opts = get_config().sync
    return build_index(store, page_size=int(sync_opts.get("account_page_size", 1000)),
                       max_pages=int(sync_opts.get("account_max_pages", 10)))


async def run_blocking(func, *args, **kwargs):
    return await asyncio.get_event_loop().run_in_executor(None, partial(func, *args, **kwargs))


# ============================================
# SCHEDULER
# ============================================

async def run_scheduled_sync():
    """Background job: resume the full sync from the persisted cursor"""
    global scheduler_state
    try:
        engine = get_engine()
    except ConfigurationError as e:
        logger.warning(f"Scheduled sync skipped: {e}")
        return

    scheduler_state["last_run"] = datetime.now().isoformat()
    scheduler_state["runs"] += 1
    try:
        result = await run_blocking(engine.run_scheduled)
        logger.info(f"Scheduled sync complete: {result.message}")
    except SyncInProgressError as e:
        logger.info(f"Scheduled sync skipped: {e}")
    except Exception as e:
        logger.error(f"Scheduled sync failed: {e}")
    update_scheduler_next_run()


def update_scheduler_next_run():
    if scheduler and scheduler.running:
        job = scheduler.get_job('kintone_user_sync')
        if job and job.next_run_time:
            scheduler_state["next_run"] = job.next_run_time.isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown"""
    global scheduler

    # Startup
    cfg = get_config()
    for name, build in [("kintone", get_kintone), ("Supabase", get_supabase)]:
        try:
            build()
            logger.info(f"✓ {name} client initialized")
        except ConfigurationError as e:
            logger.warning(f"{name} client disabled: {e}")
    get_db()

    if SCHEDULER_AVAILABLE and cfg.sync.get("scheduler_enabled"):
        try:
            interval = int(cfg.sync.get("scheduler_interval_minutes", 30))
            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                run_scheduled_sync,
                IntervalTrigger(minutes=interval),
                id='kintone_user_sync',
                name='kintone User Sync',
                replace_existing=True
            )
            scheduler.start()
            scheduler_state["enabled"] = True
            scheduler_state["interval_minutes"] = interval
            update_scheduler_next_run()
            logger.info(f"✓ Background scheduler started (user sync every {interval} min)")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            scheduler_state["enabled"] = False

    logger.info("✓ kintone User Sync server started")

    yield

    # Shutdown
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("✓ Scheduler shut down")


# Initialize FastAPI app with lifespan
app = FastAPI(
    title="kintone User Sync",
    description="Synchronizes kintone member records into Supabase auth users",
    version=VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================
# ERROR HANDLING
# ============================================

def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"success": False, "error": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return error_response(500, str(exc), missing=exc.missing)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return error_response(400, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "Invalid request", details=jsonable_errors(exc))


@app.exception_handler(SyncInProgressError)
async def sync_in_progress_handler(request: Request, exc: SyncInProgressError):
    return error_response(409, str(exc), skipped=True, holder=exc.holder)


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    logger.error(f"Upstream error on {request.url.path}: {exc}")
    return error_response(502, str(exc), service=exc.service, statusCode=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return error_response(500, str(exc) or exc.__class__.__name__)


def jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()]


# ============================================
# MODELS
# ============================================

class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str


class SyncRequest(BaseModel):
    batchSize: Optional[int] = None
    offset: Optional[Union[int, str]] = None
    emailFieldCode: Optional[str] = None
    query: Optional[str] = None
    singleUser: Optional[str] = None
    processAll: bool = False
    maxBatches: Optional[int] = None
    deleteOrphanedUsers: bool = False
    timeBudgetSeconds: Optional[float] = None


class DeleteAllRequest(BaseModel):
    confirm: bool = False
    dryRun: bool = False


# ============================================
# HEALTH & DEBUG
# ============================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(),
        version=VERSION
    )


@app.get("/api/debug/status")
async def debug_status():
    """Debug endpoint to diagnose client initialization"""
    cfg = get_config()
    return {
        "config_problems": cfg.validate(),
        "is_vercel": IS_VERCEL,
        "kintone_client_ready": kintone_client is not None,
        "supabase_client_ready": supabase_client is not None,
        "db_initialized": db is not None,
        "sync_in_progress": is_sync_in_progress(),
        "scheduler": scheduler_state,
    }


# ============================================
# SYNC
# ============================================

@app.get("/sync")
async def sync_info(test: Optional[str] = None):
    """Connectivity probes (?test=external) or a description of the endpoint"""
    if test is not None:
        if test not in ("external", "kintone"):
            raise ValidationError(f"Unknown test '{test}', use test=external")
        result = await run_blocking(probe_record_source, get_kintone())
        return JSONResponse(status_code=200 if result["success"] else 502, content=result)

    return {
        "success": True,
        "endpoint": "POST /sync",
        "body": {
            "batchSize": "records per batch (default from config)",
            "offset": "resume cursor: number or 'id:<recordId>'",
            "emailFieldCode": "kintone email field code",
            "query": "kintone filter expression; the default group filter applies when omitted",
            "singleUser": "email of one user to sync",
            "processAll": "loop batches until done, maxBatches or the time budget",
            "maxBatches": "batch limit for processAll",
            "deleteOrphanedUsers": "delete users no kintone record references",
            "timeBudgetSeconds": "wall-clock budget for processAll",
        },
        "tests": ["GET /sync?test=external"],
    }


def _sync(payload: SyncRequest) -> Dict[str, Any]:
    engine = get_engine()
    started = time.monotonic()
    extra = {}

    if payload.singleUser:
        result = engine.sync_one(payload.singleUser, payload.emailFieldCode)
    else:
        with engine.lease():
            if payload.processAll:
                result = engine.run_all(payload.offset, page_size=payload.batchSize, query=payload.query,
                                        email_field_code=payload.emailFieldCode,
                                        max_batches=payload.maxBatches,
                                        time_budget=payload.timeBudgetSeconds)
            else:
                result = engine.run_batch(payload.offset, page_size=payload.batchSize, query=payload.query,
                                          email_field_code=payload.emailFieldCode)

            if payload.deleteOrphanedUsers and result.success:
                extra = engine.delete_orphans(payload.query, payload.emailFieldCode)
                result.deleted = extra["deletedCount"]

    if result.duration_seconds is None:
        result.duration_seconds = time.monotonic() - started
    body = result.to_dict()
    body.update(extra)
    return body


@app.post("/sync")
async def run_sync(payload: Optional[SyncRequest] = None):
    """Single batch, full run (processAll) or single user sync"""
    payload = payload or SyncRequest()
    body = await run_blocking(_sync, payload)

    if body["success"]:
        return body
    if payload.singleUser and body["processed"] == 0:
        return JSONResponse(status_code=404, content=body)
    return JSONResponse(status_code=502, content=body)


@app.get("/sync/activities")
async def list_activities(limit: int = 50):
    """Recent scheduled sync runs"""
    state_db = get_db(required=True)
    activities = await run_blocking(state_db.list_activities, limit)
    return {"success": True, "activities": activities}


# ============================================
# CSV IMPORT / DELETE / EXPORT
# ============================================

async def _read_upload(file: Optional[UploadFile]) -> str:
    if file is None:
        raise ValidationError("No CSV file uploaded (form field 'file')")
    return decode_upload(await file.read())


def _import(text: str, delete_mode: bool) -> Dict[str, Any]:
    started = time.monotonic()
    rows = parse_user_csv(text, require_external_id=delete_mode)
    store = get_supabase()
    index = index_accounts(store)
    if delete_mode:
        report = delete_rows(rows, store, index)
    else:
        chunk_size = int(get_config().sync.get("create_chunk_size", 50))
        report = import_rows(rows, store, index, chunk_size=chunk_size)
    report["duration"] = f"{time.monotonic() - started:.2f}s"
    return report


@app.post("/users/import")
async def import_users(file: UploadFile = File(None), deleteMode: bool = Form(False)):
    """Create/update users from a CSV (email[,kintone_record_id]); deleteMode deletes instead"""
    text = await _read_upload(file)
    return await run_blocking(_import, text, deleteMode)


@app.post("/users/delete")
async def delete_users(file: UploadFile = File(None)):
    """Delete users listed in a CSV; email and kintone_record_id must both match"""
    text = await _read_upload(file)
    return await run_blocking(_import, text, True)


@app.get("/users/export")
async def export_users(format: str = "simple"):
    """Download all users as CSV"""
    store = get_supabase()
    accounts = await run_blocking(store.list_all_users)
    content = render_export(accounts, format)
    filename = export_filename()
    logger.info(f"Exported {len(accounts)} users as {filename} (format={format})")
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/users/list")
async def list_users():
    """Debug dump of all users, split by kintone record id presence"""
    store = get_supabase()
    accounts = await run_blocking(store.list_all_users)
    with_id = [a for a in accounts if a.external_id]
    without_id = [a for a in accounts if not a.external_id]
    return {
        "success": True,
        "total": len(accounts),
        "usersWithExternalId": len(with_id),
        "usersWithoutExternalId": len(without_id),
        "users": [a.to_dict() for a in accounts],
        "usersWithoutExternalIdDetails": [
            {"id": a.id, "email": a.email, "createdAt": a.created_at} for a in without_id
        ],
    }


def _delete_all(dry_run: bool) -> Dict[str, Any]:
    store = get_supabase()
    accounts = store.list_all_users()

    if not accounts:
        return {"success": True, "totalUsers": 0, "deleted": 0, "failed": 0, "errors": [],
                "message": "No users to delete"}

    if dry_run:
        return {
            "success": True,
            "dryRun": True,
            "totalUsers": len(accounts),
            "users": [{"id": a.id, "email": a.email, "externalId": a.external_id,
                       "createdAt": a.created_at} for a in accounts],
            "message": f"{len(accounts)} users would be deleted (dry run, nothing deleted)",
        }

    deleted = 0
    errors = []
    for i, account in enumerate(accounts, start=1):
        try:
            store.delete_user(account.id)
            deleted += 1
        except UpstreamError as e:
            logger.error(f"Failed to delete user {account.email}: {e}")
            errors.append({"userId": account.id, "email": account.email, "error": str(e)})
        if i % 10 == 0 or i == len(accounts):
            logger.info(f"Delete-all progress: {i}/{len(accounts)}")

    return {
        "success": not errors,
        "totalUsers": len(accounts),
        "deleted": deleted,
        "failed": len(errors),
        "errors": errors,
        "message": f"Deleted {deleted} of {len(accounts)} users",
    }


@app.post("/users/delete-all")
async def delete_all_users(payload: Optional[DeleteAllRequest] = None):
    """Delete every user. Requires {"confirm": true}; {"dryRun": true} only lists them"""
    payload = payload or DeleteAllRequest()
    if payload.confirm is not True:
        return error_response(400, 'Pass "confirm": true in the request body to delete all users',
                              warning="This cannot be undone. Take a backup first.")
    logger.warning(f"Delete-all requested (dryRun={payload.dryRun})")
    return await run_blocking(_delete_all, payload.dryRun)


def _lookup_external_id(record_id: str) -> Dict[str, Any]:
    store = get_supabase()
    max_pages = int(get_config().sync.get("account_max_pages", 10))
    accounts = store.list_all_users(max_pages=max_pages)
    linked = [a for a in accounts if a.external_id]

    found = next((a for a in linked if a.metadata.get("kintone_record_id") == record_id), None)
    mismatched = [a for a in linked
                  if str(a.metadata.get("kintone_record_id")) == record_id
                  and a.metadata.get("kintone_record_id") != record_id]

    def describe(account):
        value = account.metadata.get("kintone_record_id")
        return {"id": account.id, "email": account.email, "externalId": value,
                "externalIdType": type(value).__name__}

    return {
        "success": True,
        "recordId": record_id,
        "found": found is not None,
        "user": describe(found) if found else None,
        "totalUsers": len(accounts),
        "usersWithExternalId": len(linked),
        "typeMismatchCount": len(mismatched),
        "typeMismatchUsers": [describe(a) for a in mismatched[:5]],
        "sampleExternalIds": [describe(a)["externalId"] for a in linked[:10]],
    }


@app.get("/users/test-external-id")
async def test_external_id(recordId: Optional[str] = None):
    """Debug lookup of the user linked to a kintone record id"""
    if not recordId or not recordId.strip():
        raise ValidationError("recordId parameter is required")
    return await run_blocking(_lookup_external_id, recordId.strip())


# ============================================
# WEBHOOK & CRON
# ============================================

def _sync_one_from_webhook(email: str):
    try:
        result = get_engine().sync_one(email)
        logger.info(f"Webhook sync for {email}: {result.message}")
    except Exception as e:
        logger.error(f"Webhook sync for {email} failed: {e}")


@app.post("/api/webhook/kintone")
async def kintone_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Webhook endpoint for kintone record notifications.
    kintone sends POST with {"type": "ADD_RECORD"|"UPDATE_RECORD", "record": {...}}.
    """
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Webhook body must be JSON")

    event_type = body.get("type", "unknown")
    if event_type not in WEBHOOK_EVENTS:
        return {"status": "ignored", "message": f"Event {event_type} is not synced"}

    get_config().require_kintone()
    get_config().require_supabase()
    field_code = get_config().kintone.get("email_field_code") or "email"
    email = extract_email(body.get("record") or {}, field_code)
    if not email:
        return {"status": "ignored", "message": "No email in record"}

    background_tasks.add_task(_sync_one_from_webhook, email)
    logger.info(f"✓ Queued sync for {email} (event: {event_type})")
    return {"status": "success", "message": f"Sync queued for {email}"}


def verify_cron_auth(authorization: Optional[str]) -> bool:
    """Verify cron request authorization"""
    cron_secret = os.environ.get('CRON_SECRET')
    if cron_secret and authorization != f"Bearer {cron_secret}":
        return False
    return True


@app.get("/api/cron/sync")
async def cron_sync(authorization: Optional[str] = Header(None)):
    """
    Cron endpoint for the resumable full sync (called by Vercel Cron).
    Secured by CRON_SECRET environment variable.
    """
    if not verify_cron_auth(authorization):
        logger.warning("Unauthorized cron request attempted")
        return JSONResponse(status_code=401, content={"status": "error", "message": "Unauthorized"})

    engine = get_engine()
    if engine.db is None:
        raise ConfigurationError("Sync state database unavailable")
    try:
        result = await run_blocking(engine.run_scheduled)
    except SyncInProgressError as e:
        logger.info(f"Cron sync skipped: {e}")
        return {"status": "skipped", "message": "Sync already running, skipped"}

    return {
        "status": "success" if result.success else "error",
        "message": result.message,
        "results": result.to_dict(),
    }


# Create a simple startup script
def start_server():
    """Start the server manually"""
    import uvicorn
    print("Starting kintone User Sync API...")
    print("API Documentation at: http://localhost:8000/docs")
    print("Press Ctrl+C to stop the server")
    try:
        uvicorn.run(app, host="0.0.0.0", port=8000)
    except KeyboardInterrupt:
        print("\nServer stopped")


if __name__ == "__main__":
    start_server()
