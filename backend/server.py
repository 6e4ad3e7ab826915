from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import notifications, workers, webhooks, zalo

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SCHEDULER_TIMEZONE = os.environ.get('NOTIFICATION_DEFAULT_TIMEZONE', 'Asia/Ho_Chi_Minh')

from job_runner import (
    run_zalo_token_refresh,
    run_notification_outbox_worker,
    run_notification_job_sweeper,
)

# (job id, display name, runner, trigger)
SCHEDULED_JOBS = [
    # Zalo OA access token expires hourly; refresh well ahead of it
    ("zalo_token_refresh", "Zalo OA Token Refresh", run_zalo_token_refresh,
     IntervalTrigger(minutes=45, timezone=SCHEDULER_TIMEZONE)),
    # Quiet-hours deferrals whose window closed, and provider retries
    ("notification_outbox_worker", "Notification Outbox Worker", run_notification_outbox_worker,
     CronTrigger(minute="*", timezone=SCHEDULER_TIMEZONE)),
    # Jobs whose creation-time background dispatch never ran
    ("notification_job_sweeper", "Notification Job Sweeper", run_notification_job_sweeper,
     CronTrigger(minute="*", timezone=SCHEDULER_TIMEZONE)),
]


def build_jobstores() -> dict:
    """Persist scheduler state in Mongo so jobs survive restarts; memory store if that fails."""
    db_name = os.environ.get('DB_NAME', 'notification_dispatch')
    try:
        from pymongo import MongoClient
        store = MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=MongoClient(os.environ.get('MONGO_URL', 'mongodb://localhost:27017'))
        )
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
        return {'default': store}
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        return {}


scheduler = AsyncIOScheduler(jobstores=build_jobstores(), timezone=SCHEDULER_TIMEZONE)


def register_scheduled_jobs(target: AsyncIOScheduler):
    for job_id, name, runner, trigger in SCHEDULED_JOBS:
        target.add_job(runner, trigger, id=job_id, name=name, replace_existing=True)
    logger.info(f"Registered {len(SCHEDULED_JOBS)} scheduled notification jobs")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Notification Dispatch API")
    await database.connect()

    run_scheduler = not os.environ.get("PYTEST_RUNNING")
    if run_scheduler:
        register_scheduled_jobs(scheduler)
        scheduler.start()
        logger.info("Background job scheduler started")
    else:
        logger.info("PYTEST_RUNNING set: background scheduler not started")

    yield

    logger.info("Shutting down Notification Dispatch API")
    if run_scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()


app = FastAPI(
    title="Notification Dispatch API",
    description="Multi-channel notification dispatch: in-app, push, email, SMS, Zalo, Viber",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(notifications.router)
app.include_router(workers.router)
app.include_router(webhooks.router)
app.include_router(zalo.router)


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "scheduler_running": scheduler.running,
    }


def jsonable_errors(errors):
    """Pydantic v2 error ctx may carry exception objects; keep the JSON-safe parts."""
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = jsonable_errors(exc.errors())
    logger.warning(
        f"Validation failed request_id={request_id} path={request.url.path} "
        f"errors={[(e['loc'], e['type']) for e in errors]}"
    )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8001")),
        reload=os.getenv("ENVIRONMENT") == "development"
    )
