# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Schedule Engine - FastAPI Backend
Main application entry point
"""
from fastapi import FastAPI
from contextlib import asynccontextmanager
import uvicorn
import logging
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Import settings for environment configuration
from config import settings, get_schedule_config

# Configure logging based on environment
log_level = logging.DEBUG if settings.debug else logging.INFO
logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)
logger.info(f"Starting in {settings.environment} mode (debug={settings.debug})")

# Import database setup
from db.database import init_db, dispose_engine
import models  # Import models to register them with Base


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("Starting schedule engine...")

    schedule_config = get_schedule_config()

    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        logger.error("Make sure PostgreSQL is running: docker-compose up -d postgres")
        raise

    # Counters may be stale after a crash; rebuild them from in-flight records
    try:
        from services.concurrency_counter import ConcurrencyCounter
        recovered = await ConcurrencyCounter(config=schedule_config).recover_from_records()
        logger.info(f"Recovered concurrency counters for {len(recovered)} account(s)")
    except Exception as e:
        logger.warning(f"Concurrency counter recovery failed: {e}")

    # Start schedule execution queue workers (only when handlers run in this process)
    if settings.schedule_queue_workers > 0:
        try:
            from core.task_queue import task_queue
            task_queue.start_workers(num_workers=settings.schedule_queue_workers)
            logger.info(f"Schedule execution queue workers started ({settings.schedule_queue_workers} workers)")
        except Exception as e:
            logger.error(f"Failed to start queue workers: {e}")
            # Don't fail startup - jobs stay queued until workers run
    else:
        logger.info("No in-process queue workers; jobs are left for the execution engine")

    # Subscribe reconciler and reclaimer to execution engine and canvas signals
    listeners = None
    try:
        from core.task_queue import task_queue
        from services.event_bus import get_event_bus
        from services.schedule.listeners import create_schedule_handlers, register_schedule_listeners

        listeners = create_schedule_handlers(task_queue, schedule_config, origin=settings.origin)
        register_schedule_listeners(get_event_bus(), *listeners)
        logger.info("Schedule listeners registered")
    except Exception as e:
        logger.error(f"Failed to register schedule listeners: {e}", exc_info=True)

    # Start workflow scheduler service
    try:
        from services.scheduler_service import start_scheduler
        await start_scheduler()
        logger.info("Workflow scheduler service started")
    except Exception as e:
        logger.warning(f"Workflow scheduler failed to start: {e}. Scheduled workflows will not run automatically.")

    logger.info("Schedule engine startup complete")

    yield  # Server is running

    # Shutdown
    logger.info("Shutting down schedule engine...")

    # Shutdown workflow scheduler service (before task queue)
    try:
        from services.scheduler_service import stop_scheduler
        await stop_scheduler()
        logger.info("Workflow scheduler service stopped")
    except Exception as e:
        logger.error(f"Error stopping workflow scheduler: {e}")

    if listeners:
        try:
            from services.event_bus import get_event_bus
            from services.schedule.listeners import unregister_schedule_listeners
            unregister_schedule_listeners(get_event_bus(), *listeners)
        except Exception as e:
            logger.error(f"Error unregistering schedule listeners: {e}")

    # Shutdown queue workers
    try:
        from core.task_queue import task_queue
        await task_queue.shutdown(timeout=30)
        logger.info("Schedule execution queue workers stopped")
    except Exception as e:
        logger.error(f"Error stopping queue workers: {e}")

    # Dispose database engine
    try:
        dispose_engine()
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")

    logger.info("Shutdown complete")

# Create FastAPI app with lifespan
app = FastAPI(
    title="Schedule Engine API",
    description="""
    # Scheduled Workflow Execution Engine

    Scans due cron schedules, enforces per-account quotas, dispatches
    executions to a PostgreSQL-backed priority queue and reconciles their
    outcomes into schedule history.
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",  # Swagger UI
    redoc_url="/redoc",  # ReDoc
    openapi_url="/openapi.json",
    license_info={
        "name": "MIT License",
        "url": "https://opensource.org/licenses/MIT"
    }
)

# Register standardized error handlers
from core.error_handlers import register_error_handlers
register_error_handlers(app)


@app.get("/")
async def root():
    return {
        "app": "Schedule Engine",
        "version": "0.1.0",
        "description": "Scheduled workflow execution engine"
    }

# Import and register API routers
from api.system import health
from api.schedules import routes as schedules

app.include_router(health.router)
app.include_router(schedules.router)  # Scheduler stats, cron validation, on-demand check

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="localhost",
        port=8765,
        reload=True
    )
