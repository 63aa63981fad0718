from fastapi import FastAPI
from civicboard.db import Base, engine
import civicboard.models  # noqa: F401 ensure models are imported so tables are known
from civicboard import config
from civicboard.api.routes import router as api_router, get_reclassifier
from civicboard.scheduler import build_scheduler, start_scheduler
from civicboard.utils import logger

# create FastAPI instance
app = FastAPI(title="civicboard")
app.include_router(api_router)


@app.on_event("startup")
def on_startup_create_tables():
    # Ensure database tables are created on startup
    Base.metadata.create_all(bind=engine)


@app.on_event("startup")
def on_startup_start_scheduler():
    if not config.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled")
        return
    reclassifier = get_reclassifier()
    app.state.scheduler = start_scheduler(build_scheduler(reclassifier, reclassifier.tz))


@app.on_event("shutdown")
def on_shutdown_stop_scheduler():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
