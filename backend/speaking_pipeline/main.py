import asyncio
import logging
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from .cleanup import fail_stale_gradings
from .db import Base, SessionLocal, engine, ensure_schema
from .dependencies import get_notifier
from .routers import auth, review, speaking_tests, submissions
from .settings import settings

logging.basicConfig(
	level=settings.log_level.upper(),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Speaking Assessment API")
app.include_router(auth.router)
app.include_router(speaking_tests.router)
app.include_router(submissions.router)
app.include_router(review.router)


@app.get("/info")
def info():
	return {
		"status": "ok",
		"gemini_configured": bool(settings.gemini_api_key),
		"fallback_configured": bool(settings.openrouter_api_key),
		"grading_concurrency": settings.grading_concurrency,
	}


def _sweep_once() -> None:
	db = SessionLocal()
	try:
		finalized = fail_stale_gradings(
			db,
			timedelta(minutes=settings.stale_grading_minutes),
			notifier=get_notifier(),
		)
		if finalized:
			logger.warning("Finalized %d stale submission(s)", finalized)
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Stale grading sweep failed")
	finally:
		db.close()


async def _sweep_watcher():
	# Startup already ran one sweep
	while True:
		await asyncio.sleep(settings.sweep_interval_seconds)
		_sweep_once()


@app.on_event("startup")
async def startup_event():
	Base.metadata.create_all(bind=engine)
	# Lightweight dev migrations for databases created by older releases
	ensure_schema()
	_sweep_once()
	asyncio.create_task(_sweep_watcher())
