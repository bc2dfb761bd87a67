from __future__ import annotations
import logging

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url or "sqlite:///./app.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Additive columns introduced after the first deployments: (table, column, DDL)
_ADDED_COLUMNS = [
	("auth_users", "role", "VARCHAR(20) DEFAULT 'student' NOT NULL"),
	("speaking_questions", "max_points", "FLOAT DEFAULT 100 NOT NULL"),
	("speaking_submissions", "needs_review", "BOOLEAN DEFAULT 0 NOT NULL"),
	("speaking_submissions", "is_passed", "BOOLEAN"),
	("speaking_submissions", "grading_started_at", "DATETIME"),
	("speaking_answers", "grading_status", "VARCHAR(20) DEFAULT 'pending' NOT NULL"),
	("speaking_answers", "failure_reason", "VARCHAR(64)"),
	("speaking_answers", "needs_review", "BOOLEAN DEFAULT 0 NOT NULL"),
]


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema(bind=None) -> None:
	bind = bind or engine
	try:
		inspector = inspect(bind)
		tables = set(inspector.get_table_names())
	except Exception:
		logger.warning("Schema inspection failed; skipping lightweight migrations", exc_info=True)
		return
	with bind.begin() as conn:
		for table, column, ddl in _ADDED_COLUMNS:
			if table not in tables:
				continue
			cols = {c["name"] for c in inspector.get_columns(table)}
			if column not in cols:
				logger.info("Adding column %s.%s", table, column)
				conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
