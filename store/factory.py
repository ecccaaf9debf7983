import logging
import os
from typing import Optional

from store.base import EnrollmentStore
from store.memory_store import InMemoryEnrollmentStore
from store.sqlite_store import SQLiteEnrollmentStore

logger = logging.getLogger("automation_engine")


def get_store(database_url: Optional[str] = None) -> EnrollmentStore:
    """
    Picks the enrollment store from `database_url` (or DATABASE_URL).
    No URL gives the in-memory store; `sqlite://path` gives a SQLite file.
    """
    database_url = database_url or os.getenv("DATABASE_URL")

    if not database_url:
        logger.warning("No DATABASE_URL configured, enrollments are kept in memory only.")
        return InMemoryEnrollmentStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        logger.info(f"Using SQLite enrollment store at {path}")
        return SQLiteEnrollmentStore(path)

    raise ValueError(f"Unsupported database backend: {database_url}")
