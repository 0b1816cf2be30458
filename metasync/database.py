"""METASYNC: Database Engine & Session Factory.

One engine per process, shared by request handlers and the scheduled sync.
Functions that touch the database take an optional ``bind`` so tests can point
them at their own engine.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from metasync.config import settings
from metasync.core.logging import get_logger
from metasync.models.reporting_models import AdsReporting

logger = get_logger("database")

db_url = settings.effective_database_url

REPORTING_TABLE = AdsReporting.__tablename__


def _mask_url(url: str) -> str:
    """Hide the password in a DB URL before it reaches a log or a response."""
    if "@" not in url:
        return url
    credentials, host = url.split("@", 1)
    scheme, _, userinfo = credentials.rpartition("//")
    if ":" not in userinfo:
        return url
    user = userinfo.split(":", 1)[0]
    return f"{scheme}//{user}:****@{host}"


def backend_name(url: str) -> str:
    return "sqlite" if url.startswith("sqlite") else "postgresql"


def build_engine(url: str) -> Engine:
    """Engine with per-backend pool settings."""
    engine_kwargs: dict = {"echo": False}
    if backend_name(url) == "sqlite":
        # Sync runs write from scheduler and request threads
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10
        engine_kwargs["pool_recycle"] = 300
    return create_engine(url, **engine_kwargs)


engine = build_engine(db_url)
logger.info(
    f"Reporting store on {backend_name(db_url)}: {_mask_url(db_url)}",
    extra={"backend": backend_name(db_url)},
)


def check_connection(bind: Optional[Engine] = None) -> bool:
    """SELECT 1 against the store. Failures are logged, not raised."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def missing_tables(bind: Optional[Engine] = None) -> List[str]:
    existing = set(inspect(bind or engine).get_table_names())
    return [name for name in SQLModel.metadata.tables if name not in existing]


def init_db(bind: Optional[Engine] = None) -> None:
    """Create the reporting table if it is not there yet."""
    bind = bind or engine
    created = missing_tables(bind)
    SQLModel.metadata.create_all(bind)
    table = SQLModel.metadata.tables[REPORTING_TABLE]
    logger.info(
        f"Table {REPORTING_TABLE} ready "
        f"({'created' if REPORTING_TABLE in created else 'existing'}, "
        f"{len(table.primary_key.columns)}-column key, {len(table.columns)} columns)"
    )


def database_status(bind: Optional[Engine] = None) -> Dict[str, Any]:
    bind = bind or engine
    url = bind.url.render_as_string(hide_password=True)
    connected = check_connection(bind)
    return {
        "connected": connected,
        "backend": backend_name(url),
        "url": url,
        "reporting_table": connected and not missing_tables(bind),
    }


def get_session():
    """Dependency: yields a DB session."""
    with Session(engine) as session:
        yield session
