import logging
import os
from typing import Any, Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db_models import AppLog

# keys lifted out of the structlog event into their own columns
_COLUMNS = ("event", "service", "request_id", "task_id")
_SKIP = {"level", "logger", "timestamp", "_record", "_from_structlog"}

_SessionLocal: Optional[sessionmaker] = None


def _session_factory() -> Optional[sessionmaker]:
    global _SessionLocal
    if _SessionLocal is None:
        url = os.getenv("DATABASE_URL")
        if not url:
            return None
        engine = create_engine(url, pool_pre_ping=True, pool_size=2, max_overflow=0)
        _SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    return _SessionLocal


def db_logging_enabled() -> bool:
    return os.getenv("DB_LOG_ENABLED", "true").lower() not in {"0", "false", "no", "off"}


class DBLogHandler(logging.Handler):
    """
    Stores log events in ``app_logs`` for the admin view.
    Moderate volume only: one short transaction per record.
    """

    def __init__(self, level: int = logging.NOTSET, session_factory: Optional[sessionmaker] = None):
        super().__init__(level)
        self._factory = session_factory

    def _fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        event_dict = record.msg if isinstance(record.msg, dict) else {}
        fields: Dict[str, Any] = {k: event_dict.get(k) or getattr(record, k, None) for k in _COLUMNS}
        data = {k: v for k, v in event_dict.items() if k not in _SKIP and k not in _COLUMNS}
        fields["message"] = str(fields["event"]) if event_dict else record.getMessage()
        fields["data"] = {k: v if isinstance(v, (str, int, float, bool, type(None))) else str(v) for k, v in data.items()} or None
        return fields

    def emit(self, record: logging.LogRecord) -> None:
        # our own inserts would log again
        if record.name.startswith("sqlalchemy"):
            return
        factory = self._factory or _session_factory()
        if factory is None:
            return
        db = None
        try:
            f = self._fields(record)
            db = factory()
            db.add(
                AppLog(
                    level=record.levelname,
                    logger=record.name,
                    service=f["service"],
                    message=f["message"],
                    request_id=f["request_id"],
                    task_id=f["task_id"],
                    event=(str(f["event"])[:128] if f["event"] else None),
                    data=f["data"],
                )
            )
            db.commit()
        except Exception:
            # never crash the app for logging; close() rolls back
            self.handleError(record)
        finally:
            if db is not None:
                db.close()


def install_db_log_handler() -> Optional[DBLogHandler]:
    if not db_logging_enabled():
        return None
    handler = DBLogHandler()
    handler.setLevel(os.getenv("DB_LOG_LEVEL", "INFO").upper())
    logging.getLogger().addHandler(handler)
    return handler
