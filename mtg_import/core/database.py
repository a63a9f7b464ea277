"""SQLAlchemy engine, session, dependency e creazione tabelle."""

import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from mtg_import.core.config import get_database_url

logger = logging.getLogger(__name__)


def make_engine(url: str):
    """
    Crea l'engine. Per SQLite in memoria (sviluppo/test) usa una sola connessione
    condivisa, altrimenti ogni sessione vedrebbe un database vuoto.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, pool_pre_ping=True, echo=False)


engine = make_engine(get_database_url())

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utcnow() -> datetime:
    """Timestamp UTC timezone-aware per created/updated/started/completed."""
    return datetime.now(timezone.utc)


def init_db(bind=None) -> None:
    """
    Crea tutte le tabelle.
    I modelli devono essere importati prima per registrare i metadata.
    """
    from mtg_import.models import (  # noqa: F401
        import_job,
        import_settings,
        imported_record,
        subset_audit,
    )

    Base.metadata.create_all(bind=bind or engine)
    logger.info("create_all completato")
