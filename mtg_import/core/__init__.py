from mtg_import.core.config import get_database_url
from mtg_import.core.database import Base, SessionLocal, engine, init_db

__all__ = [
    "get_database_url",
    "Base",
    "SessionLocal",
    "engine",
    "init_db",
]
