"""Modello per i job di import del catalogo (set, bulk, backfill)."""

import json
import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from mtg_import.core.database import Base, utcnow

ERROR_LOG_LIMIT = 100
ERROR_MESSAGE_LIMIT = 1000


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ACTIVE = (PENDING, RUNNING)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)
    ALL = (PENDING, RUNNING, COMPLETED, FAILED, CANCELLED)


class JobKind:
    SET = "set"
    BULK = "bulk"
    BACKFILL = "backfill"

    SUBSET_KINDS = (SET, BACKFILL)
    ALL = (SET, BULK, BACKFILL)


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(255), nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    status = Column(String(32), nullable=False, default=JobStatus.PENDING, index=True)
    priority = Column(Integer, nullable=False, default=2)
    subset_code = Column(String(16), nullable=True, index=True)

    records_processed = Column(Integer, nullable=False, default=0)
    records_total = Column(Integer, nullable=False, default=0)
    writes_created = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    checkpoint = Column(Integer, nullable=False, default=0)
    # Sorgente (scryfall / mtgjson) su cui e' stato preso il checkpoint
    stream_source = Column(String(16), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    error_message = Column(Text, nullable=True)
    error_log = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_import_jobs_priority_status", "priority", "status"),
    )

    @property
    def error_log_entries(self) -> list[str]:
        """Errori per record, dal piu' recente (lista JSON salvata in error_log)."""
        if not self.error_log:
            return []
        try:
            entries = json.loads(self.error_log)
        except ValueError:
            return []
        return entries if isinstance(entries, list) else []


def encode_error_log(entries: list[str]) -> str:
    """Serializza al massimo ERROR_LOG_LIMIT voci (gia' ordinate dal piu' recente)."""
    return json.dumps(entries[:ERROR_LOG_LIMIT])
