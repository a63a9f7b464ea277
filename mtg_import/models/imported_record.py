"""
Riga di idempotenza/audit: una per (source_id, subset_code).
Aggiornata in place ad ogni nuovo passaggio dello stesso record, mai cancellata.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from mtg_import.core.database import Base, utcnow

EXISTING_SENTINEL = "existing"


class ImportedRecord(Base):
    __tablename__ = "imported_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    import_job_id = Column(
        String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_id = Column(String(64), nullable=False)
    subset_code = Column(String(16), nullable=False, index=True)
    source_uri = Column(String(512), nullable=True)
    name = Column(String(255), nullable=False)
    collector_number = Column(String(32), nullable=False, default="")
    rarity = Column(String(32), nullable=False, default="")
    downstream_id = Column(String(128), nullable=False, default="", index=True)
    write_count = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # --- Relazioni ---
    import_job = relationship("ImportJob", backref="imported_records")

    # --- Vincoli ---
    __table_args__ = (
        Index(
            "uq_imported_records_source_subset",
            "source_id", "subset_code",
            unique=True,
        ),
    )
