"""Vista aggregata per set: carte attese vs importate. Ricostruibile da imported_records."""

from sqlalchemy import Column, DateTime, Index, Integer, String

from mtg_import.core.database import Base, utcnow


class SubsetAudit(Base):
    __tablename__ = "subset_audits"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    subset_code = Column(String(16), nullable=False)
    subset_name = Column(String(255), nullable=False)
    total_records = Column(Integer, nullable=False, default=0)
    imported_records = Column(Integer, nullable=False, default=0)
    last_imported_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    released_at = Column(DateTime(timezone=True), nullable=True)
    subset_type = Column(String(64), nullable=True)
    icon_uri = Column(String(512), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "uq_subset_audits_tenant_subset",
            "tenant_id", "subset_code",
            unique=True,
        ),
    )
