"""Pydantic schemas per API Imports e Sets."""

import json
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

JobKindLiteral = Literal["set", "bulk", "backfill"]
JobStatusLiteral = Literal["pending", "running", "completed", "failed", "cancelled"]


# --- Richieste ---


class CreateImportRequest(BaseModel):
    kind: JobKindLiteral
    subset_code: str | None = Field(default=None, min_length=2, max_length=10)
    priority: int = Field(default=2, ge=0, le=2)

    @field_validator("subset_code")
    @classmethod
    def _lower(cls, v: str | None) -> str | None:
        return v.lower() if v else v


class CreateBatchRequest(BaseModel):
    """Backfill di piu' set in un colpo solo."""
    subset_codes: list[str] = Field(min_length=1, max_length=50)
    priority: int = Field(default=2, ge=0, le=2)


# --- Risposte ---


class ImportJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    status: str
    priority: int
    subset_code: str | None = None
    records_processed: int
    records_total: int
    writes_created: int
    error_count: int
    skipped_count: int
    checkpoint: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime
    error_message: str | None = None
    error_log: list[str] = []

    @field_validator("error_log", mode="before")
    @classmethod
    def _decode_log(cls, v):
        # sul modello error_log e' una stringa JSON
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                return []
        return v if isinstance(v, list) else []


class ImportedRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source_id: str
    subset_code: str
    name: str
    collector_number: str
    rarity: str | None = None
    downstream_id: str | None = None
    write_count: int
    success: bool
    error_message: str | None = None
    created_at: datetime


class ImportJobListResponse(BaseModel):
    jobs: list[ImportJobOut]
    next_cursor: str | None = None


class ImportJobDetailResponse(ImportJobOut):
    imported_records: list[ImportedRecordOut] = []
    imported_records_count: int = 0


class BatchCreateResponse(BaseModel):
    created: int
    jobs: list[ImportJobOut]


class CancelResponse(BaseModel):
    success: bool
    status: str


class RecoveredJob(BaseModel):
    id: str
    subset_code: str | None = None
    last_updated: datetime | None = None


class RecoverOrphansResponse(BaseModel):
    ok: bool = True
    recovered: list[RecoveredJob]
    count: int


class SubsetAuditOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subset_code: str
    subset_name: str | None = None
    total_records: int
    imported_records: int
    last_imported_at: datetime | None = None
    released_at: datetime | None = None
    subset_type: str | None = None
    icon_uri: str | None = None


class RebuildAuditsResponse(BaseModel):
    updated: int


class SubsetVerifyResponse(BaseModel):
    """Completezza di un set: importati (creati + gia' esistenti) vs totale Scryfall."""
    subset_code: str
    subset_name: str
    upstream_total: int
    imported: int
    newly_created: int
    already_existed: int
    failed: int
    completeness: int
    last_imported_at: datetime | None = None


class SubsetOut(BaseModel):
    code: str
    name: str
    set_type: str | None = None
    released_at: str | None = None
    card_count: int = 0
    digital: bool = False
    icon_svg_uri: str | None = None
