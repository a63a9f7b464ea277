from mtg_import.models.import_job import ImportJob, JobKind, JobStatus
from mtg_import.models.import_settings import ImportSettings
from mtg_import.models.imported_record import ImportedRecord
from mtg_import.models.subset_audit import SubsetAudit

__all__ = [
    "ImportJob",
    "JobKind",
    "JobStatus",
    "ImportSettings",
    "ImportedRecord",
    "SubsetAudit",
]
