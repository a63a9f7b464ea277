import asyncio

from conftest import TENANT, FakeScryfall

from mtg_import.importer.audits import rebuild_subset_audits, update_subset_audit
from mtg_import.models import ImportedRecord, ImportJob, JobKind, JobStatus, SubsetAudit


def _job_with_records(session_factory, tenant_id, rows):
    """rows: [(subset_code, success)]"""
    db = session_factory()
    try:
        job = ImportJob(tenant_id=tenant_id, kind=JobKind.BULK, status=JobStatus.COMPLETED)
        db.add(job)
        db.flush()
        for i, (subset_code, success) in enumerate(rows):
            db.add(ImportedRecord(
                import_job_id=job.id,
                source_id=f"{job.id[:8]}-{i}",
                subset_code=subset_code,
                name=f"Card {i}",
                success=success,
            ))
        db.commit()
    finally:
        db.close()


def _audits(session_factory, tenant_id=TENANT):
    db = session_factory()
    try:
        rows = db.query(SubsetAudit).filter(SubsetAudit.tenant_id == tenant_id).all()
        return {a.subset_code: (a.subset_name, a.total_records, a.imported_records) for a in rows}
    finally:
        db.close()


def test_rebuild_groups_successful_records_by_set(session_factory, fake_scryfall):
    _job_with_records(session_factory, TENANT, [("tst", True)] * 4 + [("tst", False), ("abc", True)])
    _job_with_records(session_factory, "tenant-b", [("tst", True)] * 2)

    updated = asyncio.run(rebuild_subset_audits(session_factory, fake_scryfall, TENANT))

    assert updated == 2
    assert _audits(session_factory) == {
        "tst": ("Test Set", 600, 4),
        "abc": ("ABC", 1, 1),
    }
    assert _audits(session_factory, "tenant-b") == {}


def test_rebuild_without_records(session_factory, fake_scryfall):
    assert asyncio.run(rebuild_subset_audits(session_factory, fake_scryfall, TENANT)) == 0


def test_update_survives_missing_set_metadata(session_factory):
    _job_with_records(session_factory, TENANT, [("old", True)] * 3)

    asyncio.run(update_subset_audit(session_factory, FakeScryfall(), TENANT, "old", fallback_total=10))
    assert _audits(session_factory) == {"old": ("OLD", 10, 3)}

    # seconda chiamata: aggiorna la stessa riga
    _job_with_records(session_factory, TENANT, [("old", True)])
    asyncio.run(update_subset_audit(session_factory, FakeScryfall(), TENANT, "old", fallback_total=10))
    assert _audits(session_factory) == {"old": ("OLD", 10, 4)}
