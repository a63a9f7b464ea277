"""Test di ImportService: validazione, conflitti, cancellazione, retry, paginazione, verifica set."""

import asyncio
from datetime import timedelta

import pytest
from conftest import TENANT, FakeSaleor, FakeScryfall

from mtg_import.core.database import utcnow
from mtg_import.core.errors import (
    CircuitOpenError,
    ImportPreconditionError,
    InvalidJobRequestError,
    JobConflictError,
    JobNotFoundError,
    JobStateError,
    TransientUpstreamError,
    UpstreamUnavailableError,
)
from mtg_import.importer.job_processor import USER_CANCEL_REASON
from mtg_import.models import ImportedRecord, ImportJob, ImportSettings, JobKind, JobStatus
from mtg_import.models.imported_record import EXISTING_SENTINEL
from mtg_import.services.import_service import ImportService


class FakeRunner:
    def __init__(self, owns=()):
        self.owns = set(owns)
        self.notified = 0
        self.cancelled: list[tuple[str, str]] = []

    def notify(self):
        self.notified += 1

    def cancel(self, job_id, reason):
        if job_id not in self.owns:
            return False
        self.cancelled.append((job_id, reason))
        return True


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def service(session_factory, fake_scryfall, fake_saleor, runner):
    return ImportService(fake_scryfall, fake_saleor, runner=runner, session_factory=session_factory)


def _insert_job(session_factory, status, kind=JobKind.SET, subset_code="tst", tenant_id=TENANT, **fields):
    db = session_factory()
    try:
        job = ImportJob(tenant_id=tenant_id, kind=kind, status=status, subset_code=subset_code, **fields)
        db.add(job)
        db.commit()
        return job.id
    finally:
        db.close()


def _status(session_factory, job_id):
    db = session_factory()
    try:
        return db.query(ImportJob.status).filter(ImportJob.id == job_id).scalar()
    finally:
        db.close()


# --- create_job ---


def test_create_set_job_uses_upstream_card_count(service, runner, fake_saleor):
    job = asyncio.run(service.create_job(TENANT, JobKind.SET, "TST", priority=1))

    assert job.status == JobStatus.PENDING
    assert job.subset_code == "tst"
    assert job.records_total == 600
    assert job.priority == 1
    assert fake_saleor.resolve_calls == 1
    assert runner.notified == 1


def test_create_bulk_job_ignores_subset(service):
    job = asyncio.run(service.create_job(TENANT, JobKind.BULK, "tst"))
    assert job.subset_code is None
    assert job.records_total == 0


def test_subset_required_for_set_and_backfill(service):
    for kind in (JobKind.SET, JobKind.BACKFILL):
        with pytest.raises(InvalidJobRequestError, match="subset_code is required"):
            asyncio.run(service.create_job(TENANT, kind, None))


def test_unknown_kind_rejected(service):
    with pytest.raises(InvalidJobRequestError):
        asyncio.run(service.create_job(TENANT, "everything", "tst"))


def test_conflicting_active_job(service, session_factory):
    existing = _insert_job(session_factory, JobStatus.RUNNING)

    with pytest.raises(JobConflictError, match=existing):
        asyncio.run(service.create_job(TENANT, JobKind.SET, "tst"))

    # Stesso set ma altro tenant: nessun conflitto
    other = asyncio.run(service.create_job("tenant-b", JobKind.SET, "tst"))
    assert other.status == JobStatus.PENDING


def test_finished_job_does_not_conflict(service, session_factory):
    _insert_job(session_factory, JobStatus.COMPLETED)
    job = asyncio.run(service.create_job(TENANT, JobKind.SET, "tst"))
    assert job.status == JobStatus.PENDING


def test_preflight_failure_creates_nothing(session_factory, fake_scryfall, runner):
    saleor = FakeSaleor(resolve_error=RuntimeError("Channel default-channel not found"))
    service = ImportService(fake_scryfall, saleor, runner=runner, session_factory=session_factory)

    with pytest.raises(ImportPreconditionError, match="not properly configured"):
        asyncio.run(service.create_job(TENANT, JobKind.SET, "tst"))

    db = session_factory()
    try:
        assert db.query(ImportJob).count() == 0
    finally:
        db.close()
    assert runner.notified == 0


def test_unknown_set_rejected(service):
    with pytest.raises(InvalidJobRequestError, match='Set "zzz" not found'):
        asyncio.run(service.create_job(TENANT, JobKind.SET, "zzz"))


class UnavailableScryfall(FakeScryfall):
    def __init__(self, error):
        super().__init__()
        self.error = error

    async def get_set(self, code):
        raise self.error


def test_upstream_outage_is_not_reported_as_unknown_set(session_factory, fake_saleor, runner):
    errors = (
        TransientUpstreamError("Scryfall API error 503", status=503),
        CircuitOpenError(retry_in=12.0),
    )
    for error in errors:
        service = ImportService(UnavailableScryfall(error), fake_saleor, runner=runner, session_factory=session_factory)
        with pytest.raises(UpstreamUnavailableError, match="Scryfall unavailable"):
            asyncio.run(service.create_job(TENANT, JobKind.SET, "tst"))

    db = session_factory()
    try:
        assert db.query(ImportJob).count() == 0
    finally:
        db.close()
    assert runner.notified == 0


def test_digital_set_rejected_when_physical_only(session_factory, fake_saleor):
    scryfall = FakeScryfall({"dig": {"code": "dig", "name": "Digital Set", "digital": True, "card_count": 10}})
    service = ImportService(scryfall, fake_saleor, session_factory=session_factory)

    with pytest.raises(InvalidJobRequestError, match="digital-only"):
        asyncio.run(service.create_job(TENANT, JobKind.SET, "dig"))

    db = session_factory()
    try:
        db.add(ImportSettings(tenant_id=TENANT, physical_only=False))
        db.commit()
    finally:
        db.close()
    job = asyncio.run(service.create_job(TENANT, JobKind.SET, "dig"))
    assert job.records_total == 10


# --- create_batch ---


def test_batch_skips_sets_with_active_jobs(session_factory, fake_saleor, runner):
    scryfall = FakeScryfall({
        "aaa": {"code": "aaa", "name": "A", "card_count": 100},
        "bbb": {"code": "bbb", "name": "B", "card_count": 200},
    })
    service = ImportService(scryfall, fake_saleor, runner=runner, session_factory=session_factory)
    _insert_job(session_factory, JobStatus.PENDING, kind=JobKind.SET, subset_code="bbb")

    created = asyncio.run(service.create_batch(TENANT, ["AAA", "bbb", "ccc"]))

    assert [(j.subset_code, j.kind, j.records_total) for j in created] == [
        ("aaa", JobKind.BACKFILL, 100),
        ("ccc", JobKind.BACKFILL, 0),
    ]
    assert runner.notified == 1


# --- cancel ---


def test_cancel_pending_job(service, session_factory):
    job_id = _insert_job(session_factory, JobStatus.PENDING)

    assert service.cancel_job(TENANT, job_id) == JobStatus.CANCELLED

    db = session_factory()
    try:
        job = db.query(ImportJob).filter(ImportJob.id == job_id).first()
        assert job.status == JobStatus.CANCELLED
        assert job.error_message == USER_CANCEL_REASON
        assert job.completed_at is not None
    finally:
        db.close()


def test_cancel_running_job_owned_by_runner(session_factory, fake_scryfall, fake_saleor):
    job_id = _insert_job(session_factory, JobStatus.RUNNING)
    runner = FakeRunner(owns=[job_id])
    service = ImportService(fake_scryfall, fake_saleor, runner=runner, session_factory=session_factory)

    assert service.cancel_job(TENANT, job_id) == "cancelling"
    assert runner.cancelled == [(job_id, USER_CANCEL_REASON)]
    # Il processor chiude il job quando vede il token
    assert _status(session_factory, job_id) == JobStatus.RUNNING


def test_cancel_running_job_of_another_process(service, session_factory):
    job_id = _insert_job(session_factory, JobStatus.RUNNING)
    assert service.cancel_job(TENANT, job_id) == JobStatus.CANCELLED
    assert _status(session_factory, job_id) == JobStatus.CANCELLED


def test_cancel_terminal_job_rejected(service, session_factory):
    job_id = _insert_job(session_factory, JobStatus.COMPLETED)
    with pytest.raises(JobStateError, match="Cannot cancel a completed job"):
        service.cancel_job(TENANT, job_id)


def test_jobs_are_tenant_scoped(service, session_factory):
    job_id = _insert_job(session_factory, JobStatus.PENDING, tenant_id="tenant-b")
    with pytest.raises(JobNotFoundError):
        service.cancel_job(TENANT, job_id)
    with pytest.raises(JobNotFoundError):
        service.get_job(TENANT, job_id)


# --- retry ---


def test_retry_creates_new_job_from_checkpoint(service, session_factory, runner):
    job_id = _insert_job(
        session_factory, JobStatus.FAILED,
        checkpoint=300, records_total=600, records_processed=280, error_count=5, priority=0,
    )

    retry = service.retry_job(TENANT, job_id)

    assert retry.id != job_id
    assert retry.status == JobStatus.PENDING
    assert retry.checkpoint == 300
    assert retry.records_total == 600
    assert retry.priority == 0
    assert retry.records_processed == 0
    assert retry.error_count == 0
    assert _status(session_factory, job_id) == JobStatus.FAILED
    assert runner.notified == 1


def test_retry_requires_failed_or_cancelled(service, session_factory):
    job_id = _insert_job(session_factory, JobStatus.COMPLETED)
    with pytest.raises(JobStateError, match="Can only retry"):
        service.retry_job(TENANT, job_id)


def test_retry_conflicts_with_active_job(service, session_factory):
    failed = _insert_job(session_factory, JobStatus.CANCELLED)
    _insert_job(session_factory, JobStatus.PENDING)
    with pytest.raises(JobConflictError):
        service.retry_job(TENANT, failed)


# --- list / get ---


def test_list_jobs_cursor_pagination(service, session_factory):
    base = utcnow()
    ids = [
        _insert_job(session_factory, JobStatus.COMPLETED, subset_code=f"s{i}", created_at=base - timedelta(minutes=i))
        for i in range(5)
    ]

    page1, cursor = service.list_jobs(TENANT, limit=2)
    page2, cursor2 = service.list_jobs(TENANT, limit=2, cursor=cursor)
    page3, cursor3 = service.list_jobs(TENANT, limit=2, cursor=cursor2)

    assert [j.id for j in page1 + page2 + page3] == ids
    assert cursor == page1[-1].id
    assert cursor3 is None


def test_list_jobs_filters_status(service, session_factory):
    _insert_job(session_factory, JobStatus.COMPLETED, subset_code="aaa")
    failed = _insert_job(session_factory, JobStatus.FAILED, subset_code="bbb")
    jobs, _ = service.list_jobs(TENANT, status=JobStatus.FAILED)
    assert [j.id for j in jobs] == [failed]


def _add_records(session_factory, job_id, rows):
    db = session_factory()
    try:
        for i, (downstream_id, success) in enumerate(rows):
            db.add(ImportedRecord(
                import_job_id=job_id,
                source_id=f"src-{i}",
                subset_code="tst",
                name=f"Card {i}",
                downstream_id=downstream_id,
                success=success,
            ))
        db.commit()
    finally:
        db.close()


def test_get_job_includes_recent_records(service, session_factory):
    job_id = _insert_job(session_factory, JobStatus.COMPLETED, error_log='["latest", "older"]')
    _add_records(session_factory, job_id, [(f"prod-{i}", True) for i in range(60)])

    detail = service.get_job(TENANT, job_id)

    assert detail.imported_records_count == 60
    assert len(detail.imported_records) == 50
    assert detail.error_log == ["latest", "older"]


def test_verify_subset_counts(service, session_factory):
    job_id = _insert_job(session_factory, JobStatus.COMPLETED)
    _add_records(
        session_factory, job_id,
        [("prod-1", True)] * 3 + [(EXISTING_SENTINEL, True)] * 2 + [("", False)],
    )

    report = asyncio.run(service.verify_subset(TENANT, "TST"))

    assert report.subset_code == "tst"
    assert report.subset_name == "Test Set"
    assert report.upstream_total == 600
    assert report.newly_created == 3
    assert report.already_existed == 2
    assert report.imported == 5
    assert report.failed == 1
    assert report.completeness == 1


def test_list_importable_subsets(session_factory, fake_saleor):
    scryfall = FakeScryfall({
        "old": {"code": "old", "name": "Old", "set_type": "core", "released_at": "1995-04-01"},
        "new": {"code": "new", "name": "New", "set_type": "expansion", "released_at": "2024-02-09"},
        "tok": {"code": "tok", "name": "Tokens", "set_type": "token", "released_at": "2024-02-09"},
        "dig": {"code": "dig", "name": "Digital", "set_type": "expansion", "digital": True},
    })
    service = ImportService(scryfall, fake_saleor, session_factory=session_factory)

    subsets = asyncio.run(service.list_importable_subsets(TENANT))

    assert [s.code for s in subsets] == ["new", "old"]
