from datetime import timedelta

from conftest import TENANT

from mtg_import.core.database import utcnow
from mtg_import.importer.orphan_recovery import orphan_message, recover_orphaned_jobs
from mtg_import.models import ImportJob, JobKind, JobStatus


def _add_job(session_factory, status, minutes_ago, checkpoint=0):
    db = session_factory()
    try:
        stamp = utcnow() - timedelta(minutes=minutes_ago)
        job = ImportJob(
            tenant_id=TENANT,
            kind=JobKind.SET,
            status=status,
            subset_code="tst",
            checkpoint=checkpoint,
            created_at=stamp,
            updated_at=stamp,
        )
        db.add(job)
        db.commit()
        return job.id
    finally:
        db.close()


def _get(session_factory, job_id):
    db = session_factory()
    try:
        job = db.query(ImportJob).filter(ImportJob.id == job_id).first()
        db.expunge(job)
        return job
    finally:
        db.close()


def test_stale_running_job_is_marked_failed(session_factory):
    job_id = _add_job(session_factory, JobStatus.RUNNING, minutes_ago=30, checkpoint=300)

    result = recover_orphaned_jobs(session_factory, threshold_minutes=10)

    assert result["count"] == 1
    assert result["recovered"][0]["id"] == job_id
    assert result["recovered"][0]["subset_code"] == "tst"
    job = _get(session_factory, job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == orphan_message(10)
    assert job.checkpoint == 300
    assert job.completed_at is not None


def test_recent_and_non_running_jobs_are_left_alone(session_factory):
    fresh = _add_job(session_factory, JobStatus.RUNNING, minutes_ago=2)
    pending = _add_job(session_factory, JobStatus.PENDING, minutes_ago=60)
    done = _add_job(session_factory, JobStatus.COMPLETED, minutes_ago=60)

    result = recover_orphaned_jobs(session_factory, threshold_minutes=10)

    assert result == {"recovered": [], "count": 0}
    assert _get(session_factory, fresh).status == JobStatus.RUNNING
    assert _get(session_factory, pending).status == JobStatus.PENDING
    assert _get(session_factory, done).status == JobStatus.COMPLETED


def test_message_mentions_threshold():
    msg = orphan_message(15)
    assert "15+ minutes" in msg
    assert "retry to resume" in msg
