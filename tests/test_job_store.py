import datetime

import pytest

from conftest import make_crawl
from database import utcnow
from errors import ConflictError
from issue_synthesizer import build_summary, error_result
from models import ACTIVE_STATUSES, AuditJob, JobStatus, Progress, SuccessResult


def new_job(job_id="job1", user="alice", urls=("https://example.com/",)):
    return AuditJob(
        id=job_id,
        requester_id=user,
        urls=list(urls),
        progress=Progress(total_urls=len(urls)),
    )


def test_create_and_get(job_store):
    job_store.create(new_job())
    job = job_store.get("job1")
    assert job.status == JobStatus.PENDING
    assert job.requester_id == "alice"
    assert job.created_at is not None
    assert job_store.get("missing") is None


def test_one_active_job_per_user(job_store):
    job_store.create(new_job("job1"))
    with pytest.raises(ConflictError):
        job_store.create(new_job("job2"))
    # Other users are not affected
    job_store.create(new_job("job3", user="bob"))


def test_terminal_transition_releases_the_user(job_store):
    job_store.create(new_job("job1"))
    assert job_store.fail("job1", "boom")
    job_store.create(new_job("job2"))
    assert job_store.get("job2").status == JobStatus.PENDING


def test_transitions_are_monotonic(job_store):
    job_store.create(new_job())
    progress = Progress(current_step="Starting", total_urls=1)
    assert job_store.mark_running("job1", progress)
    assert not job_store.mark_running("job1", progress)

    summary = build_summary([])
    assert job_store.complete("job1", summary, None, progress)
    assert not job_store.fail("job1", "late failure")
    assert not job_store.complete("job1", summary, None, progress)

    job = job_store.get("job1")
    assert job.status == JobStatus.COMPLETED
    assert job.error is None
    assert job.completed_at is not None


def test_completed_urls_never_decrease(job_store):
    job_store.create(new_job(urls=("https://example.com/", "https://example.org/")))
    job_store.mark_running("job1", Progress(total_urls=2))
    job_store.update_progress("job1", Progress(completed_urls=2, total_urls=2))
    job_store.update_progress("job1", Progress(completed_urls=1, current_step="Crawling", total_urls=2))
    progress = job_store.get("job1").progress
    assert progress.completed_urls == 2
    assert progress.current_step == "Crawling"


def test_results_round_trip_in_order(job_store):
    job_store.create(new_job(urls=("https://example.com/", "https://broken.example.com/")))
    job_store.mark_running("job1", Progress(total_urls=2))
    ok = SuccessResult(url="https://example.com/", crawl=make_crawl())
    failed = error_result("https://broken.example.com/", "timeout")
    job_store.append_result("job1", ok, Progress(completed_urls=1, total_urls=2))
    job_store.append_result("job1", failed, Progress(completed_urls=2, total_urls=2))

    job = job_store.get("job1")
    assert [r.url for r in job.results] == ["https://example.com/", "https://broken.example.com/"]
    assert isinstance(job.results[0], SuccessResult)
    assert job.results[0].crawl.title == make_crawl().title
    assert job.results[1].status == "error"


def test_delete_refuses_running_jobs(job_store):
    job_store.create(new_job())
    job_store.mark_running("job1", Progress(total_urls=1))
    assert not job_store.delete("job1")
    job_store.fail("job1", "boom")
    assert job_store.delete("job1")
    assert job_store.get("job1") is None


def test_list_stale(job_store):
    job_store.create(new_job("job1"))
    job_store.create(new_job("job2", user="bob"))
    job_store.fail("job2", "boom")

    future = utcnow() + datetime.timedelta(minutes=1)
    past = utcnow() - datetime.timedelta(minutes=1)
    assert [job.id for job in job_store.list_stale(future)] == ["job1"]
    assert job_store.list_stale(past) == []


def test_stale_listing_covers_every_active_status(job_store):
    job_store.create(new_job("pending-job"))
    job_store.create(new_job("running-job", user="bob"))
    job_store.mark_running("running-job", Progress(total_urls=1))
    job_store.create(new_job("done-job", user="carol"))
    job_store.fail("done-job", "boom")

    stale = job_store.list_stale(utcnow() + datetime.timedelta(minutes=1))

    assert sorted(job.status for job in stale) == sorted(ACTIVE_STATUSES)
    assert {job.id for job in stale} == {"pending-job", "running-job"}
