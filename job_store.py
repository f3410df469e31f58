"""
Durable audit job records.

Every write is a single conditional UPDATE (or INSERT) so the status machine
stays monotonic even if two writers race: a transition only applies when the
row is still in the expected prior status.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import AuditJobRecord, utcnow
from errors import ConflictError
from models import ACTIVE_STATUSES, AuditJob, JobStatus, Progress, Summary

logger = logging.getLogger(__name__)

_ACTIVE = tuple(status.value for status in ACTIVE_STATUSES)


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")


def _to_job(record: AuditJobRecord) -> AuditJob:
    return AuditJob.model_validate(
        {
            "id": record.id,
            "requesterId": record.requester_id,
            "urls": record.urls or [],
            "language": record.language,
            "status": record.status,
            "progress": record.progress or {},
            "results": record.results or [],
            "summary": record.summary,
            "reportPath": record.report_path,
            "error": record.error,
            "createdAt": record.created_at,
            "startedAt": record.started_at,
            "completedAt": record.completed_at,
            "heartbeatAt": record.heartbeat_at,
        }
    )


class JobStore:
    """CRUD with partial-field updates over the seo_audit_jobs table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, job: AuditJob) -> AuditJob:
        """
        Insert a pending job and claim the requester's active slot.

        Raises:
            ConflictError: If the requester already has a pending/running job
        """
        now = utcnow()
        record = AuditJobRecord(
            id=job.id,
            requester_id=job.requester_id,
            active_owner=job.requester_id,
            urls=list(job.urls),
            language=job.language,
            status=JobStatus.PENDING.value,
            progress=_dump(job.progress),
            results=[],
            created_at=now,
            heartbeat_at=now,
        )
        with self.session_factory() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError(
                    "An audit is already in progress for this user",
                    detail="Wait for the running audit to finish before starting a new one.",
                )
            return _to_job(record)

    def get(self, job_id: str) -> Optional[AuditJob]:
        with self.session_factory() as session:
            record = session.get(AuditJobRecord, job_id)
            return _to_job(record) if record else None

    def _conditional_update(self, job_id: str, statuses, values: Dict[str, Any]) -> bool:
        with self.session_factory() as session:
            result = session.execute(
                update(AuditJobRecord)
                .where(AuditJobRecord.id == job_id)
                .where(AuditJobRecord.status.in_(statuses))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def mark_running(self, job_id: str, progress: Progress) -> bool:
        now = utcnow()
        return self._conditional_update(
            job_id,
            (JobStatus.PENDING.value,),
            {
                "status": JobStatus.RUNNING.value,
                "progress": _dump(progress),
                "started_at": now,
                "heartbeat_at": now,
            },
        )

    def update_progress(self, job_id: str, progress: Progress) -> bool:
        """Overwrite the progress snapshot; never moves completedUrls backwards."""
        with self.session_factory() as session:
            record = session.execute(
                select(AuditJobRecord).where(AuditJobRecord.id == job_id).with_for_update()
            ).scalar_one_or_none()
            if record is None or record.status != JobStatus.RUNNING.value:
                return False
            previous = (record.progress or {}).get("completedUrls", 0)
            if progress.completed_urls < previous:
                progress = progress.model_copy(update={"completed_urls": previous})
            record.progress = _dump(progress)
            record.heartbeat_at = utcnow()
            session.commit()
            return True

    def append_result(self, job_id: str, result, progress: Progress) -> bool:
        """Append one per-URL result and the matching progress in one transaction."""
        with self.session_factory() as session:
            record = session.execute(
                select(AuditJobRecord).where(AuditJobRecord.id == job_id).with_for_update()
            ).scalar_one_or_none()
            if record is None or record.status != JobStatus.RUNNING.value:
                return False
            record.results = list(record.results or []) + [_dump(result)]
            record.progress = _dump(progress)
            record.heartbeat_at = utcnow()
            session.commit()
            return True

    def complete(
        self,
        job_id: str,
        summary: Summary,
        report_path: Optional[str],
        progress: Progress,
        results: Optional[Sequence[Any]] = None,
    ) -> bool:
        """Finish a running job. `results`, when given, replaces the stored list."""
        now = utcnow()
        values = {
            "status": JobStatus.COMPLETED.value,
            "summary": _dump(summary),
            "report_path": report_path,
            "progress": _dump(progress),
            "completed_at": now,
            "heartbeat_at": now,
            "active_owner": None,
        }
        if results is not None:
            values["results"] = [_dump(result) for result in results]
        return self._conditional_update(job_id, (JobStatus.RUNNING.value,), values)

    def fail(self, job_id: str, error: str) -> bool:
        now = utcnow()
        return self._conditional_update(
            job_id,
            _ACTIVE,
            {
                "status": JobStatus.FAILED.value,
                "error": error,
                "completed_at": now,
                "heartbeat_at": now,
                "active_owner": None,
            },
        )

    def delete(self, job_id: str) -> bool:
        """Delete a job unless it is running. Returns False if nothing was deleted."""
        with self.session_factory() as session:
            result = session.execute(
                delete(AuditJobRecord)
                .where(AuditJobRecord.id == job_id)
                .where(AuditJobRecord.status != JobStatus.RUNNING.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def list_stale(self, cutoff: datetime.datetime) -> List[AuditJob]:
        """Active jobs whose heartbeat is older than `cutoff`."""
        with self.session_factory() as session:
            records = session.execute(
                select(AuditJobRecord)
                .where(AuditJobRecord.status.in_(_ACTIVE))
                .where(AuditJobRecord.heartbeat_at < cutoff)
            ).scalars().all()
            return [_to_job(record) for record in records]
