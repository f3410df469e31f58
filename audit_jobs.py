"""
Audit job lifecycle: admission, detached execution and polling.

A job is admitted in the request (validation plus an atomic insert that
claims the requester's single active slot) and then runs as one asyncio task.
URLs are audited strictly in order; a failing URL becomes an error result
and the batch carries on. Progress and partial results are persisted after
every step so polling clients see forward motion. Store and audit-log calls
go through `asyncio.to_thread` so database round trips never block the loop.
"""

import asyncio
import datetime
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import config
from audit_log import AuditLogger
from blob_store import LocalBlobStore, job_namespace
from content_analyzer import LLMService
from database import utcnow
from errors import ConflictError, NotFoundError, PipelineFailure, ValidationError
from issue_synthesizer import apply_translations, build_summary, error_result
from job_store import JobStore
from models import AuditJob, JobStatus, Progress, Summary
from permissions import AUDIT_MODULE, PermissionPolicy
from url_validator import HostResolver, validate_urls
from website_audit_agent import WebsiteAuditAgent

logger = logging.getLogger(__name__)

STEP_STARTING = "Starting"
STEP_REPORT = "Generating report"
STEP_COMPLETE = "Complete"
STALE_ERROR = "Audit timed out (stale cleanup)"
CANCELLED_ERROR = "Audit cancelled"
REPORT_FILENAME = "report.pdf"

ReportRenderer = Callable[[AuditJob, Sequence[Any], Summary, LocalBlobStore], bytes]


def _default_report_renderer() -> Optional[ReportRenderer]:
    try:
        from pdf_generator import PDFGenerator

        return PDFGenerator().render_audit_report
    except Exception as e:
        logger.warning(f"PDF generation disabled: {str(e)}")
        return None


class AuditJobManager:
    """Owns the audit job state machine; the only public job API."""

    def __init__(
        self,
        store: JobStore,
        blob_store: LocalBlobStore,
        agent: WebsiteAuditAgent,
        llm_service: LLMService,
        permissions: PermissionPolicy,
        audit_logger: Optional[AuditLogger] = None,
        report_renderer: Optional[ReportRenderer] = None,
        url_timeout: Optional[float] = None,
        max_urls: Optional[int] = None,
        stale_minutes: Optional[int] = None,
        sweep_interval: Optional[float] = None,
        resolve: Optional[HostResolver] = None,
        on_shutdown: Optional[Callable[[], Any]] = None,
    ):
        self.store = store
        self.blob_store = blob_store
        self.agent = agent
        self.llm_service = llm_service
        self.permissions = permissions
        self.audit_logger = audit_logger
        self.report_renderer = report_renderer
        self.url_timeout = url_timeout or config.SEO_AUDIT_TIMEOUT
        self.max_urls = max_urls
        self.stale_minutes = stale_minutes or config.SEO_AUDIT_STALE_MINUTES
        self.sweep_interval = sweep_interval or config.SEO_AUDIT_STALE_SWEEP_SECONDS
        self.resolve = resolve
        self.on_shutdown = on_shutdown
        # Strong references; a bare create_task result can be garbage collected
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(
        self, identity: str, raw_urls: str, language: str = "en"
    ) -> Tuple[str, List[str]]:
        """
        Validate a URL batch, admit it as a pending job and start it.

        Args:
            identity: Requesting user
            raw_urls: Newline/comma separated URLs
            language: Language code for the report

        Returns:
            (job_id, validation warnings)

        Raises:
            ForbiddenError: Missing seo-audit.create permission
            ValidationError: The batch was rejected; no job is created
            ConflictError: The user already has an active audit
        """
        self.permissions.require_permission(identity, AUDIT_MODULE, "create")

        validation = await validate_urls(raw_urls, max_urls=self.max_urls, resolve=self.resolve)
        if not validation.valid:
            raise ValidationError(
                "URL validation failed",
                errors=validation.errors or ["No valid URLs provided"],
                warnings=validation.warnings,
            )

        job = AuditJob(
            id=uuid.uuid4().hex,
            requester_id=identity,
            urls=validation.urls,
            language=language or "en",
            progress=Progress(current_step=STEP_STARTING, total_urls=len(validation.urls)),
        )
        await asyncio.to_thread(self.store.create, job)
        logger.info(f"Audit job {job.id} admitted for user {identity} ({len(job.urls)} URLs)")

        await self._record(identity, job.id, "create", {"urls": job.urls, "language": job.language})
        self._start(job.id)
        return job.id, validation.warnings

    async def get_status(self, identity: str, job_id: str) -> AuditJob:
        self.permissions.require_permission(identity, AUDIT_MODULE, "read")
        job = await asyncio.to_thread(self.store.get, job_id)
        if job is None:
            raise NotFoundError("Audit not found", detail=f"No audit with id {job_id}")
        return job

    async def get_report(self, identity: str, job_id: str) -> bytes:
        """
        PDF bytes of a completed audit.

        Raises:
            NotFoundError: Unknown job, or the report was never produced
            ConflictError: The audit has not completed yet
        """
        job = await self.get_status(identity, job_id)
        if job.status != JobStatus.COMPLETED:
            raise ConflictError(
                "Audit not completed", detail=f"Audit is {job.status.value}"
            )
        if not job.report_path:
            raise NotFoundError("Report not available", detail="The PDF report was not generated")
        data = self.blob_store.get(job.report_path)
        if data is None:
            raise NotFoundError("Report not available", detail="The PDF report file is missing")
        return data

    async def delete(self, identity: str, job_id: str) -> None:
        """
        Delete a finished (or orphaned pending) audit and its blobs.

        Raises:
            NotFoundError: Unknown job
            ConflictError: The audit is still running
        """
        self.permissions.require_permission(identity, AUDIT_MODULE, "delete")
        job = await asyncio.to_thread(self.store.get, job_id)
        if job is None:
            raise NotFoundError("Audit not found", detail=f"No audit with id {job_id}")
        if job.status == JobStatus.RUNNING or self._is_live(job_id):
            raise ConflictError(
                "Cannot delete a running audit",
                detail="Wait for the audit to finish before deleting it.",
            )

        self.blob_store.delete_directory(job_namespace(job_id))
        if not await asyncio.to_thread(self.store.delete, job_id):
            raise ConflictError(
                "Cannot delete a running audit",
                detail="The audit started while it was being deleted.",
            )
        logger.info(f"Audit job {job_id} deleted by user {identity}")
        await self._record(identity, job_id, "delete")

    async def recover_stale_jobs(self, max_age: Optional[datetime.timedelta] = None) -> int:
        """
        Fail active jobs whose heartbeat stopped, releasing their users' slots.

        Jobs driven by a live task in this process are left alone.

        Returns:
            Number of jobs marked failed
        """
        max_age = max_age or datetime.timedelta(minutes=self.stale_minutes)
        cutoff = utcnow() - max_age
        recovered = 0
        for job in await asyncio.to_thread(self.store.list_stale, cutoff):
            if self._is_live(job.id):
                continue
            if await asyncio.to_thread(self.store.fail, job.id, STALE_ERROR):
                recovered += 1
                logger.warning(f"Audit job {job.id} marked failed by stale cleanup")
        return recovered

    def start_stale_sweeper(self) -> None:
        """Recover stale jobs now and then every `sweep_interval` seconds."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_stale_jobs(), name="seo-audit-stale-sweeper")

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the sweeper, cancel in-flight audits and release shared resources."""
        if self._sweeper is not None:
            self._sweeper.cancel()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        pending = tasks + ([self._sweeper] if self._sweeper is not None else [])
        if pending:
            await asyncio.wait(pending, timeout=timeout)
        self._sweeper = None
        if self.on_shutdown is not None:
            result = self.on_shutdown()
            if asyncio.iscoroutine(result):
                await result

    async def wait_for(self, job_id: str) -> None:
        """Wait until the job's task (if any) has finished."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _start(self, job_id: str) -> None:
        task = asyncio.create_task(self._run_pipeline(job_id), name=f"seo-audit-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

    def _is_live(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def _sweep_stale_jobs(self) -> None:
        while True:
            try:
                recovered = await self.recover_stale_jobs()
                if recovered:
                    logger.info(f"Recovered {recovered} stale audit job(s)")
            except Exception as e:
                logger.error(f"Stale audit cleanup failed: {str(e)}", exc_info=True)
            await asyncio.sleep(self.sweep_interval)

    async def _record(
        self,
        identity: str,
        job_id: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.audit_logger is not None:
            await asyncio.to_thread(
                self.audit_logger.record,
                identity,
                AUDIT_MODULE,
                job_id,
                "seo_audit_job",
                payload,
                action=action,
            )

    async def _audit_url(self, job: AuditJob, index: int, url: str, progress: Progress, steps: List[str]):
        async def on_step(step: str) -> None:
            steps.append(step)
            await asyncio.to_thread(
                self.store.update_progress,
                job.id,
                progress.model_copy(update={"current_url": url, "current_step": step}),
            )

        try:
            return await asyncio.wait_for(
                self.agent.process(url, job.id, index, job.language, on_step=on_step),
                timeout=self.url_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Audit of {url} timed out after {self.url_timeout}s")
            return error_result(url, f"Audit timed out after {self.url_timeout}s")
        except Exception as e:
            logger.error(f"Audit of {url} failed: {str(e)}", exc_info=True)
            return error_result(url, str(e))

    async def _render_report(self, job: AuditJob, results: Sequence[Any], summary: Summary) -> Optional[str]:
        renderer = self.report_renderer or _default_report_renderer()
        if renderer is None:
            return None
        try:
            data = await asyncio.to_thread(renderer, job, results, summary, self.blob_store)
            path = self.blob_store.put(f"{job_namespace(job.id)}/{REPORT_FILENAME}", data)
            logger.info(f"PDF report generated for audit job {job.id}: {path}")
            return path
        except Exception as e:
            # Continue without PDF - not a critical error
            logger.warning(f"PDF generation failed for audit job {job.id}: {str(e)}")
            return None

    async def _synthesize(self, job: AuditJob, results: List[Any]) -> Tuple[List[Any], Summary]:
        """
        Translate issues (non-English audits) and aggregate the summary.

        Raises:
            PipelineFailure: If the summary could not be produced
        """
        try:
            if job.language != "en":
                all_issues = [issue for r in results for issue in r.issues]
                translations = await self.llm_service.translate_issues(all_issues, job.language)
                results = apply_translations(results, translations)

            narrative = await self.llm_service.generate_executive_summary(results, job.language)
            return results, build_summary(results, narrative)
        except Exception as e:
            raise PipelineFailure(f"Summary generation failed: {str(e)}") from e

    async def _run_pipeline(self, job_id: str) -> None:
        try:
            await self._execute(job_id)
        except asyncio.CancelledError:
            # Shielded: a second cancel must not skip the terminal write
            await asyncio.shield(asyncio.to_thread(self.store.fail, job_id, CANCELLED_ERROR))
            raise

    async def _execute(self, job_id: str) -> None:
        job = await asyncio.to_thread(self.store.get, job_id)
        if job is None:
            logger.warning(f"Audit job {job_id} vanished before it started")
            return

        total = len(job.urls)
        progress = Progress(current_step=STEP_STARTING, completed_urls=0, total_urls=total)
        if not await asyncio.to_thread(self.store.mark_running, job_id, progress):
            logger.warning(f"Audit job {job_id} was no longer pending; not starting")
            return

        try:
            results = []
            for index, url in enumerate(job.urls):
                steps: List[str] = []
                result = await self._audit_url(job, index, url, progress, steps)
                results.append(result)
                progress = Progress(
                    current_url=url,
                    current_step=steps[-1] if steps else progress.current_step,
                    completed_urls=index + 1,
                    total_urls=total,
                )
                await asyncio.to_thread(self.store.append_result, job_id, result, progress)
                logger.info(f"Audit job {job_id}: {index + 1}/{total} URLs done ({url}: {result.status})")

            progress = progress.model_copy(update={"current_url": "", "current_step": STEP_REPORT})
            await asyncio.to_thread(self.store.update_progress, job_id, progress)

            results, summary = await self._synthesize(job, results)
            report_path = await self._render_report(job, results, summary)

            progress = progress.model_copy(update={"current_step": STEP_COMPLETE})
            completed = await asyncio.to_thread(
                self.store.complete, job_id, summary, report_path, progress, results=results
            )
        except PipelineFailure as e:
            logger.error(f"Audit job {job_id} failed: {e.message}", exc_info=True)
            await asyncio.to_thread(self.store.fail, job_id, e.message)
            return
        except Exception as e:
            logger.error(f"Audit job {job_id} failed: {str(e)}", exc_info=True)
            await asyncio.to_thread(self.store.fail, job_id, str(e))
            return

        if completed:
            logger.info(f"Audit job {job_id} completed (score {summary.overall_score}/100)")
        else:
            logger.warning(f"Audit job {job_id} left the running state before completion")
