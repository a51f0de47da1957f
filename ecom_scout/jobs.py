"""Job manager: runs scrape jobs as background tasks and tracks their state."""
import asyncio
import time
import uuid
from typing import AsyncContextManager, Callable, Iterable, Optional

import structlog

from .browser_automation import BrowserSession, PlaywrightSession
from .exceptions import OrchestrationFault, ScoutError
from .exporter import JSONExporter
from .extraction_loop import ExtractionLoop
from .models import AutomationConfig, Job, JobStatus, SiteConfig, SiteResult
from .sites import SiteAdapter, get_adapter

logger = structlog.get_logger()

SessionFactory = Callable[[AutomationConfig], AsyncContextManager[BrowserSession]]
AdapterFactory = Callable[[SiteConfig, BrowserSession, AutomationConfig], SiteAdapter]

DEFAULT_MAX_JOBS = 100


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class JobManager:
    """Accepts (product, location) requests and runs them in the background.

    The job store is bounded: when it is full, the oldest terminal job is
    evicted before a new one is inserted. In-flight jobs are never evicted,
    so the store can grow past the cap while every stored job is running.

    Each job's status and results are written only by that job's own task.
    """

    def __init__(
        self,
        sites: Iterable[SiteConfig],
        config: Optional[AutomationConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        exporter: Optional[JSONExporter] = None,
        max_jobs: int = DEFAULT_MAX_JOBS,
    ) -> None:
        """Initialize the manager.

        Args:
            sites: Sites every job runs against, in result order.
            config: Automation configuration settings.
            session_factory: Opens a browser session as an async context
                manager (defaults to PlaywrightSession.launch).
            adapter_factory: Builds the adapter for a site and session.
            exporter: Artifact writer; defaults to JSON files under
                ``config.output_dir`` when ``save_artifacts`` is set.
            max_jobs: Job store cap.
        """
        self.sites = list(sites)
        self.config = config or AutomationConfig()
        self.session_factory = session_factory or PlaywrightSession.launch
        self.adapter_factory = adapter_factory or get_adapter
        if exporter is None and self.config.save_artifacts:
            exporter = JSONExporter(self.config.output_dir)
        self.exporter = exporter
        self.max_jobs = max_jobs

        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def submit(self, product: str, location: str) -> str:
        """Create a queued job and schedule it; returns without doing browser work.

        Returns:
            The new job's id.
        """
        async with self._lock:
            self._evict_oldest_terminal()

            job = Job(id=uuid.uuid4().hex, product=product.strip(), location=location.strip())
            self._jobs[job.id] = job
            task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            self._tasks[job.id] = task
            task.add_done_callback(lambda t, j=job: self._on_task_done(j, t))

        logger.info("job_submitted", job_id=job.id, product=job.product, location=job.location)
        return job.id

    def get_status(self, job_id: str) -> Optional[Job]:
        """Look up a job; None if it is unknown or was evicted."""
        return self._jobs.get(job_id)

    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def cancel(self, job_id: str) -> bool:
        """Cancel a running job. The job ends ``failed`` with error "cancelled".

        Returns:
            True if a running task was signalled.
        """
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("job_cancel_requested", job_id=job_id)
        return True

    async def wait_for(self, job_id: str) -> Optional[Job]:
        """Wait until a job's task has finished and return the job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(job_id)

    async def shutdown(self) -> None:
        """Cancel every running job and wait for the tasks to unwind."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("job_manager_shutdown", cancelled=len(tasks))

    def _evict_oldest_terminal(self) -> None:
        """Make room for one job. Must be called with the lock held."""
        if len(self._jobs) < self.max_jobs:
            return
        for job_id, job in self._jobs.items():
            if job.status.is_terminal:
                del self._jobs[job_id]
                logger.debug("job_evicted", job_id=job_id)
                return
        logger.warning("job_store_over_capacity", size=len(self._jobs), cap=self.max_jobs)

    def _on_task_done(self, job: Job, task: asyncio.Task) -> None:
        self._tasks.pop(job.id, None)
        # Only a task cancelled before its first step leaves the job queued;
        # its own handler never ran, so the status is settled here
        if task.cancelled() and job.status == JobStatus.QUEUED:
            job.error = "cancelled"
            job.transition(JobStatus.FAILED)

    async def _run_job(self, job: Job) -> None:
        log = logger.bind(job_id=job.id, product=job.product, location=job.location)
        job.transition(JobStatus.PROCESSING)
        log.info("job_started", sites=[s.key for s in self.sites])

        try:
            await self._run_sites(job, log)
            job.transition(JobStatus.COMPLETED)
            log.info("job_completed", **job.summary())
        except asyncio.CancelledError:
            job.error = "cancelled"
            job.transition(JobStatus.FAILED)
            log.warning("job_cancelled")
            raise
        except Exception as e:
            job.error = f"Orchestration failed: {e}"
            job.transition(JobStatus.FAILED)
            log.error("job_failed", error=str(e), exc_info=True)

    async def _run_sites(self, job: Job, log) -> None:
        """Run every site with bounded concurrency within the job timeout."""
        if not self.sites:
            raise OrchestrationFault("No sites configured")

        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent))
        start = time.monotonic()

        async def guarded(site: SiteConfig) -> SiteResult:
            async with semaphore:
                result = await self.run_site(site, job.product, job.location, log)
            job.site_results.append(result)
            return result

        tasks = {site.key: asyncio.create_task(guarded(site)) for site in self.sites}
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self.config.job_timeout_s)
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        results: list[SiteResult] = []
        for site in self.sites:
            task = tasks[site.key]
            if task in pending or task.cancelled():
                reason = f"timed out after {self.config.job_timeout_s:g}s"
                log.warning("site_timed_out", site=site.key, timeout_s=self.config.job_timeout_s)
                results.append(SiteResult.failed(site.key, reason, _elapsed_ms(start)))
            elif task.exception() is not None:
                error = task.exception()
                log.warning("site_task_crashed", site=site.key, error=str(error))
                results.append(SiteResult.failed(site.key, str(error), _elapsed_ms(start)))
            else:
                results.append(task.result())

        job.site_results = results

    async def run_site(self, site: SiteConfig, product: str, location: str, log=None) -> SiteResult:
        """Run the extraction pipeline for one site in its own browser session.

        Any fault is contained here and returned as a failed SiteResult.
        """
        site_log = (log or logger).bind(site=site.key)
        start = time.monotonic()
        site_log.info("site_started")

        try:
            async with self.session_factory(self.config) as session:
                adapter = self.adapter_factory(site, session, self.config)
                try:
                    await adapter.select_location(location)
                    loop = ExtractionLoop(adapter, product, self.config, log=site_log)
                    products = await loop.run()
                except ScoutError:
                    await session.save_debug_snapshot(f"{site.key}_failure")
                    raise
        except ScoutError as e:
            site_log.warning("site_failed", error=str(e), error_type=type(e).__name__)
            return SiteResult.failed(site.key, str(e), _elapsed_ms(start))
        except Exception as e:
            site_log.warning("site_crashed", error=str(e), exc_info=True)
            return SiteResult.failed(site.key, f"{type(e).__name__}: {e}", _elapsed_ms(start))

        artifact_path = None
        if self.exporter is not None:
            try:
                path = await self.exporter.export(site.key, location, product, products)
                artifact_path = str(path)
            except OSError as e:
                site_log.warning("artifact_write_failed", error=str(e))

        duration_ms = _elapsed_ms(start)
        site_log.info(
            "site_completed",
            products=len(products),
            rounds=loop.rounds_used,
            duration_ms=duration_ms,
        )
        return SiteResult(
            site=site.key,
            success=True,
            duration_ms=duration_ms,
            products=tuple(products),
            artifact_path=artifact_path,
        )
