"""JobOrchestrator: public entry point for Shopify CLI app-creation jobs.

Owns the JobRuntime, the JobStore and the monitor. start_job() returns as soon
as the job record exists; sandbox provisioning and CLI launch run as a
background task whose failures turn the job into a failed record.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from shopbuilder.core.config import Settings, get_settings
from shopbuilder.core.exceptions import AccessDeniedError, NotFoundError
from shopbuilder.jobs.monitor import SandboxProcessMonitor, build_cli_command
from shopbuilder.jobs.runtime import ActiveJob, JobRuntime
from shopbuilder.jobs.scheduler import Scheduler, TimerHandle
from shopbuilder.jobs.schemas import JobRecord, JobStage, JobStatus, validate_app_name
from shopbuilder.jobs.store import JobStore
from shopbuilder.sandbox.e2b_runtime import E2BSandboxRuntime

logger = structlog.get_logger(__name__)

ABANDONED_ERROR = "App creation was abandoned after {minutes} minutes without finishing"


class JobOrchestrator:
    """Creates, launches, reports on and sweeps app-creation jobs.

    Constructor uses dependency injection so tests can supply a fakeredis-backed
    store and a fake sandbox factory.

    Args:
        store: JobStore sharing this orchestrator's runtime
        runtime: JobRuntime (in-memory job map + active-job table)
        sandbox_runtime_factory: Zero-arg callable returning an E2BSandboxRuntime
        project_store: Optional ProjectStore receiving completed app metadata
        scheduler: Scheduler for launch, poll, ceiling and sweep tasks
    """

    def __init__(
        self,
        store: JobStore,
        runtime: JobRuntime,
        sandbox_runtime_factory: Callable[[], E2BSandboxRuntime],
        project_store=None,
        scheduler: Scheduler | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.sandbox_runtime_factory = sandbox_runtime_factory
        self.scheduler = scheduler or Scheduler()
        self.settings = settings or get_settings()
        self.monitor = SandboxProcessMonitor(
            store=store,
            runtime=runtime,
            scheduler=self.scheduler,
            project_store=project_store,
            settings=self.settings,
        )
        self._sweeper: TimerHandle | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_job(self, user_id: str, app_name: str) -> str:
        """Validate, create the job record and launch the CLI in the background.

        Raises:
            ValidationError: app_name fails the allow-list (nothing is created)
            StorageUnavailableError: both job store backends failed
        """
        name = validate_app_name(app_name)
        job_id = uuid.uuid4().hex

        record = JobRecord(
            job_id=job_id,
            user_id=user_id,
            app_name=name,
            output=[f"Starting Shopify CLI for app '{name}'..."],
        )
        await self.store.create(record)

        active = self.runtime.register(ActiveJob(job_id=job_id, user_id=user_id, app_name=name))
        active.launch_handle = self.scheduler.spawn(
            lambda: self._launch(job_id),
            name=f"job-launch-{job_id}",
        )

        logger.info("job_started", job_id=job_id, user_id=user_id, app_name=name)
        return job_id

    async def get_status(self, job_id: str, requesting_user_id: str) -> JobRecord:
        """Fetch a job for its owner.

        Raises:
            NotFoundError: unknown job
            AccessDeniedError: job belongs to someone else
        """
        record = await self.store.get(job_id)
        if record is None:
            raise NotFoundError(f"Job {job_id} not found")
        if record.user_id != requesting_user_id:
            raise AccessDeniedError()
        return record

    async def acknowledge_setup(self, job_id: str, requesting_user_id: str) -> JobRecord:
        """Caller-driven nudge after the user finished authentication out-of-band.

        The store refuses to reopen a job that turned terminal after the read.
        """
        record = await self.get_status(job_id, requesting_user_id)
        if record.is_terminal:
            return record

        updated = await self.store.update(
            job_id,
            {"status": JobStatus.RUNNING, "stage": JobStage.FINALIZING},
        )
        if updated is None:
            return record
        logger.info("job_setup_acknowledged", job_id=job_id, stage=updated.stage.value)
        return updated

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def _launch(self, job_id: str) -> None:
        active = self.runtime.get_active(job_id)
        if active is None:
            return

        try:
            sandbox = self.sandbox_runtime_factory()
            await sandbox.start()
            active.sandbox = sandbox
            await self.store.update(job_id, {"sandbox_id": sandbox.sandbox_id})

            command = build_cli_command(active.app_name, self.settings.shopify_cli_template)
            active.pid = await sandbox.run_background(command)
            logger.info("shopify_cli_launched", job_id=job_id, sandbox_id=sandbox.sandbox_id, pid=active.pid)

            self.monitor.start(job_id)
        except Exception as exc:
            logger.error(
                "job_launch_failed",
                job_id=job_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            await self.store.update(
                job_id,
                {
                    "status": JobStatus.FAILED,
                    "stage": JobStage.ERROR,
                    "error": f"Failed to start app creation: {exc}",
                },
            )
            if active.sandbox is not None:
                await active.sandbox.stop()
            self.runtime.release(job_id)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def sweep_abandoned(self, now: datetime | None = None) -> int:
        """Drop active jobs older than the abandonment window with a best-effort failed write."""
        now = now or datetime.now(UTC)
        limit = self.settings.abandoned_job_seconds
        dropped = 0

        for job_id, active in list(self.runtime.active.items()):
            if active.age_seconds(now) <= limit:
                continue

            self.runtime.release(job_id)
            dropped += 1

            try:
                record = await self.store.get(job_id)
                if record is not None and not record.is_terminal:
                    await self.store.update(
                        job_id,
                        {
                            "status": JobStatus.FAILED,
                            "stage": JobStage.ERROR,
                            "error": ABANDONED_ERROR.format(minutes=int(limit // 60)),
                        },
                    )
                if active.sandbox is not None:
                    await active.sandbox.stop()
            except Exception as exc:
                logger.warning("abandoned_job_cleanup_failed", job_id=job_id, error=str(exc))

            logger.info("abandoned_job_dropped", job_id=job_id, age_seconds=round(active.age_seconds(now)))

        return dropped

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete job records past the retention window."""
        return await self.store.purge_expired(now)

    async def _sweep(self) -> None:
        await self.sweep_abandoned()
        await self.sweep_expired()

    def start_sweeper(self) -> None:
        if self._sweeper is None or not self._sweeper.active:
            self._sweeper = self.scheduler.every(
                self.settings.abandoned_sweep_interval_seconds,
                self._sweep,
                name="job-sweeper",
            )

    async def shutdown(self) -> None:
        """Cancel the sweeper and every job timer; stop sandboxes still attached."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None

        for job_id in list(self.runtime.active):
            active = self.runtime.release(job_id)
            if active is not None and active.sandbox is not None:
                await active.sandbox.stop()
        logger.info("job_orchestrator_shutdown")
