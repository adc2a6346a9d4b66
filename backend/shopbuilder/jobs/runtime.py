"""JobRuntime: the in-process state owned by one orchestrator instance.

Holds the in-memory job map (the JobStore fallback backend) and the table of
active jobs with their sandbox handles and timers. Mutated only from the
event loop, so no locking.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from shopbuilder.jobs.scheduler import TimerHandle
from shopbuilder.jobs.schemas import JobRecord
from shopbuilder.sandbox.e2b_runtime import E2BSandboxRuntime


@dataclass
class ActiveJob:
    """In-process handle for a job whose sandbox is being monitored."""

    job_id: str
    user_id: str
    app_name: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    sandbox: E2BSandboxRuntime | None = None
    pid: str | None = None
    probe_attempted: bool = False
    launch_handle: TimerHandle | None = None
    poll_handle: TimerHandle | None = None
    ceiling_handle: TimerHandle | None = None

    def cancel_timers(self) -> None:
        for handle in (self.poll_handle, self.ceiling_handle, self.launch_handle):
            if handle is not None:
                handle.cancel()

    def age_seconds(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()


@dataclass
class JobRuntime:
    jobs: dict[str, JobRecord] = field(default_factory=dict)
    active: dict[str, ActiveJob] = field(default_factory=dict)

    def register(self, job: ActiveJob) -> ActiveJob:
        self.active[job.job_id] = job
        return job

    def get_active(self, job_id: str) -> ActiveJob | None:
        return self.active.get(job_id)

    def release(self, job_id: str) -> ActiveJob | None:
        """Drop the active handle and cancel its timers.

        When called from one of the job's own timers, call it last: the
        current task is cancelled at its next await.
        """
        job = self.active.pop(job_id, None)
        if job is not None:
            job.cancel_timers()
        return job
