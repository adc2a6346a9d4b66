"""SandboxProcessMonitor: polls a sandbox running the Shopify CLI and drives the job record.

The CLI's interactive authentication prompt cannot be observed as an event,
so each tick triangulates three signals, strongest first:

1. filesystem: the scaffolded project directory holds a package.json and an
   app/ directory: the job is complete, whatever the log says
2. log text: the CLI log file is scanned for an auth URL and stage keywords
3. liveness: the CLI process vanished without (1) or an auth URL: an
   ambiguous stall, handled with a one-shot diagnostic probe and a fallback to
   waiting_auth on the generic partner portal

A tick is split into observe (sandbox I/O), advance (pure: record +
observation -> outcome) and apply (JobStore write, completion side effects).
Tick errors are logged and the tick is skipped. A per-job ceiling timer fails
jobs that never complete.
"""

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import structlog

from shopbuilder.core.config import Settings, get_settings
from shopbuilder.core.exceptions import AmbiguousStallWarning, JobTimeoutError, SandboxError
from shopbuilder.core.logging import job_context
from shopbuilder.jobs.runtime import ActiveJob, JobRuntime
from shopbuilder.jobs.scheduler import Scheduler
from shopbuilder.jobs.schemas import JobRecord, JobStage, JobStatus, app_slug
from shopbuilder.jobs.signals import (
    FALLBACK_AUTH_URL,
    classify_stage,
    clean_lines,
    extract_auth_url,
)
from shopbuilder.jobs.store import JobStore
from shopbuilder.sandbox.e2b_runtime import HOME_DIR

logger = structlog.get_logger(__name__)

CLI_LOG_PATH = f"{HOME_DIR}/shopify-cli.log"

# Both must exist in the project directory for the scaffold to count as done
COMPLETION_MARKERS = ("package.json", "app")

AUTH_REQUIRED_LINE = "Authentication required: open {url} to continue"
STALL_LINE = "Shopify CLI exited without finishing; capturing diagnostic output"
FALLBACK_AUTH_LINE = "Could not read the login link from the CLI; continue at {url}"
COMPLETED_LINE = "App project created successfully"


def project_dir_for(app_name: str) -> str:
    return f"{HOME_DIR}/{app_slug(app_name)}"


def build_cli_command(app_name: str, template: str, log_path: str | None = CLI_LOG_PATH) -> str:
    """Shopify CLI scaffold command; output goes to log_path when given."""
    # app_name is validated to letters, digits, spaces and dashes
    command = (
        f'npx --yes @shopify/cli@latest app init --name "{app_name}" '
        f"--template {template} --flavor typescript --package-manager npm --path {HOME_DIR}"
    )
    if log_path:
        command = f"{command} > {log_path} 2>&1"
    return command


@dataclass(frozen=True)
class SandboxObservation:
    """What one tick saw in the sandbox."""

    process_alive: bool
    log_text: str = ""
    project_entries: tuple[str, ...] = ()
    probe_attempted: bool = False
    probe_output: str | None = None


@dataclass
class TickOutcome:
    """Delta to persist plus follow-up actions for the monitor."""

    fields: dict[str, Any] = field(default_factory=dict)
    completed: bool = False
    needs_probe: bool = False
    warnings: list[Warning] = field(default_factory=list)


def diff_new_lines(existing: list[str], incoming: list[str]) -> list[str]:
    """Lines of incoming not yet present in existing.

    Identity is the exact line plus its occurrence count, so the third
    "npm WARN" line is new if existing holds only two of them.
    """
    have = Counter(existing)
    seen: Counter = Counter()
    new_lines = []
    for line in incoming:
        seen[line] += 1
        if seen[line] > have[line]:
            new_lines.append(line)
    return new_lines


def has_completion_markers(entries: tuple[str, ...] | list[str]) -> bool:
    return all(marker in entries for marker in COMPLETION_MARKERS)


def advance(record: JobRecord, observation: SandboxObservation) -> TickOutcome:
    """Compute the next job state from the current record and a sandbox observation."""
    if record.is_terminal:
        return TickOutcome()

    output = list(record.output)
    new_lines = diff_new_lines(output, clean_lines(observation.log_text))
    output.extend(new_lines)

    auth_url = record.auth_url
    if auth_url is None:
        found = extract_auth_url(observation.log_text)
        if found:
            auth_url = found
            output.append(AUTH_REQUIRED_LINE.format(url=found))

    stage = classify_stage("\n".join(new_lines)) if new_lines else record.stage
    if auth_url != record.auth_url and stage in (JobStage.INITIALIZING, JobStage.CREATING):
        # A batch holding both scaffold progress and the login prompt
        stage = JobStage.WAITING_AUTH
    outcome = TickOutcome()

    if has_completion_markers(observation.project_entries):
        output.append(COMPLETED_LINE)
        outcome.completed = True
        outcome.fields = {
            "status": JobStatus.COMPLETED,
            "stage": JobStage.COMPLETED,
            "output": output,
            "auth_url": auth_url,
            "app_data": {
                "name": record.app_name,
                "projectDir": project_dir_for(record.app_name),
                "sandboxId": record.sandbox_id,
                "files": sorted(observation.project_entries),
            },
        }
        return outcome

    if not observation.process_alive and auth_url is None:
        if observation.probe_output is None and not observation.probe_attempted:
            outcome.needs_probe = True
            return outcome

        output.append(STALL_LINE)
        probe_url = extract_auth_url(observation.probe_output or "")
        if probe_url:
            auth_url = probe_url
            output.append(AUTH_REQUIRED_LINE.format(url=probe_url))
        else:
            auth_url = FALLBACK_AUTH_URL
            output.append(FALLBACK_AUTH_LINE.format(url=FALLBACK_AUTH_URL))
            outcome.warnings.append(AmbiguousStallWarning(record.job_id, FALLBACK_AUTH_URL))
        stage = JobStage.WAITING_AUTH

    # Text alone never finishes a job; the CLI printing success still needs the filesystem
    if stage == JobStage.COMPLETED:
        stage = JobStage.FINALIZING
    if stage == JobStage.WAITING_AUTH and auth_url is None:
        stage = JobStage.CREATING

    outcome.fields = {"status": JobStatus.RUNNING}
    if output != record.output:
        outcome.fields["output"] = output
    if stage != record.stage:
        outcome.fields["stage"] = stage
    if auth_url != record.auth_url:
        outcome.fields["auth_url"] = auth_url
    return outcome


class SandboxProcessMonitor:
    """Runs the per-job poll loop and ceiling timer."""

    def __init__(
        self,
        store: JobStore,
        runtime: JobRuntime,
        scheduler: Scheduler,
        project_store=None,  # ProjectStore; receives app metadata on completion
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.scheduler = scheduler
        self.project_store = project_store
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, job_id: str) -> None:
        """Schedule the poll loop and the ceiling timer for an active job.

        The ceiling counts from the job's start, so sandbox provisioning and
        CLI launch time are already spent when the timer is armed.
        """
        active = self.runtime.get_active(job_id)
        if active is None:
            raise KeyError(f"Job {job_id} is not active")

        remaining = max(0.0, self.settings.job_ceiling_seconds - active.age_seconds(datetime.now(UTC)))
        active.poll_handle = self.scheduler.every(
            self.settings.job_poll_interval_seconds,
            lambda: self.tick(job_id),
            name=f"job-poll-{job_id}",
        )
        active.ceiling_handle = self.scheduler.after(
            remaining,
            lambda: self.enforce_ceiling(job_id),
            name=f"job-ceiling-{job_id}",
        )
        logger.info(
            "job_monitor_started",
            job_id=job_id,
            poll_interval=self.settings.job_poll_interval_seconds,
            ceiling_remaining=round(remaining, 1),
        )

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def observe(self, active: ActiveJob) -> SandboxObservation:
        sandbox = active.sandbox
        if sandbox is None or active.pid is None:
            raise SandboxError(f"Job {active.job_id} has no running sandbox process")

        alive = await sandbox.is_process_running(active.pid)

        log_text = ""
        if await sandbox.exists(CLI_LOG_PATH):
            log_text = await sandbox.read_file(CLI_LOG_PATH)

        entries: tuple[str, ...] = ()
        project_dir = project_dir_for(active.app_name)
        if await sandbox.exists(project_dir):
            entries = tuple(await sandbox.list_files(project_dir))

        return SandboxObservation(
            process_alive=alive,
            log_text=log_text,
            project_entries=entries,
            probe_attempted=active.probe_attempted,
        )

    async def run_probe(self, active: ActiveJob) -> str:
        """Re-run the CLI in the foreground once, only to capture fresh output."""
        chunks: list[str] = []

        async def _collect(chunk: str) -> None:
            chunks.append(chunk)

        command = build_cli_command(active.app_name, self.settings.shopify_cli_template, log_path=None)
        try:
            await active.sandbox.run_command(
                command,
                timeout=self.settings.cli_probe_timeout_seconds,
                on_stdout=_collect,
                on_stderr=_collect,
            )
        except SandboxError as exc:
            # Timing out while the CLI waits for input is the expected case
            logger.info("cli_probe_ended", job_id=active.job_id, reason=str(exc)[:200])
        return "".join(chunks)

    async def tick(self, job_id: str) -> TickOutcome | None:
        """One poll iteration. Returns the applied outcome, or None if skipped."""
        active = self.runtime.get_active(job_id)
        if active is None:
            return None

        with job_context(job_id, active.sandbox.sandbox_id if active.sandbox else None):
            return await self._tick(job_id, active)

    async def _tick(self, job_id: str, active: ActiveJob) -> TickOutcome | None:
        try:
            record = await self.store.get(job_id)
            if record is None:
                logger.warning("monitor_job_record_missing")
                return None
            if record.is_terminal:
                self.runtime.release(job_id)
                return None

            observation = await self.observe(active)
            outcome = advance(record, observation)
            if outcome.needs_probe:
                active.probe_attempted = True
                logger.info("cli_stall_detected", stage=record.stage.value)
                probe_output = await self.run_probe(active)
                observation = replace(observation, probe_attempted=True, probe_output=probe_output)
                outcome = advance(record, observation)
        except Exception as exc:
            logger.warning("monitor_tick_failed", error=str(exc), error_type=type(exc).__name__)
            return None

        for warning in outcome.warnings:
            logger.warning("ambiguous_stall_fallback", warning=str(warning))

        if outcome.fields:
            updated = await self.store.update(job_id, outcome.fields)
            if updated is not None:
                logger.debug("monitor_tick_applied", stage=updated.stage.value, lines=len(updated.output))

        if outcome.completed:
            await self._complete(job_id, active, outcome.fields.get("app_data") or {})
        return outcome

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _complete(self, job_id: str, active: ActiveJob, app_data: dict) -> None:
        if self.project_store is not None:
            try:
                await self.project_store.save_app(active.user_id, job_id, app_data)
            except Exception as exc:
                logger.warning("app_metadata_save_failed", job_id=job_id, error=str(exc))

        logger.info("job_completed", job_id=job_id, app_name=active.app_name)
        # Sandbox stays up for the scaffolded app; only the in-process handle goes
        self.runtime.release(job_id)

    async def enforce_ceiling(self, job_id: str) -> None:
        """Fail a job that has not completed within the ceiling."""
        active = self.runtime.get_active(job_id)
        if active is None:
            return
        if active.poll_handle is not None:
            active.poll_handle.cancel()

        failed_here = False
        record = await self.store.get(job_id)
        if record is None or not record.is_terminal:
            timeout = JobTimeoutError(job_id, self.settings.job_ceiling_seconds)
            updated = await self.store.update(
                job_id,
                {"status": JobStatus.FAILED, "stage": JobStage.ERROR, "error": str(timeout)},
            )
            # A completion that landed first keeps its outcome and its sandbox
            failed_here = updated is None or updated.status == JobStatus.FAILED
            if failed_here:
                logger.warning("job_ceiling_reached", job_id=job_id, ceiling=self.settings.job_ceiling_seconds)

        if failed_here and active.sandbox is not None:
            await active.sandbox.stop()
        self.runtime.release(job_id)
