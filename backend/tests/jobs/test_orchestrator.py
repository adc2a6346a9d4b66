"""Tests for JobOrchestrator: start, status, setup acknowledgement and sweeps."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from shopbuilder.core.exceptions import AccessDeniedError, NotFoundError, ValidationError
from shopbuilder.jobs.monitor import CLI_LOG_PATH
from shopbuilder.jobs.orchestrator import JobOrchestrator
from shopbuilder.jobs.schemas import JobRecord, JobStage, JobStatus
from shopbuilder.jobs.store import JobStore

pytestmark = pytest.mark.unit


@pytest.fixture
async def orchestrator(memory_store, runtime, fake_sandbox, settings):
    orchestrator = JobOrchestrator(
        store=memory_store,
        runtime=runtime,
        sandbox_runtime_factory=lambda: fake_sandbox,
        project_store=AsyncMock(),
        settings=settings,
    )
    yield orchestrator
    await orchestrator.shutdown()


async def start_and_launch(orchestrator, runtime, user_id="user-abc", app_name="Inventory Sync") -> str:
    job_id = await orchestrator.start_job(user_id, app_name)
    await runtime.get_active(job_id).launch_handle.wait()
    return job_id


# ============================================================================
# start_job
# ============================================================================


async def test_start_job_record_is_immediately_readable(orchestrator):
    job_id = await orchestrator.start_job("user-abc", "Inventory Sync")

    record = await orchestrator.get_status(job_id, "user-abc")
    assert record.status == JobStatus.RUNNING
    assert record.stage == JobStage.INITIALIZING
    assert record.app_name == "Inventory Sync"
    assert record.output


async def test_start_job_strips_app_name(orchestrator):
    job_id = await orchestrator.start_job("user-abc", "  Inventory Sync  ")

    record = await orchestrator.get_status(job_id, "user-abc")
    assert record.app_name == "Inventory Sync"


async def test_launch_starts_cli_in_background(orchestrator, runtime, fake_sandbox):
    job_id = await start_and_launch(orchestrator, runtime)

    record = await orchestrator.get_status(job_id, "user-abc")
    assert record.sandbox_id == "sbx-test-001"
    assert fake_sandbox.started
    assert len(fake_sandbox.background_commands) == 1
    command = fake_sandbox.background_commands[0]
    assert "@shopify/cli" in command
    assert CLI_LOG_PATH in command

    active = runtime.get_active(job_id)
    assert active.pid is not None
    assert active.poll_handle is not None
    assert active.ceiling_handle is not None


@pytest.mark.parametrize(
    "app_name",
    ["My App!", "app_name", "../../etc", "<script>", "", "   ", "a" * 61],
)
async def test_invalid_app_name_creates_nothing(orchestrator, runtime, app_name):
    with pytest.raises(ValidationError):
        await orchestrator.start_job("user-abc", app_name)

    assert runtime.jobs == {}
    assert runtime.active == {}


async def test_launch_failure_marks_job_failed(orchestrator, runtime, fake_sandbox):
    fake_sandbox.fail_start = True

    job_id = await start_and_launch(orchestrator, runtime)

    record = await orchestrator.get_status(job_id, "user-abc")
    assert record.status == JobStatus.FAILED
    assert record.stage == JobStage.ERROR
    assert "Failed to start app creation" in record.error
    assert runtime.get_active(job_id) is None


# ============================================================================
# get_status / acknowledge_setup
# ============================================================================


async def test_get_status_unknown_job(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.get_status("no-such-job", "user-abc")


async def test_get_status_other_user_is_denied(orchestrator):
    job_id = await orchestrator.start_job("user-abc", "Inventory Sync")

    with pytest.raises(AccessDeniedError):
        await orchestrator.get_status(job_id, "user-xyz")


async def test_acknowledge_setup_moves_to_finalizing(orchestrator, memory_store):
    job_id = await orchestrator.start_job("user-abc", "Inventory Sync")
    await memory_store.update(job_id, {"stage": JobStage.WAITING_AUTH})

    record = await orchestrator.acknowledge_setup(job_id, "user-abc")

    assert record.stage == JobStage.FINALIZING
    assert record.status == JobStatus.RUNNING


async def test_acknowledge_setup_leaves_terminal_job_unchanged(orchestrator, memory_store):
    job_id = await orchestrator.start_job("user-abc", "Inventory Sync")
    await memory_store.update(job_id, {"status": JobStatus.FAILED, "stage": JobStage.ERROR, "error": "boom"})

    record = await orchestrator.acknowledge_setup(job_id, "user-abc")

    assert record.status == JobStatus.FAILED
    assert record.stage == JobStage.ERROR


@pytest.mark.parametrize("durable", [True, False])
async def test_acknowledge_setup_cannot_reopen_job_completed_meanwhile(
    runtime, redis, fake_sandbox, settings, durable
):
    store = JobStore(runtime, redis if durable else None)
    orchestrator = JobOrchestrator(
        store=store,
        runtime=runtime,
        sandbox_runtime_factory=lambda: fake_sandbox,
        project_store=AsyncMock(),
        settings=settings,
    )
    await store.create(JobRecord(job_id="job-1", user_id="user-abc", app_name="Inventory Sync"))
    real_get = store.get

    async def get_then_complete(job_id):
        record = await real_get(job_id)
        # The monitor completes the job while the acknowledgement is in flight
        await store.update(
            job_id,
            {"status": JobStatus.COMPLETED, "stage": JobStage.COMPLETED, "app_data": {"name": "Inventory Sync"}},
        )
        return record

    store.get = get_then_complete

    record = await orchestrator.acknowledge_setup("job-1", "user-abc")

    assert record.status == JobStatus.COMPLETED
    assert record.stage == JobStage.COMPLETED
    stored = await real_get("job-1")
    assert stored.status == JobStatus.COMPLETED
    assert stored.stage == JobStage.COMPLETED
    assert stored.app_data == {"name": "Inventory Sync"}


async def test_acknowledge_setup_checks_ownership(orchestrator):
    job_id = await orchestrator.start_job("user-abc", "Inventory Sync")

    with pytest.raises(AccessDeniedError):
        await orchestrator.acknowledge_setup(job_id, "user-xyz")


# ============================================================================
# Sweeps
# ============================================================================


async def test_sweep_abandoned_drops_old_jobs(orchestrator, runtime, fake_sandbox):
    job_id = await start_and_launch(orchestrator, runtime)
    runtime.get_active(job_id).started_at = datetime.now(UTC) - timedelta(minutes=31)

    dropped = await orchestrator.sweep_abandoned()

    assert dropped == 1
    assert runtime.get_active(job_id) is None
    assert fake_sandbox.stopped
    record = await orchestrator.get_status(job_id, "user-abc")
    assert record.status == JobStatus.FAILED
    assert "abandoned" in record.error


async def test_sweep_abandoned_keeps_recent_jobs(orchestrator, runtime):
    job_id = await start_and_launch(orchestrator, runtime)

    assert await orchestrator.sweep_abandoned() == 0
    assert runtime.get_active(job_id) is not None


async def test_sweep_expired_purges_old_records(orchestrator, runtime):
    job_id = await orchestrator.start_job("user-abc", "Inventory Sync")
    runtime.release(job_id)

    removed = await orchestrator.sweep_expired(now=datetime.now(UTC) + timedelta(days=2))

    assert removed == 1
    with pytest.raises(NotFoundError):
        await orchestrator.get_status(job_id, "user-abc")


async def test_shutdown_stops_active_sandboxes(orchestrator, runtime, fake_sandbox):
    await start_and_launch(orchestrator, runtime)
    orchestrator.start_sweeper()

    await orchestrator.shutdown()

    assert runtime.active == {}
    assert fake_sandbox.stopped
