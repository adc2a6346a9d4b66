"""Shared test fixtures for all test groups."""

import pytest
from fakeredis import FakeAsyncRedis

from shopbuilder.core.config import Settings
from shopbuilder.core.exceptions import SandboxError
from shopbuilder.jobs.monitor import CLI_LOG_PATH
from shopbuilder.jobs.runtime import JobRuntime
from shopbuilder.jobs.store import JobStore
from shopbuilder.sandbox.e2b_runtime import HOME_DIR


class FakeSandbox:
    """In-memory stand-in for E2BSandboxRuntime.

    files maps absolute path -> content; a directory exists when any file
    lives under it or it was created with make_dir.
    """

    def __init__(self, sandbox_id: str = "sbx-test-001", host: str = "3000-sbx-test-001.e2b.app"):
        self.sandbox_id_value = sandbox_id
        self.host = host
        self.started = False
        self.stopped = False
        self.connected_to: str | None = None
        self.files: dict[str, str] = {}
        self.dirs: set[str] = set()
        self.processes: dict[str, bool] = {}
        self.background_commands: list[str] = []
        self.foreground_commands: list[str] = []
        self.probe_output = ""
        self.fail_start = False
        self.fail_connect = False
        self.fail_reads = False

    @property
    def sandbox_id(self) -> str | None:
        return self.sandbox_id_value if self.started and not self.stopped else None

    async def start(self) -> None:
        if self.fail_start:
            raise SandboxError("Failed to start sandbox: quota exceeded")
        self.started = True

    async def connect(self, sandbox_id: str) -> None:
        if self.fail_connect:
            raise SandboxError(f"Failed to connect to sandbox {sandbox_id}: not found")
        self.connected_to = sandbox_id
        self.sandbox_id_value = sandbox_id
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    def get_host(self, port: int) -> str:
        return self.host

    async def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    async def read_file(self, path: str) -> str:
        if self.fail_reads:
            raise SandboxError(f"Failed to read file {path}: connection reset")
        return self.files[path]

    async def exists(self, path: str) -> bool:
        if self.fail_reads:
            raise SandboxError(f"Failed to stat {path}: connection reset")
        prefix = path.rstrip("/") + "/"
        return path in self.files or path in self.dirs or any(f.startswith(prefix) for f in self.files)

    async def list_files(self, path: str = HOME_DIR) -> list[str]:
        prefix = path.rstrip("/") + "/"
        names = {f[len(prefix):].split("/", 1)[0] for f in self.files if f.startswith(prefix)}
        names |= {d[len(prefix):].split("/", 1)[0] for d in self.dirs if d.startswith(prefix)}
        return sorted(names)

    async def make_dir(self, path: str) -> None:
        self.dirs.add(path)

    async def run_command(self, command, timeout=120, cwd=None, on_stdout=None, on_stderr=None) -> dict:
        self.foreground_commands.append(command)
        if on_stdout is not None and self.probe_output:
            await on_stdout(self.probe_output)
        return {"stdout": self.probe_output, "stderr": "", "exit_code": 0}

    async def run_background(self, command: str, cwd: str | None = None) -> str:
        self.background_commands.append(command)
        pid = str(100 + len(self.processes))
        self.processes[pid] = True
        return pid

    async def is_process_running(self, pid: str) -> bool:
        return self.processes.get(pid, False)

    async def kill_process(self, pid: str) -> None:
        self.processes[pid] = False

    # Test helpers

    def write_log(self, text: str) -> None:
        self.files[CLI_LOG_PATH] = text

    def exit_all(self) -> None:
        for pid in self.processes:
            self.processes[pid] = False


@pytest.fixture
def settings():
    """Settings with fast timers and no external services."""
    return Settings(
        anthropic_api_key="test-key",
        redis_url="",
        projects_bucket="",
        job_poll_interval_seconds=0.01,
        job_ceiling_seconds=0.2,
        abandoned_job_seconds=1800,
        abandoned_sweep_interval_seconds=600,
        preview_grace_seconds=0,
    )


@pytest.fixture
async def redis():
    """Fake Redis instance with decode_responses=True."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def runtime():
    return JobRuntime()


@pytest.fixture
def memory_store(runtime):
    """JobStore without a durable backend."""
    return JobStore(runtime)


@pytest.fixture
def fake_sandbox():
    return FakeSandbox()


@pytest.fixture
def make_sandbox():
    """FakeSandbox class, for tests that need several sandboxes."""
    return FakeSandbox
