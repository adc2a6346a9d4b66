"""Unit tests for E2BSandboxRuntime.

AsyncSandbox is patched; no real sandboxes are created.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shopbuilder.core.exceptions import SandboxError
from shopbuilder.sandbox.e2b_runtime import E2BSandboxRuntime

pytestmark = pytest.mark.unit


class FakeCommandExit(Exception):
    def __init__(self, stdout: str, stderr: str, exit_code: int):
        super().__init__(f"exit {exit_code}")
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


@pytest.fixture
def sbx():
    sandbox = MagicMock()
    sandbox.sandbox_id = "sbx-e2b-123"
    sandbox.kill = AsyncMock()
    sandbox.get_host = MagicMock(return_value="3000-sbx-e2b-123.e2b.app")
    sandbox.files.write = AsyncMock()
    sandbox.files.read = AsyncMock(return_value="file body")
    sandbox.files.exists = AsyncMock(return_value=True)
    sandbox.files.list = AsyncMock(return_value=[MagicMock(), MagicMock()])
    sandbox.files.list.return_value[0].name = "package.json"
    sandbox.files.list.return_value[1].name = "app"
    sandbox.files.make_dir = AsyncMock()
    sandbox.commands.run = AsyncMock()
    sandbox.commands.list = AsyncMock(return_value=[])
    sandbox.commands.kill = AsyncMock()
    return sandbox


@pytest.fixture
def sandbox_cls(sbx):
    with patch("shopbuilder.sandbox.e2b_runtime.AsyncSandbox") as cls:
        cls.create = AsyncMock(return_value=sbx)
        cls.connect = AsyncMock(return_value=sbx)
        yield cls


@pytest.fixture
async def runtime(sandbox_cls):
    runtime = E2BSandboxRuntime(template="shopify-cli", timeout=600)
    await runtime.start()
    return runtime


async def test_start_creates_sandbox_with_template_and_timeout(runtime, sandbox_cls):
    kwargs = sandbox_cls.create.await_args.kwargs
    assert kwargs["template"] == "shopify-cli"
    assert kwargs["timeout"] == 600
    assert runtime.sandbox_id == "sbx-e2b-123"


async def test_start_failure_raises_sandbox_error(sandbox_cls):
    sandbox_cls.create.side_effect = RuntimeError("quota exceeded")

    with pytest.raises(SandboxError, match="quota exceeded"):
        await E2BSandboxRuntime().start()


async def test_connect_failure_raises_sandbox_error(sandbox_cls):
    sandbox_cls.connect.side_effect = RuntimeError("sandbox not found")

    with pytest.raises(SandboxError):
        await E2BSandboxRuntime().connect("sbx-gone")


async def test_operations_before_start_raise(sandbox_cls):
    runtime = E2BSandboxRuntime()

    assert runtime.sandbox_id is None
    with pytest.raises(SandboxError, match="not started"):
        await runtime.read_file("package.json")


async def test_relative_paths_resolve_under_home(runtime, sbx):
    await runtime.write_file("app/server.js", "x")
    await runtime.write_file("/tmp/app/server.js", "y")

    assert sbx.files.write.await_args_list[0].args == ("/home/user/app/server.js", "x")
    assert sbx.files.write.await_args_list[1].args == ("/tmp/app/server.js", "y")


async def test_read_file_decodes_bytes(runtime, sbx):
    sbx.files.read.return_value = b"log line\n"
    assert await runtime.read_file("shopify-cli.log") == "log line\n"


async def test_list_files_returns_names(runtime):
    assert await runtime.list_files("/home/user/inventory-sync") == ["package.json", "app"]


async def test_exists_wraps_errors(runtime, sbx):
    sbx.files.exists.side_effect = RuntimeError("connection reset")

    with pytest.raises(SandboxError):
        await runtime.exists("/home/user/shopify-cli.log")


async def test_run_command_returns_result(runtime, sbx):
    sbx.commands.run.return_value = MagicMock(stdout="v20.0.0\n", stderr="", exit_code=0)

    result = await runtime.run_command("node --version", timeout=30)

    assert result == {"stdout": "v20.0.0\n", "stderr": "", "exit_code": 0}
    assert sbx.commands.run.await_args.kwargs["timeout"] == 30.0


async def test_run_command_returns_non_zero_exit(runtime, sbx):
    with patch("shopbuilder.sandbox.e2b_runtime.CommandExitException", FakeCommandExit):
        sbx.commands.run.side_effect = FakeCommandExit("", "npm ERR!", 1)

        result = await runtime.run_command("npm install")

    assert result == {"stdout": "", "stderr": "npm ERR!", "exit_code": 1}


async def test_run_command_failure_raises(runtime, sbx):
    sbx.commands.run.side_effect = TimeoutError("context deadline exceeded")

    with pytest.raises(SandboxError, match="npx"):
        await runtime.run_command("npx @shopify/cli app init")


async def test_background_process_liveness(runtime, sbx):
    sbx.commands.run.return_value = MagicMock(pid=4242)

    pid = await runtime.run_background("npx @shopify/cli app init > log 2>&1")

    assert pid == "4242"
    assert sbx.commands.run.await_args.kwargs["background"] is True

    sbx.commands.list.return_value = [MagicMock(pid=4242)]
    assert await runtime.is_process_running(pid)

    sbx.commands.list.return_value = []
    assert not await runtime.is_process_running(pid)


async def test_stop_kills_background_processes_and_sandbox(runtime, sbx):
    sbx.commands.run.return_value = MagicMock(pid=7)
    await runtime.run_background("node server.js")

    await runtime.stop()

    sbx.commands.kill.assert_awaited_once_with(7)
    sbx.kill.assert_awaited_once()
    assert runtime.sandbox_id is None


async def test_get_host(runtime):
    assert runtime.get_host(3000) == "3000-sbx-e2b-123.e2b.app"
