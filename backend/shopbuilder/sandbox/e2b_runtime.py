"""E2B Sandbox Runtime: remote execution environment for generated apps and CLI jobs.

This module wraps the E2B async sandbox so the rest of the backend can:
- Write, read and probe files
- Execute shell commands (foreground, with timeout)
- Run long-running processes in the background and check their liveness
- Expose a port as a public preview host
"""

import structlog
from e2b import CommandExitException
from e2b_code_interpreter import AsyncSandbox

from shopbuilder.core.config import get_settings
from shopbuilder.core.exceptions import SandboxError

logger = structlog.get_logger(__name__)

HOME_DIR = "/home/user"


def _abs_path(path: str) -> str:
    # E2B expects absolute paths
    return path if path.startswith("/") else f"{HOME_DIR}/{path}"


class E2BSandboxRuntime:
    """Manages one E2B sandbox instance."""

    def __init__(self, template: str | None = None, timeout: int | None = None):
        """Initialize the E2B runtime.

        Args:
            template: E2B template id. None uses the account default.
            timeout: Sandbox lifetime in seconds (defaults to settings).
        """
        self.settings = get_settings()
        self.template = template
        self.timeout = timeout or self.settings.sandbox_timeout_seconds
        self._sandbox: AsyncSandbox | None = None
        self._background_processes: dict[str, object] = {}

    async def start(self) -> None:
        """Start a new sandbox instance."""
        if self._sandbox:
            return

        kwargs: dict = {"timeout": self.timeout}
        if self.template:
            kwargs["template"] = self.template
        if self.settings.e2b_api_key:
            kwargs["api_key"] = self.settings.e2b_api_key

        try:
            self._sandbox = await AsyncSandbox.create(**kwargs)
        except Exception as e:
            raise SandboxError(f"Failed to start sandbox: {e}") from e

        logger.info("sandbox_started", sandbox_id=self.sandbox_id, template=self.template)

    async def connect(self, sandbox_id: str) -> None:
        """Reconnect to an existing sandbox by its sandbox_id.

        Raises:
            SandboxError: If the sandbox has expired or connection fails
        """
        kwargs: dict = {}
        if self.settings.e2b_api_key:
            kwargs["api_key"] = self.settings.e2b_api_key

        try:
            self._sandbox = await AsyncSandbox.connect(sandbox_id, **kwargs)
        except Exception as e:
            raise SandboxError(f"Failed to connect to sandbox {sandbox_id}: {e}") from e

    async def stop(self) -> None:
        """Kill background processes and the sandbox."""
        if not self._sandbox:
            return

        for pid in list(self._background_processes.keys()):
            await self.kill_process(pid)

        try:
            await self._sandbox.kill()
        except Exception as e:
            logger.warning("sandbox_kill_failed", sandbox_id=self.sandbox_id, error=str(e))

        self._sandbox = None

    @property
    def sandbox_id(self) -> str | None:
        """Return the sandbox ID for reconnection."""
        return self._sandbox.sandbox_id if self._sandbox else None

    def _require(self) -> AsyncSandbox:
        if not self._sandbox:
            raise SandboxError("Sandbox not started")
        return self._sandbox

    def get_host(self, port: int) -> str:
        """Get the public hostname for a port. Synchronous, no await needed."""
        return self._require().get_host(port)

    async def write_file(self, path: str, content: str) -> None:
        """Write content to a file in the sandbox."""
        sandbox = self._require()
        try:
            await sandbox.files.write(_abs_path(path), content)
        except Exception as e:
            raise SandboxError(f"Failed to write file {path}: {e}") from e

    async def read_file(self, path: str) -> str:
        """Read a text file from the sandbox."""
        sandbox = self._require()
        try:
            content = await sandbox.files.read(_abs_path(path))
        except Exception as e:
            raise SandboxError(f"Failed to read file {path}: {e}") from e
        if isinstance(content, bytes):
            return content.decode("utf-8", errors="replace")
        return content

    async def exists(self, path: str) -> bool:
        """Return True if a file or directory exists in the sandbox."""
        sandbox = self._require()
        try:
            return await sandbox.files.exists(_abs_path(path))
        except Exception as e:
            raise SandboxError(f"Failed to stat {path}: {e}") from e

    async def list_files(self, path: str = HOME_DIR) -> list[str]:
        """List entry names in a directory."""
        sandbox = self._require()
        try:
            entries = await sandbox.files.list(_abs_path(path))
        except Exception as e:
            raise SandboxError(f"Failed to list files in {path}: {e}") from e
        return [entry.name for entry in entries]

    async def make_dir(self, path: str) -> None:
        """Create a directory (and parents) in the sandbox."""
        sandbox = self._require()
        try:
            await sandbox.files.make_dir(_abs_path(path))
        except Exception as e:
            raise SandboxError(f"Failed to create directory {path}: {e}") from e

    async def run_command(
        self,
        command: str,
        timeout: int = 120,
        cwd: str | None = None,
        on_stdout=None,  # Optional[Callable[[str], Awaitable[None]]]
        on_stderr=None,  # Optional[Callable[[str], Awaitable[None]]]
    ) -> dict:
        """Run a shell command in the foreground.

        A non-zero exit code is returned, not raised.

        Returns:
            Dict with keys: stdout, stderr, exit_code
        """
        sandbox = self._require()
        try:
            result = await sandbox.commands.run(
                command,
                timeout=float(timeout),
                cwd=_abs_path(cwd or HOME_DIR),
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
        except CommandExitException as e:
            return {"stdout": e.stdout, "stderr": e.stderr, "exit_code": e.exit_code}
        except Exception as e:
            raise SandboxError(f"Failed to run command '{command}': {e}") from e

        return {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
        }

    async def run_background(self, command: str, cwd: str | None = None) -> str:
        """Start a command in the background and return its process id."""
        sandbox = self._require()
        try:
            handle = await sandbox.commands.run(
                command,
                background=True,
                cwd=_abs_path(cwd or HOME_DIR),
            )
        except Exception as e:
            raise SandboxError(f"Failed to start background command '{command}': {e}") from e

        pid = str(handle.pid)
        self._background_processes[pid] = handle
        return pid

    async def is_process_running(self, pid: str) -> bool:
        """Check the sandbox process list for pid."""
        sandbox = self._require()
        try:
            processes = await sandbox.commands.list()
        except Exception as e:
            raise SandboxError(f"Failed to list processes: {e}") from e
        return any(str(p.pid) == str(pid) for p in processes)

    async def kill_process(self, pid: str) -> None:
        """Kill a background process (best effort)."""
        if pid not in self._background_processes:
            return

        try:
            await self._sandbox.commands.kill(int(pid))
        except Exception as e:
            logger.debug("sandbox_kill_process_failed", pid=pid, error=str(e))
        finally:
            del self._background_processes[pid]
