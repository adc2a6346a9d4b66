"""CodeGenerationPipeline: prompt -> LLM code -> running preview in an E2B sandbox.

Flow for generate():
    LLM completion -> code-block extraction -> new sandbox -> write files
    under /tmp/app -> fallback package.json -> npm install && node server.js
    (background) -> grace period -> preview URL -> persist project

A deployment failure after a successful completion still returns the
generated code, with preview_url None and an error message.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from shopbuilder.core.config import Settings, get_settings
from shopbuilder.core.exceptions import SandboxError, ValidationError
from shopbuilder.sandbox.e2b_runtime import E2BSandboxRuntime
from shopbuilder.services.code_blocks import extract_code_blocks
from shopbuilder.services.llm import AnthropicCompletionClient, TokenUsage
from shopbuilder.services.project_store import ProjectRecord, ProjectStore, generate_project_id

logger = structlog.get_logger(__name__)

APP_DIR = "/tmp/app"
START_COMMAND = f"cd {APP_DIR} && npm install && node server.js"
DEPLOY_FAILED_ERROR = "Failed to deploy to sandbox"

FALLBACK_PACKAGE_JSON = json.dumps(
    {
        "name": "shopify-app",
        "version": "1.0.0",
        "main": "server.js",
        "dependencies": {"express": "^4.18.2"},
    },
    indent=2,
)

SYSTEM_PROMPT = """You generate small Shopify companion web apps that run inside a Linux sandbox.

Build every app as a self-contained Node.js + Express application:
- server.js is the entry point and listens on port 3000
- static assets (HTML, CSS, client JS) sit next to server.js and are served
  with express.static(__dirname), never from a public/ subdirectory
- package.json lists every dependency; stick to common packages such as express
- the app must start with `npm install` followed by `node server.js`

Answer with a short description of the app, then one fenced code block per
file. Put the filename as a comment on the first line of each block, e.g.

```javascript
// server.js
const express = require('express');
const path = require('path');
const app = express();

app.use(express.static(__dirname));
app.get('/', (req, res) => res.sendFile(path.join(__dirname, 'index.html')));
app.listen(3000, () => console.log('App running on port 3000'));
```
"""


def describe_prompt(prompt: str) -> str:
    excerpt = prompt[:100] + ("..." if len(prompt) > 100 else "")
    return f'Generated from prompt: "{excerpt}"'


@dataclass
class DeployResult:
    sandbox_id: str | None
    preview_url: str | None
    files: dict[str, str]


@dataclass
class GenerationResult:
    code: str
    project_id: str | None = None
    preview_url: str | None = None
    sandbox_id: str | None = None
    error: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    files: dict[str, str] = field(default_factory=dict)

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "success": True,
            "response": self.code,
            "previewUrl": self.preview_url,
            "sandboxId": self.sandbox_id,
            "projectId": self.project_id,
            "files": self.files,
            "usage": {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
            },
        }
        if self.error:
            response["error"] = self.error
        return response


class CodeGenerationPipeline:
    """Generates, deploys and persists prompt-driven web apps.

    Constructor uses dependency injection so tests can supply a fake LLM,
    project store and sandbox factory.

    Args:
        llm: Completion client with complete(system_prompt, user_prompt)
        project_store: ProjectStore for generated projects
        sandbox_runtime_factory: Zero-arg callable returning an E2BSandboxRuntime
        sleep: Awaitable delay used for the post-start grace period
    """

    def __init__(
        self,
        llm: AnthropicCompletionClient,
        project_store: ProjectStore,
        sandbox_runtime_factory: Callable[[], E2BSandboxRuntime],
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.llm = llm
        self.project_store = project_store
        self.sandbox_runtime_factory = sandbox_runtime_factory
        self.settings = settings or get_settings()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, user_id: str, prompt: str) -> GenerationResult:
        """Run the full pipeline for one prompt.

        Raises:
            ValidationError: empty prompt
            LLMError: the completion call failed (nothing deployed or saved)
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required")

        log = logger.bind(user_id=user_id)
        log.info("code_generation_started", prompt_length=len(prompt))

        completion = await self.llm.complete(SYSTEM_PROMPT, prompt)
        files = extract_code_blocks(completion.text)
        log.info("code_blocks_extracted", files=sorted(files))

        try:
            deployed = await self.deploy(files)
        except Exception as exc:
            log.warning("sandbox_deploy_failed", error=str(exc), error_type=type(exc).__name__)
            return GenerationResult(
                code=completion.text,
                error=DEPLOY_FAILED_ERROR,
                usage=completion.usage,
                files=files,
            )

        # The preview is live from here on; storage failures only cost the history entry
        project_id = generate_project_id()
        try:
            name = await self.next_project_name(user_id)
        except Exception as exc:
            log.warning("project_count_failed", project_id=project_id, error=str(exc))
            name = f"{user_id}-{project_id}"

        record = ProjectRecord(
            id=project_id,
            name=name,
            description=describe_prompt(prompt),
            prompt=prompt,
            preview_url=deployed.preview_url,
            sandbox_id=deployed.sandbox_id,
            files=deployed.files,
        )
        try:
            await self.project_store.save_project(user_id, record)
        except Exception as exc:
            log.error("project_save_failed", project_id=record.id, error=str(exc))

        log.info(
            "code_generation_completed",
            project_id=record.id,
            sandbox_id=deployed.sandbox_id,
            preview_url=deployed.preview_url,
        )
        return GenerationResult(
            code=completion.text,
            project_id=record.id,
            preview_url=deployed.preview_url,
            sandbox_id=deployed.sandbox_id,
            usage=completion.usage,
            files=deployed.files,
        )

    async def deploy(self, files: dict[str, str]) -> DeployResult:
        """Write files to a new sandbox, start the server and return its preview URL.

        The returned files include the fallback package.json when one was added.
        The sandbox is stopped if any step fails.
        """
        files = dict(files)
        if "package.json" not in files:
            files["package.json"] = FALLBACK_PACKAGE_JSON

        sandbox = self.sandbox_runtime_factory()
        await sandbox.start()
        try:
            await sandbox.make_dir(APP_DIR)
            for filename, content in files.items():
                await sandbox.write_file(f"{APP_DIR}/{filename}", content)

            await sandbox.run_background(START_COMMAND, cwd=APP_DIR)
            await self._sleep(self.settings.preview_grace_seconds)
            preview_url = f"https://{sandbox.get_host(self.settings.preview_port)}"
        except Exception:
            await sandbox.stop()
            raise

        logger.info("sandbox_deployed", sandbox_id=sandbox.sandbox_id, file_count=len(files))
        return DeployResult(sandbox_id=sandbox.sandbox_id, preview_url=preview_url, files=files)

    async def next_project_name(self, user_id: str) -> str:
        """"{user_id}-project-NNN" from the stored project count.

        The count is read fresh on every call. Two concurrent generations for
        the same user can therefore get the same ordinal; names are labels,
        project ids stay unique.
        """
        count = await self.project_store.count_projects(user_id)
        return f"{user_id}-project-{count + 1:03d}"

    async def get_project_with_preview(self, user_id: str, project_id: str) -> ProjectRecord:
        """Stored project with a working preview.

        Reconnects to the recorded sandbox when it is still alive, otherwise
        redeploys the stored files to a fresh one. The refreshed preview_url
        and sandbox_id are returned, not persisted.

        Raises:
            NotFoundError: unknown project
        """
        record = await self.project_store.get_project(user_id, project_id)

        if record.sandbox_id:
            sandbox = self.sandbox_runtime_factory()
            try:
                await sandbox.connect(record.sandbox_id)
                preview_url = f"https://{sandbox.get_host(self.settings.preview_port)}"
                return replace(record, preview_url=preview_url)
            except SandboxError as exc:
                logger.info("project_sandbox_gone", project_id=project_id, sandbox_id=record.sandbox_id,
                            error=str(exc))

        if not record.files:
            return replace(record, preview_url=None, sandbox_id=None)

        try:
            deployed = await self.deploy(record.files)
        except Exception as exc:
            logger.warning("project_redeploy_failed", project_id=project_id, error=str(exc))
            return replace(record, preview_url=None, sandbox_id=None)

        logger.info("project_redeployed", project_id=project_id, sandbox_id=deployed.sandbox_id)
        return replace(record, preview_url=deployed.preview_url, sandbox_id=deployed.sandbox_id)
