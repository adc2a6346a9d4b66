"""API-specific test fixtures.

The app is built with create_app() and its state is populated directly, so
the lifespan (Redis, E2B, S3) never runs.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from shopbuilder.jobs.orchestrator import JobOrchestrator
from shopbuilder.main import create_app
from shopbuilder.services.generation_service import CodeGenerationPipeline
from shopbuilder.services.llm import Completion, TokenUsage

GENERATED = """A stock counter.

```javascript
// server.js
const express = require('express');
const app = express();
app.listen(3000);
```
"""


@pytest.fixture
def settings(settings):
    """Shared settings with a ceiling no request round-trip can reach."""
    return settings.model_copy(update={"job_ceiling_seconds": 30.0})


@pytest.fixture
def llm():
    client = MagicMock()
    client.complete = AsyncMock(
        return_value=Completion(text=GENERATED, usage=TokenUsage(input_tokens=10, output_tokens=20))
    )
    return client


@pytest.fixture
def project_store():
    store = MagicMock()
    store.count_projects = AsyncMock(return_value=0)
    store.save_project = AsyncMock(side_effect=lambda user_id, record: record)
    store.save_app = AsyncMock(return_value=None)
    store.list_projects = AsyncMock(return_value=[])
    store.get_project = AsyncMock()
    return store


@pytest.fixture
async def orchestrator(memory_store, runtime, fake_sandbox, project_store, settings):
    orchestrator = JobOrchestrator(
        store=memory_store,
        runtime=runtime,
        sandbox_runtime_factory=lambda: fake_sandbox,
        project_store=project_store,
        settings=settings,
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def pipeline(llm, project_store, fake_sandbox, settings):
    return CodeGenerationPipeline(
        llm=llm,
        project_store=project_store,
        sandbox_runtime_factory=lambda: fake_sandbox,
        settings=settings,
        sleep=AsyncMock(),
    )


@pytest.fixture
def app(orchestrator, pipeline, memory_store, project_store):
    app = create_app()
    app.state.job_store = memory_store
    app.state.project_store = project_store
    app.state.orchestrator = orchestrator
    app.state.pipeline = pipeline
    return app


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
