"""ProjectStore: generated projects and app metadata in S3.

Layout under the bucket:

    users/{user_id}/projects/{project_id}/project.json   metadata
    users/{user_id}/projects/{project_id}/{filename}     one object per file
    users/{user_id}/apps/{job_id}.json                   Shopify CLI app metadata

boto3 is synchronous, so every S3 call runs in a thread via asyncio.to_thread().
An empty bucket name disables persistence: saves are skipped with a warning
and listings are empty.
"""

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import boto3
import structlog

from shopbuilder.core.exceptions import NotFoundError

logger = structlog.get_logger(__name__)

METADATA_FILE = "project.json"

CONTENT_TYPES = {
    "js": "application/javascript",
    "json": "application/json",
    "html": "text/html",
    "css": "text/css",
    "txt": "text/plain",
    "md": "text/markdown",
}


def content_type_for(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return CONTENT_TYPES.get(ext, "text/plain")


def generate_project_id() -> str:
    """Millisecond timestamp plus a random suffix; sorts roughly by creation time."""
    return f"project_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _projects_prefix(user_id: str) -> str:
    return f"users/{user_id}/projects/"


@dataclass
class ProjectRecord:
    id: str
    name: str
    description: str = ""
    prompt: str = ""
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    preview_url: str | None = None
    sandbox_id: str | None = None
    files: dict[str, str] = field(default_factory=dict)

    def to_metadata(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "prompt": self.prompt,
            "createdAt": self.created_at,
            "previewUrl": self.preview_url,
            "sandboxId": self.sandbox_id,
        }

    @classmethod
    def from_metadata(cls, data: dict[str, Any], files: dict[str, str] | None = None) -> "ProjectRecord":
        return cls(
            id=data["id"],
            name=data.get("name") or f"Project {data['id']}",
            description=data.get("description", ""),
            prompt=data.get("prompt", ""),
            created_at=data.get("createdAt") or datetime.now(UTC).isoformat(),
            preview_url=data.get("previewUrl"),
            sandbox_id=data.get("sandboxId"),
            files=files or {},
        )


class ProjectStore:
    """Per-user project persistence in an S3 bucket.

    Usage:
        store = ProjectStore(bucket="my-bucket")
        record = await store.save_project(user_id, ProjectRecord(...))
    """

    def __init__(self, bucket: str, region: str = "us-east-1", client: Any | None = None) -> None:
        self._bucket = bucket
        self._region = region
        # Created once, before any to_thread worker touches it
        if client is None and bucket:
            client = boto3.client("s3", region_name=region)
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self._bucket)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save_project(self, user_id: str, record: ProjectRecord) -> ProjectRecord:
        """Write metadata and every file. Skipped (record returned as-is) when disabled."""
        if not self.enabled:
            logger.warning("project_store_disabled", operation="save_project", project_id=record.id)
            return record

        await asyncio.to_thread(self._put_project, user_id, record)
        logger.info("project_saved", user_id=user_id, project_id=record.id, file_count=len(record.files))
        return record

    async def list_projects(self, user_id: str) -> list[ProjectRecord]:
        """Metadata of every readable project, newest first."""
        if not self.enabled:
            return []
        return await asyncio.to_thread(self._list_projects, user_id)

    async def count_projects(self, user_id: str) -> int:
        if not self.enabled:
            return 0
        return len(await asyncio.to_thread(self._metadata_keys, user_id))

    async def get_project(self, user_id: str, project_id: str) -> ProjectRecord:
        """Metadata plus files. Raises NotFoundError if the project does not exist."""
        if not self.enabled:
            raise NotFoundError(f"Project {project_id} not found")
        record = await asyncio.to_thread(self._get_project, user_id, project_id)
        if record is None:
            raise NotFoundError(f"Project {project_id} not found")
        return record

    async def save_app(self, user_id: str, job_id: str, app_data: dict[str, Any]) -> str | None:
        """Persist Shopify CLI app metadata for a completed job. Returns the key, or None when disabled."""
        if not self.enabled:
            logger.warning("project_store_disabled", operation="save_app", job_id=job_id)
            return None

        key = f"users/{user_id}/apps/{job_id}.json"
        body = json.dumps(
            {**app_data, "jobId": job_id, "savedAt": datetime.now(UTC).isoformat()},
            indent=2,
        )
        await asyncio.to_thread(self._put_object, key, body, "application/json")
        logger.info("app_metadata_saved", user_id=user_id, job_id=job_id, key=key)
        return key

    # ------------------------------------------------------------------
    # Private helpers (run inside asyncio.to_thread)
    # ------------------------------------------------------------------

    def _put_object(self, key: str, body: str, content_type: str) -> None:
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType=content_type,
        )

    def _put_project(self, user_id: str, record: ProjectRecord) -> None:
        prefix = f"{_projects_prefix(user_id)}{record.id}/"
        self._put_object(
            f"{prefix}{METADATA_FILE}",
            json.dumps(record.to_metadata(), indent=2),
            "application/json",
        )
        for filename, content in record.files.items():
            self._put_object(f"{prefix}{filename}", content, content_type_for(filename))

    def _read_object(self, key: str) -> str:
        response = self._client.get_object(Bucket=self._bucket, Key=key)
        return response["Body"].read().decode("utf-8")

    def _list_keys(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    def _metadata_keys(self, user_id: str) -> list[str]:
        prefix = _projects_prefix(user_id)
        return [
            key
            for key in self._list_keys(prefix)
            # Only users/{uid}/projects/{pid}/project.json, not nested files of that name
            if key.endswith(f"/{METADATA_FILE}") and key[len(prefix):].count("/") == 1
        ]

    def _list_projects(self, user_id: str) -> list[ProjectRecord]:
        projects: list[ProjectRecord] = []
        for key in self._metadata_keys(user_id):
            try:
                projects.append(ProjectRecord.from_metadata(json.loads(self._read_object(key))))
            except (KeyError, ValueError) as exc:
                logger.warning("project_metadata_invalid", key=key, error=str(exc))
        return sorted(projects, key=lambda p: p.created_at, reverse=True)

    def _get_project(self, user_id: str, project_id: str) -> ProjectRecord | None:
        prefix = f"{_projects_prefix(user_id)}{project_id}/"
        keys = self._list_keys(prefix)
        metadata_key = f"{prefix}{METADATA_FILE}"
        if metadata_key not in keys:
            return None

        metadata = json.loads(self._read_object(metadata_key))
        files = {
            key[len(prefix):]: self._read_object(key)
            for key in keys
            if key != metadata_key
        }
        return ProjectRecord.from_metadata(metadata, files)
