"""Job record, lifecycle enums and app-name validation for Shopify CLI jobs."""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shopbuilder.core.exceptions import ValidationError

# Letters, digits, spaces and dashes only
APP_NAME_PATTERN = re.compile(r"^[A-Za-z0-9 \-]+$")

MAX_APP_NAME_LENGTH = 60

# Fields exposed to callers polling a job (camelCase on the wire)
STATUS_VIEW_FIELDS = {
    "job_id",
    "status",
    "stage",
    "output",
    "auth_url",
    "error",
    "app_data",
    "created_at",
    "updated_at",
}


class JobStatus(str, Enum):
    """Job lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, Enum):
    """Heuristic sub-state of a running job."""

    INITIALIZING = "initializing"
    CREATING = "creating"
    WAITING_AUTH = "waiting_auth"
    AUTHENTICATING = "authenticating"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STAGES = frozenset({JobStage.COMPLETED, JobStage.ERROR})

# Frozen once a record is terminal
OUTCOME_FIELDS = frozenset({"status", "stage", "error"})


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def validate_app_name(app_name: str | None) -> str:
    """Return the stripped app name or raise ValidationError."""
    name = (app_name or "").strip()
    if not name:
        raise ValidationError("App name is required")
    if len(name) > MAX_APP_NAME_LENGTH:
        raise ValidationError(f"App name must be at most {MAX_APP_NAME_LENGTH} characters")
    if not APP_NAME_PATTERN.match(name):
        raise ValidationError("App name may only contain letters, numbers, spaces and dashes")
    return name


def app_slug(app_name: str) -> str:
    """Directory name the Shopify CLI derives from an app name."""
    return re.sub(r"[\s\-]+", "-", app_name.strip().lower()).strip("-")


class JobRecord(BaseModel):
    """One Shopify app scaffolding job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    user_id: str
    app_name: str
    status: JobStatus = JobStatus.RUNNING
    stage: JobStage = JobStage.INITIALIZING
    output: list[str] = Field(default_factory=list)
    auth_url: str | None = None
    error: str | None = None
    sandbox_id: str | None = None
    app_data: dict[str, Any] | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.RUNNING or self.stage in TERMINAL_STAGES

    def writable_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        """fields minus the outcome fields when this record is already terminal."""
        if not self.is_terminal:
            return fields
        return {name: value for name, value in fields.items() if name not in OUTCOME_FIELDS}

    def merged(self, fields: dict[str, Any], now: str | None = None) -> "JobRecord":
        """Shallow-merge fields over this record and refresh updated_at.

        A terminal record keeps its status, stage and error.
        """
        data = self.model_dump()
        data.update(self.writable_fields(fields))
        data["updated_at"] = now or utc_now_iso()
        return JobRecord.model_validate(data)

    def to_status_view(self) -> dict[str, Any]:
        """Serialize the caller-facing status view."""
        return self.model_dump(mode="json", by_alias=True, include=STATUS_VIEW_FIELDS)
