"""Job model - one carousel generation request and its lifecycle record.

Status lifecycle:
    queued → processing → completed
                        ↘ failed

The authoritative copy lives in the remote ``jobs`` table (snake_case
columns); ``JobData.from_row`` / ``JobData.to_row`` translate between the two.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# Valid job status values, ordered by lifecycle stage
JOB_STATUS_QUEUED = "queued"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

VALID_JOB_STATUSES: list[str] = [
    JOB_STATUS_QUEUED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
]

TERMINAL_JOB_STATUSES = frozenset({JOB_STATUS_COMPLETED, JOB_STATUS_FAILED})

# completed and failed share a rank: neither can follow the other
_STATUS_RANK = {
    JOB_STATUS_QUEUED: 0,
    JOB_STATUS_PROCESSING: 1,
    JOB_STATUS_COMPLETED: 2,
    JOB_STATUS_FAILED: 2,
}

# Data-source kinds
DATA_TYPE_CSV = "csv"
DATA_TYPE_SCRIPT = "script"
DATA_TYPE_NATURAL_LANGUAGE = "natural-language"

VALID_DATA_TYPES: list[str] = [
    DATA_TYPE_CSV,
    DATA_TYPE_SCRIPT,
    DATA_TYPE_NATURAL_LANGUAGE,
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_JOB_STATUSES


def can_transition(current: str, new: str) -> bool:
    """Return True if a job may move from ``current`` to ``new``.

    Re-reporting the same status is always allowed. Terminal statuses are
    final, and nothing moves back towards ``queued``.
    """
    if current == new:
        return True
    if current not in _STATUS_RANK or new not in _STATUS_RANK:
        return False
    if is_terminal(current):
        return False
    return _STATUS_RANK[new] > _STATUS_RANK[current]


def normalize_progress(status: str, progress: int) -> int:
    """Clamp progress to 0..100 and pin it for queued/completed jobs."""
    if status == JOB_STATUS_QUEUED:
        return 0
    if status == JOB_STATUS_COMPLETED:
        return 100
    return max(0, min(100, int(progress)))


def next_progress(current_status: str, current: int, new_status: str, new: int) -> int:
    """Progress to record for a transition; never decreases while processing."""
    value = normalize_progress(new_status, new)
    if current_status == JOB_STATUS_PROCESSING and new_status == JOB_STATUS_PROCESSING:
        return max(current, value)
    return value


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()


class GeneratedPrompt(BaseModel):
    """One image prompt written by the processor for a single variant."""

    id: str
    prompt: str
    data_variables: dict[str, str] | None = Field(default=None, alias="dataVariables")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("data_variables", mode="before")
    @classmethod
    def _stringify_values(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    def to_payload(self) -> dict[str, Any]:
        """camelCase dict as stored in the ``prompts`` column."""
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_prompts(raw: Any) -> list[GeneratedPrompt] | None:
    """Decode the ``prompts`` column, which may be JSON text or a JSON array."""
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.error("Could not parse prompts JSON: %.200s", raw)
            return None
    if not isinstance(raw, list):
        return None
    return [GeneratedPrompt.model_validate(item) for item in raw]


class JobData(BaseModel):
    """Client-side view of a job row."""

    id: str
    name: str
    template_id: str
    template_name: str = ""
    # Snapshot of the template at creation time, never refreshed
    template_description: str = ""
    template_image_url: str = ""

    status: str = JOB_STATUS_QUEUED
    progress: int = 0
    variants: int = 1
    data_type: str = DATA_TYPE_SCRIPT
    data_content: list[dict[str, Any]] | str = ""

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    message: str | None = None
    image_urls: list[str] | None = None
    prompts: list[GeneratedPrompt] | None = None
    user_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "JobData":
        """Build a JobData from a ``jobs`` table row."""
        content = row.get("data_content")
        if not isinstance(content, (str, list)):
            content = ""
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            template_id=row.get("template_id") or "",
            template_name=row.get("template_name") or "",
            template_description=row.get("template_description") or "",
            template_image_url=row.get("template_image_url") or "",
            status=row.get("status") or JOB_STATUS_QUEUED,
            progress=row.get("progress") or 0,
            variants=row.get("variants") or 1,
            data_type=row.get("data_type") or DATA_TYPE_SCRIPT,
            data_content=content,
            created_at=_parse_timestamp(row.get("created_at")),
            updated_at=_parse_timestamp(row.get("updated_at")),
            message=row.get("message"),
            image_urls=row.get("image_urls"),
            prompts=parse_prompts(row.get("prompts")),
            user_id=row.get("user_id"),
        )

    def to_row(self) -> dict[str, Any]:
        """Serialize to the snake_case column layout of the ``jobs`` table."""
        return {
            "id": self.id,
            "name": self.name,
            "template_id": self.template_id,
            "template_name": self.template_name,
            "template_description": self.template_description,
            "template_image_url": self.template_image_url,
            "status": self.status,
            "progress": self.progress,
            "variants": self.variants,
            "data_type": self.data_type,
            "data_content": self.data_content,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "message": self.message,
            "image_urls": self.image_urls,
            "prompts": (
                [p.to_payload() for p in self.prompts] if self.prompts is not None else None
            ),
            "user_id": self.user_id,
        }


# Fields the processor writes and the watcher copies into the mirror
OBSERVED_FIELDS = ("status", "progress", "message", "image_urls", "prompts")


def observed_fields(row: dict[str, Any]) -> dict[str, Any]:
    """Pick the processor-owned fields out of a row, decoding prompts."""
    fields = {key: row[key] for key in OBSERVED_FIELDS if key in row}
    if "prompts" in fields:
        fields["prompts"] = parse_prompts(fields["prompts"])
    if "progress" in fields and fields["progress"] is None:
        fields["progress"] = 0
    if "updated_at" in row:
        fields["updated_at"] = _parse_timestamp(row["updated_at"])
    return fields
