"""Pydantic models shared across API, validator, executor, and task store.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Alias: the camelCase field name used on the wire (`taskId`), while Python
  code uses snake_case attributes (`task_id`).
- Frozen model: an immutable instance; assigning to a field raises.
"""

from __future__ import annotations

from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

FeatureType = Literal["FACE", "STYLE", "MATERIAL", "COMPONENT"]
FEATURE_TYPES: tuple[str, ...] = ("FACE", "STYLE", "MATERIAL", "COMPONENT")

# Task lifecycle states used by the store + API responses.
TaskStatus = Literal["QUEUED", "PROCESSING", "SUCCESS", "FAILED"]
TASK_STATUSES: tuple[str, ...] = ("QUEUED", "PROCESSING", "SUCCESS", "FAILED")
TERMINAL_STATUSES = frozenset({"SUCCESS", "FAILED"})

NodeRole = Literal["REFERENCE", "TRACK_B", "MERGE"]


class WireModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ReferenceImage(WireModel):
    model_config = ConfigDict(frozen=True)

    image_ref: str
    weight: float


class SourceImage(WireModel):
    model_config = ConfigDict(frozen=True)

    image_ref: str
    feature_type: FeatureType
    weight: float


class GenerationContract(WireModel):
    """Validated generation request. Build it through `validate_generation_contract`."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    prompt: str
    negative_prompt: str = ""
    # None means "use the configured default model".
    model: str | None = None
    reference: ReferenceImage
    # Order defines the `[Source k]` indexes used in prompts.
    sources: tuple[SourceImage, ...]


class PromptIndexing(WireModel):
    uses_reference: bool
    source_indexes: list[int] = Field(default_factory=list)
    out_of_range: list[int] = Field(default_factory=list)


class WorkflowSource(WireModel):
    id: str
    index: int
    feature_type: FeatureType
    weight: float


class WorkflowNode(WireModel):
    id: str
    role: NodeRole
    engine_node: str
    weight: float | None = None
    sources: list[WorkflowSource] | None = None
    prompt: str | None = None
    negative_prompt: str | None = None
    model: str | None = None


class WorkflowGraph(WireModel):
    """Descriptive metadata for one run; never used for control flow."""

    name: str
    version: str
    model: str
    prompt_indexing: PromptIndexing
    nodes: list[WorkflowNode]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StageEvent(WireModel):
    """Progress marker reported by the executor between suspension points."""

    stage: str
    progress: float


class StatusResponse(WireModel):
    task_id: str
    status: TaskStatus
    output_url: str | None = None
    error_code: str | None = None
    message: str | None = None
    warnings: list[str] = Field(default_factory=list)
    updated_at: str


class TaskView(StatusResponse):
    """Status response plus run metadata, as pushed to SSE subscribers."""

    workflow_graph: dict[str, Any] | None = None
    progress: StageEvent | None = None
    # Identifies the run that owns this record; never sent on the wire.
    run_id: str | None = Field(default=None, exclude=True)


class TaskCreatedView(TaskView):
    status_url: str
    stream_url: str


class Task(BaseModel):
    """Mutable task record owned by the task store."""

    task_id: str
    contract: GenerationContract
    status: TaskStatus = "QUEUED"
    output_url: str | None = None
    error_code: str | None = None
    message: str | None = None
    warnings: list[str] = Field(default_factory=list)
    workflow_graph: dict[str, Any] | None = None
    progress: StageEvent | None = None
    updated_at: str
    # Monotonic deadline after which the store forgets the task.
    expires_at: float
    # Fresh per creation; lifecycle calls carrying a stale run_id are ignored.
    run_id: str = Field(default_factory=lambda: uuid4().hex)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class GenerationResult(BaseModel):
    """Successful executor output: one decoded image plus run metadata."""

    output_bytes: bytes
    output_mime_type: str
    output_extension: Literal["png", "jpg", "webp"]
    workflow_graph: WorkflowGraph
    warnings: list[str] = Field(default_factory=list)
