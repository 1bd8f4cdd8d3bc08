"""Pydantic models matching the dashboard frontend types and the JSONL log."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

LoopOutcome = Literal[
    "success",
    "max_iterations",
    "cancelled",
    "error",
    "orphaned",
    "archived",
]

SessionStatus = Literal[
    "active",
    "success",
    "max_iterations",
    "cancelled",
    "error",
    "orphaned",
    "archived",
]


# ── Log entries (one JSON object per line of sessions.jsonl) ────────

class _LogEntryBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    loop_id: Optional[str] = None  # unique per loop invocation
    session_id: Optional[str] = None  # terminal session, used for grouping

    @model_validator(mode="after")
    def _require_identity(self):
        if not (self.loop_id or self.session_id):
            raise ValueError("log entry needs a loop_id or a session_id")
        return self

    @property
    def key(self) -> str:
        """Identity used for grouping; legacy entries only carry session_id."""
        return self.loop_id or self.session_id or ""

    @property
    def is_legacy(self) -> bool:
        return not self.loop_id


class StartEvent(_LogEntryBase):
    status: Literal["active"]
    project: str = ""
    project_name: str = ""
    state_file_path: Optional[str] = None
    task: str = ""
    started_at: str
    max_iterations: int = 0
    completion_promise: Optional[str] = None


class CompletionEvent(_LogEntryBase):
    status: Literal["completed"]
    outcome: LoopOutcome
    ended_at: str
    duration_seconds: int = 0
    iterations: Optional[int] = None
    error_reason: Optional[str] = None


LogEvent = Annotated[Union[StartEvent, CompletionEvent], Field(discriminator="status")]


# ── Sessions ────────────────────────────────────────────────────────

class Session(BaseModel):
    loop_id: str
    session_id: str
    status: SessionStatus
    outcome: Optional[LoopOutcome] = None
    project: str = ""
    project_name: str = ""
    state_file_path: Optional[str] = None
    task: str = ""
    started_at: str = ""
    ended_at: Optional[str] = None
    duration_seconds: int = 0
    iterations: Optional[int] = None
    max_iterations: int = 0
    completion_promise: Optional[str] = None
    error_reason: Optional[str] = None
    has_checklist: bool = False
    checklist_progress: Optional[str] = None  # e.g. "3/5 tasks • 1/2 criteria"


class SessionsResponse(BaseModel):
    sessions: list[Session]
    total: int
    active_count: int


class ActionResponse(BaseModel):
    success: bool
    message: str
    loop_id: str


class RotationResponse(BaseModel):
    purged_count: int
    refused: bool = False
    reason: str = ""


class ErrorResponse(BaseModel):
    error: str
    message: str


# ── Transcripts ─────────────────────────────────────────────────────

class IterationEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    iteration: int = 0
    timestamp: str = ""
    output: str = ""


class TranscriptMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class IterationsResponse(BaseModel):
    iterations: list[IterationEntry]


class FullTranscriptResponse(BaseModel):
    messages: list[TranscriptMessage]


class TranscriptAvailabilityResponse(BaseModel):
    hasIterations: bool
    hasFullTranscript: bool


# ── Checklists ──────────────────────────────────────────────────────

class ChecklistItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    text: str
    status: Literal["pending", "in_progress", "completed"] = "pending"
    created_at: str = ""
    completed_at: Optional[str] = None
    completed_iteration: Optional[int] = None


class Checklist(BaseModel):
    model_config = ConfigDict(extra="allow")

    loop_id: str
    session_id: str = ""
    project: str = ""
    project_name: str = ""
    created_at: str = ""
    updated_at: str = ""
    task_checklist: list[ChecklistItem] = Field(default_factory=list)
    completion_criteria: list[ChecklistItem]


class ChecklistProgress(BaseModel):
    tasks: str = ""
    criteria: str = ""
    tasksCompleted: int = 0
    tasksTotal: int = 0
    criteriaCompleted: int = 0
    criteriaTotal: int = 0


class ChecklistResponse(BaseModel):
    checklist: Optional[Checklist] = None
    progress: Optional[ChecklistProgress] = None


# ── Live update messages (pushed over the websocket) ────────────────

class IterationsMessage(BaseModel):
    type: Literal["iterations"] = "iterations"
    loopId: str
    iterations: list[Any]


class ChecklistMessage(BaseModel):
    type: Literal["checklist"] = "checklist"
    loopId: str
    checklist: Checklist
    progress: Optional[ChecklistProgress] = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str
