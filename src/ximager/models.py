from __future__ import annotations

import mimetypes
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class RunState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    QUEUED = "queued"
    POLLING = "polling"
    EXTRACTING = "extracting"
    DONE = "done"
    FAILED = "failed"


RUN_STATE_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.UPLOADING, RunState.FAILED}),
    RunState.UPLOADING: frozenset({RunState.QUEUED, RunState.FAILED}),
    RunState.QUEUED: frozenset({RunState.POLLING, RunState.FAILED}),
    RunState.POLLING: frozenset({RunState.EXTRACTING, RunState.FAILED}),
    RunState.EXTRACTING: frozenset({RunState.DONE, RunState.FAILED}),
    RunState.DONE: frozenset(),
    RunState.FAILED: frozenset(),
}

TERMINAL_STATES: frozenset[RunState] = frozenset({RunState.DONE, RunState.FAILED})


class ErrorKind(str, Enum):
    GRAPH_LOAD_ERROR = "GraphLoadError"
    UPLOAD_ERROR = "UploadError"
    SUBMIT_ERROR = "SubmitError"
    TRANSPORT_ERROR = "TransportError"
    EXECUTION_TIMEOUT = "ExecutionTimeout"
    NO_OUTPUT_PRODUCED = "NoOutputProduced"
    INVALID_OVERRIDE = "InvalidOverride"


class LogLevel(str, Enum):
    INFO = "INFO"
    LOAD = "LOAD"
    EXEC = "EXEC"
    ERROR = "ERROR"


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    level: LogLevel
    message: str

    def format(self) -> str:
        return f"[{self.timestamp}] {self.level.value:<5} {self.message}"


@dataclass(frozen=True)
class Dimensions:
    """Optional width/height override for primitive integer nodes."""

    width: int | None = None
    height: int | None = None

    def validate_complete(self) -> None:
        for field_name in ("width", "height"):
            value = getattr(self, field_name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"dimensions.{field_name} must be an integer, got: {value!r}")
            if value <= 0:
                raise ValueError(f"dimensions.{field_name} must be > 0, got: {value}")


@dataclass(frozen=True)
class OverrideSet:
    """Per-run overrides. A field left as None means matching nodes are not touched."""

    prompt_text: str | None = None
    asset_refs: tuple[str | None, ...] | None = None
    dimensions: Dimensions | None = None


@dataclass(frozen=True)
class AssetUpload:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Path) -> "AssetUpload":
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            content=path.read_bytes(),
            content_type=guessed or "application/octet-stream",
        )


@dataclass(frozen=True)
class KeywordMacro:
    key: str
    expansion: str


class KeywordStat(BaseModel):
    """Usage statistics for one prompt token. Serialized as ``{text, count, lastUsed}``."""

    model_config = ConfigDict(populate_by_name=True)

    text: str
    count: int = Field(ge=0)
    last_used_ms: int = Field(default=0, alias="lastUsed", ge=0)


class OutputAsset(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    subfolder: str = ""
    kind: str = Field(default="output", alias="type")


class ExecutionError(BaseModel):
    kind: ErrorKind
    message: str


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExecutionRecord(BaseModel):
    """State of one orchestrator run. Only the orchestrator mutates it."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: f"RUN-{uuid.uuid4().hex[:8]}")
    state: RunState = RunState.IDLE
    progress_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    result_ref: str | None = None
    error: ExecutionError | None = None
    workflow: str | None = None
    prompt_id: str | None = None
    prompt_text: str | None = None
    uploaded: dict[int, str] = Field(default_factory=dict)
    output: OutputAsset | None = None
    graph_fingerprint: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: RunState) -> None:
        allowed = RUN_STATE_TRANSITIONS[self.state]
        if new_state not in allowed:
            raise ValueError(f"Illegal run state transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = _utcnow()
