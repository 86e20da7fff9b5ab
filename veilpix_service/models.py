from __future__ import annotations

import io
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING, NamedTuple

from PIL import Image, UnidentifiedImageError

if TYPE_CHECKING:
    from .errors import GateDenied, LedgerError

RESOLUTIONS = ("1K", "2K", "4K")
DEFAULT_RESOLUTION = "2K"
ALLOWED_IMAGE_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


class GenerationKind(str, Enum):
    EDIT = "edit"
    FILTER = "filter"
    ADJUST = "adjust"
    COMBINE = "combine"

    @property
    def request_type(self) -> str:
        # Names stored in the usage log.
        return {
            GenerationKind.EDIT: "retouch",
            GenerationKind.FILTER: "filter",
            GenerationKind.ADJUST: "adjust",
            GenerationKind.COMBINE: "combine",
        }[self]


INSTRUCTION_LIMITS: dict[GenerationKind, int] = {
    GenerationKind.EDIT: 500,
    GenerationKind.FILTER: 100,
    GenerationKind.ADJUST: 200,
    GenerationKind.COMBINE: 500,
}


@dataclass(frozen=True)
class SourceImage:
    data: bytes
    mime_type: str
    filename: str = "image"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        subtype = self.mime_type.split("/")[-1] if "/" in self.mime_type else ""
        return {"jpeg": "jpg"}.get(subtype, subtype) or "png"

    @cached_property
    def dimensions(self) -> tuple[int, int] | None:
        try:
            with Image.open(io.BytesIO(self.data)) as img:
                return img.size
        except (UnidentifiedImageError, OSError):
            return None


@dataclass(frozen=True)
class GenerationIntent:
    kind: GenerationKind
    images: tuple[SourceImage, ...]
    instruction: str
    x: int | None = None
    y: int | None = None
    aspect_ratio: str | None = None
    resolution: str = DEFAULT_RESOLUTION
    style: str | None = None

    @property
    def has_focus_point(self) -> bool:
        return self.x is not None and self.y is not None

    @property
    def total_bytes(self) -> int:
        return sum(image.size for image in self.images)


class TaskState(str, Enum):
    SUBMITTED = "submitted"
    WAITING = "waiting"
    QUEUING = "queuing"
    GENERATING = "generating"
    SUCCESS = "success"
    FAIL = "fail"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCESS, TaskState.FAIL)


TASK_STATE_RANK: dict[TaskState, int] = {
    TaskState.SUBMITTED: 0,
    TaskState.WAITING: 1,
    TaskState.QUEUING: 2,
    TaskState.GENERATING: 3,
    TaskState.SUCCESS: 4,
    TaskState.FAIL: 4,
}


@dataclass
class ProviderTask:
    provider_id: str
    task_id: str
    state: TaskState = TaskState.SUBMITTED
    created_at: float = field(default_factory=time.time)
    last_polled_at: float | None = None
    attempts: int = 0

    def advance(self, new_state: TaskState) -> bool:
        """Move to ``new_state`` unless that would revisit an earlier state.

        Terminal states are final. Returns True when the state changed.
        """
        if self.state.is_terminal:
            return False
        if TASK_STATE_RANK[new_state] < TASK_STATE_RANK[self.state]:
            return False
        changed = new_state != self.state
        self.state = new_state
        return changed


@dataclass(frozen=True)
class GenerationResult:
    """Normalized provider output: inline bytes or a URL still to be fetched."""

    data: bytes | None = None
    mime_type: str | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        has_inline = self.data is not None
        has_url = self.url is not None
        if has_inline == has_url:
            raise ValueError("GenerationResult needs exactly one of inline data or url")
        if has_inline and not self.mime_type:
            raise ValueError("Inline GenerationResult needs a mime type")

    @classmethod
    def inline(cls, data: bytes, mime_type: str = "image/png") -> "GenerationResult":
        return cls(data=data, mime_type=mime_type)

    @classmethod
    def remote(cls, url: str) -> "GenerationResult":
        return cls(url=url)

    @property
    def needs_conversion(self) -> bool:
        return self.url is not None


@dataclass(frozen=True)
class Caller:
    user_id: str | None = None
    email: str | None = None
    session_id: str | None = None
    ip_address: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def owner_tag(self) -> str:
        return self.user_id or "anonymous"


class GateDecision(NamedTuple):
    allowed: bool
    remaining: int
    used: int | None = None
    limit: int | None = None
    denial: "GateDenied | None" = None


class UploadedAsset(NamedTuple):
    key: str
    url: str


@dataclass(frozen=True)
class UsageLogEntry:
    provider_id: str
    request_type: str
    processing_time_ms: int
    success: bool
    user_id: str | None = None
    session_id: str | None = None
    image_size: str = "medium"
    stage: str | None = None
    error_message: str | None = None


class LedgerOutcome(NamedTuple):
    committed: bool
    credits_deducted: int
    remaining: int | None
    error: "LedgerError | None" = None


@dataclass(frozen=True)
class RequestContext:
    caller: Caller
    provider_id: str
    intent: GenerationIntent
    started_at: float = field(default_factory=time.perf_counter)
    decision: GateDecision | None = None
    uploads: tuple[UploadedAsset, ...] = ()

    def with_decision(self, decision: GateDecision) -> "RequestContext":
        return replace(self, decision=decision)

    def with_uploads(self, uploads: tuple[UploadedAsset, ...]) -> "RequestContext":
        return replace(self, uploads=uploads)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)

    @property
    def image_size_label(self) -> str:
        return "large" if self.intent.total_bytes > 1024 * 1024 else "medium"


@dataclass(frozen=True)
class GenerationOutcome:
    image: GenerationResult
    processing_time_ms: int
    credits_used: int = 0
    credits_remaining: int | None = None
    usage: dict | None = None
